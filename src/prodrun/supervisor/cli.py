"""
``prodrun-supervisor`` command.

    prodrun-supervisor --project P --service S --exe PATH [-- ARGS...]
"""

import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from .. import __version__
from ..utils.config import load_config
from ..utils.errors import ConfigurationError
from ..utils.logging import setup_logging
from .supervisor import ProcessSupervisor


@click.command(context_settings={"ignore_unknown_options": True})
@click.version_option(version=__version__, prog_name="prodrun-supervisor")
@click.option("--project", required=True, help="Project name (selects the run directory and config).")
@click.option("--service", required=True, help="Service name (names the pid file).")
@click.option("--exe", required=True, type=click.Path(exists=True, dir_okay=False), help="Service executable.")
@click.option("--run-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory for the pid file [default: /var/run/<project>].")
@click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Extra config file layered over the service config.")
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def main(
    project: str,
    service: str,
    exe: str,
    run_dir: Optional[Path],
    config_file: Optional[Path],
    log_level: Optional[str],
    args: Tuple[str, ...],
) -> None:
    """Start a service in its own process group and watch it."""
    try:
        loader = load_config(project, service, config_paths=[config_file] if config_file else None)
    except ConfigurationError as e:
        raise click.ClickException(e.message)
    config = loader.get_config()

    setup_logging(
        app_name=f"{service}-supervisor",
        log_level=log_level or config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        enable_console=config.logging.console,
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn,
    )

    supervisor = ProcessSupervisor(project, service, exe, args, config, run_dir=run_dir)
    sys.exit(supervisor.run())


if __name__ == "__main__":
    main()
