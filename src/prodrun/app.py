"""
Application shell.

``App`` wires configuration, logging, metrics, the request registry, the
middleware, the watchdog and the restart coordinator around one aiohttp
application, and owns the listening socket.
"""

import asyncio
import os
import socket
from typing import Any, Callable, Dict, Optional, Union

from aiohttp import web

from .handlers import StatusHandlers
from .handoff import (
    bind_listener,
    ensure_process_group_leader,
    inherit_listener,
    notify_parent,
)
from .managers.registry import RequestRegistry
from .managers.restart import RestartCoordinator, spawn_replacement
from .managers.watchdog import ResourceWatchdog
from .middleware import Handler, RequestMiddleware
from .utils.config import ConfigLoader, ProdrunConfig, load_config
from .utils.errors import error_context
from .utils.logging import AccessLog, get_logger, setup_logging
from .utils.metrics import MetricsCollector, metric_prefix


logger = get_logger("prodrun.app")


class App:
    """One service process."""

    def __init__(
        self,
        project_name: str,
        app_name: str,
        config: Optional[Union[Dict[str, Any], ConfigLoader]] = None,
        configure_logging: bool = True,
        spawner=spawn_replacement,
        exit_func: Callable[[int], Any] = os._exit,
    ):
        self.project_name = project_name
        self.app_name = app_name

        if isinstance(config, ConfigLoader):
            self.config_loader = config
        else:
            self.config_loader = load_config(project_name, app_name, extra_config=config)
        self.config: ProdrunConfig = self.config_loader.get_config()

        if configure_logging:
            log_cfg = self.config.logging
            setup_logging(
                app_name=app_name,
                log_level=log_cfg.level,
                log_dir=log_cfg.directory,
                enable_json=log_cfg.format == "json",
                enable_console=log_cfg.console,
                enable_sentry=log_cfg.enable_sentry,
                sentry_dsn=log_cfg.sentry_dsn,
                max_bytes=log_cfg.max_size,
                backup_count=log_cfg.backup_count,
            )

        self.hostname = self.config.server.hostname or socket.gethostname()
        self.metrics = MetricsCollector(
            prefix=self.config.metrics.prefix or metric_prefix(project_name, app_name, self.hostname),
            enabled=self.config.metrics.enabled,
        )
        self.access_log = AccessLog(
            self.hostname,
            path=self.config.logging.access_log_filename if self.config.logging.access_log_enable else None,
            every=self.config.logging.access_log_every,
        )

        self.registry = RequestRegistry(
            self.config,
            metrics=self.metrics,
            access_log=self.access_log,
            restart_trigger=self.trigger_restart,
        )
        self.coordinator = RestartCoordinator(
            self.config,
            stats_source=self.registry.stats_snapshot,
            spawner=spawner,
            exit_func=exit_func,
        )
        self.watchdog = ResourceWatchdog(
            self.config,
            stats_source=self.registry.stats_snapshot,
            restart_trigger=self.trigger_restart,
            metrics=self.metrics,
        )
        self.middleware = RequestMiddleware(self.config, self.registry)

        self.web_app = web.Application()
        self.web_app.on_startup.append(self._on_startup)
        self.web_app.on_cleanup.append(self._on_cleanup)
        StatusHandlers(self).register()

        self.listener: Optional[socket.socket] = None
        self._runner: Optional[web.AppRunner] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._stopped = asyncio.Event()

    # Routing

    def handle_func(self, path: str, handler: Handler, *required_params: str, method: str = "*") -> None:
        """Serve ``path`` with ``handler``; missing required params get a 400."""
        self.web_app.router.add_route(method, path, self.middleware.wrap(handler, *required_params))

    def handle_websocket_func(self, path: str, handler: Handler, *required_params: str) -> None:
        """Serve ``path`` as a websocket endpoint."""
        self.web_app.router.add_route(
            "GET", path, self.middleware.wrap(handler, *required_params, streaming=True)
        )

    def handle_map(self, handlers: Dict[str, Handler]) -> None:
        for path, handler in handlers.items():
            self.handle_func(path, handler)

    def trigger_restart(self, reason: str) -> bool:
        return self.coordinator.trigger(reason)

    # Lifecycle

    async def _on_startup(self, web_app: web.Application) -> None:
        await self.registry.start()
        await self.watchdog.start()

    async def _on_cleanup(self, web_app: web.Application) -> None:
        await self.watchdog.stop()
        await self.registry.stop()

    @property
    def port(self) -> Optional[int]:
        if self.listener is None:
            return None
        return self.listener.getsockname()[1]

    def _acquire_listener(self) -> tuple:
        inherited = inherit_listener()
        if inherited is not None:
            return inherited

        ensure_process_group_leader()
        server_cfg = self.config.server
        with error_context("app", "bind_listener", host=server_cfg.listen_host, port=server_cfg.listen_port):
            sock = bind_listener(server_cfg.listen_host, server_cfg.listen_port)
        logger.info("listener_bound", host=server_cfg.listen_host, port=sock.getsockname()[1])
        return sock, None

    async def start(self, sock: Optional[socket.socket] = None) -> None:
        """
        Start the managers and begin serving.

        Without ``sock`` the listener is inherited from a restarting parent
        or freshly bound on ``listen_host:listen_port``.
        """
        parent_pid = None
        if sock is None:
            sock, parent_pid = self._acquire_listener()

        self._runner = web.AppRunner(self.web_app, access_log=None, handle_signals=False)
        await self._runner.setup()

        loop = asyncio.get_running_loop()
        self._server = await loop.create_server(self._runner.server, sock=sock)
        self.listener = sock
        self.coordinator.attach_listener(sock, self.stop_accepting)
        self.access_log.open()

        logger.info(
            "serving",
            project=self.project_name,
            app=self.app_name,
            pid=os.getpid(),
            address=str(sock.getsockname()),
        )

        if parent_pid is not None:
            notify_parent(parent_pid)

    def stop_accepting(self) -> None:
        """Stop taking new connections; in-flight requests keep running."""
        if self._server is not None:
            self._server.close()

    async def stop(self) -> None:
        """Stop serving and shut the managers down."""
        self.stop_accepting()
        if self._server is not None:
            self._server = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self.access_log.close()
        self.config_loader.shutdown()
        self._stopped.set()
        logger.info("stopped", app=self.app_name)

    async def serve(self) -> None:
        """Serve until a restart or shutdown sequence exits the process."""
        await self.start()
        loop = asyncio.get_running_loop()
        self.coordinator.install_signal_handlers(loop)
        if self.config.enable_hot_reload:
            self.config_loader.enable_hot_reload(loop)
        try:
            await self._stopped.wait()
        finally:
            self.coordinator.restore_signal_handlers()

    def run(self) -> None:
        asyncio.run(self.serve())


__all__ = ['App']
