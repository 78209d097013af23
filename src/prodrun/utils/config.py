"""
Configuration loader for prodrun services.

This module provides configuration management with:
- Multiple configuration sources (dicts, JSON/YAML/TOML/.env files, env vars)
- Schema validation through pydantic
- Configuration merging by priority
- Hot reloading of watched files
- Transient runtime overrides with change callbacks

Components keep a reference to the root ``ProdrunConfig`` and read values
on every use, so reloads and overrides are applied in place.
"""

import os
import json
import yaml
from pathlib import Path
from typing import Optional, Dict, Any, List, Union, Callable, ClassVar, Tuple
import toml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent
import asyncio
import threading

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("prodrun.config")

ENV_PREFIX = "PRODRUN_"
ENV_NESTING = "__"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class RuntimeConfig(BaseModel):
    """Request, watchdog, restart and supervisor tuning."""
    watchdog_secs: float = 30
    numfds_limit: int = 0
    allocmem_bytes_limit: int = 0
    sysmem_bytes_limit: int = 0
    restart_after_secs: float = 0
    max_requests: int = 0
    numgoros_limit: int = 0
    gc_requests: int = 0
    graceful_poll_msecs: int = 500
    graceful_wait_secs: float = 60
    panic_http_message: str = ""
    panic_backtrace_in_response: bool = False
    panic_backtrace_to_log: bool = False
    panic_backtrace_all_goros: bool = True
    use_xf_headers: bool = False
    slow_req_secs: float = 10
    nelly_check_secs: float = 1.0
    nelly_startup_grace_checks: int = 5

    model_config = ConfigDict(validate_assignment=True)

    @field_validator(
        'numfds_limit', 'allocmem_bytes_limit', 'sysmem_bytes_limit',
        'max_requests', 'numgoros_limit', 'gc_requests',
        'restart_after_secs', 'slow_req_secs',
    )
    @classmethod
    def non_negative(cls, v):
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator('watchdog_secs', 'graceful_poll_msecs', 'nelly_check_secs')
    @classmethod
    def positive(cls, v):
        if v <= 0:
            raise ValueError("must be > 0")
        return v


class ServerConfig(BaseModel):
    """Listener and status endpoint configuration."""
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    enable_status_urls: bool = False
    hostname: Optional[str] = None

    model_config = ConfigDict(validate_assignment=True)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Optional[Path] = None
    console: bool = True
    max_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None
    access_log_enable: bool = False
    access_log_filename: Optional[Path] = None
    access_log_every: int = 0

    model_config = ConfigDict(validate_assignment=True)

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class MetricsConfig(BaseModel):
    """In-process metrics configuration."""
    enabled: bool = True
    prefix: Optional[str] = None

    model_config = ConfigDict(validate_assignment=True)


class SupervisorConfig(BaseModel):
    """Supervisor configuration."""
    run_dir: Optional[Path] = None

    model_config = ConfigDict(validate_assignment=True)


class ProdrunConfig(BaseModel):
    """Root configuration for one service."""
    project_name: str = "prodrun"
    app_name: str = "app"

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)

    enable_hot_reload: bool = False

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )

    SECTIONS: ClassVar[Tuple[str, ...]] = ("runtime", "server", "logging", "metrics", "supervisor")

    def section(self, name: str) -> BaseModel:
        if name not in self.SECTIONS:
            raise KeyError(name)
        return getattr(self, name)

    def as_map(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.section(name).model_dump(mode="json") for name in self.SECTIONS}


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[ProdrunConfig] = None
        self._overrides: Dict[str, Dict[str, Any]] = {}
        self._observers: List[Observer] = []
        self._callbacks: List[Callable[[ProdrunConfig], Any]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.RLock()

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not source_type:
                source_type = self._detect_source_type(path)
            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml", ".conf"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        elif suffix == ".env":
            return "env"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    def load(self) -> ProdrunConfig:
        """
        Load configuration from all sources.

        Sources are merged lowest priority first, environment variables are
        applied last. A previously loaded configuration object is updated in
        place so existing holders see the new values.
        """
        with self._lock:
            merged_data: Dict[str, Any] = {}

            for source in self._sources:
                try:
                    data = self._load_source(source)
                except (OSError, ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
                    raise ConfigurationError(
                        f"Can't load config source [{source.path or 'dict'}]: {e}"
                    ) from e
                merged_data = self._deep_merge(merged_data, data)

            merged_data = self._deep_merge(merged_data, self._load_env_vars())
            merged_data = self._deep_merge(merged_data, self._overrides)

            try:
                fresh = ProdrunConfig(**merged_data)
            except ValidationError as e:
                errors = []
                for error in e.errors():
                    field = ".".join(str(x) for x in error["loc"])
                    errors.append(f"{field}: {error['msg']}")
                raise ConfigurationError(
                    f"Configuration validation failed: {'; '.join(errors)}"
                ) from e

            if self._config is None:
                self._config = fresh
            else:
                for name in ProdrunConfig.SECTIONS:
                    setattr(self._config, name, getattr(fresh, name))

            logger.info("configuration_loaded", sources=len(self._sources))
            return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        if source.source_type == "json":
            return json.loads(content)
        elif source.source_type == "yaml":
            return yaml.safe_load(content) or {}
        elif source.source_type == "toml":
            return toml.loads(content)
        elif source.source_type == "env":
            return self._parse_env_file(content)
        else:
            raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _parse_env_file(self, content: str) -> Dict[str, Any]:
        """Parse .env file format (SECTION__KEY=value)."""
        result: Dict[str, Any] = {}

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, value = line.split("=", 1)
            value = value.strip().strip('"').strip("'")
            self._set_nested(result, key.strip().lower(), value)

        return result

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        result: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if key.startswith(self.env_prefix):
                self._set_nested(result, key[len(self.env_prefix):].lower(), value)

        return result

    @staticmethod
    def _set_nested(result: Dict[str, Any], key: str, value: str) -> None:
        parts = key.split(ENV_NESTING)
        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        # pydantic coerces the string to the field type
        current[parts[-1]] = value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def set_override(self, section: str, key: str, value: Any) -> None:
        """
        Apply a transient override.

        Overrides live until the process exits and survive reloads.
        """
        with self._lock:
            config = self.get_config()
            try:
                target = config.section(section)
            except KeyError:
                raise ConfigurationError(f"No such config section: {section}")
            if key not in type(target).model_fields:
                raise ConfigurationError(f"No such key in section {section}: {key}")
            try:
                setattr(target, key, value)
            except ValidationError as e:
                raise ConfigurationError(f"Bad value for {section}.{key}: {value!r}") from e
            self._overrides.setdefault(section, {})[key] = value

        logger.info("config_override_set", section=section, key=key)
        self._notify_change()

    def register_callback(self, callback: Callable[[ProdrunConfig], Any]) -> None:
        """Register configuration change callback."""
        self._callbacks.append(callback)

    def _notify_change(self) -> None:
        config = self.get_config()
        for callback in self._callbacks:
            try:
                result = callback(config)
                if asyncio.iscoroutine(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error(
                    "config_callback_error",
                    callback=getattr(callback, "__name__", repr(callback)),
                    error=str(e)
                )

    def reload(self) -> None:
        """Reload configuration and notify callbacks."""
        logger.info("reloading_configuration")
        try:
            self.load()
        except ConfigurationError as e:
            logger.error("reload_failed", error=str(e))
            return
        self._notify_change()

    def enable_hot_reload(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Watch file sources and reload on modification."""
        self._loop = loop
        for source in self._sources:
            if source.path and source.path.exists():
                observer = Observer()
                handler = ConfigFileHandler(self, source.path)
                observer.schedule(handler, str(source.path.parent), recursive=False)
                observer.start()
                self._observers.append(observer)

                logger.info("hot_reload_enabled", path=str(source.path))

    def _schedule_reload(self) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.reload)
        else:
            self.reload()

    def get_config(self) -> ProdrunConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config

    def shutdown(self) -> None:
        """Stop watching configuration files."""
        for observer in self._observers:
            observer.stop()
            observer.join()
        self._observers.clear()


class ConfigFileHandler(FileSystemEventHandler):
    """File system event handler for configuration files."""

    def __init__(self, loader: ConfigLoader, path: Path):
        self.loader = loader
        self.path = path

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle file modification."""
        if not event.is_directory and Path(event.src_path) == self.path:
            logger.info("config_file_modified", path=event.src_path)
            self.loader._schedule_reload()


def default_config_path(project_name: str, app_name: str) -> Path:
    """
    Resolve the config file location for a service.

    ``$<PROJECT>_<APP>_CFG_FILE`` wins, then ``$<PROJECT>_CFG_ROOT/<app>.yaml``,
    then ``/etc/<project>/<app>.yaml``.
    """
    file_env = f"{project_name.upper()}_{app_name.upper()}_CFG_FILE"
    if os.environ.get(file_env):
        return Path(os.environ[file_env])

    root = os.environ.get(f"{project_name.upper()}_CFG_ROOT") or f"/etc/{project_name}"
    return Path(root) / f"{app_name}.yaml"


def load_config(
    project_name: str,
    app_name: str,
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    require_file: bool = False,
) -> ConfigLoader:
    """
    Build a loader for a service and load it.

    Args:
        project_name: Project the service belongs to
        app_name: Service name
        config_paths: Extra files layered over the default file
        extra_config: Dict layered over every file
        require_file: Fail when the default config file is missing

    Returns:
        A loaded ConfigLoader; call ``get_config()`` for the model
    """
    loader = ConfigLoader()
    loader.add_source({"project_name": project_name, "app_name": app_name}, priority=0)

    path = default_config_path(project_name, app_name)
    if path.exists():
        loader.add_source(path, priority=10)
    elif require_file:
        raise ConfigurationError(f"Can't load config file [{path}]: not found")

    for i, extra in enumerate(config_paths or []):
        loader.add_source(extra, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    loader.load()
    return loader


__all__ = [
    'ProdrunConfig',
    'RuntimeConfig',
    'ServerConfig',
    'LoggingConfig',
    'MetricsConfig',
    'SupervisorConfig',
    'ConfigLoader',
    'default_config_path',
    'load_config',
]
