"""
Logging configuration for prodrun services.

This module provides centralized logging setup with:
- Structured logging through structlog
- Rich console output
- Log rotation for the main and error logs
- Optional Sentry error forwarding
- An nginx-style access log for completed requests
"""

import logging
import logging.handlers
import sys
import os
import json
from pathlib import Path
from typing import Optional, Dict, Any, TextIO
from datetime import datetime, timezone
import threading
import structlog
from rich.logging import RichHandler
from rich.console import Console
import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration


console = Console(file=sys.stderr)


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    _RESERVED = frozenset((
        'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
        'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname',
        'process', 'processName', 'relativeCreated', 'thread', 'threadName',
        'exc_info', 'exc_text', 'stack_info', 'taskName',
    ))

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process': record.process,
        }

        for key, value in record.__dict__.items():
            if key in self._RESERVED:
                continue
            try:
                json.dumps(value)
                log_obj[key] = value
            except (TypeError, ValueError):
                log_obj[key] = str(value)

        if record.exc_info:
            log_obj['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


def setup_logging(
    app_name: str = "prodrun",
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    enable_json: bool = True,
    enable_console: bool = True,
    enable_sentry: bool = False,
    sentry_dsn: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 10,
    cache_loggers: bool = True,
) -> Dict[str, Any]:
    """
    Set up logging for a prodrun service.

    Args:
        app_name: Application name for log identification
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files; when it does not exist logging
            falls back to the console only
        enable_json: Render structlog events and file output as JSON
        enable_console: Attach a Rich console handler
        enable_sentry: Enable Sentry error tracking
        sentry_dsn: Sentry DSN for error tracking
        max_bytes: Rotation size for the main log file
        backup_count: Number of rotated files to keep
        cache_loggers: Cache bound loggers on first use

    Returns:
        Dictionary with the main logger and the effective configuration
    """
    renderer = (
        structlog.processors.JSONRenderer() if enable_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=cache_loggers,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    if enable_console:
        console_handler = RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(console_handler)

    fell_back_to_console = False
    if log_dir is not None:
        log_dir = Path(log_dir)
        if not log_dir.is_dir():
            fell_back_to_console = True
        else:
            file_formatter: logging.Formatter = (
                JSONFormatter() if enable_json else logging.Formatter(
                    '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
                )
            )
            file_handler = logging.handlers.RotatingFileHandler(
                log_dir / f"{app_name}.log",
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setFormatter(file_formatter)
            root_logger.addHandler(file_handler)

            error_handler = logging.handlers.RotatingFileHandler(
                log_dir / f"{app_name}-errors.log",
                maxBytes=max_bytes,
                backupCount=max(1, backup_count // 2),
                encoding='utf-8'
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(file_formatter)
            root_logger.addHandler(error_handler)

    if not root_logger.handlers:
        root_logger.addHandler(logging.NullHandler())

    if enable_sentry and sentry_dsn:
        sentry_logging = LoggingIntegration(
            level=logging.INFO,
            event_level=logging.ERROR
        )
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[sentry_logging],
            traces_sample_rate=0.0,
        )

    main_logger = structlog.get_logger(app_name)
    if fell_back_to_console:
        main_logger.error("log_dir_missing_logging_to_console", log_dir=str(log_dir))

    main_logger.info(
        "logging_initialized",
        app_name=app_name,
        log_level=log_level,
        log_dir=str(log_dir) if log_dir else None,
        enable_json=enable_json,
        enable_sentry=enable_sentry,
        pid=os.getpid(),
    )

    return {
        'logger': main_logger,
        'log_dir': log_dir if not fell_back_to_console else None,
        'config': {
            'app_name': app_name,
            'log_level': log_level,
            'enable_json': enable_json,
            'enable_sentry': enable_sentry,
        }
    }


def flush_logging() -> None:
    """Flush every handler on the root logger."""
    for handler in logging.getLogger().handlers:
        try:
            handler.flush()
        except (OSError, ValueError):
            pass


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance by name."""
    return structlog.get_logger(name)


class AccessLog:
    """
    Per-request access logging.

    Every completed request produces a structured ``access`` event. When a
    file path is given, a combined-format line is appended as well; with
    ``every`` > 1 only one line in ``every`` reaches the file.
    """

    def __init__(
        self,
        hostname: str,
        path: Optional[Path] = None,
        every: int = 0,
    ):
        self.hostname = hostname
        self.path = Path(path) if path else None
        self.every = every
        self._suppressed = 0
        self._file: Optional[TextIO] = None
        self._lock = threading.Lock()
        self.logger = get_logger("prodrun.access")

    def open(self) -> None:
        if self.path is None or self._file is not None:
            return
        try:
            self._file = open(self.path, "a", encoding="utf-8")
        except OSError as e:
            self.logger.error("access_log_open_failed", path=str(self.path), error=str(e))

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                try:
                    self._file.close()
                except OSError as e:
                    self.logger.error("access_log_close_failed", error=str(e))
                self._file = None

    def write(
        self,
        *,
        method: str,
        path: str,
        protocol: str,
        status: int,
        size: int,
        remote_ip: str,
        referrer: str,
        user_agent: str,
        duration: float,
        start_time: datetime,
    ) -> None:
        """Record one completed request."""
        self.logger.info(
            "access",
            method=method,
            path=path,
            protocol=protocol,
            status=status,
            bytes=size,
            remote_ip=remote_ip,
            referrer=referrer or "-",
            user_agent=user_agent or "-",
            duration=round(duration, 6),
        )

        if self._file is None:
            return

        with self._lock:
            if self.every > 0:
                self._suppressed += 1
                if self._suppressed < self.every:
                    return
            self._suppressed = 0

            line = '%s %.3f %s - - [%s] %s %d %d %s %s\n' % (
                self.hostname,
                duration,
                _trim_port(remote_ip),
                start_time.isoformat(timespec="seconds"),
                json.dumps(f"{method} {path} {protocol}"),
                status,
                size,
                json.dumps(referrer or "-"),
                json.dumps(user_agent or "-"),
            )
            try:
                self._file.write(line)
                self._file.flush()
            except OSError as e:
                self.logger.error("access_log_write_failed", error=str(e))


def _trim_port(address: str) -> str:
    # IPv6 literals keep their colons
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    return address


__all__ = [
    'setup_logging',
    'flush_logging',
    'get_logger',
    'AccessLog',
    'JSONFormatter',
]
