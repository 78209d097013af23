"""Shared utilities: configuration, logging, errors and metrics."""

from .config import ProdrunConfig, ConfigLoader, load_config
from .errors import ProdrunError, HTTPError, WebSocketCloseMessage
from .logging import setup_logging, get_logger
from .metrics import MetricsCollector

__all__ = [
    "ProdrunConfig",
    "ConfigLoader",
    "load_config",
    "ProdrunError",
    "HTTPError",
    "WebSocketCloseMessage",
    "setup_logging",
    "get_logger",
    "MetricsCollector",
]
