"""
prodrun - production runtime for long-lived asyncio HTTP services.

This package wraps an aiohttp application with:
- An in-flight request registry with access logging and request policies
- Failure recovery around every handler
- A resource watchdog that triggers graceful restarts
- Zero-downtime restarts through listening socket handoff
- An external process supervisor (``prodrun-supervisor``)
"""

__version__ = "0.1.0"

from .app import App
from .middleware import Req, RequestMiddleware, RequestState
from .utils.errors import (
    HTTPError,
    WebSocketCloseMessage,
    not_found,
    bad_request,
    server_error,
    policy_violation,
)

__all__ = [
    'App',
    'Req',
    'RequestMiddleware',
    'RequestState',
    'HTTPError',
    'WebSocketCloseMessage',
    'not_found',
    'bad_request',
    'server_error',
    'policy_violation',
]
