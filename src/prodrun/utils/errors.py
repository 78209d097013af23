"""
Error handling framework for prodrun.

This module provides:
- Hierarchical exception classes with severity and category
- Error context preservation
- Typed protocol errors (HTTPError, WebSocketCloseMessage) that handlers
  raise or return to control the client-visible response
- Structured error dictionaries for logging
"""

from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager
import traceback

from .logging import get_logger


logger = get_logger("prodrun.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    FATAL = "fatal"


class ErrorCategory(Enum):
    """Error categories for classification."""
    SYSTEM = "system"
    CONFIGURATION = "configuration"
    CLIENT = "client"
    PROTOCOL = "protocol"
    INTERNAL = "internal"
    PROCESS = "process"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: Optional[int] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


class ProdrunError(Exception):
    """Base exception for all prodrun errors."""

    code: str = "PRODRUN_ERROR"
    default_message: str = "An error occurred in prodrun"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause

        if not self.context.stack_trace and cause is not None:
            self.context.stack_trace = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "request_id": self.context.request_id,
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata,
                }
            }
        }


class ConfigurationError(ProdrunError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION


# Protocol errors: handlers raise or return these to control the response.

class HTTPError(ProdrunError):
    """
    An HTTP error response declared by a handler.

    The status and body are written to the client verbatim. Raising one
    from a handler is not treated as an unexpected failure.
    """
    code = "HTTP_ERROR"
    default_message = ""
    severity = ErrorSeverity.INFO
    category = ErrorCategory.PROTOCOL

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"HTTP Error [{status}] - {body}")

    def response_body(self) -> bytes:
        return (self.body + "\r\n").encode("utf-8")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HTTPError):
            return NotImplemented
        return (self.status, self.body) == (other.status, other.body)

    def __hash__(self) -> int:
        return hash((self.status, self.body))


class WebSocketCloseMessage(ProdrunError):
    """A close frame (code and reason) declared by a streaming handler."""
    code = "WS_CLOSE"
    default_message = ""
    severity = ErrorSeverity.INFO
    category = ErrorCategory.PROTOCOL

    def __init__(self, close_code: int, body: str = ""):
        self.close_code = close_code
        self.body = body
        super().__init__(f"{close_code} {body}")


# RFC 6455 close codes
CLOSE_NORMAL_CLOSURE = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_SERVER_ERR = 1011
CLOSE_ABNORMAL_CLOSURE = 1006


def not_found(body: str = "") -> HTTPError:
    return HTTPError(404, body)


def bad_request(body: str = "") -> HTTPError:
    return HTTPError(400, body)


def server_error(body: str = "") -> HTTPError:
    return HTTPError(500, body)


def policy_violation(body: str = "") -> WebSocketCloseMessage:
    return WebSocketCloseMessage(CLOSE_POLICY_VIOLATION, body)


def close_message_from_http_error(err: HTTPError) -> WebSocketCloseMessage:
    """Map an HTTP error onto the closest websocket close code."""
    family = err.status // 100
    if family == 2:
        close_code = CLOSE_NORMAL_CLOSURE
    elif family == 4:
        close_code = CLOSE_POLICY_VIOLATION
    elif family == 5:
        close_code = CLOSE_INTERNAL_SERVER_ERR
    else:
        close_code = CLOSE_ABNORMAL_CLOSURE
    return WebSocketCloseMessage(close_code, err.body)


# Runtime errors

class RegistryError(ProdrunError):
    """Request registry misuse or lifecycle errors."""
    code = "REGISTRY_ERROR"
    default_message = "Request registry error"
    category = ErrorCategory.INTERNAL


class RestartError(ProdrunError):
    """Restart coordination errors."""
    code = "RESTART_ERROR"
    default_message = "Graceful restart failed"
    category = ErrorCategory.PROCESS


# Supervisor errors: all of these are fatal for the supervisor process.

class SupervisorError(ProdrunError):
    """Fatal supervisor errors."""
    code = "SUPERVISOR_ERROR"
    default_message = "Supervisor failure"
    category = ErrorCategory.PROCESS
    severity = ErrorSeverity.FATAL


class RuntimeDirError(SupervisorError):
    code = "RUNTIME_DIR_ERROR"
    default_message = "Runtime directory is not accessible"


class PidFileError(SupervisorError):
    code = "PIDFILE_ERROR"
    default_message = "Cannot write pid file"


class PidFileConflictError(SupervisorError):
    code = "PIDFILE_CONFLICT"
    default_message = "Pid file is owned by a running process"

    def __init__(self, pid: int, path: str):
        self.pid = pid
        self.path = path
        super().__init__(f"Pid {pid} from {path} is running - refusing to start")


class ChildDiedError(SupervisorError):
    code = "CHILD_DIED"
    default_message = "Supervised process group is empty"


class UnsupportedPlatformError(SupervisorError):
    code = "UNSUPPORTED_PLATFORM"
    default_message = "Process group supervision needs a POSIX platform"


@contextmanager
def error_context(
    component: str,
    operation: str,
    reraise: bool = True,
    **metadata
):
    """
    Context manager that annotates errors with component and operation.

    ProdrunErrors get their context filled in; other exceptions are wrapped
    in a ProdrunError.
    """
    context = ErrorContext(
        component=component,
        operation=operation,
        metadata=metadata
    )

    try:
        yield context
    except ProdrunError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        logger.error("prodrun_error_in_context", error=e.to_dict())
        if reraise:
            raise
    except Exception as e:
        wrapped = ProdrunError(message=str(e), context=context, cause=e)
        logger.error(
            "unexpected_error_in_context",
            error=wrapped.to_dict(),
            exc_info=True
        )
        if reraise:
            raise wrapped from e


__all__ = [
    'ProdrunError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'HTTPError',
    'WebSocketCloseMessage',
    'CLOSE_NORMAL_CLOSURE',
    'CLOSE_GOING_AWAY',
    'CLOSE_POLICY_VIOLATION',
    'CLOSE_INTERNAL_SERVER_ERR',
    'CLOSE_ABNORMAL_CLOSURE',
    'not_found',
    'bad_request',
    'server_error',
    'policy_violation',
    'close_message_from_http_error',
    'RegistryError',
    'RestartError',
    'SupervisorError',
    'RuntimeDirError',
    'PidFileError',
    'PidFileConflictError',
    'ChildDiedError',
    'UnsupportedPlatformError',
    'error_context',
]
