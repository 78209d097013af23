"""
Request middleware.

``RequestMiddleware.wrap`` turns a prodrun handler into an aiohttp handler.
Every request is admitted to the registry, runs inside one failure boundary
and is retired exactly once, whatever way the handler ends:

- returning normally (after writing through ``Req``, or with a response);
- returning or raising ``HTTPError``, which is written verbatim;
- raising ``WebSocketCloseMessage`` on a streaming connection;
- raising anything else, which becomes a 500 (or close code 1006);
- being cancelled, which is re-raised after retirement.
"""

import asyncio
import functools
import json
import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from aiohttp import web
from aiohttp.http_exceptions import HttpProcessingError
from multidict import CIMultiDict, MultiDict, MultiDictProxy

from .managers.registry import RequestHandle, RequestOutcome, RequestRegistry, client_address
from .utils.config import ProdrunConfig
from .utils.errors import (
    CLOSE_ABNORMAL_CLOSURE,
    CLOSE_NORMAL_CLOSURE,
    HTTPError,
    WebSocketCloseMessage,
    bad_request,
    close_message_from_http_error,
)
from .utils.logging import get_logger
from .utils.stacks import dump_all_stacks, format_exception


logger = get_logger("prodrun.middleware")

Handler = Callable[["Req"], Awaitable[Any]]

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")
_TRUE = frozenset(("1", "t", "true", "y", "yes", "on"))
_FALSE = frozenset(("0", "f", "false", "n", "no", "off"))
_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0,
}
# close frame reasons are limited to 123 bytes
_MAX_CLOSE_REASON = 123


class RequestState(Enum):
    """Where a request is in its failure-recovery lifecycle."""
    RUNNING = "running"
    FAILURE_RECOVERED = "failure_recovered"
    RESPONSE_SENT = "response_sent"
    RESPONSE_ALREADY_STARTED = "response_already_started"


def parse_duration(value: str) -> timedelta:
    """Parse durations like ``300ms``, ``1.5s`` or ``2h45m``."""
    text = value.strip()
    negative = text.startswith("-")
    if text[:1] in "+-":
        text = text[1:]
    if text == "0":
        return timedelta(0)

    pos = 0
    seconds = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration {value!r}")

    return timedelta(seconds=-seconds if negative else seconds)


class Req:
    """
    Handler-side view of one request.

    Wraps the aiohttp request, collects query and form parameters and keeps
    track of what has been written to the client.
    """

    def __init__(self, request: web.Request, handle: RequestHandle, config: ProdrunConfig, streaming: bool = False):
        self.request = request
        self.handle = handle
        self.config = config
        self.streaming = streaming
        self.can_be_slow = False
        self.state = RequestState.RUNNING

        self.status = 200
        self.bytes_written = 0
        self.headers: CIMultiDict = CIMultiDict()
        self.response: Optional[web.StreamResponse] = None
        self.ws: Optional[web.WebSocketResponse] = None
        self._params: Optional[MultiDict] = None

    @property
    def id(self) -> int:
        return self.handle.id

    @property
    def remote_ip(self) -> str:
        return client_address(self.request, self.config.runtime.use_xf_headers)[0]

    @property
    def is_https(self) -> bool:
        return client_address(self.request, self.config.runtime.use_xf_headers)[1]

    @property
    def response_started(self) -> bool:
        return self.response is not None and self.response.prepared

    # Parameters

    async def load_params(self) -> MultiDict:
        """Merge query string and form values; query values come first."""
        if self._params is None:
            params: MultiDict = MultiDict(self.request.query)
            if self.request.content_type in _FORM_TYPES and self.request.can_read_body:
                form: MultiDictProxy = await self.request.post()
                for key, value in form.items():
                    if isinstance(value, str):
                        params.add(key, value)
            self._params = params
        return self._params

    def params(self) -> MultiDict:
        if self._params is None:
            return MultiDict(self.request.query)
        return self._params

    def has_param(self, key: str) -> bool:
        return key in self.params()

    def param(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """First value of ``key``."""
        return self.params().get(key, default)

    def _typed(self, key: str, default: Any, convert: Callable[[str], Any], kind: str) -> Any:
        raw = self.param(key)
        if raw is None:
            if default is None:
                raise bad_request(f"Missing required parameter: {key}")
            return default
        try:
            return convert(raw)
        except ValueError:
            raise bad_request(f"Bad {kind} value for parameter {key}: {raw}")

    def param_int(self, key: str, default: Optional[int] = None) -> int:
        return self._typed(key, default, int, "integer")

    def param_float(self, key: str, default: Optional[float] = None) -> float:
        return self._typed(key, default, float, "float")

    def param_bool(self, key: str, default: Optional[bool] = None) -> bool:
        def convert(raw: str) -> bool:
            lowered = raw.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(raw)
        return self._typed(key, default, convert, "boolean")

    def param_duration(self, key: str, default: Optional[timedelta] = None) -> timedelta:
        return self._typed(key, default, parse_duration, "duration")

    def param_time(self, key: str, default: Optional[datetime] = None) -> datetime:
        def convert(raw: str) -> datetime:
            return datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        return self._typed(key, default, convert, "time")

    # HTTP output

    async def write(self, data: Union[bytes, str]) -> int:
        """Write part of the response body, sending headers on first use."""
        if self.streaming:
            raise RuntimeError("write() is not available on streaming requests")
        if isinstance(data, str):
            data = data.encode("utf-8")
        if self.response is None:
            self.response = web.StreamResponse(status=self.status, headers=self.headers)
            await self.response.prepare(self.request)
        await self.response.write(data)
        self.bytes_written += len(data)
        return len(data)

    async def _send(self, body: Union[bytes, str], content_type: str, status: Optional[int]) -> None:
        if status is not None:
            self.status = status
        self.headers.setdefault("Content-Type", content_type)
        await self.write(body)

    async def send_text(self, text: str, status: Optional[int] = None) -> None:
        await self._send(text, "text/plain; charset=utf-8", status)

    async def send_html(self, html: str, status: Optional[int] = None) -> None:
        await self._send(html, "text/html; charset=utf-8", status)

    async def send_json(self, obj: Any, status: Optional[int] = None) -> None:
        await self._send(json.dumps(obj, default=str) + "\n", "application/json", status)

    # Streaming output

    async def ws_send_text(self, text: str) -> None:
        if self.ws is None:
            raise RuntimeError("not a streaming request")
        await self.ws.send_str(text)
        self.bytes_written += len(text.encode("utf-8"))

    async def ws_send_bytes(self, data: bytes) -> None:
        if self.ws is None:
            raise RuntimeError("not a streaming request")
        await self.ws.send_bytes(data)
        self.bytes_written += len(data)


class RequestMiddleware:
    """Builds aiohttp handlers that run prodrun handlers under the registry."""

    def __init__(self, config: ProdrunConfig, registry: RequestRegistry):
        self.config = config
        self.registry = registry

    def wrap(self, handler: Handler, *required_params: str, streaming: bool = False) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
        @functools.wraps(handler)
        async def serve(request: web.Request) -> web.StreamResponse:
            handle = await self.registry.admit(request, streaming=streaming)
            req = Req(request, handle, self.config, streaming=streaming)
            try:
                try:
                    result = await self._invoke(req, handler, required_params)
                except (HTTPError, WebSocketCloseMessage) as declared:
                    result = declared
                except web.HTTPException as aiohttp_error:
                    if self._passes_through(req, aiohttp_error):
                        req.status = aiohttp_error.status
                        req.state = RequestState.RESPONSE_SENT
                        raise
                    result = HTTPError(aiohttp_error.status, aiohttp_error.text or aiohttp_error.reason)
                return await self._respond(req, result)
            except asyncio.CancelledError:
                logger.info("request_cancelled", request_id=req.id, url=str(request.rel_url))
                raise
            except web.HTTPException:
                # Redirects and exceptions with headers are rendered by aiohttp
                raise
            except Exception as e:
                return await self._recover(req, e)
            finally:
                await self.registry.retire(
                    handle,
                    RequestOutcome(
                        status=req.status,
                        bytes_written=req.bytes_written,
                        can_be_slow=req.can_be_slow,
                    ),
                )

        return serve

    @staticmethod
    def _passes_through(req: Req, exc: web.HTTPException) -> bool:
        """Redirects and exceptions carrying extra headers keep their own response."""
        if req.ws is not None or req.response_started:
            return False
        if isinstance(exc, web.HTTPRedirection):
            return True
        return any(name.lower() != "content-type" for name in exc.headers)

    async def _invoke(self, req: Req, handler: Handler, required_params: tuple) -> Any:
        try:
            await req.load_params()
        except (ValueError, HttpProcessingError) as e:
            logger.info("form_parse_failed", request_id=req.id, url=str(req.request.rel_url), error=str(e))
            return bad_request("Malformed form body")

        if req.streaming:
            ws = web.WebSocketResponse()
            try:
                await ws.prepare(req.request)
            except (web.HTTPException, ConnectionError) as e:
                logger.error("websocket_upgrade_failed", request_id=req.id, error=str(e))
                return HTTPError(500, "Failed to upgrade websocket")
            req.ws = ws
            req.status = 101

        params = req.params()
        for name in required_params:
            if name not in params:
                return bad_request(f"Missing required parameter: {name}")

        return await handler(req)

    async def _respond(self, req: Req, result: Any) -> web.StreamResponse:
        """Turn whatever the handler produced into the response."""
        if isinstance(result, HTTPError):
            return await self._send_error(req, result)

        if isinstance(result, WebSocketCloseMessage):
            if req.ws is None:
                logger.error("close_message_on_http_request", request_id=req.id, close_code=result.close_code)
                return await self._send_error(req, HTTPError(500, result.body))
            return await self._close_ws(req, result)

        if req.ws is not None:
            if not req.ws.closed:
                await req.ws.close(code=CLOSE_NORMAL_CLOSURE)
            req.state = RequestState.RESPONSE_SENT
            return req.ws

        if isinstance(result, web.StreamResponse):
            if req.response_started:
                logger.error("response_returned_after_write", request_id=req.id)
                return req.response
            req.status = result.status
            body = getattr(result, "body", None)
            if isinstance(body, (bytes, bytearray)):
                req.bytes_written = len(body)
            req.state = RequestState.RESPONSE_SENT
            return result

        if result is not None:
            logger.warning("handler_result_ignored", request_id=req.id, result_type=type(result).__name__)

        req.state = RequestState.RESPONSE_SENT
        if req.response is not None:
            await req.response.write_eof()
            return req.response
        return web.Response(status=req.status, headers=req.headers)

    async def _send_error(self, req: Req, err: HTTPError) -> web.StreamResponse:
        if req.ws is not None:
            return await self._close_ws(req, close_message_from_http_error(err), status=err.status)

        if req.response_started:
            req.state = RequestState.RESPONSE_ALREADY_STARTED
            logger.error(
                "failure_after_partial_response",
                request_id=req.id,
                status=err.status,
                bytes_written=req.bytes_written,
                error=err.body,
            )
            return req.response

        body = err.response_body()
        req.status = err.status
        req.bytes_written = len(body)
        req.state = RequestState.RESPONSE_SENT
        return web.Response(status=err.status, body=body, content_type="text/plain", charset="utf-8")

    async def _close_ws(self, req: Req, msg: WebSocketCloseMessage, status: Optional[int] = None) -> web.StreamResponse:
        if status is not None:
            req.status = status
        if not req.ws.closed:
            reason = msg.body.encode("utf-8")[:_MAX_CLOSE_REASON]
            await req.ws.close(code=msg.close_code, message=reason)
        if req.state == RequestState.RUNNING:
            req.state = RequestState.RESPONSE_SENT
        return req.ws

    async def _recover(self, req: Req, exc: Exception) -> web.StreamResponse:
        """Generic failure: log it and answer with a 500 or an abnormal close."""
        runtime = self.config.runtime
        req.state = RequestState.FAILURE_RECOVERED
        message = str(exc) or type(exc).__name__

        backtrace = ""
        if runtime.panic_backtrace_to_log or runtime.panic_backtrace_in_response:
            backtrace = dump_all_stacks() if runtime.panic_backtrace_all_goros else format_exception(exc)

        log_fields = {
            "request_id": req.id,
            "method": req.request.method,
            "url": str(req.request.rel_url),
            "error": message,
            "error_type": type(exc).__name__,
        }
        if runtime.panic_backtrace_to_log:
            log_fields["backtrace"] = backtrace
        logger.error("request_panic", **log_fields)

        body = runtime.panic_http_message or f"PANIC: {message}"
        if runtime.panic_backtrace_in_response:
            body = f"{body}\n{backtrace}"

        if req.ws is not None:
            req.status = 500
            return await self._close_ws(req, WebSocketCloseMessage(CLOSE_ABNORMAL_CLOSURE, body))

        if req.response_started:
            req.state = RequestState.RESPONSE_ALREADY_STARTED
            logger.error(
                "failure_after_partial_response",
                request_id=req.id,
                status=req.status,
                bytes_written=req.bytes_written,
                error=message,
            )
            return req.response

        payload = HTTPError(500, body).response_body()
        req.status = 500
        req.bytes_written = len(payload)
        return web.Response(status=500, body=payload, content_type="text/plain", charset="utf-8")


__all__ = [
    'Req',
    'RequestMiddleware',
    'RequestState',
    'parse_duration',
]
