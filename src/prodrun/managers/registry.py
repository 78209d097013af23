"""
In-flight request registry.

The registry is an actor: admissions, retirements and snapshot requests are
messages on one asyncio queue, drained by a single control task. Nothing
else touches the request table or the counters, so ``current_requests``
always equals the number of admitted-but-not-retired requests as seen from
the control task. Callers only ever receive copies.
"""

import asyncio
import gc
import socket
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, Optional, Any, Union

from .base import BaseManager, ManagerConfig
from ..utils.config import ProdrunConfig
from ..utils.errors import ErrorContext, RegistryError
from ..utils.logging import AccessLog
from ..utils.metrics import MetricsCollector


@dataclass
class InFlightRequest:
    """One admitted request, as recorded by the registry."""
    id: int
    start_time: datetime
    start_monotonic: float
    method: str
    url: str
    remote_ip: str
    is_https: bool = False
    is_streaming: bool = False
    response_status: int = 0
    bytes_written: int = 0
    can_be_slow: bool = False
    protocol: str = "HTTP/1.1"
    referrer: str = ""
    user_agent: str = ""

    def duration(self) -> float:
        return time.monotonic() - self.start_monotonic


@dataclass(frozen=True)
class RequestHandle:
    """Token returned by ``admit`` and passed back to ``retire``."""
    id: int
    is_streaming: bool
    start_time: float


@dataclass
class RequestOutcome:
    status: int
    bytes_written: int = 0
    can_be_slow: bool = False


@dataclass
class AppStats:
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    current_requests: int = 0
    current_streaming_requests: int = 0
    total_requests: int = 0
    completed_requests: int = 0


# Control task messages

@dataclass
class _Admit:
    request: InFlightRequest
    reply: asyncio.Future


@dataclass
class _Retire:
    handle: RequestHandle
    outcome: RequestOutcome
    reply: asyncio.Future


@dataclass
class _Snapshot:
    channel: asyncio.Queue


@dataclass
class _Stats:
    reply: asyncio.Future


_SNAPSHOT_END = object()

# Recorded for requests whose caller went away while being admitted
ABANDONED_STATUS = 499

Message = Union[_Admit, _Retire, _Snapshot, _Stats]


def client_address(request: Any, use_xf_headers: bool) -> tuple:
    """
    Work out the client IP and whether the client connection is HTTPS.

    With ``use_xf_headers`` the last ``X-Forwarded-For`` hop wins (the one
    added by the proxy in front of us) and ``X-Forwarded-Proto`` decides
    the scheme.
    """
    remote_ip = request.remote or ""
    is_https = bool(request.secure)

    if use_xf_headers:
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        if forwarded_for:
            hops = [hop.strip() for hop in forwarded_for.split(",")]
            remote_ip = hops[-1]
        forwarded_proto = request.headers.get("X-Forwarded-Proto", "")
        if forwarded_proto:
            is_https = forwarded_proto.strip().lower() == "https"

    return remote_ip, is_https


class RequestRegistry(BaseManager):
    """
    Tracks every in-flight request of the process.

    Retirement applies the per-request policy: access logging, status
    counters, slow request warnings, forced GC and the request-count restart.
    """

    def __init__(
        self,
        config: ProdrunConfig,
        metrics: Optional[MetricsCollector] = None,
        access_log: Optional[AccessLog] = None,
        restart_trigger: Optional[Callable[[str], Any]] = None,
    ):
        super().__init__(ManagerConfig(name="registry"))
        self.config = config
        self.metrics = metrics or MetricsCollector(enabled=False)
        self.access_log = access_log or AccessLog(config.server.hostname or socket.gethostname())
        self.restart_trigger = restart_trigger

        self._queue: "asyncio.Queue[Message]" = asyncio.Queue()
        self._requests: Dict[int, InFlightRequest] = {}
        self._stats = AppStats()
        self._next_id = 0

    async def _start(self) -> None:
        self._queue = asyncio.Queue()
        self._tasks.append(asyncio.create_task(self._control_loop(), name="request-registry"))

    async def _stop(self) -> None:
        # Fail anything still waiting on the stopped control task
        while not self._queue.empty():
            msg = self._queue.get_nowait()
            if isinstance(msg, _Snapshot):
                msg.channel.put_nowait(_SNAPSHOT_END)
            elif not msg.reply.done():
                msg.reply.set_exception(RegistryError(
                    "request registry stopped",
                    context=ErrorContext(component="registry", operation="stop"),
                ))

    async def _health_check(self) -> Dict[str, Any]:
        stats = await self.stats_snapshot()
        return {
            "current_requests": stats.current_requests,
            "total_requests": stats.total_requests,
            "queue_depth": self._queue.qsize(),
        }

    # Public API

    async def admit(self, request: Any, streaming: bool = False) -> RequestHandle:
        """
        Register a request that is about to be served.

        Returns once the control task has recorded it.
        """
        self._ensure_running()

        remote_ip, is_https = client_address(request, self.config.runtime.use_xf_headers)
        version = getattr(request, "version", None)
        protocol = f"HTTP/{version.major}.{version.minor}" if version else "HTTP/1.1"

        entry = InFlightRequest(
            id=0,
            start_time=datetime.now(timezone.utc),
            start_monotonic=time.monotonic(),
            method=request.method,
            url=str(request.rel_url),
            remote_ip=remote_ip,
            is_https=is_https,
            is_streaming=streaming,
            protocol=protocol,
            referrer=request.headers.get("Referer", ""),
            user_agent=request.headers.get("User-Agent", ""),
        )

        reply = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Admit(entry, reply))
        try:
            return await asyncio.shield(reply)
        except asyncio.CancelledError:
            # The admission may still be applied; retire it once it is
            reply.add_done_callback(self._retire_abandoned)
            raise

    def _retire_abandoned(self, reply: asyncio.Future) -> None:
        if reply.cancelled() or reply.exception() is not None:
            return
        handle = reply.result()
        self.logger.info("abandoned_admission_retired", request_id=handle.id)
        done = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Retire(handle, RequestOutcome(status=ABANDONED_STATUS), done))

    async def retire(self, handle: RequestHandle, outcome: RequestOutcome) -> None:
        """
        Retire an admitted request and apply completion policy.

        The message is queued before waiting, so the retirement is applied
        even when the calling task is cancelled while waiting.
        """
        self._ensure_running()
        reply = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Retire(handle, outcome, reply))
        await reply

    async def snapshot(self) -> AsyncIterator[InFlightRequest]:
        """
        Iterate over copies of the current in-flight requests.

        The iteration is finite and cannot be restarted. Requests admitted or
        retired while it runs may or may not appear.
        """
        self._ensure_running()
        channel: asyncio.Queue = asyncio.Queue()
        self._queue.put_nowait(_Snapshot(channel))
        while True:
            item = await channel.get()
            if item is _SNAPSHOT_END:
                return
            yield item

    async def stats_snapshot(self) -> AppStats:
        """Return a point-in-time copy of the counters."""
        self._ensure_running()
        reply = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Stats(reply))
        return await reply

    @property
    def start_time(self) -> datetime:
        return self._stats.start_time

    # Control task

    async def _control_loop(self) -> None:
        while True:
            msg = await self._queue.get()
            try:
                if isinstance(msg, _Admit):
                    self._handle_admit(msg)
                elif isinstance(msg, _Retire):
                    self._handle_retire(msg)
                elif isinstance(msg, _Snapshot):
                    for entry in self._requests.values():
                        msg.channel.put_nowait(replace(entry))
                    msg.channel.put_nowait(_SNAPSHOT_END)
                elif isinstance(msg, _Stats):
                    if not msg.reply.done():
                        msg.reply.set_result(replace(self._stats))
            except Exception as e:
                self.logger.error("registry_message_failed", message=type(msg).__name__, error=str(e), exc_info=True)
                reply = getattr(msg, "reply", None)
                if reply is not None and not reply.done():
                    reply.set_exception(e)

    def _handle_admit(self, msg: _Admit) -> None:
        if msg.reply.cancelled():
            return
        self._next_id += 1
        entry = msg.request
        entry.id = self._next_id
        self._requests[entry.id] = entry

        self._stats.total_requests += 1
        self._stats.current_requests += 1
        if entry.is_streaming:
            self._stats.current_streaming_requests += 1
        self._publish_gauges()

        if not msg.reply.done():
            msg.reply.set_result(RequestHandle(entry.id, entry.is_streaming, entry.start_monotonic))

    def _handle_retire(self, msg: _Retire) -> None:
        entry = self._requests.pop(msg.handle.id, None)
        if entry is None:
            self.logger.error("registry_bug_unknown_request", request_id=msg.handle.id)
            if not msg.reply.done():
                msg.reply.set_result(None)
            return

        self._stats.current_requests -= 1
        if entry.is_streaming:
            self._stats.current_streaming_requests -= 1
        self._stats.completed_requests += 1
        self._publish_gauges()

        # Bookkeeping is done; policy failures must not reach the caller
        if not msg.reply.done():
            msg.reply.set_result(None)

        entry.response_status = msg.outcome.status
        entry.bytes_written = msg.outcome.bytes_written
        entry.can_be_slow = msg.outcome.can_be_slow
        self._apply_completion_policy(entry)

    def _publish_gauges(self) -> None:
        self.metrics.gauge("http_reqs", self._stats.total_requests)
        self.metrics.gauge("current_http_reqs", self._stats.current_requests)
        self.metrics.gauge("current_ws_reqs", self._stats.current_streaming_requests)

    def _apply_completion_policy(self, entry: InFlightRequest) -> None:
        runtime = self.config.runtime
        duration = entry.duration()

        self.access_log.write(
            method=entry.method,
            path=entry.url,
            protocol=entry.protocol,
            status=entry.response_status,
            size=entry.bytes_written,
            remote_ip=entry.remote_ip,
            referrer=entry.referrer,
            user_agent=entry.user_agent,
            duration=duration,
            start_time=entry.start_time,
        )

        if not entry.is_streaming:
            self.metrics.inc(f"http_status.{entry.response_status}")
            self.metrics.timing("http_req_duration", duration)

            slow_limit = runtime.slow_req_secs
            if slow_limit > 0 and duration > slow_limit:
                if entry.can_be_slow:
                    self.logger.debug("slow_request_allowed", request_id=entry.id, url=entry.url, duration=duration)
                else:
                    self.logger.warning(
                        "slow_request",
                        request_id=entry.id,
                        method=entry.method,
                        url=entry.url,
                        duration=round(duration, 3),
                        limit=slow_limit,
                    )

        completed = self._stats.completed_requests
        if runtime.gc_requests > 0 and completed % runtime.gc_requests == 0:
            self.logger.info("forcing_gc", completed_requests=completed)
            # Runs on the control task, so admits and retires wait for it
            gc.collect()

        if runtime.max_requests > 0 and completed > runtime.max_requests:
            self.logger.info(
                "max_requests_exceeded",
                completed_requests=completed,
                max_requests=runtime.max_requests,
            )
            if self.restart_trigger is not None:
                self.restart_trigger(f"max requests {runtime.max_requests} exceeded ({completed})")


__all__ = [
    'InFlightRequest',
    'RequestHandle',
    'RequestOutcome',
    'AppStats',
    'RequestRegistry',
    'client_address',
]
