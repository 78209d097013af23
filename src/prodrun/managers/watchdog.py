"""
Resource watchdog.

Samples process resources on a fixed period, publishes them as gauges and
asks for a graceful restart when a configured limit is reached.
"""

import asyncio
import gc
import statistics
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import psutil

from .base import BaseManager, ManagerConfig
from .registry import AppStats
from ..utils.config import ProdrunConfig
from ..utils.metrics import MetricsCollector


@dataclass
class ResourceSample:
    """One reading of the process resources."""
    sys_mem: int
    alloc_mem: int
    num_fds: int
    num_tasks: int


class ResourceSampler:
    """Reads resource usage of the current process through psutil."""

    def __init__(self, process: Optional[psutil.Process] = None):
        self.process = process or psutil.Process()

    def sample(self) -> ResourceSample:
        with self.process.oneshot():
            memory = self.process.memory_info()
            sys_mem = memory.rss
            # data segment approximates the heap; not every platform has it
            alloc_mem = getattr(memory, "data", 0) or memory.rss
            num_fds = self._num_fds()
            num_threads = self.process.num_threads()

        return ResourceSample(
            sys_mem=sys_mem,
            alloc_mem=alloc_mem,
            num_fds=num_fds,
            num_tasks=num_threads + self._num_asyncio_tasks(),
        )

    def _num_fds(self) -> int:
        if hasattr(self.process, "num_fds"):
            try:
                return self.process.num_fds()
            except psutil.AccessDenied:
                return 0
        return 0

    @staticmethod
    def _num_asyncio_tasks() -> int:
        try:
            return len(asyncio.all_tasks())
        except RuntimeError:
            return 0


class GcPauseTracker:
    """Records collector pause durations through ``gc.callbacks``."""

    def __init__(self, history: int = 256):
        self._pauses: deque = deque(maxlen=history)
        self._started: Optional[float] = None
        self._lock = threading.Lock()
        self._installed = False

    def install(self) -> None:
        if not self._installed:
            gc.callbacks.append(self._callback)
            self._installed = True

    def uninstall(self) -> None:
        if self._installed:
            gc.callbacks.remove(self._callback)
            self._installed = False

    def _callback(self, phase: str, info: Dict[str, Any]) -> None:
        if phase == "start":
            self._started = time.perf_counter()
        elif phase == "stop" and self._started is not None:
            with self._lock:
                self._pauses.append(time.perf_counter() - self._started)
            self._started = None

    def summary(self) -> Dict[str, float]:
        """Min, median and max pause in seconds over recent collections."""
        with self._lock:
            pauses = list(self._pauses)
        if not pauses:
            return {"min": 0.0, "median": 0.0, "max": 0.0}
        return {
            "min": min(pauses),
            "median": statistics.median(pauses),
            "max": max(pauses),
        }


class ResourceWatchdog(BaseManager):
    """
    Periodic resource check.

    Each tick samples memory, descriptors and task counts, publishes the
    ``mem.sys``, ``mem.alloc``, ``numfds`` and ``numgoro`` gauges (zeroed on
    the first tick after start), logs a ``watchdog_tick`` line and triggers
    a restart when a limit, the uptime limit or the request limit is hit.
    Registry state is read only through ``stats_source``.
    """

    def __init__(
        self,
        config: ProdrunConfig,
        stats_source: Callable[[], Awaitable[AppStats]],
        restart_trigger: Optional[Callable[[str], Any]] = None,
        metrics: Optional[MetricsCollector] = None,
        sampler: Optional[ResourceSampler] = None,
        gc_tracker: Optional[GcPauseTracker] = None,
    ):
        super().__init__(ManagerConfig(name="watchdog"))
        self.config = config
        self.stats_source = stats_source
        self.restart_trigger = restart_trigger
        self.metrics = metrics or MetricsCollector(enabled=False)
        self.sampler = sampler or ResourceSampler()
        self.gc_tracker = gc_tracker or GcPauseTracker()
        self._ticks = 0

    async def _start(self) -> None:
        self._ticks = 0
        self.gc_tracker.install()
        self._tasks.append(asyncio.create_task(self._watch_loop(), name="resource-watchdog"))

    async def _stop(self) -> None:
        self.gc_tracker.uninstall()

    async def _health_check(self) -> Dict[str, Any]:
        return {"ticks": self._ticks}

    async def _watch_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("watchdog_tick_failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.config.runtime.watchdog_secs)

    async def tick(self) -> Optional[str]:
        """Run one check; returns the restart reason when one was triggered."""
        sample = self.sampler.sample()
        stats = await self.stats_source()

        first_tick = self._ticks == 0
        self._ticks += 1
        self._publish(sample, zero=first_tick)

        pauses = self.gc_tracker.summary()
        self.logger.info(
            "watchdog_tick",
            mem_sys=sample.sys_mem,
            mem_alloc=sample.alloc_mem,
            numfds=sample.num_fds,
            numgoro=sample.num_tasks,
            current_requests=stats.current_requests,
            total_requests=stats.total_requests,
            gc_pause_min=pauses["min"],
            gc_pause_median=pauses["median"],
            gc_pause_max=pauses["max"],
        )

        reason = self._restart_reason(sample, stats)
        if reason is not None:
            self.logger.warning("watchdog_limit_reached", reason=reason)
            if self.restart_trigger is not None:
                self.restart_trigger(reason)
        return reason

    def _publish(self, sample: ResourceSample, zero: bool) -> None:
        values = {
            "mem.sys": sample.sys_mem,
            "mem.alloc": sample.alloc_mem,
            "numfds": sample.num_fds,
            "numgoro": sample.num_tasks,
        }
        for name, value in values.items():
            self.metrics.gauge(name, 0 if zero else value)

    def _restart_reason(self, sample: ResourceSample, stats: AppStats) -> Optional[str]:
        runtime = self.config.runtime
        limits = (
            ("sysmem", sample.sys_mem, runtime.sysmem_bytes_limit),
            ("allocmem", sample.alloc_mem, runtime.allocmem_bytes_limit),
            ("numfds", sample.num_fds, runtime.numfds_limit),
            ("numgoros", sample.num_tasks, runtime.numgoros_limit),
        )
        for name, value, limit in limits:
            if limit > 0 and value >= limit:
                return f"{name} {value} >= limit {limit}"

        if runtime.restart_after_secs > 0:
            uptime = (datetime.now(timezone.utc) - stats.start_time).total_seconds()
            if uptime > runtime.restart_after_secs:
                return f"uptime {uptime:.0f}s > restart_after_secs {runtime.restart_after_secs}"

        if runtime.max_requests > 0 and stats.total_requests > runtime.max_requests:
            return f"total requests {stats.total_requests} > max_requests {runtime.max_requests}"

        return None


__all__ = [
    'ResourceSample',
    'ResourceSampler',
    'GcPauseTracker',
    'ResourceWatchdog',
]
