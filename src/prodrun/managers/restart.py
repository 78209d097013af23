"""
Graceful restart coordination.

One restart sequence per process:

    NORMAL -> SPAWNING -> HANDOFF -> DRAINING -> TERMINAL -> exit

The replacement is started with the listening socket, takes over
accepting, and signals us; we then stop accepting, wait for in-flight
requests to finish (bounded by ``graceful_wait_secs``) and exit. A drain
timeout is a lossy cutover: the remaining requests are abandoned.
"""

import asyncio
import os
import signal
import socket
import sys
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..handoff import LISTEN_FD_ENV, LISTEN_PPID_ENV, TAKEOVER_SIGNAL, handoff_supported
from ..utils.config import ProdrunConfig
from ..utils.errors import RestartError
from ..utils.logging import get_logger, flush_logging
from .registry import AppStats


logger = get_logger("prodrun.restart")


class RestartPhase(Enum):
    NORMAL = "normal"
    SPAWNING = "spawning"
    HANDOFF = "handoff"
    DRAINING = "draining"
    TERMINAL = "terminal"


class RestartMode(Enum):
    HANDOFF = "handoff"       # replacement inherits the listener
    DEGRADED = "degraded"     # listener closed, replacement binds its own
    SHUTDOWN = "shutdown"     # drain and exit, no replacement


@dataclass
class RestartState:
    """Guards the single restart sequence of this process."""
    in_progress: bool = False
    reason: Optional[str] = None
    triggered_at: Optional[datetime] = None
    phase: RestartPhase = RestartPhase.NORMAL
    mode: Optional[RestartMode] = None


Spawner = Callable[[Optional[int]], Awaitable[Any]]
StatsSource = Callable[[], Awaitable[AppStats]]


async def spawn_replacement(listen_fd: Optional[int]) -> asyncio.subprocess.Process:
    """
    Start a copy of this process with the same interpreter and arguments.

    With ``listen_fd`` the descriptor is passed through at the same number
    and announced in the environment.
    """
    env = dict(os.environ)
    env.pop(LISTEN_FD_ENV, None)
    env.pop(LISTEN_PPID_ENV, None)
    pass_fds: tuple = ()

    if listen_fd is not None:
        env[LISTEN_FD_ENV] = str(listen_fd)
        env[LISTEN_PPID_ENV] = str(os.getpid())
        pass_fds = (listen_fd,)

    argv = [sys.executable, *sys.orig_argv[1:]]
    return await asyncio.create_subprocess_exec(*argv, env=env, pass_fds=pass_fds)


class RestartCoordinator:
    """Runs at most one restart or shutdown sequence for the process."""

    def __init__(
        self,
        config: ProdrunConfig,
        stats_source: StatsSource,
        spawner: Spawner = spawn_replacement,
        exit_func: Callable[[int], Any] = os._exit,
        supports_handoff: Optional[bool] = None,
    ):
        self.config = config
        self.stats_source = stats_source
        self.spawner = spawner
        self.exit_func = exit_func
        self.supports_handoff = handoff_supported() if supports_handoff is None else supports_handoff

        self.listener: Optional[socket.socket] = None
        self._stop_accepting: Optional[Callable[[], Any]] = None
        self._accepting_stopped = False

        self._state = RestartState()
        self._lock = threading.Lock()
        self._takeover = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed_signals: list = []

    @property
    def state(self) -> RestartState:
        return replace(self._state)

    @property
    def task(self) -> Optional[asyncio.Task]:
        """The running sequence, if any."""
        return self._task

    def attach_listener(
        self,
        listener: Optional[socket.socket],
        stop_accepting: Optional[Callable[[], Any]] = None,
    ) -> None:
        """Give the coordinator the socket to hand over and a way to stop accepting on it."""
        self.listener = listener
        self._stop_accepting = stop_accepting
        self._accepting_stopped = False

    # Entry points

    def trigger(self, reason: str) -> bool:
        """
        Start a graceful restart.

        Only the first caller wins; the sequence runs in the background and
        this returns immediately.
        """
        mode = RestartMode.HANDOFF if self._can_hand_off() else RestartMode.DEGRADED
        if not self._claim(reason, mode):
            return False
        self._schedule(self._run_restart())
        return True

    def shutdown(self, reason: str) -> bool:
        """Drain and exit without starting a replacement."""
        if not self._claim(reason, RestartMode.SHUTDOWN):
            return False
        self._schedule(self._run_shutdown())
        return True

    def notify_takeover(self) -> None:
        """Called when the replacement reports it is serving."""
        logger.info("takeover_notice_received", phase=self._state.phase.value)
        self._takeover.set()

    def _claim(self, reason: str, mode: RestartMode) -> bool:
        with self._lock:
            if self._state.in_progress:
                logger.info(
                    "restart_already_in_progress",
                    requested_reason=reason,
                    active_reason=self._state.reason,
                    phase=self._state.phase.value,
                )
                return False
            self._state = RestartState(
                in_progress=True,
                reason=reason,
                triggered_at=datetime.now(timezone.utc),
                phase=RestartPhase.NORMAL,
                mode=mode,
            )
        logger.warning("restart_triggered", reason=reason, mode=mode.value, pid=os.getpid())
        return True

    def _schedule(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            self._reset()
            raise RestartError("restart must be triggered from the event loop thread")
        self._task = loop.create_task(coro, name="restart-sequence")

    def _can_hand_off(self) -> bool:
        return self.supports_handoff and self.listener is not None

    def _set_phase(self, phase: RestartPhase) -> None:
        previous = self._state.phase
        self._state.phase = phase
        logger.info("restart_phase", previous=previous.value, phase=phase.value, reason=self._state.reason)

    def _reset(self) -> None:
        with self._lock:
            self._state = RestartState()
        logger.info("restart_state_reset")

    # Sequences

    async def _run_restart(self) -> None:
        try:
            if self._state.mode == RestartMode.HANDOFF:
                if not await self._spawn_and_hand_off():
                    self._reset()
                    return
            else:
                await self._spawn_degraded()

            await self._drain()
            self._terminate()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("restart_sequence_failed", reason=self._state.reason, error=str(e), exc_info=True)
            self._reset()

    async def _run_shutdown(self) -> None:
        try:
            await self._drain()
            self._terminate()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("shutdown_sequence_failed", reason=self._state.reason, error=str(e), exc_info=True)
            self._terminate()

    async def _spawn_and_hand_off(self) -> bool:
        self._takeover.clear()
        self._set_phase(RestartPhase.SPAWNING)

        fd = self.listener.fileno()
        try:
            process = await self.spawner(fd)
        except OSError as e:
            logger.error("replacement_spawn_failed", error=str(e))
            return False

        logger.info("replacement_spawned", child_pid=process.pid, listen_fd=fd)
        self._set_phase(RestartPhase.HANDOFF)

        exited = asyncio.ensure_future(process.wait())
        takeover = asyncio.ensure_future(self._takeover.wait())
        try:
            done, _ = await asyncio.wait({exited, takeover}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (exited, takeover):
                if not task.done():
                    task.cancel()

        if takeover in done:
            logger.info("handoff_complete", child_pid=process.pid)
            return True

        logger.error(
            "replacement_exited_before_takeover",
            child_pid=process.pid,
            returncode=exited.result(),
        )
        return False

    async def _spawn_degraded(self) -> None:
        logger.warning(
            "handoff_unsupported",
            platform=sys.platform,
            has_listener=self.listener is not None,
        )
        self._set_phase(RestartPhase.SPAWNING)

        # The replacement has to bind the same address itself
        await self._stop_accepting_once()
        if self.listener is not None:
            self.listener.close()

        try:
            process = await self.spawner(None)
            logger.info("replacement_spawned", child_pid=getattr(process, "pid", None), listen_fd=None)
        except OSError as e:
            logger.error("replacement_spawn_failed", error=str(e))

    async def _stop_accepting_once(self) -> None:
        if self._accepting_stopped:
            return
        self._accepting_stopped = True
        if self._stop_accepting is None:
            return
        result = self._stop_accepting()
        if asyncio.iscoroutine(result):
            await result
        logger.info("stopped_accepting")

    async def _drain(self) -> bool:
        self._set_phase(RestartPhase.DRAINING)
        await self._stop_accepting_once()

        runtime = self.config.runtime
        poll = runtime.graceful_poll_msecs / 1000.0
        deadline = time.monotonic() + runtime.graceful_wait_secs

        while True:
            stats = await self.stats_source()
            if stats.current_requests == 0:
                logger.info("drain_complete", total_requests=stats.total_requests)
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "graceful_wait_timeout_lossy_cutover",
                    pending_requests=stats.current_requests,
                    graceful_wait_secs=runtime.graceful_wait_secs,
                )
                return False
            logger.info("draining", pending_requests=stats.current_requests)
            # The wait deadline bounds every poll interval
            await asyncio.sleep(min(poll, remaining))

    def _terminate(self) -> None:
        self._set_phase(RestartPhase.TERMINAL)
        logger.info("process_exiting", reason=self._state.reason, mode=self._state.mode.value)
        flush_logging()
        self.exit_func(0)

    # Signals

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """
        Route process signals to the coordinator.

        SIGUSR2 and SIGHUP restart, SIGTERM and SIGINT shut down, SIGQUIT is
        the takeover notice from a replacement.
        """
        loop = loop or asyncio.get_running_loop()
        self._loop = loop

        if os.name != "posix":
            for sig in (signal.SIGTERM, signal.SIGINT):
                signal.signal(sig, self._sync_signal_handler)
                self._installed_signals.append(sig)
            logger.info("signal_handlers_installed", signals=[s.name for s in self._installed_signals])
            return

        handlers = {
            signal.SIGUSR2: self._on_restart_signal,
            signal.SIGHUP: self._on_restart_signal,
            signal.SIGTERM: self._on_shutdown_signal,
            signal.SIGINT: self._on_shutdown_signal,
            TAKEOVER_SIGNAL: self._on_takeover_signal,
        }
        for sig, handler in handlers.items():
            loop.add_signal_handler(sig, handler, sig)
            self._installed_signals.append(sig)

        logger.info("signal_handlers_installed", signals=[s.name for s in self._installed_signals])

    def restore_signal_handlers(self) -> None:
        if self._loop is not None and os.name == "posix":
            for sig in self._installed_signals:
                self._loop.remove_signal_handler(sig)
        else:
            for sig in self._installed_signals:
                signal.signal(sig, signal.SIG_DFL)
        self._installed_signals.clear()

    def _on_restart_signal(self, sig: signal.Signals) -> None:
        logger.info("restart_signal_received", signal=sig.name)
        self.trigger("operator signal")

    def _on_shutdown_signal(self, sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        self.shutdown(f"signal {sig.name}")

    def _on_takeover_signal(self, sig: signal.Signals) -> None:
        self.notify_takeover()

    def _sync_signal_handler(self, signum: int, frame: Any) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(
                self._on_shutdown_signal, signal.Signals(signum)
            )


__all__ = [
    'RestartPhase',
    'RestartMode',
    'RestartState',
    'RestartCoordinator',
    'spawn_replacement',
]
