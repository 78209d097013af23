"""
External process supervisor.

Starts the service as the leader of a new process group, then watches the
group rather than the pid: after a graceful restart the original child is
gone but its replacement lives on in the same group. When the group stays
empty past the startup grace the supervisor gives up; it never restarts
the service itself.
"""

import asyncio
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from ..utils.config import ProdrunConfig
from ..utils.errors import (
    ChildDiedError,
    RuntimeDirError,
    SupervisorError,
    UnsupportedPlatformError,
)
from ..utils.logging import get_logger, flush_logging
from .pidfile import PidFile


logger = get_logger("prodrun.supervisor")

_UNCATCHABLE = {"SIGKILL", "SIGSTOP"}
_FAULT_SIGNALS = {"SIGSEGV", "SIGBUS", "SIGFPE", "SIGILL", "SIGABRT", "SIGTRAP", "SIGSYS"}


def forwardable_signals() -> List[signal.Signals]:
    """Every signal the supervisor listens for."""
    return [
        sig for sig in signal.Signals
        if sig.name not in _UNCATCHABLE and sig.name not in _FAULT_SIGNALS
    ]


@dataclass
class SupervisorState:
    child_pid: Optional[int] = None
    process_group_id: Optional[int] = None
    pid_file_path: Optional[Path] = None
    owns_pid_file: bool = False
    grace_remaining: int = 0


class ProcessSupervisor:
    """Keeps one eye on a service process group."""

    def __init__(
        self,
        project_name: str,
        service_name: str,
        exe: str,
        args: Sequence[str],
        config: ProdrunConfig,
        run_dir: Optional[Path] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.project_name = project_name
        self.service_name = service_name
        self.exe = exe
        self.args = list(args)
        self.config = config
        self.run_dir = Path(run_dir or config.supervisor.run_dir or f"/var/run/{project_name}")
        self.popen = popen

        self.pidfile = PidFile(self.run_dir / f"{service_name}.pid")
        self.state = SupervisorState(pid_file_path=self.pidfile.path)

    # Setup

    @staticmethod
    def check_platform() -> None:
        if os.name != "posix" or not hasattr(os, "killpg"):
            raise UnsupportedPlatformError()

    def prepare(self) -> None:
        """Check the run directory and claim the pid file."""
        if not self.run_dir.is_dir():
            raise RuntimeDirError(f"Run directory {self.run_dir} does not exist")
        self.pidfile.acquire()
        self.state.owns_pid_file = self.pidfile.owned

    def start_child(self) -> int:
        """Start the service in a new session so its pgid is its pid."""
        try:
            proc = self.popen([self.exe, *self.args], start_new_session=True)
        except OSError as e:
            raise SupervisorError(f"Failed to start {self.exe}: {e}") from e

        self.state.child_pid = proc.pid
        self.state.process_group_id = proc.pid
        self.state.grace_remaining = self.config.runtime.nelly_startup_grace_checks
        logger.info(
            "child_started",
            exe=self.exe,
            args=self.args,
            pid=proc.pid,
            grace_checks=self.state.grace_remaining,
        )
        return proc.pid

    # Checks

    def reap_children(self) -> int:
        """Collect every exited child; returns how many were reaped."""
        reaped = 0
        while True:
            try:
                pid, status = os.waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                break
            if pid == 0:
                break
            reaped += 1
            logger.info("child_reaped", pid=pid, exit_code=os.waitstatus_to_exitcode(status))
        return reaped

    def process_group_is_empty(self) -> bool:
        try:
            os.killpg(self.state.process_group_id, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def check(self) -> None:
        """
        Reap, then probe the group.

        An empty group uses up one grace check and is fatal once none are
        left. A non-empty group ends the startup grace for good.
        """
        self.reap_children()

        if self.process_group_is_empty():
            self.state.grace_remaining -= 1
            logger.warning(
                "process_group_empty",
                pgid=self.state.process_group_id,
                grace_remaining=self.state.grace_remaining,
            )
            if self.state.grace_remaining <= 0:
                raise ChildDiedError(f"Process group {self.state.process_group_id} has no members")
        else:
            self.state.grace_remaining = 0

    def terminate_group(self) -> None:
        try:
            os.killpg(self.state.process_group_id, signal.SIGTERM)
            logger.info("process_group_terminated", pgid=self.state.process_group_id)
        except ProcessLookupError:
            logger.info("process_group_already_gone", pgid=self.state.process_group_id)

    # Event loop

    async def _ticker(self, events: asyncio.Queue) -> None:
        interval = self.config.runtime.nelly_check_secs
        while True:
            await asyncio.sleep(interval)
            events.put_nowait(("tick", None))

    async def watch(self) -> int:
        """Consume ticks and signals until told to stop; returns the exit code."""
        loop = asyncio.get_running_loop()
        events: asyncio.Queue = asyncio.Queue()

        signals = forwardable_signals()
        previous = {sig: signal.getsignal(sig) for sig in signals}
        for sig in signals:
            loop.add_signal_handler(sig, events.put_nowait, ("signal", sig))

        ticker = asyncio.create_task(self._ticker(events))
        try:
            while True:
                kind, sig = await events.get()
                if kind == "tick" or sig == signal.SIGCHLD:
                    self.check()
                    continue

                logger.info("supervisor_signal_received", signal=sig.name)
                self.terminate_group()
                return 0
        finally:
            ticker.cancel()
            for sig in signals:
                loop.remove_signal_handler(sig)
                # remove_signal_handler resets to SIG_DFL, which would undo SIG_IGN on SIGPIPE
                if previous[sig] is not None:
                    signal.signal(sig, previous[sig])

    def run(self) -> int:
        """Supervise until the group dies or a signal arrives; returns the exit code."""
        try:
            self.check_platform()
            self.prepare()
            self.start_child()
            return asyncio.run(self.watch())
        except SupervisorError as e:
            logger.critical("supervisor_fatal", **e.to_dict())
            return 1
        finally:
            self.pidfile.release()
            self.state.owns_pid_file = False
            flush_logging()


__all__ = ['ProcessSupervisor', 'SupervisorState', 'forwardable_signals']
