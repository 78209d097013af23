"""Pid file handling for the supervisor."""

import os
from pathlib import Path
from typing import Optional

from ..utils.errors import PidFileConflictError, PidFileError
from ..utils.logging import get_logger


logger = get_logger("prodrun.supervisor.pidfile")


def pid_is_alive(pid: int) -> bool:
    """Signal-0 probe; a process we may not signal still counts as alive."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class PidFile:
    """
    ``<run_dir>/<service>.pid``, claimed only if its recorded process is gone.

    ``release`` removes the file only when this instance wrote it.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.owned = False

    def read_pid(self) -> Optional[int]:
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PidFileError(f"Cannot read pid file {self.path}: {e}") from e
        try:
            return int(content)
        except ValueError:
            logger.warning("pidfile_unparseable", path=str(self.path), content=content[:32])
            return None

    def acquire(self, pid: Optional[int] = None) -> None:
        existing = self.read_pid()
        if existing is not None:
            if pid_is_alive(existing):
                raise PidFileConflictError(existing, str(self.path))
            logger.info("reclaiming_stale_pidfile", path=str(self.path), stale_pid=existing)

        pid = pid or os.getpid()
        try:
            self.path.write_text(f"{pid}\n")
        except OSError as e:
            raise PidFileError(f"Cannot write pid file {self.path}: {e}") from e

        self.owned = True
        logger.info("pidfile_written", path=str(self.path), pid=pid)

    def release(self) -> None:
        if not self.owned:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("pidfile_remove_failed", path=str(self.path), error=str(e))
        self.owned = False


__all__ = ['PidFile', 'pid_is_alive']
