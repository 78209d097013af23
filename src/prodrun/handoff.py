"""
Listener handoff between an old and a new service process.

The old process starts its replacement with the listening socket passed
through ``pass_fds`` and two environment markers. The replacement rebuilds
the socket from the inherited descriptor, starts serving, then sends
``SIGQUIT`` to the old process so it can stop accepting and drain.
"""

import os
import signal
import socket
from typing import Optional, Tuple

from .utils.logging import get_logger


logger = get_logger("prodrun.handoff")

LISTEN_FD_ENV = "PRODRUN_LISTEN_FD"
LISTEN_PPID_ENV = "PRODRUN_LISTEN_PPID"

TAKEOVER_SIGNAL = getattr(signal, "SIGQUIT", None)


def handoff_supported() -> bool:
    """Descriptor passing and takeover signalling need POSIX."""
    return os.name == "posix" and TAKEOVER_SIGNAL is not None


def handoff_markers() -> Optional[Tuple[int, int]]:
    """Return ``(fd, ppid)`` when this process was started by a restart."""
    fd = os.environ.get(LISTEN_FD_ENV)
    ppid = os.environ.get(LISTEN_PPID_ENV)
    if not fd or not ppid:
        return None
    try:
        return int(fd), int(ppid)
    except ValueError:
        logger.error("bad_handoff_markers", fd=fd, ppid=ppid)
        return None


def clear_handoff_markers() -> None:
    """Drop the markers so our own replacement does not see stale values."""
    os.environ.pop(LISTEN_FD_ENV, None)
    os.environ.pop(LISTEN_PPID_ENV, None)


def inherit_listener() -> Optional[Tuple[socket.socket, int]]:
    """
    Rebuild the listening socket handed over by the previous process.

    Returns ``(socket, parent_pid)``, or None when there is nothing to
    inherit.
    """
    markers = handoff_markers()
    if markers is None:
        return None

    fd, ppid = markers
    try:
        sock = socket.socket(fileno=fd)
    except OSError as e:
        logger.error("inherit_listener_failed", fd=fd, error=str(e))
        clear_handoff_markers()
        return None

    sock.setblocking(False)
    clear_handoff_markers()
    logger.info("listener_inherited", fd=fd, parent_pid=ppid, address=str(sock.getsockname()))
    return sock, ppid


def notify_parent(ppid: int) -> bool:
    """Tell the previous process that we are serving on its listener."""
    if TAKEOVER_SIGNAL is None:
        return False
    try:
        os.kill(ppid, TAKEOVER_SIGNAL)
    except ProcessLookupError:
        logger.warning("handoff_parent_gone", parent_pid=ppid)
        return False
    except PermissionError as e:
        logger.error("handoff_notify_failed", parent_pid=ppid, error=str(e))
        return False

    logger.info("handoff_parent_notified", parent_pid=ppid)
    return True


def ensure_process_group_leader() -> None:
    """
    Make this process lead its own process group.

    The supervisor watches the group of the process it started; a service
    launched some other way gets a group of its own here. Replacements keep
    the group they inherit.
    """
    if os.name != "posix":
        return
    pid = os.getpid()
    if os.getpgrp() == pid:
        return
    try:
        os.setpgid(0, 0)
    except PermissionError as e:
        # Session leaders cannot move to a new group
        logger.debug("setpgid_refused", pid=pid, error=str(e))
        return
    logger.info("process_group_created", pgid=pid)


def bind_listener(host: str, port: int, backlog: int = 128) -> socket.socket:
    """Open a fresh listening TCP socket."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


__all__ = [
    'LISTEN_FD_ENV',
    'LISTEN_PPID_ENV',
    'TAKEOVER_SIGNAL',
    'handoff_supported',
    'handoff_markers',
    'clear_handoff_markers',
    'inherit_listener',
    'notify_parent',
    'ensure_process_group_leader',
    'bind_listener',
]
