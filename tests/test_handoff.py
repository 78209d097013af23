"""
Tests for listener handoff helpers.
"""

import os
import socket
from unittest import mock

import pytest
from structlog.testing import capture_logs

from prodrun import handoff
from prodrun.handoff import (
    LISTEN_FD_ENV,
    LISTEN_PPID_ENV,
    TAKEOVER_SIGNAL,
    bind_listener,
    clear_handoff_markers,
    ensure_process_group_leader,
    handoff_markers,
    inherit_listener,
    notify_parent,
)


posix_only = pytest.mark.skipif(os.name != "posix", reason="requires POSIX descriptor passing")


@pytest.fixture(autouse=True)
def clean_markers(monkeypatch):
    monkeypatch.delenv(LISTEN_FD_ENV, raising=False)
    monkeypatch.delenv(LISTEN_PPID_ENV, raising=False)


class TestMarkers:
    """Environment markers."""

    def test_absent(self):
        assert handoff_markers() is None
        assert inherit_listener() is None

    def test_present(self, monkeypatch):
        monkeypatch.setenv(LISTEN_FD_ENV, "5")
        monkeypatch.setenv(LISTEN_PPID_ENV, "1234")
        assert handoff_markers() == (5, 1234)

    def test_one_missing(self, monkeypatch):
        monkeypatch.setenv(LISTEN_FD_ENV, "5")
        assert handoff_markers() is None

    def test_garbage_logged(self, monkeypatch):
        monkeypatch.setenv(LISTEN_FD_ENV, "five")
        monkeypatch.setenv(LISTEN_PPID_ENV, "1234")
        with capture_logs() as logs:
            assert handoff_markers() is None
        assert logs[0]["event"] == "bad_handoff_markers"

    def test_clear(self, monkeypatch):
        monkeypatch.setenv(LISTEN_FD_ENV, "5")
        monkeypatch.setenv(LISTEN_PPID_ENV, "1234")
        clear_handoff_markers()
        assert LISTEN_FD_ENV not in os.environ
        assert LISTEN_PPID_ENV not in os.environ


@posix_only
class TestInheritListener:
    """Rebuilding the socket from a descriptor."""

    def test_inherits_listening_socket(self, monkeypatch):
        original = bind_listener("127.0.0.1", 0)
        port = original.getsockname()[1]
        fd = os.dup(original.fileno())
        monkeypatch.setenv(LISTEN_FD_ENV, str(fd))
        monkeypatch.setenv(LISTEN_PPID_ENV, "4321")

        try:
            inherited = inherit_listener()
            assert inherited is not None
            sock, ppid = inherited
            assert ppid == 4321
            assert sock.getsockname()[1] == port
            assert sock.getblocking() is False
            assert LISTEN_FD_ENV not in os.environ

            client = socket.create_connection(("127.0.0.1", port), timeout=2)
            client.close()
            sock.close()
        finally:
            original.close()

    def test_bad_descriptor(self, monkeypatch):
        monkeypatch.setenv(LISTEN_FD_ENV, "987654")
        monkeypatch.setenv(LISTEN_PPID_ENV, "4321")
        with capture_logs() as logs:
            assert inherit_listener() is None
        assert "inherit_listener_failed" in [e["event"] for e in logs]
        assert LISTEN_FD_ENV not in os.environ


@posix_only
class TestNotifyParent:
    """Takeover notice."""

    def test_sends_takeover_signal(self):
        with mock.patch("prodrun.handoff.os.kill") as kill:
            assert notify_parent(1234) is True
        kill.assert_called_once_with(1234, TAKEOVER_SIGNAL)

    def test_parent_gone(self):
        with mock.patch("prodrun.handoff.os.kill", side_effect=ProcessLookupError):
            with capture_logs() as logs:
                assert notify_parent(1234) is False
        assert logs[0]["event"] == "handoff_parent_gone"

    def test_not_permitted(self):
        with mock.patch("prodrun.handoff.os.kill", side_effect=PermissionError("denied")):
            assert notify_parent(1) is False


@posix_only
class TestProcessGroup:
    """Process group leadership."""

    def test_already_leader(self):
        with mock.patch("prodrun.handoff.os.getpgrp", return_value=os.getpid()), \
                mock.patch("prodrun.handoff.os.setpgid") as setpgid:
            ensure_process_group_leader()
        setpgid.assert_not_called()

    def test_becomes_leader(self):
        with mock.patch("prodrun.handoff.os.getpgrp", return_value=1), \
                mock.patch("prodrun.handoff.os.setpgid") as setpgid:
            ensure_process_group_leader()
        setpgid.assert_called_once_with(0, 0)

    def test_refused(self):
        with mock.patch("prodrun.handoff.os.getpgrp", return_value=1), \
                mock.patch("prodrun.handoff.os.setpgid", side_effect=PermissionError("leader")):
            ensure_process_group_leader()


class TestBindListener:
    """Fresh listeners."""

    def test_bind_ephemeral(self):
        sock = bind_listener("127.0.0.1", 0)
        try:
            assert sock.getsockname()[1] > 0
            assert sock.getblocking() is False
        finally:
            sock.close()

    def test_port_in_use(self):
        first = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        first.bind(("127.0.0.1", 0))
        first.listen(1)
        try:
            with pytest.raises(OSError):
                bind_listener("127.0.0.1", first.getsockname()[1])
        finally:
            first.close()

    def test_supported_on_posix(self):
        assert handoff.handoff_supported() == (os.name == "posix")
