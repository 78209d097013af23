"""
Tests for logging setup, access logging and stack dumps.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone

import pytest
import structlog
from structlog.testing import capture_logs

from prodrun.utils.logging import AccessLog, JSONFormatter, flush_logging, setup_logging
from prodrun.utils.stacks import dump_all_stacks, format_exception


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


def access_entry(access_log: AccessLog, **overrides):
    values = dict(
        method="GET",
        path="/hello",
        protocol="HTTP/1.1",
        status=200,
        size=5,
        remote_ip="10.0.0.1",
        referrer="",
        user_agent="curl/8",
        duration=0.0123,
        start_time=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
    )
    values.update(overrides)
    access_log.write(**values)


class TestSetupLogging:

    def test_file_handlers(self, temp_dir, restore_logging):
        result = setup_logging(
            app_name="svc",
            log_level="DEBUG",
            log_dir=temp_dir,
            enable_console=False,
            cache_loggers=False,
        )
        assert result["log_dir"] == temp_dir

        structlog.get_logger("svc").error("something_failed", detail=1)
        flush_logging()

        assert "something_failed" in (temp_dir / "svc.log").read_text()
        assert "something_failed" in (temp_dir / "svc-errors.log").read_text()

    def test_missing_dir_falls_back(self, temp_dir, restore_logging):
        result = setup_logging(
            app_name="svc",
            log_dir=temp_dir / "absent",
            enable_console=False,
            cache_loggers=False,
        )
        assert result["log_dir"] is None
        assert not (temp_dir / "absent").exists()

    def test_level_applied(self, restore_logging):
        setup_logging(log_level="warning", enable_console=False, cache_loggers=False)
        assert logging.getLogger().level == logging.WARNING


class TestJSONFormatter:

    def test_extra_fields(self):
        record = logging.LogRecord("svc", logging.INFO, __file__, 1, "hello %s", ("there",), None)
        record.request_id = 7
        record.unserializable = object()

        data = json.loads(JSONFormatter().format(record))
        assert data["message"] == "hello there"
        assert data["request_id"] == 7
        assert data["unserializable"].startswith("<object")


class TestAccessLog:

    def test_structured_event_without_file(self):
        access_log = AccessLog("web1")
        access_log.open()
        with capture_logs() as logs:
            access_entry(access_log, referrer="")
        assert logs[0]["event"] == "access"
        assert logs[0]["referrer"] == "-"
        assert logs[0]["bytes"] == 5

    def test_combined_line(self, temp_dir):
        access_log = AccessLog("web1", path=temp_dir / "access.log")
        access_log.open()
        access_entry(access_log)
        access_log.close()

        line = (temp_dir / "access.log").read_text()
        assert line == (
            'web1 0.012 10.0.0.1 - - [2024-01-02T03:04:05+00:00] '
            '"GET /hello HTTP/1.1" 200 5 "-" "curl/8"\n'
        )

    def test_port_trimmed(self, temp_dir):
        access_log = AccessLog("web1", path=temp_dir / "access.log")
        access_log.open()
        access_entry(access_log, remote_ip="10.0.0.1:5555")
        access_entry(access_log, remote_ip="::1")
        access_log.close()

        lines = (temp_dir / "access.log").read_text().splitlines()
        assert lines[0].split()[2] == "10.0.0.1"
        assert lines[1].split()[2] == "::1"

    def test_sampling(self, temp_dir):
        access_log = AccessLog("web1", path=temp_dir / "access.log", every=3)
        access_log.open()
        for i in range(7):
            access_entry(access_log, path=f"/r/{i}")
        access_log.close()

        lines = (temp_dir / "access.log").read_text().splitlines()
        assert len(lines) == 2

    def test_unopenable_file(self, temp_dir):
        access_log = AccessLog("web1", path=temp_dir / "missing" / "access.log")
        with capture_logs() as logs:
            access_log.open()
            access_entry(access_log)
        assert "access_log_open_failed" in [e["event"] for e in logs]


class TestStacks:

    def test_format_exception(self):
        try:
            raise ValueError("bad")
        except ValueError as e:
            text = format_exception(e)
        assert "ValueError: bad" in text
        assert "Traceback" in text

    @pytest.mark.asyncio
    async def test_dump_includes_threads_and_tasks(self):
        waiter = asyncio.create_task(asyncio.sleep(10), name="sleeper")
        await asyncio.sleep(0)
        try:
            dump = dump_all_stacks()
        finally:
            waiter.cancel()
        assert "Thread MainThread" in dump
        assert "Task sleeper" in dump

    def test_dump_without_loop(self):
        lines = dump_all_stacks().splitlines()
        assert not [line for line in lines if line.startswith("Task ")]
