"""
Tests for error types and helpers.
"""

import pytest

from prodrun.utils.errors import (
    CLOSE_ABNORMAL_CLOSURE,
    CLOSE_INTERNAL_SERVER_ERR,
    CLOSE_NORMAL_CLOSURE,
    CLOSE_POLICY_VIOLATION,
    ConfigurationError,
    HTTPError,
    PidFileConflictError,
    ProdrunError,
    SupervisorError,
    WebSocketCloseMessage,
    bad_request,
    close_message_from_http_error,
    error_context,
    not_found,
    policy_violation,
    server_error,
)


class TestHTTPError:

    def test_body_gets_crlf(self):
        assert HTTPError(404, "gone").response_body() == b"gone\r\n"

    def test_helpers(self):
        assert not_found("x") == HTTPError(404, "x")
        assert bad_request("x").status == 400
        assert server_error().status == 500

    def test_equality_by_status_and_body(self):
        assert HTTPError(400, "a") == HTTPError(400, "a")
        assert HTTPError(400, "a") != HTTPError(400, "b")
        assert len({HTTPError(400, "a"), HTTPError(400, "a")}) == 1

    def test_message(self):
        assert str(HTTPError(403, "denied")) == "HTTP Error [403] - denied"


class TestCloseMapping:

    @pytest.mark.parametrize("status,expected", [
        (200, CLOSE_NORMAL_CLOSURE),
        (204, CLOSE_NORMAL_CLOSURE),
        (400, CLOSE_POLICY_VIOLATION),
        (404, CLOSE_POLICY_VIOLATION),
        (500, CLOSE_INTERNAL_SERVER_ERR),
        (503, CLOSE_INTERNAL_SERVER_ERR),
        (301, CLOSE_ABNORMAL_CLOSURE),
        (100, CLOSE_ABNORMAL_CLOSURE),
    ])
    def test_status_families(self, status, expected):
        msg = close_message_from_http_error(HTTPError(status, "reason"))
        assert msg.close_code == expected
        assert msg.body == "reason"

    def test_policy_violation(self):
        msg = policy_violation("no")
        assert isinstance(msg, WebSocketCloseMessage)
        assert msg.close_code == 1008


class TestProdrunError:

    def test_default_message(self):
        assert ConfigurationError().message == "Configuration error"

    def test_to_dict(self):
        data = PidFileConflictError(42, "/run/x.pid").to_dict()["error"]
        assert data["code"] == "PIDFILE_CONFLICT"
        assert data["severity"] == "fatal"
        assert "42" in data["message"]

    def test_supervisor_hierarchy(self):
        assert issubclass(PidFileConflictError, SupervisorError)

    def test_cause_recorded(self):
        try:
            raise ValueError("inner")
        except ValueError as e:
            err = ProdrunError("outer", cause=e)
        assert "ValueError: inner" in err.context.stack_trace


class TestErrorContext:

    def test_wraps_foreign_errors(self):
        with pytest.raises(ProdrunError) as exc_info:
            with error_context("registry", "admit", request_id="7"):
                raise KeyError("missing")
        assert exc_info.value.context.component == "registry"
        assert exc_info.value.context.operation == "admit"

    def test_annotates_prodrun_errors(self):
        with pytest.raises(ConfigurationError) as exc_info:
            with error_context("config", "load"):
                raise ConfigurationError("bad")
        assert exc_info.value.context.component == "config"

    def test_no_reraise(self):
        with error_context("x", "y", reraise=False):
            raise RuntimeError("swallowed")
