"""Structured log processors: redaction and correlation ids."""

from officegate.logging import (
    _add_correlation_id,
    _redact_sensitive,
    correlation_id_var,
    set_correlation_id,
)


class TestRedaction:
    def test_credentials_masked(self):
        event = _redact_sensitive(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "Correct-horse-42",
                "mfa_token": "eyJhbGciOi.payload.sig",
                "email": "ana@example.com",
                "code": "123",
            },
        )

        assert event["password"] == "Co***42"
        assert event["mfa_token"].startswith("ey***")
        assert "example.com" not in event["email"]
        assert event["code"] == "***"

    def test_codes_and_ids_pass_through(self):
        event = _redact_sensitive(
            None,
            "warning",
            {"event": "error", "error_code": "account_locked", "status_code": 401, "user_id": "u-1"},
        )

        assert event == {
            "event": "error",
            "error_code": "account_locked",
            "status_code": 401,
            "user_id": "u-1",
        }


class TestCorrelationId:
    def test_bound_id_added_to_events(self):
        token = correlation_id_var.set(None)
        try:
            assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})
            cid = set_correlation_id("req-42")
            assert cid == "req-42"
            assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"
        finally:
            correlation_id_var.reset(token)

    def test_generated_when_missing(self):
        token = correlation_id_var.set(None)
        try:
            assert len(set_correlation_id()) == 36
        finally:
            correlation_id_var.reset(token)
