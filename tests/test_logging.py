"""Log processors and client-facing error sanitization."""

import pytest

from rbacauth.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    sanitize_error_message,
    set_correlation_id,
)


class TestProcessors:
    def test_pii_fields_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "email": "person@example.com",
                "otp": "1234",
                "token": "eyJhbGciOi",
                "ip": "1.2.3.4",
            },
        )
        assert event["email"] == "pe***@example.com"
        assert event["token"] == "ey***Oi"
        assert event["otp"] == "***"
        assert event["ip"] == "1.2.3.4"

    def test_correlation_id_attached(self):
        set_correlation_id("req-9")
        try:
            assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-9"
        finally:
            correlation_id_var.set(None)
        assert "correlation_id" not in _add_correlation_id(None, "info", {})


class TestSanitize:
    @pytest.mark.parametrize(
        "message,leak",
        [
            ("failed to persist state at /srv/rbacauth/state/memory_store.json", "/srv/rbacauth"),
            ("connect to redis://:hunter2@cache:6379/0 failed", "hunter2"),
            ("bad config password=hunter2", "hunter2"),
        ],
    )
    def test_sensitive_fragments_removed(self, message, leak):
        cleaned = sanitize_error_message(message)
        assert leak not in cleaned
        assert "[redacted]" in cleaned

    def test_plain_message_untouched(self):
        assert sanitize_error_message("Failed to send OTP email. Please try again.") == (
            "Failed to send OTP email. Please try again."
        )

    def test_length_capped_and_empty_handled(self):
        assert len(sanitize_error_message("x" * 800)) == 500
        assert sanitize_error_message("") == "An error occurred"
