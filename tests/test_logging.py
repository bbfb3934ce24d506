"""Tests for log processors."""

from tessera.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    redact_email,
    set_correlation_id,
)


class TestRedaction:
    """Tests for PII redaction."""

    def test_sensitive_keys_masked(self):
        """Secrets, tokens, codes and addresses are masked."""
        event = _redact_pii(
            None,
            "info",
            {
                "event": "x",
                "access_token": "eyJhbGciOi.payload.sig",
                "email": "alice@example.com",
                "code": "123456",
                "user_id": "u-1",
            },
        )
        assert event["access_token"] == "ey***ig"
        assert event["email"] == "al***@example.com"
        assert event["code"] == "12***56"
        assert event["user_id"] == "u-1"

    def test_short_values_fully_masked(self):
        """Values too short to partially show are replaced."""
        assert _redact_pii(None, "info", {"secret": "abc"})["secret"] == "***"

    def test_error_code_kept(self):
        """Stable error codes are not treated as secrets."""
        assert _redact_pii(None, "info", {"error_code": "rate_limited"})["error_code"] == "rate_limited"

    def test_recipient_redacted_once(self):
        """Already redacted recipients stay readable and raw ones are redacted."""
        event = _redact_pii(None, "info", {"to": "al***@example.com", "recipient": "bob@example.com"})
        assert event["to"] == "al***@example.com"
        assert event["recipient"] == "bo***@example.com"

    def test_similar_keys_pass_through(self):
        """Keys that merely contain an address word are left alone."""
        event = _redact_pii(
            None,
            "info",
            {"total": "42", "topic": "login", "token_type": "refresh", "attempts": 3},
        )
        assert event == {"total": "42", "topic": "login", "token_type": "refresh", "attempts": 3}

    def test_redact_email(self):
        """Only the first two characters of the local part survive."""
        assert redact_email("alice@example.com") == "al***@example.com"
        assert redact_email("invalid") == "redacted"


class TestCorrelation:
    """Tests for correlation ids."""

    def test_correlation_id_added(self):
        """The current correlation id is attached to events."""
        cid = set_correlation_id("cid-123")
        assert get_correlation_id() == cid
        assert _add_correlation_id(None, "info", {})["correlation_id"] == "cid-123"

    def test_generated_when_missing(self):
        """A fresh id is generated when none is supplied."""
        assert len(set_correlation_id()) == 36
