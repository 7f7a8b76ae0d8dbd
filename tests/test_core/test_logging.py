"""Tests for logging processors and context binding."""

import structlog

from media_relay.core.logging import REDACTED, operation_context, redact_secrets


class TestRedactSecrets:
    """Test masking of credentials in log entries."""

    def test_should_mask_attachment_signature(self):
        """Test the hm parameter of an attachment link is hidden."""
        url = "https://cdn.discordapp.com/attachments/1/2/a.mp4?ex=65f0&is=65e0&hm=deadbeef"

        event = redact_secrets(None, "info", {"event": "fetch", "url": url})

        assert event["url"] == (
            f"https://cdn.discordapp.com/attachments/1/2/a.mp4?ex=65f0&is=65e0&hm={REDACTED}"
        )

    def test_should_mask_presigned_signature(self):
        """Test object store signatures are hidden and other params kept."""
        url = "https://bucket.example/x.gif?X-Amz-Credential=AK/1&X-Amz-Signature=abc&v=1"

        event = redact_secrets(None, "info", {"event": "upload", "url": url})

        assert "abc" not in event["url"]
        assert "AK/1" not in event["url"]
        assert event["url"].endswith("&v=1")

    def test_should_mask_secret_keys(self):
        """Test values under credential keys are replaced."""
        event = redact_secrets(
            None, "info", {"event": "refresh", "bot_token": "Bot xyz", "Authorization": "Bot xyz"}
        )

        assert event["bot_token"] == REDACTED
        assert event["Authorization"] == REDACTED

    def test_should_leave_plain_values_alone(self):
        """Test ordinary fields pass through unchanged."""
        event = redact_secrets(None, "info", {"event": "done", "size": 10, "note": "a=b"})

        assert event == {"event": "done", "size": 10, "note": "a=b"}


class TestOperationContext:
    """Test binding operation ids to log entries."""

    def test_should_bind_operation_id_inside_block(self):
        """Test the id and extra values are bound, then cleared on exit."""
        structlog.contextvars.clear_contextvars()

        with operation_context("op-1", user_id="u1"):
            bound = structlog.contextvars.get_contextvars()

        assert bound == {"operation_id": "op-1", "user_id": "u1"}
        assert structlog.contextvars.get_contextvars() == {}
