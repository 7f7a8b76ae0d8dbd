"""Tests for the error taxonomy."""

from media_relay.core.errors import (
    DeferredError,
    MediaRelayError,
    RateLimitError,
    StorageExhaustedError,
    ThrottledError,
    UpstreamFetchError,
    UploadError,
    ValidationError,
)


class TestUserMessages:
    """Test user-facing messages."""

    def test_should_default_to_class_message(self):
        """Test an error without message uses its default."""
        assert ValidationError().user_message == "invalid input"

    def test_should_use_given_message(self):
        """Test the message is shown to users."""
        assert UpstreamFetchError("service down").user_message == "service down"

    def test_should_mention_retry_after_when_rate_limited(self):
        """Test rate limit messages include the wait time."""
        assert RateLimitError("429", retry_after=30).user_message == (
            "rate limited, try again in 30s"
        )
        assert RateLimitError("429").user_message == "rate limited, try again later"

    def test_should_be_upstream_errors(self):
        """Test rate limiting is a kind of upstream failure."""
        assert isinstance(RateLimitError(), UpstreamFetchError)
        assert isinstance(RateLimitError(), MediaRelayError)


class TestStorageExhaustedError:
    """Test chain exhaustion error."""

    def test_should_list_failures(self):
        """Test each failed method appears in the message."""
        error = StorageExhaustedError([("remote", "timeout"), ("local", "disk full")])

        assert isinstance(error, UploadError)
        assert error.failures == [("remote", "timeout"), ("local", "disk full")]
        assert "remote: timeout" in error.message
        assert "local: disk full" in error.message
        assert error.user_message == "failed to upload the processed file"


class TestThrottledError:
    """Test the cooldown error."""

    def test_should_round_wait_up_to_whole_seconds(self):
        """Test the wait shown to users is never zero."""
        assert ThrottledError(2.2).user_message == (
            "please wait 3s before starting another request"
        )
        assert ThrottledError(0.01).user_message == (
            "please wait 1s before starting another request"
        )
        assert ThrottledError(2.2).retry_after == 2.2


class TestDeferredError:
    """Test the queued-for-later error."""

    def test_should_carry_queued_request_id(self):
        """Test the queued request id travels with the error."""
        error = DeferredError("abc123")

        assert error.request_id == "abc123"
        assert "queued" in error.user_message
        assert not isinstance(error, UpstreamFetchError)
