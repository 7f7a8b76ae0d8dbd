"""Error taxonomy shared by every component."""

import math


class MediaRelayError(Exception):
    """Base class for failures that end an operation with a readable message."""

    default_user_message = "something went wrong while processing your request"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_user_message
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Single human-readable line suitable for end users."""
        return self.message


class ConfigurationError(MediaRelayError):
    """Raised when a component is missing required configuration."""


class ValidationError(MediaRelayError):
    """Raised for malformed input: URLs, file signatures, sizes or options."""

    default_user_message = "invalid input"


class UpstreamFetchError(MediaRelayError):
    """Raised when the download service or the remote store fails."""

    default_user_message = "failed to fetch media from the upstream service"


class RateLimitError(UpstreamFetchError):
    """Raised when an upstream service signals rate limiting."""

    default_user_message = "the download service is busy, try again later"

    def __init__(
        self, message: str | None = None, retry_after: float | None = None
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    @property
    def user_message(self) -> str:
        if self.retry_after:
            return f"rate limited, try again in {int(self.retry_after)}s"
        return "rate limited, try again later"


class StaleResourceError(MediaRelayError):
    """Raised when a remote reference has expired and could not be refreshed."""

    default_user_message = "the attachment link has expired"

    def __init__(self, message: str | None = None, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class TranscodeError(MediaRelayError):
    """Raised when the transcoder subprocess fails or times out."""

    default_user_message = "failed to process the media file"


class UploadError(MediaRelayError):
    """Raised when an artifact cannot be delivered."""

    default_user_message = "failed to upload the processed file"


class StorageExhaustedError(UploadError):
    """Raised when every delivery strategy in the chain has failed."""

    def __init__(self, failures: list[tuple[str, str]]) -> None:
        self.failures = failures
        detail = "; ".join(f"{method}: {error}" for method, error in failures)
        super().__init__(f"all delivery methods failed ({detail or 'none applicable'})")

    @property
    def user_message(self) -> str:
        return self.default_user_message


class ThrottledError(MediaRelayError):
    """Raised when a user starts requests faster than the cooldown allows."""

    def __init__(self, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(
            f"please wait {max(math.ceil(retry_after), 1)}s before starting another request"
        )


class DeferredError(MediaRelayError):
    """Raised when a rate limited request was queued for a later retry.

    The operation ends here and the queued request reports back through
    the deferred download notifier.
    """

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(
            "the download service is busy, your request was queued "
            "and you will be notified when it is ready"
        )
