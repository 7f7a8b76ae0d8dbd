"""Downloads parked while the download service is rate limited."""

from media_relay.deferred.models import DeferredRequest, DeferredStatus
from media_relay.deferred.queue import (
    PERMANENT_FAILURE_MARKERS,
    DeferredDownloadQueue,
    DeferredNotifier,
    DeferredProcessor,
    failed_message,
    ready_message,
)

__all__ = [
    "PERMANENT_FAILURE_MARKERS",
    "DeferredDownloadQueue",
    "DeferredNotifier",
    "DeferredProcessor",
    "DeferredRequest",
    "DeferredStatus",
    "failed_message",
    "ready_message",
]
