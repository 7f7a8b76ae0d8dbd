"""Download request coalescing."""

from media_relay.coalescer.queue import (
    AlreadyProcessed,
    DownloadCoalescer,
    FetchOptions,
    FetchResult,
)

__all__ = ["AlreadyProcessed", "DownloadCoalescer", "FetchOptions", "FetchResult"]
