"""Boundaries to the download service, direct files and chat attachments."""

from media_relay.downloader.attachments import (
    AttachmentRefresher,
    is_attachment_expired,
    is_attachment_url,
)
from media_relay.downloader.client import (
    DirectFileFetcher,
    DownloadConstraints,
    DownloadedFile,
    DownloadServiceClient,
)
from media_relay.downloader.validation import (
    SizeLimits,
    detect_kind,
    sanitize_filename,
    sniff_kind,
    validate_attachment,
    validate_signature,
    validate_url,
)

__all__ = [
    "AttachmentRefresher",
    "DirectFileFetcher",
    "DownloadConstraints",
    "DownloadServiceClient",
    "DownloadedFile",
    "SizeLimits",
    "detect_kind",
    "is_attachment_expired",
    "is_attachment_url",
    "sanitize_filename",
    "sniff_kind",
    "validate_attachment",
    "validate_signature",
    "validate_url",
]
