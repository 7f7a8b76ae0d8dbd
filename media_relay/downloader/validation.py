"""Input validation for URLs and uploaded media."""

import ipaddress
import re
from dataclasses import dataclass
from urllib.parse import urlparse

from media_relay.content_store.models import ArtifactKind
from media_relay.core.errors import ValidationError
from media_relay.core.logging import get_logger

logger = get_logger()

ALLOWED_VIDEO_TYPES = frozenset(
    {
        "video/mp4",
        "video/quicktime",
        "video/webm",
        "video/x-msvideo",
        "video/x-matroska",
    }
)

ALLOWED_IMAGE_TYPES = frozenset(
    {
        "image/png",
        "image/jpeg",
        "image/jpg",
        "image/webp",
        "image/gif",
    }
)

VIDEO_EXTENSIONS = frozenset({".mp4", ".webm", ".mov", ".avi", ".mkv"})
IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".webp"})

_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost"}


@dataclass(frozen=True)
class SizeLimits:
    max_video_size: int
    max_image_size: int


def validate_url(url: str) -> str:
    """Reject URLs that are malformed or point at internal addresses.

    Args:
        url: URL supplied by a user

    Returns:
        The stripped URL

    Raises:
        ValidationError: If the URL is not an allowed public http(s) URL
    """
    candidate = (url or "").strip()
    try:
        parsed = urlparse(candidate)
    except ValueError as e:
        raise ValidationError("invalid URL format") from e

    if parsed.scheme not in ("http", "https"):
        raise ValidationError("only http and https protocols are allowed")

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        raise ValidationError("invalid URL format")
    if hostname in _BLOCKED_HOSTNAMES:
        raise ValidationError("localhost and loopback addresses are not allowed")

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return candidate

    if address.is_loopback:
        raise ValidationError("localhost and loopback addresses are not allowed")
    if (
        address.is_private
        or address.is_link_local
        or address.is_multicast
        or address.is_reserved
        or address.is_unspecified
    ):
        raise ValidationError("private and internal IP addresses are not allowed")
    return candidate


def detect_kind(extension: str | None, content_type: str | None = None) -> ArtifactKind:
    """Classify media by content type first, then extension.

    Unknown media is treated as video.
    """
    if content_type:
        lowered = content_type.lower()
        if lowered.startswith("video/"):
            return ArtifactKind.VIDEO
        if lowered.startswith("image/gif"):
            return ArtifactKind.GIF
        if lowered.startswith("image/"):
            return ArtifactKind.IMAGE

    ext = (extension or "").lower()
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    if ext == ".gif":
        return ArtifactKind.GIF
    if ext in IMAGE_EXTENSIONS:
        return ArtifactKind.IMAGE
    return ArtifactKind.VIDEO


def sniff_kind(data: bytes) -> ArtifactKind | None:
    """Identify media from its leading bytes, or None if unrecognised."""
    head = data[:32]
    if head.startswith((b"GIF87a", b"GIF89a")):
        return ArtifactKind.GIF
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return ArtifactKind.IMAGE
    if head.startswith(b"\xff\xd8\xff"):
        return ArtifactKind.IMAGE
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return ArtifactKind.IMAGE
    if head[:4] == b"RIFF" and head[8:12] == b"AVI ":
        return ArtifactKind.VIDEO
    if head[4:8] == b"ftyp":
        return ArtifactKind.VIDEO
    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return ArtifactKind.VIDEO
    return None


def validate_attachment(
    content_type: str | None,
    size: int,
    kind: ArtifactKind,
    limits: SizeLimits,
    is_admin: bool = False,
) -> None:
    """Check an uploaded file's MIME type and size.

    Admins bypass the size ceilings.

    Raises:
        ValidationError: If the type is unsupported or the file is too large
    """
    if kind is ArtifactKind.VIDEO:
        allowed, ceiling, label = ALLOWED_VIDEO_TYPES, limits.max_video_size, "video"
        formats = "mp4, mov, webm, avi, mkv"
    else:
        allowed, ceiling, label = ALLOWED_IMAGE_TYPES, limits.max_image_size, "image"
        formats = "png, jpg, jpeg, webp, gif"

    if not content_type or content_type.lower() not in allowed:
        raise ValidationError(f"unsupported {label} format. supported formats: {formats}")

    if size > ceiling:
        if not is_admin:
            raise ValidationError(
                f"{label} file is too large (max {ceiling // (1024 * 1024)}mb)"
            )
        logger.info(
            "size_limit_bypassed_for_admin",
            kind=label,
            size_mb=round(size / (1024 * 1024), 2),
            limit_mb=ceiling // (1024 * 1024),
        )


def validate_signature(data: bytes, kind: ArtifactKind) -> None:
    """Make sure the bytes really are the claimed kind of media.

    Raises:
        ValidationError: If the signature is missing or disagrees with ``kind``
    """
    sniffed = sniff_kind(data)
    if sniffed is None:
        raise ValidationError("unrecognised file signature")
    if kind is ArtifactKind.VIDEO and sniffed is not ArtifactKind.VIDEO:
        raise ValidationError("file contents do not match a video format")
    if kind is not ArtifactKind.VIDEO and sniffed is ArtifactKind.VIDEO:
        raise ValidationError("file contents do not match an image format")


def sanitize_filename(filename: str | None) -> str:
    """Strip directory parts and unsafe characters from a filename."""
    if not filename:
        return "file"
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = re.sub(r"[^A-Za-z0-9._-]", "_", name).lstrip(".")
    return name[:200] or "file"
