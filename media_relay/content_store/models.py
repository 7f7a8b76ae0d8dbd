"""Data models for content store."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from media_relay.core.errors import ValidationError
from media_relay.core.hashing import is_content_hash
from media_relay.storage.models import DeliveryMethod, Location


class ArtifactKind(str, Enum):
    """Kinds of stored artifacts."""

    IMAGE = "image"
    VIDEO = "video"
    GIF = "gif"  # animated image

    @property
    def directory(self) -> str:
        return _DIRECTORIES[self]

    @property
    def default_extension(self) -> str:
        return _DEFAULT_EXTENSIONS[self]


_DIRECTORIES = {
    ArtifactKind.IMAGE: "images",
    ArtifactKind.VIDEO: "videos",
    ArtifactKind.GIF: "gifs",
}

_DEFAULT_EXTENSIONS = {
    ArtifactKind.IMAGE: ".png",
    ArtifactKind.VIDEO: ".mp4",
    ArtifactKind.GIF: ".gif",
}

CONTENT_TYPES = {
    ".gif": "image/gif",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
}


def normalize_extension(extension: str | None, kind: ArtifactKind) -> str:
    """Sanitize an extension to ``.xyz`` form, defaulting per kind."""
    if kind is ArtifactKind.GIF:
        return ".gif"
    cleaned = re.sub(r"[^A-Za-z0-9.]", "", extension or "").lower().lstrip(".")
    if not cleaned:
        return kind.default_extension
    return f".{cleaned}"


def content_type_for(extension: str, kind: ArtifactKind) -> str:
    fallback = "video/mp4" if kind is ArtifactKind.VIDEO else "image/png"
    return CONTENT_TYPES.get(extension.lower(), fallback)


def storage_key(content_hash: str, kind: ArtifactKind, extension: str | None = None) -> str:
    """Build the canonical storage key for an artifact.

    Raises:
        ValidationError: If the hash is not a valid content hash
    """
    if not is_content_hash(content_hash):
        raise ValidationError(
            f"Invalid hash format: expected 64 hex characters, got: {content_hash}"
        )
    return f"{kind.directory}/{content_hash}{normalize_extension(extension, kind)}"


@dataclass
class ContentObject:
    """Represents a committed artifact in the content store."""

    content_hash: str
    kind: ArtifactKind
    extension: str
    size: int
    location: Location
    url: str
    method: DeliveryMethod
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        return storage_key(self.content_hash, self.kind, self.extension)
