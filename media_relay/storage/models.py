"""Delivery types shared by the storage strategies."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol, Union


class DeliveryMethod(str, Enum):
    """How an artifact reached the caller."""

    INLINE = "inline"
    REMOTE = "remote"
    LOCAL = "local"


@dataclass(frozen=True)
class Local:
    """Artifact stored on local disk."""

    path: Path

    def url(self, base_url: str, key: str) -> str:
        return f"{base_url.rstrip('/')}/{key}"


@dataclass(frozen=True)
class Remote:
    """Artifact reachable at a public URL."""

    url: str


Location = Union[Local, Remote]


class InlineChannel(Protocol):
    """Response channel of the chat platform that can carry an attachment."""

    async def send(self, filename: str, data: bytes, content_type: str) -> str:
        """Send the attachment and return its URL."""
        ...


@dataclass
class Artifact:
    """Bytes on their way to a storage backend."""

    key: str
    data: bytes
    content_type: str
    metadata: dict[str, str] = field(default_factory=dict)
    inline_channel: Optional[InlineChannel] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def filename(self) -> str:
        return self.key.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class DeliveryResult:
    """Where an artifact ended up and how it got there."""

    url: str
    method: DeliveryMethod
    location: Location
    size: int
    key: str
    reused: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "method": self.method.value,
            "size": self.size,
            "key": self.key,
            "reused": self.reused,
        }
