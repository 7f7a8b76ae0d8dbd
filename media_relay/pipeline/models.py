"""Request and result models for the ingest pipeline."""

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from media_relay.content_store.models import ArtifactKind
from media_relay.operations.models import OperationType
from media_relay.storage.models import DeliveryMethod
from media_relay.transcoder.options import TransformOptions


class IngestRequest(BaseModel):
    """A single piece of media to ingest, from a URL or uploaded bytes."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: str | None = None
    username: str | None = None
    operation_type: OperationType = OperationType.CONVERT

    source_url: str | None = None
    data: bytes | None = None
    filename: str | None = None
    content_type: str | None = None

    kind_hint: ArtifactKind | None = None
    options: TransformOptions = Field(default_factory=TransformOptions)
    skip_cache: bool = False
    is_admin: bool = False
    # Chat response channel able to carry small files inline
    inline_channel: Any = None
    # Chat channel the request came from, kept with deferred downloads
    channel_id: str | None = None
    # Set when replaying a deferred download
    deferred: bool = False

    @model_validator(mode="after")
    def check_source(self) -> "IngestRequest":
        if (self.source_url is None) == (self.data is None):
            raise ValueError("exactly one of source_url or data must be given")
        return self


@dataclass(frozen=True)
class DeliveredArtifact:
    url: str
    size: int
    method: DeliveryMethod
    content_hash: str
    kind: ArtifactKind
    extension: str | None = None
    reused: bool = False


@dataclass
class IngestResult:
    """Outcome of an ingest request.

    ``cached`` is set when the answer came from the URL ledger and nothing
    was fetched.
    """

    operation_id: str
    artifacts: list[DeliveredArtifact] = field(default_factory=list)
    cached: bool = False

    @property
    def url(self) -> str:
        return self.artifacts[0].url

    @property
    def size(self) -> int:
        return self.artifacts[0].size

    @property
    def method(self) -> DeliveryMethod:
        return self.artifacts[0].method

    @property
    def total_size(self) -> int:
        return sum(artifact.size for artifact in self.artifacts)
