"""Deferred download request model."""

from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from media_relay.operations.models import now_ms


class DeferredStatus(str, Enum):
    """Lifecycle states of a deferred request."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_PERMANENT = "failed_permanent"
    CANCELLED = "cancelled"

    @property
    def is_closed(self) -> bool:
        return self in (
            DeferredStatus.COMPLETED,
            DeferredStatus.FAILED_PERMANENT,
            DeferredStatus.CANCELLED,
        )


class DeferredRequest(BaseModel):
    """A URL ingest parked until the download service accepts requests again."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    url: str
    user_id: str | None = None
    username: str | None = None
    channel_id: str | None = None
    is_admin: bool = False
    added_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    retry_count: int = 0
    status: DeferredStatus = DeferredStatus.PENDING
    error: str | None = None
    result: str | None = None
