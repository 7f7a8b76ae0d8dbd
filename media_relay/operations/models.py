"""Operation and step models."""

import time
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


def now_ms() -> int:
    return int(time.time() * 1000)


class OperationStatus(str, Enum):
    """Lifecycle states of an operation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.SUCCESS, OperationStatus.ERROR)


class OperationType(str, Enum):
    """Kinds of work tracked."""

    CONVERT = "convert"
    DOWNLOAD = "download"
    OPTIMIZE = "optimize"
    OTHER = "other"


# Allowed status transitions
TRANSITIONS: dict[OperationStatus, set[OperationStatus]] = {
    OperationStatus.PENDING: {OperationStatus.RUNNING},
    OperationStatus.RUNNING: {OperationStatus.SUCCESS, OperationStatus.ERROR},
    OperationStatus.SUCCESS: set(),
    OperationStatus.ERROR: set(),
}


class OperationStep(BaseModel):
    """One entry of an operation's step log."""

    step: str
    status: str
    timestamp: int = Field(default_factory=now_ms)
    elapsed_ms: int | None = None
    message: str | None = None
    file_path: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Operation(BaseModel):
    """A tracked unit of work."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    type: OperationType
    status: OperationStatus = OperationStatus.PENDING
    user_id: str | None = None
    username: str | None = None
    created_at: int = Field(default_factory=now_ms)
    started_at: int | None = None
    updated_at: int = Field(default_factory=now_ms)
    duration_ms: int | None = None
    file_size: int | None = None
    error: str | None = None
    stack_trace: str | None = None
    steps: list[OperationStep] = Field(default_factory=list)
    file_paths: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)

    def public_dict(self) -> dict[str, Any]:
        """Serializable view for observers and the API, without stack traces."""
        return self.model_dump(mode="json", exclude={"stack_trace"})
