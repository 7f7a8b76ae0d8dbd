"""Operation lifecycle tracking, broadcast and stuck-operation sweep."""

from media_relay.operations.models import (
    Operation,
    OperationStatus,
    OperationStep,
    OperationType,
)
from media_relay.operations.observers import (
    CallbackObserver,
    OperationObserver,
    RedisObserver,
    WebhookObserver,
)
from media_relay.operations.sweeper import StuckOperationSweeper
from media_relay.operations.tracker import OperationTracker

__all__ = [
    "CallbackObserver",
    "Operation",
    "OperationObserver",
    "OperationStatus",
    "OperationStep",
    "OperationTracker",
    "OperationType",
    "RedisObserver",
    "StuckOperationSweeper",
    "WebhookObserver",
]
