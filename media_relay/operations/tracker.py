"""Operation lifecycle tracking."""

import asyncio
import traceback
from collections import OrderedDict
from collections.abc import Iterable
from typing import Any, Protocol

from media_relay.core.errors import MediaRelayError
from media_relay.core.logging import get_logger
from media_relay.core.metrics import OPERATION_DURATION, OPERATIONS_TOTAL
from media_relay.operations.models import (
    TRANSITIONS,
    Operation,
    OperationStatus,
    OperationStep,
    OperationType,
    now_ms,
)
from media_relay.operations.observers import OperationObserver

logger = get_logger()


class OperationLogBackend(Protocol):
    async def append_operation_log(
        self,
        operation_id: str,
        step: str,
        status: str,
        message: str | None = None,
        file_path: str | None = None,
        stack_trace: str | None = None,
        metadata: dict[str, Any] | None = None,
        timestamp: int | None = None,
    ) -> None: ...

    async def upsert_user_metrics(
        self,
        user_id: str,
        username: str | None,
        increments: dict[str, int],
        last_command_at: int | None = None,
    ) -> None: ...


class OperationTracker:
    """Records the lifecycle and step trace of every operation.

    Status only moves forward: pending, running, then success or error.
    Persistence, broadcast and metrics failures are logged and never reach
    the caller, so tracking can not change an operation's outcome.
    """

    def __init__(
        self,
        record_store: OperationLogBackend | None = None,
        observers: Iterable[OperationObserver] = (),
        history_limit: int = 100,
    ):
        self.record_store = record_store
        self.observers = list(observers)
        self.history_limit = history_limit
        self._operations: OrderedDict[str, Operation] = OrderedDict()
        self._background: set[asyncio.Task[None]] = set()

    def add_observer(self, observer: OperationObserver) -> None:
        self.observers.append(observer)

    async def create(
        self,
        type: OperationType | str,
        user_id: str | None = None,
        username: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Create a pending operation and return its id."""
        try:
            operation_type = OperationType(type)
        except ValueError:
            logger.error("unknown_operation_type", operation_type=str(type))
            operation_type = OperationType.OTHER
        operation = Operation(
            type=operation_type,
            user_id=user_id,
            username=username,
            context=dict(context or {}),
        )
        self._operations[operation.id] = operation
        self._evict()

        metadata: dict[str, Any] = {
            "operation_type": operation.type.value,
            "user_id": user_id,
            "username": username,
            **operation.context,
        }
        if "original_url" in operation.context:
            metadata["input_type"] = "url"
        elif "attachment" in operation.context:
            metadata["input_type"] = "file"

        await self._persist(
            operation.id,
            "created",
            OperationStatus.PENDING.value,
            message=f"Operation {operation.type.value} created for user {username}",
            metadata=metadata,
        )
        await self._broadcast(operation)
        return operation.id

    async def start(self, operation_id: str) -> bool:
        return await self.update_status(operation_id, OperationStatus.RUNNING)

    async def log_step(
        self,
        operation_id: str,
        step: str,
        status: str,
        message: str | None = None,
        file_path: str | None = None,
        metadata: dict[str, Any] | None = None,
        stack_trace: str | None = None,
        broadcast: bool = False,
    ) -> None:
        """Append a step to the operation's trace without touching its status."""
        operation = self._find(operation_id)
        if operation is None:
            return
        if operation.status.is_terminal:
            logger.debug("step_after_terminal_ignored", operation_id=operation_id, step=step)
            return

        timestamp = now_ms()
        origin = operation.started_at or operation.created_at
        operation.steps.append(
            OperationStep(
                step=step,
                status=status,
                timestamp=timestamp,
                elapsed_ms=timestamp - origin,
                message=message,
                file_path=file_path,
                metadata=dict(metadata or {}),
            )
        )
        if file_path and file_path not in operation.file_paths:
            operation.file_paths.append(file_path)

        await self._persist(
            operation_id,
            step,
            status,
            message=message or f"Step {step} {status}",
            file_path=file_path,
            stack_trace=stack_trace,
            metadata=metadata,
            timestamp=timestamp,
        )
        if status == OperationStatus.ERROR.value or broadcast:
            await self._broadcast(operation)

    async def update_status(
        self,
        operation_id: str,
        status: OperationStatus | str,
        file_size: int | None = None,
        error: str | None = None,
        stack_trace: str | None = None,
    ) -> bool:
        """Move an operation to a new status.

        A terminal status requested for a pending operation passes through
        running first.

        Returns:
            True if the transition was applied
        """
        operation = self._find(operation_id)
        if operation is None:
            return False

        try:
            new_status = OperationStatus(status)
        except ValueError:
            logger.warning("unknown_operation_status", operation_id=operation_id, status=status)
            return False

        if operation.status is OperationStatus.PENDING and new_status.is_terminal:
            await self._transition(operation, OperationStatus.RUNNING)

        if new_status not in TRANSITIONS[operation.status]:
            logger.warning(
                "illegal_status_transition",
                operation_id=operation_id,
                current=operation.status.value,
                requested=new_status.value,
            )
            return False

        await self._transition(
            operation, new_status, file_size=file_size, error=error, stack_trace=stack_trace
        )
        return True

    async def finish(self, operation_id: str, file_size: int | None = None) -> bool:
        return await self.update_status(operation_id, OperationStatus.SUCCESS, file_size=file_size)

    async def fail(self, operation_id: str, error: BaseException | str) -> bool:
        """Record an error as the operation's terminal outcome.

        The user-facing message is kept as the operation error. The traceback
        stays in the step log and is excluded from public views.
        """
        operation = self._operations.get(operation_id)
        if operation is not None and operation.status.is_terminal:
            return False

        if isinstance(error, MediaRelayError):
            message = error.user_message
        elif isinstance(error, BaseException):
            message = str(error) or type(error).__name__
        else:
            message = str(error)

        stack_trace = None
        if isinstance(error, BaseException):
            stack_trace = "".join(traceback.format_exception(error))

        await self.log_step(
            operation_id,
            "error",
            OperationStatus.ERROR.value,
            message=str(error) if isinstance(error, BaseException) else message,
            stack_trace=stack_trace,
            metadata={"error_type": type(error).__name__}
            if isinstance(error, BaseException)
            else None,
        )
        return await self.update_status(
            operation_id, OperationStatus.ERROR, error=message, stack_trace=stack_trace
        )

    async def force_fail(self, operation_id: str, message: str) -> bool:
        """Fail an operation only if it is still running."""
        operation = self._operations.get(operation_id)
        if operation is None or operation.status is not OperationStatus.RUNNING:
            return False
        return await self.update_status(operation_id, OperationStatus.ERROR, error=message)

    def get(self, operation_id: str) -> Operation | None:
        return self._operations.get(operation_id)

    def recent(self, limit: int | None = None) -> list[Operation]:
        """Most recent operations first."""
        operations = list(reversed(self._operations.values()))
        return operations if limit is None else operations[:limit]

    def running_since_before(self, cutoff_ms: int) -> list[Operation]:
        return [
            op
            for op in self._operations.values()
            if op.status is OperationStatus.RUNNING
            and (op.started_at or op.created_at) < cutoff_ms
        ]

    async def drain(self) -> None:
        """Wait for background metric updates to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _transition(
        self,
        operation: Operation,
        status: OperationStatus,
        file_size: int | None = None,
        error: str | None = None,
        stack_trace: str | None = None,
    ) -> None:
        previous = operation.status
        timestamp = now_ms()
        operation.status = status
        operation.updated_at = timestamp
        if file_size is not None:
            operation.file_size = file_size
        if error is not None:
            operation.error = error
        if stack_trace is not None:
            operation.stack_trace = stack_trace
        if status is OperationStatus.RUNNING and operation.started_at is None:
            operation.started_at = timestamp

        if status.is_terminal:
            operation.duration_ms = timestamp - (operation.started_at or operation.created_at)
            OPERATIONS_TOTAL.labels(type=operation.type.value, status=status.value).inc()
            OPERATION_DURATION.labels(type=operation.type.value).observe(
                operation.duration_ms / 1000
            )
            logger.info(
                "operation_finished",
                operation_id=operation.id,
                type=operation.type.value,
                status=status.value,
                duration_ms=operation.duration_ms,
                error=operation.error,
            )

        metadata: dict[str, Any] = {
            "previous_status": previous.value,
            "new_status": status.value,
        }
        if file_size is not None:
            metadata["file_size"] = file_size
        await self._persist(
            operation.id,
            "status_update",
            status.value,
            message=error or f"Status changed from {previous.value} to {status.value}",
            stack_trace=stack_trace,
            metadata=metadata,
            timestamp=timestamp,
        )

        if status.is_terminal:
            task = asyncio.create_task(self._update_user_metrics(operation.model_copy()))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        await self._broadcast(operation)

    async def _update_user_metrics(self, operation: Operation) -> None:
        if self.record_store is None or not operation.user_id:
            return
        succeeded = operation.status is OperationStatus.SUCCESS
        increments = {
            "total_commands": 1,
            "successful_commands": int(succeeded),
            "failed_commands": int(not succeeded),
            f"total_{operation.type.value}": 1,
            "total_file_size": (operation.file_size or 0) if succeeded else 0,
        }
        try:
            await self.record_store.upsert_user_metrics(
                operation.user_id,
                operation.username,
                increments,
                last_command_at=operation.updated_at,
            )
        except Exception as e:
            logger.error(
                "user_metrics_update_failed",
                operation_id=operation.id,
                user_id=operation.user_id,
                error=str(e),
            )

    async def _persist(self, operation_id: str, step: str, status: str, **fields: Any) -> None:
        if self.record_store is None:
            return
        try:
            await self.record_store.append_operation_log(operation_id, step, status, **fields)
        except Exception as e:
            logger.error(
                "operation_log_write_failed",
                operation_id=operation_id,
                step=step,
                error=str(e),
            )

    async def _broadcast(self, operation: Operation) -> None:
        if not self.observers:
            return
        payload = operation.public_dict()
        for observer in self.observers:
            try:
                await observer.notify(payload)
            except Exception as e:
                logger.warning(
                    "operation_broadcast_failed",
                    operation_id=operation.id,
                    observer=type(observer).__name__,
                    error=str(e),
                )

    def _find(self, operation_id: str) -> Operation | None:
        operation = self._operations.get(operation_id)
        if operation is None:
            logger.warning("operation_not_found", operation_id=operation_id)
        return operation

    def _evict(self) -> None:
        # Drop the oldest finished operations first; active ones are kept
        excess = len(self._operations) - self.history_limit
        if excess <= 0:
            return
        for operation_id in [
            op.id for op in self._operations.values() if op.status.is_terminal
        ][:excess]:
            del self._operations[operation_id]
