"""Record store facade over the repositories."""

import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_relay.core.logging import get_logger
from media_relay.ledger.models import LedgerEntry

from .repositories import (
    OperationLogRepository,
    ProcessedUrlRepository,
    UserMetricsRepository,
)

logger = get_logger()

TIMEOUT_MESSAGE = "Operation timed out - marked as failed due to inactivity"


@dataclass(frozen=True)
class StuckOperation:
    operation_id: str
    user_id: str | None = None


class RecordStore:
    """Persistent store shared by the ledger, the tracker and the sweep.

    Every call runs in its own session and commits before returning.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_ledger_entry(self, url_hash: str) -> LedgerEntry | None:
        async with self.session_factory() as session:
            row = await ProcessedUrlRepository(session).get_by_id(url_hash)
            return LedgerEntry.model_validate(row) if row is not None else None

    async def upsert_ledger_entry(self, entry: LedgerEntry) -> None:
        async with self.session_factory() as session:
            await ProcessedUrlRepository(session).upsert(**entry.model_dump())

    async def count_ledger_entries(self) -> int:
        async with self.session_factory() as session:
            return await ProcessedUrlRepository(session).count()

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
    ) -> None:
        async with self.session_factory() as session:
            await OperationLogRepository(session).append(
                operation_id=operation_id,
                step=step,
                status=status,
                timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
                message=message,
                file_path=file_path,
                stack_trace=stack_trace,
                details=metadata,
            )

    async def get_operation_trace(self, operation_id: str) -> list[dict[str, Any]]:
        async with self.session_factory() as session:
            rows = await OperationLogRepository(session).trace(operation_id)
            return [
                {
                    "step": row.step,
                    "status": row.status,
                    "timestamp": row.timestamp,
                    "message": row.message,
                    "file_path": row.file_path,
                    "stack_trace": row.stack_trace,
                    "metadata": row.details,
                }
                for row in rows
            ]

    async def upsert_user_metrics(
        self,
        user_id: str,
        username: str | None,
        increments: dict[str, int],
        last_command_at: int | None = None,
    ) -> None:
        async with self.session_factory() as session:
            await UserMetricsRepository(session).upsert_increment(
                user_id=user_id,
                username=username,
                increments=increments,
                last_command_at=last_command_at or int(time.time() * 1000),
            )

    async def get_user_metrics(self, user_id: str) -> dict[str, Any] | None:
        async with self.session_factory() as session:
            row = await UserMetricsRepository(session).get_by_id(user_id)
            if row is None:
                return None
            data = {name: getattr(row, name) for name in UserMetricsRepository.COUNTERS}
            data.update(
                user_id=row.user_id,
                username=row.username,
                last_command_at=row.last_command_at,
            )
            return data

    async def list_stuck_operations(self, threshold_minutes: int) -> list[StuckOperation]:
        """Operations still ``running`` after ``threshold_minutes``, with their owner."""
        cutoff = int(time.time() * 1000) - threshold_minutes * 60 * 1000
        async with self.session_factory() as session:
            repo = OperationLogRepository(session)
            operation_ids = await repo.stuck_operation_ids(cutoff)
            owners = await repo.owners(operation_ids)
        return [
            StuckOperation(operation_id=operation_id, user_id=owners.get(operation_id))
            for operation_id in operation_ids
        ]

    async def mark_operation_failed(
        self, operation_id: str, message: str = TIMEOUT_MESSAGE
    ) -> bool:
        """Record a terminal error for a stuck operation.

        Returns:
            False if the operation is no longer running
        """
        async with self.session_factory() as session:
            repo = OperationLogRepository(session)
            latest = await repo.latest_status(operation_id)
            if latest is None or latest.status != "running":
                return False
            await repo.append(
                operation_id=operation_id,
                step="status_update",
                status="error",
                timestamp=int(time.time() * 1000),
                message=message,
                details={
                    "previous_status": "running",
                    "new_status": "error",
                    "reason": "timeout",
                    "auto_marked": True,
                },
            )
        logger.info("operation_marked_failed", operation_id=operation_id)
        return True
