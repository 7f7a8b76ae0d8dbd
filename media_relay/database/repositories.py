"""Repository pattern for database operations."""

from abc import ABC
from collections.abc import Sequence
from typing import Any, Generic, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .models import OperationLogModel, ProcessedUrlModel, UserMetricsModel, utc_now

ModelType = TypeVar("ModelType")

STATUS_UPDATE_STEP = "status_update"
CREATED_STEP = "created"


class BaseRepository(ABC, Generic[ModelType]):
    """Base repository for common database operations."""

    def __init__(self, session: AsyncSession, model: type[ModelType]):
        self.session = session
        self.model = model

    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        """Get entity by primary key."""
        return await self.session.get(self.model, id)

    async def count(self, filters: Optional[dict[str, Any]] = None) -> int:
        """Count entities with optional filtering."""
        query = select(func.count()).select_from(self.model)

        if filters:
            for key, value in filters.items():
                if hasattr(self.model, key):
                    query = query.filter(getattr(self.model, key) == value)

        result = await self.session.execute(query)
        return result.scalar() or 0

    def _insert(self):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        dialect = self.session.bind.dialect.name if self.session.bind else ""
        if dialect == "sqlite":
            return sqlite_insert(self.model)
        return pg_insert(self.model)


class ProcessedUrlRepository(BaseRepository[ProcessedUrlModel]):
    """Repository for the URL processing ledger."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, ProcessedUrlModel)

    async def upsert(self, **values: Any) -> None:
        """Insert or overwrite the entry for ``values["url_hash"]``."""
        stmt = self._insert().values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ProcessedUrlModel.url_hash],
            set_={key: stmt.excluded[key] for key in values if key != "url_hash"},
        )
        await self.session.execute(stmt)
        await self.session.commit()


class OperationLogRepository(BaseRepository[OperationLogModel]):
    """Repository for the append-only operation trace."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, OperationLogModel)

    async def append(
        self,
        operation_id: str,
        step: str,
        status: str,
        timestamp: int,
        message: str | None = None,
        file_path: str | None = None,
        stack_trace: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> OperationLogModel:
        """Append one log row."""
        row = OperationLogModel(
            operation_id=operation_id,
            step=step,
            status=status,
            timestamp=timestamp,
            message=message,
            file_path=file_path,
            stack_trace=stack_trace,
            details=details,
        )
        self.session.add(row)
        await self.session.commit()
        return row

    async def trace(self, operation_id: str) -> Sequence[OperationLogModel]:
        """All rows for an operation in insertion order."""
        query = (
            select(OperationLogModel)
            .where(OperationLogModel.operation_id == operation_id)
            .order_by(OperationLogModel.timestamp, OperationLogModel.id)
        )
        result = await self.session.execute(query)
        return result.scalars().all()

    async def latest_status(self, operation_id: str) -> Optional[OperationLogModel]:
        query = (
            select(OperationLogModel)
            .where(
                OperationLogModel.operation_id == operation_id,
                OperationLogModel.step == STATUS_UPDATE_STEP,
            )
            .order_by(OperationLogModel.id.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def stuck_operation_ids(self, cutoff_ms: int) -> list[str]:
        """Operations whose latest status update is ``running`` and older than cutoff."""
        latest = (
            select(func.max(OperationLogModel.id).label("id"))
            .where(OperationLogModel.step == STATUS_UPDATE_STEP)
            .group_by(OperationLogModel.operation_id)
            .subquery()
        )
        query = (
            select(OperationLogModel.operation_id)
            .join(latest, OperationLogModel.id == latest.c.id)
            .where(
                OperationLogModel.status == "running",
                OperationLogModel.timestamp < cutoff_ms,
            )
            .order_by(OperationLogModel.timestamp)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def owners(self, operation_ids: Sequence[str]) -> dict[str, Optional[str]]:
        """User recorded in each operation's ``created`` step."""
        if not operation_ids:
            return {}
        query = select(OperationLogModel.operation_id, OperationLogModel.details).where(
            OperationLogModel.operation_id.in_(list(operation_ids)),
            OperationLogModel.step == CREATED_STEP,
        )
        result = await self.session.execute(query)
        return {
            operation_id: (details or {}).get("user_id")
            for operation_id, details in result.all()
        }


class UserMetricsRepository(BaseRepository[UserMetricsModel]):
    """Repository for per-user aggregates."""

    COUNTERS = (
        "total_commands",
        "successful_commands",
        "failed_commands",
        "total_convert",
        "total_download",
        "total_optimize",
        "total_file_size",
    )

    def __init__(self, session: AsyncSession):
        super().__init__(session, UserMetricsModel)

    async def upsert_increment(
        self,
        user_id: str,
        username: str | None,
        increments: dict[str, int],
        last_command_at: int,
    ) -> None:
        """Add increments to the user's counters, creating the row if needed."""
        values: dict[str, Any] = {name: int(increments.get(name, 0)) for name in self.COUNTERS}
        values.update(
            user_id=user_id,
            username=username,
            last_command_at=last_command_at,
            updated_at=utc_now(),
        )
        stmt = self._insert().values(**values)
        set_: dict[str, Any] = {
            name: getattr(UserMetricsModel, name) + stmt.excluded[name]
            for name in self.COUNTERS
        }
        set_.update(
            username=stmt.excluded.username,
            last_command_at=stmt.excluded.last_command_at,
            updated_at=stmt.excluded.updated_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserMetricsModel.user_id], set_=set_
        )
        await self.session.execute(stmt)
        await self.session.commit()
