"""Periodic reaping of operations stuck in ``running``."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

from media_relay.core.logging import get_logger
from media_relay.core.metrics import STUCK_OPERATIONS_REAPED_TOTAL
from media_relay.database.store import TIMEOUT_MESSAGE, StuckOperation
from media_relay.operations.models import now_ms
from media_relay.operations.tracker import OperationTracker

logger = get_logger()

# Called with (operation_id, user_id, message) after an operation is reaped
StuckNotifier = Callable[[str, str | None, str], Awaitable[None]]


class StuckOperationSource(Protocol):
    async def list_stuck_operations(self, threshold_minutes: int) -> list[StuckOperation]: ...

    async def mark_operation_failed(self, operation_id: str, message: str = ...) -> bool: ...


class StuckOperationSweeper:
    """Force-fails operations left running past a threshold.

    Both the in-memory tracker and the persisted log are scanned, since an
    operation may have been lost from memory by a restart. Terminal
    operations are never touched, so repeated sweeps are harmless.
    """

    def __init__(
        self,
        tracker: OperationTracker,
        record_store: StuckOperationSource | None = None,
        threshold_minutes: int = 10,
        interval_seconds: float = 300.0,
        notifier: StuckNotifier | None = None,
    ):
        self.tracker = tracker
        self.record_store = record_store
        self.threshold_minutes = threshold_minutes
        self.interval_seconds = interval_seconds
        self.notifier = notifier
        self._stopped = asyncio.Event()

    async def sweep_once(self) -> list[str]:
        """Reap stuck operations once.

        Returns:
            Ids of the operations that were force-failed in this pass
        """
        cutoff = now_ms() - self.threshold_minutes * 60 * 1000
        candidates: dict[str, str | None] = {
            op.id: op.user_id for op in self.tracker.running_since_before(cutoff)
        }

        if self.record_store is not None:
            try:
                for stuck in await self.record_store.list_stuck_operations(
                    self.threshold_minutes
                ):
                    candidates.setdefault(stuck.operation_id, stuck.user_id)
            except Exception as e:
                logger.error("stuck_operation_query_failed", error=str(e))

        reaped: list[str] = []
        for operation_id, user_id in candidates.items():
            if await self._reap(operation_id):
                reaped.append(operation_id)
                STUCK_OPERATIONS_REAPED_TOTAL.inc()
                await self._notify(operation_id, user_id)

        if reaped:
            logger.info("stuck_operations_reaped", count=len(reaped), operation_ids=reaped)
        return reaped

    async def _reap(self, operation_id: str) -> bool:
        in_memory = await self.tracker.force_fail(operation_id, TIMEOUT_MESSAGE)
        if in_memory:
            # The tracker already persisted the terminal status update
            return True
        if self.tracker.get(operation_id) is not None or self.record_store is None:
            return False
        try:
            return await self.record_store.mark_operation_failed(operation_id, TIMEOUT_MESSAGE)
        except Exception as e:
            logger.error("stuck_operation_mark_failed", operation_id=operation_id, error=str(e))
            return False

    async def _notify(self, operation_id: str, user_id: str | None) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier(operation_id, user_id, TIMEOUT_MESSAGE)
        except Exception as e:
            logger.warning("stuck_operation_notify_failed", operation_id=operation_id, error=str(e))

    async def run(self) -> None:
        """Sweep every interval until stopped."""
        self._stopped.clear()
        while not self._stopped.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("stuck_sweep_failed", error=str(e))
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()
