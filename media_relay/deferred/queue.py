"""Persistent queue of downloads deferred while the download service is rate limited."""

import asyncio
import json
import os
import tempfile
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from media_relay.core.errors import MediaRelayError
from media_relay.core.logging import get_logger
from media_relay.core.metrics import DEFERRED_DOWNLOADS_TOTAL
from media_relay.deferred.models import DeferredRequest, DeferredStatus
from media_relay.operations.models import now_ms

logger = get_logger()

# Errors naming gone content are not worth retrying
PERMANENT_FAILURE_MARKERS = ("not found", "unavailable", "deleted")

# Runs a deferred request and returns the delivered URL
DeferredProcessor = Callable[[DeferredRequest], Awaitable[str]]

# Called with (request, message) once a request completes or gives up
DeferredNotifier = Callable[[DeferredRequest, str], Awaitable[None]]


def ready_message(result: str) -> str:
    return f"your deferred download is ready:\n{result}"


def failed_message(error: str) -> str:
    return f"your deferred download failed: {error}"


class DeferredDownloadQueue:
    """Retries parked URL ingests on an interval, one request at a time.

    The queue is saved to a JSON file after every change, so requests
    survive a restart. Failed requests are retried until ``max_retries``
    attempts have been made, unless the error says the content is gone.
    Closed requests are dropped once older than the retention window.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        processor: DeferredProcessor | None = None,
        notifier: DeferredNotifier | None = None,
        interval_seconds: float = 120.0,
        max_retries: int = 10,
        retention_hours: float = 24.0,
    ):
        self.path = Path(path) if path else None
        self.processor = processor
        self.notifier = notifier
        self.interval_seconds = interval_seconds
        self.max_retries = max_retries
        self.retention_hours = retention_hours
        self._items: dict[str, DeferredRequest] = {}
        self._lock = asyncio.Lock()
        self._processing = False
        self._stopped = asyncio.Event()

    async def load(self) -> int:
        """Load saved requests from disk.

        Requests caught mid-attempt by a shutdown go back to pending.

        Returns:
            Number of requests loaded
        """
        if self.path is None:
            return 0
        try:
            raw = await asyncio.to_thread(self._read, self.path)
        except (OSError, ValueError) as e:
            logger.warning("deferred_queue_load_failed", path=str(self.path), error=str(e))
            return 0
        items: dict[str, DeferredRequest] = {}
        for entry in raw:
            try:
                item = DeferredRequest.model_validate(entry)
            except ValueError as e:
                logger.warning("deferred_request_invalid", error=str(e))
                continue
            if item.status is DeferredStatus.PROCESSING:
                item.status = DeferredStatus.PENDING
            items[item.id] = item
        async with self._lock:
            # Requests added before loading are kept
            self._items = {**items, **self._items}
        logger.info("deferred_queue_loaded", count=len(items))
        return len(items)

    @staticmethod
    def _read(path: Path) -> list[dict[str, Any]]:
        if not path.is_file():
            return []
        data = json.loads(path.read_text(encoding="utf-8"))
        return data if isinstance(data, list) else []

    async def _save(self) -> None:
        if self.path is None:
            return
        payload = json.dumps(
            [item.model_dump(mode="json") for item in self._items.values()], indent=2
        )
        try:
            await asyncio.to_thread(self._write_atomic, self.path, payload)
        except OSError as e:
            # The queue keeps working from memory
            logger.error("deferred_queue_save_failed", path=str(self.path), error=str(e))

    @staticmethod
    def _write_atomic(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def add(
        self,
        url: str,
        user_id: str | None = None,
        username: str | None = None,
        channel_id: str | None = None,
        is_admin: bool = False,
    ) -> DeferredRequest:
        """Park a URL for a later attempt."""
        item = DeferredRequest(
            url=url,
            user_id=user_id,
            username=username,
            channel_id=channel_id,
            is_admin=is_admin,
        )
        async with self._lock:
            self._items[item.id] = item
            await self._save()
        DEFERRED_DOWNLOADS_TOTAL.labels(outcome="queued").inc()
        logger.info("deferred_request_added", request_id=item.id, url=url[:80], user_id=user_id)
        return item

    def get(self, request_id: str) -> DeferredRequest | None:
        return self._items.get(request_id)

    def requests(self, user_id: str | None = None) -> list[DeferredRequest]:
        """All requests, oldest first, optionally for one user."""
        items = sorted(self._items.values(), key=lambda item: item.added_at)
        if user_id is not None:
            items = [item for item in items if item.user_id == user_id]
        return items

    def pending(self) -> list[DeferredRequest]:
        """Requests due for another attempt, oldest first."""
        return [item for item in self.requests() if self._is_due(item)]

    def _is_due(self, item: DeferredRequest) -> bool:
        if item.status is DeferredStatus.PENDING:
            return True
        return item.status is DeferredStatus.FAILED and item.retry_count < self.max_retries

    async def cancel(self, request_id: str, user_id: str | None = None) -> bool:
        """Cancel a request that has not been closed yet.

        Args:
            request_id: Request to cancel
            user_id: When given, only the owner may cancel

        Returns:
            True if the request was cancelled
        """
        async with self._lock:
            item = self._items.get(request_id)
            if item is None or item.status.is_closed:
                return False
            if user_id is not None and item.user_id != user_id:
                return False
            item.status = DeferredStatus.CANCELLED
            item.updated_at = now_ms()
            await self._save()
        logger.info("deferred_request_cancelled", request_id=request_id)
        return True

    async def remove(self, request_id: str) -> bool:
        async with self._lock:
            if self._items.pop(request_id, None) is None:
                return False
            await self._save()
        return True

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in DeferredStatus}
        for item in self._items.values():
            counts[item.status.value] += 1
        counts["total"] = len(self._items)
        return counts

    async def cleanup(self) -> int:
        """Drop closed requests older than the retention window.

        Returns:
            Number of requests dropped
        """
        cutoff = now_ms() - int(self.retention_hours * 3600 * 1000)
        async with self._lock:
            expired = [
                item.id
                for item in self._items.values()
                if item.status.is_closed and item.updated_at < cutoff
            ]
            for request_id in expired:
                del self._items[request_id]
            if expired:
                await self._save()
        if expired:
            logger.info("deferred_requests_cleaned", count=len(expired))
        return len(expired)

    async def process_once(self) -> list[str]:
        """Attempt every due request once, one after another.

        A pass already running makes this a no-op.

        Returns:
            Ids of the requests attempted in this pass
        """
        if self._processing or self.processor is None:
            return []
        self._processing = True
        attempted: list[str] = []
        try:
            for item in self.pending():
                # A request may have been cancelled while an earlier one ran
                if not self._is_due(item):
                    continue
                await self._attempt(item, self.processor)
                attempted.append(item.id)
            await self.cleanup()
        finally:
            self._processing = False
        return attempted

    async def _attempt(self, item: DeferredRequest, processor: DeferredProcessor) -> None:
        logger.info(
            "deferred_request_processing",
            request_id=item.id,
            attempt=item.retry_count + 1,
            max_retries=self.max_retries,
        )
        async with self._lock:
            item.status = DeferredStatus.PROCESSING
            item.updated_at = now_ms()
            await self._save()

        try:
            result = await processor(item)
        except Exception as e:
            message = e.user_message if isinstance(e, MediaRelayError) else str(e)
            await self._record_failure(item, message or type(e).__name__)
            return

        async with self._lock:
            item.status = DeferredStatus.COMPLETED
            item.result = result
            item.error = None
            item.updated_at = now_ms()
            await self._save()
        DEFERRED_DOWNLOADS_TOTAL.labels(outcome="completed").inc()
        logger.info("deferred_request_completed", request_id=item.id)
        await self._notify(item, ready_message(result))

    async def _record_failure(self, item: DeferredRequest, message: str) -> None:
        async with self._lock:
            item.retry_count += 1
            item.error = message
            item.updated_at = now_ms()
            gone = any(marker in message.lower() for marker in PERMANENT_FAILURE_MARKERS)
            if gone or item.retry_count >= self.max_retries:
                item.status = DeferredStatus.FAILED_PERMANENT
            else:
                item.status = DeferredStatus.FAILED
            await self._save()

        if item.status is DeferredStatus.FAILED:
            logger.warning(
                "deferred_request_retry_scheduled",
                request_id=item.id,
                attempts=item.retry_count,
                error=message,
            )
            return
        DEFERRED_DOWNLOADS_TOTAL.labels(outcome="failed").inc()
        logger.error(
            "deferred_request_failed", request_id=item.id, attempts=item.retry_count, error=message
        )
        await self._notify(item, failed_message(message))

    async def _notify(self, item: DeferredRequest, message: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier(item, message)
        except Exception as e:
            logger.warning("deferred_notify_failed", request_id=item.id, error=str(e))

    async def run(self) -> None:
        """Load the saved queue, then process every interval until stopped."""
        self._stopped.clear()
        await self.load()
        while not self._stopped.is_set():
            try:
                await self.process_once()
            except Exception as e:
                logger.error("deferred_queue_pass_failed", error=str(e))
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()
