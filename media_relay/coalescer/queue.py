"""Download request coalescing with ledger short-circuit."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from media_relay.core.hashing import hash_parts
from media_relay.core.logging import get_logger
from media_relay.core.metrics import (
    COALESCED_REQUESTS_TOTAL,
    INFLIGHT_FETCHES,
    LEDGER_HITS_TOTAL,
)
from media_relay.ledger import LedgerEntry, UrlLedger

logger = get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class FetchOptions:
    """Qualifiers that change what a fetch for a URL means."""

    skip_cache: bool = False
    expected_kind: str | None = None
    # Canonical transform token; bypasses the ledger when set
    modifiers: str | None = None


@dataclass(frozen=True)
class AlreadyProcessed(Generic[T]):
    """Returned instead of fresh bytes when the ledger already has the answer."""

    entry: LedgerEntry

    @property
    def file_url(self) -> str:
        return self.entry.file_url


FetchResult = Union[T, AlreadyProcessed[Any]]


def _retrieve_exception(task: "asyncio.Task[Any]") -> None:
    # Waiters may all have been cancelled; mark the exception as observed
    if not task.cancelled():
        task.exception()


class DownloadCoalescer:
    """Runs at most one upstream fetch per normalized key.

    Concurrent callers for the same key wait on the same task and observe
    the same result or exception. The in-flight entry is removed as soon as
    the fetch settles. Producers run under a concurrency cap.
    """

    def __init__(self, ledger: UrlLedger | None, max_concurrent: int = 2):
        self.ledger = ledger
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._active = 0
        self._waiting = 0

    @staticmethod
    def normalize_key(url: str, options: FetchOptions) -> str:
        return hash_parts(
            url.strip(),
            "skip" if options.skip_cache else "",
            options.expected_kind or "",
            options.modifiers or "",
        )

    def in_flight(self, url: str, options: FetchOptions | None = None) -> bool:
        return self.normalize_key(url, options or FetchOptions()) in self._in_flight

    async def fetch(
        self,
        url: str,
        producer: Callable[[], Awaitable[T]],
        options: FetchOptions | None = None,
    ) -> FetchResult[T]:
        """Fetch a URL once, sharing the result with concurrent callers.

        Args:
            url: Source URL
            producer: Coroutine factory performing the actual fetch
            options: Cache and kind qualifiers

        Returns:
            The producer's result, or AlreadyProcessed for a ledger hit

        Raises:
            Exception: Whatever the producer raised, for every waiter
        """
        options = options or FetchOptions()

        cached = await self._check_ledger(url, options)
        if cached is not None:
            return cached

        key = self.normalize_key(url, options)
        task = self._in_flight.get(key)
        if task is not None:
            COALESCED_REQUESTS_TOTAL.inc()
            logger.info("fetch_coalesced", url=url[:80], key=key[:8])
        else:
            task = asyncio.ensure_future(self._run(key, producer))
            task.add_done_callback(_retrieve_exception)
            self._in_flight[key] = task
            INFLIGHT_FETCHES.set(len(self._in_flight))

        return await asyncio.shield(task)

    async def _check_ledger(
        self, url: str, options: FetchOptions
    ) -> AlreadyProcessed[Any] | None:
        if self.ledger is None or options.skip_cache or options.modifiers:
            return None
        try:
            entry = await self.ledger.lookup(url)
        except Exception as e:
            logger.warning("ledger_lookup_failed", url=url[:80], error=str(e))
            return None
        if entry is None:
            return None
        if options.expected_kind is not None and entry.kind != options.expected_kind:
            logger.info(
                "ledger_kind_mismatch",
                url=url[:80],
                cached_kind=entry.kind,
                expected_kind=options.expected_kind,
            )
            return None
        LEDGER_HITS_TOTAL.inc()
        logger.info("ledger_hit", url_hash=entry.url_hash[:8], file_url=entry.file_url)
        return AlreadyProcessed(entry)

    async def _run(self, key: str, producer: Callable[[], Awaitable[T]]) -> T:
        try:
            self._waiting += 1
            try:
                await self._semaphore.acquire()
            finally:
                self._waiting -= 1

            self._active += 1
            try:
                return await producer()
            finally:
                self._active -= 1
                self._semaphore.release()
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]
            INFLIGHT_FETCHES.set(len(self._in_flight))

    def stats(self) -> dict[str, int]:
        return {
            "active": self._active,
            "waiting": self._waiting,
            "in_flight": len(self._in_flight),
            "max_concurrent": self.max_concurrent,
        }
