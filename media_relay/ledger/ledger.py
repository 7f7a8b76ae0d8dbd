"""URL processing ledger with an in-memory read cache."""

import time
from typing import Protocol

from media_relay.core.hashing import hash_parts, hash_string
from media_relay.core.logging import get_logger
from media_relay.ledger.models import LedgerEntry

logger = get_logger()


class LedgerBackend(Protocol):
    async def get_ledger_entry(self, url_hash: str) -> LedgerEntry | None: ...

    async def upsert_ledger_entry(self, entry: LedgerEntry) -> None: ...


def ledger_key(source_url: str, modifiers: str | None = None) -> str:
    """Hash a source URL, folding in transform modifiers when present."""
    if not modifiers:
        return hash_string(source_url)
    return hash_parts(source_url, modifiers)


class UrlLedger:
    """Maps source URLs to the artifact previously produced for them.

    Lookups go through a TTL cache that also remembers misses. Writes are
    upserts, so the last successful fetch for a key wins.
    """

    def __init__(self, backend: LedgerBackend, cache_ttl: float = 300.0):
        self.backend = backend
        self.cache_ttl = cache_ttl
        self._cache: dict[str, tuple[float, LedgerEntry | None]] = {}

    async def lookup(self, source_url: str, modifiers: str | None = None) -> LedgerEntry | None:
        """Return the entry for a source URL, if one was recorded."""
        key = ledger_key(source_url, modifiers)
        cached = self._cache.get(key)
        if cached is not None:
            stored_at, entry = cached
            if time.monotonic() - stored_at < self.cache_ttl:
                return entry
            del self._cache[key]

        entry = await self.backend.get_ledger_entry(key)
        if self.cache_ttl > 0:
            self._cache[key] = (time.monotonic(), entry)
        return entry

    async def record(
        self,
        source_url: str,
        content_hash: str,
        kind: str,
        file_url: str,
        extension: str | None = None,
        user_id: str | None = None,
        file_size: int | None = None,
        modifiers: str | None = None,
    ) -> LedgerEntry:
        """Upsert the result for a source URL."""
        key = ledger_key(source_url, modifiers)
        entry = LedgerEntry(
            url_hash=key,
            content_hash=content_hash,
            kind=kind,
            extension=extension,
            file_url=file_url,
            user_id=user_id,
            file_size=file_size,
            processed_at=int(time.time() * 1000),
        )
        await self.backend.upsert_ledger_entry(entry)
        self.invalidate(key)
        logger.info(
            "ledger_recorded",
            url_hash=key[:8],
            kind=kind,
            file_url=file_url,
        )
        return entry

    def invalidate(self, key: str) -> None:
        self._cache.pop(key, None)
