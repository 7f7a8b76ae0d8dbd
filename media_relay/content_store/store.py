"""Content-addressed artifact store."""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from media_relay.content_store.models import (
    ArtifactKind,
    ContentObject,
    content_type_for,
    normalize_extension,
    storage_key,
)
from media_relay.core.errors import UpstreamFetchError
from media_relay.core.logging import get_logger
from media_relay.storage.chain import FulfillmentChain
from media_relay.storage.local import LocalDiskStore
from media_relay.storage.models import (
    Artifact,
    DeliveryMethod,
    DeliveryResult,
    InlineChannel,
    Local,
    Location,
    Remote,
)
from media_relay.storage.remote import S3ObjectStore

logger = get_logger()

IndexKey = tuple[str, ArtifactKind]


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ContentStore:
    """Maps content hashes to a single stored artifact.

    Physical placement is delegated to the fulfillment chain. A mapping is
    committed only after a successful durable delivery, and concurrent puts
    for the same hash share one upload. Inline chat attachments are handed
    back without being indexed.
    """

    def __init__(
        self,
        chain: FulfillmentChain,
        local: LocalDiskStore,
        remote: S3ObjectStore | None = None,
    ):
        self.chain = chain
        self.local = local
        self.remote = remote
        self._index: dict[IndexKey, ContentObject] = {}
        self._locks: dict[IndexKey, _KeyLock] = {}

    def get(self, content_hash: str, kind: ArtifactKind) -> ContentObject | None:
        """Return the committed object for a hash, if any."""
        return self._index.get((content_hash, kind))

    async def exists(
        self, content_hash: str, kind: ArtifactKind, extension: str | None = None
    ) -> bool:
        """Check whether an artifact for this hash and kind is stored.

        Args:
            content_hash: Artifact identity
            kind: Artifact kind
            extension: File extension, defaults per kind

        Returns:
            True if the committed index or a durable backend has it
        """
        if (content_hash, kind) in self._index:
            return True
        key = storage_key(content_hash, kind, extension)
        return await self._durable_location(key) is not None

    async def locate(
        self, content_hash: str, kind: ArtifactKind, extension: str | None = None
    ) -> DeliveryResult | None:
        """Return the stored artifact for a hash without uploading anything.

        An artifact found only in a durable backend is adopted into the index.
        """
        existing = self._index.get((content_hash, kind))
        if existing is not None:
            return self._result_for(existing, reused=True)

        ext = normalize_extension(extension, kind)
        key = storage_key(content_hash, kind, ext)
        location = await self._durable_location(key)
        if location is None:
            return None
        size = await self.local.size(key) if isinstance(location, Local) else 0
        adopted = self._adopt(content_hash, kind, ext, key, location, size)
        return self._result_for(adopted, reused=True)

    def path(
        self, content_hash: str, kind: ArtifactKind, extension: str | None = None
    ) -> Location:
        """Return where an artifact lives, or where local disk would put it."""
        existing = self._index.get((content_hash, kind))
        if existing is not None:
            return existing.location
        return Local(self.local.path_for(storage_key(content_hash, kind, extension)))

    async def put(
        self,
        data: bytes,
        content_hash: str,
        kind: ArtifactKind,
        metadata: dict[str, str] | None = None,
        extension: str | None = None,
        inline_channel: InlineChannel | None = None,
    ) -> DeliveryResult:
        """Store an artifact once and return its delivery location.

        Args:
            data: Artifact bytes
            content_hash: Artifact identity
            kind: Artifact kind
            metadata: Metadata attached to remote objects
            extension: File extension, defaults per kind
            inline_channel: Chat response channel for inline delivery

        Returns:
            DeliveryResult, with ``reused`` set when nothing was uploaded

        Raises:
            StorageExhaustedError: If every delivery strategy failed
        """
        ext = normalize_extension(extension, kind)
        key = storage_key(content_hash, kind, ext)
        index_key = (content_hash, kind)

        key_lock = self._locks.get(index_key)
        if key_lock is None:
            key_lock = self._locks[index_key] = _KeyLock()
        key_lock.users += 1
        try:
            async with key_lock.lock:
                existing = self._index.get(index_key)
                if existing is not None:
                    logger.info("content_store_hit", key=existing.key, url=existing.url)
                    return self._result_for(existing, reused=True)

                location = await self._durable_location(key)
                if location is not None:
                    adopted = self._adopt(content_hash, kind, ext, key, location, len(data))
                    return self._result_for(adopted, reused=True)

                artifact = Artifact(
                    key=key,
                    data=data,
                    content_type=content_type_for(ext, kind),
                    metadata=dict(metadata or {}),
                    inline_channel=inline_channel,
                )
                result = await self.chain.deliver(artifact)
                if result.method is DeliveryMethod.INLINE:
                    # Chat attachment links expire, so they never enter the index
                    return result
                self._commit(
                    content_hash,
                    kind,
                    ext,
                    result.size,
                    result.location,
                    result.url,
                    result.method,
                )
                return result
        finally:
            key_lock.users -= 1
            if key_lock.users == 0:
                del self._locks[index_key]

    async def _durable_location(self, key: str) -> Location | None:
        if self.remote is not None:
            try:
                if await self.remote.exists(key):
                    return Remote(self.remote.public_url(key))
            except UpstreamFetchError as e:
                logger.warning("remote_exists_check_failed", key=key, error=str(e))
        if await self.local.exists(key):
            return Local(self.local.path_for(key))
        return None

    def _adopt(
        self,
        content_hash: str,
        kind: ArtifactKind,
        extension: str,
        key: str,
        location: Location,
        size: int,
    ) -> ContentObject:
        method = DeliveryMethod.LOCAL if isinstance(location, Local) else DeliveryMethod.REMOTE
        adopted = self._commit(
            content_hash,
            kind,
            extension,
            size,
            location,
            self.chain.url_for(location, key),
            method,
        )
        logger.info("content_store_adopted", key=key, url=adopted.url)
        return adopted

    def _commit(
        self,
        content_hash: str,
        kind: ArtifactKind,
        extension: str,
        size: int,
        location: Location,
        url: str,
        method: DeliveryMethod,
    ) -> ContentObject:
        obj = ContentObject(
            content_hash=content_hash,
            kind=kind,
            extension=extension,
            size=size,
            location=location,
            url=url,
            method=method,
        )
        self._index[(content_hash, kind)] = obj
        return obj

    @staticmethod
    def _result_for(obj: ContentObject, reused: bool) -> DeliveryResult:
        return DeliveryResult(
            url=obj.url,
            method=obj.method,
            location=obj.location,
            size=obj.size,
            key=obj.key,
            reused=reused,
        )

    def get_statistics(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with index and local disk statistics
        """
        by_method: dict[str, int] = {}
        for obj in self._index.values():
            by_method[obj.method.value] = by_method.get(obj.method.value, 0) + 1
        return {
            "indexed_objects": len(self._index),
            "indexed_by_method": by_method,
            "remote_configured": self.remote is not None,
            "local": self.local.statistics(),
        }
