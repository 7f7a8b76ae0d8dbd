"""Storage fulfillment chain: ordered delivery strategies with fallback."""

from collections.abc import Sequence
from typing import Protocol

from media_relay.core.errors import StorageExhaustedError, UploadError
from media_relay.core.logging import get_logger
from media_relay.core.metrics import DELIVERIES_TOTAL, DELIVERY_FAILURES_TOTAL
from media_relay.storage.local import LocalDiskStore
from media_relay.storage.models import (
    Artifact,
    DeliveryMethod,
    DeliveryResult,
    Local,
    Location,
    Remote,
)
from media_relay.storage.remote import S3ObjectStore

logger = get_logger()


class DeliveryStrategy(Protocol):
    """One way of getting an artifact to the caller."""

    method: DeliveryMethod

    def accepts(self, artifact: Artifact) -> bool: ...

    async def deliver(self, artifact: Artifact) -> Location: ...


class InlineDelivery:
    """Send small artifacts straight through the chat response channel."""

    method = DeliveryMethod.INLINE

    def __init__(self, limit: int):
        self.limit = limit

    def accepts(self, artifact: Artifact) -> bool:
        return artifact.inline_channel is not None and artifact.size < self.limit

    async def deliver(self, artifact: Artifact) -> Location:
        channel = artifact.inline_channel
        if channel is None:
            raise UploadError("no chat channel to send the file through")
        url = await channel.send(
            artifact.filename, artifact.data, artifact.content_type
        )
        return Remote(url)


class RemoteDelivery:
    """Upload to the durable object store, skipping objects already there."""

    method = DeliveryMethod.REMOTE

    def __init__(self, object_store: S3ObjectStore):
        self.object_store = object_store

    def accepts(self, artifact: Artifact) -> bool:
        return True

    async def deliver(self, artifact: Artifact) -> Location:
        if await self.object_store.exists(artifact.key):
            logger.info("remote_store_object_exists", key=artifact.key)
            return Remote(self.object_store.public_url(artifact.key))
        url = await self.object_store.put(
            artifact.key, artifact.data, artifact.content_type, artifact.metadata
        )
        return Remote(url)


class LocalDelivery:
    """Write the artifact to local disk to be served over HTTP."""

    method = DeliveryMethod.LOCAL

    def __init__(self, local_store: LocalDiskStore):
        self.local_store = local_store

    def accepts(self, artifact: Artifact) -> bool:
        return True

    async def deliver(self, artifact: Artifact) -> Location:
        path = await self.local_store.write(artifact.key, artifact.data)
        return Local(path)


class FulfillmentChain:
    """Try each delivery strategy in order until one succeeds.

    Strategy failures are logged and counted, then the next strategy is
    tried. Only exhausting every strategy raises.
    """

    def __init__(self, strategies: Sequence[DeliveryStrategy], local_base_url: str):
        self.strategies = list(strategies)
        self.local_base_url = local_base_url

    def url_for(self, location: Location, key: str) -> str:
        if isinstance(location, Local):
            return location.url(self.local_base_url, key)
        return location.url

    async def deliver(self, artifact: Artifact) -> DeliveryResult:
        """Deliver an artifact.

        Args:
            artifact: Bytes plus canonical key

        Returns:
            DeliveryResult of the first strategy that succeeded

        Raises:
            StorageExhaustedError: If no strategy delivered the artifact
        """
        failures: list[tuple[str, str]] = []

        for strategy in self.strategies:
            if not strategy.accepts(artifact):
                continue
            try:
                location = await strategy.deliver(artifact)
            except Exception as e:
                DELIVERY_FAILURES_TOTAL.labels(method=strategy.method.value).inc()
                failures.append((strategy.method.value, str(e)))
                logger.warning(
                    "delivery_strategy_failed",
                    method=strategy.method.value,
                    key=artifact.key,
                    size=artifact.size,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            DELIVERIES_TOTAL.labels(method=strategy.method.value).inc()
            logger.info(
                "artifact_delivered",
                method=strategy.method.value,
                key=artifact.key,
                size=artifact.size,
                fallbacks=len(failures),
            )
            return DeliveryResult(
                url=self.url_for(location, artifact.key),
                method=strategy.method,
                location=location,
                size=artifact.size,
                key=artifact.key,
            )

        logger.error("delivery_exhausted", key=artifact.key, failures=failures)
        raise StorageExhaustedError(failures)


def build_default_chain(
    local_store: LocalDiskStore,
    local_base_url: str,
    inline_limit: int,
    object_store: S3ObjectStore | None = None,
) -> FulfillmentChain:
    """Inline, then remote store when configured, then local disk."""
    strategies: list[DeliveryStrategy] = [InlineDelivery(inline_limit)]
    if object_store is not None:
        strategies.append(RemoteDelivery(object_store))
    strategies.append(LocalDelivery(local_store))
    return FulfillmentChain(strategies, local_base_url)
