"""Storage backends and the delivery fulfillment chain."""

from media_relay.storage.chain import (
    DeliveryStrategy,
    FulfillmentChain,
    InlineDelivery,
    LocalDelivery,
    RemoteDelivery,
    build_default_chain,
)
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

__all__ = [
    "Artifact",
    "DeliveryMethod",
    "DeliveryResult",
    "DeliveryStrategy",
    "FulfillmentChain",
    "InlineChannel",
    "InlineDelivery",
    "Local",
    "LocalDelivery",
    "LocalDiskStore",
    "Location",
    "Remote",
    "RemoteDelivery",
    "S3ObjectStore",
    "build_default_chain",
]
