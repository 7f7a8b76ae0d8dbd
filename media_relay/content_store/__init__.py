"""Content-addressed artifact store."""

from media_relay.content_store.models import ArtifactKind, ContentObject, storage_key
from media_relay.content_store.store import ContentStore

__all__ = ["ArtifactKind", "ContentObject", "ContentStore", "storage_key"]
