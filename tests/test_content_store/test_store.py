"""Tests for the content-addressed store."""

import asyncio

import pytest

from media_relay.content_store import ArtifactKind, ContentStore, storage_key
from media_relay.core.errors import StorageExhaustedError, ValidationError
from media_relay.core.hashing import hash_bytes
from media_relay.downloader import is_attachment_expired, is_attachment_url
from media_relay.storage import DeliveryMethod, FulfillmentChain, Local, build_default_chain
from tests.fixtures.storage import RecordingInlineChannel

BASE_URL = "http://localhost:8000/files"


@pytest.fixture
def store(local_store, object_store) -> ContentStore:
    chain = build_default_chain(local_store, BASE_URL, 100, object_store=object_store)
    return ContentStore(chain, local_store, remote=object_store)


@pytest.fixture
def local_only_store(local_store) -> ContentStore:
    return ContentStore(build_default_chain(local_store, BASE_URL, 100), local_store)


class TestStorageKey:
    """Test canonical key layout."""

    def test_should_lay_out_keys_per_kind(self):
        """Test gifs, videos and images get their own directories."""
        digest = hash_bytes(b"x")

        assert storage_key(digest, ArtifactKind.GIF) == f"gifs/{digest}.gif"
        assert storage_key(digest, ArtifactKind.VIDEO, "webm") == f"videos/{digest}.webm"
        assert storage_key(digest, ArtifactKind.IMAGE, ".JPG") == f"images/{digest}.jpg"

    def test_should_force_gif_extension(self):
        """Test GIFs always use .gif."""
        digest = hash_bytes(b"x")

        assert storage_key(digest, ArtifactKind.GIF, ".mp4") == f"gifs/{digest}.gif"

    def test_should_reject_invalid_hash(self):
        """Test malformed hashes never become storage keys."""
        with pytest.raises(ValidationError):
            storage_key("../../etc/passwd", ArtifactKind.VIDEO)


class TestContentStore:
    """Test put, exists and locate."""

    @pytest.mark.asyncio
    async def test_should_store_once_and_reuse(self, store, s3_client):
        """Test a second put of the same hash returns the same object."""
        data = b"v" * 500
        digest = hash_bytes(data)

        first = await store.put(data, digest, ArtifactKind.VIDEO)
        second = await store.put(data, digest, ArtifactKind.VIDEO)

        assert first.method is DeliveryMethod.REMOTE
        assert first.reused is False
        assert second.reused is True
        assert second.url == first.url
        assert s3_client.put_calls == 1

    @pytest.mark.asyncio
    async def test_should_share_one_upload_between_concurrent_puts(self, store, s3_client):
        """Test concurrent puts for one hash upload once."""
        data = b"c" * 500
        digest = hash_bytes(data)

        results = await asyncio.gather(
            *(store.put(data, digest, ArtifactKind.VIDEO) for _ in range(5))
        )

        assert s3_client.put_calls == 1
        assert len({r.url for r in results}) == 1
        assert sum(1 for r in results if not r.reused) == 1

    @pytest.mark.asyncio
    async def test_should_adopt_object_found_in_remote_store(self, store, s3_client):
        """Test an object uploaded by an earlier process is adopted, not re-uploaded."""
        data = b"r" * 500
        digest = hash_bytes(data)
        s3_client.objects[storage_key(digest, ArtifactKind.VIDEO)] = {"Body": data}

        result = await store.put(data, digest, ArtifactKind.VIDEO)

        assert result.reused is True
        assert result.method is DeliveryMethod.REMOTE
        assert s3_client.put_calls == 0

    @pytest.mark.asyncio
    async def test_should_adopt_object_found_on_local_disk(self, local_only_store, local_store):
        """Test a file already on disk is adopted."""
        data = b"l" * 500
        digest = hash_bytes(data)
        await local_store.write(storage_key(digest, ArtifactKind.GIF), data)

        found = await local_only_store.locate(digest, ArtifactKind.GIF)

        assert found is not None
        assert found.method is DeliveryMethod.LOCAL
        assert found.size == 500
        assert found.url == f"{BASE_URL}/gifs/{digest}.gif"
        assert local_only_store.get(digest, ArtifactKind.GIF) is not None

    @pytest.mark.asyncio
    async def test_should_report_unknown_hashes(self, store):
        """Test exists and locate for content never stored."""
        digest = hash_bytes(b"never stored")

        assert await store.exists(digest, ArtifactKind.VIDEO) is False
        assert await store.locate(digest, ArtifactKind.VIDEO) is None

    @pytest.mark.asyncio
    async def test_should_keep_kinds_separate(self, local_only_store):
        """Test the same hash under two kinds are two artifacts."""
        data = b"k" * 500
        digest = hash_bytes(data)

        gif = await local_only_store.put(data, digest, ArtifactKind.GIF)
        video = await local_only_store.put(data, digest, ArtifactKind.VIDEO)

        assert gif.key != video.key
        assert video.reused is False

    @pytest.mark.asyncio
    async def test_should_commit_nothing_when_delivery_fails(self, local_store):
        """Test a failed delivery leaves no mapping behind."""
        store = ContentStore(FulfillmentChain([], BASE_URL), local_store)
        data = b"f" * 10
        digest = hash_bytes(data)

        with pytest.raises(StorageExhaustedError):
            await store.put(data, digest, ArtifactKind.VIDEO)

        assert store.get(digest, ArtifactKind.VIDEO) is None
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_should_not_index_inline_deliveries(self, local_only_store):
        """Test an expiring chat attachment link is never reused."""
        data = b"i" * 10
        digest = hash_bytes(data)
        channel = RecordingInlineChannel(query="?ex=00000001&is=0&hm=ab")

        inline = await local_only_store.put(
            data, digest, ArtifactKind.VIDEO, inline_channel=channel
        )
        located = await local_only_store.locate(digest, ArtifactKind.VIDEO)
        durable = await local_only_store.put(data, digest, ArtifactKind.VIDEO)

        assert inline.method is DeliveryMethod.INLINE
        assert is_attachment_expired(inline.url)
        assert located is None
        assert durable.method is DeliveryMethod.LOCAL
        assert durable.reused is False
        assert not is_attachment_url(durable.url)

    @pytest.mark.asyncio
    async def test_should_send_inline_again_for_each_response(self, local_only_store):
        """Test every response with a chat channel gets its own attachment."""
        data = b"j" * 10
        digest = hash_bytes(data)
        channel = RecordingInlineChannel()

        first = await local_only_store.put(data, digest, ArtifactKind.IMAGE, inline_channel=channel)
        second = await local_only_store.put(data, digest, ArtifactKind.IMAGE, inline_channel=channel)

        assert first.method is second.method is DeliveryMethod.INLINE
        assert second.reused is False
        assert len(channel.sent) == 2
        assert local_only_store.get(digest, ArtifactKind.IMAGE) is None

    def test_should_return_local_path_for_unknown_artifact(self, local_only_store, local_store):
        """Test path points at the local disk location by default."""
        digest = hash_bytes(b"p")

        location = local_only_store.path(digest, ArtifactKind.VIDEO)

        assert isinstance(location, Local)
        assert location.path == local_store.path_for(f"videos/{digest}.mp4")

    @pytest.mark.asyncio
    async def test_should_report_statistics(self, local_only_store):
        """Test statistics include index and disk counts."""
        data = b"s" * 500
        await local_only_store.put(data, hash_bytes(data), ArtifactKind.VIDEO)

        stats = local_only_store.get_statistics()

        assert stats["indexed_objects"] == 1
        assert stats["indexed_by_method"] == {"local": 1}
        assert stats["remote_configured"] is False
        assert stats["local"]["total_files"] == 1
