"""Tests for the download service client and direct file fetcher."""

import json

import httpx
import pytest

from media_relay.content_store import ArtifactKind
from media_relay.core.errors import (
    RateLimitError,
    StaleResourceError,
    UpstreamFetchError,
    ValidationError,
)
from media_relay.downloader import (
    AttachmentRefresher,
    DirectFileFetcher,
    DownloadConstraints,
    DownloadServiceClient,
    DownloadedFile,
)
from tests.fixtures.runtime import MP4_BYTES, PNG_BYTES

SERVICE = "http://downloader.local/"
POST_URL = "https://twitter.com/user/status/1"
MEDIA_URL = "http://media.local/tunnel/abc"


def service_client(handler) -> DownloadServiceClient:
    return DownloadServiceClient(SERVICE, transport=httpx.MockTransport(handler))


class TestDownloadedFile:
    """Test file metadata helpers."""

    def test_should_derive_extension_and_kind(self):
        """Test extension comes from the filename, then the content type."""
        named = DownloadedFile(b"x", "video/mp4", "clip.MOV")
        unnamed = DownloadedFile(b"x", "image/png", "photo")

        assert named.extension == ".mov"
        assert named.kind is ArtifactKind.VIDEO
        assert unnamed.extension == ".png"
        assert unnamed.kind is ArtifactKind.IMAGE


class TestDownloadServiceClient:
    """Test resolution and download through the service."""

    @pytest.mark.asyncio
    async def test_should_download_tunnelled_media(self):
        """Test a tunnel response is followed to the media bytes."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.method == "POST":
                return httpx.Response(
                    200, json={"status": "tunnel", "url": MEDIA_URL, "filename": "clip.mp4"}
                )
            return httpx.Response(200, content=MP4_BYTES, headers={"Content-Type": "video/mp4"})

        result = await service_client(handler).fetch(POST_URL)

        assert result.data == MP4_BYTES
        assert result.filename == "clip.mp4"
        assert result.kind is ArtifactKind.VIDEO
        body = json.loads(requests[0].content)
        assert body["url"] == POST_URL
        assert body["videoQuality"] == "max"
        assert str(requests[1].url) == MEDIA_URL

    @pytest.mark.asyncio
    async def test_should_download_every_picker_photo(self):
        """Test multi-photo posts return one file per photo."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(
                    200,
                    json={
                        "status": "picker",
                        "picker": [
                            {"type": "photo", "url": "http://media.local/1.jpg"},
                            {"type": "video", "url": "http://media.local/2.mp4"},
                            {"type": "photo", "url": "http://media.local/3.jpg"},
                        ],
                    },
                )
            return httpx.Response(200, content=PNG_BYTES, headers={"Content-Type": "image/png"})

        result = await service_client(handler).fetch(POST_URL)

        assert [item.filename for item in result] == ["photo_1.jpg", "photo_2.jpg"]

    @pytest.mark.asyncio
    async def test_should_raise_rate_limit_with_retry_after(self):
        """Test 429 responses carry the wait time."""
        client = service_client(
            lambda request: httpx.Response(
                429, json={"error": "too many requests"}, headers={"Retry-After": "12"}
            )
        )

        with pytest.raises(RateLimitError) as exc_info:
            await client.fetch(POST_URL)

        assert exc_info.value.retry_after == 12

    @pytest.mark.asyncio
    async def test_should_detect_rate_limit_in_error_payload(self):
        """Test an error status mentioning rate limits is a RateLimitError."""
        client = service_client(
            lambda request: httpx.Response(
                200, json={"status": "error", "error": {"code": "error.api.rate_exceeded"}}
            )
        )

        with pytest.raises(RateLimitError):
            await client.fetch(POST_URL)

    @pytest.mark.asyncio
    async def test_should_raise_upstream_error_for_service_failures(self):
        """Test other service errors surface their message."""
        client = service_client(
            lambda request: httpx.Response(400, json={"error": "unsupported link"})
        )

        with pytest.raises(UpstreamFetchError, match="unsupported link"):
            await client.fetch(POST_URL)

    @pytest.mark.asyncio
    async def test_should_report_unreachable_service(self):
        """Test connection failures map to a readable message."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(UpstreamFetchError, match="not available"):
            await service_client(handler).fetch(POST_URL)

    @pytest.mark.asyncio
    async def test_should_report_missing_media(self):
        """Test a 404 on the media URL is reported."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"status": "redirect", "url": MEDIA_URL})
            return httpx.Response(404)

        with pytest.raises(UpstreamFetchError, match="not found"):
            await service_client(handler).fetch(POST_URL)

    @pytest.mark.asyncio
    async def test_should_abort_downloads_over_the_limit(self):
        """Test the size limit stops the download."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"status": "tunnel", "url": MEDIA_URL})
            return httpx.Response(200, content=b"x" * 1000)

        with pytest.raises(ValidationError):
            await service_client(handler).fetch(POST_URL, DownloadConstraints(max_size=100))


class TestDirectFileFetcher:
    """Test direct file downloads."""

    ATTACHMENT = "https://cdn.discordapp.com/attachments/1/2/clip.mp4"

    @pytest.mark.asyncio
    async def test_should_download_file(self):
        """Test a direct URL returns its bytes and filename."""
        fetcher = DirectFileFetcher(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(
                    200, content=MP4_BYTES, headers={"Content-Type": "video/mp4"}
                )
            )
        )

        result = await fetcher.fetch("https://example.com/media/clip.mp4")

        assert result.filename == "clip.mp4"
        assert result.content_type == "video/mp4"
        assert result.data == MP4_BYTES

    @pytest.mark.asyncio
    async def test_should_flag_expired_attachments(self):
        """Test a rejected attachment link is stale, other URLs are upstream errors."""
        fetcher = DirectFileFetcher(
            transport=httpx.MockTransport(lambda request: httpx.Response(403))
        )

        with pytest.raises(StaleResourceError):
            await fetcher.fetch(self.ATTACHMENT)
        with pytest.raises(UpstreamFetchError):
            await fetcher.fetch("https://example.com/clip.mp4")

    @pytest.mark.asyncio
    async def test_should_refresh_once_and_retry(self):
        """Test a stale attachment is refreshed and downloaded again."""
        fresh = self.ATTACHMENT + "?ex=ffffffff&animated=true"

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("animated") == "true":
                return httpx.Response(200, content=MP4_BYTES, headers={"Content-Type": "video/mp4"})
            return httpx.Response(404)

        refresher = AttachmentRefresher("https://discord.com/api/v10", "token")
        refresher.needs_refresh = lambda url: False
        calls = []

        async def refresh(url: str) -> str:
            calls.append(url)
            return fresh

        refresher.refresh = refresh
        fetcher = DirectFileFetcher(transport=httpx.MockTransport(handler))

        result = await fetcher.fetch_with_refresh(self.ATTACHMENT, refresher)

        assert result.data == MP4_BYTES
        assert calls == [self.ATTACHMENT]

    @pytest.mark.asyncio
    async def test_should_propagate_stale_error_without_refresher(self):
        """Test a stale link without a refresher stays an error."""
        fetcher = DirectFileFetcher(
            transport=httpx.MockTransport(lambda request: httpx.Response(404))
        )

        with pytest.raises(StaleResourceError):
            await fetcher.fetch_with_refresh(self.ATTACHMENT, None)


class TestRedirectGuard:
    """Test every redirect hop is checked before it is requested."""

    METADATA_URL = "http://169.254.169.254/latest/meta-data/"

    @pytest.mark.asyncio
    async def test_should_refuse_redirect_to_internal_address(self):
        """Test a public link redirecting to a link-local address is never followed."""
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            return httpx.Response(302, headers={"Location": self.METADATA_URL})

        fetcher = DirectFileFetcher(transport=httpx.MockTransport(handler))

        with pytest.raises(ValidationError, match="internal"):
            await fetcher.fetch("https://example.com/clip.mp4")

        assert hosts == ["example.com"]

    @pytest.mark.asyncio
    async def test_should_follow_redirects_to_public_hosts(self):
        """Test relative and absolute redirects to public hosts are followed."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/clip.mp4":
                return httpx.Response(301, headers={"Location": "/moved/clip.mp4"})
            if request.url.host == "example.com":
                return httpx.Response(302, headers={"Location": "https://cdn.example.net/c.mp4"})
            return httpx.Response(200, content=MP4_BYTES, headers={"Content-Type": "video/mp4"})

        fetcher = DirectFileFetcher(transport=httpx.MockTransport(handler))

        result = await fetcher.fetch("https://example.com/clip.mp4")

        assert result.data == MP4_BYTES
        assert result.filename == "clip.mp4"

    @pytest.mark.asyncio
    async def test_should_give_up_on_redirect_loops(self):
        """Test an endless redirect chain is an upstream error."""
        fetcher = DirectFileFetcher(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(302, headers={"Location": "/again"})
            )
        )

        with pytest.raises(UpstreamFetchError, match="too many redirects"):
            await fetcher.fetch("https://example.com/clip.mp4")

    @pytest.mark.asyncio
    async def test_should_refuse_internal_media_url_from_service(self):
        """Test a media URL pointing inside the network is rejected before download."""
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(
                200, json={"status": "tunnel", "url": "http://10.0.0.5/secret.mp4"}
            )

        with pytest.raises(ValidationError):
            await service_client(handler).fetch(POST_URL)

        assert requested == [SERVICE]

    @pytest.mark.asyncio
    async def test_should_trust_tunnel_urls_on_service_host(self):
        """Test a self-hosted service may hand out tunnel URLs on its own host."""
        service = "http://localhost:9000/"

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(
                    200, json={"status": "tunnel", "url": "http://localhost:9000/tunnel?id=1"}
                )
            return httpx.Response(200, content=MP4_BYTES, headers={"Content-Type": "video/mp4"})

        client = DownloadServiceClient(service, transport=httpx.MockTransport(handler))

        result = await client.fetch(POST_URL)

        assert result.data == MP4_BYTES
