"""Client for the external download service and direct file URLs."""

import asyncio
import mimetypes
from dataclasses import dataclass
from typing import Any, Union
from urllib.parse import urlparse

import httpx

from media_relay.content_store.models import ArtifactKind
from media_relay.core.errors import (
    RateLimitError,
    StaleResourceError,
    UpstreamFetchError,
    ValidationError,
)
from media_relay.core.logging import get_logger
from media_relay.downloader.attachments import AttachmentRefresher, is_attachment_url
from media_relay.downloader.validation import detect_kind, sanitize_filename, validate_url

logger = get_logger()

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
MAX_REDIRECTS = 5


@dataclass(frozen=True)
class DownloadConstraints:
    """Limits applied to a single fetch."""

    max_size: int | None = None  # None means unlimited


@dataclass(frozen=True)
class DownloadedFile:
    data: bytes
    content_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        suffix = ""
        if "." in self.filename:
            suffix = "." + self.filename.rsplit(".", 1)[-1].lower()
        if not suffix:
            suffix = mimetypes.guess_extension(self.content_type.split(";")[0]) or ""
        return suffix

    @property
    def kind(self) -> ArtifactKind:
        return detect_kind(self.extension, self.content_type)


DownloadResult = Union[DownloadedFile, list[DownloadedFile]]


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"download service error: {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        for candidate in (data.get("text"), data.get("message"), error):
            if isinstance(candidate, str) and candidate:
                return candidate
        if isinstance(error, dict):
            return str(error.get("code") or error.get("message") or error)
    return str(data) or f"download service error: {response.status_code}"


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value else None
    except ValueError:
        return None


def _origin(url: str) -> tuple[str, str]:
    parsed = urlparse(url)
    return parsed.scheme, parsed.netloc.lower()


async def _read_limited(
    client: httpx.AsyncClient,
    url: str,
    constraints: DownloadConstraints,
    referer: str | None = None,
    trusted_origin: tuple[str, str] | None = None,
) -> tuple[bytes, str, httpx.Response]:
    """Stream a URL into memory, aborting once it exceeds the size limit.

    Redirects are followed one hop at a time and every hop goes through
    ``validate_url``. Hops on ``trusted_origin`` are exempt, so a self-hosted
    download service can hand out tunnel URLs on its own host.

    Raises:
        ValidationError: If a hop points at an internal address or the file is too large
        UpstreamFetchError: If the redirect chain is too long
    """
    headers = {"User-Agent": USER_AGENT, "Accept": "*/*"}
    if referer:
        headers["Referer"] = referer
    for _ in range(MAX_REDIRECTS + 1):
        if trusted_origin is None or _origin(url) != trusted_origin:
            validate_url(url)
        async with client.stream("GET", url, headers=headers, follow_redirects=False) as response:
            if response.is_redirect:
                url = str(response.url.join(response.headers["Location"]))
                logger.debug("download_redirected", location=url[:120])
                continue
            if response.status_code >= 400:
                return b"", "", response
            declared = response.headers.get("Content-Length")
            limit = constraints.max_size
            if limit is not None and declared and int(declared) > limit:
                raise ValidationError("file is too large")
            chunks: list[bytes] = []
            total = 0
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if limit is not None and total > limit:
                    raise ValidationError("file is too large")
                chunks.append(chunk)
            content_type = response.headers.get("Content-Type", "application/octet-stream")
            return b"".join(chunks), content_type, response
    raise UpstreamFetchError(f"too many redirects (max {MAX_REDIRECTS})")


def _filename_from_url(url: str, fallback: str) -> str:
    path = urlparse(url).path
    name = path.rsplit("/", 1)[-1] if path else ""
    return sanitize_filename(name) if name else fallback


class DownloadServiceClient:
    """Resolves social media posts through the download service.

    The service answers with either a media URL to stream or a picker of
    several photos.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        file_timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.file_timeout = file_timeout
        self.transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def fetch(
        self, url: str, constraints: DownloadConstraints | None = None
    ) -> DownloadResult:
        """Download media for a post URL.

        Args:
            url: Social media post URL
            constraints: Size limit for the downloaded media

        Returns:
            One file, or a list of files for multi-photo posts

        Raises:
            RateLimitError: If the service is rate limiting
            UpstreamFetchError: For any other service failure
            ValidationError: If the media exceeds the size limit
        """
        constraints = constraints or DownloadConstraints()
        payload = await self._resolve(url)
        status = payload.get("status")

        if status == "picker" and isinstance(payload.get("picker"), list):
            return await self._download_picker(payload["picker"], constraints)

        if status == "error":
            message = _error_message_from_payload(payload)
            if "rate" in message.lower():
                raise RateLimitError(message)
            raise UpstreamFetchError(message)

        media_url = None
        for key in ("url", "video", "audio", "videoUrl", "downloadUrl", "directUrl"):
            if payload.get(key):
                media_url = payload[key]
                break
        if not media_url:
            raise UpstreamFetchError("download service did not return a media URL")

        filename = sanitize_filename(payload.get("filename") or "video.mp4")
        return await self._download_media(media_url, filename, constraints)

    async def _resolve(self, url: str) -> dict[str, Any]:
        logger.info("download_service_request", url=url)
        body = {
            "url": url,
            "videoQuality": "max",
            "audioFormat": "mp3",
            "downloadMode": "auto",
            "filenameStyle": "pretty",
        }
        try:
            async with self._client(self.timeout) as client:
                response = await client.post(
                    self.base_url,
                    json=body,
                    headers={
                        "Accept": "application/json",
                        "Content-Type": "application/json",
                        "User-Agent": USER_AGENT,
                    },
                )
        except httpx.TimeoutException as e:
            raise UpstreamFetchError("download service request timed out") from e
        except httpx.ConnectError as e:
            raise UpstreamFetchError("download service is not available") from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"failed to call download service: {e}") from e

        if response.status_code == 429:
            raise RateLimitError(_error_message(response), retry_after=_retry_after(response))
        if response.status_code >= 400:
            message = _error_message(response)
            logger.error(
                "download_service_error",
                status_code=response.status_code,
                message=message,
            )
            if "rate" in message.lower():
                raise RateLimitError(message, retry_after=_retry_after(response))
            raise UpstreamFetchError(message)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFetchError("download service returned invalid JSON") from e

    async def _download_media(
        self, media_url: str, filename: str, constraints: DownloadConstraints
    ) -> DownloadedFile:
        try:
            async with self._client(self.file_timeout) as client:
                data, content_type, response = await _read_limited(
                    client,
                    media_url,
                    constraints,
                    referer=media_url,
                    trusted_origin=_origin(self.base_url),
                )
        except httpx.TimeoutException as e:
            raise UpstreamFetchError("media download timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"failed to download media: {e}") from e

        if response.status_code == 404:
            raise UpstreamFetchError("media file not found at download URL")
        if response.status_code >= 400:
            raise UpstreamFetchError(f"media download failed with status {response.status_code}")

        logger.info("media_downloaded", filename=filename, size=len(data))
        return DownloadedFile(data=data, content_type=content_type, filename=filename)

    async def _download_picker(
        self, items: list[dict[str, Any]], constraints: DownloadConstraints
    ) -> list[DownloadedFile]:
        photos = [item for item in items if item.get("type") == "photo" and item.get("url")]
        if not photos:
            raise UpstreamFetchError("no photos found in picker response")
        logger.info("picker_response", photos=len(photos))
        return list(
            await asyncio.gather(
                *(
                    self._download_media(item["url"], f"photo_{index + 1}.jpg", constraints)
                    for index, item in enumerate(photos)
                )
            )
        )


def _error_message_from_payload(payload: dict[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(payload.get("text"), str):
        return payload["text"]
    if isinstance(error, dict):
        return str(error.get("code") or error.get("message") or "download service returned an error")
    if isinstance(error, str):
        return error
    return "download service returned an error"


class DirectFileFetcher:
    """Downloads directly linked files, such as chat attachments."""

    def __init__(
        self,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self.transport = transport

    async def fetch(
        self, url: str, constraints: DownloadConstraints | None = None
    ) -> DownloadedFile:
        """Download a file.

        Raises:
            StaleResourceError: If an attachment link is rejected as expired
            UpstreamFetchError: For other download failures
        """
        constraints = constraints or DownloadConstraints()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                data, content_type, response = await _read_limited(client, url, constraints)
        except httpx.TimeoutException as e:
            raise UpstreamFetchError("file download timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"failed to download file: {e}") from e

        if response.status_code in (403, 404) and is_attachment_url(url):
            raise StaleResourceError("attachment link has expired", url=url)
        if response.status_code >= 400:
            raise UpstreamFetchError(f"file download failed with status {response.status_code}")

        return DownloadedFile(
            data=data,
            content_type=content_type,
            filename=_filename_from_url(url, "file"),
        )

    async def fetch_with_refresh(
        self,
        url: str,
        refresher: AttachmentRefresher | None,
        constraints: DownloadConstraints | None = None,
    ) -> DownloadedFile:
        """Fetch, refreshing a stale attachment URL at most once."""
        if refresher is not None and refresher.needs_refresh(url):
            url = await refresher.refresh(url)
        try:
            return await self.fetch(url, constraints)
        except StaleResourceError:
            if refresher is None:
                raise
            logger.info("attachment_stale_retrying", url=url)
            return await self.fetch(await refresher.refresh(url), constraints)
