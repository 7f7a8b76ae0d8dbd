"""Chat attachment URLs: expiry detection and one-shot refresh."""

import re
import time
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import httpx

from media_relay.core.errors import StaleResourceError
from media_relay.core.logging import get_logger

logger = get_logger()

ATTACHMENT_HOSTS = ("cdn.discordapp.com", "media.discordapp.net")
_ATTACHMENT_PATH = re.compile(r"^/(?:ephemeral-)?attachments/\d+/\d+/")


def is_attachment_url(url: str) -> bool:
    """Check whether a URL points at a chat attachment."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    hostname = (parsed.hostname or "").lower()
    return hostname in ATTACHMENT_HOSTS and bool(_ATTACHMENT_PATH.match(parsed.path))


def is_attachment_expired(url: str, now: float | None = None) -> bool:
    """Check the hex ``ex`` expiry parameter of an attachment URL.

    URLs without a readable expiry are treated as expired.
    """
    try:
        expiry = parse_qs(urlparse(url).query).get("ex", [""])[0]
        if not expiry or len(expiry) > 8:
            return True
        expires_at = int(expiry, 16)
    except ValueError:
        return True
    return (now if now is not None else time.time()) >= expires_at


class AttachmentRefresher:
    """Asks the chat platform for fresh signed attachment URLs."""

    def __init__(
        self,
        api_base_url: str,
        bot_token: str | None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self.bot_token = bot_token
        self.timeout = timeout
        self.transport = transport

    def needs_refresh(self, url: str) -> bool:
        return is_attachment_url(url) and (
            is_attachment_expired(url) or not urlparse(url).query
        )

    async def refresh(self, url: str) -> str:
        """Return a refreshed URL for an attachment.

        Raises:
            StaleResourceError: If the platform can not refresh the URL
        """
        if not self.bot_token:
            raise StaleResourceError("attachment refresh is not configured", url=url)

        headers = {"Authorization": f"Bot {self.bot_token}"}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    f"{self.api_base_url}/attachments/refresh-urls",
                    json={"attachment_urls": [url]},
                    headers=headers,
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            raise StaleResourceError(f"failed to refresh attachment URL: {e}", url=url) from e

        refreshed_urls = payload.get("refreshed_urls") or []
        refreshed = refreshed_urls[0].get("refreshed") if refreshed_urls else None
        if not refreshed:
            raise StaleResourceError("attachment URL could not be refreshed", url=url)

        parsed = urlparse(refreshed)
        query = parse_qs(parsed.query)
        query["animated"] = ["true"]
        fresh = urlunparse(parsed._replace(query=urlencode(query, doseq=True)))
        logger.info("attachment_url_refreshed", url=fresh)
        return fresh
