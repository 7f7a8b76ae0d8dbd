"""Observers notified about operation updates."""

import inspect
import json
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, Union

import httpx
from redis.asyncio import Redis

from media_relay.core.logging import get_logger

logger = get_logger()

Payload = dict[str, Any]


class OperationObserver(Protocol):
    """Receives a serialized operation whenever it changes."""

    async def notify(self, payload: Payload) -> None: ...


class CallbackObserver:
    """Forward updates to an in-process callable (sync or async)."""

    def __init__(self, callback: Callable[[Payload], Union[None, Awaitable[None]]]):
        self.callback = callback

    async def notify(self, payload: Payload) -> None:
        result = self.callback(payload)
        if inspect.isawaitable(result):
            await result


class RedisObserver:
    """Publish updates on a Redis pub/sub channel."""

    def __init__(self, redis: Redis, channel: str):
        self.redis = redis
        self.channel = channel

    @classmethod
    def from_url(cls, redis_url: str, channel: str) -> "RedisObserver":
        return cls(Redis.from_url(redis_url), channel)

    async def notify(self, payload: Payload) -> None:
        await self.redis.publish(self.channel, json.dumps(payload, default=str))

    async def close(self) -> None:
        await self.redis.aclose()


class WebhookObserver:
    """POST updates to a web UI that runs in another process.

    The receiver is optional, so refused connections and timeouts are
    dropped quietly.
    """

    def __init__(self, url: str, timeout: float = 1.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def notify(self, payload: Payload) -> None:
        try:
            response = await self.client.post(self.url, json=payload)
            response.raise_for_status()
        except (httpx.ConnectError, httpx.TimeoutException):
            logger.debug("webhook_observer_unavailable", url=self.url)

    async def close(self) -> None:
        await self.client.aclose()
