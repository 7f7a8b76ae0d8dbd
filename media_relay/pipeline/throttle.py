"""Per-user cooldown between ingest requests."""

import time
from collections.abc import Callable

from media_relay.core.errors import ThrottledError
from media_relay.core.logging import get_logger
from media_relay.core.metrics import THROTTLED_REQUESTS_TOTAL

logger = get_logger()


class UserCooldown:
    """Allows one request per user per cooldown window.

    A refused request does not restart the window. Admins and anonymous
    requests are never throttled.
    """

    def __init__(self, cooldown_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_use: dict[str, float] = {}

    def check(self, user_id: str | None, is_admin: bool = False) -> None:
        """Record a request, or refuse it while the user's cooldown runs.

        Raises:
            ThrottledError: If the user's previous request is too recent
        """
        if not user_id or is_admin or self.cooldown_seconds <= 0:
            return
        now = self._clock()
        last = self._last_use.get(user_id)
        if last is not None and now - last < self.cooldown_seconds:
            remaining = self.cooldown_seconds - (now - last)
            logger.info("user_throttled", user_id=user_id, retry_after=round(remaining, 1))
            THROTTLED_REQUESTS_TOTAL.inc()
            raise ThrottledError(remaining)
        self._last_use[user_id] = now
        self._prune(now)

    def _prune(self, now: float) -> None:
        expired = [
            user for user, last in self._last_use.items() if now - last >= self.cooldown_seconds
        ]
        for user in expired:
            del self._last_use[user]
