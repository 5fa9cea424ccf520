"""
Per-identity fixed-window rate limiting for the tracking endpoint.

The counter lives in the store so it holds across serverless instances.
The read-then-write is not atomic: concurrent requests from one identity
can overshoot the cap slightly. It deters abuse; it is not a quota.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .models import RateLimitWindow
from .store import AnalyticsStore

logger = logging.getLogger(__name__)

RATE_LIMIT_MAX_REQUESTS = 10
RATE_LIMIT_WINDOW_SEC = 60
RATE_LIMIT_RETENTION_SEC = 60 * 60


class RateLimiter:
    """Fixed-window counter keyed by hashed identity.

    Store failures propagate, so ingestion fails closed.
    """

    def __init__(
        self,
        store: AnalyticsStore,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_sec: int = RATE_LIMIT_WINDOW_SEC,
        retention_sec: int = RATE_LIMIT_RETENTION_SEC,
    ):
        self.store = store
        self.max_requests = max_requests
        self.window = timedelta(seconds=window_sec)
        self.retention = timedelta(seconds=retention_sec)

    async def admit(self, hashed_ip: str, now: Optional[datetime] = None) -> bool:
        """Count one request; return False if the identity is over its cap."""
        now = now or datetime.now(timezone.utc)
        existing = await self.store.get_rate_limit(hashed_ip)

        if existing is None:
            await self.store.save_rate_limit(
                RateLimitWindow(hashed_ip=hashed_ip, request_count=1, window_start=now)
            )
            await self._prune(now)
            return True

        if now - existing.window_start >= self.window:
            await self.store.save_rate_limit(
                RateLimitWindow(hashed_ip=hashed_ip, request_count=1, window_start=now)
            )
            return True

        if existing.request_count >= self.max_requests:
            logger.warning(f"Rate limit exceeded for {hashed_ip[:12]}")
            return False

        await self.store.save_rate_limit(
            existing.model_copy(update={"request_count": existing.request_count + 1})
        )
        return True

    async def _prune(self, now: datetime) -> None:
        """Drop windows idle past the retention horizon.

        Runs when a new identity shows up, which bounds the table to
        identities seen within the horizon.
        """
        try:
            removed = await self.store.delete_rate_limits_before(now - self.retention)
        except Exception as exc:
            logger.warning(f"Pruning stale rate-limit windows failed: {exc!r}")
            return
        if removed:
            logger.debug(f"Pruned {removed} stale rate-limit windows")
