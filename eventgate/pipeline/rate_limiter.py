"""
Rate Limiting

Per-identifier fixed-minute counters stored in the coordination store.
The conditional increment guarantees a counter never exceeds its limit,
however many workers check concurrently.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from eventgate.coordination.base import CoordinationStore
from eventgate.utils.observability import logger
from eventgate.utils.time import Clock, minute_window, utc_now


@dataclass
class RateLimitResult:
    """
    Result of rate limit check.

    Attributes:
        allowed: Whether the request is allowed
        remaining: Number of requests remaining in current window
        reset_at: When the rate limit window resets
        retry_after: Seconds to wait before retrying (if blocked)
        reason: Why the request was blocked (if applicable)
    """
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: Optional[int] = None
    reason: Optional[str] = None


class RateLimiter:
    """
    Minute-window rate limiter.

    Windows are keyed "YYYY-MM-DD HH:MM" (UTC); rows older than
    `retention_minutes` are removed by cleanup().
    """

    def __init__(
        self,
        store: CoordinationStore,
        retention_minutes: int = 5,
        clock: Clock = utc_now,
    ):
        """
        Initialize rate limiter.

        Args:
            store: Coordination store holding the counters
            retention_minutes: Age after which window rows are purged
            clock: Time source
        """
        self.store = store
        self.retention_minutes = retention_minutes
        self._clock = clock

    async def check(self, identifier: str, limit: int) -> RateLimitResult:
        """
        Consume one unit of `identifier`'s budget for the current minute.

        Args:
            identifier: Counter name (e.g. "queue_urgent")
            limit: Maximum units per minute

        Returns:
            Rate limit result
        """
        now = self._clock()
        window = minute_window(now)
        reset_at = now.replace(second=0, microsecond=0) + timedelta(minutes=1)

        allowed = await self.store.conditional_increment(identifier, window, limit)
        used = await self.store.window_count(identifier, window)

        if not allowed:
            retry_after = max(int((reset_at - now).total_seconds()), 1)
            logger.warning(
                f"Rate limit reached for {identifier}",
                extra={"identifier": identifier, "limit": limit, "window": window}
            )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
                reason=f"Rate limit exceeded: {used}/{limit} in window {window}",
            )

        return RateLimitResult(
            allowed=True,
            remaining=max(limit - used, 0),
            reset_at=reset_at,
        )

    async def usage(self, identifier: str) -> int:
        """Units consumed in the current window."""
        return await self.store.window_count(identifier, minute_window(self._clock()))

    async def cleanup(self) -> int:
        """Delete windows older than the retention period."""
        cutoff = minute_window(self._clock() - timedelta(minutes=self.retention_minutes))
        count = await self.store.purge_windows(cutoff)
        if count:
            logger.debug(f"Purged {count} rate limit windows older than {cutoff}")
        return count
