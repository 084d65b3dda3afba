"""
In-Memory Coordination Store

Single-process implementation for tests and single-node deployments.
All state is lost on restart.
"""

import asyncio
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from eventgate.coordination.base import ClaimStats, CoordinationStore
from eventgate.utils.time import utc_now


class InMemoryCoordinationStore(CoordinationStore):
    """
    Coordination store backed by dictionaries guarded by one asyncio.Lock.

    Suitable for:
    - Testing
    - Single-instance deployments

    Not suitable for:
    - Multiple worker processes
    """

    def __init__(self):
        self._locks: dict[str, tuple[str, datetime]] = {}  # key -> (owner, expires_at)
        self._claims: dict[tuple[str, str], Optional[datetime]] = {}  # (key, scope) -> expires_at
        self._windows: dict[tuple[str, str], int] = {}  # (identifier, window) -> count
        self._mutex = asyncio.Lock()

    async def try_lock(self, key: str, ttl_seconds: float, owner: str) -> bool:
        async with self._mutex:
            now = utc_now()
            held = self._locks.get(key)
            if held and held[1] > now:
                return False
            self._locks[key] = (owner, now + timedelta(seconds=ttl_seconds))
            return True

    async def release_lock(self, key: str, owner: str) -> bool:
        async with self._mutex:
            held = self._locks.get(key)
            if held is None or held[0] != owner:
                return False
            del self._locks[key]
            return True

    async def claim_unique(
        self,
        key: str,
        scope: str,
        expires_at: Optional[datetime],
        now: datetime,
    ) -> bool:
        async with self._mutex:
            if (key, scope) in self._claims and not self._expired(self._claims[(key, scope)], now):
                return False
            self._claims[(key, scope)] = expires_at
            return True

    async def is_claimed(self, key: str, scope: str, now: datetime) -> bool:
        async with self._mutex:
            if (key, scope) not in self._claims:
                return False
            return not self._expired(self._claims[(key, scope)], now)

    async def release_claim(self, key: str, scope: str) -> bool:
        async with self._mutex:
            if (key, scope) not in self._claims:
                return False
            del self._claims[(key, scope)]
            return True

    async def release_scope(self, scope: str) -> int:
        async with self._mutex:
            doomed = [k for k in self._claims if k[1] == scope]
            for k in doomed:
                del self._claims[k]
            return len(doomed)

    async def extend_claim(self, key: str, scope: str, expires_at: datetime) -> bool:
        async with self._mutex:
            if (key, scope) not in self._claims:
                return False
            self._claims[(key, scope)] = expires_at
            return True

    async def purge_expired_claims(self, now: datetime) -> int:
        async with self._mutex:
            doomed = [k for k, exp in self._claims.items() if self._expired(exp, now)]
            for k in doomed:
                del self._claims[k]
            return len(doomed)

    async def claim_stats(self, now: datetime) -> ClaimStats:
        async with self._mutex:
            return ClaimStats(
                total=len(self._claims),
                expired=sum(1 for exp in self._claims.values() if self._expired(exp, now)),
                by_scope=dict(Counter(scope for _, scope in self._claims)),
            )

    async def conditional_increment(self, identifier: str, window: str, limit: int) -> bool:
        async with self._mutex:
            current = self._windows.get((identifier, window), 0)
            if current >= limit:
                return False
            self._windows[(identifier, window)] = current + 1
            return True

    async def window_count(self, identifier: str, window: str) -> int:
        async with self._mutex:
            return self._windows.get((identifier, window), 0)

    async def purge_windows(self, before: str) -> int:
        async with self._mutex:
            doomed = [k for k in self._windows if k[1] < before]
            for k in doomed:
                del self._windows[k]
            return len(doomed)

    @staticmethod
    def _expired(expires_at: Optional[datetime], now: datetime) -> bool:
        return expires_at is not None and expires_at <= now
