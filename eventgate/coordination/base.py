"""
Coordination Store Interface

The three atomic primitives every worker shares through the datastore:
- advisory locks with TTL (try_lock / release_lock)
- unique-insert claims (claim_unique)
- bounded counters (conditional_increment)
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from pydantic import BaseModel, Field


class ClaimStats(BaseModel):
    """
    Snapshot of the claim table.

    Attributes:
        total: Number of stored claims
        expired: Claims past their expiry that the sweep has not removed yet
        by_scope: Claim count per scope
    """
    total: int = 0
    expired: int = 0
    by_scope: dict[str, int] = Field(default_factory=dict)


class CoordinationStore(ABC):
    """
    Abstract coordination store.

    Implementations must make each primitive atomic across every worker
    sharing the store.
    """

    # ---------- advisory locks ----------

    @abstractmethod
    async def try_lock(self, key: str, ttl_seconds: float, owner: str) -> bool:
        """
        Try to take a lock once, without waiting.

        Expired locks are reaped before the attempt so a crashed holder
        cannot block the key forever.

        Args:
            key: Lock name
            ttl_seconds: Lock lifetime
            owner: Token identifying the holder

        Returns:
            True if the lock is now held by `owner`
        """
        pass

    @abstractmethod
    async def release_lock(self, key: str, owner: str) -> bool:
        """
        Release a lock held by `owner`.

        Returns:
            True if a lock was released
        """
        pass

    # ---------- unique claims ----------

    @abstractmethod
    async def claim_unique(
        self,
        key: str,
        scope: str,
        expires_at: Optional[datetime],
        now: datetime,
    ) -> bool:
        """
        Insert a (key, scope) claim; first writer wins.

        An expired claim counts as absent.

        Args:
            key: Claim key
            scope: Claim namespace
            expires_at: Expiry, or None for a permanent claim
            now: Current time

        Returns:
            True if this call created the claim
        """
        pass

    @abstractmethod
    async def is_claimed(self, key: str, scope: str, now: datetime) -> bool:
        """Check for a live claim without mutating anything."""
        pass

    @abstractmethod
    async def release_claim(self, key: str, scope: str) -> bool:
        """Delete a claim. Returns True if one existed."""
        pass

    @abstractmethod
    async def release_scope(self, scope: str) -> int:
        """Delete every claim in a scope. Returns the number deleted."""
        pass

    @abstractmethod
    async def extend_claim(self, key: str, scope: str, expires_at: datetime) -> bool:
        """Move a claim's expiry. Returns True if the claim exists."""
        pass

    @abstractmethod
    async def purge_expired_claims(self, now: datetime) -> int:
        """Delete claims whose expiry is in the past."""
        pass

    @abstractmethod
    async def claim_stats(self, now: datetime) -> ClaimStats:
        """Summarize stored claims."""
        pass

    # ---------- bounded counters ----------

    @abstractmethod
    async def conditional_increment(self, identifier: str, window: str, limit: int) -> bool:
        """
        Increment the (identifier, window) counter only while it is below `limit`.

        Returns:
            True if the increment happened
        """
        pass

    @abstractmethod
    async def window_count(self, identifier: str, window: str) -> int:
        """Current value of a counter (0 if absent)."""
        pass

    @abstractmethod
    async def purge_windows(self, before: str) -> int:
        """Delete counters whose window key sorts before `before`."""
        pass


@asynccontextmanager
async def advisory_lock(
    store: CoordinationStore,
    key: str,
    timeout: float = 5.0,
    ttl_seconds: float = 30.0,
    poll_interval: float = 0.05,
) -> AsyncIterator[bool]:
    """
    Wait up to `timeout` seconds for a lock and hold it for the block.

    Yields whether the lock was acquired; callers treat False as
    "someone else owns this work". The lock is always released on exit.

    Usage:
        async with advisory_lock(store, "unique_job:abc", timeout=5) as acquired:
            if not acquired:
                return None
            ...
    """
    owner = uuid.uuid4().hex
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(timeout, 0.0)

    acquired = await store.try_lock(key, ttl_seconds, owner)
    while not acquired and loop.time() < deadline:
        await asyncio.sleep(poll_interval)
        acquired = await store.try_lock(key, ttl_seconds, owner)

    try:
        yield acquired
    finally:
        if acquired:
            await store.release_lock(key, owner)
