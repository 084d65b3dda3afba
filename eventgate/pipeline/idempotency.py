"""
Idempotency Service

Durable key -> claim mapping with TTL. `claim` is the only operation safe
for mutual exclusion; `is_claimed` is informational.
"""

import hashlib
from datetime import timedelta
from enum import Enum
from typing import Optional

from eventgate.config import get_settings
from eventgate.coordination.base import ClaimStats, CoordinationStore
from eventgate.utils.observability import logger
from eventgate.utils.time import Clock, utc_now


class IdempotencyScope(str, Enum):
    """Namespaces for claims; the same key may be claimed once per scope."""
    WEBHOOK = "webhook"
    WEBHOOK_STATUS = "webhook_status"
    NOTIFICATION = "notification"
    ORDER = "order"
    BROADCAST = "broadcast"
    SYNC = "sync"
    PAYMENT = "payment"
    QUEUE_RETRY = "queue_retry"


class IdempotencyService:
    """
    Exactly-once claims on top of the coordination store.

    Attributes:
        store: Coordination store holding the claims
        default_ttl_hours: Expiry applied when claim() gets no TTL
    """

    def __init__(
        self,
        store: CoordinationStore,
        default_ttl_hours: Optional[int] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.default_ttl_hours = (
            default_ttl_hours if default_ttl_hours is not None
            else get_settings().idempotency_default_ttl_hours
        )
        self._clock = clock

    async def claim(
        self,
        key: str,
        scope: str = IdempotencyScope.WEBHOOK.value,
        ttl_hours: Optional[float] = None,
    ) -> bool:
        """
        Atomically claim `key` in `scope`; the first caller wins.

        Args:
            key: Claim key (message ID, hash, ...)
            scope: Claim namespace
            ttl_hours: Claim lifetime; None uses the default, 0 never expires

        Returns:
            True if this call owns the claim, False if it already existed

        Raises:
            InfrastructureError: If the store is unavailable
        """
        now = self._clock()
        ttl = self.default_ttl_hours if ttl_hours is None else ttl_hours
        expires_at = now + timedelta(hours=ttl) if ttl > 0 else None

        claimed = await self.store.claim_unique(key, _scope(scope), expires_at, now)
        if not claimed:
            logger.debug(f"Duplicate claim rejected: {scope}/{key}")
        return claimed

    async def is_claimed(self, key: str, scope: str = IdempotencyScope.WEBHOOK.value) -> bool:
        """Informational check; use claim() for exclusion."""
        return await self.store.is_claimed(key, _scope(scope), self._clock())

    async def release(self, key: str, scope: str = IdempotencyScope.WEBHOOK.value) -> bool:
        """Delete a claim so the key can be processed again."""
        released = await self.store.release_claim(key, _scope(scope))
        if released:
            logger.info(f"Released idempotency claim {scope}/{key}")
        return released

    async def release_by_scope(self, scope: str) -> int:
        """Delete every claim in a scope."""
        count = await self.store.release_scope(_scope(scope))
        logger.info(f"Released {count} idempotency claims in scope {scope}")
        return count

    async def extend_expiry(
        self,
        key: str,
        scope: str = IdempotencyScope.WEBHOOK.value,
        additional_hours: float = 24,
    ) -> bool:
        """Push a claim's expiry to now + additional_hours."""
        expires_at = self._clock() + timedelta(hours=additional_hours)
        return await self.store.extend_claim(key, _scope(scope), expires_at)

    async def cleanup(self) -> int:
        """Delete expired claims. Returns the number deleted."""
        count = await self.store.purge_expired_claims(self._clock())
        if count:
            logger.info(f"Cleaned up {count} expired idempotency claims")
        return count

    async def get_stats(self) -> ClaimStats:
        return await self.store.claim_stats(self._clock())

    @staticmethod
    def generate_key(*parts: object) -> str:
        """Deterministic key from parts: sha256 of the ":"-joined parts."""
        return hashlib.sha256(":".join(str(p) for p in parts).encode("utf-8")).hexdigest()

    async def claim_with_parts(self, scope: str, *parts: object, ttl_hours: Optional[float] = None) -> bool:
        """claim() with a key derived from generate_key(*parts)."""
        return await self.claim(self.generate_key(*parts), scope, ttl_hours)


def _scope(scope: str) -> str:
    return scope.value if isinstance(scope, IdempotencyScope) else scope
