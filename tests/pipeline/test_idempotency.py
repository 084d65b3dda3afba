"""
Tests for IdempotencyService.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from eventgate.coordination import InMemoryCoordinationStore
from eventgate.errors import InfrastructureError
from eventgate.pipeline import IdempotencyScope, IdempotencyService


class TestIdempotencyService:
    """Test suite for claim-based idempotency."""

    @pytest.fixture
    def service(self, clock):
        return IdempotencyService(InMemoryCoordinationStore(), default_ttl_hours=24, clock=clock)

    @pytest.mark.asyncio
    async def test_claim_once(self, service):
        assert await service.claim("wamid.A", IdempotencyScope.WEBHOOK) is True
        assert await service.claim("wamid.A", IdempotencyScope.WEBHOOK) is False
        assert await service.is_claimed("wamid.A") is True

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, service):
        results = await asyncio.gather(*(service.claim("evt_1", "payment") for _ in range(25)))
        assert sum(results) == 1

    @pytest.mark.asyncio
    async def test_claim_expires_after_ttl(self, service, clock):
        await service.claim("k", ttl_hours=1)
        clock.advance(3601)
        assert await service.is_claimed("k") is False
        assert await service.claim("k") is True

    @pytest.mark.asyncio
    async def test_zero_ttl_never_expires(self, service, clock):
        await service.claim("k", ttl_hours=0)
        clock.advance(365 * 86400)
        assert await service.is_claimed("k") is True
        assert await service.cleanup() == 0

    @pytest.mark.asyncio
    async def test_release_allows_reclaim(self, service):
        await service.claim("k")
        assert await service.release("k") is True
        assert await service.claim("k") is True

    @pytest.mark.asyncio
    async def test_release_by_scope(self, service):
        await service.claim("a", "order")
        await service.claim("b", "order")
        await service.claim("c", "webhook")
        assert await service.release_by_scope("order") == 2
        assert (await service.get_stats()).by_scope == {"webhook": 1}

    @pytest.mark.asyncio
    async def test_extend_expiry(self, service, clock):
        await service.claim("k", ttl_hours=1)
        assert await service.extend_expiry("k", additional_hours=48)
        clock.advance(24 * 3600)
        assert await service.is_claimed("k") is True

    @pytest.mark.asyncio
    async def test_cleanup_counts_expired(self, service, clock):
        await service.claim("old", ttl_hours=1)
        await service.claim("new", ttl_hours=48)
        clock.advance(2 * 3600)
        assert await service.cleanup() == 1

    def test_generate_key_is_deterministic(self):
        key = IdempotencyService.generate_key("order", 42, "created")
        assert key == IdempotencyService.generate_key("order", 42, "created")
        assert key != IdempotencyService.generate_key("order", 43, "created")
        assert len(key) == 64

    @pytest.mark.asyncio
    async def test_claim_with_parts(self, service):
        assert await service.claim_with_parts("order", "store-1", 42) is True
        assert await service.claim_with_parts("order", "store-1", 42) is False

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, clock):
        store = AsyncMock()
        store.claim_unique.side_effect = InfrastructureError("datastore down")
        service = IdempotencyService(store, clock=clock)

        with pytest.raises(InfrastructureError):
            await service.claim("k")
