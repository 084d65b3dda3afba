"""
Tests for the ingestion front door.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from eventgate.errors import InfrastructureError
from eventgate.ingestion import MESSAGE_HOOK, PAYMENT_HOOK, STATUS_HOOK, IngestionService
from eventgate.models.events import EventType, InboundEvent, IngestStatus
from eventgate.utils.metrics import metrics


def message_event(message_id="wamid.HBgM1", **body):
    return InboundEvent(
        event_type=EventType.MESSAGE,
        natural_id=message_id,
        body={"message_id": message_id, "from": "5215512345678", **body},
    )


@pytest.fixture
def ingestion(pipeline):
    return pipeline.ingestion


class TestIngest:
    """Test suite for IngestionService.ingest()."""

    @pytest.mark.asyncio
    async def test_accepts_and_schedules(self, ingestion, pipeline):
        result = await ingestion.ingest(message_event())

        assert result.status == IngestStatus.ACCEPTED.value
        assert result.is_success
        assert result.key == "wamid.HBgM1"

        [job] = await pipeline.backend.list_jobs()
        assert job.id == result.job_id
        assert job.hook == MESSAGE_HOOK
        assert job.group == "urgent"
        assert job.payload["args"]["message_id"] == "wamid.HBgM1"
        assert metrics.events_ingested.value(event_type="message", status="accepted") == 1

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, ingestion, pipeline):
        await ingestion.ingest(message_event())
        result = await ingestion.ingest(message_event())

        assert result.status == IngestStatus.DUPLICATE.value
        assert result.is_success
        assert result.job_id is None
        assert await pipeline.backend.pending_count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_schedule_once(self, ingestion, pipeline):
        results = await asyncio.gather(*(ingestion.ingest(message_event()) for _ in range(20)))

        statuses = [r.status for r in results]
        assert statuses.count("accepted") == 1
        assert statuses.count("duplicate") == 19
        assert await pipeline.backend.pending_count() == 1

    @pytest.mark.asyncio
    async def test_status_scope_is_separate(self, ingestion, pipeline):
        await ingestion.ingest(message_event("wamid.X"))
        status = InboundEvent(
            event_type=EventType.STATUS,
            natural_id="wamid.X:delivered",
            body={"message_id": "wamid.X", "status": "delivered"},
        )

        result = await ingestion.ingest(status)

        assert result.status == "accepted"
        hooks = sorted(job.hook for job in await pipeline.backend.list_jobs())
        assert hooks == sorted([MESSAGE_HOOK, STATUS_HOOK])

    @pytest.mark.asyncio
    async def test_payment_goes_to_critical_lane(self, ingestion, pipeline):
        event = InboundEvent(
            event_type=EventType.PAYMENT,
            natural_id="evt_1",
            source="stripe",
            body={"gateway": "stripe", "event_id": "evt_1", "payload": {}},
        )

        await ingestion.ingest(event)

        [job] = await pipeline.backend.list_jobs()
        assert job.hook == PAYMENT_HOOK
        assert job.group == "critical"

    @pytest.mark.asyncio
    async def test_body_hash_when_no_natural_id(self, ingestion):
        event = InboundEvent(event_type=EventType.ERROR, body={"code": 131047, "title": "Re-engagement"})
        reordered = InboundEvent(event_type=EventType.ERROR, body={"title": "Re-engagement", "code": 131047})

        first = await ingestion.ingest(event)
        second = await ingestion.ingest(reordered)

        assert first.status == "accepted"
        assert len(first.key) == 64
        assert second.status == "duplicate"

    @pytest.mark.asyncio
    async def test_rejects_event_without_id_or_body(self, ingestion, pipeline):
        result = await ingestion.ingest(InboundEvent(event_type=EventType.ERROR))

        assert result.status == IngestStatus.REJECTED.value
        assert not result.is_success
        assert await pipeline.backend.pending_count() == 0

    @pytest.mark.asyncio
    async def test_scheduler_failure_releases_claim(self, ingestion, pipeline):
        real_schedule = pipeline.scheduler.schedule
        pipeline.scheduler.schedule = AsyncMock(return_value=None)

        failed = await ingestion.ingest(message_event())
        assert failed.status == IngestStatus.FAILED.value
        assert not failed.is_success

        # The provider's redelivery goes through once the scheduler recovers
        pipeline.scheduler.schedule = real_schedule
        retried = await ingestion.ingest(message_event())
        assert retried.status == IngestStatus.ACCEPTED.value

    @pytest.mark.asyncio
    async def test_claim_failure_is_reported(self, pipeline):
        idempotency = AsyncMock()
        idempotency.claim.side_effect = InfrastructureError("datastore down")
        service = IngestionService(idempotency, pipeline.scheduler)

        result = await service.ingest(message_event())

        assert result.status == IngestStatus.FAILED.value
        assert "datastore down" in result.error
        assert await pipeline.backend.pending_count() == 0

    @pytest.mark.asyncio
    async def test_ingest_many_preserves_order(self, ingestion):
        results = await ingestion.ingest_many([message_event("a"), message_event("a"), message_event("b")])
        assert [r.status for r in results] == ["accepted", "duplicate", "accepted"]
