"""
Tests for InMemoryExecutorBackend.
"""
import pytest
import datetime as dt

from eventgate.executor import InMemoryExecutorBackend, JobStatus


class TestInMemoryExecutorBackend:
    """Test suite for the heap-ordered in-memory backend."""

    @pytest.fixture
    def backend(self, clock):
        return InMemoryExecutorBackend(clock=clock)

    async def _schedule(self, backend, clock, hook="h", priority=3, delay=0, fingerprint="fp", interval=None):
        group = {1: "critical", 2: "urgent", 3: "normal", 4: "bulk", 5: "maintenance"}[priority]
        return await backend.schedule_at(
            hook,
            {"version": 2, "meta": {"priority": priority}, "args": {}},
            clock() + dt.timedelta(seconds=delay),
            group,
            priority,
            fingerprint,
            interval,
        )

    @pytest.mark.asyncio
    async def test_claims_only_due_jobs(self, backend, clock):
        await self._schedule(backend, clock, delay=0)
        await self._schedule(backend, clock, delay=60)

        claimed = await backend.claim_due(10)
        assert len(claimed) == 1
        assert claimed[0].status == JobStatus.RUNNING.value

        clock.advance(61)
        assert len(await backend.claim_due(10)) == 1

    @pytest.mark.asyncio
    async def test_most_urgent_first(self, backend, clock):
        await self._schedule(backend, clock, hook="bulk", priority=4)
        await self._schedule(backend, clock, hook="critical", priority=1)
        await self._schedule(backend, clock, hook="normal", priority=3)

        claimed = await backend.claim_due(2)
        assert [job.hook for job in claimed] == ["critical", "normal"]

        # The leftover job is still claimable
        assert [job.hook for job in await backend.claim_due(2)] == ["bulk"]

    @pytest.mark.asyncio
    async def test_claimed_job_not_handed_out_twice(self, backend, clock):
        await self._schedule(backend, clock)
        assert len(await backend.claim_due(10)) == 1
        assert await backend.claim_due(10) == []

    @pytest.mark.asyncio
    async def test_defer_returns_job_to_pending(self, backend, clock):
        job_id = await self._schedule(backend, clock)
        await backend.claim_due(10)

        await backend.defer(job_id, clock() + dt.timedelta(seconds=5))
        assert await backend.claim_due(10) == []

        clock.advance(5)
        assert [job.id for job in await backend.claim_due(10)] == [job_id]

    @pytest.mark.asyncio
    async def test_recurring_job_reschedules_on_complete(self, backend, clock):
        job_id = await self._schedule(backend, clock, hook="maint", priority=5, interval=3600)
        await backend.claim_due(10)
        await backend.complete(job_id)

        assert await backend.has_pending("maint") is True
        clock.advance(3600)
        follow_up = await backend.claim_due(10)
        assert len(follow_up) == 1
        assert follow_up[0].id != job_id

    @pytest.mark.asyncio
    async def test_has_pending_by_fingerprint_and_cancel(self, backend, clock):
        await self._schedule(backend, clock, fingerprint="a")
        await self._schedule(backend, clock, fingerprint="b")

        assert await backend.has_pending("h", "a") is True
        assert await backend.cancel_by_hook("h", "a") == 1
        assert await backend.has_pending("h", "a") is False
        assert await backend.has_pending("h", "b") is True

    @pytest.mark.asyncio
    async def test_cancel_lane(self, backend, clock):
        await self._schedule(backend, clock, priority=4)
        await self._schedule(backend, clock, priority=4)
        await self._schedule(backend, clock, priority=2)

        assert await backend.cancel_lane("bulk") == 2
        assert await backend.pending_count("bulk") == 0
        assert await backend.pending_count() == 1

    @pytest.mark.asyncio
    async def test_stats_and_throughput(self, backend, clock):
        ok = await self._schedule(backend, clock)
        bad = await self._schedule(backend, clock)
        await self._schedule(backend, clock, delay=600)

        clock.advance(2)
        await backend.claim_due(2)
        await backend.complete(ok)
        await backend.fail(bad, "boom")

        stats = await backend.stats()
        assert stats["normal"].completed == 1
        assert stats["normal"].failed == 1
        assert stats["normal"].pending == 1

        throughput = await backend.throughput(clock() - dt.timedelta(hours=1))
        assert throughput.completed == 1
        assert throughput.failed == 1
        assert throughput.avg_wait_seconds == pytest.approx(2.0)

        failed = await backend.list_jobs(status=JobStatus.FAILED)
        assert [job.last_error for job in failed] == ["boom"]

    @pytest.mark.asyncio
    async def test_purge_finished(self, backend, clock):
        job_id = await self._schedule(backend, clock)
        await self._schedule(backend, clock, delay=600)
        await backend.claim_due(1)
        await backend.complete(job_id)

        clock.advance(86400)
        assert await backend.purge_finished(clock() - dt.timedelta(hours=1)) == 1
        assert await backend.pending_count() == 1

    @pytest.mark.asyncio
    async def test_reset_stale_reclaims_abandoned_jobs(self, backend, clock):
        await self._schedule(backend, clock)
        assert len(await backend.claim_due(10)) == 1

        clock.advance(60)
        assert await backend.reset_stale(clock() - dt.timedelta(seconds=300)) == 0
        assert await backend.claim_due(10) == []

        clock.advance(24 * 3600)
        assert await backend.reset_stale(clock() - dt.timedelta(seconds=300)) == 1

        [job] = await backend.claim_due(10)
        assert job.status == JobStatus.RUNNING.value
        assert job.started_at == clock()
        assert await backend.has_pending("h", "fp")
