"""
Tests for QueueProcessor.execute(): completion, retries, quarantine and
circuit deferrals.
"""
import asyncio
import json
import pytest
from unittest.mock import AsyncMock

from eventgate.errors import DomainError, InfrastructureError, PayloadValidationError
from eventgate.models.job import JobEnvelope, Priority, RetryOutcome
from eventgate.pipeline import ProcessOutcome, ProcessorRegistry, QueueProcessor
from eventgate.utils.circuit_breaker import CircuitBreaker
from eventgate.utils.metrics import metrics


class RecordingProcessor(QueueProcessor):
    """Processor that records its calls and raises a configured error."""

    def __init__(self, scheduler, dead_letters, error=None, delay=0.0, hook="sync_contact", **kwargs):
        super().__init__(scheduler, dead_letters, **kwargs)
        self.error = error
        self.delay = delay
        self.hook = hook
        self.calls = []

    def get_hook_name(self):
        return self.hook

    async def process(self, args):
        self.calls.append(args)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error


def payload(args=None, **meta):
    return JobEnvelope.wrap(args or {"contact_id": 9}, **meta).to_payload()


@pytest.fixture
def make_processor(pipeline):
    def _make(**kwargs):
        return RecordingProcessor(pipeline.scheduler, pipeline.dead_letters, **kwargs)
    return _make


class TestExecute:
    """Happy path and failure routing."""

    @pytest.mark.asyncio
    async def test_success(self, make_processor):
        processor = make_processor()

        outcome = await processor.execute(payload({"contact_id": 1}))

        assert outcome == ProcessOutcome.COMPLETED
        assert processor.calls == [{"contact_id": 1}]
        assert metrics.jobs_processed.value(hook="sync_contact", outcome="completed") == 1

    @pytest.mark.asyncio
    async def test_legacy_payload_is_unwrapped(self, make_processor):
        processor = make_processor()
        legacy = {"contact_id": 1, "_job_meta": {"priority": 3, "attempt": 1, "scheduled_at": 1}}

        assert await processor.execute(legacy) == ProcessOutcome.COMPLETED
        assert processor.calls == [{"contact_id": 1}]

    @pytest.mark.asyncio
    async def test_retryable_error_schedules_retry(self, make_processor, pipeline):
        processor = make_processor(error=InfrastructureError("CRM unavailable"))

        outcome = await processor.execute(payload(priority=Priority.URGENT))

        assert outcome == ProcessOutcome.RETRY_SCHEDULED
        [job] = await pipeline.backend.list_jobs()
        assert job.payload["meta"]["attempt"] == 2
        assert job.group == "urgent"

    @pytest.mark.asyncio
    async def test_retries_exhaust_into_single_dead_letter(self, make_processor, pipeline, clock):
        processor = make_processor(error=InfrastructureError("CRM unavailable"))
        await pipeline.scheduler.schedule("sync_contact", {"contact_id": 9})

        outcomes = []
        for wait in (0, 30, 90):
            clock.advance(wait)
            [job] = await pipeline.backend.claim_due(10)
            outcomes.append(await processor.execute(job.payload))
            await pipeline.backend.complete(job.id)

        assert outcomes == [
            ProcessOutcome.RETRY_SCHEDULED,
            ProcessOutcome.RETRY_SCHEDULED,
            ProcessOutcome.DEAD_LETTERED,
        ]
        assert len(processor.calls) == 3

        [entry] = await pipeline.dead_letters.get_pending()
        assert entry.reason == "max_retries_exceeded"
        assert entry.attempts == 3
        assert entry.error_message == "CRM unavailable"
        assert await pipeline.backend.pending_count() == 0

    @pytest.mark.asyncio
    async def test_validation_error_dead_letters_immediately(self, make_processor, pipeline):
        processor = make_processor(error=PayloadValidationError("missing phone"))

        outcome = await processor.execute(payload())

        assert outcome == ProcessOutcome.DEAD_LETTERED
        [entry] = await pipeline.dead_letters.get_pending()
        assert entry.reason == "validation_failed"
        assert entry.attempts == 1
        assert entry.metadata["processor"] == "RecordingProcessor"
        assert entry.metadata["error_kind"] == "validation"
        assert json.loads(entry.args)["contact_id"] == 9
        assert await pipeline.backend.pending_count() == 0

    @pytest.mark.asyncio
    async def test_domain_error_is_not_retried(self, make_processor, pipeline):
        processor = make_processor(error=DomainError("order already cancelled"))

        assert await processor.execute(payload()) == ProcessOutcome.DEAD_LETTERED
        [entry] = await pipeline.dead_letters.get_pending()
        assert entry.reason == "exception"

    @pytest.mark.asyncio
    async def test_unknown_errors_are_retried(self, make_processor):
        processor = make_processor(error=RuntimeError("connection reset"))
        assert await processor.execute(payload()) == ProcessOutcome.RETRY_SCHEDULED

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, make_processor):
        processor = make_processor(delay=0.5, timeout=0.01)
        assert await processor.execute(payload()) == ProcessOutcome.RETRY_SCHEDULED

    @pytest.mark.asyncio
    async def test_timeout_without_retry_policy(self, make_processor, pipeline):
        processor = make_processor(delay=0.5, timeout=0.01)
        processor.should_retry = lambda error: False

        assert await processor.execute(payload()) == ProcessOutcome.DEAD_LETTERED
        [entry] = await pipeline.dead_letters.get_pending()
        assert entry.reason == "timeout"

    @pytest.mark.asyncio
    async def test_retry_already_handled_is_skipped(self, make_processor):
        processor = make_processor(error=InfrastructureError("down"))
        job = payload()

        assert await processor.execute(job) == ProcessOutcome.RETRY_SCHEDULED
        assert await processor.execute(job) == ProcessOutcome.RETRY_SKIPPED

    @pytest.mark.asyncio
    async def test_unrecordable_retry_raises(self, make_processor, pipeline):
        processor = make_processor(error=InfrastructureError("down"))
        pipeline.scheduler.retry = AsyncMock(return_value=RetryOutcome.FAILED)

        with pytest.raises(InfrastructureError):
            await processor.execute(payload())


class TestInvalidEnvelopes:
    """Payloads that cannot be unwrapped."""

    @pytest.mark.asyncio
    async def test_non_map_payload(self, make_processor, pipeline):
        processor = make_processor()

        assert await processor.execute("garbage") == ProcessOutcome.DEAD_LETTERED
        assert processor.calls == []

        [entry] = await pipeline.dead_letters.get_pending()
        assert entry.reason == "exception"
        assert json.loads(entry.args) == {"raw_payload": "'garbage'"}

    @pytest.mark.asyncio
    async def test_invalid_meta(self, make_processor, pipeline):
        processor = make_processor()
        bad = {"version": 2, "meta": {"attempt": 0}, "args": {"x": 1}}

        assert await processor.execute(bad) == ProcessOutcome.DEAD_LETTERED
        assert len(await pipeline.dead_letters.get_pending()) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("meta", [
        {"attempt": "x"},
        {"attempt": None},
        {"priority": None},
        {"priority": "high"},
    ])
    async def test_non_numeric_meta_is_quarantined(self, make_processor, pipeline, meta):
        processor = make_processor()
        bad = {"version": 2, "meta": meta, "args": {"a": 1}}

        assert await processor.execute(bad) == ProcessOutcome.DEAD_LETTERED
        assert processor.calls == []

        [entry] = await pipeline.dead_letters.get_pending()
        assert entry.reason == "exception"
        assert entry.attempts == 1
        assert entry.priority == Priority.NORMAL
        assert json.loads(entry.args) == bad


class TestCircuitDeferral:
    """Jobs wait out an open circuit instead of spending retries."""

    @pytest.fixture
    def circuit(self, clock):
        return CircuitBreaker("crm", failure_threshold=1, recovery_timeout=300, clock=clock)

    @pytest.mark.asyncio
    async def test_open_circuit_defers(self, make_processor, pipeline, circuit, clock):
        await circuit.force_open()
        processor = make_processor(circuit=circuit)

        outcome = await processor.execute(payload(attempt=2))

        assert outcome == ProcessOutcome.DEFERRED
        assert processor.calls == []
        [job] = await pipeline.backend.list_jobs()
        assert job.payload["meta"]["attempt"] == 2
        assert job.payload["meta"]["circuit_deferrals"] == 1
        assert (job.run_at - clock()).total_seconds() == processor.circuit_open_delay
        assert metrics.circuit_deferrals.value(hook="sync_contact") == 1

    @pytest.mark.asyncio
    async def test_deferral_budget_exhausted(self, make_processor, pipeline, circuit):
        await circuit.force_open()
        processor = make_processor(circuit=circuit)
        processor.max_circuit_deferrals = 2

        outcome = await processor.execute(payload(circuit_deferrals=2))

        assert outcome == ProcessOutcome.DEAD_LETTERED
        [entry] = await pipeline.dead_letters.get_pending()
        assert entry.reason == "circuit_breaker_open"

    @pytest.mark.asyncio
    async def test_failure_opens_circuit_then_defers(self, make_processor, circuit):
        processor = make_processor(error=InfrastructureError("CRM 503"), circuit=circuit)

        assert await processor.execute(payload({"contact_id": 1})) == ProcessOutcome.RETRY_SCHEDULED
        assert await circuit.is_open() is True
        assert await processor.execute(payload({"contact_id": 2})) == ProcessOutcome.DEFERRED
        assert len(processor.calls) == 1

    @pytest.mark.asyncio
    async def test_excluded_errors_leave_circuit_closed(self, make_processor, clock):
        circuit = CircuitBreaker(
            "crm", failure_threshold=1, excluded_exceptions=(PayloadValidationError,), clock=clock
        )
        processor = make_processor(error=PayloadValidationError("bad"), circuit=circuit)

        assert await processor.execute(payload()) == ProcessOutcome.DEAD_LETTERED
        assert await circuit.is_open() is False


class TestProcessorRegistry:
    """Hook -> processor mapping."""

    def test_register_and_lookup(self, make_processor):
        registry = ProcessorRegistry()
        first = make_processor(hook="b_hook")
        second = make_processor(hook="a_hook")
        registry.register(first)
        registry.register(second)

        assert registry.get("b_hook") is first
        assert registry.get("missing") is None
        assert registry.hooks() == ["a_hook", "b_hook"]
        assert "a_hook" in registry
        assert len(registry) == 2

    def test_duplicate_hook_rejected(self, make_processor):
        registry = ProcessorRegistry()
        registry.register(make_processor())

        with pytest.raises(ValueError):
            registry.register(make_processor())
