"""
Tests for the webhook processors.
"""
import pytest
from unittest.mock import AsyncMock

from eventgate.bootstrap import WHATSAPP_API_CIRCUIT, build_pipeline
from eventgate.config import get_settings
from eventgate.errors import InfrastructureError
from eventgate.ingestion import ERROR_HOOK, MESSAGE_HOOK, PAYMENT_HOOK, STATUS_HOOK
from eventgate.models.job import JobEnvelope
from eventgate.pipeline.processor import ProcessOutcome
from eventgate.processors import ErrorProcessor


def envelope(**args):
    return JobEnvelope.wrap(args).to_payload()


@pytest.fixture
def handlers():
    return {hook: AsyncMock() for hook in (MESSAGE_HOOK, STATUS_HOOK, ERROR_HOOK, PAYMENT_HOOK)}


@pytest.fixture
def wired(clock, handlers):
    settings = get_settings().model_copy(update={"coordination_backend": "memory"})
    return build_pipeline(settings=settings, handlers=handlers, clock=clock)


@pytest.fixture
def published(wired):
    topics = []

    async def record(topic, payload):
        topics.append((topic, payload))

    return topics, record


class TestMessageProcessor:
    """Test suite for MessageProcessor."""

    @pytest.mark.asyncio
    async def test_dispatches_and_publishes(self, wired, handlers, published):
        topics, record = published
        await wired.events.subscribe("webhook.*", record)
        processor = wired.registry.get(MESSAGE_HOOK)

        outcome = await processor.execute(envelope(message_id="wamid.1", **{"from": "5215512345678"}))

        assert outcome == ProcessOutcome.COMPLETED
        handlers[MESSAGE_HOOK].assert_awaited_once_with({"message_id": "wamid.1", "from": "5215512345678"})
        assert [t for t, _ in topics] == ["webhook.message_received"]

    @pytest.mark.asyncio
    async def test_missing_fields_are_dead_lettered_without_tripping_circuit(self, wired, handlers):
        processor = wired.registry.get(MESSAGE_HOOK)

        outcome = await processor.execute(envelope(message_id="wamid.1"))

        assert outcome == ProcessOutcome.DEAD_LETTERED
        handlers[MESSAGE_HOOK].assert_not_awaited()
        [entry] = await wired.dead_letters.get_pending()
        assert entry.reason == "validation_failed"
        assert "from" in entry.error_message
        assert wired.circuits[WHATSAPP_API_CIRCUIT].stats.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_handler_failure_is_retried(self, wired, handlers):
        handlers[MESSAGE_HOOK].side_effect = InfrastructureError("conversation engine unavailable")
        processor = wired.registry.get(MESSAGE_HOOK)

        outcome = await processor.execute(envelope(message_id="wamid.1", **{"from": "521"}))

        assert outcome == ProcessOutcome.RETRY_SCHEDULED
        assert wired.circuits[WHATSAPP_API_CIRCUIT].stats.consecutive_failures == 1
        [job] = await wired.backend.list_jobs(hook=MESSAGE_HOOK)
        assert job.payload["meta"]["attempt"] == 2

    @pytest.mark.asyncio
    async def test_open_circuit_defers(self, wired, handlers):
        await wired.circuits[WHATSAPP_API_CIRCUIT].force_open()
        processor = wired.registry.get(MESSAGE_HOOK)

        outcome = await processor.execute(envelope(message_id="wamid.1", **{"from": "521"}))

        assert outcome == ProcessOutcome.DEFERRED
        handlers[MESSAGE_HOOK].assert_not_awaited()
        [job] = await wired.backend.list_jobs(hook=MESSAGE_HOOK)
        assert job.payload["meta"]["circuit_deferrals"] == 1
        assert job.payload["meta"]["attempt"] == 1


class TestStatusProcessor:

    @pytest.mark.asyncio
    async def test_normalizes_status(self, wired, handlers):
        processor = wired.registry.get(STATUS_HOOK)

        outcome = await processor.execute(envelope(message_id="wamid.1", status="DELIVERED"))

        assert outcome == ProcessOutcome.COMPLETED
        handlers[STATUS_HOOK].assert_awaited_once_with({"message_id": "wamid.1", "status": "delivered"})

    @pytest.mark.asyncio
    async def test_invalid_status_is_dead_lettered(self, wired, handlers):
        processor = wired.registry.get(STATUS_HOOK)

        outcome = await processor.execute(envelope(message_id="wamid.1", status="teleported"))

        assert outcome == ProcessOutcome.DEAD_LETTERED
        [entry] = await wired.dead_letters.get_pending()
        assert "Invalid status value" in entry.error_message

    @pytest.mark.asyncio
    async def test_failed_delivery_is_forwarded(self, wired, handlers):
        processor = wired.registry.get(STATUS_HOOK)
        errors = [{"code": 131026, "title": "Message undeliverable"}]

        await processor.execute(envelope(message_id="wamid.1", status="failed", errors=errors))

        forwarded = handlers[STATUS_HOOK].await_args.args[0]
        assert forwarded["errors"] == errors


class TestErrorProcessor:
    """Test suite for ErrorProcessor."""

    @pytest.mark.parametrize("code, category", [
        (130429, "rate_limit"),
        (131056, "rate_limit"),
        (190, "auth"),
        (132001, "template"),
        (131026, "recipient"),
        (500, "generic"),
    ])
    def test_categorize(self, code, category):
        assert ErrorProcessor.categorize(code) == category

    @pytest.mark.asyncio
    async def test_service_errors_count_against_api_circuit(self, wired):
        processor = wired.registry.get(ERROR_HOOK)
        circuit = wired.circuits[WHATSAPP_API_CIRCUIT]

        await processor.execute(envelope(code=500, message="Internal error"))
        await processor.execute(envelope(code=131026, message="Undeliverable"))

        assert circuit.stats.total_failures == 1

    @pytest.mark.asyncio
    async def test_processed_while_circuit_open(self, wired, handlers):
        await wired.circuits[WHATSAPP_API_CIRCUIT].force_open()
        processor = wired.registry.get(ERROR_HOOK)

        outcome = await processor.execute(envelope(code=190, message="Token expired"))

        assert outcome == ProcessOutcome.COMPLETED
        forwarded = handlers[ERROR_HOOK].await_args.args[0]
        assert forwarded["category"] == "auth"

    @pytest.mark.asyncio
    async def test_rate_limit_publishes_backoff(self, wired, published):
        topics, record = published
        await wired.events.subscribe("webhook.rate_limited", record)
        processor = wired.registry.get(ERROR_HOOK)

        await processor.execute(envelope(code=130429, message="Too many", error_data={"retry_after": 120}))

        [(topic, payload)] = topics
        assert payload["retry_after"] == 120

    @pytest.mark.asyncio
    async def test_non_numeric_code_is_dead_lettered(self, wired):
        processor = wired.registry.get(ERROR_HOOK)

        outcome = await processor.execute(envelope(code="abc"))

        assert outcome == ProcessOutcome.DEAD_LETTERED
        [entry] = await wired.dead_letters.get_pending()
        assert entry.reason == "validation_failed"


class TestPaymentProcessor:

    @pytest.mark.asyncio
    async def test_dispatches_payment(self, wired, handlers, published):
        topics, record = published
        await wired.events.subscribe("payment.*", record)
        processor = wired.registry.get(PAYMENT_HOOK)
        args = {"gateway": "stripe", "event_id": "evt_1", "payload": {"id": "evt_1"}}

        outcome = await processor.execute(envelope(**args))

        assert outcome == ProcessOutcome.COMPLETED
        handlers[PAYMENT_HOOK].assert_awaited_once_with(args)
        assert [t for t, _ in topics] == ["payment.received"]

    @pytest.mark.asyncio
    async def test_payload_must_be_object(self, wired, handlers):
        processor = wired.registry.get(PAYMENT_HOOK)

        outcome = await processor.execute(envelope(gateway="stripe", event_id="evt_1", payload="raw"))

        assert outcome == ProcessOutcome.DEAD_LETTERED
        handlers[PAYMENT_HOOK].assert_not_awaited()
