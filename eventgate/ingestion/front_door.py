"""
Ingestion Front Door

One idempotent claim per inbound event, then hand-off to the scheduler.
A duplicate delivery is a terminal success for the delivering source; a
scheduling failure releases the claim so the source's own retry can
succeed later.
"""
from dataclasses import dataclass
from typing import Optional

from eventgate.errors import InfrastructureError
from eventgate.ingestion.extractors import payload_hash
from eventgate.models.events import EventType, InboundEvent, IngestResult, IngestStatus
from eventgate.models.job import Priority
from eventgate.pipeline.idempotency import IdempotencyScope, IdempotencyService
from eventgate.pipeline.scheduler import PriorityScheduler
from eventgate.utils.metrics import metrics
from eventgate.utils.observability import log_pipeline_event, logger

MESSAGE_HOOK = "process_webhook_message"
STATUS_HOOK = "process_webhook_status"
ERROR_HOOK = "process_webhook_error"
PAYMENT_HOOK = "process_payment_event"


@dataclass(frozen=True)
class Route:
    """Where an event type goes once claimed."""
    hook: str
    priority: Priority
    scope: IdempotencyScope


ROUTES: dict[str, Route] = {
    EventType.MESSAGE.value: Route(MESSAGE_HOOK, Priority.URGENT, IdempotencyScope.WEBHOOK),
    EventType.STATUS.value: Route(STATUS_HOOK, Priority.NORMAL, IdempotencyScope.WEBHOOK_STATUS),
    EventType.ERROR.value: Route(ERROR_HOOK, Priority.NORMAL, IdempotencyScope.WEBHOOK),
    EventType.PAYMENT.value: Route(PAYMENT_HOOK, Priority.CRITICAL, IdempotencyScope.PAYMENT),
}


class IngestionService:
    """
    Front door for inbound events.

    Usage:
        service = IngestionService(idempotency, scheduler)
        result = await service.ingest(InboundEvent(event_type="message", natural_id="wamid.X", body={...}))
        if not result.is_success:
            # let the provider redeliver
            ...
    """

    def __init__(self, idempotency: IdempotencyService, scheduler: PriorityScheduler):
        self.idempotency = idempotency
        self.scheduler = scheduler

    @staticmethod
    def idempotency_key(event: InboundEvent) -> Optional[str]:
        """Natural id when present, otherwise a hash of the body; None if there is neither."""
        if event.natural_id:
            return event.natural_id
        if event.body:
            return payload_hash(event.body)
        return None

    async def ingest(self, event: InboundEvent) -> IngestResult:
        route = ROUTES[EventType(event.event_type).value]
        key = self.idempotency_key(event)

        if key is None:
            logger.warning(f"Rejected {event.event_type} event from {event.source}: no id and empty body")
            return self._result(event, IngestStatus.REJECTED, "", error="Event has no identifier and no body")

        scope = route.scope.value
        try:
            claimed = await self.idempotency.claim(key, scope)
        except InfrastructureError as e:
            logger.error(f"Idempotency claim for {event.event_type} {key} failed: {e}")
            return self._result(event, IngestStatus.FAILED, key, error=str(e))

        if not claimed:
            logger.debug(f"Duplicate {event.event_type} event {key}, skipping")
            return self._result(event, IngestStatus.DUPLICATE, key)

        job_id = await self.scheduler.schedule(route.hook, event.body, route.priority)

        if job_id is None:
            await self._release(key, scope)
            return self._result(event, IngestStatus.FAILED, key, error="Scheduler unavailable")

        log_pipeline_event(
            "event_ingested", key, event_type=event.event_type, source=event.source, job_id=job_id
        )
        return self._result(event, IngestStatus.ACCEPTED, key, job_id=job_id)

    async def ingest_many(self, events: list[InboundEvent]) -> list[IngestResult]:
        return [await self.ingest(event) for event in events]

    async def _release(self, key: str, scope: str) -> None:
        try:
            await self.idempotency.release(key, scope)
        except InfrastructureError as e:
            # The claim stays until it expires; the source's retries are duplicates until then
            logger.error(f"Could not release claim {key} ({scope}) after scheduling failure: {e}")

    @staticmethod
    def _result(
        event: InboundEvent,
        status: IngestStatus,
        key: str,
        job_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> IngestResult:
        metrics.events_ingested.inc(event_type=event.event_type, status=status.value)
        return IngestResult(status=status, key=key, job_id=job_id, error=error)
