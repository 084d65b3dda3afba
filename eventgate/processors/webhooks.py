"""
Webhook Processors

Processors for the hooks the ingestion front door schedules. Each one
validates the job arguments, hands them to an optional downstream handler
(conversation engine, order service, ...) and publishes a notification on
the event bus. Handler failures propagate so the orchestrator can retry.
"""
from typing import Any, Awaitable, Callable, Optional

from eventgate.errors import PayloadValidationError
from eventgate.ingestion.front_door import ERROR_HOOK, MESSAGE_HOOK, PAYMENT_HOOK, STATUS_HOOK
from eventgate.pipeline.dead_letter import DeadLetterQueue
from eventgate.pipeline.events import (
    PAYMENT_RECEIVED,
    WEBHOOK_AUTH_ERROR,
    WEBHOOK_ERROR_PROCESSED,
    WEBHOOK_MESSAGE_RECEIVED,
    WEBHOOK_RATE_LIMITED,
    WEBHOOK_STATUS_UPDATED,
    EventBus,
)
from eventgate.pipeline.processor import QueueProcessor
from eventgate.pipeline.scheduler import PriorityScheduler
from eventgate.utils.circuit_breaker import CircuitBreaker
from eventgate.utils.observability import logger

DownstreamHandler = Callable[[dict[str, Any]], Awaitable[None]]

VALID_STATUSES = ("sent", "delivered", "read", "failed")

# Meta Graph API error codes
RATE_LIMIT_CODES = (130429, 131048, 131056)
AUTH_ERROR_CODES = (190, 200, 10, 100)
TEMPLATE_ERROR_CODES = (132000, 132001, 132005, 132007, 132012, 132015)


class WebhookProcessor(QueueProcessor):
    """Shared plumbing for processors that forward to a downstream handler."""

    hook_name: str = ""
    topic: str = ""

    def __init__(
        self,
        scheduler: PriorityScheduler,
        dead_letters: DeadLetterQueue,
        events: Optional[EventBus] = None,
        handler: Optional[DownstreamHandler] = None,
        circuit: Optional[CircuitBreaker] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(scheduler, dead_letters, circuit=circuit, timeout=timeout)
        self.events = events
        self.handler = handler

    def get_hook_name(self) -> str:
        return self.hook_name

    async def _dispatch(self, data: dict[str, Any], topic: Optional[str] = None) -> None:
        if self.handler is not None:
            await self.handler(data)
        if self.events is not None:
            await self.events.publish(topic or self.topic, data)

    @staticmethod
    def _require(data: dict[str, Any], *fields: str) -> None:
        missing = [name for name in fields if not data.get(name)]
        if missing:
            raise PayloadValidationError(
                f"Missing required fields: {', '.join(missing)}",
                context={"present": sorted(data)},
            )


class MessageProcessor(WebhookProcessor):
    """Inbound customer messages."""

    hook_name = MESSAGE_HOOK
    topic = WEBHOOK_MESSAGE_RECEIVED

    def get_name(self) -> str:
        return "webhook_message"

    async def process(self, args: dict[str, Any]) -> None:
        self._require(args, "message_id", "from")

        logger.info(
            f"Processing message {args['message_id']}",
            extra={"message_id": args["message_id"], "type": args.get("type", "text")}
        )
        await self._dispatch(args)


class StatusProcessor(WebhookProcessor):
    """Delivery status callbacks (sent, delivered, read, failed)."""

    hook_name = STATUS_HOOK
    topic = WEBHOOK_STATUS_UPDATED

    def get_name(self) -> str:
        return "webhook_status"

    async def process(self, args: dict[str, Any]) -> None:
        self._require(args, "message_id", "status")

        status = str(args["status"]).lower()
        if status not in VALID_STATUSES:
            raise PayloadValidationError(
                f"Invalid status value: {status}. Valid values: {', '.join(VALID_STATUSES)}"
            )

        if status == "failed":
            first_error = (args.get("errors") or [{}])[0]
            logger.warning(
                f"Message {args['message_id']} failed to deliver: "
                f"{first_error.get('code', 'unknown')} {first_error.get('title', '')}".rstrip(),
                extra={"message_id": args["message_id"], "errors": args.get("errors", [])}
            )

        await self._dispatch({**args, "status": status})


class ErrorProcessor(WebhookProcessor):
    """
    Out-of-band errors reported by the WhatsApp API.

    Errors that indicate a service-level problem (everything except
    recipient errors) count as failures on the API circuit, so a burst of
    them opens the circuit and defers outbound work.
    """

    hook_name = ERROR_HOOK
    topic = WEBHOOK_ERROR_PROCESSED

    def __init__(
        self,
        scheduler: PriorityScheduler,
        dead_letters: DeadLetterQueue,
        events: Optional[EventBus] = None,
        handler: Optional[DownstreamHandler] = None,
        api_circuit: Optional[CircuitBreaker] = None,
    ):
        # The circuit is reported to, never checked: errors must be processed while it is open
        super().__init__(scheduler, dead_letters, events=events, handler=handler)
        self.api_circuit = api_circuit

    def get_name(self) -> str:
        return "webhook_error"

    @staticmethod
    def categorize(code: int) -> str:
        if code in RATE_LIMIT_CODES:
            return "rate_limit"
        if code in AUTH_ERROR_CODES:
            return "auth"
        if code in TEMPLATE_ERROR_CODES:
            return "template"
        if 131000 <= code < 132000:
            return "recipient"
        return "generic"

    async def process(self, args: dict[str, Any]) -> None:
        try:
            code = int(args.get("code", args.get("error_code", 0)))
        except (TypeError, ValueError) as e:
            raise PayloadValidationError(f"Invalid error code: {args.get('code')!r}") from e

        message = args.get("message") or args.get("error_message") or "Unknown error"
        category = self.categorize(code)

        logger.error(
            f"WhatsApp API error {code} ({category}): {message}",
            extra={"code": code, "category": category, "title": args.get("title")}
        )

        if self.api_circuit is not None and category != "recipient":
            await self.api_circuit.record_failure(f"[{category}] {code}: {message}")

        if category == "rate_limit":
            details = args.get("error_data") or args.get("details") or {}
            retry_after = int(details.get("retry_after", 60)) if isinstance(details, dict) else 60
            logger.warning(f"WhatsApp rate limit hit, backing off {retry_after}s")
            if self.events is not None:
                await self.events.publish(WEBHOOK_RATE_LIMITED, {**args, "retry_after": retry_after})
        elif category == "auth":
            logger.critical("WhatsApp authentication error - check API credentials", extra={"code": code})
            if self.events is not None:
                await self.events.publish(WEBHOOK_AUTH_ERROR, args)

        await self._dispatch({**args, "code": code, "category": category})


class PaymentProcessor(WebhookProcessor):
    """Payment gateway events. Scheduled on the critical lane."""

    hook_name = PAYMENT_HOOK
    topic = PAYMENT_RECEIVED

    def get_name(self) -> str:
        return "payment_event"

    async def process(self, args: dict[str, Any]) -> None:
        self._require(args, "gateway", "event_id")
        if not isinstance(args.get("payload"), dict):
            raise PayloadValidationError("Payment event payload must be an object")

        logger.info(
            f"Processing {args['gateway']} payment event {args['event_id']}",
            extra={"gateway": args["gateway"], "event_id": args["event_id"]}
        )
        await self._dispatch(args)
