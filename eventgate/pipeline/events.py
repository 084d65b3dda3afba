"""
Pipeline Event Bus

Components publish lifecycle notifications (dead letters queued, replayed,
dismissed) as `publish(topic, payload)`. Subscribers register out of band;
a failing subscriber never affects the publisher.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]

DEAD_LETTER_QUEUED = "dead_letter.queued"
DEAD_LETTER_REPLAYED = "dead_letter.replayed"
DEAD_LETTER_DISMISSED = "dead_letter.dismissed"

WEBHOOK_MESSAGE_RECEIVED = "webhook.message_received"
WEBHOOK_STATUS_UPDATED = "webhook.status_updated"
WEBHOOK_ERROR_PROCESSED = "webhook.error_processed"
WEBHOOK_RATE_LIMITED = "webhook.rate_limited"
WEBHOOK_AUTH_ERROR = "webhook.auth_error"
PAYMENT_RECEIVED = "payment.received"


@dataclass
class Subscription:
    """Internal subscription record."""
    id: str
    pattern: str
    handler: EventHandler


def topic_matches(topic: str, pattern: str) -> bool:
    """Match exact topics, "*" and "prefix.*" patterns."""
    if pattern == "*" or pattern == topic:
        return True
    if pattern.endswith(".*"):
        return topic.startswith(pattern[:-1])
    return False


class EventBus:
    """
    In-process publish/subscribe bus.

    Handlers run concurrently; exceptions are logged and dropped.

    Usage:
        bus = EventBus()

        async def on_dead_letter(topic, payload):
            ...

        await bus.subscribe("dead_letter.*", on_dead_letter)
        await bus.publish("dead_letter.queued", {"id": "..."})
    """

    def __init__(self):
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Deliver a notification to every matching subscriber."""
        if self._closed:
            return

        async with self._lock:
            handlers = [
                sub for sub in self._subscriptions.values()
                if topic_matches(topic, sub.pattern)
            ]

        if not handlers:
            return

        async def safe_call(sub: Subscription) -> None:
            try:
                await sub.handler(topic, payload)
            except Exception as e:
                logger.warning(
                    f"Event handler {sub.id} failed for {topic}: {e}",
                    extra={"subscription_id": sub.id, "topic": topic, "error": str(e)}
                )

        await asyncio.gather(*(safe_call(sub) for sub in handlers))

    async def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """
        Subscribe to topics matching a pattern.

        Args:
            pattern: Exact topic, "*" or "prefix.*"
            handler: Async callback receiving (topic, payload)

        Returns:
            Subscription ID
        """
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        async with self._lock:
            self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=pattern, handler=handler)
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        async with self._lock:
            self._subscriptions.pop(subscription_id, None)

    async def close(self) -> None:
        """Stop delivering and drop all subscriptions."""
        self._closed = True
        async with self._lock:
            self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)
