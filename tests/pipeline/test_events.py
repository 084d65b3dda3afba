"""
Tests for the in-process EventBus.
"""
import pytest

from eventgate.pipeline import EventBus
from eventgate.pipeline.events import topic_matches


class TestTopicMatching:

    @pytest.mark.parametrize("topic, pattern, expected", [
        ("dead_letter.queued", "dead_letter.queued", True),
        ("dead_letter.queued", "dead_letter.*", True),
        ("dead_letter.queued", "*", True),
        ("dead_letter.queued", "webhook.*", False),
        ("dead_letter_x.queued", "dead_letter.*", False),
    ])
    def test_patterns(self, topic, pattern, expected):
        assert topic_matches(topic, pattern) is expected


class TestEventBus:
    """Test suite for EventBus."""

    @pytest.mark.asyncio
    async def test_delivers_to_matching_subscribers(self):
        bus = EventBus()
        received = []

        async def handler(topic, payload):
            received.append((topic, payload["id"]))

        await bus.subscribe("webhook.*", handler)
        await bus.publish("webhook.message_received", {"id": 1})
        await bus.publish("payment.received", {"id": 2})

        assert received == [("webhook.message_received", 1)]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_affect_others(self):
        bus = EventBus()
        received = []

        async def broken(topic, payload):
            raise RuntimeError("subscriber bug")

        async def healthy(topic, payload):
            received.append(topic)

        await bus.subscribe("*", broken)
        await bus.subscribe("*", healthy)

        await bus.publish("dead_letter.queued", {})

        assert received == ["dead_letter.queued"]

    @pytest.mark.asyncio
    async def test_unsubscribe_and_close(self):
        bus = EventBus()
        received = []

        async def handler(topic, payload):
            received.append(topic)

        sub_id = await bus.subscribe("*", handler)
        await bus.unsubscribe(sub_id)
        await bus.publish("a.b", {})
        assert received == []

        await bus.subscribe("*", handler)
        await bus.close()
        await bus.publish("a.b", {})
        assert received == []
        assert bus.subscription_count == 0
