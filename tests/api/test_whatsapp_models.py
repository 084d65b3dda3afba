"""
Tests for WhatsApp webhook payload fan-out.
"""
from eventgate.api.models.whatsapp import WhatsAppWebhookPayload
from eventgate.models.events import EventType


def payload(**value):
    return WhatsAppWebhookPayload.model_validate({
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA", "changes": [{"field": "messages", "value": {"metadata": {"phone_number_id": "1"}, **value}}]}],
    })


class TestToEvents:

    def test_message_event(self):
        events = payload(messages=[{"id": "wamid.1", "from": "521", "timestamp": "1749416383", "type": "text"}]).to_events()

        [event] = events
        assert event.event_type == EventType.MESSAGE.value
        assert event.natural_id == "wamid.1"
        assert event.body["message_id"] == "wamid.1"
        assert event.body["timestamp"] == 1749416383
        assert event.body["metadata"] == {"phone_number_id": "1"}

    def test_each_status_is_its_own_event(self):
        events = payload(statuses=[
            {"id": "wamid.1", "status": "sent"},
            {"id": "wamid.1", "status": "delivered"},
        ]).to_events()

        assert [e.natural_id for e in events] == ["wamid.1:sent", "wamid.1:delivered"]
        assert all(e.event_type == EventType.STATUS.value for e in events)

    def test_errors_have_no_natural_id(self):
        [event] = payload(errors=[{"code": 131047, "title": "Re-engagement message"}]).to_events()

        assert event.event_type == EventType.ERROR.value
        assert event.natural_id is None
        assert event.body["code"] == 131047

    def test_incomplete_items_are_dropped(self):
        events = payload(
            messages=[{"id": "wamid.1"}, {"from": "521"}],
            statuses=[{"id": "wamid.2"}],
        ).to_events()

        assert events == []

    def test_bad_timestamp_falls_back_to_now(self):
        [event] = payload(messages=[{"id": "wamid.1", "from": "521", "timestamp": "soon"}]).to_events()
        assert event.body["timestamp"] > 0

    def test_unknown_fields_are_kept(self):
        parsed = WhatsAppWebhookPayload.model_validate({"object": "whatsapp_business_account", "extra": 1, "entry": []})
        assert parsed.to_events() == []
