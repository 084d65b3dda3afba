"""
Pydantic models for WhatsApp Cloud API webhook payloads.
"""
import time
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional

from eventgate.models.events import EventType, InboundEvent


class ChangeValue(BaseModel):
    """
    The `value` object of a webhook change.

    See: https://developers.facebook.com/docs/whatsapp/cloud-api/webhooks/components
    """
    model_config = ConfigDict(extra="allow")

    messaging_product: Optional[str] = Field(None, description="Always 'whatsapp'")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Business phone number info")
    contacts: list[dict[str, Any]] = Field(default_factory=list, description="Sender profiles")
    messages: list[dict[str, Any]] = Field(default_factory=list, description="Inbound messages")
    statuses: list[dict[str, Any]] = Field(default_factory=list, description="Delivery status callbacks")
    errors: list[dict[str, Any]] = Field(default_factory=list, description="Out-of-band errors")


class WebhookChange(BaseModel):
    model_config = ConfigDict(extra="allow")

    field: Optional[str] = None
    value: ChangeValue = Field(default_factory=ChangeValue)


class WebhookEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(None, description="WhatsApp Business Account ID")
    changes: list[WebhookChange] = Field(default_factory=list)


class WhatsAppWebhookPayload(BaseModel):
    """Top-level webhook delivery: one or more entries, each with changes."""
    model_config = ConfigDict(extra="allow")

    object: Optional[str] = Field(None, description="Always 'whatsapp_business_account'")
    entry: list[WebhookEntry] = Field(default_factory=list)

    def to_events(self) -> list[InboundEvent]:
        """
        Fan out messages, statuses and errors into inbound events.

        Messages without an id or sender and statuses without an id or
        status value are dropped; they cannot be deduplicated or processed.
        """
        events = []
        for entry in self.entry:
            for change in entry.changes:
                value = change.value

                for message in value.messages:
                    if not message.get("id") or not message.get("from"):
                        continue
                    events.append(InboundEvent(
                        event_type=EventType.MESSAGE,
                        natural_id=message["id"],
                        body={
                            **message,
                            "message_id": message["id"],
                            "timestamp": _timestamp(message.get("timestamp")),
                            "metadata": value.metadata,
                            "contacts": value.contacts,
                        },
                    ))

                for status in value.statuses:
                    if not status.get("id") or not status.get("status"):
                        continue
                    events.append(InboundEvent(
                        event_type=EventType.STATUS,
                        # A message moves through several statuses; each one is its own event
                        natural_id=f"{status['id']}:{status['status']}",
                        body={
                            **status,
                            "message_id": status["id"],
                            "timestamp": _timestamp(status.get("timestamp")),
                            "metadata": value.metadata,
                        },
                    ))

                for error in value.errors:
                    # No natural id: the body hash deduplicates redeliveries
                    events.append(InboundEvent(
                        event_type=EventType.ERROR,
                        body={**error, "metadata": value.metadata},
                    ))
        return events


def _timestamp(raw: Any) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return int(time.time())
