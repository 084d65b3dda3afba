"""
Event extraction for inbound webhooks.

Turns decoded provider payloads into InboundEvents carrying the natural
identifier the front door deduplicates on.
"""
import hashlib
from typing import Any, Optional

from eventgate.models.events import EventType, InboundEvent
from eventgate.models.job import canonical_json

KNOWN_GATEWAYS = ("stripe", "razorpay", "pix")


def payload_hash(data: Any) -> str:
    """sha256 of the canonical JSON form (key order does not matter)."""
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def extract_payment_event_id(gateway: str, data: dict[str, Any]) -> str:
    """
    Stable event id for a payment webhook.

    Gateways redeliver the same event with the same id, so the id is what
    deduplicates. Payloads without one fall back to a hash of the body.
    """
    gateway = gateway.lower()

    if gateway == "stripe" and data.get("id"):
        return str(data["id"])

    if gateway == "razorpay":
        entity_id = _dig(data, "payload", "payment", "entity", "id")
        if entity_id:
            return f"razorpay_{entity_id}"
        if data.get("event") and data.get("account_id") and data.get("created_at"):
            return f"razorpay_{data['event']}_{data['account_id']}_{data['created_at']}"

    if gateway == "pix":
        if data.get("id"):
            return f"pix_{data['id']}"
        nested_id = _dig(data, "data", "id")
        if nested_id:
            return f"pix_{nested_id}"

    return f"{gateway}_{payload_hash(data)}"


def detect_gateway(headers: dict[str, str], data: dict[str, Any]) -> Optional[str]:
    """Guess the gateway from signature headers or payload shape."""
    lowered = {k.lower() for k in headers}
    if "stripe-signature" in lowered:
        return "stripe"
    if "x-razorpay-signature" in lowered:
        return "razorpay"

    event_type = data.get("type")
    if isinstance(event_type, str) and "payment_intent" in event_type:
        return "stripe"
    event_name = data.get("event")
    if isinstance(event_name, str) and "payment." in event_name:
        return "razorpay"
    if event_type == "payment" and isinstance(data.get("data"), dict) and data["data"].get("id"):
        return "pix"
    return None


def payment_event(gateway: str, data: dict[str, Any]) -> InboundEvent:
    event_id = extract_payment_event_id(gateway, data)
    return InboundEvent(
        event_type=EventType.PAYMENT,
        natural_id=event_id,
        source=gateway.lower(),
        body={"gateway": gateway.lower(), "event_id": event_id, "payload": data},
    )
