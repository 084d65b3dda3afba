"""
Ingestion

Inbound events enter the pipeline here.
"""
from eventgate.ingestion.front_door import (
    ERROR_HOOK,
    MESSAGE_HOOK,
    PAYMENT_HOOK,
    ROUTES,
    STATUS_HOOK,
    IngestionService,
)
from eventgate.ingestion.extractors import (
    KNOWN_GATEWAYS,
    detect_gateway,
    extract_payment_event_id,
    payload_hash,
    payment_event,
)

__all__ = [
    "ERROR_HOOK",
    "MESSAGE_HOOK",
    "PAYMENT_HOOK",
    "ROUTES",
    "STATUS_HOOK",
    "IngestionService",
    "KNOWN_GATEWAYS",
    "detect_gateway",
    "extract_payment_event_id",
    "payload_hash",
    "payment_event",
]
