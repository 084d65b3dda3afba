"""
Domain models for the job pipeline.
"""
from eventgate.models.job import (
    Priority,
    PRIORITY_GROUPS,
    JobMeta,
    JobEnvelope,
    RetryOutcome,
    args_fingerprint,
    canonical_json,
)
from eventgate.models.dead_letter import DeadLetterEntry, DeadLetterReason, DeadLetterStatus
from eventgate.models.events import EventType, InboundEvent, IngestResult, IngestStatus

__all__ = [
    "Priority",
    "PRIORITY_GROUPS",
    "JobMeta",
    "JobEnvelope",
    "RetryOutcome",
    "args_fingerprint",
    "canonical_json",
    "DeadLetterEntry",
    "DeadLetterReason",
    "DeadLetterStatus",
    "EventType",
    "InboundEvent",
    "IngestResult",
    "IngestStatus",
]
