"""
Dead-letter entry model.
"""
import datetime as dt
from enum import Enum
from typing import Any, Optional

from pydantic import Field

from eventgate.models.base import MongoBaseModel


class DeadLetterReason(str, Enum):
    """Why a job was quarantined."""
    MAX_RETRIES = "max_retries_exceeded"
    TIMEOUT = "timeout"
    EXCEPTION = "exception"
    VALIDATION = "validation_failed"
    CIRCUIT_OPEN = "circuit_breaker_open"


class DeadLetterStatus(str, Enum):
    """Entry lifecycle: PENDING -> REPLAYED | DISMISSED."""
    PENDING = "pending"
    REPLAYED = "replayed"
    DISMISSED = "dismissed"


TERMINAL_STATUSES = (DeadLetterStatus.REPLAYED.value, DeadLetterStatus.DISMISSED.value)


class DeadLetterEntry(MongoBaseModel):
    """
    A quarantined job.

    Attributes:
        hook: Hook the job was scheduled on
        args: User arguments as strict JSON text (decoded only on replay)
        reason: Quarantine reason
        error_message: Last error seen while processing
        attempts: Attempt count when the job was quarantined
        priority: Original priority (1..5)
        metadata: Free-form context (original schedule time, replay/dismiss info)
        status: Lifecycle status
        replayed_at: When the entry was replayed
        dismissed_at: When the entry was dismissed
    """
    hook: str
    args: str
    reason: DeadLetterReason
    error_message: Optional[str] = None
    attempts: int = 0
    priority: int = 3
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    replayed_at: Optional[dt.datetime] = None
    dismissed_at: Optional[dt.datetime] = None
