"""
Job Envelope Models

Priorities, the versioned job envelope and helpers for wrapping user
arguments with scheduler metadata.
"""
import hashlib
import json
import time
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from eventgate.errors import EnvelopeError

ENVELOPE_VERSION = 2

# v1 payloads carried their metadata inline under this key
LEGACY_META_KEY = "_job_meta"


class Priority(IntEnum):
    """Job priority, lower is more urgent."""
    CRITICAL = 1
    URGENT = 2
    NORMAL = 3
    BULK = 4
    MAINTENANCE = 5

    @property
    def group(self) -> str:
        """Lane name used for rate limiting and stats."""
        return PRIORITY_GROUPS[self]

    @classmethod
    def clamp(cls, value: int) -> "Priority":
        """Coerce any integer into the 1..5 range."""
        return cls(min(max(int(value), cls.CRITICAL), cls.MAINTENANCE))


PRIORITY_GROUPS: dict[Priority, str] = {
    Priority.CRITICAL: "critical",
    Priority.URGENT: "urgent",
    Priority.NORMAL: "normal",
    Priority.BULK: "bulk",
    Priority.MAINTENANCE: "maintenance",
}


class JobMeta(BaseModel):
    """
    Scheduler-owned metadata carried next to the user arguments.

    Unknown keys (replayed_from_dlq, circuit_deferrals, ...) are preserved.
    """
    model_config = ConfigDict(extra="allow")

    priority: int = Priority.NORMAL
    scheduled_at: int = Field(default_factory=lambda: int(time.time()))
    attempt: int = Field(default=1, ge=1)
    last_retry: Optional[int] = None


class JobEnvelope(BaseModel):
    """
    Versioned wrapper that keeps user args and scheduler meta apart.

    Wire format (v2):
        {"version": 2, "meta": {"priority", "scheduled_at", "attempt", "last_retry"?}, "args": {...}}
    """

    version: int = ENVELOPE_VERSION
    meta: JobMeta = Field(default_factory=JobMeta)
    args: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def wrap(
        cls,
        args: dict[str, Any],
        priority: int = Priority.NORMAL,
        attempt: int = 1,
        **extra_meta: Any,
    ) -> "JobEnvelope":
        """Build a fresh envelope around user arguments."""
        meta = JobMeta(priority=int(Priority.clamp(priority)), attempt=attempt, **extra_meta)
        return cls(meta=meta, args=dict(args))

    @classmethod
    def unwrap(cls, payload: Any) -> "JobEnvelope":
        """
        Decode a stored payload, accepting both v2 envelopes and legacy v1 maps.

        Args:
            payload: Raw payload handed to a processor

        Returns:
            Parsed envelope

        Raises:
            EnvelopeError: If the payload is not a map or its meta is invalid
        """
        if not isinstance(payload, dict):
            raise EnvelopeError(f"Job payload must be a map, got {type(payload).__name__}")

        try:
            if payload.get("version") == ENVELOPE_VERSION:
                args = payload.get("args", {})
                if not isinstance(args, dict):
                    raise EnvelopeError("Envelope args must be a map")
                return cls(meta=JobMeta.model_validate(payload.get("meta") or {}), args=args)

            args = dict(payload)
            meta = args.pop(LEGACY_META_KEY, None) or {}
            return cls(meta=JobMeta.model_validate(meta), args=args)
        except ValidationError as e:
            raise EnvelopeError(f"Invalid job metadata: {e}") from e

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the v2 wire format."""
        return self.model_dump(exclude_none=True)

    @property
    def priority(self) -> Priority:
        return Priority.clamp(self.meta.priority)

    @property
    def attempt(self) -> int:
        return self.meta.attempt


class RetryOutcome(str, Enum):
    """Result of PriorityScheduler.retry()."""
    RESCHEDULED = "rescheduled"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"
    FAILED = "failed"


def canonical_json(value: Any) -> str:
    """Stable JSON encoding used for fingerprints and hash keys."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def args_fingerprint(hook: str, args: dict[str, Any]) -> str:
    """Argument-addressable identity of a job: sha256(hook + canonical args)."""
    return hashlib.sha256((hook + canonical_json(args)).encode("utf-8")).hexdigest()
