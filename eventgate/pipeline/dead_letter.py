"""
Dead Letter Queue

Quarantine for jobs that exhausted their retries or failed terminally.
Entries keep the original arguments as strict JSON text so nothing is
silently coerced; replay decodes them and schedules a fresh job.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field

from eventgate.config import get_settings
from eventgate.errors import CorruptedEntryError, SerializationError
from eventgate.models.dead_letter import (
    TERMINAL_STATUSES,
    DeadLetterEntry,
    DeadLetterReason,
    DeadLetterStatus,
)
from eventgate.models.job import LEGACY_META_KEY, Priority
from eventgate.pipeline.events import (
    DEAD_LETTER_DISMISSED,
    DEAD_LETTER_QUEUED,
    DEAD_LETTER_REPLAYED,
    EventBus,
)
from eventgate.utils.metrics import metrics
from eventgate.utils.observability import log_pipeline_event, logger
from eventgate.utils.time import Clock, utc_now

if TYPE_CHECKING:
    from eventgate.pipeline.scheduler import PriorityScheduler


def _meta_int(value: Any, default: int) -> int:
    # meta of a rejected envelope may hold anything
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


class DeadLetterBreakdown(BaseModel):
    """One (status, reason) group of the quarantine."""
    status: str
    reason: str
    count: int
    avg_attempts: float


class DeadLetterStats(BaseModel):
    """
    Quarantine summary.

    Attributes:
        total: All entries
        pending: Entries awaiting a decision
        replayed: Entries re-submitted
        dismissed: Entries discarded
        by_reason: Entry count per reason, all statuses
        breakdown: Count and average attempts per (status, reason)
    """
    total: int = 0
    pending: int = 0
    replayed: int = 0
    dismissed: int = 0
    by_reason: dict[str, int] = Field(default_factory=dict)
    breakdown: list[DeadLetterBreakdown] = Field(default_factory=list)


# ============================================
# REPOSITORIES
# ============================================


class DeadLetterRepository(ABC):
    """Storage for dead-letter entries."""

    @abstractmethod
    async def insert(self, entry: DeadLetterEntry) -> str:
        """Store a new entry and return its ID."""
        pass

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        pass

    @abstractmethod
    async def list_entries(
        self,
        status: Optional[str] = None,
        reason: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeadLetterEntry]:
        """Entries matching the filters, newest first."""
        pass

    @abstractmethod
    async def transition(
        self,
        entry_id: str,
        from_status: str,
        to_status: str,
        fields: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Atomically move an entry from `from_status` to `to_status`.

        Args:
            entry_id: Entry to update
            from_status: Required current status
            to_status: New status
            fields: Extra top-level fields to set
            metadata: Keys merged into the entry metadata

        Returns:
            True if the entry was in `from_status` and has been updated
        """
        pass

    @abstractmethod
    async def merge_metadata(self, entry_id: str, metadata: dict[str, Any]) -> bool:
        pass

    @abstractmethod
    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete replayed/dismissed entries created before `cutoff`."""
        pass

    @abstractmethod
    async def breakdown(self) -> list[DeadLetterBreakdown]:
        """Count and average attempts grouped by (status, reason)."""
        pass


class InMemoryDeadLetterRepository(DeadLetterRepository):
    """Dictionary-backed repository for tests and single-node use."""

    def __init__(self):
        self._entries: dict[str, DeadLetterEntry] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def insert(self, entry: DeadLetterEntry) -> str:
        async with self._lock:
            entry_id = str(self._next_id)
            self._next_id += 1
            self._entries[entry_id] = entry.model_copy(update={"id": entry_id}, deep=True)
            return entry_id

    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        async with self._lock:
            entry = self._entries.get(entry_id)
            return entry.model_copy(deep=True) if entry else None

    async def list_entries(
        self,
        status: Optional[str] = None,
        reason: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeadLetterEntry]:
        async with self._lock:
            entries = [
                e for e in self._entries.values()
                if (status is None or e.status == status) and (reason is None or e.reason == reason)
            ]
            entries.sort(key=lambda e: (e.created_at, int(e.id)), reverse=True)
            return [e.model_copy(deep=True) for e in entries[offset:offset + limit]]

    async def transition(
        self,
        entry_id: str,
        from_status: str,
        to_status: str,
        fields: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.status != from_status:
                return False
            entry.status = to_status
            for name, value in (fields or {}).items():
                setattr(entry, name, value)
            entry.metadata.update(metadata or {})
            entry.updated_at = utc_now()
            return True

    async def merge_metadata(self, entry_id: str, metadata: dict[str, Any]) -> bool:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            entry.metadata.update(metadata)
            return True

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [
                entry_id for entry_id, e in self._entries.items()
                if e.status in TERMINAL_STATUSES and e.created_at < cutoff
            ]
            for entry_id in doomed:
                del self._entries[entry_id]
            return len(doomed)

    async def breakdown(self) -> list[DeadLetterBreakdown]:
        async with self._lock:
            groups: dict[tuple[str, str], list[int]] = defaultdict(list)
            for e in self._entries.values():
                groups[(str(e.status), str(e.reason))].append(e.attempts)
            return [
                DeadLetterBreakdown(
                    status=status,
                    reason=reason,
                    count=len(attempts),
                    avg_attempts=sum(attempts) / len(attempts),
                )
                for (status, reason), attempts in groups.items()
            ]


# ============================================
# SERVICE
# ============================================


def encode_strict(value: Any, what: str) -> str:
    """JSON-encode without NaN/Infinity or arbitrary objects."""
    try:
        return json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Cannot encode {what} as JSON: {e}") from e


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def decode_strict(text: str) -> Any:
    """Decode JSON, rejecting NaN/Infinity."""
    return json.loads(text, parse_constant=_reject_constant)


class DeadLetterQueue:
    """
    Dead-letter quarantine with replay and dismissal.

    Status lifecycle: PENDING -> REPLAYED | DISMISSED (both terminal).
    Only the retention sweep hard-deletes, and only terminal entries.
    """

    def __init__(
        self,
        repository: DeadLetterRepository,
        scheduler: "PriorityScheduler",
        events: Optional[EventBus] = None,
        retention_days: Optional[int] = None,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.scheduler = scheduler
        self.events = events
        self.retention_days = (
            retention_days if retention_days is not None else get_settings().dlq_retention_days
        )
        self._clock = clock

    async def push(
        self,
        hook: str,
        args: dict[str, Any],
        reason: DeadLetterReason,
        error: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Quarantine a job.

        Attempt count and priority are read from the job meta embedded in
        `args` (`_job_meta`, or `meta` of a v2 envelope).

        Args:
            hook: Hook of the failed job
            args: Job arguments, including embedded meta
            reason: Quarantine reason
            error: Last error message
            metadata: Extra context stored with the entry

        Returns:
            Entry ID

        Raises:
            SerializationError: If args or metadata are not strict JSON
        """
        job_meta = args.get(LEGACY_META_KEY) or args.get("meta") or {}
        if not isinstance(job_meta, dict):
            job_meta = {}

        merged_metadata = {
            **(metadata or {}),
            "original_scheduled_at": job_meta.get("scheduled_at"),
            "last_retry": job_meta.get("last_retry"),
        }

        try:
            args_json = encode_strict(args, "dead letter args")
            encode_strict(merged_metadata, "dead letter metadata")
        except SerializationError as e:
            logger.critical(
                f"Dead letter push for {hook} rejected, job data may be lost: {e}",
                extra={"hook": hook, "reason": DeadLetterReason(reason).value}
            )
            raise

        entry = DeadLetterEntry(
            hook=hook,
            args=args_json,
            reason=DeadLetterReason(reason),
            error_message=error,
            attempts=max(_meta_int(job_meta.get("attempt"), 1), 1),
            priority=int(Priority.clamp(_meta_int(job_meta.get("priority"), Priority.NORMAL))),
            metadata=merged_metadata,
            status=DeadLetterStatus.PENDING,
            created_at=self._clock(),
        )

        entry_id = await self.repository.insert(entry)

        metrics.dead_letters_total.inc(reason=entry.reason)
        log_pipeline_event(
            "dead_letter_queued", entry_id, hook=hook, reason=entry.reason, attempts=entry.attempts
        )
        await self._publish(DEAD_LETTER_QUEUED, {"id": entry_id, "hook": hook, "reason": entry.reason})
        return entry_id

    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        return await self.repository.get(entry_id)

    async def get_pending(
        self,
        limit: int = 50,
        offset: int = 0,
        reason: Optional[DeadLetterReason] = None,
    ) -> list[DeadLetterEntry]:
        """Pending entries, newest first, optionally filtered by reason."""
        reason_value = DeadLetterReason(reason).value if reason else None
        return await self.repository.list_entries(
            status=DeadLetterStatus.PENDING.value, reason=reason_value, limit=limit, offset=offset
        )

    async def replay(
        self,
        entry_id: str,
        delay: float = 0,
        new_priority: Optional[int] = None,
    ) -> bool:
        """
        Re-submit a pending entry as a fresh job with attempt = 1.

        Args:
            entry_id: Entry to replay
            delay: Seconds before the new job runs
            new_priority: Override the original priority

        Returns:
            True if a job was scheduled; False if the entry is missing, not
            pending, or the scheduler is unavailable (entry stays pending)

        Raises:
            CorruptedEntryError: Stored args are not a JSON object; the
                entry is dismissed and nothing is scheduled
        """
        entry = await self.repository.get(entry_id)
        if entry is None or entry.status != DeadLetterStatus.PENDING.value:
            return False

        try:
            args = decode_strict(entry.args)
        except ValueError as e:
            await self._dismiss_corrupted(entry, f"Data corruption: {e}")
            raise CorruptedEntryError(
                f"Cannot replay dead letter {entry_id}: args JSON is corrupted ({e})"
            ) from e

        if not isinstance(args, dict):
            kind = type(args).__name__
            await self._dismiss_corrupted(entry, f"Data corruption: args decoded to {kind}")
            raise CorruptedEntryError(
                f"Cannot replay dead letter {entry_id}: args decoded to {kind} instead of an object"
            )

        args.pop(LEGACY_META_KEY, None)
        replayed_at = self._clock()

        # Claim the entry first so two operators cannot replay it twice
        claimed = await self.repository.transition(
            entry_id,
            DeadLetterStatus.PENDING.value,
            DeadLetterStatus.REPLAYED.value,
            fields={"replayed_at": replayed_at},
        )
        if not claimed:
            return False

        priority = new_priority if new_priority is not None else entry.priority
        job_id = await self.scheduler.schedule(
            entry.hook,
            args,
            priority,
            delay,
            extra_meta={
                "replayed_from_dlq": entry_id,
                "replayed_at": int(replayed_at.timestamp()),
            },
        )

        if job_id is None:
            await self.repository.transition(
                entry_id,
                DeadLetterStatus.REPLAYED.value,
                DeadLetterStatus.PENDING.value,
                fields={"replayed_at": None},
            )
            logger.error(f"Replay of dead letter {entry_id} failed, scheduler unavailable")
            return False

        await self.repository.merge_metadata(entry_id, {"replay_job_id": job_id})

        log_pipeline_event("dead_letter_replayed", entry_id, hook=entry.hook, job_id=job_id)
        await self._publish(DEAD_LETTER_REPLAYED, {"id": entry_id, "hook": entry.hook, "job_id": job_id})
        return True

    async def dismiss(self, entry_id: str, reason: str = "") -> bool:
        """
        Discard a pending entry.

        Returns:
            True if the entry is now dismissed (already dismissed counts);
            False if it is missing or was replayed
        """
        entry = await self.repository.get(entry_id)
        if entry is None:
            return False
        if entry.status == DeadLetterStatus.DISMISSED.value:
            return True
        if entry.status != DeadLetterStatus.PENDING.value:
            return False

        dismissed = await self.repository.transition(
            entry_id,
            DeadLetterStatus.PENDING.value,
            DeadLetterStatus.DISMISSED.value,
            fields={"dismissed_at": self._clock()},
            metadata={"dismiss_reason": reason},
        )
        if dismissed:
            log_pipeline_event("dead_letter_dismissed", entry_id, hook=entry.hook, reason=reason)
            await self._publish(DEAD_LETTER_DISMISSED, {"id": entry_id, "hook": entry.hook, "reason": reason})
        return dismissed

    async def get_stats(self) -> DeadLetterStats:
        rows = await self.repository.breakdown()
        stats = DeadLetterStats(breakdown=rows)
        for row in rows:
            stats.total += row.count
            if row.status in (s.value for s in DeadLetterStatus):
                setattr(stats, row.status, getattr(stats, row.status) + row.count)
            stats.by_reason[row.reason] = stats.by_reason.get(row.reason, 0) + row.count
        return stats

    async def cleanup(self, days_old: Optional[int] = None) -> int:
        """Delete replayed/dismissed entries created more than `days_old` days ago."""
        days = days_old if days_old is not None else self.retention_days
        cutoff = self._clock() - timedelta(days=days)
        count = await self.repository.delete_terminal_before(cutoff)
        if count:
            logger.info(f"Deleted {count} terminal dead letters older than {days} days")
        return count

    async def _dismiss_corrupted(self, entry: DeadLetterEntry, reason: str) -> None:
        logger.error(
            f"Dead letter {entry.id} has corrupted args, dismissing",
            extra={"dlq_id": entry.id, "hook": entry.hook, "raw_length": len(entry.args or "")}
        )
        await self.dismiss(entry.id, reason)

    async def _publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self.events is not None:
            await self.events.publish(topic, {**payload, "timestamp": int(self._clock().timestamp())})
