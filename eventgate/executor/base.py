"""
Job Executor Backend Interface

Cron-like time-based executor: stores payloads under a hook and lane,
hands them out once their run time has passed, and keeps per-lane counts.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict

from eventgate.utils.time import utc_now


class JobStatus(str, Enum):
    """Executor-side job status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class ScheduledJob(BaseModel):
    """
    Job stored in an executor backend.

    Attributes:
        id: Backend job identifier
        hook: Hook that selects the processor
        group: Priority lane name
        priority: Numeric priority (1 = most urgent)
        payload: Envelope handed to the processor
        fingerprint: sha256 of hook + canonical args, for argument-addressable lookups
        status: Current status
        run_at: Earliest time the job may run
        interval_seconds: Re-run interval for recurring jobs
        created_at: When the job was stored
        started_at: When a worker claimed it
        finished_at: When it completed or failed
        last_error: Error recorded by fail()
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str
    hook: str
    group: str
    priority: int
    payload: dict[str, Any]
    fingerprint: str
    status: JobStatus = JobStatus.PENDING
    run_at: datetime
    interval_seconds: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None


class LaneStats(BaseModel):
    """Job counts for one priority lane."""
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0


class ThroughputStats(BaseModel):
    """Completion counts and latency since a point in time."""
    completed: int = 0
    failed: int = 0
    avg_wait_seconds: float = 0.0


class JobExecutorBackend(ABC):
    """
    Abstract executor backend.

    Implementations must provide:
    - schedule_at / cancel_by_hook / cancel_lane: write side
    - claim_due / complete / fail / defer: worker side
    - has_pending / stats / pending_count / throughput / list_jobs: read side
    """

    @abstractmethod
    async def schedule_at(
        self,
        hook: str,
        payload: dict[str, Any],
        run_at: datetime,
        group: str,
        priority: int,
        fingerprint: str,
        interval_seconds: Optional[int] = None,
    ) -> str:
        """
        Store a job to run at `run_at`.

        Returns:
            Backend job ID

        Raises:
            InfrastructureError: If the backend cannot store the job
        """
        pass

    @abstractmethod
    async def cancel_by_hook(self, hook: str, fingerprint: Optional[str] = None) -> int:
        """
        Cancel pending jobs on a hook, optionally only those with matching args.

        Returns:
            Number of jobs canceled
        """
        pass

    @abstractmethod
    async def cancel_lane(self, group: str) -> int:
        """Cancel every pending job in a lane."""
        pass

    @abstractmethod
    async def has_pending(self, hook: str, fingerprint: Optional[str] = None) -> bool:
        """Whether a pending or running job exists for the hook (and args)."""
        pass

    @abstractmethod
    async def claim_due(self, limit: int, now: Optional[datetime] = None) -> list[ScheduledJob]:
        """
        Atomically mark up to `limit` due jobs as running and return them.

        Most urgent priority first, then earliest run time.
        """
        pass

    @abstractmethod
    async def complete(self, job_id: str) -> None:
        """Mark a running job completed. Recurring jobs get their next run stored."""
        pass

    @abstractmethod
    async def fail(self, job_id: str, error: str) -> None:
        """Mark a running job failed. Recurring jobs get their next run stored."""
        pass

    @abstractmethod
    async def defer(self, job_id: str, run_at: datetime) -> None:
        """Return a claimed job to pending with a later run time."""
        pass

    @abstractmethod
    async def reset_stale(self, before: datetime, now: Optional[datetime] = None) -> int:
        """
        Return jobs claimed before `before` and never finished to pending.

        A worker that dies mid-job leaves it running forever otherwise.
        Reset jobs are due immediately.

        Returns:
            Number of jobs reset
        """
        pass

    @abstractmethod
    async def stats(self) -> dict[str, LaneStats]:
        """Job counts per lane."""
        pass

    @abstractmethod
    async def pending_count(self, group: Optional[str] = None) -> int:
        """Pending jobs, in one lane or overall."""
        pass

    @abstractmethod
    async def throughput(self, since: datetime) -> ThroughputStats:
        """Completions, failures and average queue wait since `since`."""
        pass

    @abstractmethod
    async def purge_finished(self, before: datetime) -> int:
        """Delete completed, failed and canceled jobs that finished before `before`."""
        pass

    @abstractmethod
    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        hook: Optional[str] = None,
        limit: int = 50,
    ) -> list[ScheduledJob]:
        """Most recently scheduled jobs matching the filters."""
        pass
