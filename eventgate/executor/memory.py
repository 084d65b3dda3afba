"""
In-Memory Executor Backend

Heap-ordered job store for tests and single-process deployments.
Jobs are lost on restart.
"""

import asyncio
import heapq
import itertools
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from eventgate.executor.base import (
    JobExecutorBackend,
    JobStatus,
    LaneStats,
    ScheduledJob,
    ThroughputStats,
)
from eventgate.utils.time import Clock, utc_now

FINISHED_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELED.value)


class InMemoryExecutorBackend(JobExecutorBackend):
    """
    Executor backend keeping jobs in a dict and due times in a heap.

    Heap entries are (run_at timestamp, sequence, job_id). Rescheduling a job
    pushes a new entry and bumps the job's token, so older entries are
    skipped when popped.
    """

    def __init__(self, clock: Clock = utc_now):
        self._jobs: dict[str, ScheduledJob] = {}
        self._heap: list[tuple[float, int, str]] = []
        self._tokens: dict[str, int] = {}
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()
        self._clock = clock

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
        async with self._lock:
            job = ScheduledJob(
                id=uuid.uuid4().hex,
                hook=hook,
                group=group,
                priority=priority,
                payload=payload,
                fingerprint=fingerprint,
                run_at=run_at,
                interval_seconds=interval_seconds,
                created_at=self._clock(),
            )
            self._jobs[job.id] = job
            self._push(job)
            return job.id

    async def cancel_by_hook(self, hook: str, fingerprint: Optional[str] = None) -> int:
        async with self._lock:
            return self._cancel(
                lambda job: job.hook == hook and (fingerprint is None or job.fingerprint == fingerprint)
            )

    async def cancel_lane(self, group: str) -> int:
        async with self._lock:
            return self._cancel(lambda job: job.group == group)

    async def has_pending(self, hook: str, fingerprint: Optional[str] = None) -> bool:
        async with self._lock:
            return any(
                job.hook == hook
                and job.status in (JobStatus.PENDING.value, JobStatus.RUNNING.value)
                and (fingerprint is None or job.fingerprint == fingerprint)
                for job in self._jobs.values()
            )

    async def claim_due(self, limit: int, now: Optional[datetime] = None) -> list[ScheduledJob]:
        now = now or self._clock()
        async with self._lock:
            due: list[ScheduledJob] = []
            while self._heap and self._heap[0][0] <= now.timestamp():
                _, token, job_id = heapq.heappop(self._heap)
                job = self._jobs.get(job_id)
                if job is None or self._tokens.get(job_id) != token:
                    continue
                if job.status != JobStatus.PENDING.value:
                    continue
                due.append(job)

            due.sort(key=lambda j: (j.priority, j.run_at))
            claimed, leftover = due[:limit], due[limit:]

            for job in leftover:
                self._push(job)

            for job in claimed:
                job.status = JobStatus.RUNNING.value
                job.started_at = now

            return [job.model_copy(deep=True) for job in claimed]

    async def complete(self, job_id: str) -> None:
        await self._finish(job_id, JobStatus.COMPLETED, None)

    async def fail(self, job_id: str, error: str) -> None:
        await self._finish(job_id, JobStatus.FAILED, error)

    async def defer(self, job_id: str, run_at: datetime) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.status = JobStatus.PENDING.value
            job.run_at = run_at
            job.started_at = None
            self._push(job)

    async def reset_stale(self, before: datetime, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        async with self._lock:
            stale = [
                job for job in self._jobs.values()
                if job.status == JobStatus.RUNNING.value
                and job.started_at is not None
                and job.started_at <= before
            ]
            for job in stale:
                job.status = JobStatus.PENDING.value
                job.run_at = now
                job.started_at = None
                self._push(job)
            return len(stale)

    async def stats(self) -> dict[str, LaneStats]:
        async with self._lock:
            lanes: dict[str, LaneStats] = {}
            for job in self._jobs.values():
                lane = lanes.setdefault(job.group, LaneStats())
                if job.status in LaneStats.model_fields:
                    setattr(lane, job.status, getattr(lane, job.status) + 1)
            return lanes

    async def pending_count(self, group: Optional[str] = None) -> int:
        async with self._lock:
            return sum(
                1 for job in self._jobs.values()
                if job.status == JobStatus.PENDING.value and (group is None or job.group == group)
            )

    async def throughput(self, since: datetime) -> ThroughputStats:
        async with self._lock:
            finished = [
                job for job in self._jobs.values()
                if job.finished_at is not None and job.finished_at >= since
            ]
            waits = [
                (job.started_at - job.run_at).total_seconds()
                for job in finished
                if job.status == JobStatus.COMPLETED.value and job.started_at is not None
            ]
            return ThroughputStats(
                completed=sum(1 for job in finished if job.status == JobStatus.COMPLETED.value),
                failed=sum(1 for job in finished if job.status == JobStatus.FAILED.value),
                avg_wait_seconds=sum(waits) / len(waits) if waits else 0.0,
            )

    async def purge_finished(self, before: datetime) -> int:
        async with self._lock:
            doomed = [
                job_id for job_id, job in self._jobs.items()
                if job.status in FINISHED_STATUSES
                and (job.finished_at or job.created_at) < before
            ]
            for job_id in doomed:
                del self._jobs[job_id]
                self._tokens.pop(job_id, None)
            return len(doomed)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        hook: Optional[str] = None,
        limit: int = 50,
    ) -> list[ScheduledJob]:
        wanted = JobStatus(status).value if status else None
        async with self._lock:
            jobs = [
                job for job in self._jobs.values()
                if (wanted is None or job.status == wanted) and (hook is None or job.hook == hook)
            ]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [job.model_copy(deep=True) for job in jobs[:limit]]

    def _push(self, job: ScheduledJob) -> None:
        """Register a (new) heap entry for the job. Caller holds the lock."""
        token = next(self._sequence)
        self._tokens[job.id] = token
        heapq.heappush(self._heap, (job.run_at.timestamp(), token, job.id))

    def _cancel(self, predicate) -> int:
        """Cancel pending jobs matching predicate. Caller holds the lock."""
        now = self._clock()
        count = 0
        for job in self._jobs.values():
            if job.status == JobStatus.PENDING.value and predicate(job):
                job.status = JobStatus.CANCELED.value
                job.finished_at = now
                count += 1
        return count

    async def _finish(self, job_id: str, status: JobStatus, error: Optional[str]) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return

            now = self._clock()
            job.status = status.value
            job.finished_at = now
            job.last_error = error

            if job.interval_seconds:
                follow_up = job.model_copy(update={
                    "id": uuid.uuid4().hex,
                    "status": JobStatus.PENDING.value,
                    "run_at": now + timedelta(seconds=job.interval_seconds),
                    "created_at": now,
                    "started_at": None,
                    "finished_at": None,
                    "last_error": None,
                })
                self._jobs[follow_up.id] = follow_up
                self._push(follow_up)
