"""
Priority Scheduler

Wraps user arguments in versioned envelopes and places them on one of five
priority lanes of the executor backend. Also owns retry rescheduling with
exponential backoff, per-lane rate limits and argument-addressable
uniqueness.

Backend outages never raise out of the scheduling calls: they are logged
and reported through the return value (None / RetryOutcome.FAILED).
"""

from datetime import timedelta
from typing import TYPE_CHECKING, Any, Optional, Union

from eventgate.config import get_settings
from eventgate.coordination.base import CoordinationStore, advisory_lock
from eventgate.errors import EnvelopeError, InfrastructureError, SerializationError
from eventgate.executor.base import JobExecutorBackend, LaneStats
from eventgate.models.dead_letter import DeadLetterReason
from eventgate.models.job import (
    LEGACY_META_KEY,
    PRIORITY_GROUPS,
    JobEnvelope,
    Priority,
    RetryOutcome,
    args_fingerprint,
    canonical_json,
)
from eventgate.pipeline.idempotency import IdempotencyScope, IdempotencyService
from eventgate.pipeline.rate_limiter import RateLimiter
from eventgate.utils.metrics import metrics
from eventgate.utils.observability import log_job_event, logger
from eventgate.utils.time import Clock, utc_now

if TYPE_CHECKING:
    from eventgate.pipeline.dead_letter import DeadLetterQueue


class PriorityScheduler:
    """
    Priority-lane job scheduler.

    Lanes: 1 critical, 2 urgent, 3 normal, 4 bulk, 5 maintenance.
    Out-of-range priorities are clamped; negative delays run immediately.

    Attributes:
        backend: Executor backend storing the jobs
        store: Coordination store used for unique-scheduling locks
        idempotency: Claims used to deduplicate concurrent retries
        rate_limiter: Per-lane minute counters
        dead_letters: Quarantine for exhausted retries (attached after construction)
    """

    def __init__(
        self,
        backend: JobExecutorBackend,
        store: CoordinationStore,
        idempotency: IdempotencyService,
        rate_limiter: RateLimiter,
        dead_letters: Optional["DeadLetterQueue"] = None,
        clock: Clock = utc_now,
    ):
        settings = get_settings()
        self.backend = backend
        self.store = store
        self.idempotency = idempotency
        self.rate_limiter = rate_limiter
        self.dead_letters = dead_letters
        self._clock = clock

        self.default_max_retries = settings.default_max_retries
        self.retry_base_delay = settings.retry_base_delay_seconds
        self.retry_multiplier = settings.retry_backoff_multiplier
        self.retry_claim_ttl_hours = settings.retry_claim_ttl_hours
        self.unique_lock_timeout = settings.unique_lock_timeout_seconds
        self.unique_lock_ttl = settings.unique_lock_ttl_seconds
        self.rate_limits = {
            group: settings.rate_limit_for_group(group) for group in PRIORITY_GROUPS.values()
        }

    def attach_dead_letter_queue(self, dead_letters: "DeadLetterQueue") -> None:
        """Wire the quarantine after both objects exist (they reference each other)."""
        self.dead_letters = dead_letters

    @staticmethod
    def get_group(priority: int) -> str:
        return Priority.clamp(priority).group

    def retry_delay(self, attempt: int) -> int:
        """Backoff before the next attempt: base * multiplier^(attempt-1)."""
        return self.retry_base_delay * self.retry_multiplier ** max(attempt - 1, 0)

    # ============================================
    # SCHEDULING
    # ============================================

    async def schedule(
        self,
        hook: str,
        args: dict[str, Any],
        priority: int = Priority.NORMAL,
        delay: float = 0,
        extra_meta: Optional[dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Schedule a job.

        Args:
            hook: Hook selecting the processor
            args: User arguments, never inspected or modified
            priority: 1..5 (clamped)
            delay: Seconds from now; <= 0 runs immediately
            extra_meta: Additional envelope metadata

        Returns:
            Job ID, or None if the backend is unavailable
        """
        envelope = JobEnvelope.wrap(args, priority, **(extra_meta or {}))
        return await self._enqueue(hook, envelope, delay)

    async def schedule_unique(
        self,
        hook: str,
        args: dict[str, Any],
        priority: int = Priority.NORMAL,
        delay: float = 0,
    ) -> Optional[str]:
        """
        Schedule a job unless one with the same hook and args is pending or running.

        The pending check and the insert run under an advisory lock keyed by
        the args fingerprint, so concurrent callers cannot both schedule.

        Returns:
            Job ID, or None if a duplicate exists, the lock is held elsewhere
            or the backend is unavailable
        """
        fingerprint = args_fingerprint(hook, args)
        try:
            async with advisory_lock(
                self.store,
                f"unique_job:{fingerprint}",
                timeout=self.unique_lock_timeout,
                ttl_seconds=self.unique_lock_ttl,
            ) as acquired:
                if not acquired:
                    logger.info(f"Unique schedule of {hook} skipped, lock held by another worker")
                    return None

                if await self.backend.has_pending(hook, fingerprint):
                    logger.debug(f"Unique schedule of {hook} skipped, matching job pending")
                    return None

                return await self.schedule(hook, args, priority, delay)
        except InfrastructureError as e:
            logger.error(f"Unique schedule of {hook} failed: {e}")
            return None

    async def schedule_recurring(
        self,
        hook: str,
        args: dict[str, Any],
        interval: int = 3600,
        priority: int = Priority.NORMAL,
    ) -> Optional[str]:
        """Schedule a job that runs now and then every `interval` seconds."""
        envelope = JobEnvelope.wrap(args, priority)
        return await self._enqueue(hook, envelope, 0, interval_seconds=interval)

    async def reschedule(
        self,
        hook: str,
        payload: Union[JobEnvelope, dict[str, Any]],
        delay: float,
        meta_updates: Optional[dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Re-enqueue an existing job with its metadata (attempt included) preserved.

        Used for circuit-open deferrals, which are not retries.
        """
        envelope = payload if isinstance(payload, JobEnvelope) else JobEnvelope.unwrap(payload)
        if meta_updates:
            envelope = envelope.model_copy(
                update={"meta": envelope.meta.model_copy(update=meta_updates)}
            )
        return await self._enqueue(hook, envelope, delay)

    async def retry(
        self,
        hook: str,
        payload: Union[JobEnvelope, dict[str, Any]],
        attempt: int,
        max_retries: Optional[int] = None,
        delay: Optional[float] = None,
        error: Optional[str] = None,
    ) -> RetryOutcome:
        """
        Reschedule a failed job with backoff, or quarantine it once retries are exhausted.

        A claim on (hook, args, attempt) in the queue_retry scope makes the
        call idempotent: only the first caller for a given attempt acts.

        Args:
            hook: Hook of the failed job
            payload: Envelope (or raw v1/v2 payload) of the failed job
            attempt: Attempt that just failed
            max_retries: Attempt budget (defaults to settings)
            delay: Explicit delay; defaults to retry_delay(attempt)
            error: Error message recorded if the job is dead-lettered

        Returns:
            RESCHEDULED, DEAD_LETTERED, SKIPPED (already handled) or FAILED
        """
        try:
            envelope = payload if isinstance(payload, JobEnvelope) else JobEnvelope.unwrap(payload)
        except EnvelopeError as e:
            logger.error(f"Cannot retry {hook}: {e}")
            return RetryOutcome.FAILED

        max_retries = max_retries if max_retries is not None else self.default_max_retries
        retry_key = IdempotencyService.generate_key(hook, canonical_json(envelope.args), attempt)

        try:
            claimed = await self.idempotency.claim(
                retry_key, IdempotencyScope.QUEUE_RETRY.value, ttl_hours=self.retry_claim_ttl_hours
            )
            if not claimed:
                logger.info(f"Retry of {hook} attempt {attempt} already handled by another worker")
                return RetryOutcome.SKIPPED

            if attempt >= max_retries:
                outcome = await self._dead_letter_exhausted(hook, envelope, attempt, error)
                if outcome == RetryOutcome.FAILED:
                    # Leave the attempt claimable so a later call can still quarantine it
                    await self.idempotency.release(retry_key, IdempotencyScope.QUEUE_RETRY.value)
                return outcome

            wait = delay if delay is not None else self.retry_delay(attempt)
            retried = envelope.model_copy(update={
                "meta": envelope.meta.model_copy(update={
                    "attempt": attempt + 1,
                    "last_retry": int(self._clock().timestamp()),
                })
            })

            job_id = await self._enqueue(hook, retried, wait)
            if job_id is None:
                await self.idempotency.release(retry_key, IdempotencyScope.QUEUE_RETRY.value)
                return RetryOutcome.FAILED
        except InfrastructureError as e:
            logger.error(f"Retry of {hook} attempt {attempt} failed: {e}")
            return RetryOutcome.FAILED

        metrics.retries_total.inc(hook=hook)
        log_job_event(hook, "retry_scheduled", attempt=attempt + 1, delay_seconds=wait, job_id=job_id)
        return RetryOutcome.RESCHEDULED

    async def _dead_letter_exhausted(
        self,
        hook: str,
        envelope: JobEnvelope,
        attempt: int,
        error: Optional[str],
    ) -> RetryOutcome:
        if self.dead_letters is None:
            logger.error(
                f"Job {hook} exhausted {attempt} attempts with no dead letter queue configured, dropping",
                extra={"hook": hook, "attempt": attempt}
            )
            return RetryOutcome.FAILED

        dlq_args = {**envelope.args, LEGACY_META_KEY: envelope.meta.model_dump(exclude_none=True)}
        try:
            await self.dead_letters.push(hook, dlq_args, DeadLetterReason.MAX_RETRIES, error=error)
        except (InfrastructureError, SerializationError) as e:
            logger.error(
                f"Job {hook} exhausted {attempt} attempts but could not be dead-lettered: {e}",
                extra={"hook": hook, "attempt": attempt}
            )
            return RetryOutcome.FAILED
        return RetryOutcome.DEAD_LETTERED

    async def _enqueue(
        self,
        hook: str,
        envelope: JobEnvelope,
        delay: float,
        interval_seconds: Optional[int] = None,
    ) -> Optional[str]:
        priority = envelope.priority
        run_at = self._clock() + timedelta(seconds=max(delay, 0))

        try:
            job_id = await self.backend.schedule_at(
                hook,
                envelope.to_payload(),
                run_at,
                priority.group,
                int(priority),
                args_fingerprint(hook, envelope.args),
                interval_seconds,
            )
        except InfrastructureError as e:
            logger.error(
                f"Failed to schedule {hook}: {e}",
                extra={"hook": hook, "priority": int(priority)}
            )
            return None

        metrics.jobs_scheduled.inc(group=priority.group)
        logger.debug(f"Scheduled {hook} on {priority.group} lane (job {job_id}, delay {max(delay, 0)}s)")
        return job_id

    # ============================================
    # RATE LIMITING
    # ============================================

    async def check_rate_limit(self, priority: int) -> bool:
        """
        Consume one unit of the lane's per-minute budget.

        Returns:
            True if the job may run now; False if the lane is saturated or
            the store is unreachable
        """
        group = self.get_group(priority)
        try:
            result = await self.rate_limiter.check(f"queue_{group}", self.rate_limits[group])
        except InfrastructureError as e:
            logger.error(f"Rate limit check for {group} failed: {e}")
            return False

        if not result.allowed:
            metrics.jobs_rate_limited.inc(group=group)
        return result.allowed

    async def cleanup_rate_limits(self) -> int:
        return await self.rate_limiter.cleanup()

    # ============================================
    # QUERIES & CANCELLATION
    # ============================================

    async def get_stats(self) -> dict[str, LaneStats]:
        """Pending/running/completed/failed counts for every lane, most urgent first."""
        lanes = await self.backend.stats()
        return {group: lanes.get(group, LaneStats()) for group in PRIORITY_GROUPS.values()}

    async def get_pending_count(self, priority: Optional[int] = None) -> int:
        group = self.get_group(priority) if priority is not None else None
        return await self.backend.pending_count(group)

    async def is_pending(self, hook: str, args: Optional[dict[str, Any]] = None) -> bool:
        """Whether a job on `hook` (with exactly these args, if given) is pending or running."""
        fingerprint = args_fingerprint(hook, args) if args is not None else None
        return await self.backend.has_pending(hook, fingerprint)

    async def cancel(self, hook: str, args: Optional[dict[str, Any]] = None) -> int:
        """Cancel pending jobs on `hook`, optionally only those with these args."""
        fingerprint = args_fingerprint(hook, args) if args is not None else None
        count = await self.backend.cancel_by_hook(hook, fingerprint)
        logger.info(f"Canceled {count} pending {hook} jobs")
        return count

    async def cancel_by_priority(self, priority: int) -> int:
        group = self.get_group(priority)
        count = await self.backend.cancel_lane(group)
        logger.info(f"Canceled {count} pending jobs on {group} lane")
        return count
