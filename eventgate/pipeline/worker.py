"""
Job Worker

Background worker that claims due jobs from the executor backend and
dispatches them to their processors.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger

from eventgate.config import get_settings
from eventgate.errors import InfrastructureError
from eventgate.executor.base import JobExecutorBackend, ScheduledJob
from eventgate.pipeline.processor import ProcessorRegistry
from eventgate.pipeline.scheduler import PriorityScheduler
from eventgate.utils.time import Clock, utc_now


class JobWorker:
    """
    Background worker for processing scheduled jobs.

    Continuously claims due jobs (most urgent lane first) and runs each one
    through its registered processor. Every job consumes one unit of its
    lane's per-minute budget before it runs; over-limit jobs go back to
    pending a few seconds later.

    Attributes:
        backend: Executor backend to claim jobs from
        scheduler: Scheduler owning the lane rate limits
        registry: Hook -> processor mapping
        max_concurrent: Maximum number of jobs processed at once
        poll_interval: Seconds to wait when nothing is due
        batch_size: Maximum jobs claimed per poll
        running_timeout: Seconds after which a claimed, unfinished job is
            considered abandoned and handed out again
    """

    def __init__(
        self,
        backend: JobExecutorBackend,
        scheduler: PriorityScheduler,
        registry: ProcessorRegistry,
        max_concurrent: Optional[int] = None,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        running_timeout: Optional[int] = None,
        clock: Clock = utc_now,
    ):
        settings = get_settings()
        self.backend = backend
        self.scheduler = scheduler
        self.registry = registry
        self.max_concurrent = max_concurrent or settings.worker_max_concurrent
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval
        self.batch_size = batch_size or settings.worker_batch_size
        self.rate_limited_defer = settings.rate_limited_defer_seconds
        self.running_timeout = running_timeout or settings.job_running_timeout_seconds
        self._next_stale_check: Optional[datetime] = None
        self._clock = clock
        self._running = False
        self._tasks: set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(self.max_concurrent)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Start the worker.

        Polls the backend for due jobs until stop() is called.
        """
        if self._running:
            logger.warning("Worker already running")
            return

        self._running = True
        logger.info(
            f"🚀 Job worker started (max_concurrent={self.max_concurrent}, "
            f"poll_interval={self.poll_interval}s, hooks={self.registry.hooks()})"
        )

        try:
            while self._running:
                await self._reset_stale_jobs()
                free_slots = self.max_concurrent - len(self._tasks)
                jobs = await self.backend.claim_due(min(self.batch_size, free_slots)) if free_slots > 0 else []

                for job in jobs:
                    task = asyncio.create_task(self._process_job(job))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)

                if not jobs:
                    # Nothing due (or no free slot), wait before polling again
                    await asyncio.sleep(self.poll_interval)

        except Exception as e:
            logger.error(f"Worker crashed: {e}", exc_info=True)
            raise

        finally:
            logger.info("🛑 Job worker stopped")

    async def stop(self) -> None:
        """
        Stop the worker.

        Gracefully shuts down:
        1. Stops claiming new jobs
        2. Waits for in-flight jobs to complete
        3. Cancels any remaining tasks
        """
        if not self._running:
            return

        logger.info("Stopping job worker...")
        self._running = False

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} jobs to complete...")
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._tasks, return_exceptions=True),
                    timeout=30.0
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for jobs, cancelling remaining")
                for task in self._tasks:
                    task.cancel()

    async def run_once(self) -> int:
        """
        Claim one batch of due jobs and process it to completion.

        Returns:
            Number of jobs claimed
        """
        await self._reset_stale_jobs()
        jobs = await self.backend.claim_due(self.batch_size)
        await asyncio.gather(*(self._process_job(job) for job in jobs))
        return len(jobs)

    async def _reset_stale_jobs(self) -> None:
        """Hand out again jobs whose worker died, at most once per timeout period."""
        now = self._clock()
        if self._next_stale_check is not None and now < self._next_stale_check:
            return
        self._next_stale_check = now + timedelta(seconds=self.running_timeout)

        try:
            count = await self.backend.reset_stale(now - timedelta(seconds=self.running_timeout), now)
        except InfrastructureError as e:
            logger.warning(f"Could not reset abandoned jobs: {e}")
            return

        if count:
            logger.warning(
                f"♻️ Reset {count} jobs abandoned for over {self.running_timeout}s",
                extra={"count": count, "running_timeout": self.running_timeout}
            )

    async def _process_job(self, job: ScheduledJob) -> None:
        """
        Process a single job with concurrency control.

        Args:
            job: Claimed job
        """
        async with self._semaphore:
            if not await self.scheduler.check_rate_limit(job.priority):
                run_at = self._clock() + timedelta(seconds=self.rate_limited_defer)
                await self.backend.defer(job.id, run_at)
                logger.info(
                    f"⏳ {job.group} lane at its rate limit, job {job.id} deferred {self.rate_limited_defer}s",
                    extra={"job_id": job.id, "hook": job.hook, "group": job.group}
                )
                return

            processor = self.registry.get(job.hook)
            if processor is None:
                logger.error(
                    f"❌ No processor registered for hook {job.hook}",
                    extra={"job_id": job.id, "hook": job.hook}
                )
                await self.backend.fail(job.id, f"No processor registered for hook {job.hook}")
                return

            try:
                outcome = await processor.execute(job.payload)
            except Exception as e:
                logger.error(
                    f"❌ Job {job.id} ({job.hook}) could not be processed: {e}",
                    extra={
                        "job_id": job.id,
                        "hook": job.hook,
                        "priority": job.priority,
                        "error": str(e),
                    },
                    exc_info=True
                )
                await self.backend.fail(job.id, str(e))
                return

            # The executor job is done even when a retry or quarantine was recorded
            await self.backend.complete(job.id)

            logger.info(
                f"✅ Job {job.id} ({job.hook}) finished: {outcome.value}",
                extra={"job_id": job.id, "hook": job.hook, "outcome": outcome.value}
            )
