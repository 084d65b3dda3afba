"""
Maintenance Processor

Recurring housekeeping job on the maintenance lane: expired idempotency
claims, old rate-limit windows, terminal dead letters past retention and
finished executor jobs.
"""
from datetime import timedelta
from typing import Any, Optional

from eventgate.config import get_settings
from eventgate.pipeline.dead_letter import DeadLetterQueue
from eventgate.pipeline.idempotency import IdempotencyService
from eventgate.pipeline.processor import QueueProcessor
from eventgate.pipeline.scheduler import PriorityScheduler
from eventgate.utils.observability import log_job_event
from eventgate.utils.time import Clock, utc_now

MAINTENANCE_HOOK = "pipeline_maintenance"


class MaintenanceProcessor(QueueProcessor):

    def __init__(
        self,
        scheduler: PriorityScheduler,
        dead_letters: DeadLetterQueue,
        idempotency: IdempotencyService,
        job_retention_days: Optional[int] = None,
        clock: Clock = utc_now,
    ):
        super().__init__(scheduler, dead_letters)
        self.idempotency = idempotency
        self.job_retention_days = (
            job_retention_days if job_retention_days is not None else get_settings().job_retention_days
        )
        self._clock = clock
        self.last_run: dict[str, int] = {}

    def get_hook_name(self) -> str:
        return MAINTENANCE_HOOK

    def get_name(self) -> str:
        return "maintenance"

    async def process(self, args: dict[str, Any]) -> None:
        cutoff = self._clock() - timedelta(days=self.job_retention_days)

        results = {
            "idempotency_keys": await self.idempotency.cleanup(),
            "rate_limit_windows": await self.scheduler.cleanup_rate_limits(),
            "dead_letters": await self.dead_letters.cleanup(args.get("dlq_days_old")),
            "finished_jobs": await self.scheduler.backend.purge_finished(cutoff),
        }
        self.last_run = results

        log_job_event(MAINTENANCE_HOOK, "cleanup_completed", **results)
