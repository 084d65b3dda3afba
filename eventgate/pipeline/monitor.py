"""
Job Monitor

Health, throughput and alerting over the scheduler lanes and the dead
letter queue, plus the Prometheus export of those figures.
"""

from datetime import timedelta
from typing import Any

from eventgate.config import get_settings
from eventgate.executor.base import JobStatus, LaneStats, ScheduledJob
from eventgate.models.job import Priority
from eventgate.pipeline.dead_letter import DeadLetterQueue
from eventgate.pipeline.scheduler import PriorityScheduler
from eventgate.utils.metrics import metrics
from eventgate.utils.observability import logger
from eventgate.utils.time import Clock, utc_now


class JobMonitor:
    """
    Read-only view of pipeline health.

    Thresholds (all "alert when above"):
        pending_critical: pending jobs on the critical lane
        pending_total: pending jobs across all lanes
        dlq_pending: dead letters awaiting a decision
        failed_per_hour: executor failures in the last hour
        avg_wait_seconds: average time from run_at to start over the last hour
    """

    def __init__(
        self,
        scheduler: PriorityScheduler,
        dead_letters: DeadLetterQueue,
        clock: Clock = utc_now,
    ):
        settings = get_settings()
        self.scheduler = scheduler
        self.dead_letters = dead_letters
        self._clock = clock
        self.thresholds: dict[str, float] = {
            "pending_critical": settings.monitor_pending_critical,
            "pending_total": settings.monitor_pending_total,
            "dlq_pending": settings.monitor_dlq_pending,
            "failed_per_hour": settings.monitor_failed_per_hour,
            "avg_wait_seconds": settings.monitor_avg_wait_seconds,
        }

    async def get_health_status(self) -> dict[str, Any]:
        """
        Snapshot of lanes, dead letters, throughput and active alerts.

        Status is "healthy" with no alerts and "warning" otherwise.
        """
        lanes = await self.scheduler.get_stats()
        totals = self._totals(lanes)
        dlq_stats = await self.dead_letters.get_stats()
        throughput = await self.get_throughput_metrics()

        alerts = self._check_alerts(lanes, totals, dlq_stats.pending, throughput)

        return {
            "status": "healthy" if not alerts else "warning",
            "timestamp": self._clock().isoformat(),
            "queue": {
                "by_priority": {group: stats.model_dump() for group, stats in lanes.items()},
                "totals": totals,
            },
            "dead_letter": dlq_stats.model_dump(),
            "alerts": alerts,
            "throughput": throughput,
        }

    async def get_throughput_metrics(self) -> dict[str, Any]:
        now = self._clock()
        last_hour = await self.scheduler.backend.throughput(now - timedelta(hours=1))
        last_day = await self.scheduler.backend.throughput(now - timedelta(days=1))

        attempted = last_hour.completed + last_hour.failed
        success_rate = round(last_hour.completed / attempted * 100, 2) if attempted else 100.0

        return {
            "completed_last_hour": last_hour.completed,
            "completed_last_day": last_day.completed,
            "failed_last_hour": last_hour.failed,
            "failed_last_day": last_day.failed,
            "avg_wait_seconds": round(last_hour.avg_wait_seconds, 2),
            "jobs_per_minute": round(last_hour.completed / 60, 2),
            "success_rate": success_rate,
        }

    async def get_failed_jobs(self, limit: int = 50) -> list[ScheduledJob]:
        return await self.scheduler.backend.list_jobs(status=JobStatus.FAILED, limit=limit)

    async def get_job_history(self, hook: str, limit: int = 50) -> list[ScheduledJob]:
        return await self.scheduler.backend.list_jobs(hook=hook, limit=limit)

    def set_threshold(self, name: str, value: float) -> bool:
        """Change an alert threshold. Unknown names are ignored and return False."""
        if name not in self.thresholds:
            logger.warning(f"Unknown monitor threshold '{name}'")
            return False
        self.thresholds[name] = value
        return True

    async def export_prometheus_metrics(self) -> str:
        """Refresh the queue gauges and return the full Prometheus exposition."""
        health = await self.get_health_status()

        for group, stats in health["queue"]["by_priority"].items():
            metrics.queue_pending.set(stats["pending"], priority=group)
            metrics.queue_running.set(stats["running"], priority=group)

        metrics.dlq_pending.set(health["dead_letter"]["pending"])
        metrics.queue_completed_last_day.set(health["throughput"]["completed_last_day"])
        metrics.queue_success_rate.set(health["throughput"]["success_rate"])

        return metrics.export()

    @staticmethod
    def _totals(lanes: dict[str, LaneStats]) -> dict[str, int]:
        totals = {"pending": 0, "running": 0, "completed": 0, "failed": 0}
        for stats in lanes.values():
            for key in totals:
                totals[key] += getattr(stats, key)
        return totals

    def _check_alerts(
        self,
        lanes: dict[str, LaneStats],
        totals: dict[str, int],
        dlq_pending: int,
        throughput: dict[str, Any],
    ) -> list[str]:
        alerts = []
        critical_pending = lanes.get(Priority.CRITICAL.group, LaneStats()).pending

        if critical_pending > self.thresholds["pending_critical"]:
            alerts.append(
                f"Critical lane backlog: {critical_pending} pending jobs "
                f"(threshold: {self.thresholds['pending_critical']:g})"
            )

        if totals["pending"] > self.thresholds["pending_total"]:
            alerts.append(
                f"High queue backlog: {totals['pending']} pending jobs "
                f"(threshold: {self.thresholds['pending_total']:g})"
            )

        if dlq_pending > self.thresholds["dlq_pending"]:
            alerts.append(
                f"Dead letter queue has {dlq_pending} pending items "
                f"(threshold: {self.thresholds['dlq_pending']:g})"
            )

        if throughput["failed_last_hour"] > self.thresholds["failed_per_hour"]:
            alerts.append(
                f"High failure rate: {throughput['failed_last_hour']} failures in last hour "
                f"(threshold: {self.thresholds['failed_per_hour']:g})"
            )

        if throughput["avg_wait_seconds"] > self.thresholds["avg_wait_seconds"]:
            alerts.append(
                f"High queue latency: {throughput['avg_wait_seconds']:.1f} seconds average wait "
                f"(threshold: {self.thresholds['avg_wait_seconds']:g})"
            )

        for alert in alerts:
            logger.warning(f"Pipeline alert: {alert}")

        return alerts
