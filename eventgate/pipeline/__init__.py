"""
Job Pipeline

Idempotency, rate limiting, priority scheduling, retry orchestration,
dead-letter quarantine and the worker loop that ties them together.
"""

from eventgate.pipeline.events import EventBus
from eventgate.pipeline.idempotency import IdempotencyScope, IdempotencyService
from eventgate.pipeline.rate_limiter import RateLimiter, RateLimitResult
from eventgate.pipeline.scheduler import PriorityScheduler
from eventgate.pipeline.dead_letter import (
    DeadLetterQueue,
    DeadLetterRepository,
    DeadLetterStats,
    InMemoryDeadLetterRepository,
)
from eventgate.pipeline.processor import ProcessOutcome, ProcessorRegistry, QueueProcessor
from eventgate.pipeline.worker import JobWorker
from eventgate.pipeline.monitor import JobMonitor

__all__ = [
    "EventBus",
    "IdempotencyScope",
    "IdempotencyService",
    "RateLimiter",
    "RateLimitResult",
    "PriorityScheduler",
    "DeadLetterQueue",
    "DeadLetterRepository",
    "DeadLetterStats",
    "InMemoryDeadLetterRepository",
    "ProcessOutcome",
    "ProcessorRegistry",
    "QueueProcessor",
    "JobWorker",
    "JobMonitor",
]
