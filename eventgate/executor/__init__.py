"""
Job Executor Backends

Time-based job storage behind one interface:
- In-memory heap backend for testing/single node
- MongoDB backend for durable multi-worker deployments
"""

from eventgate.executor.base import (
    JobExecutorBackend,
    JobStatus,
    LaneStats,
    ScheduledJob,
    ThroughputStats,
)
from eventgate.executor.memory import InMemoryExecutorBackend
from eventgate.executor.mongo import MongoExecutorBackend

__all__ = [
    "JobExecutorBackend",
    "JobStatus",
    "LaneStats",
    "ScheduledJob",
    "ThroughputStats",
    "InMemoryExecutorBackend",
    "MongoExecutorBackend",
]
