"""
Coordination Store

Atomic primitives shared by all workers:
- Abstract store interface
- In-memory store for tests/single node
- MongoDB store for multi-worker deployments
"""

from eventgate.coordination.base import CoordinationStore, ClaimStats, advisory_lock
from eventgate.coordination.memory import InMemoryCoordinationStore
from eventgate.coordination.mongo import MongoCoordinationStore

__all__ = [
    "CoordinationStore",
    "ClaimStats",
    "advisory_lock",
    "InMemoryCoordinationStore",
    "MongoCoordinationStore",
]
