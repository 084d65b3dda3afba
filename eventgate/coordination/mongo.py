"""
MongoDB Coordination Store

Atomic primitives built on unique indexes:
- locks: one document per key (`_id`), expired holders reaped before insert
- claims: unique (key, scope) index, DuplicateKeyError means the race was lost
- counters: filtered upsert on `count < limit`, retried once on DuplicateKeyError
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from eventgate.coordination.base import ClaimStats, CoordinationStore
from eventgate.errors import InfrastructureError
from eventgate.utils.observability import logger
from eventgate.utils.time import utc_now

LOCKS_COLLECTION = "coordination_locks"
CLAIMS_COLLECTION = "idempotency_keys"
WINDOWS_COLLECTION = "rate_limit_windows"


@contextmanager
def datastore_errors(operation: str) -> Iterator[None]:
    """Re-raise driver failures as InfrastructureError so callers see one error type."""
    try:
        yield
    except PyMongoError as e:
        logger.error(f"MongoDB {operation} failed: {e}")
        raise InfrastructureError(f"{operation} failed: {e}") from e


class MongoCoordinationStore(CoordinationStore):
    """
    Coordination store shared by every worker through MongoDB.

    Requires the indexes created by DatabaseManager.create_indexes().
    """

    def __init__(self, database: AsyncIOMotorDatabase):
        self.locks = database[LOCKS_COLLECTION]
        self.claims = database[CLAIMS_COLLECTION]
        self.windows = database[WINDOWS_COLLECTION]

    async def try_lock(self, key: str, ttl_seconds: float, owner: str) -> bool:
        now = utc_now()
        with datastore_errors("try_lock"):
            await self.locks.delete_one({"_id": key, "expires_at": {"$lte": now}})
            try:
                await self.locks.insert_one({
                    "_id": key,
                    "owner": owner,
                    "acquired_at": now,
                    "expires_at": now + timedelta(seconds=ttl_seconds),
                })
            except DuplicateKeyError:
                return False
        return True

    async def release_lock(self, key: str, owner: str) -> bool:
        with datastore_errors("release_lock"):
            result = await self.locks.delete_one({"_id": key, "owner": owner})
        return result.deleted_count > 0

    async def claim_unique(
        self,
        key: str,
        scope: str,
        expires_at: Optional[datetime],
        now: datetime,
    ) -> bool:
        with datastore_errors("claim_unique"):
            await self.claims.delete_one({
                "key": key,
                "scope": scope,
                "expires_at": {"$ne": None, "$lte": now},
            })
            try:
                await self.claims.insert_one({
                    "key": key,
                    "scope": scope,
                    "claimed_at": now,
                    "expires_at": expires_at,
                })
            except DuplicateKeyError:
                return False
        return True

    async def is_claimed(self, key: str, scope: str, now: datetime) -> bool:
        with datastore_errors("is_claimed"):
            doc = await self.claims.find_one({
                "key": key,
                "scope": scope,
                "$or": [{"expires_at": None}, {"expires_at": {"$gt": now}}],
            })
        return doc is not None

    async def release_claim(self, key: str, scope: str) -> bool:
        with datastore_errors("release_claim"):
            result = await self.claims.delete_one({"key": key, "scope": scope})
        return result.deleted_count > 0

    async def release_scope(self, scope: str) -> int:
        with datastore_errors("release_scope"):
            result = await self.claims.delete_many({"scope": scope})
        return result.deleted_count

    async def extend_claim(self, key: str, scope: str, expires_at: datetime) -> bool:
        with datastore_errors("extend_claim"):
            result = await self.claims.update_one(
                {"key": key, "scope": scope},
                {"$set": {"expires_at": expires_at}},
            )
        return result.matched_count > 0

    async def purge_expired_claims(self, now: datetime) -> int:
        with datastore_errors("purge_expired_claims"):
            result = await self.claims.delete_many({"expires_at": {"$ne": None, "$lte": now}})
        return result.deleted_count

    async def claim_stats(self, now: datetime) -> ClaimStats:
        with datastore_errors("claim_stats"):
            by_scope = {}
            async for row in self.claims.aggregate([
                {"$group": {"_id": "$scope", "count": {"$sum": 1}}},
            ]):
                by_scope[row["_id"]] = row["count"]
            expired = await self.claims.count_documents({"expires_at": {"$ne": None, "$lte": now}})

        return ClaimStats(total=sum(by_scope.values()), expired=expired, by_scope=by_scope)

    async def conditional_increment(self, identifier: str, window: str, limit: int) -> bool:
        if limit <= 0:
            return False

        with datastore_errors("conditional_increment"):
            # A collision means the row exists: either another caller created it
            # first (retry once, the filter now matches) or its count is at the limit
            for attempt in range(2):
                try:
                    doc = await self.windows.find_one_and_update(
                        {"identifier": identifier, "window": window, "count": {"$lt": limit}},
                        {"$inc": {"count": 1}, "$setOnInsert": {"created_at": utc_now()}},
                        upsert=True,
                        return_document=ReturnDocument.AFTER,
                    )
                except DuplicateKeyError:
                    if attempt:
                        return False
                    continue
                return doc is not None
        return False

    async def window_count(self, identifier: str, window: str) -> int:
        with datastore_errors("window_count"):
            doc = await self.windows.find_one({"identifier": identifier, "window": window})
        return doc["count"] if doc else 0

    async def purge_windows(self, before: str) -> int:
        with datastore_errors("purge_windows"):
            result = await self.windows.delete_many({"window": {"$lt": before}})
        return result.deleted_count
