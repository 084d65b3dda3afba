"""
Dead Letter Repository
MongoDB persistence for quarantined jobs.
"""
from typing import Any, Optional, List
from motor.motor_asyncio import AsyncIOMotorDatabase
import datetime as dt

from eventgate.coordination.mongo import datastore_errors
from eventgate.models.dead_letter import TERMINAL_STATUSES, DeadLetterEntry
from eventgate.pipeline.dead_letter import DeadLetterBreakdown, DeadLetterRepository
from eventgate.repositories.base import BaseRepository

DEAD_LETTERS_COLLECTION = "dead_letters"


class DeadLetterMongoRepository(BaseRepository[DeadLetterEntry], DeadLetterRepository):
    """
    Repository for dead-letter entries.
    Status transitions are conditional updates, so concurrent replays of
    the same entry cannot both succeed.
    """

    def __init__(self, database: AsyncIOMotorDatabase):
        super().__init__(database, DEAD_LETTERS_COLLECTION, DeadLetterEntry)

    async def insert(self, entry: DeadLetterEntry) -> str:
        created = await self.create(entry)
        return created.id

    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        return await self.find_by_id(entry_id)

    async def list_entries(
        self,
        status: Optional[str] = None,
        reason: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[DeadLetterEntry]:
        query: dict[str, Any] = {}
        if status is not None:
            query["status"] = status
        if reason is not None:
            query["reason"] = reason

        return await self.find_many(
            query,
            limit=limit,
            skip=offset,
            sort=[("created_at", -1), ("_id", -1)],
        )

    async def transition(
        self,
        entry_id: str,
        from_status: str,
        to_status: str,
        fields: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        object_id = self._object_id(entry_id)
        if object_id is None:
            return False

        update = {
            "status": to_status,
            "updated_at": dt.datetime.now(dt.UTC),
            **(fields or {}),
            **{f"metadata.{key}": value for key, value in (metadata or {}).items()},
        }

        with datastore_errors("dead letter transition"):
            result = await self.collection.update_one(
                {"_id": object_id, "status": from_status},
                {"$set": update},
            )
        return result.modified_count > 0

    async def merge_metadata(self, entry_id: str, metadata: dict[str, Any]) -> bool:
        object_id = self._object_id(entry_id)
        if object_id is None or not metadata:
            return False

        with datastore_errors("dead letter metadata update"):
            result = await self.collection.update_one(
                {"_id": object_id},
                {"$set": {f"metadata.{key}": value for key, value in metadata.items()}},
            )
        return result.matched_count > 0

    async def delete_terminal_before(self, cutoff: dt.datetime) -> int:
        with datastore_errors("dead letter cleanup"):
            result = await self.collection.delete_many({
                "status": {"$in": list(TERMINAL_STATUSES)},
                "created_at": {"$lt": cutoff},
            })
        return result.deleted_count

    async def breakdown(self) -> List[DeadLetterBreakdown]:
        rows = []
        with datastore_errors("dead letter stats"):
            async for row in self.collection.aggregate([
                {"$group": {
                    "_id": {"status": "$status", "reason": "$reason"},
                    "count": {"$sum": 1},
                    "avg_attempts": {"$avg": "$attempts"},
                }},
            ]):
                rows.append(DeadLetterBreakdown(
                    status=row["_id"]["status"],
                    reason=row["_id"]["reason"],
                    count=row["count"],
                    avg_attempts=row["avg_attempts"] or 0.0,
                ))
        return rows
