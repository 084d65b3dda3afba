"""
MongoDB Executor Backend

Durable job store shared by every worker. Claiming uses
find_one_and_update so each due job is handed to exactly one worker.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from eventgate.coordination.mongo import datastore_errors
from eventgate.executor.base import (
    JobExecutorBackend,
    JobStatus,
    LaneStats,
    ScheduledJob,
    ThroughputStats,
)
from eventgate.utils.time import utc_now

JOBS_COLLECTION = "jobs"


class MongoExecutorBackend(JobExecutorBackend):
    """
    Executor backend persisting jobs in the `jobs` collection.

    Requires the indexes created by DatabaseManager.create_indexes().
    """

    def __init__(self, database: AsyncIOMotorDatabase):
        self.collection = database[JOBS_COLLECTION]

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
        doc = {
            "hook": hook,
            "group": group,
            "priority": priority,
            "payload": payload,
            "fingerprint": fingerprint,
            "status": JobStatus.PENDING.value,
            "run_at": run_at,
            "interval_seconds": interval_seconds,
            "created_at": utc_now(),
        }
        with datastore_errors("schedule_at"):
            result = await self.collection.insert_one(doc)
        return str(result.inserted_id)

    async def cancel_by_hook(self, hook: str, fingerprint: Optional[str] = None) -> int:
        query: dict[str, Any] = {"hook": hook}
        if fingerprint is not None:
            query["fingerprint"] = fingerprint
        return await self._cancel(query)

    async def cancel_lane(self, group: str) -> int:
        return await self._cancel({"group": group})

    async def has_pending(self, hook: str, fingerprint: Optional[str] = None) -> bool:
        query: dict[str, Any] = {
            "hook": hook,
            "status": {"$in": [JobStatus.PENDING.value, JobStatus.RUNNING.value]},
        }
        if fingerprint is not None:
            query["fingerprint"] = fingerprint
        with datastore_errors("has_pending"):
            doc = await self.collection.find_one(query, projection={"_id": 1})
        return doc is not None

    async def claim_due(self, limit: int, now: Optional[datetime] = None) -> list[ScheduledJob]:
        now = now or utc_now()
        claimed: list[ScheduledJob] = []

        with datastore_errors("claim_due"):
            for _ in range(limit):
                doc = await self.collection.find_one_and_update(
                    {"status": JobStatus.PENDING.value, "run_at": {"$lte": now}},
                    {"$set": {"status": JobStatus.RUNNING.value, "started_at": now}},
                    sort=[("priority", 1), ("run_at", 1)],
                    return_document=ReturnDocument.AFTER,
                )
                if doc is None:
                    break
                claimed.append(self._to_job(doc))

        return claimed

    async def complete(self, job_id: str) -> None:
        await self._finish(job_id, JobStatus.COMPLETED, None)

    async def fail(self, job_id: str, error: str) -> None:
        await self._finish(job_id, JobStatus.FAILED, error)

    async def defer(self, job_id: str, run_at: datetime) -> None:
        with datastore_errors("defer"):
            await self.collection.update_one(
                {"_id": ObjectId(job_id)},
                {"$set": {"status": JobStatus.PENDING.value, "run_at": run_at, "started_at": None}},
            )

    async def reset_stale(self, before: datetime, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        with datastore_errors("reset_stale"):
            result = await self.collection.update_many(
                {"status": JobStatus.RUNNING.value, "started_at": {"$lte": before}},
                {"$set": {"status": JobStatus.PENDING.value, "run_at": now, "started_at": None}},
            )
        return result.modified_count

    async def stats(self) -> dict[str, LaneStats]:
        lanes: dict[str, LaneStats] = {}
        with datastore_errors("stats"):
            async for row in self.collection.aggregate([
                {"$group": {"_id": {"group": "$group", "status": "$status"}, "count": {"$sum": 1}}},
            ]):
                lane = lanes.setdefault(row["_id"]["group"], LaneStats())
                status = row["_id"]["status"]
                if status in LaneStats.model_fields:
                    setattr(lane, status, row["count"])
        return lanes

    async def pending_count(self, group: Optional[str] = None) -> int:
        query: dict[str, Any] = {"status": JobStatus.PENDING.value}
        if group is not None:
            query["group"] = group
        with datastore_errors("pending_count"):
            return await self.collection.count_documents(query)

    async def throughput(self, since: datetime) -> ThroughputStats:
        with datastore_errors("throughput"):
            completed = await self.collection.count_documents(
                {"status": JobStatus.COMPLETED.value, "finished_at": {"$gte": since}}
            )
            failed = await self.collection.count_documents(
                {"status": JobStatus.FAILED.value, "finished_at": {"$gte": since}}
            )
            avg_wait_ms = 0.0
            async for row in self.collection.aggregate([
                {"$match": {
                    "status": JobStatus.COMPLETED.value,
                    "finished_at": {"$gte": since},
                    "started_at": {"$ne": None},
                }},
                {"$group": {"_id": None, "avg_wait": {"$avg": {"$subtract": ["$started_at", "$run_at"]}}}},
            ]):
                avg_wait_ms = row["avg_wait"] or 0.0

        return ThroughputStats(completed=completed, failed=failed, avg_wait_seconds=avg_wait_ms / 1000)

    async def purge_finished(self, before: datetime) -> int:
        with datastore_errors("purge_finished"):
            result = await self.collection.delete_many({
                "status": {"$in": [
                    JobStatus.COMPLETED.value,
                    JobStatus.FAILED.value,
                    JobStatus.CANCELED.value,
                ]},
                "finished_at": {"$lt": before},
            })
        return result.deleted_count

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        hook: Optional[str] = None,
        limit: int = 50,
    ) -> list[ScheduledJob]:
        query: dict[str, Any] = {}
        if status is not None:
            query["status"] = JobStatus(status).value
        if hook is not None:
            query["hook"] = hook

        with datastore_errors("list_jobs"):
            cursor = self.collection.find(query).sort("created_at", -1).limit(limit)
            docs = await cursor.to_list(length=limit)
        return [self._to_job(doc) for doc in docs]

    async def _cancel(self, query: dict[str, Any]) -> int:
        with datastore_errors("cancel"):
            result = await self.collection.update_many(
                {**query, "status": JobStatus.PENDING.value},
                {"$set": {"status": JobStatus.CANCELED.value, "finished_at": utc_now()}},
            )
        return result.modified_count

    async def _finish(self, job_id: str, status: JobStatus, error: Optional[str]) -> None:
        now = utc_now()
        with datastore_errors("finish"):
            doc = await self.collection.find_one_and_update(
                {"_id": ObjectId(job_id)},
                {"$set": {"status": status.value, "finished_at": now, "last_error": error}},
                return_document=ReturnDocument.AFTER,
            )
            if doc and doc.get("interval_seconds"):
                await self.collection.insert_one({
                    "hook": doc["hook"],
                    "group": doc["group"],
                    "priority": doc["priority"],
                    "payload": doc["payload"],
                    "fingerprint": doc["fingerprint"],
                    "status": JobStatus.PENDING.value,
                    "run_at": now + timedelta(seconds=doc["interval_seconds"]),
                    "interval_seconds": doc["interval_seconds"],
                    "created_at": now,
                })

    @staticmethod
    def _to_job(doc: dict[str, Any]) -> ScheduledJob:
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return ScheduledJob.model_validate(doc)
