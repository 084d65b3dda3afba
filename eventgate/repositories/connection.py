"""
MongoDB Connection Management
Singleton Motor client with connection pooling and lifecycle management.
"""
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from typing import Optional
from ..config import settings
from ..utils.observability import logger


class DatabaseManager:
    """
    Singleton MongoDB client manager with async Motor.
    Handles connection lifecycle, pooling, and graceful shutdown.
    """

    _instance: Optional["DatabaseManager"] = None
    _client: Optional[AsyncIOMotorClient] = None
    _database: Optional[AsyncIOMotorDatabase] = None

    def __new__(cls) -> "DatabaseManager":
        """Enforce singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def connect(self) -> None:
        """
        Initialize MongoDB connection with configured pool settings.
        Idempotent - safe to call multiple times.
        """
        if self._client:
            try:
                await self._client.admin.command("ping")
                logger.debug("Reusing healthy MongoDB connection")
                return
            except (RuntimeError, PyMongoError):
                logger.warning("Event loop closed or connection lost. Rebuilding client...")
                self._client = None
                self._database = None

        logger.info(
            f"Connecting to MongoDB database {settings.mongodb_database}",
            extra={
                "database": settings.mongodb_database,
                "max_pool_size": settings.mongodb_max_pool_size,
                "environment": settings.environment
            }
        )
        # tz_aware keeps datetimes comparable with the pipeline's UTC clock
        self._client = AsyncIOMotorClient(
            settings.mongodb_uri,
            maxPoolSize=settings.mongodb_max_pool_size,
            minPoolSize=settings.mongodb_min_pool_size,
            serverSelectionTimeoutMS=settings.mongodb_server_selection_timeout_ms,
            tz_aware=True,
        )

        self._database = self._client[settings.mongodb_database]

    async def disconnect(self) -> None:
        """
        Close MongoDB connection and cleanup resources.
        Idempotent - safe to call multiple times.
        """
        if self._client is None:
            logger.debug("MongoDB client already disconnected")
            return

        logger.info("Closing MongoDB connection")
        self._client.close()
        self._client = None
        self._database = None
        logger.info("MongoDB connection closed")

    @property
    def database(self) -> AsyncIOMotorDatabase:
        """
        Get the database instance.
        Raises RuntimeError if not connected.
        """
        if self._database is None:
            raise RuntimeError(
                "Database not connected. Call await db_manager.connect() first."
            )
        return self._database

    @property
    def client(self) -> AsyncIOMotorClient:
        """
        Get the Motor client instance.
        Raises RuntimeError if not connected.
        """
        if self._client is None:
            raise RuntimeError(
                "Database client not connected. Call await db_manager.connect() first."
            )
        return self._client

    async def create_indexes(self) -> None:
        """
        Create the unique indexes the coordination primitives rely on,
        plus query indexes for jobs and dead letters.
        Should be called during application startup.
        """
        db = self.database

        logger.info("Creating MongoDB indexes")

        # Idempotency claims: (key, scope) uniqueness is the claim itself
        await db.idempotency_keys.create_index(
            [("key", 1), ("scope", 1)], unique=True, name="idx_claim_unique"
        )
        await db.idempotency_keys.create_index("expires_at", name="idx_claim_expiry", sparse=True)

        # Rate-limit windows: one counter per (identifier, minute)
        await db.rate_limit_windows.create_index(
            [("identifier", 1), ("window", 1)], unique=True, name="idx_window_unique"
        )

        # Advisory locks use _id uniqueness; expired locks are reaped on acquire
        await db.coordination_locks.create_index("expires_at", name="idx_lock_expiry")

        # Jobs: claim order and argument-addressable lookups
        await db.jobs.create_index(
            [("status", 1), ("priority", 1), ("run_at", 1)], name="idx_job_claim"
        )
        await db.jobs.create_index(
            [("hook", 1), ("fingerprint", 1), ("status", 1)], name="idx_job_fingerprint"
        )
        await db.jobs.create_index([("group", 1), ("status", 1)], name="idx_job_lane")
        await db.jobs.create_index("finished_at", name="idx_job_finished", sparse=True)

        # Dead letters
        await db.dead_letters.create_index(
            [("status", 1), ("created_at", -1)], name="idx_dlq_status_created"
        )
        await db.dead_letters.create_index(
            [("reason", 1), ("status", 1)], name="idx_dlq_reason"
        )

        logger.info("MongoDB indexes created successfully")


# Singleton instance
db_manager = DatabaseManager()


async def get_database() -> AsyncIOMotorDatabase:
    """
    Dependency injection helper for repositories.
    Returns the connected database instance.
    """
    return db_manager.database
