"""
FastAPI Application

Main entry point for the eventgate API.
Handles application lifecycle and router mounting.
"""
import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI
from loguru import logger

from eventgate.api.routes import admin_router, health_router, metrics_router, webhooks_router
from eventgate.api.routes.health import API_VERSION
from eventgate.bootstrap import build_pipeline
from eventgate.config import settings
from eventgate.repositories import db_manager
from eventgate.utils.observability import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle: startup and shutdown events.

    Startup:
    - Connect to MongoDB and create indexes (mongodb backend)
    - Wire the pipeline and schedule the maintenance job
    - Start background job worker

    Shutdown:
    - Stop background worker gracefully
    - Close the event bus
    - Disconnect from MongoDB
    """
    configure_logging()
    logger.info("Starting eventgate API server...")

    database = None
    if settings.coordination_backend == "mongodb":
        await db_manager.connect()
        await db_manager.create_indexes()
        database = db_manager.database

    pipeline = build_pipeline(database=database)
    await pipeline.ensure_maintenance_scheduled()

    # Store in app state for access in routes
    app.state.pipeline = pipeline

    # Start worker in background
    worker_task = asyncio.create_task(pipeline.worker.start())
    app.state.worker_task = worker_task

    logger.info("API server ready to receive webhooks")

    yield

    # Shutdown
    logger.info("Shutting down API server...")

    await pipeline.worker.stop()

    if not worker_task.done():
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            logger.info("Stopped job worker")

    await pipeline.events.close()

    if settings.coordination_backend == "mongodb":
        await db_manager.disconnect()

    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="eventgate API",
    description="Idempotent webhook ingestion and prioritized job pipeline",
    version=API_VERSION,
    lifespan=lifespan
)

# Mount routers
app.include_router(health_router)
app.include_router(webhooks_router)
app.include_router(metrics_router)
app.include_router(admin_router)
