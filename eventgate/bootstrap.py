"""
Pipeline Wiring

Builds every pipeline component on either the in-memory backends (tests,
single node) or MongoDB, and registers the standard processors.
"""
from dataclasses import dataclass
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from eventgate.config import Settings, get_settings
from eventgate.errors import DomainError, PayloadValidationError
from eventgate.coordination import CoordinationStore, InMemoryCoordinationStore, MongoCoordinationStore
from eventgate.executor import InMemoryExecutorBackend, JobExecutorBackend, MongoExecutorBackend
from eventgate.ingestion import IngestionService
from eventgate.models.job import Priority
from eventgate.pipeline import (
    DeadLetterQueue,
    EventBus,
    IdempotencyService,
    InMemoryDeadLetterRepository,
    JobMonitor,
    JobWorker,
    PriorityScheduler,
    ProcessorRegistry,
    RateLimiter,
)
from eventgate.pipeline.dead_letter import DeadLetterRepository
from eventgate.processors import (
    MAINTENANCE_HOOK,
    DownstreamHandler,
    ErrorProcessor,
    MaintenanceProcessor,
    MessageProcessor,
    PaymentProcessor,
    StatusProcessor,
)
from eventgate.repositories import DeadLetterMongoRepository
from eventgate.utils.circuit_breaker import CircuitBreaker
from eventgate.utils.observability import logger
from eventgate.utils.time import Clock, utc_now

WHATSAPP_API_CIRCUIT = "whatsapp_api"


@dataclass
class Pipeline:
    """All wired components, as stored on app.state."""
    store: CoordinationStore
    backend: JobExecutorBackend
    events: EventBus
    idempotency: IdempotencyService
    rate_limiter: RateLimiter
    scheduler: PriorityScheduler
    dead_letters: DeadLetterQueue
    registry: ProcessorRegistry
    ingestion: IngestionService
    worker: JobWorker
    monitor: JobMonitor
    circuits: dict[str, CircuitBreaker]

    async def ensure_maintenance_scheduled(self, interval: Optional[int] = None) -> Optional[str]:
        """Schedule the recurring maintenance job unless one is already pending."""
        if await self.scheduler.is_pending(MAINTENANCE_HOOK):
            return None
        interval = interval or get_settings().maintenance_interval_seconds
        return await self.scheduler.schedule_recurring(
            MAINTENANCE_HOOK, {}, interval=interval, priority=Priority.MAINTENANCE
        )


def build_pipeline(
    database: Optional[AsyncIOMotorDatabase] = None,
    settings: Optional[Settings] = None,
    handlers: Optional[dict[str, DownstreamHandler]] = None,
    clock: Clock = utc_now,
) -> Pipeline:
    """
    Wire the pipeline.

    Args:
        database: Connected Motor database; required for the mongodb backend
        settings: Settings to use (defaults to get_settings())
        handlers: Optional downstream handler per hook
        clock: Time source shared by every component

    Returns:
        Wired pipeline (the worker is not started)
    """
    settings = settings or get_settings()
    handlers = handlers or {}

    store: CoordinationStore
    backend: JobExecutorBackend
    repository: DeadLetterRepository

    if settings.coordination_backend == "mongodb":
        if database is None:
            raise ValueError("The mongodb coordination backend needs a connected database")
        store = MongoCoordinationStore(database)
        backend = MongoExecutorBackend(database)
        repository = DeadLetterMongoRepository(database)
    else:
        store = InMemoryCoordinationStore()
        backend = InMemoryExecutorBackend(clock=clock)
        repository = InMemoryDeadLetterRepository()

    events = EventBus()
    idempotency = IdempotencyService(store, settings.idempotency_default_ttl_hours, clock=clock)
    rate_limiter = RateLimiter(store, settings.rate_limit_window_retention_minutes, clock=clock)
    scheduler = PriorityScheduler(backend, store, idempotency, rate_limiter, clock=clock)
    dead_letters = DeadLetterQueue(repository, scheduler, events, settings.dlq_retention_days, clock=clock)
    scheduler.attach_dead_letter_queue(dead_letters)

    api_circuit = CircuitBreaker(
        WHATSAPP_API_CIRCUIT,
        failure_threshold=settings.circuit_breaker_failure_threshold,
        recovery_timeout=settings.circuit_breaker_recovery_timeout,
        half_open_max_calls=settings.circuit_breaker_half_open_max_calls,
        excluded_exceptions=(PayloadValidationError, DomainError),
        clock=clock,
    )

    registry = ProcessorRegistry()
    registry.register(MessageProcessor(
        scheduler, dead_letters, events, handlers.get(MessageProcessor.hook_name), circuit=api_circuit
    ))
    registry.register(StatusProcessor(scheduler, dead_letters, events, handlers.get(StatusProcessor.hook_name)))
    registry.register(ErrorProcessor(
        scheduler, dead_letters, events, handlers.get(ErrorProcessor.hook_name), api_circuit=api_circuit
    ))
    registry.register(PaymentProcessor(scheduler, dead_letters, events, handlers.get(PaymentProcessor.hook_name)))
    registry.register(MaintenanceProcessor(scheduler, dead_letters, idempotency, settings.job_retention_days, clock))

    worker = JobWorker(
        backend,
        scheduler,
        registry,
        max_concurrent=settings.worker_max_concurrent,
        poll_interval=settings.worker_poll_interval,
        batch_size=settings.worker_batch_size,
        running_timeout=settings.job_running_timeout_seconds,
        clock=clock,
    )

    logger.info(
        f"Pipeline wired on {settings.coordination_backend} backend",
        extra={"backend": settings.coordination_backend, "hooks": registry.hooks()}
    )

    return Pipeline(
        store=store,
        backend=backend,
        events=events,
        idempotency=idempotency,
        rate_limiter=rate_limiter,
        scheduler=scheduler,
        dead_letters=dead_letters,
        registry=registry,
        ingestion=IngestionService(idempotency, scheduler),
        worker=worker,
        monitor=JobMonitor(scheduler, dead_letters, clock=clock),
        circuits={api_circuit.name: api_circuit},
    )
