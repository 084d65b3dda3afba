"""
Queue Processor

Base class every job handler derives from. `execute()` is the retry
orchestrator: it unwraps the envelope, checks the processor's circuit, runs
`process()` and decides between completion, retry and quarantine.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

from eventgate.config import get_settings
from eventgate.errors import (
    EnvelopeError,
    ErrorKind,
    InfrastructureError,
    ProcessingTimeoutError,
    classify,
    is_retryable,
)
from eventgate.models.dead_letter import DeadLetterReason
from eventgate.models.job import LEGACY_META_KEY, JobEnvelope, RetryOutcome
from eventgate.pipeline.dead_letter import DeadLetterQueue
from eventgate.pipeline.scheduler import PriorityScheduler
from eventgate.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from eventgate.utils.metrics import Timer, metrics
from eventgate.utils.observability import log_job_event, logger


class ProcessOutcome(str, Enum):
    """What execute() did with a job."""
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_SKIPPED = "retry_skipped"
    DEFERRED = "deferred"
    DEAD_LETTERED = "dead_lettered"


_RETRY_OUTCOMES = {
    RetryOutcome.RESCHEDULED: ProcessOutcome.RETRY_SCHEDULED,
    RetryOutcome.SKIPPED: ProcessOutcome.RETRY_SKIPPED,
    RetryOutcome.DEAD_LETTERED: ProcessOutcome.DEAD_LETTERED,
}


class QueueProcessor(ABC):
    """
    Base class for job processors.

    Subclasses implement `process(args)` and `get_hook_name()`; the retry
    policy hooks (`should_retry`, `get_max_retries`, `get_retry_delay`) and
    `is_circuit_open` may be overridden.

    If `process()` raises, the job is retried while the error is retryable
    and attempts remain; otherwise it is dead-lettered. Exceptions never
    escape execute() except when the pipeline itself cannot record the
    outcome (InfrastructureError), in which case the worker marks the job
    failed.

    Attributes:
        scheduler: Used for retries and circuit deferrals
        dead_letters: Quarantine for terminal failures
        circuit: Optional breaker guarding the downstream service
        timeout: Optional time budget for process(), in seconds
    """

    def __init__(
        self,
        scheduler: PriorityScheduler,
        dead_letters: DeadLetterQueue,
        circuit: Optional[CircuitBreaker] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.scheduler = scheduler
        self.dead_letters = dead_letters
        self.circuit = circuit
        self.timeout = timeout
        self.circuit_open_delay = settings.circuit_open_delay_seconds
        self.max_circuit_deferrals = settings.max_circuit_deferrals

    # ============================================
    # CONTRACT
    # ============================================

    @abstractmethod
    async def process(self, args: dict[str, Any]) -> None:
        """Handle the job's user arguments. Raise to signal failure."""

    @abstractmethod
    def get_hook_name(self) -> str:
        """Hook this processor is registered under."""

    def get_name(self) -> str:
        return type(self).__name__

    def should_retry(self, error: BaseException) -> bool:
        return is_retryable(error)

    def get_max_retries(self) -> int:
        return self.scheduler.default_max_retries

    def get_retry_delay(self, attempt: int) -> int:
        return self.scheduler.retry_delay(attempt)

    async def is_circuit_open(self) -> bool:
        if self.circuit is None:
            return False
        return await self.circuit.is_open()

    # ============================================
    # ORCHESTRATION
    # ============================================

    async def execute(self, payload: Any) -> ProcessOutcome:
        """
        Run one job end to end.

        Args:
            payload: Raw job payload (v2 envelope or legacy map)

        Returns:
            What happened to the job

        Raises:
            InfrastructureError: The retry or deferral could not be scheduled
        """
        hook = self.get_hook_name()

        try:
            envelope = JobEnvelope.unwrap(payload)
        except EnvelopeError as e:
            logger.error(
                f"Invalid payload for {hook}: {e}",
                extra={"hook": hook, "payload_type": type(payload).__name__}
            )
            raw = payload if isinstance(payload, dict) else {"raw_payload": repr(payload)}
            await self._dead_letter(hook, raw, DeadLetterReason.EXCEPTION, str(e))
            return self._record(hook, ProcessOutcome.DEAD_LETTERED)

        attempt = envelope.attempt

        if await self.is_circuit_open():
            return await self._defer_for_circuit(hook, envelope)

        logger.debug(f"Processing {hook} attempt {attempt}")

        try:
            with Timer(metrics.job_duration, hook=hook) as timer:
                await self._run(envelope.args)
        except CircuitOpenError:
            return await self._defer_for_circuit(hook, envelope)
        except Exception as error:
            return await self._handle_failure(hook, envelope, error)

        log_job_event(hook, "completed", attempt=attempt, duration_ms=timer.duration * 1000)
        return self._record(hook, ProcessOutcome.COMPLETED)

    async def _run(self, args: dict[str, Any]) -> None:
        async def invoke() -> None:
            if self.timeout is None:
                await self.process(args)
                return
            try:
                await asyncio.wait_for(self.process(args), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise ProcessingTimeoutError(
                    f"{self.get_name()} exceeded {self.timeout}s"
                ) from e

        if self.circuit is not None:
            await self.circuit.call(invoke)
        else:
            await invoke()

    async def _handle_failure(
        self,
        hook: str,
        envelope: JobEnvelope,
        error: Exception,
    ) -> ProcessOutcome:
        attempt = envelope.attempt
        max_retries = self.get_max_retries()
        kind = classify(error)

        logger.error(
            f"{self.get_name()} failed on attempt {attempt}/{max_retries}: {error}",
            extra={"hook": hook, "attempt": attempt, "error_kind": kind.value}
        )

        if self.should_retry(error):
            # Exhausted retries are dead-lettered by the scheduler under the retry claim
            outcome = await self.scheduler.retry(
                hook,
                envelope,
                attempt,
                max_retries=max_retries,
                delay=self.get_retry_delay(attempt),
                error=str(error),
            )
            if outcome == RetryOutcome.FAILED:
                raise InfrastructureError(f"Could not reschedule {hook} attempt {attempt}")
            return self._record(hook, _RETRY_OUTCOMES[RetryOutcome(outcome)])

        await self._dead_letter(
            hook,
            self._with_meta(envelope),
            self._dead_letter_reason(error, kind, attempt, max_retries),
            str(error),
            {"error_kind": kind.value},
        )
        return self._record(hook, ProcessOutcome.DEAD_LETTERED)

    @staticmethod
    def _dead_letter_reason(
        error: BaseException,
        kind: ErrorKind,
        attempt: int,
        max_retries: int,
    ) -> DeadLetterReason:
        if attempt >= max_retries:
            return DeadLetterReason.MAX_RETRIES
        if isinstance(error, ProcessingTimeoutError) or kind == ErrorKind.TIMEOUT:
            return DeadLetterReason.TIMEOUT
        if kind == ErrorKind.VALIDATION:
            return DeadLetterReason.VALIDATION
        return DeadLetterReason.EXCEPTION

    async def _defer_for_circuit(self, hook: str, envelope: JobEnvelope) -> ProcessOutcome:
        deferrals = int((envelope.meta.model_extra or {}).get("circuit_deferrals", 0)) + 1

        if deferrals > self.max_circuit_deferrals:
            logger.error(
                f"{hook} deferred {deferrals - 1} times with the circuit open, giving up",
                extra={"hook": hook, "attempt": envelope.attempt}
            )
            await self._dead_letter(
                hook,
                self._with_meta(envelope),
                DeadLetterReason.CIRCUIT_OPEN,
                f"Circuit open after {deferrals - 1} deferrals",
            )
            return self._record(hook, ProcessOutcome.DEAD_LETTERED)

        job_id = await self.scheduler.reschedule(
            hook, envelope, self.circuit_open_delay, {"circuit_deferrals": deferrals}
        )
        if job_id is None:
            raise InfrastructureError(f"Could not defer {hook} while the circuit is open")

        metrics.circuit_deferrals.inc(hook=hook)
        log_job_event(
            hook, "circuit_deferred",
            attempt=envelope.attempt,
            delay_seconds=self.circuit_open_delay,
            deferrals=deferrals,
        )
        return self._record(hook, ProcessOutcome.DEFERRED)

    async def _dead_letter(
        self,
        hook: str,
        args: dict[str, Any],
        reason: DeadLetterReason,
        error: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        logger.warning(
            f"Moving {hook} to dead letter queue ({reason.value})",
            extra={"hook": hook, "reason": reason.value, "error": error}
        )
        await self.dead_letters.push(
            hook, args, reason, error=error, metadata={"processor": self.get_name(), **(metadata or {})}
        )

    @staticmethod
    def _with_meta(envelope: JobEnvelope) -> dict[str, Any]:
        return {**envelope.args, LEGACY_META_KEY: envelope.meta.model_dump(exclude_none=True)}

    @staticmethod
    def _record(hook: str, outcome: ProcessOutcome) -> ProcessOutcome:
        metrics.jobs_processed.inc(hook=hook, outcome=outcome.value)
        return outcome


class ProcessorRegistry:
    """Maps hooks to their processors."""

    def __init__(self):
        self._processors: dict[str, QueueProcessor] = {}

    def register(self, processor: QueueProcessor) -> None:
        hook = processor.get_hook_name()
        if hook in self._processors:
            raise ValueError(f"A processor is already registered for hook '{hook}'")
        self._processors[hook] = processor
        logger.debug(f"Registered {processor.get_name()} for {hook}")

    def get(self, hook: str) -> Optional[QueueProcessor]:
        return self._processors.get(hook)

    def hooks(self) -> list[str]:
        return sorted(self._processors)

    def __contains__(self, hook: str) -> bool:
        return hook in self._processors

    def __len__(self) -> int:
        return len(self._processors)
