"""
Pipeline Error Taxonomy

Every failure a processor can raise falls into one of a closed set of kinds.
The retry orchestrator reads `retryable` to decide between rescheduling and
quarantine; nothing else in the pipeline makes that decision.
"""
import asyncio
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""
    VALIDATION = "validation"
    DOMAIN = "domain"
    INFRASTRUCTURE = "infrastructure"
    TIMEOUT = "timeout"
    UNCLASSIFIED = "unclassified"


class PipelineError(Exception):
    """
    Base class for all typed pipeline errors.

    Attributes:
        kind: Failure kind used for classification
        retryable: Whether the orchestrator may reschedule the job
        context: Extra structured data for logs and dead-letter metadata
    """

    kind: ErrorKind = ErrorKind.UNCLASSIFIED
    retryable: bool = True

    def __init__(self, message: str = "", context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class PayloadValidationError(PipelineError):
    """Job arguments are malformed. Never retried."""
    kind = ErrorKind.VALIDATION
    retryable = False


class DomainError(PipelineError):
    """Business rule rejected the job. Never retried."""
    kind = ErrorKind.DOMAIN
    retryable = False


class InfrastructureError(PipelineError):
    """Datastore, network or downstream API failure. Retried."""
    kind = ErrorKind.INFRASTRUCTURE
    retryable = True


class ProcessingTimeoutError(InfrastructureError):
    """Processing exceeded its time budget. Retried."""
    kind = ErrorKind.TIMEOUT


class EnvelopeError(PayloadValidationError):
    """Job payload is not a decodable envelope."""


class SerializationError(PipelineError):
    """Value could not be encoded as strict JSON; storing it would lose data."""
    kind = ErrorKind.VALIDATION
    retryable = False


class CorruptedEntryError(PipelineError):
    """Stored dead-letter arguments could not be decoded."""
    kind = ErrorKind.VALIDATION
    retryable = False


def classify(error: BaseException) -> ErrorKind:
    """
    Map any exception onto the closed taxonomy.

    Python's own argument errors (ValueError, TypeError, KeyError) count as
    validation failures; bare timeouts count as timeouts.
    """
    if isinstance(error, PipelineError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ErrorKind.VALIDATION
    return ErrorKind.UNCLASSIFIED


def is_retryable(error: BaseException) -> bool:
    """Default retry decision: typed errors carry their own flag, unknown errors retry."""
    if isinstance(error, PipelineError):
        return error.retryable
    return classify(error) not in (ErrorKind.VALIDATION, ErrorKind.DOMAIN)
