"""
Structured Logging & Observability
Production-grade logging that's both human-readable and machine-parseable.
"""
import sys
from loguru import logger
from typing import Any, Dict
from eventgate.config import get_settings


def configure_logging():
    """
    Configure loguru for production observability.

    In development: Human-readable colorized output
    In production: Structured JSON logs for ingestion (ELK, Datadog, etc.)
    """
    settings = get_settings()

    # Remove default handler
    logger.remove()

    if not settings.enable_structured_logging:
        logger.add(
            sys.stderr,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "{message}"
            ),
            level=settings.log_level,
            colorize=True,
        )
    else:
        logger.add(
            sys.stderr,
            format="{message}",
            level=settings.log_level,
            serialize=True,  # Output as JSON
        )

    logger.info(f"Logging configured: level={settings.log_level}, structured={settings.enable_structured_logging}")


def log_job_event(
    hook: str,
    action: str,
    attempt: int | None = None,
    duration_ms: float | None = None,
    **context
):
    """
    Structured logging for job lifecycle transitions.

    Args:
        hook: Job hook name (e.g., "process_inbound_message")
        action: What happened (e.g., "completed", "retry_scheduled", "dead_lettered")
        attempt: Attempt number of the job when the event happened
        duration_ms: Processing time in milliseconds
        **context: Additional context (priority, reason, error, ...)

    Example:
        >>> log_job_event(
        ...     hook="process_inbound_message",
        ...     action="retry_scheduled",
        ...     attempt=2,
        ...     delay_seconds=90,
        ... )
    """
    log_data = {
        "event_type": "job",
        "hook": hook,
        "action": action,
    }

    if attempt is not None:
        log_data["attempt"] = attempt

    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 2)

    log_data.update(context)

    logger.bind(**log_data).info(f"Job {hook} | {action}")


def log_pipeline_event(
    event_type: str,
    key: str,
    **details: Dict[str, Any]
):
    """
    Log operator-relevant pipeline events (ingestion, quarantine, replay).

    Args:
        event_type: Type of event (e.g., "event_ingested", "dead_letter_replayed")
        key: Identifier the event is about (idempotency key, entry id, ...)
        **details: Event-specific data
    """
    log_data = {
        "event_type": event_type,
        "key": key,
        **details
    }

    logger.bind(**log_data).success(f"Pipeline Event: {event_type}")
