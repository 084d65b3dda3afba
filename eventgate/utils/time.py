"""
Clock helpers shared by the coordination primitives.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]

# Minute-granularity rate-limit window key, e.g. "2026-10-18 14:05"
WINDOW_FORMAT = "%Y-%m-%d %H:%M"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def minute_window(moment: datetime) -> str:
    """Return the rate-limit window key that contains `moment`."""
    return moment.astimezone(timezone.utc).strftime(WINDOW_FORMAT)
