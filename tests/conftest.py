import pytest
import datetime as dt

from eventgate.bootstrap import build_pipeline
from eventgate.config import get_settings
from eventgate.utils.metrics import metrics


class FakeClock:
    """Settable UTC clock shared by the pipeline components under test."""

    def __init__(self, start: dt.datetime | None = None):
        self.now = start or dt.datetime(2026, 3, 2, 12, 0, 0, tzinfo=dt.UTC)

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += dt.timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Every test starts from an empty metrics registry."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pipeline(clock):
    """Fully wired in-memory pipeline driven by the fake clock."""
    settings = get_settings().model_copy(update={"coordination_backend": "memory"})
    return build_pipeline(settings=settings, clock=clock)
