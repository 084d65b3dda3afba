import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from eventgate.api.main import app


@pytest.fixture
def app_pipeline(pipeline):
    """Install the in-memory pipeline on app.state without running the lifespan."""
    app.state.pipeline = pipeline
    yield pipeline
    del app.state.pipeline


@pytest_asyncio.fixture
async def async_client(app_pipeline):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
