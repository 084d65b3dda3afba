"""
Tests for MongoCoordinationStore window counters, against a mocked collection.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from pymongo.errors import DuplicateKeyError

from eventgate.coordination.mongo import WINDOWS_COLLECTION, MongoCoordinationStore


@pytest.fixture
def windows():
    return MagicMock()


@pytest.fixture
def store(windows):
    collections = {WINDOWS_COLLECTION: windows}
    database = MagicMock()
    database.__getitem__.side_effect = lambda name: collections.get(name, MagicMock())
    return MongoCoordinationStore(database)


class TestConditionalIncrement:

    @pytest.mark.asyncio
    async def test_lost_insert_race_is_retried(self, store, windows):
        windows.find_one_and_update = AsyncMock(side_effect=[
            DuplicateKeyError("E11000 duplicate key"),
            {"identifier": "queue_urgent", "window": "2026-03-02 12:00", "count": 2},
        ])

        assert await store.conditional_increment("queue_urgent", "2026-03-02 12:00", 5) is True
        assert windows.find_one_and_update.await_count == 2

    @pytest.mark.asyncio
    async def test_full_window_is_refused(self, store, windows):
        windows.find_one_and_update = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))

        assert await store.conditional_increment("queue_urgent", "2026-03-02 12:00", 5) is False
        assert windows.find_one_and_update.await_count == 2

    @pytest.mark.asyncio
    async def test_zero_limit_never_touches_the_store(self, store, windows):
        windows.find_one_and_update = AsyncMock()

        assert await store.conditional_increment("queue_bulk", "2026-03-02 12:00", 0) is False
        windows.find_one_and_update.assert_not_awaited()
