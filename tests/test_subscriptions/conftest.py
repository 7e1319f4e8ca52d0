"""Shared fixtures for subscriptions tests."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from src.subscriptions.schemas import SourceKind, Subscription


@pytest.fixture
def mock_database() -> AsyncMock:
    """Mock Database instance matching the Database API."""
    db = AsyncMock()
    db.fetch = AsyncMock(return_value=[])
    db.fetchval = AsyncMock(return_value=None)
    db.fetchrow = AsyncMock(return_value=None)
    db.execute = AsyncMock(return_value="UPDATE 1")
    return db


@pytest.fixture
def feed_subscription() -> Subscription:
    """A sample feed subscription."""
    return Subscription(
        kind=SourceKind.FEED,
        room_id="!room:example.org",
        identity="https://blog.example.org/feed.xml",
        watermark=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def sample_db_row() -> dict:
    """A dict mimicking an asyncpg Record for a GitHub subscription."""
    return {
        "id": 7,
        "kind": "github",
        "room_id": "!room:example.org",
        "identity": "octocat",
        "credential": "ghp_secret",
        "watermark": datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2024, 1, 2, tzinfo=timezone.utc),
    }
