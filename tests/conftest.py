"""Shared pytest fixtures for plexcost tests."""

import httpx
import pytest

from plexcost.models import WatchEvent

# 2024-01-01T00:00:00Z and 2024-02-01T00:00:00Z
JAN_2024 = 1704067200
FEB_2024 = 1706745600


def make_event(
    user_id: int = 1,
    content_id: str = "plex://movie/abc",
    stopped_at: int = JAN_2024 + 3600,
    user_name: str = "alice",
) -> WatchEvent:
    """Build a watch event with sensible defaults."""
    return WatchEvent(
        user_id=user_id,
        user_name=user_name,
        content_id=content_id,
        stopped_at=stopped_at,
    )


def availability_payload(*offers: dict) -> dict:
    """Wrap offers the way the Discover availabilities endpoint does."""
    return {"MediaContainer": {"size": len(offers), "Availability": list(offers)}}


@pytest.fixture
def records_path(tmp_path):
    return tmp_path / "data.json"


@pytest.fixture
def savings_path(tmp_path):
    return tmp_path / "savings.json"


@pytest.fixture
def sleeps():
    """Recorded backoff waits."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    """Async sleep replacement that records the delay instead of waiting."""

    async def _sleep(seconds):
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def mock_http():
    """Build an httpx.AsyncClient backed by a handler function."""

    def _make(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make
