"""
Tautulli history client for plexcost.

Fetches recent playback history and keeps only the plays that were watched
far enough to count as "watched".
"""

import logging
from datetime import date
from typing import Any

import httpx

from .models import WatchEvent

logger = logging.getLogger(__name__)

DEFAULT_WATCHED_THRESHOLD = 0.8
DEFAULT_PAGE_LENGTH = 10000


def filter_watched(
    rows: list[dict[str, Any]],
    threshold: float = DEFAULT_WATCHED_THRESHOLD,
) -> list[WatchEvent]:
    """Map raw history rows to WatchEvents, dropping partial plays."""
    events = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            watched = float(row.get("watched_status") or 0)
        except (TypeError, ValueError):
            continue
        if watched < threshold:
            continue

        guid = row.get("guid")
        if not guid:
            continue
        try:
            events.append(
                WatchEvent(
                    user_id=int(row["user_id"]),
                    user_name=row.get("user") or "",
                    content_id=str(guid),
                    stopped_at=int(row.get("stopped") or 0),
                )
            )
        except (KeyError, TypeError, ValueError):
            logger.debug(f"Ignoring malformed history row: {row}")
    return events


class HistoryClient:
    """Client for the Tautulli get_history API command."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        watched_threshold: float = DEFAULT_WATCHED_THRESHOLD,
        log: logging.Logger | None = None,
    ):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.watched_threshold = watched_threshold
        self.log = log or logger

    async def fetch(self, after: date, length: int = DEFAULT_PAGE_LENGTH) -> list[WatchEvent]:
        """
        Fetch watched plays that stopped after the given date.

        Raises:
            httpx.HTTPError: If Tautulli can't be reached or returns an error
            ValueError: If the response is not the expected JSON shape
        """
        params = {
            "apikey": self.api_key,
            "cmd": "get_history",
            "after": after.isoformat(),
            "length": str(length),
        }
        self.log.info(f"Fetching Tautulli history after {after.isoformat()}")

        response = await self.http_client.get(f"{self.base_url}/api/v2", params=params)
        response.raise_for_status()

        payload = response.json()
        body = payload.get("response") if isinstance(payload, dict) else None
        data = body.get("data") if isinstance(body, dict) else None
        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise ValueError("Unexpected Tautulli history response")

        events = filter_watched(rows, self.watched_threshold)
        self.log.info(f"Tautulli returned {len(rows)} records, {len(events)} watched.")
        return events
