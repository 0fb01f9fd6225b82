"""
Record store for plexcost.

Keeps every priced watch event per user in a JSON document (data.json) and
remembers which (user, title) pairs were already processed, so each cycle only
prices what is new.
"""

import json
import logging
import os
import tempfile
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Any

from .models import (
    PricedRecord,
    PricingSummary,
    UserRecordBucket,
    WatchEvent,
    records_from_document,
    records_to_document,
)

logger = logging.getLogger(__name__)

ResolvePricing = Callable[[str], Awaitable[PricingSummary]]


class PersistenceError(Exception):
    """A durable document could not be read or written."""


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write JSON to path so readers only ever see the old or the new document.

    The payload goes to a temp file in the same directory, is fsynced, then
    renamed over the target. On any failure the target is left untouched.

    Raises:
        PersistenceError: If the document could not be written
    """
    path = Path(path)
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=str(path.parent),
            prefix=path.name + ".",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_name = tmp.name
            json.dump(data, tmp, ensure_ascii=False, indent=2)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except (OSError, TypeError, ValueError) as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                logger.warning(f"Could not remove temp file {tmp_name}")


def read_json(path: Path) -> Any:
    """Read a JSON document, keeping fractional numbers as Decimal."""
    with open(path, encoding="utf-8") as f:
        return json.load(f, parse_float=Decimal)


def load_record_document(path: Path) -> dict[int, UserRecordBucket]:
    """
    Read a record document for consumers other than the store itself.

    Returns:
        Buckets keyed by user id; empty if the document does not exist yet

    Raises:
        PersistenceError: If the document exists but cannot be read
    """
    path = Path(path)
    if not path.exists():
        return {}
    try:
        return records_from_document(read_json(path))
    except (OSError, ValueError, KeyError, TypeError, ArithmeticError) as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e


@dataclass(frozen=True)
class IngestResult:
    """Counts from one ingest call."""

    written: int = 0
    skipped: int = 0
    failed: int = 0  # subset of skipped: pricing failed, eligible for retry


class RecordStore:
    """
    Append-only store of priced watch records.

    State is loaded once at startup and grows across cycles. The set of known
    (user_id, content_id) keys always equals the records held in the buckets.
    """

    def __init__(self, path: Path, log: logging.Logger | None = None):
        self.path = Path(path)
        self.log = log or logger
        self._buckets: dict[int, UserRecordBucket] = {}
        self._known: set[tuple[int, str]] = set()

    @property
    def buckets(self) -> Mapping[int, UserRecordBucket]:
        """Read-only view of the per-user buckets."""
        return MappingProxyType(self._buckets)

    @property
    def known_keys(self) -> frozenset[tuple[int, str]]:
        return frozenset(self._known)

    @property
    def record_count(self) -> int:
        return len(self._known)

    def __contains__(self, key: tuple[int, str]) -> bool:
        return key in self._known

    def load(self) -> None:
        """Restore state from disk; a missing or unreadable file means empty."""
        self._buckets = {}
        self._known = set()

        if not self.path.exists():
            self.log.warning(f"{self.path} not found; starting with empty dataset.")
            return

        try:
            buckets = records_from_document(read_json(self.path))
        except (OSError, ValueError, KeyError, TypeError, ArithmeticError) as e:
            self.log.warning(f"Failed to read {self.path}: {e}; starting with empty dataset.")
            return

        for user_id, bucket in buckets.items():
            unique = []
            for record in bucket.records:
                key = (user_id, record.content_id)
                if key in self._known:
                    self.log.debug(f"Dropping duplicate stored record {key}")
                    continue
                self._known.add(key)
                unique.append(record)
            self._buckets[user_id] = UserRecordBucket(bucket.user_name, unique)

        self.log.info(
            f"Loaded {len(self._buckets)} users and {len(self._known)} records "
            f"from {self.path}."
        )

    def save(self) -> None:
        """Persist the whole state atomically."""
        write_json_atomic(self.path, records_to_document(self._buckets))

    async def ingest(
        self,
        events: Iterable[WatchEvent],
        resolve_pricing: ResolvePricing,
    ) -> IngestResult:
        """
        Append new watch events, pricing each one, then persist.

        Events already known are skipped without a pricing call. An event whose
        pricing fails is skipped and left unknown so the next cycle retries it.

        Args:
            events: Watch events in arrival order
            resolve_pricing: Async callable returning a PricingSummary for a
                content id

        Returns:
            IngestResult with written and skipped counts

        Raises:
            PersistenceError: If the updated state could not be written
        """
        batch = self.dedupe(events)
        self.log.debug(f"Unique deduped records in this batch: {len(batch)}")

        written = skipped = failed = 0
        for event in batch:
            if event.key in self._known:
                skipped += 1
                continue

            try:
                summary = await resolve_pricing(event.content_id)
            except Exception as e:
                skipped += 1
                failed += 1
                self.log.error(
                    f"Skipping record User={event.user_id}, Guid={event.content_id} "
                    f"due to error: {e}"
                )
                continue

            record = PricedRecord.from_event(event, summary)
            bucket = self._buckets.get(event.user_id)
            if bucket is None:
                bucket = UserRecordBucket(user_name=event.user_name)
                self._buckets[event.user_id] = bucket
            bucket.records.append(record)
            self._known.add(event.key)
            written += 1
            self.log.debug(f"Stored record for user {event.user_id}: {record.to_dict()}")

        self.save()
        self.log.debug(f"Wrote {self.path} with {written} new records.")
        return IngestResult(written=written, skipped=skipped, failed=failed)

    @staticmethod
    def dedupe(events: Iterable[WatchEvent]) -> list[WatchEvent]:
        """Drop repeated (user_id, content_id) pairs, keeping the first."""
        seen: set[tuple[int, str]] = set()
        unique = []
        for event in events:
            if event.key in seen:
                continue
            seen.add(event.key)
            unique.append(event)
        return unique
