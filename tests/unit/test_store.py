"""Tests for the record store."""

import json
import logging
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import JAN_2024, make_event
from plexcost.models import PricingSummary
from plexcost.pricing import RetryExhausted
from plexcost.store import (
    PersistenceError,
    RecordStore,
    load_record_document,
    write_json_atomic,
)


def priced(max_price="9.99", avg_price="6.49", platforms=("Netflix",)) -> PricingSummary:
    return PricingSummary(
        max_price=Decimal(max_price),
        avg_price=Decimal(avg_price),
        subscription_platforms=tuple(platforms),
    )


def make_store(path) -> RecordStore:
    store = RecordStore(path)
    store.load()
    return store


class TestLoad:
    """Test restoring state from disk."""

    def test_missing_file_starts_empty(self, records_path, caplog):
        with caplog.at_level(logging.WARNING):
            store = make_store(records_path)

        assert store.record_count == 0
        assert dict(store.buckets) == {}
        assert "starting with empty dataset" in caplog.text

    def test_corrupt_file_starts_empty(self, records_path, caplog):
        records_path.write_text("{not json", encoding="utf-8")

        with caplog.at_level(logging.WARNING):
            store = make_store(records_path)

        assert store.record_count == 0
        assert "Failed to read" in caplog.text

    @pytest.mark.parametrize(
        "document",
        [
            {"1": None},
            {"1": []},
            {"1": "alice"},
            {"1": {"userName": "a", "records": {}}},
            {"1": {"userName": "a", "records": "plex://movie/a"}},
            {"1": {"userName": "a", "records": [None]}},
            {"1": {"userName": "a", "records": [["plex://movie/a", 1]]}},
            {"1": {"records": [{"contentId": "x", "stoppedAt": 1, "maxPrice": "NaN"}]}},
            {"alice": {"userName": "a", "records": []}},
        ],
    )
    def test_malformed_document_starts_empty(self, records_path, caplog, document):
        records_path.write_text(json.dumps(document), encoding="utf-8")

        with caplog.at_level(logging.WARNING):
            store = make_store(records_path)

        assert store.record_count == 0
        assert dict(store.buckets) == {}
        assert "starting with empty dataset" in caplog.text

    def test_restores_records_and_known_keys(self, records_path):
        records_path.write_text(
            json.dumps(
                {
                    "7": {
                        "userName": "bob",
                        "records": [
                            {
                                "contentId": "plex://movie/a",
                                "stoppedAt": JAN_2024,
                                "maxPrice": 4.99,
                                "avgPrice": 3.5,
                                "subscriptionPlatforms": ["Hulu"],
                            }
                        ],
                    }
                }
            ),
            encoding="utf-8",
        )

        store = make_store(records_path)

        assert (7, "plex://movie/a") in store
        bucket = store.buckets[7]
        assert bucket.user_name == "bob"
        assert bucket.records[0].max_price == Decimal("4.99")
        assert bucket.records[0].subscription_platforms == ("Hulu",)

    def test_duplicate_stored_records_collapse(self, records_path):
        record = {
            "contentId": "plex://movie/a",
            "stoppedAt": JAN_2024,
            "maxPrice": 1,
            "avgPrice": 1,
            "subscriptionPlatforms": [],
        }
        records_path.write_text(
            json.dumps({"1": {"userName": "a", "records": [record, record]}}),
            encoding="utf-8",
        )

        store = make_store(records_path)

        assert store.record_count == 1
        assert len(store.buckets[1].records) == 1


class TestIngest:
    """Test RecordStore.ingest."""

    @pytest.mark.asyncio
    async def test_writes_new_records(self, records_path):
        store = make_store(records_path)
        resolve = AsyncMock(return_value=priced())

        result = await store.ingest(
            [
                make_event(user_id=1, content_id="plex://movie/a"),
                make_event(user_id=2, content_id="plex://movie/a", user_name="bob"),
            ],
            resolve,
        )

        assert result.written == 2
        assert result.skipped == 0
        assert resolve.await_count == 2
        assert store.known_keys == {(1, "plex://movie/a"), (2, "plex://movie/a")}

        document = json.loads(records_path.read_text(encoding="utf-8"))
        assert set(document) == {"1", "2"}
        assert document["2"]["userName"] == "bob"
        stored = document["1"]["records"][0]
        assert stored["contentId"] == "plex://movie/a"
        assert stored["maxPrice"] == 9.99
        assert stored["avgPrice"] == 6.49
        assert stored["subscriptionPlatforms"] == ["Netflix"]

    @pytest.mark.asyncio
    async def test_second_ingest_of_same_batch_writes_nothing(self, records_path):
        store = make_store(records_path)
        resolve = AsyncMock(return_value=priced())
        batch = [
            make_event(content_id="plex://movie/a"),
            make_event(content_id="plex://movie/b"),
            make_event(user_id=3, content_id="plex://movie/a"),
        ]

        first = await store.ingest(batch, resolve)
        second = await store.ingest(batch, resolve)

        assert first.written == 3
        assert second.written == 0
        assert second.skipped == 3
        assert resolve.await_count == 3

    @pytest.mark.asyncio
    async def test_state_survives_reload(self, records_path):
        store = make_store(records_path)
        resolve = AsyncMock(return_value=priced())
        await store.ingest([make_event(content_id="plex://movie/a")], resolve)

        reloaded = make_store(records_path)
        result = await reloaded.ingest([make_event(content_id="plex://movie/a")], resolve)

        assert result.written == 0
        assert resolve.await_count == 1

    @pytest.mark.asyncio
    async def test_batch_deduplicated_first_wins(self, records_path):
        store = make_store(records_path)
        resolve = AsyncMock(return_value=priced())

        result = await store.ingest(
            [
                make_event(content_id="plex://movie/a", stopped_at=JAN_2024 + 10),
                make_event(content_id="plex://movie/a", stopped_at=JAN_2024 + 99),
            ],
            resolve,
        )

        assert result.written == 1
        assert resolve.await_count == 1
        assert store.buckets[1].records[0].stopped_at == JAN_2024 + 10

    @pytest.mark.asyncio
    async def test_pricing_failure_skips_and_retries_later(self, records_path):
        """A failed record is skipped and not marked known, so it is retried."""
        store = make_store(records_path)
        resolve = AsyncMock(
            side_effect=[
                RetryExhausted("plex://movie/a", 4),
                priced(),
                priced(max_price="2", avg_price="2", platforms=()),
            ]
        )
        batch = [
            make_event(content_id="plex://movie/a"),
            make_event(content_id="plex://movie/b"),
        ]

        first = await store.ingest(batch, resolve)
        assert first.written == 1
        assert first.skipped == 1
        assert first.failed == 1
        assert (1, "plex://movie/a") not in store
        assert (1, "plex://movie/b") in store

        second = await store.ingest(batch, resolve)
        assert second.written == 1
        assert second.skipped == 1
        assert second.failed == 0
        assert (1, "plex://movie/a") in store
        assert resolve.await_count == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_abort_batch(self, records_path):
        store = make_store(records_path)
        resolve = AsyncMock(side_effect=[RuntimeError("boom"), priced()])

        result = await store.ingest(
            [
                make_event(content_id="plex://movie/a"),
                make_event(content_id="plex://movie/b"),
            ],
            resolve,
        )

        assert result.written == 1
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_empty_summary_stored_as_zero(self, records_path):
        store = make_store(records_path)
        resolve = AsyncMock(return_value=PricingSummary.empty())

        await store.ingest([make_event()], resolve)

        record = store.buckets[1].records[0]
        assert record.max_price == Decimal("0")
        assert record.avg_price == Decimal("0")
        assert record.subscription_platforms == ()

    @pytest.mark.asyncio
    async def test_persists_even_when_nothing_written(self, records_path):
        store = make_store(records_path)

        result = await store.ingest([], AsyncMock())

        assert result.written == 0
        assert json.loads(records_path.read_text(encoding="utf-8")) == {}

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_document(
        self, records_path, monkeypatch
    ):
        store = make_store(records_path)
        resolve = AsyncMock(return_value=priced())
        await store.ingest([make_event(content_id="plex://movie/a")], resolve)
        before = records_path.read_text(encoding="utf-8")

        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("plexcost.store.os.replace", fail_replace)

        with pytest.raises(PersistenceError):
            await store.ingest([make_event(content_id="plex://movie/b")], resolve)

        assert records_path.read_text(encoding="utf-8") == before
        leftovers = [p for p in records_path.parent.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []


class TestDedupe:
    def test_keeps_order(self):
        events = [
            make_event(content_id="b"),
            make_event(content_id="a"),
            make_event(content_id="b"),
            make_event(user_id=2, content_id="b"),
        ]
        unique = RecordStore.dedupe(events)
        assert [(e.user_id, e.content_id) for e in unique] == [(1, "b"), (1, "a"), (2, "b")]


class TestDocumentHelpers:
    def test_write_json_atomic_creates_parent(self, tmp_path):
        target = tmp_path / "nested" / "out.json"
        write_json_atomic(target, {"a": 1})
        assert json.loads(target.read_text(encoding="utf-8")) == {"a": 1}

    def test_write_json_atomic_unserialisable(self, tmp_path):
        target = tmp_path / "out.json"
        target.write_text("{}", encoding="utf-8")
        with pytest.raises(PersistenceError):
            write_json_atomic(target, {"a": object()})
        assert target.read_text(encoding="utf-8") == "{}"

    def test_load_record_document_missing(self, records_path):
        assert load_record_document(records_path) == {}

    def test_load_record_document_corrupt(self, records_path):
        records_path.write_text("[1, 2", encoding="utf-8")
        with pytest.raises(PersistenceError):
            load_record_document(records_path)

    @pytest.mark.parametrize("bucket", [None, [], {"records": [None]}])
    def test_load_record_document_malformed_bucket(self, records_path, bucket):
        records_path.write_text(json.dumps({"1": bucket}), encoding="utf-8")
        with pytest.raises(PersistenceError):
            load_record_document(records_path)
