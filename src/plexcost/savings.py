"""
Savings aggregation for plexcost.

Groups every priced record by user and calendar month, picks the subscription
platforms that would have covered the month's viewing, and writes the result
to savings.json. The savings document is rebuilt from scratch on every run.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path

from .models import (
    ZERO,
    MonthlyAggregate,
    PricedRecord,
    SavingsTotals,
    UserRecordBucket,
    UserSavings,
    platform_key,
    savings_from_document,
    savings_to_document,
)
from .store import PersistenceError, load_record_document, read_json, write_json_atomic

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    """Round to cents, half away from zero."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CoverResult:
    """Outcome of the greedy cover for one group of records."""

    chosen: tuple[str, ...]  # in pick order, original casing
    covered: frozenset[int]  # record indices covered by a chosen platform

    @property
    def count(self) -> int:
        return len(self.chosen)


def greedy_set_cover(coverage_sets: list[Iterable[str]]) -> CoverResult:
    """
    Greedy approximation of the minimal set of platforms covering all records.

    Each step picks the platform that covers the most still-uncovered records.
    Ties go to the smallest name compared case-insensitively, then to the
    smallest name as written. Stops when everything is covered or no platform
    covers anything new. Records with an empty coverage set stay uncovered.

    Args:
        coverage_sets: Per record, the platform names that would have covered it

    Returns:
        CoverResult with the chosen platforms and the covered record indices
    """
    # casefolded name -> record indices; first casing seen is the one reported
    coverage: dict[str, set[int]] = {}
    display: dict[str, str] = {}
    for index, platforms in enumerate(coverage_sets):
        for name in platforms:
            key = platform_key(name)
            if not key:
                continue
            display.setdefault(key, name.strip())
            coverage.setdefault(key, set()).add(index)

    uncovered = set(range(len(coverage_sets)))
    chosen: list[str] = []

    while uncovered and coverage:
        best = min(
            coverage,
            key=lambda k: (-len(coverage[k] & uncovered), k, display[k]),
        )
        newly = coverage.pop(best) & uncovered
        if not newly:
            break
        chosen.append(display[best])
        uncovered -= newly

    covered = frozenset(range(len(coverage_sets))) - uncovered
    return CoverResult(chosen=tuple(chosen), covered=covered)


def _month_of(stopped_at: int) -> tuple[int, int]:
    dt = datetime.fromtimestamp(stopped_at, tz=UTC)
    return dt.year, dt.month


def aggregate_month(
    year: int,
    month: int,
    records: list[PricedRecord],
    base_price: Decimal,
) -> MonthlyAggregate:
    """Savings for one user-month: uncovered records' prices vs chosen subscriptions."""
    cover = greedy_set_cover([r.subscription_platforms for r in records])

    max_sum = ZERO
    avg_sum = ZERO
    for index, record in enumerate(records):
        if index in cover.covered:
            continue
        max_sum += record.max_price
        avg_sum += record.avg_price

    return MonthlyAggregate(
        year=year,
        month=month,
        max_savings=round_money(max_sum),
        avg_savings=round_money(avg_sum),
        subscription_cost=round_money(cover.count * base_price),
        chosen_platforms=tuple(sorted(cover.chosen, key=lambda n: (n.casefold(), n))),
    )


def compute_savings(
    buckets: Mapping[int, UserRecordBucket],
    base_price: Decimal,
    log: logging.Logger | None = None,
) -> dict[int, UserSavings]:
    """
    Compute per-user, per-month savings from all stored records.

    Pure: the same buckets and base price always give the same result, no
    matter the order records were ingested in.

    Args:
        buckets: Priced records keyed by user id
        base_price: Monthly price assumed for each chosen platform

    Returns:
        UserSavings keyed by user id (users without records are omitted)
    """
    log = log or logger
    base_price = Decimal(str(base_price))
    result: dict[int, UserSavings] = {}

    for user_id in sorted(buckets):
        bucket = buckets[user_id]
        if not bucket.records:
            continue

        months: dict[tuple[int, int], list[PricedRecord]] = defaultdict(list)
        # stable order inside a month so the cover never depends on ingest order
        for record in sorted(bucket.records, key=lambda r: (r.stopped_at, r.content_id)):
            months[_month_of(record.stopped_at)].append(record)

        monthly = []
        for (year, month) in sorted(months):
            records = months[(year, month)]
            log.debug(
                f"Evaluating minimum subscription coverage for {bucket.user_name} "
                f"during {month}/{year} with {len(records)} items"
            )
            aggregate = aggregate_month(year, month, records, base_price)
            log.debug(
                f"{bucket.user_name} for {month}/{year} needs minimum "
                f"{len(aggregate.chosen_platforms)} subscriptions - "
                f"{';'.join(aggregate.chosen_platforms)}"
            )
            monthly.append(aggregate)

        totals = SavingsTotals(
            total_max_savings=round_money(sum((m.max_savings for m in monthly), ZERO)),
            total_avg_savings=round_money(sum((m.avg_savings for m in monthly), ZERO)),
            total_subscription_cost=round_money(
                sum((m.subscription_cost for m in monthly), ZERO)
            ),
        )
        log.debug(
            f"Computed Totals for {bucket.user_name}: Max={totals.total_max_savings}, "
            f"Avg={totals.total_avg_savings}, Cost={totals.total_subscription_cost}"
        )
        result[user_id] = UserSavings(
            user_name=bucket.user_name,
            monthly_savings=monthly,
            totals=totals,
        )

    return result


def load_savings_document(path: Path) -> dict[int, UserSavings]:
    """Read a savings document back; missing file means no savings yet."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        return savings_from_document(read_json(path))
    except (OSError, ValueError, KeyError, TypeError, ArithmeticError) as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e


class SavingsAggregator:
    """Turns the record document into the savings document."""

    def __init__(
        self,
        savings_path: Path,
        base_price: Decimal,
        log: logging.Logger | None = None,
    ):
        if Decimal(str(base_price)) < 0:
            raise ValueError("base_price cannot be negative")
        self.savings_path = Path(savings_path)
        self.base_price = Decimal(str(base_price))
        self.log = log or logger

    def compute(self, buckets: Mapping[int, UserRecordBucket]) -> dict[int, UserSavings]:
        return compute_savings(buckets, self.base_price, log=self.log)

    def write(self, savings: dict[int, UserSavings]) -> None:
        write_json_atomic(self.savings_path, savings_to_document(savings))
        self.log.info(f"Wrote savings JSON to {self.savings_path}")

    def run(self, records_path: Path) -> dict[int, UserSavings]:
        """
        Recompute savings from the record document on disk and persist them.

        Raises:
            PersistenceError: If the record document can't be read or the
                savings document can't be written
        """
        records_path = Path(records_path)
        if not records_path.exists():
            self.log.warning(f"{records_path} not found; emitting empty savings JSON.")
        buckets = load_record_document(records_path)
        savings = self.compute(buckets)
        self.write(savings)
        return savings
