"""
Data models for plexcost.

Watch events come in from the history source, get priced, and end up in the
record document. Savings are derived from the record document on every run.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

ZERO = Decimal("0")

# Stored per-title prices keep four places so data.json reloads exactly
PRICE_QUANTUM = Decimal("0.0001")


def to_decimal(value: Any) -> Decimal:
    """Coerce a JSON number (or numeric string) to Decimal without float noise."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_price(value: Decimal) -> Decimal:
    """Round a per-title price to the stored precision."""
    if not value.is_finite():
        raise ValueError(f"Price must be a finite number, got {value}")
    return value.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)


def _require_object(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{what} must be a JSON object, got {type(data).__name__}")
    return data


def _require_list(data: Any, what: str) -> list[Any]:
    if not isinstance(data, list):
        raise ValueError(f"{what} must be a JSON array, got {type(data).__name__}")
    return data


def _money_out(value: Decimal) -> float | int:
    # json can't encode Decimal; integral amounts stay ints
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def platform_key(name: str) -> str:
    """Comparison key for platform names: trimmed and case-insensitive."""
    return name.strip().casefold()


def unique_platforms(names: Iterable[str] | str | None) -> list[str]:
    """Trim, drop blanks and case-insensitive duplicates (first casing wins).

    A bare string is one platform name, not a sequence of characters.
    """
    if isinstance(names, str):
        names = [names]
    seen: set[str] = set()
    result = []
    for name in names or []:
        if not isinstance(name, str):
            continue
        trimmed = name.strip()
        if not trimmed:
            continue
        key = trimmed.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(trimmed)
    return result


@dataclass(frozen=True)
class WatchEvent:
    """A substantially-watched playback of one title by one user."""

    user_id: int
    user_name: str
    content_id: str
    stopped_at: int  # Unix timestamp

    @property
    def key(self) -> tuple[int, str]:
        return (self.user_id, self.content_id)


@dataclass(frozen=True)
class PricingSummary:
    """Market pricing for one title. None prices mean no buy/rent offers."""

    max_price: Decimal | None = None
    avg_price: Decimal | None = None
    subscription_platforms: tuple[str, ...] = ()

    @classmethod
    def empty(cls) -> "PricingSummary":
        return cls()

    @property
    def is_empty(self) -> bool:
        return (
            self.max_price is None
            and self.avg_price is None
            and not self.subscription_platforms
        )


@dataclass(frozen=True)
class PricedRecord:
    """A watch event enriched with pricing. Never modified once stored."""

    content_id: str
    stopped_at: int
    max_price: Decimal = ZERO
    avg_price: Decimal = ZERO
    subscription_platforms: tuple[str, ...] = ()

    @classmethod
    def from_event(cls, event: WatchEvent, summary: PricingSummary) -> "PricedRecord":
        return cls(
            content_id=event.content_id,
            stopped_at=event.stopped_at,
            max_price=quantize_price(to_decimal(summary.max_price)),
            avg_price=quantize_price(to_decimal(summary.avg_price)),
            subscription_platforms=tuple(
                unique_platforms(list(summary.subscription_platforms))
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "contentId": self.content_id,
            "stoppedAt": self.stopped_at,
            "maxPrice": _money_out(self.max_price),
            "avgPrice": _money_out(self.avg_price),
            "subscriptionPlatforms": list(self.subscription_platforms),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PricedRecord":
        data = _require_object(data, "Record")
        return cls(
            content_id=str(data["contentId"]),
            stopped_at=int(data["stoppedAt"]),
            max_price=quantize_price(to_decimal(data.get("maxPrice"))),
            avg_price=quantize_price(to_decimal(data.get("avgPrice"))),
            subscription_platforms=tuple(
                unique_platforms(data.get("subscriptionPlatforms"))
            ),
        )


@dataclass
class UserRecordBucket:
    """All priced records for one user, in ingestion order."""

    user_name: str
    records: list[PricedRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "userName": self.user_name,
            "records": [r.to_dict() for r in self.records],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserRecordBucket":
        data = _require_object(data, "User record bucket")
        records = _require_list(data.get("records", []), "records")
        return cls(
            user_name=str(data.get("userName", "")),
            records=[PricedRecord.from_dict(r) for r in records],
        )


@dataclass(frozen=True)
class MonthlyAggregate:
    """Savings for one user in one calendar month (UTC)."""

    year: int
    month: int
    max_savings: Decimal = ZERO
    avg_savings: Decimal = ZERO
    subscription_cost: Decimal = ZERO
    chosen_platforms: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "year": self.year,
            "month": self.month,
            "maxSavings": _money_out(self.max_savings),
            "avgSavings": _money_out(self.avg_savings),
            "subscriptionCost": _money_out(self.subscription_cost),
            "subscriptions": list(self.chosen_platforms),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MonthlyAggregate":
        data = _require_object(data, "Monthly savings")
        return cls(
            year=int(data["year"]),
            month=int(data["month"]),
            max_savings=to_decimal(data.get("maxSavings")),
            avg_savings=to_decimal(data.get("avgSavings")),
            subscription_cost=to_decimal(data.get("subscriptionCost")),
            chosen_platforms=tuple(unique_platforms(data.get("subscriptions"))),
        )


@dataclass(frozen=True)
class SavingsTotals:
    """Per-user sums over all months."""

    total_max_savings: Decimal = ZERO
    total_avg_savings: Decimal = ZERO
    total_subscription_cost: Decimal = ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalMaxSavings": _money_out(self.total_max_savings),
            "totalAvgSavings": _money_out(self.total_avg_savings),
            "totalSubscriptionCost": _money_out(self.total_subscription_cost),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SavingsTotals":
        data = _require_object(data, "Savings totals")
        return cls(
            total_max_savings=to_decimal(data.get("totalMaxSavings")),
            total_avg_savings=to_decimal(data.get("totalAvgSavings")),
            total_subscription_cost=to_decimal(data.get("totalSubscriptionCost")),
        )


@dataclass
class UserSavings:
    """Savings summary for one user, recomputed from scratch each run."""

    user_name: str
    monthly_savings: list[MonthlyAggregate] = field(default_factory=list)
    totals: SavingsTotals = field(default_factory=SavingsTotals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "userName": self.user_name,
            "monthlySavings": [m.to_dict() for m in self.monthly_savings],
            "totals": self.totals.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserSavings":
        data = _require_object(data, "User savings")
        months = _require_list(data.get("monthlySavings", []), "monthlySavings")
        return cls(
            user_name=str(data.get("userName", "")),
            monthly_savings=[MonthlyAggregate.from_dict(m) for m in months],
            totals=SavingsTotals.from_dict(data.get("totals", {})),
        )


def records_to_document(buckets: dict[int, UserRecordBucket]) -> dict[str, Any]:
    """Record document keyed by user id (JSON keys are strings)."""
    return {str(user_id): buckets[user_id].to_dict() for user_id in sorted(buckets)}


def records_from_document(data: dict[str, Any]) -> dict[int, UserRecordBucket]:
    if not isinstance(data, dict):
        raise ValueError("Record document must be a JSON object")
    return {int(k): UserRecordBucket.from_dict(v) for k, v in data.items()}


def savings_to_document(savings: dict[int, UserSavings]) -> dict[str, Any]:
    return {str(user_id): savings[user_id].to_dict() for user_id in sorted(savings)}


def savings_from_document(data: dict[str, Any]) -> dict[int, UserSavings]:
    if not isinstance(data, dict):
        raise ValueError("Savings document must be a JSON object")
    return {int(k): UserSavings.from_dict(v) for k, v in data.items()}
