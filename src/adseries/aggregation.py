"""Sequential folds of record streams into summary statistics."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    TypeVar,
)

A = TypeVar("A")
R = TypeVar("R")


def fold(records: Iterable[R], initial: A, fold_fn: Callable[[A, R], A]) -> A:
    """Apply ``fold_fn`` record by record in stream order."""
    accumulator = initial
    for record in records:
        accumulator = fold_fn(accumulator, record)
    return accumulator


async def afold(records: AsyncIterable[R], initial: A, fold_fn: Callable[[A, R], A]) -> A:
    accumulator = initial
    async for record in records:
        accumulator = fold_fn(accumulator, record)
    return accumulator


def _number(record: Mapping[str, Any], name: str) -> float:
    value = record.get(name)
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


@dataclass
class AdTotals:
    """Running totals over raw ad rows."""

    count: int = 0
    total_cost: float = 0
    total_play_count: int = 0
    total_digg_count: int = 0
    advertisers: Set[str] = field(default_factory=set)
    products: Set[str] = field(default_factory=set)
    genres: Set[str] = field(default_factory=set)

    def add(self, record: Mapping[str, Any]) -> "AdTotals":
        self.count += 1
        self.total_cost += _number(record, "cost")
        self.total_play_count += int(_number(record, "play_count"))
        self.total_digg_count += int(_number(record, "digg_count"))
        for name, bucket in (
            ("advertiser_name", self.advertisers),
            ("product_name", self.products),
            ("genre_name", self.genres),
        ):
            value = record.get(name)
            if value:
                bucket.add(str(value))
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "total_cost": self.total_cost,
            "total_play_count": self.total_play_count,
            "total_digg_count": self.total_digg_count,
            "avg_play_count": self.total_play_count / self.count if self.count else 0,
            "avg_cost": self.total_cost / self.count if self.count else 0,
            "unique_advertisers": len(self.advertisers),
            "unique_products": len(self.products),
            "unique_genres": len(self.genres),
        }


def add_ad(totals: AdTotals, record: Mapping[str, Any]) -> AdTotals:
    return totals.add(record)


@dataclass
class DailySummary:
    """Stats over rows of the daily aggregation file."""

    total_records: int = 0
    total_ads: int = 0
    total_cost: float = 0
    first_date: Optional[str] = None
    last_date: Optional[str] = None

    def add(self, record: Mapping[str, Any]) -> "DailySummary":
        self.total_records += 1
        self.total_ads += int(_number(record, "total_ads"))
        self.total_cost += _number(record, "total_cost")
        day = record.get("date")
        if day is not None:
            day = str(day)
            if self.first_date is None or day < self.first_date:
                self.first_date = day
            if self.last_date is None or day > self.last_date:
                self.last_date = day
        return self

    @property
    def avg_daily_ads(self) -> float:
        return self.total_ads / self.total_records if self.total_records else 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_records": self.total_records,
            "total_ads": self.total_ads,
            "total_cost": self.total_cost,
            "avg_daily_ads": self.avg_daily_ads,
            "date_range": f"{self.first_date} - {self.last_date}" if self.first_date else None,
        }


@dataclass
class PlatformStats:
    platform: str
    total_ads: int = 0
    total_cost: float = 0
    total_play_count: int = 0
    total_digg_count: int = 0
    record_count: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "total_ads": self.total_ads,
            "total_cost": self.total_cost,
            "total_play_count": self.total_play_count,
            "total_digg_count": self.total_digg_count,
            "record_count": self.record_count,
            "avg_play_per_ad": self.total_play_count / self.total_ads if self.total_ads else 0,
            "avg_cost_per_ad": self.total_cost / self.total_ads if self.total_ads else 0,
        }


@dataclass
class PlatformSummary:
    """Per-platform totals over rows of the platform time series file."""

    platforms: Dict[str, PlatformStats] = field(default_factory=dict)

    def add(self, record: Mapping[str, Any]) -> "PlatformSummary":
        name = str(record.get("app_name") or "unknown")
        stats = self.platforms.get(name)
        if stats is None:
            stats = self.platforms[name] = PlatformStats(platform=name)
        stats.total_ads += int(_number(record, "ad_count"))
        stats.total_cost += _number(record, "total_cost")
        stats.total_play_count += int(_number(record, "total_play_count"))
        stats.total_digg_count += int(_number(record, "total_digg_count"))
        stats.record_count += 1
        return self

    def ranked(self) -> List[Dict[str, Any]]:
        """Platform rows sorted by total cost, highest first."""
        rows = [stats.as_dict() for stats in self.platforms.values()]
        return sorted(rows, key=lambda row: row["total_cost"], reverse=True)


__all__ = [
    "AdTotals",
    "DailySummary",
    "PlatformStats",
    "PlatformSummary",
    "add_ad",
    "afold",
    "fold",
]
