"""Pure mapping between logical partitions and remote object paths."""
from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Iterator, Tuple

from .errors import InvalidArgumentError

ROOT_PREFIX = "timeseries_data"
PARQUET_SUFFIX = ".parquet"

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_DAY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_TOKEN_RE = re.compile(r"^(\d{4})_(\d{2})(?:_(\d{2}))?$")

# Known collection outages in the upstream export, inclusive on both ends.
DATA_GAPS: Tuple[Tuple[str, str], ...] = (
    ("2023-12-18", "2024-01-11"),
    ("2024-04-24", "2024-07-09"),
)


class Category(str, Enum):
    RAW = "raw"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    BY_PLATFORM = "by_platform"
    BY_GENRE = "by_genre"
    BY_ADVERTISER = "by_advertiser"

    @property
    def directory(self) -> str:
        return _LAYOUT[self][0]

    @property
    def stem(self) -> str:
        return _LAYOUT[self][1]


_LAYOUT = {
    Category.RAW: ("raw_consolidated", "consolidated"),
    Category.DAILY: ("daily", "daily_aggregation"),
    Category.WEEKLY: ("weekly", "weekly_aggregation"),
    Category.MONTHLY: ("monthly", "monthly_aggregation"),
    Category.BY_PLATFORM: ("by_platform", "platform_timeseries"),
    Category.BY_GENRE: ("by_genre", "genre_timeseries"),
    Category.BY_ADVERTISER: ("by_advertiser", "advertiser_timeseries"),
}
_BY_DIRECTORY = {directory: category for category, (directory, _) in _LAYOUT.items()}


@dataclass(frozen=True)
class PartitionKey:
    """Identity of one partition: a category and a calendar period.

    ``period`` is either a month (``YYYY-MM``) or a single day (``YYYY-MM-DD``).
    """

    category: Category
    period: str

    @property
    def path(self) -> str:
        return resolve_path(self.category, self.period)


def parse_category(value: Category | str) -> Category:
    if isinstance(value, Category):
        return value
    try:
        return Category(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidArgumentError(f"Unknown partition category: {value!r}") from exc


def normalize_period(period: str | date) -> str:
    """Validate a period and return its canonical string form."""
    if isinstance(period, datetime):
        period = period.date()
    if isinstance(period, date):
        return period.isoformat()
    text = str(period).strip()
    match = _MONTH_RE.match(text)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            raise InvalidArgumentError(f"Unparseable period: {period!r}")
        return f"{year:04d}-{month:02d}"
    if _DAY_RE.match(text):
        try:
            return date.fromisoformat(text).isoformat()
        except ValueError as exc:
            raise InvalidArgumentError(f"Unparseable period: {period!r}") from exc
    raise InvalidArgumentError(f"Unparseable period: {period!r}")


def period_key(value: str | date) -> str:
    """Return the calendar month (``YYYY-MM``) that contains ``value``."""
    return normalize_period(value)[:7]


def month_token(value: str | date) -> str:
    """``2024-03`` or ``2024-03-15`` -> ``2024_03``."""
    return period_key(value).replace("-", "_")


def period_token(period: str | date) -> str:
    return normalize_period(period).replace("-", "_")


def build_timeseries_path(directory: str, filename: str) -> str:
    """Join a file under the time series root; an empty directory means the root itself."""
    if not directory:
        return f"{ROOT_PREFIX}/{filename}"
    return f"{ROOT_PREFIX}/{directory.strip('/')}/{filename}"


def resolve_path(category: Category | str, period: str | date) -> str:
    """Map ``(category, period)`` to its object path.

    >>> resolve_path("raw", "2025-03")
    'timeseries_data/raw_consolidated/consolidated_2025_03.parquet'
    """
    resolved = parse_category(category)
    token = period_token(period)
    return build_timeseries_path(resolved.directory, f"{resolved.stem}_{token}{PARQUET_SUFFIX}")


def summary_path(category: Category | str) -> str:
    """Path of the unpartitioned summary file kept for a category."""
    resolved = parse_category(category)
    return build_timeseries_path(resolved.directory, f"{resolved.stem}{PARQUET_SUFFIX}")


def parse_path(path: str) -> PartitionKey:
    """Inverse of :func:`resolve_path`."""
    parts = path.strip("/").split("/")
    if len(parts) != 3 or parts[0] != ROOT_PREFIX:
        raise InvalidArgumentError(f"Not a partition path: {path!r}")
    category = _BY_DIRECTORY.get(parts[1])
    if category is None:
        raise InvalidArgumentError(f"Unknown partition directory in {path!r}")
    filename = parts[2]
    prefix = f"{category.stem}_"
    if not (filename.startswith(prefix) and filename.endswith(PARQUET_SUFFIX)):
        raise InvalidArgumentError(f"Not a partition path: {path!r}")
    token = filename[len(prefix) : -len(PARQUET_SUFFIX)]
    match = _TOKEN_RE.match(token)
    if not match:
        raise InvalidArgumentError(f"Unparseable period token in {path!r}")
    period = token.replace("_", "-")
    return PartitionKey(category=category, period=normalize_period(period))


def period_bounds(period: str | date) -> Tuple[date, date]:
    """First and last calendar day covered by a period."""
    text = normalize_period(period)
    if len(text) == 10:
        day = date.fromisoformat(text)
        return day, day
    year, month = int(text[:4]), int(text[5:7])
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def iter_months(start: str | date, end: str | date) -> Iterator[str]:
    """Yield every ``YYYY-MM`` between two periods, inclusive."""
    year, month = (int(part) for part in period_key(start).split("-"))
    last = period_key(end)
    while True:
        current = f"{year:04d}-{month:02d}"
        if current > last:
            return
        yield current
        month += 1
        if month > 12:
            year, month = year + 1, 1


def is_in_data_gap(value: str | date) -> bool:
    """True when a day falls in a gap, or when any day of a month does."""
    start, end = period_bounds(value)
    return overlaps_data_gap(start, end)


def overlaps_data_gap(start: date, end: date) -> bool:
    return any(
        start <= date.fromisoformat(gap_end) and date.fromisoformat(gap_start) <= end
        for gap_start, gap_end in DATA_GAPS
    )


__all__ = [
    "Category",
    "DATA_GAPS",
    "PartitionKey",
    "ROOT_PREFIX",
    "build_timeseries_path",
    "is_in_data_gap",
    "iter_months",
    "month_token",
    "normalize_period",
    "overlaps_data_gap",
    "parse_category",
    "parse_path",
    "period_bounds",
    "period_key",
    "resolve_path",
    "summary_path",
]
