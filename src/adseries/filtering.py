"""Row-level predicates built from a per-query filter specification."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, List, Mapping, Optional, Tuple

from .errors import InvalidArgumentError
from .partition import normalize_period

Predicate = Callable[[Mapping[str, Any]], bool]

# Column names of the consolidated raw ad export.
PLATFORM_FIELD = "app_name"
GENRE_FIELD = "genre_name"
ADVERTISER_FIELD = "advertiser_name"
PLAY_COUNT_FIELD = "play_count"
COST_FIELD = "cost"
DATE_FIELD = "date"


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of ``YYYY-MM`` or ``YYYY-MM-DD`` bounds."""

    start: str
    end: str

    def __post_init__(self) -> None:
        start = normalize_period(self.start)
        end = normalize_period(self.end)
        if start[:7] > end[:7] or (len(start) == len(end) and start > end):
            raise InvalidArgumentError(f"Date range start {start} is after end {end}")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def contains(self, value: Any) -> bool:
        """True when a ``date`` column value falls inside the range.

        Each bound is compared at its own precision, so a month bound covers
        every day of that month.
        """
        if value is None:
            return False
        text = value.isoformat() if hasattr(value, "isoformat") else str(value)
        return text[: len(self.start)] >= self.start and text[: len(self.end)] <= self.end


@dataclass(frozen=True)
class FilterSpec:
    """Immutable per-query constraints; ``None`` means unconstrained."""

    platform: Optional[str] = None
    genre: Optional[str] = None
    advertiser: Optional[str] = None
    min_play_count: Optional[int] = None
    min_cost: Optional[float] = None
    date_range: Optional[DateRange] = None
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 0:
            raise InvalidArgumentError("limit must not be negative")

    @classmethod
    def from_params(cls, params: Mapping[str, Any], default_limit: Optional[int] = None) -> "FilterSpec":
        """Build a spec from loosely typed query parameters (strings allowed)."""
        start = _clean(params.get("start"))
        end = _clean(params.get("end"))
        date_range = None
        if start or end:
            date_range = DateRange(start or end, end or start)
        limit = _as_int(params.get("limit"), "limit")
        return cls(
            platform=_clean(params.get("platform")),
            genre=_clean(params.get("genre")),
            advertiser=_clean(params.get("advertiser")),
            min_play_count=_as_int(params.get("minPlayCount", params.get("min_play_count")), "minPlayCount"),
            min_cost=_as_float(params.get("minCost", params.get("min_cost")), "minCost"),
            date_range=date_range,
            limit=limit if limit is not None else default_limit,
        )

    def clauses(self) -> List[Tuple[str, Any]]:
        """Non-empty clauses in evaluation order."""
        ordered = [
            ("platform", self.platform),
            ("genre", self.genre),
            ("advertiser", self.advertiser),
            ("min_play_count", self.min_play_count),
            ("min_cost", self.min_cost),
            ("date_range", self.date_range),
        ]
        return [(name, value) for name, value in ordered if value is not None and value != ""]


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: Any, name: str) -> Optional[int]:
    text = _clean(value)
    if text is None:
        return None
    try:
        return int(text)
    except ValueError as exc:
        raise InvalidArgumentError(f"{name} must be an integer, got {value!r}") from exc


def _as_float(value: Any, name: str) -> Optional[float]:
    text = _clean(value)
    if text is None:
        return None
    try:
        return float(text)
    except ValueError as exc:
        raise InvalidArgumentError(f"{name} must be a number, got {value!r}") from exc


def _at_least(field_name: str, threshold: float) -> Predicate:
    def check(record: Mapping[str, Any]) -> bool:
        value = record.get(field_name)
        if value is None:
            return False
        try:
            return float(value) >= threshold
        except (TypeError, ValueError):
            return False

    return check


def _equals(field_name: str, expected: str) -> Predicate:
    return lambda record: record.get(field_name) == expected


def compose(spec: FilterSpec, extra: Optional[Predicate] = None) -> Predicate:
    """Fold a FilterSpec into one short-circuiting predicate.

    Clauses run as platform, genre, advertiser, min play count, min cost,
    then the date range. ``extra`` is appended last. ``limit`` is not part of
    the predicate; see :func:`take_matching`.
    """
    checks: List[Predicate] = []
    for name, value in spec.clauses():
        if name == "platform":
            checks.append(_equals(PLATFORM_FIELD, value))
        elif name == "genre":
            checks.append(_equals(GENRE_FIELD, value))
        elif name == "advertiser":
            checks.append(_equals(ADVERTISER_FIELD, value))
        elif name == "min_play_count":
            checks.append(_at_least(PLAY_COUNT_FIELD, value))
        elif name == "min_cost":
            checks.append(_at_least(COST_FIELD, value))
        elif name == "date_range":
            checks.append(lambda record, window=value: window.contains(record.get(DATE_FIELD)))
    if extra is not None:
        checks.append(extra)

    def predicate(record: Mapping[str, Any]) -> bool:
        for check in checks:
            if not check(record):
                return False
        return True

    return predicate


def take_matching(
    records: Iterable[Mapping[str, Any]],
    predicate: Predicate,
    limit: Optional[int] = None,
) -> Iterator[Mapping[str, Any]]:
    """Yield matching records until ``limit`` of them have been accepted."""
    if limit is not None and limit <= 0:
        return
    accepted = 0
    for record in records:
        if not predicate(record):
            continue
        yield record
        accepted += 1
        if limit is not None and accepted >= limit:
            return


def text_matcher(query: str, fields: Iterable[str] = ("product_name", "ad_sentence", GENRE_FIELD)) -> Predicate:
    """Accept records whose text fields contain any whitespace separated query term."""
    terms = [term for term in query.lower().split() if term]
    names = tuple(fields)

    def matches(record: Mapping[str, Any]) -> bool:
        if not terms:
            return True
        haystack = " ".join(str(record.get(name) or "") for name in names).lower()
        return any(term in haystack for term in terms)

    return matches


__all__ = [
    "DateRange",
    "FilterSpec",
    "Predicate",
    "compose",
    "take_matching",
    "text_matcher",
]
