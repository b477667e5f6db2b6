"""Retrieval over partition records for the question answering layer.

The embedding index and the text generator are external collaborators and
are only described here as protocols. This module selects partitions for a
question, streams matching records, turns them into documents, ranks them
through the index and assembles the context string handed to the generator.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .config import RetrievalConfig
from .engine import QueryEngine
from .filtering import DateRange, FilterSpec, text_matcher
from .partition import Category, summary_path

logger = logging.getLogger(__name__)

_YEAR_MONTH_RE = re.compile(r"(\d{4})[年\-/](\d{1,2})(?:月)?")

_TIME_SERIES_WORDS = ("trend", "over time", "timeline", "推移", "トレンド")
_PLATFORM_WORDS = ("platform", "instagram", "facebook", "tiktok", "twitter", "プラットフォーム")
_GENRE_WORDS = ("genre", "category", "ジャンル", "カテゴリ")
_ADVERTISER_WORDS = ("advertiser", "brand", "company", "広告主", "企業")


@dataclass(frozen=True)
class AdDocument:
    page_content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchResult:
    content: str
    metadata: Dict[str, Any]
    relevance_score: float


class SimilarityIndex(Protocol):
    def add(self, documents: Sequence[AdDocument]) -> None:
        """Index documents for later similarity queries."""

    def query(self, text: str, top_k: int) -> List[Tuple[AdDocument, float]]:
        """Return up to ``top_k`` documents with relevance scores in [0, 1]."""


class TextGenerator(Protocol):
    def generate(self, query: str, context: str) -> str:
        """Produce an answer for ``query`` grounded on ``context``."""


@dataclass(frozen=True)
class QueryIntent:
    needs_time_series: bool
    needs_platform: bool
    needs_genre: bool
    needs_advertiser: bool
    time_range: DateRange


def _shift_months(day: date, months: int) -> str:
    index = day.year * 12 + (day.month - 1) + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def extract_time_range(query: str, today: Optional[date] = None) -> DateRange:
    """Months mentioned in the question, or the last three months."""
    months = []
    for year, month in _YEAR_MONTH_RE.findall(query):
        if 1 <= int(month) <= 12:
            months.append(f"{int(year):04d}-{int(month):02d}")
    if months:
        return DateRange(min(months), max(months))
    today = today or date.today()
    return DateRange(_shift_months(today, -3), _shift_months(today, 0))


def analyze_intent(query: str, today: Optional[date] = None) -> QueryIntent:
    lowered = query.lower()
    return QueryIntent(
        needs_time_series=any(word in lowered for word in _TIME_SERIES_WORDS),
        needs_platform=any(word in lowered for word in _PLATFORM_WORDS),
        needs_genre=any(word in lowered for word in _GENRE_WORDS),
        needs_advertiser=any(word in lowered for word in _ADVERTISER_WORDS),
        time_range=extract_time_range(query, today),
    )


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _number(value: Any) -> Any:
    """Numeric value for display; strings are parsed and anything else is 0."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float, Decimal)):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return int(number) if number.is_integer() else number


def to_document(record: Mapping[str, Any]) -> AdDocument:
    play_count = _int(record.get("play_count"))
    digg_count = _int(record.get("digg_count"))
    cost = _number(record.get("cost"))
    lines = [
        f"Product: {record.get('product_name', '')}",
        f"Advertiser: {record.get('advertiser_name', '')}",
        f"Genre: {record.get('genre_name', '')}",
        f"Platform: {record.get('app_name', '')}",
        f"Ad copy: {record.get('ad_sentence', '')}",
    ]
    if record.get("ad_start_sentence"):
        lines.append(f"Opening: {record['ad_start_sentence']}")
    if record.get("ad_all_sentence"):
        lines.append(f"Full text: {record['ad_all_sentence']}")
    lines.extend(
        [
            f"Plays: {play_count:,}",
            f"Likes: {digg_count:,}",
            f"Cost: ¥{cost:,}",
            f"Date: {record.get('date', '')}",
            f"Streaming period: {record.get('streaming_period', '')}",
        ]
    )
    engagement_rate = (digg_count / play_count) * 100 if play_count > 0 else 0
    day = str(record.get("date", ""))
    return AdDocument(
        page_content="\n".join(lines),
        metadata={
            "source": f"timeseries_data/{day}",
            "date": day,
            "advertiser": record.get("advertiser_name"),
            "genre": record.get("genre_name"),
            "platform": record.get("app_name"),
            "performance": {
                "play_count": play_count,
                "cost": cost,
                "engagement_rate": engagement_rate,
            },
        },
    )


def build_context(results: Sequence[SearchResult]) -> str:
    blocks = []
    for index, result in enumerate(results, start=1):
        blocks.append(
            "\n".join(
                [
                    f"[Result {index}]",
                    result.content,
                    f"Relevance: {result.relevance_score * 100:.1f}%",
                    f"Platform: {result.metadata.get('platform')}",
                    f"Date: {result.metadata.get('date')}",
                ]
            )
        )
    return "\n\n".join(blocks)


def data_only_response(query: str, results: Sequence[SearchResult]) -> str:
    """Plain listing used when no text generator is configured."""
    parts = [f'Found {len(results)} record(s) related to "{query}":\n']
    for index, result in enumerate(results, start=1):
        performance = result.metadata.get("performance") or {}
        parts.append(
            "\n".join(
                [
                    f"[{index}]",
                    result.content,
                    f"- Platform: {result.metadata.get('platform')}",
                    f"- Date: {result.metadata.get('date')}",
                    f"- Plays: {_int(performance.get('play_count')):,}",
                    f"- Cost: ¥{_number(performance.get('cost')):,}",
                ]
            )
            + "\n"
        )
    return "\n".join(parts)


class RetrievalService:
    """Question answering front end over the query engine."""

    def __init__(
        self,
        engine: QueryEngine,
        index: Optional[SimilarityIndex] = None,
        generator: Optional[TextGenerator] = None,
        config: Optional[RetrievalConfig] = None,
    ) -> None:
        self.engine = engine
        self.index = index
        self.generator = generator
        self.config = config or engine.config.retrieval

    def select_paths(self, intent: QueryIntent, spec: FilterSpec) -> List[str]:
        window = spec.date_range or intent.time_range
        paths = self.engine.resolve_paths(FilterSpec(date_range=window))
        if intent.needs_platform:
            paths.append(summary_path(Category.BY_PLATFORM))
        if intent.needs_genre:
            paths.append(summary_path(Category.BY_GENRE))
        if intent.needs_advertiser:
            paths.append(summary_path(Category.BY_ADVERTISER))
        return paths[: self.config.max_files]

    async def collect_documents(self, query: str, spec: FilterSpec, today: Optional[date] = None) -> List[AdDocument]:
        intent = analyze_intent(query, today)
        per_file = FilterSpec(
            platform=spec.platform,
            genre=spec.genre,
            advertiser=spec.advertiser,
            min_play_count=spec.min_play_count,
            min_cost=spec.min_cost,
            limit=self.config.max_per_partition,
        )
        matcher = text_matcher(query)
        documents: List[AdDocument] = []
        for path in self.select_paths(intent, spec):
            result = await self.engine.query(per_file, paths=[path], extra=matcher)
            documents.extend(to_document(record) for record in result.records)
            logger.info("Extracted %s document(s) from %s", result.count, path)
        return documents

    async def search(self, query: str, spec: Optional[FilterSpec] = None, today: Optional[date] = None) -> List[SearchResult]:
        spec = spec or FilterSpec()
        top_k = spec.limit or self.config.top_k
        documents = await self.collect_documents(query, spec, today)
        if not documents:
            return []
        if self.index is None:
            # Unranked: keep stream order and report no relevance.
            return [SearchResult(doc.page_content, doc.metadata, 0.0) for doc in documents[:top_k]]
        self.index.add(documents)
        return [
            SearchResult(doc.page_content, doc.metadata, float(score))
            for doc, score in self.index.query(query, top_k)
        ]

    async def answer(self, query: str, spec: Optional[FilterSpec] = None, today: Optional[date] = None) -> str:
        results = await self.search(query, spec, today)
        if self.generator is None:
            return data_only_response(query, results)
        return self.generator.generate(query, build_context(results))


__all__ = [
    "AdDocument",
    "QueryIntent",
    "RetrievalService",
    "SearchResult",
    "SimilarityIndex",
    "TextGenerator",
    "analyze_intent",
    "build_context",
    "data_only_response",
    "extract_time_range",
    "to_document",
]
