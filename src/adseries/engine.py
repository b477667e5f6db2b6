"""Query facade wiring the catalog, reader, decoder and emitter together."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from .aggregation import AdTotals, DailySummary, PlatformSummary, add_ad, afold, fold
from .catalog import PartitionCatalog
from .config import ConfigLoader, EngineConfig
from .decoding import BackendSelector, ColumnarDecoder, FieldInfo, Record
from .errors import InvalidArgumentError, NotFoundError
from .filtering import FilterSpec, Predicate, compose
from .object_store import ObjectStoreReader, RetryPolicy, call_once
from .object_store_factory import create_object_store
from .partition import Category, iter_months, parse_category, resolve_path, summary_path
from .streaming import CollectingSink, RecordSink, StreamEmitter, StreamReport

logger = logging.getLogger(__name__)

A = TypeVar("A")


@dataclass
class QueryResult:
    records: List[Record]
    report: StreamReport

    @property
    def count(self) -> int:
        return len(self.records)

    def as_dict(self) -> Dict[str, Any]:
        payload = self.report.as_dict()
        payload["count"] = self.count
        payload["records"] = self.records
        return payload


@dataclass
class SummaryResult:
    data: List[Record]
    stats: Dict[str, Any]
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        payload = {"success": True, "data": self.data, "stats": self.stats, "count": len(self.data)}
        payload.update(self.extra)
        return payload


class QueryEngine:
    """Entry point used by the CLI and by retrieval.

    Store calls run once unless a ``retry`` policy is supplied; the same
    policy is shared with the catalog and the emitter by :func:`create_engine`.
    """

    def __init__(
        self,
        config: EngineConfig,
        reader: ObjectStoreReader,
        decoder: ColumnarDecoder,
        catalog: PartitionCatalog,
        emitter: StreamEmitter,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.config = config
        self.reader = reader
        self.decoder = decoder
        self.catalog = catalog
        self.emitter = emitter
        self.retry = retry or call_once

    def resolve_paths(self, spec: FilterSpec, category: Category | str = Category.RAW) -> List[str]:
        """Partitions relevant to ``spec.date_range``, oldest first.

        Uses the catalog when it knows the raw partitions and constructs paths
        directly otherwise.
        """
        resolved = parse_category(category)
        if spec.date_range is None:
            raise InvalidArgumentError("A date range is required to select partitions")
        start, end = spec.date_range.start, spec.date_range.end
        if resolved is self.catalog.category:
            self.catalog.build()
            if len(self.catalog):
                return self.catalog.select_by_date_range(start, end)
        return [resolve_path(resolved, month) for month in iter_months(start, end)]

    def partition_path(self, period: str, category: Category | str = Category.RAW) -> str:
        resolved = parse_category(category)
        if resolved is self.catalog.category:
            self.catalog.build()
            return self.catalog.path_for(period)
        return resolve_path(resolved, period)

    async def emit(
        self,
        paths: Sequence[str],
        spec: FilterSpec,
        sink: RecordSink,
        extra: Optional[Predicate] = None,
    ) -> StreamReport:
        return await self.emitter.emit(paths, spec, sink, extra=extra)

    async def stream_period(self, period: str, spec: FilterSpec, sink: RecordSink) -> StreamReport:
        """Stream the raw partition of one month to ``sink``."""
        return await self.emit([self.partition_path(period)], spec, sink)

    async def query(
        self,
        spec: FilterSpec,
        paths: Optional[Sequence[str]] = None,
        extra: Optional[Predicate] = None,
    ) -> QueryResult:
        """Collect matching records; partial failures still succeed."""
        selected = list(paths) if paths is not None else self.resolve_paths(spec)
        sink = CollectingSink()
        report = await self.emit(selected, spec, sink, extra=extra)
        return QueryResult(records=sink.records, report=report)

    async def aggregate(
        self,
        spec: FilterSpec,
        initial: A,
        fold_fn: Callable[[A, Record], A],
        paths: Optional[Sequence[str]] = None,
    ) -> tuple[A, StreamReport]:
        selected = list(paths) if paths is not None else self.resolve_paths(spec)
        report = StreamReport()
        result = await afold(self.emitter.stream(selected, spec, report=report), initial, fold_fn)
        return result, report

    async def totals(self, spec: FilterSpec) -> tuple[Dict[str, Any], StreamReport]:
        totals, report = await self.aggregate(spec, AdTotals(), add_ad)
        return totals.as_dict(), report

    def read_records(self, path: str) -> List[Record]:
        """Download and decode a whole object; a missing object reads as empty."""
        try:
            payload = self.retry(lambda: self.reader.read_all(path), path)
        except NotFoundError:
            logger.warning("Object %s not found", path)
            return []
        return self.decoder.decode(payload, source=path)

    def daily_aggregation(self, spec: FilterSpec) -> SummaryResult:
        records = self.read_records(summary_path(Category.DAILY))
        predicate = compose(FilterSpec(date_range=spec.date_range))
        filtered = sorted((r for r in records if predicate(r)), key=lambda r: str(r.get("date")))
        stats = fold(filtered, DailySummary(), lambda acc, r: acc.add(r))
        return SummaryResult(data=filtered, stats=stats.as_dict())

    def platform_timeseries(self, spec: FilterSpec) -> SummaryResult:
        records = self.read_records(summary_path(Category.BY_PLATFORM))
        predicate = compose(FilterSpec(platform=spec.platform, date_range=spec.date_range))
        filtered = sorted((r for r in records if predicate(r)), key=lambda r: str(r.get("date")))
        summary = fold(filtered, PlatformSummary(), lambda acc, r: acc.add(r))
        platforms = list(dict.fromkeys(str(r.get("app_name")) for r in records if r.get("app_name")))
        return SummaryResult(
            data=filtered,
            stats={"platforms": summary.ranked()},
            extra={"platforms": platforms},
        )

    def schema(self, path: str) -> List[FieldInfo]:
        payload = self.retry(lambda: self.reader.read_all(path), path)
        return self.decoder.schema(payload, source=path)

    def status(self) -> Dict[str, Any]:
        return {
            "decoder": self.decoder.selector.status(),
            "catalog_built": self.catalog.built,
            "catalog_partitions": len(self.catalog),
            "storage_backend": self.config.storage.backend,
        }


def create_engine(
    config: EngineConfig | None = None,
    reader: ObjectStoreReader | None = None,
    selector: BackendSelector | None = None,
    retry: RetryPolicy | None = None,
) -> QueryEngine:
    """Build an engine from configuration; collaborators may be injected.

    ``retry`` wraps store calls such as :func:`with_transient_retry`; by
    default every call runs once.
    """
    config = config or ConfigLoader().model
    reader = reader or create_object_store(config.storage)
    selector = selector or BackendSelector(
        disable_primary=config.decoder.disable_primary,
        batch_size=config.decoder.batch_size,
    )
    decoder = ColumnarDecoder(selector)
    catalog = PartitionCatalog(
        reader,
        manifest_path=config.catalog.manifest_path,
        list_fallback=config.catalog.list_fallback,
        retry=retry,
    )
    emitter = StreamEmitter.from_config(reader, decoder, config.streaming, retry=retry)
    return QueryEngine(config, reader, decoder, catalog, emitter, retry=retry)


__all__ = ["QueryEngine", "QueryResult", "SummaryResult", "create_engine"]
