"""In-memory index of the partitions available in the object store."""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import InvalidArgumentError, NotFoundError, PermissionDeniedError, TransientError
from .object_store import ObjectStoreReader, RetryPolicy, call_once
from .partition import (
    Category,
    PartitionKey,
    build_timeseries_path,
    normalize_period,
    overlaps_data_gap,
    parse_path,
    period_bounds,
    resolve_path,
)

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class PartitionInfo:
    key: PartitionKey
    remote_path: str
    byte_size: Optional[int]
    row_count: Optional[int]
    date_range: Tuple[date, date]

    @property
    def period(self) -> str:
        return self.key.period

    @property
    def in_data_gap(self) -> bool:
        return overlaps_data_gap(*self.date_range)

    def overlaps(self, start: date, end: date) -> bool:
        first, last = self.date_range
        return first <= end and start <= last


def _info_for(key: PartitionKey, byte_size: Optional[int], row_count: Optional[int]) -> PartitionInfo:
    return PartitionInfo(
        key=key,
        remote_path=key.path,
        byte_size=byte_size,
        row_count=row_count,
        date_range=period_bounds(key.period),
    )


def _manifest_entries(document: Any) -> Iterable[Any]:
    if not isinstance(document, Mapping):
        logger.warning("Manifest root is %s, expected an object; ignoring it", type(document).__name__)
        return []
    if isinstance(document.get("partitions"), list):
        return document["partitions"]
    if isinstance(document.get("processing_results"), list):
        return document["processing_results"]
    return []


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


def parse_manifest(document: Any, category: Category = Category.RAW) -> List[PartitionInfo]:
    """Turn a manifest document into partition entries.

    Accepts the consolidation report (``processing_results`` with
    ``month_key`` / ``file_size_mb`` / ``total_rows``) and the neutral form
    (``partitions`` with ``period`` / ``byte_size`` / ``row_count``).
    Malformed entries are logged and skipped.
    """
    entries: List[PartitionInfo] = []
    for raw in _manifest_entries(document):
        if not isinstance(raw, Mapping):
            logger.warning("Skipping manifest entry that is not an object: %r", raw)
            continue
        period = raw.get("period") or raw.get("month_key")
        if not period:
            logger.warning("Skipping manifest entry without period: %s", raw)
            continue
        try:
            key = PartitionKey(category, normalize_period(str(period).replace("_", "-")))
        except InvalidArgumentError as exc:
            logger.warning("Skipping manifest entry %s: %s", period, exc)
            continue
        try:
            byte_size = _optional_int(raw.get("byte_size"))
            if byte_size is None and raw.get("file_size_mb") is not None:
                byte_size = int(float(raw["file_size_mb"]) * BYTES_PER_MB)
            row_count = _optional_int(raw.get("row_count", raw.get("total_rows")))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping manifest entry %s with bad size fields: %s", period, exc)
            continue
        entries.append(_info_for(key, byte_size, row_count))
    return entries


class PartitionCatalog:
    """Per-process catalog of partitions keyed by period.

    Built once from the manifest; never persisted. A missing manifest leaves
    the catalog empty and callers construct paths directly instead. A manifest
    the credentials may not read raises :class:`PermissionDeniedError` and
    leaves the catalog unbuilt.
    """

    def __init__(
        self,
        reader: ObjectStoreReader,
        manifest_path: str,
        category: Category = Category.RAW,
        list_fallback: bool = False,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._reader = reader
        self.manifest_path = manifest_path
        self.category = category
        self.list_fallback = list_fallback
        self._retry = retry or call_once
        self._entries: Dict[str, PartitionInfo] = {}
        self._lock = threading.Lock()
        self._built = False

    @property
    def built(self) -> bool:
        return self._built

    def __len__(self) -> int:
        return len(self._entries)

    def build(self) -> int:
        """Load the manifest once; later calls are no-ops. Returns the entry count."""
        if self._built:
            return len(self._entries)
        with self._lock:
            if self._built:
                return len(self._entries)
            try:
                entries = self._load_manifest()
            except TransientError as exc:
                logger.warning(
                    "Manifest %s temporarily unavailable; catalog left unbuilt: %s",
                    self.manifest_path,
                    exc,
                )
                return 0
            if entries is None and self.list_fallback:
                entries = self._load_listing()
            for info in entries or []:
                self._entries[info.period] = info
            self._built = True
            logger.info("Partition catalog built with %s entries", len(self._entries))
            return len(self._entries)

    def _load_manifest(self) -> Optional[List[PartitionInfo]]:
        try:
            payload = self._retry(lambda: self._reader.read_all(self.manifest_path), self.manifest_path)
        except NotFoundError:
            logger.warning("Manifest %s not found; catalog stays empty", self.manifest_path)
            return None
        except PermissionDeniedError as exc:
            logger.error("Manifest %s not readable: %s", self.manifest_path, exc)
            raise
        try:
            document = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error("Manifest %s is not valid JSON: %s", self.manifest_path, exc)
            return None
        return parse_manifest(document, self.category)

    def _load_listing(self) -> List[PartitionInfo]:
        prefix = build_timeseries_path(self.category.directory, "")
        entries = []
        for path in self._reader.list(prefix):
            try:
                key = parse_path(path)
            except InvalidArgumentError:
                continue
            if key.category is self.category:
                entries.append(_info_for(key, None, None))
        logger.info("Rebuilt catalog from listing of %s (%s partitions)", prefix, len(entries))
        return entries

    def entries(self) -> List[PartitionInfo]:
        return [self._entries[period] for period in sorted(self._entries)]

    def get(self, period: str) -> Optional[PartitionInfo]:
        return self._entries.get(normalize_period(period))

    def select(self, start: str | date, end: str | date) -> List[PartitionInfo]:
        first, _ = period_bounds(start)
        _, last = period_bounds(end)
        if first > last:
            raise InvalidArgumentError(f"Date range start {start} is after end {end}")
        return [info for info in self.entries() if info.overlaps(first, last)]

    def select_by_date_range(self, start: str | date, end: str | date) -> List[str]:
        """Paths of partitions fully or partially inside ``[start, end]``, oldest first."""
        return [info.remote_path for info in self.select(start, end)]

    def path_for(self, period: str) -> str:
        info = self.get(period)
        if info is not None:
            return info.remote_path
        return resolve_path(self.category, period)


__all__ = ["PartitionCatalog", "PartitionInfo", "parse_manifest"]
