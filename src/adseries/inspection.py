"""Helpers for formatting catalog, report and summary output."""
from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from tabulate import tabulate

from .catalog import PartitionInfo
from .decoding import FieldInfo
from .streaming import StreamReport


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str)


def format_catalog(entries: Iterable[PartitionInfo], output_format: str = "table") -> str:
    rows = list(entries)
    if not rows:
        return "No partitions in catalog."
    if output_format == "json":
        payload: List[dict] = [
            {
                "period": row.period,
                "category": row.key.category.value,
                "remote_path": row.remote_path,
                "byte_size": row.byte_size,
                "row_count": row.row_count,
                "start": row.date_range[0].isoformat(),
                "end": row.date_range[1].isoformat(),
                "in_data_gap": row.in_data_gap,
            }
            for row in rows
        ]
        return _dump(payload)

    table_data = [
        [
            row.period,
            row.remote_path,
            row.byte_size if row.byte_size is not None else "-",
            row.row_count if row.row_count is not None else "-",
            "yes" if row.in_data_gap else "",
        ]
        for row in rows
    ]
    headers = ["period", "remote_path", "byte_size", "row_count", "data_gap"]
    return tabulate(table_data, headers=headers, tablefmt="plain")


def format_report(report: StreamReport, output_format: str = "table") -> str:
    if output_format == "json":
        return _dump(report.as_dict())
    table_data = [
        ["emitted", report.emitted],
        ["partitions_read", ", ".join(report.partitions_read) or "-"],
        ["missing", ", ".join(report.missing) or "-"],
        ["failed", ", ".join(f"{path} ({reason})" for path, reason in report.failed.items()) or "-"],
        ["skipped", ", ".join(report.skipped) or "-"],
        ["limit_reached", report.limit_reached],
        ["cancelled", report.cancelled],
    ]
    return tabulate(table_data, tablefmt="plain")


def format_records(records: Sequence[Mapping[str, Any]], output_format: str = "table") -> str:
    if output_format == "json":
        return _dump(list(records))
    if not records:
        return "No matching records."
    headers = list(dict.fromkeys(key for record in records for key in record))
    table_data = [[record.get(name, "-") for name in headers] for record in records]
    return tabulate(table_data, headers=headers, tablefmt="plain")


def format_stats(stats: Mapping[str, Any], output_format: str = "table") -> str:
    if output_format == "json":
        return _dump(dict(stats))
    return tabulate([[key, value] for key, value in stats.items()], tablefmt="plain")


def format_schema(fields: Iterable[FieldInfo], output_format: str = "table") -> str:
    rows = list(fields)
    if output_format == "json":
        return _dump([{"name": f.name, "type": f.type, "nullable": f.nullable} for f in rows])
    if not rows:
        return "Schema unavailable."
    return tabulate(
        [[f.name, f.type, f.nullable] for f in rows],
        headers=["name", "type", "nullable"],
        tablefmt="plain",
    )


def format_status(status: Dict[str, Any], output_format: str = "table") -> str:
    if output_format == "json":
        return _dump(status)
    flat: List[List[Any]] = []
    for key, value in status.items():
        if isinstance(value, Mapping):
            flat.extend([f"{key}.{inner}", item] for inner, item in value.items())
        else:
            flat.append([key, value])
    return tabulate(flat, tablefmt="plain")


__all__ = [
    "format_catalog",
    "format_records",
    "format_report",
    "format_schema",
    "format_stats",
    "format_status",
]
