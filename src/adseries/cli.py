"""Command line interface for querying advertising time series partitions."""
import asyncio
import json
import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import typer

from .config import ConfigLoader
from .engine import QueryEngine, create_engine
from .errors import ConfigurationError, InvalidArgumentError, ObjectStoreError
from .filtering import FilterSpec
from .inspection import (
    format_catalog,
    format_records,
    format_report,
    format_schema,
    format_stats,
    format_status,
)
from .object_store import with_transient_retry
from .retrieval import RetrievalService
from .streaming import NDJSONSink

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stderr,
)

logger = logging.getLogger(__name__)

app = typer.Typer(help="Advertising time series query engine")
catalog_app = typer.Typer(help="Partition catalog commands")
app.add_typer(catalog_app, name="catalog")


def _engine(config_path: Optional[str]) -> QueryEngine:
    try:
        return create_engine(ConfigLoader(config_path).model, retry=with_transient_retry)
    except (ConfigurationError, FileNotFoundError, ValueError) as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=1)


@contextmanager
def _handled_errors() -> Iterator[None]:
    """Turn invalid arguments into exit code 2 and store failures into exit code 1."""
    try:
        yield
    except InvalidArgumentError as exc:
        typer.echo(f"Invalid argument: {exc}", err=True)
        raise typer.Exit(code=2)
    except ObjectStoreError as exc:
        typer.echo(f"Object store error: {exc}", err=True)
        raise typer.Exit(code=1)


def _spec(
    start: Optional[str],
    end: Optional[str],
    platform: Optional[str] = None,
    genre: Optional[str] = None,
    advertiser: Optional[str] = None,
    min_play_count: Optional[int] = None,
    min_cost: Optional[float] = None,
    limit: Optional[int] = None,
    default_limit: Optional[int] = None,
) -> FilterSpec:
    with _handled_errors():
        return FilterSpec.from_params(
            {
                "start": start,
                "end": end,
                "platform": platform,
                "genre": genre,
                "advertiser": advertiser,
                "minPlayCount": min_play_count,
                "minCost": min_cost,
                "limit": limit,
            },
            default_limit=default_limit,
        )


@app.command()
def stream(
    start: Optional[str] = typer.Option(None, "--start", help="YYYY-MM or YYYY-MM-DD"),
    end: Optional[str] = typer.Option(None, "--end", help="YYYY-MM or YYYY-MM-DD"),
    period: Optional[str] = typer.Option(None, "--period", help="Single month to stream"),
    platform: Optional[str] = typer.Option(None, "--platform"),
    genre: Optional[str] = typer.Option(None, "--genre"),
    advertiser: Optional[str] = typer.Option(None, "--advertiser"),
    min_play_count: Optional[int] = typer.Option(None, "--min-play-count"),
    min_cost: Optional[float] = typer.Option(None, "--min-cost"),
    limit: Optional[int] = typer.Option(None, "--limit"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Write matching records to stdout as newline-delimited JSON."""
    engine = _engine(config_path)
    if period:
        start = end = period
    spec = _spec(start, end, platform, genre, advertiser, min_play_count, min_cost, limit)
    sink = NDJSONSink(sys.stdout.write, sys.stdout.flush)
    with _handled_errors():
        paths = engine.resolve_paths(spec)
    logger.info("Streaming %s partition(s) for %s", len(paths), spec.date_range)
    report = asyncio.run(engine.emit(paths, spec, sink))
    typer.echo(format_report(report), err=True)


@app.command()
def query(
    start: str = typer.Option(..., "--start", help="YYYY-MM or YYYY-MM-DD"),
    end: Optional[str] = typer.Option(None, "--end"),
    platform: Optional[str] = typer.Option(None, "--platform"),
    genre: Optional[str] = typer.Option(None, "--genre"),
    advertiser: Optional[str] = typer.Option(None, "--advertiser"),
    min_play_count: Optional[int] = typer.Option(None, "--min-play-count"),
    min_cost: Optional[float] = typer.Option(None, "--min-cost"),
    limit: Optional[int] = typer.Option(None, "--limit"),
    totals: bool = typer.Option(False, "--totals", help="Print aggregate totals instead of rows"),
    output_format: str = typer.Option("table", "--format", help="table or json"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Run a bounded query and print the collected records."""
    engine = _engine(config_path)
    spec = _spec(
        start,
        end,
        platform,
        genre,
        advertiser,
        min_play_count,
        min_cost,
        limit,
        default_limit=engine.config.streaming.default_limit,
    )
    with _handled_errors():
        if totals:
            stats, report = asyncio.run(engine.totals(spec))
            typer.echo(format_stats(stats, output_format=output_format))
        else:
            result = asyncio.run(engine.query(spec))
            if output_format == "json":
                typer.echo(json.dumps(result.as_dict(), indent=2, ensure_ascii=False, default=str))
                return
            typer.echo(format_records(result.records))
            report = result.report
    typer.echo(format_report(report), err=True)


@catalog_app.command("list")
def catalog_list(
    start: Optional[str] = typer.Option(None, "--start"),
    end: Optional[str] = typer.Option(None, "--end"),
    output_format: str = typer.Option("table", "--format", help="table or json"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Show the partitions known to the manifest."""
    engine = _engine(config_path)
    with _handled_errors():
        engine.catalog.build()
        if start or end:
            entries = engine.catalog.select(start or end, end or start)
        else:
            entries = engine.catalog.entries()
    typer.echo(format_catalog(entries, output_format=output_format))


@app.command()
def daily(
    start: Optional[str] = typer.Option(None, "--start"),
    end: Optional[str] = typer.Option(None, "--end"),
    output_format: str = typer.Option("table", "--format", help="table or json"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Summarise the daily aggregation file."""
    engine = _engine(config_path)
    spec = _spec(start, end)
    with _handled_errors():
        result = engine.daily_aggregation(spec)
    if output_format == "json":
        typer.echo(json.dumps(result.as_dict(), indent=2, ensure_ascii=False, default=str))
        return
    typer.echo(format_stats(result.stats))


@app.command()
def platforms(
    start: Optional[str] = typer.Option(None, "--start"),
    end: Optional[str] = typer.Option(None, "--end"),
    platform: Optional[str] = typer.Option(None, "--platform"),
    output_format: str = typer.Option("table", "--format", help="table or json"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Per-platform totals from the platform time series file."""
    engine = _engine(config_path)
    spec = _spec(start, end, platform=platform)
    with _handled_errors():
        result = engine.platform_timeseries(spec)
    if output_format == "json":
        typer.echo(json.dumps(result.as_dict(), indent=2, ensure_ascii=False, default=str))
        return
    typer.echo(format_records(result.stats["platforms"]))


@app.command()
def schema(
    period: str = typer.Option(..., "--period", help="Raw partition month, YYYY-MM"),
    output_format: str = typer.Option("table", "--format", help="table or json"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Describe the columns of one raw partition."""
    engine = _engine(config_path)
    with _handled_errors():
        path = engine.partition_path(period)
        fields = engine.schema(path)
    typer.echo(format_schema(fields, output_format=output_format))


@app.command()
def ask(
    question: str = typer.Argument(..., help="Free text question about the ads"),
    platform: Optional[str] = typer.Option(None, "--platform"),
    top_k: Optional[int] = typer.Option(None, "--top-k"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Answer from matching records without a text generator."""
    engine = _engine(config_path)
    service = RetrievalService(engine)
    spec = _spec(None, None, platform=platform, limit=top_k)
    with _handled_errors():
        answer = asyncio.run(service.answer(question, spec))
    typer.echo(answer)


@app.command()
def status(
    output_format: str = typer.Option("table", "--format", help="table or json"),
    config_path: Optional[str] = typer.Option(None, "--config"),
) -> None:
    """Show decoder backend and catalog state."""
    engine = _engine(config_path)
    with _handled_errors():
        engine.catalog.build()
    typer.echo(format_status(engine.status(), output_format=output_format))


if __name__ == "__main__":
    app()
