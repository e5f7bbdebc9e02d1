from __future__ import annotations

import json
from typing import Any

import polars as pl
from rich.markup import escape
from rich.table import Table

from feed_race.core.enums import RunStatus
from feed_race.engine.stats import SourceSnapshot
from feed_race.pipeline.controller import RunReport

_FRAME_SCHEMA: dict[str, Any] = {
    "rank": pl.Int64,
    "source_id": pl.Utf8,
    "display_name": pl.Utf8,
    "status": pl.Utf8,
    "first_count": pl.Int64,
    "measured_count": pl.Int64,
    "first_percent": pl.Float64,
    "avg_trailing_latency_ms": pl.Float64,
    "p50_trailing_latency_ms": pl.Float64,
    "p95_trailing_latency_ms": pl.Float64,
    "max_trailing_latency_ms": pl.Float64,
}

_STATUS_MESSAGES = {
    RunStatus.RANKED: "ranked",
    RunStatus.INSUFFICIENT_DATA: "Insufficient data for comparison",
    RunStatus.NO_SOURCES: "No source delivered a single event",
}


def _round(value: float | None, digits: int = 2) -> float | None:
    return None if value is None else round(value, digits)


def _source_row(source: SourceSnapshot, rank: int | None) -> dict[str, Any]:
    return {
        "rank": rank,
        "source_id": source.source_id,
        "display_name": source.display_name,
        "status": source.status.value if source.status is not None else None,
        "first_count": source.first_count,
        "measured_count": source.measured_count,
        "first_percent": _round(source.first_percent),
        "avg_trailing_latency_ms": _round(source.avg_trailing_latency_ms),
        "p50_trailing_latency_ms": _round(source.p50_trailing_latency_ms),
        "p95_trailing_latency_ms": _round(source.p95_trailing_latency_ms),
        "max_trailing_latency_ms": _round(source.max_trailing_latency_ms),
    }


def report_rows(report: RunReport) -> list[dict[str, Any]]:
    """Ranked sources first, then unranked ones in configuration order."""
    ranking = report.ranking
    ranked_ids = {source.source_id for source in ranking}
    rows = [_source_row(source, index) for index, source in enumerate(ranking, start=1)]
    rows.extend(_source_row(source, None) for source in report.snapshot.sources if source.source_id not in ranked_ids)
    return rows


def report_to_frame(report: RunReport) -> pl.DataFrame:
    return pl.DataFrame(report_rows(report), schema=_FRAME_SCHEMA)


def report_to_csv(report: RunReport) -> str:
    return report_to_frame(report).write_csv()


def report_to_dict(report: RunReport) -> dict[str, Any]:
    return {
        "status": report.status.value,
        "started_at": report.started_at.isoformat(),
        "duration_seconds": report.duration_seconds,
        "completed": report.completed,
        "scored_buckets": report.snapshot.scored_buckets,
        "sources": report.snapshot.as_mapping(),
        "ranking": report_rows(report),
        "failures": dict(report.failures),
    }


def report_to_json(report: RunReport) -> str:
    return json.dumps(report_to_dict(report), indent=2)


def _fmt(value: float | None, suffix: str = "") -> str:
    if value is None:
        return "-"
    return f"{value:.1f}{suffix}"


def render_table(report: RunReport) -> Table:
    title = f"Performance results ({report.snapshot.scored_buckets} scored keys)"
    if not report.completed:
        title += " (partial)"
    table = Table(title=title, caption=_STATUS_MESSAGES[report.status])
    table.add_column("Rank", justify="right")
    table.add_column("Endpoint")
    table.add_column("Status")
    table.add_column("First", justify="right")
    table.add_column("Measured", justify="right")
    table.add_column("Avg trailing", justify="right")
    table.add_column("P95 trailing", justify="right")

    for row in report_rows(report):
        rank = row["rank"]
        name = escape(row["display_name"])
        table.add_row(
            str(rank) if rank is not None else "-",
            f"[bold green]{name}[/bold green]" if rank == 1 else name,
            row["status"] or "-",
            _fmt(row["first_percent"], "%"),
            str(row["measured_count"]),
            _fmt(row["avg_trailing_latency_ms"], "ms"),
            _fmt(row["p95_trailing_latency_ms"], "ms"),
        )
    return table
