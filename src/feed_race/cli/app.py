from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from feed_race.core.config import Settings
from feed_race.core.enums import OutputFormat, RunStatus
from feed_race.core.errors import EndpointStoreError, InsufficientActiveSources
from feed_race.core.logging import configure_logging
from feed_race.core.models import Endpoint
from feed_race.pipeline.controller import RunController, RunReport
from feed_race.report.render import render_table, report_to_csv, report_to_json
from feed_race.sources.endpoints import EndpointRecord, EndpointStore
from feed_race.sources.rpc import probe_endpoint

app = typer.Typer(help="Race slot/block push subscriptions and rank providers by who delivers first")
console = Console()


def _split_csv(value: str | None) -> list[str]:
    if value is None:
        return []
    return [item.strip() for item in value.split(",")]


def _parse_endpoint_args(endpoints: str, tokens: str | None, names: str | None) -> list[Endpoint]:
    """Build endpoints from comma-aligned --endpoints/--tokens/--names lists."""
    urls = [url for url in _split_csv(endpoints) if url]
    if not urls:
        raise typer.BadParameter("at least one endpoint URL is required")
    token_list = _split_csv(tokens)
    name_list = _split_csv(names)

    parsed: list[Endpoint] = []
    for index, url in enumerate(urls):
        name = name_list[index] if index < len(name_list) and name_list[index] else f"Endpoint-{index + 1}"
        token = token_list[index] if index < len(token_list) else ""
        parsed.append(Endpoint(id=name, display_name=name, address=url, credential=token))

    seen: set[str] = set()
    for endpoint in parsed:
        if endpoint.id in seen:
            raise typer.BadParameter(f"duplicate endpoint name: {endpoint.id}")
        seen.add(endpoint.id)
    return parsed


def _load_store(settings: Settings, config: Path | None) -> EndpointStore:
    store = EndpointStore(config or settings.endpoints_file)
    try:
        return store.load()
    except EndpointStoreError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


def _resolve_endpoints(
    *,
    settings: Settings,
    endpoints: str | None,
    tokens: str | None,
    names: str | None,
    config: Path | None,
    status: str | None,
) -> list[Endpoint]:
    if endpoints is not None:
        return _parse_endpoint_args(endpoints, tokens, names)
    stored = _load_store(settings, config).list_endpoints(status=status)
    if not stored:
        raise typer.BadParameter("no --endpoints given and the endpoint store has no matching entries")
    return stored


def _emit_report(report: RunReport, output_format: OutputFormat, output: Path | None) -> None:
    if output_format == OutputFormat.TABLE:
        console.print(render_table(report))
        try:
            ranking = report.require_ranking()
        except InsufficientActiveSources as exc:
            console.print(f"[red]{exc}[/red]")
        else:
            winner = ranking[0]
            console.print(f"Fastest: [bold]{escape(winner.display_name)}[/bold] (first {winner.first_percent:.1f}%)")
        for source_id, reason in report.failures.items():
            console.print(f"[yellow]{escape(source_id)}[/yellow]: {escape(reason)}")
        return

    text = report_to_json(report) if output_format == OutputFormat.JSON else report_to_csv(report)
    if output is None:
        console.print(text, markup=False, highlight=False, soft_wrap=True)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    console.print(f"Report written to [bold]{output}[/bold]")


@app.command("race")
def race(
    endpoints: str | None = typer.Option(default=None, help="Comma-separated websocket endpoint URLs"),
    tokens: str | None = typer.Option(default=None, help="Comma-separated API tokens, aligned with --endpoints"),
    names: str | None = typer.Option(default=None, help="Comma-separated endpoint names, aligned with --endpoints"),
    duration: int | None = typer.Option(default=None, min=1, help="Test duration in seconds"),
    verbose: bool = typer.Option(False, "--verbose", help="Log every scored contribution"),
    output_format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", help="Report format"),
    output: Path | None = typer.Option(default=None, help="Write the JSON/CSV report to this file"),
    config: Path | None = typer.Option(default=None, help="Endpoint store file (default: FEED_RACE_ENDPOINTS_FILE)"),
    status: str | None = typer.Option("active", help="Only race stored endpoints with this status"),
) -> None:
    settings = Settings()
    configure_logging("DEBUG" if verbose else settings.log_level)

    selected = _resolve_endpoints(
        settings=settings,
        endpoints=endpoints,
        tokens=tokens,
        names=names,
        config=config,
        status=status,
    )
    controller = RunController(selected, settings=settings, duration_seconds=duration)
    try:
        report = asyncio.run(controller.run())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; reporting what was scored so far[/yellow]")
        report = controller.report(completed=False)

    _emit_report(report, output_format, output)
    if report.status == RunStatus.NO_SOURCES:
        raise typer.Exit(code=1)


@app.command("endpoints")
def list_endpoints(
    config: Path | None = typer.Option(default=None, help="Endpoint store file"),
    status: str | None = typer.Option(default=None, help="Filter by status"),
    provider: str | None = typer.Option(default=None, help="Filter by provider"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    store = _load_store(settings, config)
    records = store.records(status=status, provider=provider)
    if not records:
        console.print(f"No endpoints in {store.path}")
        return

    table = Table(title=f"Endpoints ({store.path})")
    for column in ("ID", "Name", "Provider", "Region", "Status", "URL"):
        table.add_column(column)
    for record in records:
        cells = (record.id, record.name, record.provider, record.region, record.status, record.url)
        table.add_row(*(escape(cell) for cell in cells))
    console.print(table)


@app.command("add-endpoint")
def add_endpoint(
    endpoint_id: str = typer.Argument(help="Unique endpoint id"),
    url: str = typer.Argument(help="Websocket or HTTP RPC URL"),
    name: str | None = typer.Option(default=None, help="Display name (default: id)"),
    token: str = typer.Option("", help="API token appended as api-key"),
    provider: str = typer.Option("Unknown"),
    region: str = typer.Option("Unknown"),
    status: str = typer.Option("active"),
    config: Path | None = typer.Option(default=None, help="Endpoint store file"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    store = _load_store(settings, config)
    try:
        record = EndpointRecord(
            id=endpoint_id,
            name=name or endpoint_id,
            url=url,
            token=token,
            provider=provider,
            region=region,
            status=status,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    try:
        store.add(record)
    except EndpointStoreError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]Added {record.id}[/green] to {store.path}")


@app.command("remove-endpoint")
def remove_endpoint(
    endpoint_id: str = typer.Argument(help="Endpoint id to remove"),
    config: Path | None = typer.Option(default=None, help="Endpoint store file"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    store = _load_store(settings, config)
    try:
        store.remove(endpoint_id)
    except EndpointStoreError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    console.print(f"Removed {endpoint_id}")


@app.command("probe")
def probe(
    endpoints: str | None = typer.Option(default=None, help="Comma-separated endpoint URLs"),
    tokens: str | None = typer.Option(default=None),
    names: str | None = typer.Option(default=None),
    config: Path | None = typer.Option(default=None, help="Endpoint store file"),
    status: str | None = typer.Option("active", help="Only probe stored endpoints with this status"),
) -> None:
    """
    Check each endpoint answers getSlot over HTTP before spending a race on it.
    """
    settings = Settings()
    configure_logging(settings.log_level)
    selected = _resolve_endpoints(
        settings=settings,
        endpoints=endpoints,
        tokens=tokens,
        names=names,
        config=config,
        status=status,
    )

    table = Table(title="Endpoint probe")
    for column in ("Endpoint", "Healthy", "Slot", "Round trip", "Error"):
        table.add_column(column)
    unhealthy = 0
    for endpoint in selected:
        result = probe_endpoint(
            endpoint,
            timeout_seconds=settings.probe_timeout_seconds,
            retries=settings.probe_max_retries,
            commitment=settings.commitment,
        )
        if not result.healthy:
            unhealthy += 1
        table.add_row(
            endpoint.display_name,
            "[green]yes[/green]" if result.healthy else "[red]no[/red]",
            str(result.slot) if result.slot is not None else "-",
            f"{result.latency_ms:.0f}ms" if result.latency_ms is not None else "-",
            result.error or "",
        )
    console.print(table)
    if unhealthy:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
