#!/usr/bin/env python3
"""
Snaxel CLI

Typer/Rich-powered command-line interface for running multi-source searches
through the aggregation service and for serving the HTTP API.
"""

import json
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from snaxel.services.aggregator.service import AggregatorService, build_aggregator
from snaxel.services.shared.errors import RequestError, SnaxelError, format_user_error
from snaxel.services.shared.settings import get_settings
from snaxel.tools.search.schema import Envelope, SourceResult, Summary


console = Console()

app = typer.Typer(help="Snaxel multi-source search CLI")


def _render_source(name: str, result: SourceResult, max_rows: int) -> None:
    if not result.ok:
        console.print(
            f"[bold red]{name}[/bold red] failed "
            f"([italic]{result.failure.kind.value}[/italic]): {escape(result.failure.message)}"
        )
        return

    table = Table(title=f"{name} ({result.count})", title_justify="left", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Title", style="bold")
    table.add_column("URL", style="cyan", overflow="fold")
    for idx, item in enumerate(result.results[:max_rows], 1):
        table.add_row(str(idx), item.title, item.url)
    console.print(table)


def _render_envelope(envelope: Envelope, max_rows: int, summary: Optional[Summary] = None) -> None:
    console.print(
        Panel.fit(
            f"[bold cyan]Snaxel Search[/bold cyan]\n\n"
            f"[bold]Query:[/bold] {envelope.query}\n"
            f"[bold]Sources:[/bold] {', '.join(envelope.sources)}\n"
            f"[bold]Total results:[/bold] {envelope.total_results}",
            border_style="cyan",
        )
    )
    for name, result in envelope.sources.items():
        _render_source(name, result, max_rows)
    if summary is not None and summary.has_failures:
        console.print(f"[yellow]Failed sources:[/yellow] {', '.join(summary.failed)}")


def _fail(exc: Exception) -> None:
    style = "yellow" if isinstance(exc, RequestError) else "bold red"
    console.print(f"[{style}]snaxel:[/{style}] {escape(format_user_error(exc, include_details=True))}")
    raise typer.Exit(code=2 if isinstance(exc, RequestError) else 1)


def _aggregator() -> AggregatorService:
    return build_aggregator(get_settings())


@app.command("search")
def search_command(
    query: str = typer.Option(..., "--query", "-q", help="Search text."),
    sources: Optional[List[str]] = typer.Option(
        None,
        "--source",
        "-s",
        help="Source to include (repeatable). Defaults to the configured default sources.",
    ),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1, help="Results per source."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw envelope as JSON."),
    max_rows: int = typer.Option(5, "--rows", help="Rows shown per source table."),
) -> None:
    """Search the given sources and print the merged envelope."""
    requested = sources or get_settings().search.default_sources
    with _aggregator() as aggregator:
        try:
            envelope = aggregator.run(query, requested, limit=limit)
        except SnaxelError as exc:
            _fail(exc)

    if as_json:
        console.print_json(envelope.model_dump_json())
    else:
        _render_envelope(envelope, max_rows)


@app.command("all")
def search_all_command(
    query: str = typer.Option(..., "--query", "-q", help="Search text."),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1, help="Results per source."),
    as_json: bool = typer.Option(False, "--json", help="Print envelope and summary as JSON."),
    max_rows: int = typer.Option(5, "--rows", help="Rows shown per source table."),
) -> None:
    """Search every known source and print the envelope plus a summary."""
    with _aggregator() as aggregator:
        try:
            envelope, summary = aggregator.run_all(query, limit=limit)
        except SnaxelError as exc:
            _fail(exc)

    if as_json:
        console.print_json(json.dumps({
            "data": envelope.model_dump(mode="json"),
            "summary": summary.model_dump(mode="json"),
        }))
    else:
        _render_envelope(envelope, max_rows, summary=summary)


@app.command("source")
def search_source_command(
    source: str = typer.Argument(..., help="Source identifier (web, images, videos, news, books)."),
    query: str = typer.Option(..., "--query", "-q", help="Search text."),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1, help="Number of results."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw source result as JSON."),
    max_rows: int = typer.Option(10, "--rows", help="Rows shown in the table."),
) -> None:
    """Search exactly one source, bypassing the cache."""
    with _aggregator() as aggregator:
        try:
            result = aggregator.search_single(source, query, limit=limit)
        except SnaxelError as exc:
            _fail(exc)

    if as_json:
        console.print_json(result.model_dump_json())
    else:
        _render_source(source, result, max_rows)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command("serve")
def serve_command(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port."),
) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "snaxel.services.api.fastapi_server:app",
        host=host or settings.server.host,
        port=port or settings.server.port,
    )


def main() -> None:
    """Entrypoint used by `python -m snaxel.cli` or the `snaxel` console script."""
    app()


if __name__ == "__main__":
    main()
