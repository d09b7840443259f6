"""CLI for QueryForge."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated, Any

import sqlglot
import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table
from sqlglot.errors import ParseError, TokenError

from queryforge.config import get_settings
from queryforge.errors import QueryForgeError
from queryforge.executor.batch import BatchCoordinator
from queryforge.executor.coordinator import (
    ExecutionCoordinator,
    ExecutionPlan,
    ExecutionStatus,
    plan_execution,
)
from queryforge.executor.http_client import QueryClient, extract_sql
from queryforge.models.query import CompiledQuery
from queryforge.models.state import AnalysisState
from queryforge.parser.loader import load_analysis
from queryforge.store import QueryStateStore

app = typer.Typer(
    name="qf",
    help="QueryForge - analysis query compiler and runner",
    no_args_is_help=True,
)
console = Console()

FileArg = Annotated[Path, typer.Argument(help="Analysis YAML file")]
UrlOption = Annotated[str | None, typer.Option("--url", "-u", help="Query API base url")]
TokenOption = Annotated[str | None, typer.Option("--token", help="API token")]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def make_client(url: str | None = None, token: str | None = None) -> QueryClient:
    settings = get_settings()
    return QueryClient(
        url or settings.api_url,
        token or settings.api_token,
        timeout=settings.timeout_seconds,
    )


def _load(file: Path) -> AnalysisState:
    try:
        return load_analysis(file)
    except QueryForgeError as e:
        console.print(f"[red]Error loading analysis: {e}[/red]")
        raise typer.Exit(1)


def _print_validation(plan: ExecutionPlan) -> None:
    if plan.validation is None:
        return
    for issue in plan.validation.errors:
        console.print(f"  [red]error[/red] {issue.code}: {issue.message}")
    for issue in plan.validation.warnings:
        console.print(f"  [yellow]warning[/yellow] {issue.code}: {issue.message}")


def _require_ready(plan: ExecutionPlan) -> None:
    if plan.ready:
        return
    console.print("[red]Analysis is not ready to run:[/red]")
    if plan.validation is None or plan.validation.is_valid:
        console.print("  add at least one metric or breakdown")
    _print_validation(plan)
    raise typer.Exit(1)


@app.command("compile")
def compile_analysis(file: FileArg) -> None:
    """Print the query payload(s) the analysis would send."""
    plan = plan_execution(_load(file))
    _require_ready(plan)

    payloads = plan.payloads()
    output: Any = payloads[0] if len(payloads) == 1 else payloads
    console.print(json.dumps(output, indent=2, default=str))


@app.command()
def validate(file: FileArg) -> None:
    """Check that the analysis is complete enough to run."""
    state = _load(file)
    plan = plan_execution(state)
    _require_ready(plan)

    _print_validation(plan)
    query_count = len(plan.queries)
    console.print(
        f"[green]{file.name} is valid: {plan.mode.value} analysis with "
        f"{query_count} {'query' if query_count == 1 else 'queries'}[/green]"
    )


@app.command()
def run(
    file: FileArg,
    url: UrlOption = None,
    token: TokenOption = None,
    output: Annotated[
        str, typer.Option("--output", "-o", help="Output format: table, json")
    ] = "table",
    refresh: Annotated[bool, typer.Option("--refresh", help="Bypass the server cache")] = False,
) -> None:
    """Execute the analysis against the query API."""
    state = _load(file)
    _require_ready(plan_execution(state))

    result = asyncio.run(_execute(state, url, token, refresh))

    if result.status == ExecutionStatus.ERROR:
        console.print(f"[red]Query error: {result.error}[/red]")
        raise typer.Exit(1)
    if result.error is not None:
        console.print(f"[yellow]Some queries failed: {result.error}[/yellow]")

    _output_rows(result.results, output, result.execution_time_ms)


async def _execute(state: AnalysisState, url: str | None, token: str | None, refresh: bool):
    settings = get_settings()
    async with make_client(url, token) as client:
        batcher = BatchCoordinator(client.batch_load, delay=settings.batch_delay)
        coordinator = ExecutionCoordinator(
            QueryStateStore(state), client, batcher=batcher, debounce=settings.debounce
        )
        return await coordinator.refetch(bust_cache=refresh)


def _output_rows(rows: list[dict[str, Any]], output_format: str, elapsed_ms: float | None) -> None:
    if output_format == "json":
        console.print(json.dumps(rows, indent=2, default=str))
        return

    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)

    table = Table(title=f"Query Results ({len(rows)} rows, {elapsed_ms}ms)")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*[str(row.get(c, "")) for c in columns])
    console.print(table)


def format_sql(sql: str, dialect: str | None = None) -> str:
    """Pretty print sql with sqlglot, or return it untouched if it won't parse."""
    try:
        return sqlglot.parse_one(sql, dialect=dialect).sql(dialect=dialect, pretty=True)
    except (ParseError, TokenError):
        return sql


@app.command("show-sql")
def show_sql(
    file: FileArg,
    url: UrlOption = None,
    token: TokenOption = None,
    dialect: Annotated[
        str, typer.Option("--dialect", help="SQL dialect used for formatting")
    ] = "postgres",
) -> None:
    """Ask the server for the sql each query compiles to."""
    plan = plan_execution(_load(file))
    _require_ready(plan)

    try:
        statements = asyncio.run(_fetch_sql(plan, url, token))
    except QueryForgeError as e:
        console.print(f"[red]Error generating SQL: {e}[/red]")
        raise typer.Exit(1)

    for index, sql in enumerate(statements):
        if len(statements) > 1:
            console.print(f"[bold]-- {plan.labels[index] if plan.labels else index + 1}[/bold]")
        if sql is None:
            console.print("[yellow]Server returned no sql for this query[/yellow]")
            continue
        console.print(Syntax(format_sql(sql, dialect), "sql", theme="monokai", line_numbers=True))


async def _fetch_sql(plan: ExecutionPlan, url: str | None, token: str | None) -> list[str | None]:
    statements = []
    async with make_client(url, token) as client:
        for query in plan.queries:
            # mode queries have no /sql, dry-run reports theirs
            if isinstance(query, CompiledQuery):
                body = await client.sql(query)
            else:
                body = await client.dry_run(query)
            statements.append(extract_sql(body))
    return statements


@app.command()
def meta(url: UrlOption = None, token: TokenOption = None) -> None:
    """List cubes with their measures and dimensions."""
    try:
        cube_meta = asyncio.run(_fetch_meta(url, token))
    except QueryForgeError as e:
        console.print(f"[red]Error fetching metadata: {e}[/red]")
        raise typer.Exit(1)

    if not cube_meta.cubes:
        console.print("[yellow]No cubes defined[/yellow]")
        return

    table = Table(title="Cubes")
    table.add_column("Member", style="cyan")
    table.add_column("Kind", style="green")
    table.add_column("Type", style="yellow")
    table.add_column("Title")

    for cube in cube_meta.cubes:
        for measure in cube.measures:
            table.add_row(measure.name, "measure", measure.type or "-", measure.label)
        for dimension in cube.dimensions:
            table.add_row(dimension.name, "dimension", dimension.type or "-", dimension.label)

    console.print(table)


async def _fetch_meta(url: str | None, token: str | None):
    async with make_client(url, token) as client:
        return await client.meta()


if __name__ == "__main__":
    app()
