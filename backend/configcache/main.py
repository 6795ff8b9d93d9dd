"""
Operator command line for the configuration cache.

Every command loads configuration from the environment (and ``.env``),
runs against the configured database and Valkey instance, and closes its
connections before exiting.

Exit codes: 0 on success, 1 on store/cache failures, 2 on invalid input.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .database.config import close_database, initialize_database
from .exceptions import ConfigCacheError, ValidationError
from .services.invalidation_engine import (
    InvalidationEngine,
    close_global_invalidation_engine,
    get_invalidation_engine,
)
from .services.validation import validate_identifiers, validate_page, validate_path
from .utils.config import get_config
from .utils.logging import setup_logging

T = TypeVar("T")

# Initialize typer app and rich console
app = typer.Typer(help="Tenant-scoped configuration cache with dependency-driven invalidation")
console = Console()


def _fail(message: str, code: int) -> None:
    console.print(f"[red]✗ {message}[/red]")
    raise typer.Exit(code=code)


def _run(
    action: Callable[[InvalidationEngine], Awaitable[T]],
    precheck: Optional[Callable[[], None]] = None,
) -> T:
    """Run one engine action with the global engine, closing it afterwards."""
    async def runner() -> T:
        try:
            engine = await get_invalidation_engine()
            return await action(engine)
        finally:
            await close_global_invalidation_engine()

    try:
        if precheck is not None:
            precheck()
        return asyncio.run(runner())
    except ValidationError as e:
        _fail(str(e), code=2)
    except ConfigCacheError as e:
        _fail(f"{type(e).__name__}: {e}", code=1)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped[/dim]")
        raise typer.Exit(code=0)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    )
):
    """Configure logging from the environment before any command runs."""
    try:
        config = get_config()
    except ValueError as e:
        _fail(str(e), code=2)
    setup_logging(config.log_level, debug=config.debug or verbose)


@app.command("init-db")
def init_db():
    """Create the configs table if it does not exist."""
    async def runner():
        try:
            db_config = await initialize_database(database_url=get_config().database_url, create_tables=True)
            return db_config.get_connection_info()
        finally:
            await close_database()

    try:
        info = asyncio.run(runner())
    except ConfigCacheError as e:
        _fail(f"{type(e).__name__}: {e}", code=1)
    console.print(f"[green]✓[/green] Tables ready on [cyan]{info['database_url']}[/cyan]")


@app.command("set")
def set_value(
    tenant_id: str = typer.Argument(..., help="Tenant identifier"),
    config_id: str = typer.Argument(..., help="Config identifier"),
    path: str = typer.Argument(..., help="Node path, e.g. /settings/theme/color"),
    value: str = typer.Argument(..., help="Value to store"),
    dependencies: Optional[List[str]] = typer.Option(
        None,
        "--dep",
        "-d",
        help="Path this node depends on (repeatable)"
    ),
    user_id: Optional[str] = typer.Option(
        None,
        "--user",
        "-u",
        help="Actor recorded on the update event"
    )
):
    """Write a value, invalidate affected cache entries and publish the update."""
    def precheck():
        validate_identifiers(tenant_id, config_id)
        validate_path(path)

    result = _run(
        lambda engine: engine.write(tenant_id, config_id, path, value, dependencies or [], user_id),
        precheck,
    )

    console.print(f"[green]✓[/green] {result.status} [bold]{result.path}[/bold] → [yellow]{result.version}[/yellow]")
    console.print(f"[dim]Invalidated:[/dim] {', '.join(result.invalidated)}")
    if not result.published:
        console.print("[yellow]⚠ Update event could not be published[/yellow]")


@app.command("get")
def get_tree(
    tenant_id: str = typer.Argument(..., help="Tenant identifier"),
    config_id: str = typer.Argument(..., help="Config identifier"),
    path: Optional[str] = typer.Option(
        None,
        "--path",
        "-p",
        help="Only include nodes whose path starts with this prefix"
    )
):
    """Print the config tree."""
    tree = _run(
        lambda engine: engine.get(tenant_id, config_id, path),
        lambda: validate_identifiers(tenant_id, config_id),
    )
    console.print_json(data=tree)


@app.command("node")
def get_node(
    tenant_id: str = typer.Argument(..., help="Tenant identifier"),
    config_id: str = typer.Argument(..., help="Config identifier"),
    path: str = typer.Argument(..., help="Node path")
):
    """Print one node's value and version."""
    def precheck():
        validate_identifiers(tenant_id, config_id)
        validate_path(path)

    entry = _run(lambda engine: engine.get_node(tenant_id, config_id, path), precheck)
    if entry is None:
        _fail(f"No value at {path}", code=1)
    console.print(f"[bold]{path}[/bold] = [cyan]{entry.value}[/cyan] [dim]({entry.version})[/dim]")


@app.command("invalidate")
def invalidate(
    tenant_id: str = typer.Argument(..., help="Tenant identifier"),
    config_id: str = typer.Argument(..., help="Config identifier"),
    path: str = typer.Argument(..., help="Node path"),
    user_id: Optional[str] = typer.Option(
        None,
        "--user",
        "-u",
        help="Actor recorded on the update event"
    )
):
    """Drop a node's cache entry and its one-hop neighbours' and publish the update."""
    def precheck():
        validate_identifiers(tenant_id, config_id)
        validate_path(path)

    invalidated = _run(lambda engine: engine.invalidate(tenant_id, config_id, path, user_id), precheck)
    console.print(f"[green]✓[/green] Invalidated {', '.join(invalidated)}")


@app.command("nodes")
def list_nodes(
    tenant_id: str = typer.Argument(..., help="Tenant identifier"),
    config_id: str = typer.Argument(..., help="Config identifier"),
    limit: int = typer.Option(100, "--limit", "-l", help="Page size"),
    offset: int = typer.Option(0, "--offset", "-o", help="Page start")
):
    """List cached nodes with their versions and dependency edges."""
    def precheck():
        validate_identifiers(tenant_id, config_id)
        validate_page(limit, offset)

    report = _run(lambda engine: engine.list_cached_nodes(tenant_id, config_id, limit, offset), precheck)

    table = Table(title=f"Cached nodes for {tenant_id}/{config_id}", box=box.ROUNDED)
    table.add_column("Path", style="cyan")
    table.add_column("Version", style="yellow")
    table.add_column("Dependencies")
    table.add_column("Dependents")
    table.add_column("Updated", style="dim")

    for item in report.metrics:
        meta = item.metadata
        table.add_row(
            item.path,
            meta.version,
            ", ".join(meta.dependencies) or "-",
            ", ".join(meta.dependents) or "-",
            meta.updated_at.isoformat() if meta.updated_at else "-",
        )

    console.print(table)
    console.print(
        f"[dim]{len(report.metrics)} of {len(report.cached_nodes)} cached nodes · "
        f"hits {report.cache_stats.get('hits', 0)} · misses {report.cache_stats.get('misses', 0)}[/dim]"
    )


@app.command("watch")
def watch(
    tenant_id: str = typer.Argument(..., help="Tenant identifier"),
    config_id: str = typer.Argument(..., help="Config identifier"),
    pattern: Optional[str] = typer.Option(
        None,
        "--pattern",
        help="Path glob, e.g. /settings/*"
    )
):
    """Print update batches as they are published until interrupted."""
    async def deliver(connection_id: str, events: List[Any]) -> None:
        for event in events:
            console.print(
                f"[magenta]{event['action']}[/magenta] [bold]{event['path']}[/bold] "
                f"[yellow]{event['version']}[/yellow] [dim]by {event['userId']}[/dim]"
            )

    async def action(engine: InvalidationEngine) -> None:
        engine.event_bus.deliver = deliver
        engine.event_bus.subscribe("cli", tenant_id, config_id, pattern)
        await engine.event_bus.start()
        console.print(Panel.fit(
            f"[bold cyan]Watching {tenant_id}/{config_id}[/bold cyan]"
            + (f" [dim]({pattern})[/dim]" if pattern else "")
            + "\n[dim]Ctrl+C to stop[/dim]",
            border_style="cyan",
        ))
        await asyncio.Event().wait()

    _run(action, lambda: validate_identifiers(tenant_id, config_id))


@app.command("health")
def health():
    """Check database and Valkey connectivity."""
    report = _run(lambda engine: engine.health_check())

    table = Table(title="Health", box=box.ROUNDED)
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Details", style="dim")

    cache = report["cache"]
    database = report["database"]
    table.add_row(
        "Valkey",
        "[green]healthy[/green]" if cache["status"] == "healthy" else f"[red]{cache['status']}[/red]",
        "; ".join(cache.get("errors", [])) or "-",
    )
    table.add_row(
        "Database",
        "[green]healthy[/green]" if database["available"] else "[red]unavailable[/red]",
        f"{database['database_type']} {database['database_url']}",
    )
    console.print(table)

    if report["status"] != "healthy":
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
