"""
CLI entry point for projmem.

This module provides the Typer-based administrative interface to a memory
store. Every data command goes through the same Dispatcher an agent uses,
so the CLI sees exactly the same validation, limits, and errors.

Commands:
    call        Invoke any operation with JSON arguments
    stats       Show entity counts, limits, and storage size
    health      Run the integrity check
    recent      List the most recent decisions
    search      Full-text search over decisions
    export      Write a snapshot of the store as JSON
    import      Apply a snapshot (merge or replace)
    purge       Delete everything (asks for the confirmation token)
    vacuum      Reclaim free space
    reindex     Rebuild the decision search index

Architecture Note:
    The CLI is intentionally thin - it resolves configuration, opens a
    MemoryStore, and delegates to the Dispatcher.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from projmem import __version__
from projmem.config import load_config
from projmem.dispatcher import Dispatcher
from projmem.engine import MemoryStore
from projmem.errors import ProjmemError
from projmem.schema import PURGE_CONFIRMATION_TOKEN, ImportMode

# Initialize Typer app with metadata
app = typer.Typer(
    name="projmem",
    help="Persistent project memory for AI-assisted coding sessions.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console()
err_console = Console(stderr=True)


@dataclass
class CLIState:
    """Options shared by every command."""

    db: Optional[str] = None
    config_path: Optional[Path] = None


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]projmem[/bold] version {__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    """Route library logging to stderr through rich."""
    root = logging.getLogger("projmem")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = RichHandler(console=err_console, show_path=False, rich_tracebacks=verbose)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)


@app.callback()
def main(
    ctx: typer.Context,
    db: Annotated[
        Optional[str],
        typer.Option(
            "--db",
            help="Store location (SQLite file, :memory:, or PostgreSQL DSN). Overrides config.",
        ),
    ] = None,
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to a YAML config file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            help="Enable debug logging on stderr.",
        ),
    ] = False,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    projmem - Decisions, patterns, and context that outlive a session.

    Configuration comes from --config, then PROJMEM_* environment
    variables, then --db.
    """
    _configure_logging(verbose)
    ctx.obj = CLIState(db=db, config_path=config_path)


# =============================================================================
# Helpers
# =============================================================================


def _open_store(ctx: typer.Context) -> MemoryStore:
    """Resolve configuration and open the store, exiting 1 on failure."""
    state: CLIState = ctx.obj or CLIState()
    try:
        config = load_config(state.config_path, location=state.db)
        return MemoryStore(config)
    except ProjmemError as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


def _run(dispatcher: Dispatcher, operation: str, arguments: dict[str, Any] | None = None) -> Any:
    """Dispatch an operation and return its data, exiting 1 on failure."""
    result = dispatcher.call(operation, arguments)
    if not result.success:
        err_console.print(f"[red]{result.code}:[/red] {result.message}")
        raise typer.Exit(code=1)
    return result.data


def _truncate(text: str, width: int = 60) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def _print_decisions(decisions: list[dict[str, Any]], title: str) -> None:
    if not decisions:
        console.print("[dim]No decisions found.[/dim]")
        return

    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("ID", style="dim", justify="right")
    table.add_column("Decision", style="cyan")
    table.add_column("Rationale")
    table.add_column("Tags", style="magenta")
    table.add_column("Created", style="dim")

    for d in decisions:
        table.add_row(
            str(d["id"]),
            _truncate(d["text"]),
            _truncate(d["rationale"], 40),
            ", ".join(d["tags"]),
            d["createdAt"][:19],
        )
    console.print(table)


# =============================================================================
# Commands
# =============================================================================


@app.command()
def call(
    ctx: typer.Context,
    operation: Annotated[
        str,
        typer.Argument(help="Operation name, e.g. store_decision."),
    ],
    args_json: Annotated[
        Optional[str],
        typer.Option(
            "--args",
            "-a",
            help="Operation arguments as a JSON object.",
        ),
    ] = None,
) -> None:
    """
    Invoke an operation and print its JSON result.

    Exits 1 when the result is a failure.

    Example:
        $ projmem call set_context --args '{"key": "branch", "value": "main"}'
    """
    arguments: Any = None
    if args_json:
        try:
            arguments = json.loads(args_json)
        except json.JSONDecodeError as e:
            err_console.print(f"[red]--args is not valid JSON: {e}[/red]")
            raise typer.Exit(code=1)

    with _open_store(ctx) as store:
        result = Dispatcher(store).call(operation, arguments)

    print(json.dumps(result.to_dict(), indent=2, default=str))
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def stats(ctx: typer.Context) -> None:
    """Show entity counts against their limits."""
    with _open_store(ctx) as store:
        data = _run(Dispatcher(store), "get_stats")

    limits = data["limits"]
    table = Table(title=f"projmem ({data['backend']})", show_header=True, header_style="bold")
    table.add_column("Entity", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Limit", justify="right", style="dim")

    table.add_row("Decisions", str(data["decisionCount"]), str(limits["maxDecisions"]))
    table.add_row("Patterns", str(data["patternCount"]), str(limits["maxPatterns"]))
    table.add_row("Context keys", str(data["contextKeyCount"]), str(limits["maxContextKeys"]))

    console.print(table)
    console.print(f"[dim]Storage: {data['storageBytes']:,} bytes[/dim]")


@app.command()
def health(ctx: typer.Context) -> None:
    """Run the backing engine's integrity check."""
    with _open_store(ctx) as store:
        data = _run(Dispatcher(store), "health_check")

    console.print("[green]✓[/green] Integrity check passed")
    console.print(f"[dim]  Backend: {data['backend']}[/dim]")
    console.print(f"[dim]  Schema version: {data['schemaVersion']}[/dim]")
    pool = data["pool"]
    console.print(f"[dim]  Pool: {pool['available']}/{pool['size']} available[/dim]")


@app.command()
def recent(
    ctx: typer.Context,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="How many decisions to show.", min=1, max=100),
    ] = 10,
) -> None:
    """List the most recent decisions."""
    with _open_store(ctx) as store:
        data = _run(Dispatcher(store), "get_recent_decisions", {"limit": limit})
    _print_decisions(data["decisions"], "Recent decisions")


@app.command()
def search(
    ctx: typer.Context,
    query: Annotated[str, typer.Argument(help="Search terms.")],
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum results.", min=1, max=100),
    ] = 20,
) -> None:
    """Full-text search over decision text and rationale."""
    with _open_store(ctx) as store:
        data = _run(Dispatcher(store), "search_decisions", {"query": query, "limit": limit})
    _print_decisions(data["decisions"], f"Results for {query!r}")


@app.command("export")
def export_cmd(
    ctx: typer.Context,
    output: Annotated[
        Optional[Path],
        typer.Option(
            "--out",
            "-o",
            help="Write the snapshot to this file instead of stdout.",
            resolve_path=True,
        ),
    ] = None,
) -> None:
    """
    Export the whole store as a JSON snapshot.

    Example:
        $ projmem export --out memory.json
    """
    with _open_store(ctx) as store:
        snapshot = _run(Dispatcher(store), "export_memory")

    text = json.dumps(snapshot, indent=2)
    if output is None:
        print(text)
        return

    output.write_text(text + "\n", encoding="utf-8")
    console.print(
        f"[green]✓[/green] Exported {len(snapshot['decisions'])} decisions, "
        f"{len(snapshot['patterns'])} patterns, {len(snapshot['context'])} context keys "
        f"to {output.name}"
    )


@app.command("import")
def import_cmd(
    ctx: typer.Context,
    snapshot_path: Annotated[
        Path,
        typer.Argument(
            help="Snapshot JSON file produced by export.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    mode: Annotated[
        ImportMode,
        typer.Option("--mode", "-m", help="merge keeps local data; replace purges first."),
    ] = ImportMode.MERGE,
) -> None:
    """
    Import a snapshot into the store.

    Example:
        $ projmem import teammate.json --mode merge
    """
    text = snapshot_path.read_text(encoding="utf-8")
    with _open_store(ctx) as store:
        summary = _run(
            Dispatcher(store), "import_memory", {"snapshot": text, "mode": mode.value}
        )

    console.print(f"[green]✓[/green] Import ({mode.value}) complete")
    console.print(
        f"[dim]Imported: {summary['imported']} | Skipped: {summary['skipped']} | "
        f"Conflicts: {summary['conflicts']} | Evicted: {summary['evicted']}[/dim]"
    )


@app.command()
def purge(
    ctx: typer.Context,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the confirmation prompt."),
    ] = False,
) -> None:
    """Irreversibly delete every decision, pattern, and context entry."""
    if yes:
        token = PURGE_CONFIRMATION_TOKEN
    else:
        token = typer.prompt(f"Type {PURGE_CONFIRMATION_TOKEN} to delete everything")

    with _open_store(ctx) as store:
        data = _run(Dispatcher(store), "purge_memory", {"confirm": token})

    purged = data["purged"]
    console.print(
        f"[yellow]Purged {purged['decisions']} decisions, {purged['patterns']} patterns, "
        f"{purged['context']} context entries[/yellow]"
    )


@app.command()
def vacuum(ctx: typer.Context) -> None:
    """Reclaim free space in the backing store."""
    with _open_store(ctx) as store:
        try:
            store.vacuum()
        except ProjmemError as e:
            err_console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)
    console.print("[green]✓[/green] Vacuum complete")


@app.command()
def reindex(ctx: typer.Context) -> None:
    """Rebuild the decision search index."""
    with _open_store(ctx) as store:
        try:
            store.rebuild_search_index()
        except ProjmemError as e:
            err_console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)
    console.print("[green]✓[/green] Search index rebuilt")


if __name__ == "__main__":
    app()
