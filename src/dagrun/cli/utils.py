"""
CLI utility helpers: argument parsing, store selection and output formatting.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from dagrun.core.errors import DagrunError, categorize_error
from dagrun.orchestration.sqlite_store import SqliteRunStateStore
from dagrun.orchestration.state import InMemoryRunStateStore, RunStateStore, TransitionRecord, WorkflowRun

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLE = {
    "pending": "dim",
    "running": "yellow",
    "succeeded": "green",
    "failed": "bold red",
    "skipped": "cyan",
}


# ── Input helpers ────────────────────────────────────────────────────────


def parse_args(pairs: list[str] | None) -> dict[str, Any]:
    """Parse ``key=value`` options; values are JSON when they parse as JSON.

    ``--arg hosts='["db1","db2"]'`` gives a list, ``--arg db-host=db1`` a string.
    """
    result: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected key=value, got {pair!r}", param_hint="--arg")
        try:
            result[key] = json.loads(raw)
        except json.JSONDecodeError:
            result[key] = raw
    return result


def get_store(database: str | None) -> RunStateStore:
    """SQLite store when a database path is given, in-memory otherwise."""
    if database:
        return SqliteRunStateStore(database)
    return InMemoryRunStateStore()


def fail(error: Exception, *, code: int = 1) -> None:
    """Print an error with its category and exit."""
    message = error.message if isinstance(error, DagrunError) else str(error)
    label = escape(f"[{categorize_error(error).value}]")
    err_console.print(f"[bold red]Error[/bold red] {label} ({type(error).__name__}): {escape(message)}")
    raise typer.Exit(code=code) from error


# ── Output helpers ───────────────────────────────────────────────────────


def output_run(run: WorkflowRun, *, as_json: bool = False) -> None:
    """Render a run snapshot to the terminal."""
    if as_json:
        typer.echo(json.dumps(run.to_dict(), indent=2, default=str))
        return

    status = run.status.value
    console.print(
        f"[bold]{run.workflow_name}[/bold]  run [cyan]{run.run_id}[/cyan]  "
        f"[{_STATUS_STYLE.get(status, '')}]{status}[/]"
    )
    table = Table(show_lines=False, pad_edge=False)
    for col in ("step", "status", "attempt", "reason", "duration", "output"):
        table.add_column(col, overflow="fold")
    for instance in run.instances.values():
        duration = instance.duration_seconds
        table.add_row(
            instance.instance_id,
            f"[{_STATUS_STYLE.get(instance.status.value, '')}]{instance.status.value}[/]",
            str(instance.attempt),
            instance.reason or "",
            f"{duration:.2f}s" if duration is not None else "",
            (instance.output or "").strip(),
        )
    console.print(table)


def output_history(records: list[TransitionRecord], *, as_json: bool = False) -> None:
    """Render a transition log."""
    if as_json:
        typer.echo(json.dumps([r.to_dict() for r in records], indent=2, default=str))
        return
    if not records:
        console.print("[dim]No transitions.[/dim]")
        return

    table = Table(title="Transitions", show_lines=False, pad_edge=False)
    for col in ("timestamp", "step", "from", "to", "attempt", "reason"):
        table.add_column(col, overflow="fold")
    for record in records:
        table.add_row(
            record.timestamp.isoformat(timespec="milliseconds"),
            record.instance_id,
            record.from_status.value if record.from_status else "",
            record.to_status.value,
            str(record.attempt),
            record.reason or "",
        )
    console.print(table)
