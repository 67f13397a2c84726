"""
Root Typer application for the dagrun CLI.

Commands::

    dagrun validate FILE                        check a workflow file and its arguments
    dagrun run FILE --arg k=v [--database DB]   execute a workflow
    dagrun status RUN_ID --database DB          show a stored run
    dagrun history RUN_ID --database DB         show a run's transition log
    dagrun runs --database DB                   list stored runs
"""

from __future__ import annotations

import typer
from typer import Typer

from dagrun import __version__
from dagrun.cli.utils import err_console, fail, get_store, output_history, output_run, parse_args
from dagrun.core.errors import ConfigError, DagrunError
from dagrun.core.logging import configure_logging
from dagrun.core.secrets import SecretProvider
from dagrun.core.settings import get_settings
from dagrun.execution.runner import SubprocessRunner
from dagrun.orchestration.params import ParameterResolver
from dagrun.orchestration.scheduler import ExecutionScheduler
from dagrun.orchestration.service import WorkflowService
from dagrun.orchestration.sqlite_store import SqliteRunStateStore
from dagrun.orchestration.state import RunStatus
from dagrun.orchestration.workflow_yaml import load_definition

app = Typer(
    name="dagrun",
    help="dagrun — run DAG workflows of gated, parallel steps.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

EXIT_RUN_FAILED = 1
EXIT_INVALID = 2


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"dagrun {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override DAGRUN_LOG_LEVEL."),
) -> None:
    """dagrun CLI — validate, run and inspect workflows."""
    settings = get_settings()
    configure_logging(level=log_level or settings.log_level, json_format=settings.log_json)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("validate")
def validate(
    file: str = typer.Argument(..., help="Workflow YAML file"),
    arg: list[str] | None = typer.Option(None, "--arg", "-a", help="Workflow argument key=value"),
) -> None:
    """Check a workflow file: schema, graph, parameters and secrets."""
    settings = get_settings()
    try:
        definition = load_definition(file)
        definition.topological_order()
        ParameterResolver(SecretProvider.default(settings.secrets_dir)).validate(
            list(definition.templates),
            {**definition.defaults, **parse_args(arg)},
        )
    except DagrunError as e:
        fail(e, code=EXIT_INVALID)
    except OSError as e:
        fail(e, code=EXIT_INVALID)

    typer.echo(f"{definition.name}: {len(definition.templates)} steps OK")


@app.command("run")
def run(
    file: str = typer.Argument(..., help="Workflow YAML file"),
    arg: list[str] | None = typer.Option(None, "--arg", "-a", help="Workflow argument key=value"),
    database: str | None = typer.Option(None, "--database", "-d", help="SQLite file for run state"),
    max_concurrency: int | None = typer.Option(None, "--max-concurrency", "-c", min=1),
    run_id: str | None = typer.Option(None, "--run-id", help="Explicit run id"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Execute a workflow and print the final run state."""
    settings = get_settings()
    store = get_store(database or settings.database)
    scheduler = ExecutionScheduler(
        SubprocessRunner(
            inherit_env=settings.runner_inherit_env,
            kill_timeout_seconds=settings.runner_kill_timeout_seconds,
        ),
        store,
        SecretProvider.default(settings.secrets_dir),
        max_concurrency=max_concurrency or settings.max_concurrency,
        max_workers=settings.max_workers,
        skipped_output_policy=settings.skipped_output_policy,
    )
    service = WorkflowService(scheduler)

    try:
        definition = load_definition(file)
        submitted = service.submit(definition, parse_args(arg), wait=False, run_id=run_id)
    except DagrunError as e:
        fail(e, code=EXIT_INVALID)
    except OSError as e:
        fail(e, code=EXIT_INVALID)

    try:
        result = service.wait(submitted)
    except KeyboardInterrupt:
        err_console.print("[yellow]Cancelling run...[/yellow]")
        service.cancel(submitted)
        result = service.wait(submitted)
    except DagrunError as e:
        output_run(service.status(submitted), as_json=json_out)
        fail(e)

    output_run(result, as_json=json_out)
    if result.status == RunStatus.FAILED:
        raise typer.Exit(code=EXIT_RUN_FAILED)


@app.command("status")
def status(
    run_id: str = typer.Argument(..., help="Run id"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show the stored state of a run."""
    store = _open_store(database)
    try:
        output_run(store.snapshot(run_id), as_json=json_out)
    except DagrunError as e:
        fail(e)


@app.command("history")
def history(
    run_id: str = typer.Argument(..., help="Run id"),
    step: str | None = typer.Option(None, "--step", help="Only this step instance"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show the transition log of a run."""
    store = _open_store(database)
    try:
        output_history(store.transitions(run_id, step), as_json=json_out)
    except DagrunError as e:
        fail(e)


@app.command("runs")
def runs(
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """List stored run ids, oldest first."""
    store = _open_store(database)
    for stored in store.list_runs():
        typer.echo(stored)


def _open_store(database: str | None) -> SqliteRunStateStore:
    path = database or get_settings().database
    if not path:
        fail(ConfigError("--database (or DAGRUN_DATABASE) is required"), code=EXIT_INVALID)
    return SqliteRunStateStore(path)
