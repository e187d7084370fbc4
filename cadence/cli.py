"""CLI entry points: build, run, approve and inspect notebooks from the terminal."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from cadence.config import ensure_dirs, load_config, notebooks_dir, save_config
from cadence.engine.engine import RunResult
from cadence.errors import CadenceError
from cadence.notebook.cell import CellStatus
from cadence.notebook.notebook import Notebook
from cadence.notebook.store import NotebookStore, get_store
from cadence.runtime import build_engine, build_gate

app = typer.Typer(name="cadence", help="Run notebooks of AI workflow cells with approval gates.")
console = Console()

_STATUS_STYLE = {
    CellStatus.COMPLETED: "green",
    CellStatus.ERROR: "red",
    CellStatus.PAUSED: "yellow",
    CellStatus.RUNNING: "cyan",
    CellStatus.SKIPPED: "dim",
}


def _store() -> NotebookStore:
    ensure_dirs()
    return get_store(notebooks_dir())


def _owner(owner: str | None) -> str:
    return owner or load_config().default_owner


@contextmanager
def _reporting() -> Iterator[None]:
    """Print engine errors in red and exit non-zero."""
    try:
        yield
    except (CadenceError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def _parse_vars(pairs: list[str]) -> dict[str, Any]:
    """Parse KEY=VALUE pairs; values that parse as JSON are decoded."""
    variables: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got {pair!r}")
        try:
            variables[key] = json.loads(raw)
        except json.JSONDecodeError:
            variables[key] = raw
    return variables


def _print_notebook(notebook: Notebook) -> None:
    console.print(f"[bold]{notebook.title}[/bold] ({notebook.id}) status: [bold]{notebook.status}[/bold]")
    if notebook.error_message:
        console.print(f"[red]{notebook.error_message}[/red]")
    t = Table(show_lines=False)
    t.add_column("#", justify="right")
    t.add_column("Cell")
    t.add_column("Type", style="cyan")
    t.add_column("Title")
    t.add_column("Status")
    t.add_column("Time", justify="right")
    t.add_column("Details")
    for cell in sorted(notebook.cells, key=lambda c: c.cell_index):
        style = _STATUS_STYLE.get(cell.status, "")
        status = f"[{style}]{cell.status}[/{style}]" if style else str(cell.status)
        details = cell.error_message or ""
        if not details and cell.output is not None:
            text = cell.output if isinstance(cell.output, str) else json.dumps(cell.output, default=str)
            details = text[:60] + ("..." if len(text) > 60 else "")
        duration = f"{cell.duration_ms}ms" if cell.duration_ms is not None else ""
        t.add_row(str(cell.cell_index), cell.id, cell.cell_type, cell.title, status, duration, details)
    console.print(t)


def _print_result(result: RunResult) -> None:
    colour = {"completed": "green", "partial": "yellow", "paused": "yellow"}.get(result.status, "red")
    console.print(
        f"[{colour}]Run {result.run_number}: {result.status}[/{colour}] "
        f"{result.cells_completed}/{result.cells_total} completed, "
        f"{result.cells_failed} failed, {result.cells_skipped} skipped "
        f"in {result.total_execution_time_ms}ms"
    )
    if result.paused_at_cell_id:
        console.print(f"Waiting for approval of [bold]{result.paused_at_cell_id}[/bold]")
    if result.error:
        console.print(f"[red]{result.error}[/red]")


@app.command()
def new(
    title: str = typer.Argument(help="Notebook title"),
    description: str = typer.Option("", "--description", "-d"),
    owner: str | None = typer.Option(None, "--owner"),
) -> None:
    """Create an empty notebook."""
    notebook = _store().create_notebook(_owner(owner), title=title, description=description)
    console.print(f"[green]Created notebook [bold]{notebook.id}[/bold][/green]")


@app.command("add-cell")
def add_cell(
    notebook_id: str = typer.Argument(help="Notebook ID"),
    content: str = typer.Argument(help="Cell instruction; use {{name}} or {{prev}} for variables"),
    cell_type: str = typer.Option("command", "--type", "-t", help="Cell type tag"),
    title: str = typer.Option("", "--title"),
    insert_at: int | None = typer.Option(None, "--at", help="Insert at this index"),
    owner: str | None = typer.Option(None, "--owner"),
) -> None:
    """Add a cell to a notebook."""
    with _reporting():
        cell = _store().add_cell(
            notebook_id, _owner(owner), cell_type=cell_type, title=title, content=content, insert_at=insert_at
        )
    console.print(f"[green]Added {cell.cell_type} cell {cell.id} at index {cell.cell_index}[/green]")


@app.command()
def show(
    notebook_id: str = typer.Argument(help="Notebook ID"),
    owner: str | None = typer.Option(None, "--owner"),
) -> None:
    """Show a notebook's cells and their status."""
    with _reporting():
        notebook = _store().load_notebook(notebook_id, _owner(owner))
    _print_notebook(notebook)


@app.command()
def run(
    notebook_id: str = typer.Argument(help="Notebook ID"),
    var: list[str] = typer.Option([], "--var", "-v", help="Input variable as KEY=VALUE (repeatable)"),
    start_from: int = typer.Option(0, "--from", help="Cell index to start (or resume) from"),
    continue_on_error: bool = typer.Option(False, "--continue-on-error", help="Keep going past failed cells"),
    owner: str | None = typer.Option(None, "--owner"),
) -> None:
    """Run a notebook's cells in order."""
    config = load_config()
    engine = build_engine(_store(), config)
    with _reporting():
        result = asyncio.run(
            engine.run(
                notebook_id,
                _owner(owner),
                variables=_parse_vars(var),
                start_from_cell=start_from,
                stop_on_error=False if continue_on_error else None,
            )
        )
    _print_result(result)
    if result.status == "failed":
        raise typer.Exit(1)


@app.command("run-cell")
def run_cell(
    notebook_id: str = typer.Argument(help="Notebook ID"),
    cell_id: str = typer.Argument(help="Cell ID"),
    var: list[str] = typer.Option([], "--var", "-v", help="Input variable as KEY=VALUE (repeatable)"),
    owner: str | None = typer.Option(None, "--owner"),
) -> None:
    """Re-run a single cell."""
    engine = build_engine(_store(), load_config())
    with _reporting():
        result = asyncio.run(engine.run_cell(notebook_id, cell_id, _owner(owner), variables=_parse_vars(var)))
    if result.status == CellStatus.ERROR:
        console.print(f"[red]Cell {cell_id} failed:[/red] {result.error}")
        raise typer.Exit(1)
    console.print(f"[green]Cell {cell_id} completed in {result.execution_time_ms}ms[/green]")


@app.command()
def approve(
    notebook_id: str = typer.Argument(help="Notebook ID"),
    cell_id: str = typer.Argument(help="Paused approval cell ID"),
    feedback: str | None = typer.Option(None, "--feedback", "-f"),
    resume: bool = typer.Option(False, "--resume", help="Resume the run right after approving"),
    owner: str | None = typer.Option(None, "--owner"),
) -> None:
    """Approve a paused approval cell."""
    store = _store()
    with _reporting():
        decision = build_gate(store).approve(notebook_id, cell_id, _owner(owner), feedback=feedback)
    console.print(f"[green]{decision.message}[/green]")
    if resume and decision.continue_from is not None:
        engine = build_engine(store, load_config())
        with _reporting():
            result = asyncio.run(
                engine.run(notebook_id, _owner(owner), start_from_cell=decision.continue_from, trigger="resume")
            )
        _print_result(result)


@app.command()
def reject(
    notebook_id: str = typer.Argument(help="Notebook ID"),
    cell_id: str = typer.Argument(help="Paused approval cell ID"),
    feedback: str | None = typer.Option(None, "--feedback", "-f"),
    owner: str | None = typer.Option(None, "--owner"),
) -> None:
    """Reject a paused approval cell, failing the run."""
    with _reporting():
        decision = build_gate(_store()).reject(notebook_id, cell_id, _owner(owner), feedback=feedback)
    console.print(f"[yellow]{decision.message}[/yellow]")


@app.command()
def reset(
    notebook_id: str = typer.Argument(help="Notebook ID"),
    force: bool = typer.Option(False, "--force", help="Also reset a run left 'running' by a dead host"),
    owner: str | None = typer.Option(None, "--owner"),
) -> None:
    """Clear all cell results so the notebook can run again."""
    engine = build_engine(_store(), load_config())
    with _reporting():
        engine.reset(notebook_id, _owner(owner), force=force)
    console.print(f"[green]Notebook {notebook_id} reset[/green]")


@app.command()
def cancel(
    notebook_id: str = typer.Argument(help="Notebook ID"),
    owner: str | None = typer.Option(None, "--owner"),
) -> None:
    """Stop a running notebook at the next cell boundary."""
    engine = build_engine(_store(), load_config())
    with _reporting():
        engine.cancel(notebook_id, _owner(owner))
    console.print(f"[yellow]Cancellation requested for {notebook_id}[/yellow]")


@app.command()
def runs(
    notebook_id: str = typer.Argument(help="Notebook ID"),
    owner: str | None = typer.Option(None, "--owner"),
) -> None:
    """List a notebook's run history."""
    with _reporting():
        notebook = _store().load_notebook(notebook_id, _owner(owner))
    t = Table(title=f"Runs of {notebook.title}")
    t.add_column("Run", justify="right")
    t.add_column("Trigger")
    t.add_column("Status")
    t.add_column("Completed", justify="right")
    t.add_column("Failed", justify="right")
    t.add_column("Skipped", justify="right")
    t.add_column("Started")
    t.add_column("Error", style="red")
    for record in reversed(notebook.runs):
        t.add_row(
            str(record.run_number),
            record.trigger,
            record.status,
            str(record.cells_completed),
            str(record.cells_failed),
            str(record.cells_skipped),
            record.started_at,
            record.error_message or "",
        )
    console.print(t)


@app.command("config")
def configure(
    stop_on_error: bool | None = typer.Option(
        None, "--stop-on-error/--continue-on-error", help="Default failure policy for runs"
    ),
    critic: bool | None = typer.Option(None, "--critic/--no-critic", help="Review completed cells with the critic"),
    strict: bool | None = typer.Option(None, "--strict/--no-strict", help="Stricter critic reviews"),
    model: str | None = typer.Option(None, "--model", help="Model used for cells and reviews"),
    default_owner: str | None = typer.Option(None, "--default-owner", help="Owner used when --owner is omitted"),
) -> None:
    """Show or change the saved settings in ~/.cadence/config.json."""
    config = load_config()
    changed = False
    if stop_on_error is not None:
        config.engine.stop_on_error = stop_on_error
        changed = True
    if critic is not None:
        config.engine.critic_enabled = critic
        changed = True
    if strict is not None:
        config.engine.critic_strict = strict
        changed = True
    if model:
        config.llm.model = model
        changed = True
    if default_owner:
        config.default_owner = default_owner
        changed = True
    if changed:
        save_config(config)
        console.print("[green]Config saved[/green]")

    t = Table(title="Cadence settings")
    t.add_column("Setting")
    t.add_column("Value", style="cyan")
    t.add_row("model", config.llm.model)
    t.add_row("stop_on_error", str(config.engine.stop_on_error))
    t.add_row("critic_enabled", str(config.engine.critic_enabled))
    t.add_row("critic_strict", str(config.engine.critic_strict))
    t.add_row("max_run_history", str(config.engine.max_run_history))
    t.add_row("default_owner", config.default_owner)
    console.print(t)


@app.command()
def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Port to serve on"),
    host: str = typer.Option("127.0.0.1", "--host"),
) -> None:
    """Start the Cadence API server."""
    import logging

    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    ensure_dirs()
    console.print(f"[bold]Starting Cadence on {host}:{port}...[/bold]")
    uvicorn.run("cadence.server:app", host=host, port=port, reload=False)


def main() -> None:
    app()
