"""Execution engine: drives a notebook's cells one at a time.

Every status transition is written to the store as it happens, so observers
polling the store mid-run see live progress, and a paused run can be resumed
by a different process.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pydantic import BaseModel, Field

from cadence.config import EngineSettings
from cadence.core import Result
from cadence.engine.context import VariableContext
from cadence.engine.critic import CriticReviewer, fallback_review
from cadence.engine.handlers import get_handler
from cadence.engine.invoker import Invocation, ToolInvoker
from cadence.engine.state import (
    RunOutcome,
    check_can_start,
    check_cell_transition,
    check_run_transition,
    notebook_status_for,
)
from cadence.errors import CellExecutionError, ConflictError, NotFoundError, StateError
from cadence.notebook.cell import Cell, CellStatus, CriticReviewEntry, TraceEntry, utc_now
from cadence.notebook.notebook import Notebook, NotebookStatus, RunRecord, is_in_flight
from cadence.notebook.store import NotebookStore

logger = logging.getLogger("cadence.engine")


class CellRunResult(BaseModel):
    cell_id: str
    cell_index: int
    cell_type: str
    status: CellStatus
    output: Any = None
    error: str | None = None
    execution_time_ms: int = 0


class RunResult(BaseModel):
    notebook_id: str
    run_number: int
    status: RunOutcome
    cells_total: int = 0
    cells_completed: int = 0
    cells_failed: int = 0
    cells_skipped: int = 0
    results: list[CellRunResult] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    paused_at_cell_id: str | None = None
    error: str | None = None
    total_execution_time_ms: int = 0


class RunEvent:
    """A progress event emitted while a run advances."""

    def __init__(self, event: str, data: dict[str, Any]) -> None:
        self.event = event
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "data": self.data}


EventCallback = Callable[[RunEvent], Awaitable[None] | None]


class _Tally:
    def __init__(self) -> None:
        self.completed = 0
        self.failed = 0
        self.skipped = 0
        self.first_error: tuple[str, str] | None = None
        self.results: list[CellRunResult] = []

    def add(self, result: CellRunResult) -> None:
        self.results.append(result)
        if result.status == CellStatus.COMPLETED:
            self.completed += 1
        elif result.status == CellStatus.ERROR:
            self.failed += 1
            if self.first_error is None:
                self.first_error = (result.cell_id, result.error or "Execution failed")
        elif result.status == CellStatus.SKIPPED:
            self.skipped += 1


def _skipped(cell: Cell) -> CellRunResult:
    return CellRunResult(cell_id=cell.id, cell_index=cell.cell_index, cell_type=cell.cell_type, status=CellStatus.SKIPPED)


class ExecutionEngine:
    def __init__(
        self,
        store: NotebookStore,
        invoker: ToolInvoker,
        critic: CriticReviewer | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self._store = store
        self._invoker = invoker
        self._critic = critic
        self._settings = settings or EngineSettings()

    async def run(
        self,
        notebook_id: str,
        owner_id: str | None = None,
        *,
        variables: Mapping[str, Any] | None = None,
        start_from_cell: int = 0,
        stop_on_error: bool | None = None,
        trigger: str = "manual",
        on_event: EventCallback | None = None,
    ) -> RunResult:
        """Run the notebook's cells in index order from `start_from_cell`.

        Returns when every cell has been processed, the run paused at an
        approval gate, the failure policy stopped it, or it was cancelled.
        Raises NotFoundError, ConflictError or StateError before any cell runs
        if the notebook cannot be claimed.
        """
        if stop_on_error is None:
            stop_on_error = self._settings.stop_on_error
        started = time.monotonic()

        notebook, record, resuming = self._claim(notebook_id, owner_id, start_from_cell, trigger)
        cells = sorted(notebook.cells, key=lambda c: c.cell_index)
        run_number = record.run_number

        ctx = VariableContext(notebook.run_variables if resuming else None)
        for cell in cells[:start_from_cell]:
            if cell.status == CellStatus.COMPLETED and cell.output is not None:
                ctx.record_output(cell.cell_index, cell.output, cell.id)
        if variables:
            ctx.seed(variables)

        tally = _Tally()
        for cell in cells[:start_from_cell]:
            tally.add(_skipped(cell))

        try:
            outcome, paused_cell, elapsed_ms = await self._drive(
                notebook_id, cells, ctx, tally, record, resuming, start_from_cell, stop_on_error, started, on_event
            )
        except BaseException as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self._abort(notebook_id, e, tally, elapsed_ms, resuming, start_from_cell)
            raise

        if paused_cell is not None:
            await _emit(
                on_event, RunEvent("run_paused", {"cell_id": paused_cell.id, "cell_index": paused_cell.cell_index})
            )

        error = None
        if outcome == RunOutcome.CANCELLED:
            error = "Run cancelled"
        elif outcome in (RunOutcome.FAILED, RunOutcome.PARTIAL):
            error = tally.first_error[1] if tally.first_error else record.error_message

        run_result = RunResult(
            notebook_id=notebook_id,
            run_number=run_number,
            status=outcome,
            cells_total=len(cells),
            cells_completed=tally.completed,
            cells_failed=tally.failed,
            cells_skipped=tally.skipped,
            results=tally.results,
            variables=ctx.to_dict(),
            paused_at_cell_id=paused_cell.id if paused_cell else None,
            error=error,
            total_execution_time_ms=elapsed_ms,
        )
        logger.info(
            "Run %d of notebook %s %s: %d/%d completed, %d failed, %d skipped in %dms",
            run_number,
            notebook_id,
            outcome,
            tally.completed,
            len(cells),
            tally.failed,
            tally.skipped,
            elapsed_ms,
        )
        await _emit(on_event, RunEvent("run_finished", run_result.model_dump(mode="json")))
        return run_result

    async def _drive(
        self,
        notebook_id: str,
        cells: list[Cell],
        ctx: VariableContext,
        tally: _Tally,
        record: RunRecord,
        resuming: bool,
        start_from_cell: int,
        stop_on_error: bool,
        started: float,
        on_event: EventCallback | None,
    ) -> tuple[RunOutcome, Cell | None, int]:
        """Execute the claimed cells and persist how the segment ended."""
        run_number = record.run_number
        logger.info(
            "Run %d of notebook %s %s from cell %d (%d cells, stop_on_error=%s)",
            run_number,
            notebook_id,
            "resumed" if resuming else "started",
            start_from_cell,
            len(cells),
            stop_on_error,
        )
        await _emit(
            on_event,
            RunEvent(
                "run_started",
                {
                    "notebook_id": notebook_id,
                    "run_number": run_number,
                    "start_from_cell": start_from_cell,
                    "cells_total": len(cells),
                    "resumed": resuming,
                },
            ),
        )

        outcome: RunOutcome | None = None
        paused_cell: Cell | None = None
        remaining = cells[start_from_cell:]
        for position, cell in enumerate(remaining):
            if self._store.load_notebook(notebook_id).cancel_requested:
                logger.info("Run %d of notebook %s cancelled before cell %d", run_number, notebook_id, cell.cell_index)
                await self._skip(notebook_id, remaining[position:], tally, on_event)
                outcome = RunOutcome.CANCELLED
                break

            if get_handler(cell.cell_type).suspends:
                paused_cell = cell
                outcome = RunOutcome.PAUSED
                break

            result = await self._execute_cell(notebook_id, cell, ctx, on_event)
            tally.add(result)

            if result.status == CellStatus.ERROR and stop_on_error:
                await self._skip(notebook_id, remaining[position + 1 :], tally, on_event)
                outcome = RunOutcome.FAILED
                break

        if outcome is None:
            earlier_failures = record.cells_failed if resuming else 0
            outcome = RunOutcome.PARTIAL if tally.failed or earlier_failures else RunOutcome.COMPLETED

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if paused_cell is not None:
            tally.results.append(
                CellRunResult(
                    cell_id=paused_cell.id,
                    cell_index=paused_cell.cell_index,
                    cell_type=paused_cell.cell_type,
                    status=CellStatus.PAUSED,
                )
            )
            self._pause(notebook_id, paused_cell, ctx, tally, elapsed_ms, resuming, start_from_cell)
        else:
            self._finish(notebook_id, outcome, tally, elapsed_ms, resuming, start_from_cell)
        return outcome, paused_cell, elapsed_ms

    async def run_cell(
        self,
        notebook_id: str,
        cell_id: str,
        owner_id: str | None = None,
        *,
        variables: Mapping[str, Any] | None = None,
        on_event: EventCallback | None = None,
    ) -> CellRunResult:
        """Execute one cell out of sequence, leaving the notebook's run status as it was."""
        with self._store.transaction(notebook_id, owner_id) as notebook:
            if is_in_flight(notebook.status):
                raise ConflictError(f"Notebook {notebook_id} is {notebook.status}; wait for the run to finish")
            cell = notebook.get_cell(cell_id)
            if cell is None:
                raise NotFoundError(f"Cell {cell_id} not found in notebook {notebook_id}")
            if get_handler(cell.cell_type).suspends:
                raise StateError(f"Cell {cell_id} is an approval gate and cannot be run on its own")
            prior_status = notebook.status
            notebook.status = NotebookStatus.RUNNING
            cells = sorted(notebook.cells, key=lambda c: c.cell_index)

        ctx = VariableContext()
        for earlier in cells[: cell.cell_index]:
            if earlier.status == CellStatus.COMPLETED and earlier.output is not None:
                ctx.record_output(earlier.cell_index, earlier.output, earlier.id)
        if variables:
            ctx.seed(variables)

        logger.info("Running single cell %s (index %d) of notebook %s", cell_id, cell.cell_index, notebook_id)
        try:
            return await self._execute_cell(notebook_id, cell, ctx, on_event)
        except BaseException as e:
            self._abort_cell(notebook_id, cell.id, _abort_message(e))
            raise
        finally:
            self._store.update_notebook_status(notebook_id, status=prior_status)

    def cancel(self, notebook_id: str, owner_id: str | None = None) -> None:
        """Ask a running notebook to stop at the next cell boundary."""
        with self._store.transaction(notebook_id, owner_id) as notebook:
            if notebook.status != NotebookStatus.RUNNING:
                raise StateError(f"Notebook {notebook_id} is {notebook.status}, not running")
            notebook.cancel_requested = True
        logger.info("Cancellation requested for notebook %s", notebook_id)

    def reset(self, notebook_id: str, owner_id: str | None = None, *, force: bool = False) -> Notebook:
        """Return every cell to idle and clear run-level state so a fresh run can start.

        `force` also resets a notebook stuck in `running`, for a run whose host
        died mid-cell and will never finish it.
        """
        with self._store.transaction(notebook_id, owner_id) as notebook:
            if notebook.status == NotebookStatus.RUNNING and not force:
                raise ConflictError(f"Notebook {notebook_id} is running; cancel it before resetting")
            check_run_transition(notebook.status, NotebookStatus.IDLE)
            for cell in notebook.cells:
                cell.clear_run_state()
                cell.updated_at = utc_now()
            record = notebook.current_run
            if record is not None and record.status in (RunOutcome.PAUSED, "running"):
                record.status = RunOutcome.CANCELLED
                record.completed_at = utc_now()
            notebook.status = NotebookStatus.IDLE
            notebook.error_message = None
            notebook.paused_at_cell_id = None
            notebook.resume_from = None
            notebook.rejected_at_cell_id = None
            notebook.cancel_requested = False
            notebook.run_variables = {}
        logger.info("Reset notebook %s", notebook_id)
        return notebook

    # --- internals ---

    def _claim(
        self, notebook_id: str, owner_id: str | None, start_from_cell: int, trigger: str
    ) -> tuple[Notebook, RunRecord, bool]:
        """Atomically move the notebook to running and queue the cells this run will execute."""
        with self._store.transaction(notebook_id, owner_id) as notebook:
            resuming = check_can_start(notebook, start_from_cell)
            check_run_transition(notebook.status, NotebookStatus.RUNNING)

            record = notebook.current_run
            if resuming and record is not None:
                record.status = "running"
            else:
                resuming = False
                record = RunRecord(
                    run_number=(record.run_number + 1) if record else 1,
                    trigger=trigger,
                    start_from_cell=start_from_cell,
                    cells_total=len(notebook.cells),
                )
                notebook.runs.append(record)
                del notebook.runs[: -self._settings.max_run_history]

            for cell in notebook.cells:
                if cell.cell_index >= start_from_cell:
                    check_cell_transition(cell.status, CellStatus.QUEUED)
                    cell.status = CellStatus.QUEUED
                    cell.output = None
                    cell.output_type = None
                    cell.error_message = None
                    cell.duration_ms = None
                    cell.started_at = None
                    cell.completed_at = None
                elif not resuming and cell.status != CellStatus.COMPLETED:
                    check_cell_transition(cell.status, CellStatus.SKIPPED)
                    cell.status = CellStatus.SKIPPED
                cell.updated_at = utc_now()

            notebook.status = NotebookStatus.RUNNING
            notebook.last_run_at = utc_now()
            notebook.error_message = None
            notebook.cancel_requested = False
            notebook.paused_at_cell_id = None
            notebook.resume_from = None
        return notebook, record, resuming

    def _transition_cell(
        self,
        notebook_id: str,
        cell_id: str,
        target: CellStatus,
        log: TraceEntry | None = None,
        **fields: Any,
    ) -> Cell:
        with self._store.transaction(notebook_id) as notebook:
            cell = notebook.get_cell(cell_id)
            if cell is None:
                raise NotFoundError(f"Cell {cell_id} not found in notebook {notebook_id}")
            check_cell_transition(cell.status, target)
            cell.status = target
            for key, value in fields.items():
                setattr(cell, key, value)
            if log is not None:
                cell.execution_log.append(log)
            cell.updated_at = utc_now()
        return cell

    def _abort_cell(self, notebook_id: str, cell_id: str, message: str) -> None:
        """Fail a cell left running by an exception that escaped the handler path."""
        try:
            with self._store.transaction(notebook_id) as notebook:
                cell = notebook.get_cell(cell_id)
                if cell is not None and cell.status == CellStatus.RUNNING:
                    cell.status = CellStatus.ERROR
                    cell.error_message = message
                    cell.completed_at = utc_now()
                    cell.updated_at = utc_now()
        except Exception:
            logger.exception("Could not record abort of cell %s in notebook %s", cell_id, notebook_id)

    def _abort(
        self,
        notebook_id: str,
        exc: BaseException,
        tally: _Tally,
        elapsed_ms: int,
        resuming: bool,
        start_from_cell: int,
    ) -> None:
        """Settle a run that an unexpected exception or cancellation tore down mid-flight.

        Whatever cell was running fails, queued cells are skipped, and the
        notebook and its run record leave `running` so the next run can claim it.
        """
        outcome = RunOutcome.CANCELLED if _is_cancellation(exc) else RunOutcome.FAILED
        message = _abort_message(exc)
        try:
            with self._store.transaction(notebook_id) as notebook:
                for cell in notebook.cells:
                    if cell.status == CellStatus.RUNNING:
                        cell.status = CellStatus.ERROR
                        cell.error_message = message
                        cell.completed_at = utc_now()
                    elif cell.status == CellStatus.QUEUED:
                        cell.status = CellStatus.SKIPPED
                    else:
                        continue
                    cell.updated_at = utc_now()
                    tally.add(
                        CellRunResult(
                            cell_id=cell.id,
                            cell_index=cell.cell_index,
                            cell_type=cell.cell_type,
                            status=cell.status,
                            error=cell.error_message,
                        )
                    )
                record = notebook.current_run
                if record is not None and record.status == "running":
                    _update_record(notebook, outcome, tally, elapsed_ms, resuming, start_from_cell)
                if notebook.status == NotebookStatus.RUNNING:
                    notebook.status = notebook_status_for(outcome)
                    notebook.error_message = message
                    notebook.cancel_requested = False
                    notebook.run_variables = {}
                    notebook.last_run_duration_ms = record.duration_ms if record else elapsed_ms
        except Exception:
            logger.exception("Could not record abort of run in notebook %s", notebook_id)
        logger.error("Run of notebook %s aborted: %s", notebook_id, message)

    async def _execute_cell(
        self,
        notebook_id: str,
        cell: Cell,
        ctx: VariableContext,
        on_event: EventCallback | None,
    ) -> CellRunResult:
        handler = get_handler(cell.cell_type)
        self._transition_cell(notebook_id, cell.id, CellStatus.RUNNING, started_at=utc_now())
        await _emit(
            on_event,
            RunEvent("cell_started", {"cell_id": cell.id, "cell_index": cell.cell_index, "cell_type": cell.cell_type}),
        )

        start = time.monotonic()
        try:
            outcome = await handler.execute(cell, ctx.snapshot(), self._invoker)
        except Exception as e:  # noqa: BLE001
            logger.exception("Invoker raised for cell %s of notebook %s", cell.id, notebook_id)
            outcome = Result[Invocation]()
            outcome.error("INVOKE_ERROR", f"Unexpected error: {e}")
        elapsed_ms = int((time.monotonic() - start) * 1000)

        if outcome.ok and outcome.data is not None:
            invocation = outcome.data
            self._transition_cell(
                notebook_id,
                cell.id,
                CellStatus.COMPLETED,
                log=TraceEntry(
                    message="invocation",
                    data={
                        "output_type": invocation.output_type,
                        "tools_used": invocation.tools_used,
                        "tokens_input": invocation.tokens_input,
                        "tokens_output": invocation.tokens_output,
                        "duration_ms": elapsed_ms,
                    },
                ),
                output=invocation.output,
                output_type=invocation.output_type,
                reasoning=invocation.reasoning,
                tools_used=invocation.tools_used,
                tokens_input=invocation.tokens_input,
                tokens_output=invocation.tokens_output,
                duration_ms=elapsed_ms,
                completed_at=utc_now(),
                error_message=None,
            )
            if invocation.output is not None:
                ctx.record_output(cell.cell_index, invocation.output, cell.id)
                await self._review(notebook_id, cell, invocation.output)
            result = CellRunResult(
                cell_id=cell.id,
                cell_index=cell.cell_index,
                cell_type=cell.cell_type,
                status=CellStatus.COMPLETED,
                output=invocation.output,
                execution_time_ms=elapsed_ms,
            )
            logger.info("Cell %d (%s) completed in %dms", cell.cell_index, cell.cell_type, elapsed_ms)
        else:
            failure = CellExecutionError(
                outcome.error_message or "Invoker returned no result",
                cell_id=cell.id,
                cell_index=cell.cell_index,
            )
            self._transition_cell(
                notebook_id,
                cell.id,
                CellStatus.ERROR,
                error_message=failure.message,
                duration_ms=elapsed_ms,
                completed_at=utc_now(),
            )
            result = CellRunResult(
                cell_id=cell.id,
                cell_index=cell.cell_index,
                cell_type=cell.cell_type,
                status=CellStatus.ERROR,
                error=failure.message,
                execution_time_ms=elapsed_ms,
            )
            logger.warning("Cell %d (%s) failed: %s", cell.cell_index, cell.cell_type, failure.message)

        await _emit(on_event, RunEvent("cell_finished", result.model_dump(mode="json")))
        return result

    async def _review(self, notebook_id: str, cell: Cell, output: Any) -> None:
        if self._critic is None:
            return
        try:
            review = await self._critic.review(cell, output)
        except Exception as e:  # noqa: BLE001
            logger.exception("Critic raised for cell %s", cell.id)
            review = fallback_review(f"Critic error: {e}")
        self._store.append_log(notebook_id, cell.id, CriticReviewEntry(**review.model_dump()))

    async def _skip(
        self,
        notebook_id: str,
        cells: list[Cell],
        tally: _Tally,
        on_event: EventCallback | None,
    ) -> None:
        if not cells:
            return
        with self._store.transaction(notebook_id) as notebook:
            for skipped in cells:
                stored = notebook.get_cell(skipped.id)
                if stored is None:
                    continue
                check_cell_transition(stored.status, CellStatus.SKIPPED)
                stored.status = CellStatus.SKIPPED
                stored.updated_at = utc_now()
        for skipped in cells:
            tally.add(_skipped(skipped))
        await _emit(on_event, RunEvent("cells_skipped", {"cell_ids": [c.id for c in cells]}))

    def _pause(
        self,
        notebook_id: str,
        cell: Cell,
        ctx: VariableContext,
        tally: _Tally,
        elapsed_ms: int,
        resuming: bool,
        start_from_cell: int,
    ) -> None:
        with self._store.transaction(notebook_id) as notebook:
            stored = notebook.get_cell(cell.id)
            if stored is None:
                raise NotFoundError(f"Cell {cell.id} not found in notebook {notebook_id}")
            check_cell_transition(stored.status, CellStatus.PAUSED)
            stored.status = CellStatus.PAUSED
            stored.updated_at = utc_now()

            check_run_transition(notebook.status, NotebookStatus.PAUSED)
            notebook.status = NotebookStatus.PAUSED
            notebook.paused_at_cell_id = cell.id
            notebook.run_variables = ctx.to_dict()
            _update_record(notebook, RunOutcome.PAUSED, tally, elapsed_ms, resuming, start_from_cell)
        logger.info("Notebook %s paused at approval cell %d (%s)", notebook_id, cell.cell_index, cell.id)

    def _finish(
        self,
        notebook_id: str,
        outcome: RunOutcome,
        tally: _Tally,
        elapsed_ms: int,
        resuming: bool,
        start_from_cell: int,
    ) -> None:
        target = notebook_status_for(outcome)
        with self._store.transaction(notebook_id) as notebook:
            check_run_transition(notebook.status, target)
            notebook.status = target
            notebook.cancel_requested = False
            notebook.run_variables = {}
            record = _update_record(notebook, outcome, tally, elapsed_ms, resuming, start_from_cell)
            if outcome == RunOutcome.CANCELLED:
                notebook.error_message = "Run cancelled"
            elif outcome in (RunOutcome.FAILED, RunOutcome.PARTIAL) and record is not None:
                notebook.error_message = record.error_message
            else:
                notebook.error_message = None
            notebook.last_run_duration_ms = record.duration_ms if record else elapsed_ms


def _update_record(
    notebook: Notebook,
    outcome: RunOutcome,
    tally: _Tally,
    elapsed_ms: int,
    resuming: bool,
    start_from_cell: int,
) -> RunRecord | None:
    """Fold this segment's counts into the run record.

    A resumed segment reports the cells before its start offset as skipped,
    but those were already counted when the run first executed them.
    """
    record = notebook.current_run
    if record is None:
        return None
    pre_offset_skips = start_from_cell if resuming else 0
    record.status = outcome
    record.cells_completed += tally.completed
    record.cells_failed += tally.failed
    record.cells_skipped += tally.skipped - pre_offset_skips
    record.duration_ms = (record.duration_ms or 0) + elapsed_ms
    if tally.first_error is not None and record.error_cell_id is None:
        record.error_cell_id, record.error_message = tally.first_error
    if outcome != RunOutcome.PAUSED:
        record.completed_at = utc_now()
    return record


def _is_cancellation(exc: BaseException) -> bool:
    return isinstance(exc, (asyncio.CancelledError, KeyboardInterrupt))


def _abort_message(exc: BaseException) -> str:
    if _is_cancellation(exc):
        return "Run cancelled"
    return f"Run aborted: {exc}" if str(exc) else f"Run aborted: {type(exc).__name__}"


async def _emit(on_event: EventCallback | None, event: RunEvent) -> None:
    if on_event is None:
        return
    result = on_event(event)
    if inspect.isawaitable(result):
        await result
