"""Run and cell state machines.

Run:  idle -> running -> {completed, failed, paused, cancelled}
      paused -> {running (approved, then resumed), failed (rejected)}
Cell: idle/queued -> running -> {completed, error}
      idle/queued -> {paused, skipped}
      paused -> {completed (approved), error (rejected)}
"""

from __future__ import annotations

from enum import StrEnum

from cadence.errors import ConflictError, StateError
from cadence.notebook.cell import CellStatus
from cadence.notebook.notebook import Notebook, NotebookStatus


class RunOutcome(StrEnum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


_FINISHED = frozenset({NotebookStatus.IDLE, NotebookStatus.COMPLETED, NotebookStatus.FAILED, NotebookStatus.CANCELLED})

RUN_TRANSITIONS: dict[NotebookStatus, frozenset[NotebookStatus]] = {
    NotebookStatus.IDLE: frozenset({NotebookStatus.RUNNING}),
    NotebookStatus.RUNNING: frozenset(
        {
            NotebookStatus.COMPLETED,
            NotebookStatus.FAILED,
            NotebookStatus.PAUSED,
            NotebookStatus.CANCELLED,
            # a single-cell run hands the notebook back in its prior state
            NotebookStatus.IDLE,
        }
    ),
    NotebookStatus.PAUSED: frozenset(
        {NotebookStatus.RUNNING, NotebookStatus.FAILED, NotebookStatus.COMPLETED, NotebookStatus.IDLE}
    ),
    NotebookStatus.COMPLETED: frozenset({NotebookStatus.RUNNING, NotebookStatus.IDLE}),
    NotebookStatus.FAILED: frozenset({NotebookStatus.RUNNING, NotebookStatus.IDLE}),
    NotebookStatus.CANCELLED: frozenset({NotebookStatus.RUNNING, NotebookStatus.IDLE}),
}

_RESTARTABLE = frozenset({CellStatus.QUEUED, CellStatus.IDLE, CellStatus.RUNNING, CellStatus.SKIPPED})

CELL_TRANSITIONS: dict[CellStatus, frozenset[CellStatus]] = {
    CellStatus.IDLE: frozenset({CellStatus.QUEUED, CellStatus.RUNNING, CellStatus.PAUSED, CellStatus.SKIPPED}),
    CellStatus.QUEUED: frozenset({CellStatus.RUNNING, CellStatus.PAUSED, CellStatus.SKIPPED, CellStatus.IDLE}),
    CellStatus.RUNNING: frozenset({CellStatus.COMPLETED, CellStatus.ERROR}),
    CellStatus.PAUSED: frozenset({CellStatus.COMPLETED, CellStatus.ERROR, CellStatus.IDLE}),
    CellStatus.COMPLETED: _RESTARTABLE,
    CellStatus.ERROR: _RESTARTABLE,
    CellStatus.SKIPPED: _RESTARTABLE,
}


def check_run_transition(current: NotebookStatus, target: NotebookStatus) -> None:
    if current == target:
        return
    if target not in RUN_TRANSITIONS[current]:
        raise StateError(f"Notebook cannot move from {current} to {target}")


def check_cell_transition(current: CellStatus, target: CellStatus) -> None:
    if current == target:
        return
    if target not in CELL_TRANSITIONS[current]:
        raise StateError(f"Cell cannot move from {current} to {target}")


def check_can_start(notebook: Notebook, start_from_cell: int) -> bool:
    """Validate that a run may claim the notebook. Returns True for a resume.

    A paused notebook may only be re-entered after its gate was approved, and
    only at the index the approval handed back.
    """
    if start_from_cell < 0 or start_from_cell > len(notebook.cells):
        raise ValueError(f"start_from_cell {start_from_cell} is outside 0..{len(notebook.cells)}")

    if notebook.status == NotebookStatus.RUNNING:
        raise ConflictError(f"Notebook {notebook.id} already has a run in progress")

    if notebook.status == NotebookStatus.PAUSED:
        if notebook.paused_at_cell_id is not None:
            raise ConflictError(
                f"Notebook {notebook.id} is paused at cell {notebook.paused_at_cell_id} awaiting approval"
            )
        if notebook.resume_from != start_from_cell:
            raise ConflictError(f"Notebook {notebook.id} must resume from cell {notebook.resume_from}")
        return True

    if notebook.rejected_at_cell_id is not None:
        raise StateError(
            f"Notebook {notebook.id} was rejected at cell {notebook.rejected_at_cell_id}; reset it before running again"
        )

    if notebook.status not in _FINISHED:
        raise StateError(f"Notebook {notebook.id} cannot start from status {notebook.status}")
    return False


def notebook_status_for(outcome: RunOutcome) -> NotebookStatus:
    """Map a run outcome onto the notebook's run-level status."""
    if outcome == RunOutcome.PARTIAL:
        return NotebookStatus.COMPLETED
    return NotebookStatus(outcome.value)
