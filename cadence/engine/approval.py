"""Human-in-the-loop approval of a paused run.

Approving does not restart the loop: it hands back the index to resume from,
and the caller resumes explicitly with `ExecutionEngine.run(start_from_cell=...)`.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from cadence.engine.state import RunOutcome, check_cell_transition, check_run_transition
from cadence.errors import NotFoundError, StateError
from cadence.notebook.cell import Cell, CellStatus, HumanReviewEntry, utc_now
from cadence.notebook.notebook import Notebook, NotebookStatus
from cadence.notebook.store import NotebookStore

logger = logging.getLogger("cadence.approval")

REJECTED_MESSAGE = "Rejected by user"


class ApprovalDecision(BaseModel):
    action: str
    cell_id: str
    notebook_status: NotebookStatus
    continue_from: int | None = None
    message: str = ""


class ApprovalGate:
    def __init__(self, store: NotebookStore) -> None:
        self._store = store

    def approve(
        self,
        notebook_id: str,
        cell_id: str,
        owner_id: str | None = None,
        feedback: str | None = None,
    ) -> ApprovalDecision:
        """Complete the paused gate cell and return the index to resume from.

        If the gate was the notebook's last cell the run is finished here and
        `continue_from` is None.
        """
        with self._store.transaction(notebook_id, owner_id) as notebook:
            cell = _paused_cell(notebook, cell_id)
            check_cell_transition(cell.status, CellStatus.COMPLETED)
            cell.status = CellStatus.COMPLETED
            cell.completed_at = utc_now()
            cell.updated_at = utc_now()
            cell.execution_log.append(HumanReviewEntry(action="approved", feedback=feedback))
            notebook.paused_at_cell_id = None

            record = notebook.current_run
            if record is not None:
                record.cells_completed += 1

            next_index = cell.cell_index + 1
            if next_index < len(notebook.cells):
                notebook.resume_from = next_index
                continue_from: int | None = next_index
                message = f"Cell approved. Continue execution from cell {next_index}."
            else:
                check_run_transition(notebook.status, NotebookStatus.COMPLETED)
                notebook.status = NotebookStatus.COMPLETED
                notebook.resume_from = None
                notebook.run_variables = {}
                if record is not None:
                    record.status = RunOutcome.PARTIAL if record.cells_failed else RunOutcome.COMPLETED
                    record.completed_at = utc_now()
                notebook.error_message = record.error_message if record else None
                continue_from = None
                message = "Cell approved. Notebook execution completed."

        logger.info("Cell %s of notebook %s approved (continue_from=%s)", cell_id, notebook_id, continue_from)
        return ApprovalDecision(
            action="approved",
            cell_id=cell_id,
            notebook_status=notebook.status,
            continue_from=continue_from,
            message=message,
        )

    def reject(
        self,
        notebook_id: str,
        cell_id: str,
        owner_id: str | None = None,
        feedback: str | None = None,
    ) -> ApprovalDecision:
        """Fail the paused gate cell, skip everything after it and fail the run."""
        reason = feedback or REJECTED_MESSAGE
        with self._store.transaction(notebook_id, owner_id) as notebook:
            cell = _paused_cell(notebook, cell_id)
            check_cell_transition(cell.status, CellStatus.ERROR)
            cell.status = CellStatus.ERROR
            cell.error_message = reason
            cell.completed_at = utc_now()
            cell.updated_at = utc_now()
            cell.execution_log.append(HumanReviewEntry(action="rejected", feedback=feedback))

            skipped = 0
            for later in notebook.cells:
                if later.cell_index > cell.cell_index:
                    check_cell_transition(later.status, CellStatus.SKIPPED)
                    later.status = CellStatus.SKIPPED
                    later.updated_at = utc_now()
                    skipped += 1

            check_run_transition(notebook.status, NotebookStatus.FAILED)
            notebook.status = NotebookStatus.FAILED
            notebook.error_message = reason
            notebook.paused_at_cell_id = None
            notebook.resume_from = None
            notebook.rejected_at_cell_id = cell_id
            notebook.run_variables = {}

            record = notebook.current_run
            if record is not None:
                record.status = RunOutcome.FAILED
                record.cells_failed += 1
                record.cells_skipped += skipped
                record.error_cell_id = cell_id
                record.error_message = reason
                record.completed_at = utc_now()

        logger.info("Cell %s of notebook %s rejected; %d later cells skipped", cell_id, notebook_id, skipped)
        return ApprovalDecision(
            action="rejected",
            cell_id=cell_id,
            notebook_status=NotebookStatus.FAILED,
            message="Cell rejected. Notebook execution stopped.",
        )


def _paused_cell(notebook: Notebook, cell_id: str) -> Cell:
    """Return the gate cell if it is the one the notebook is waiting on."""
    cell = notebook.get_cell(cell_id)
    if cell is None:
        raise NotFoundError(f"Cell {cell_id} not found in notebook {notebook.id}")
    if cell.status != CellStatus.PAUSED:
        raise StateError(f"Cell {cell_id} is not in paused state (status={cell.status})")
    if notebook.paused_at_cell_id != cell_id:
        raise StateError(f"Notebook {notebook.id} is not waiting on cell {cell_id}")
    return cell
