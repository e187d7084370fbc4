"""Notebook model: run-level state plus the ordered cells it owns."""

from __future__ import annotations

import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from cadence.notebook.cell import Cell, utc_now


def generate_notebook_id() -> str:
    """Generate a notebook ID: 'nb_' + 12 hex chars from uuid4."""
    return "nb_" + uuid.uuid4().hex[:12]


class NotebookStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


IN_FLIGHT = frozenset({NotebookStatus.RUNNING, NotebookStatus.PAUSED})


def is_in_flight(status: NotebookStatus) -> bool:
    return status in IN_FLIGHT


class RunRecord(BaseModel):
    """One execution attempt, kept as history on the notebook."""

    run_number: int
    trigger: str = "manual"
    status: str = "running"
    start_from_cell: int = 0
    cells_total: int = 0
    cells_completed: int = 0
    cells_failed: int = 0
    cells_skipped: int = 0
    started_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None
    duration_ms: int | None = None
    error_cell_id: str | None = None
    error_message: str | None = None


class Notebook(BaseModel):
    id: str = Field(default_factory=generate_notebook_id)
    owner_id: str = "local"
    title: str = "Untitled Notebook"
    description: str = ""
    status: NotebookStatus = NotebookStatus.IDLE
    last_run_at: str | None = None
    last_run_duration_ms: int | None = None
    error_message: str | None = None
    paused_at_cell_id: str | None = None
    resume_from: int | None = None
    rejected_at_cell_id: str | None = None
    cancel_requested: bool = False
    run_variables: dict[str, Any] = Field(default_factory=dict)
    runs: list[RunRecord] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    cells: list[Cell] = Field(default_factory=list)

    def get_cell(self, cell_id: str) -> Cell | None:
        for cell in self.cells:
            if cell.id == cell_id:
                return cell
        return None

    @property
    def current_run(self) -> RunRecord | None:
        return self.runs[-1] if self.runs else None
