"""Cell models for the notebook.

A Cell is one addressable unit of work: its type tag selects how the engine
executes it, and its status, output and execution log record what happened
during the most recent run.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


def generate_cell_id() -> str:
    """Generate a cell ID: 'cell_' + 8 hex chars from uuid4."""
    return "cell_" + uuid.uuid4().hex[:8]


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class CellType(StrEnum):
    COMMAND = "command"
    QUERY = "query"
    TRANSFORM = "transform"
    VISUALIZE = "visualize"
    APPROVE = "approve"
    CONDITION = "condition"
    NOTE = "note"


class CellStatus(StrEnum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    PAUSED = "paused"
    SKIPPED = "skipped"


class CriticReview(BaseModel):
    """Advisory quality review of a cell's output."""

    approved: bool = True
    confidence: int = Field(default=100, ge=0, le=100)
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    reasoning: str = ""


class CriticReviewEntry(CriticReview):
    type: Literal["critic_review"] = "critic_review"
    timestamp: str = Field(default_factory=utc_now)


class HumanReviewEntry(BaseModel):
    type: Literal["human_review"] = "human_review"
    timestamp: str = Field(default_factory=utc_now)
    action: Literal["approved", "rejected"]
    feedback: str | None = None


class TraceEntry(BaseModel):
    type: Literal["trace"] = "trace"
    timestamp: str = Field(default_factory=utc_now)
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


ExecutionLogEntry = Annotated[
    CriticReviewEntry | HumanReviewEntry | TraceEntry,
    Field(discriminator="type"),
]


class Cell(BaseModel):
    id: str = Field(default_factory=generate_cell_id)
    cell_index: int = 0
    # Open tag: CellType lists the built-in values, handlers may register more.
    cell_type: str = CellType.COMMAND
    title: str = ""
    content: str = ""
    dependencies: list[str] = Field(default_factory=list)
    status: CellStatus = CellStatus.IDLE
    output: Any = None
    output_type: str | None = None
    error_message: str | None = None
    duration_ms: int | None = None
    execution_log: list[ExecutionLogEntry] = Field(default_factory=list)
    reasoning: str = ""
    tools_used: list[str] = Field(default_factory=list)
    tokens_input: int = 0
    tokens_output: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    def clear_run_state(self) -> None:
        """Drop everything a run wrote to this cell."""
        self.status = CellStatus.IDLE
        self.output = None
        self.output_type = None
        self.error_message = None
        self.duration_ms = None
        self.execution_log = []
        self.reasoning = ""
        self.tools_used = []
        self.tokens_input = 0
        self.tokens_output = 0
        self.started_at = None
        self.completed_at = None
