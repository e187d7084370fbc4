"""Shared test fixtures for cadence tests."""

from __future__ import annotations

import inspect
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from cadence.config import EngineSettings
from cadence.core import Result
from cadence.engine.approval import ApprovalGate
from cadence.engine.engine import ExecutionEngine
from cadence.engine.invoker import Invocation
from cadence.notebook.cell import Cell, CriticReview
from cadence.notebook.notebook import Notebook
from cadence.notebook.store import NotebookStore


class FakeInvoker:
    """Scripted invoker keyed by cell title.

    `outputs` maps a title to the value the cell returns, `failures` to an
    error message and `raises` to an exception. Anything else echoes the cell
    content. `before_call` (sync or async) runs first, while the cell is running.
    """

    def __init__(
        self,
        outputs: dict[str, Any] | None = None,
        failures: dict[str, str] | None = None,
        raises: dict[str, Exception] | None = None,
    ) -> None:
        self.outputs = outputs or {}
        self.failures = failures or {}
        self.raises = raises or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.before_call: Any = None

    async def execute(self, cell: Cell, variables: Mapping[str, Any]) -> Result[Invocation]:
        self.calls.append((cell.title, dict(variables)))
        if self.before_call is not None:
            hooked = self.before_call(cell)
            if inspect.isawaitable(hooked):
                await hooked
        if cell.title in self.raises:
            raise self.raises[cell.title]
        result: Result[Invocation] = Result()
        if cell.title in self.failures:
            result.error("INVOKE_ERROR", self.failures[cell.title])
            return result
        output = self.outputs.get(cell.title, f"done: {cell.content}")
        result.data = Invocation(output=output, tools_used=["fake"])
        return result

    @property
    def titles(self) -> list[str]:
        return [title for title, _ in self.calls]


class FakeCritic:
    def __init__(self, review: CriticReview | None = None, exc: Exception | None = None) -> None:
        self.review_result = review or CriticReview(approved=True, confidence=90, reasoning="Looks fine")
        self.exc = exc
        self.reviewed: list[str] = []

    async def review(self, cell: Cell, output: Any) -> CriticReview:
        self.reviewed.append(cell.id)
        if self.exc is not None:
            raise self.exc
        return self.review_result


def make_notebook(store: NotebookStore, *cells: tuple[str, str], owner_id: str = "alice") -> Notebook:
    """Create a notebook with (cell_type, title) cells; content mirrors the title."""
    notebook = store.create_notebook(owner_id, title="Test notebook")
    for cell_type, title in cells:
        store.add_cell(notebook.id, owner_id, cell_type=cell_type, title=title, content=f"do {title}")
    return store.load_notebook(notebook.id)


def mock_text_response(text: str, input_tokens: int = 10, output_tokens: int = 5) -> MagicMock:
    """Create a mock Anthropic response with a single text block."""
    block = MagicMock()
    block.type = "text"
    block.text = text
    response = MagicMock()
    response.content = [block]
    response.usage.input_tokens = input_tokens
    response.usage.output_tokens = output_tokens
    return response


def mock_review_response(tool_input: dict[str, Any]) -> MagicMock:
    """Create a mock Anthropic response with a submit_review tool use."""
    block = MagicMock()
    block.type = "tool_use"
    block.name = "submit_review"
    block.input = tool_input
    response = MagicMock()
    response.content = [block]
    return response


@pytest.fixture
def store(tmp_path: Path) -> NotebookStore:
    return NotebookStore(tmp_path / "notebooks")


@pytest.fixture
def invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
def engine(store: NotebookStore, invoker: FakeInvoker) -> ExecutionEngine:
    return ExecutionEngine(store, invoker, settings=EngineSettings())


@pytest.fixture
def gate(store: NotebookStore) -> ApprovalGate:
    return ApprovalGate(store)
