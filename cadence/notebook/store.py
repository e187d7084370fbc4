"""Persistent notebook store. Saves to ~/.cadence/notebooks/{id}.json.

Every call re-reads the notebook from disk and writes it back atomically, so
any store instance pointed at the same directory sees the latest durable
state. Read-modify-write sequences run inside `transaction`, which holds a
per-directory lock for the duration.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from cadence.core import Result
from cadence.errors import ConflictError, NotFoundError
from cadence.notebook.cell import Cell, ExecutionLogEntry, utc_now
from cadence.notebook.notebook import Notebook, is_in_flight

logger = logging.getLogger("cadence.store")

_locks: dict[Path, threading.RLock] = {}
_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    with _locks_guard:
        key = path.resolve()
        if key not in _locks:
            _locks[key] = threading.RLock()
        return _locks[key]


class NotebookStore:
    """Stores notebooks and their cells with automatic disk persistence."""

    def __init__(self, notebooks_dir: Path) -> None:
        self._notebooks_dir = notebooks_dir
        self._notebooks_dir.mkdir(parents=True, exist_ok=True)
        self._lock = _lock_for(notebooks_dir)

    def _path(self, notebook_id: str) -> Path:
        return self._notebooks_dir / f"{notebook_id}.json"

    def save(self, notebook: Notebook) -> None:
        """Atomic write: write to .tmp, then rename."""
        path = self._path(notebook.id)
        tmp_path = path.with_suffix(".json.tmp")
        notebook.updated_at = utc_now()
        data = notebook.model_dump(mode="json")
        with self._lock:
            tmp_path.write_text(json.dumps(data, indent=2, default=str) + "\n")
            tmp_path.rename(path)
        logger.debug("Saved notebook %s (%d cells, status=%s)", notebook.id, len(notebook.cells), notebook.status)

    def load(self, notebook_id: str) -> Result[Notebook]:
        """Load a notebook from disk by ID."""
        result: Result[Notebook] = Result()
        path = self._path(notebook_id)
        if not path.exists():
            result.error("NOT_FOUND", f"Notebook {notebook_id} not found")
            return result
        try:
            data = json.loads(path.read_text())
            result.data = Notebook.model_validate(data)
        except Exception as e:  # noqa: BLE001
            result.error("LOAD_ERROR", f"Failed to load notebook: {e}")
        return result

    def load_notebook(self, notebook_id: str, owner_id: str | None = None) -> Notebook:
        """Load a notebook, raising NotFoundError if missing or owned by someone else."""
        result = self.load(notebook_id)
        if result.data is None:
            raise NotFoundError(result.error_message or f"Notebook {notebook_id} not found")
        notebook = result.data
        if owner_id is not None and notebook.owner_id != owner_id:
            raise NotFoundError(f"Notebook {notebook_id} not found")
        return notebook

    def load_cells(self, notebook_id: str) -> list[Cell]:
        """Return the notebook's cells ordered by cell_index."""
        notebook = self.load_notebook(notebook_id)
        return sorted(notebook.cells, key=lambda c: c.cell_index)

    def get_cell(self, notebook_id: str, cell_id: str, owner_id: str | None = None) -> Cell:
        notebook = self.load_notebook(notebook_id, owner_id)
        cell = notebook.get_cell(cell_id)
        if cell is None:
            raise NotFoundError(f"Cell {cell_id} not found in notebook {notebook_id}")
        return cell

    @contextmanager
    def transaction(self, notebook_id: str, owner_id: str | None = None) -> Iterator[Notebook]:
        """Yield the current notebook for mutation and persist it on clean exit.

        Nothing is written if the block raises.
        """
        with self._lock:
            notebook = self.load_notebook(notebook_id, owner_id)
            yield notebook
            self.save(notebook)

    # --- Notebook records ---

    def create_notebook(self, owner_id: str, title: str = "Untitled Notebook", description: str = "") -> Notebook:
        notebook = Notebook(owner_id=owner_id, title=title, description=description)
        self.save(notebook)
        logger.info("Created notebook %s for %s", notebook.id, owner_id)
        return notebook

    def list_notebooks(self, owner_id: str | None = None) -> list[Notebook]:
        notebooks: list[Notebook] = []
        for path in sorted(self._notebooks_dir.glob("nb_*.json")):
            result = self.load(path.stem)
            if result.data is None:
                logger.warning("Skipping corrupt notebook: %s", path)
                continue
            if owner_id is None or result.data.owner_id == owner_id:
                notebooks.append(result.data)
        return sorted(notebooks, key=lambda nb: nb.updated_at, reverse=True)

    def delete_notebook(self, notebook_id: str, owner_id: str | None = None) -> None:
        with self._lock:
            notebook = self.load_notebook(notebook_id, owner_id)
            _ensure_editable(notebook)
            self._path(notebook_id).unlink()
        logger.info("Deleted notebook %s", notebook_id)

    def update_notebook_status(self, notebook_id: str, **fields: Any) -> Notebook:
        """Apply run-level fields (status, error_message, ...) in one atomic write."""
        with self.transaction(notebook_id) as notebook:
            for key, value in fields.items():
                setattr(notebook, key, value)
        return notebook

    # --- Cell records ---

    def update_cell_status(self, notebook_id: str, cell_id: str, **fields: Any) -> Cell:
        """Apply cell fields (status, output, error_message, ...) in one atomic write."""
        with self.transaction(notebook_id) as notebook:
            cell = _require_cell(notebook, cell_id)
            for key, value in fields.items():
                setattr(cell, key, value)
            cell.updated_at = utc_now()
        return cell

    def append_log(self, notebook_id: str, cell_id: str, entry: ExecutionLogEntry) -> Cell:
        with self.transaction(notebook_id) as notebook:
            cell = _require_cell(notebook, cell_id)
            cell.execution_log.append(entry)
            cell.updated_at = utc_now()
        return cell

    def add_cell(
        self,
        notebook_id: str,
        owner_id: str | None = None,
        *,
        cell_type: str = "command",
        title: str = "",
        content: str = "",
        dependencies: list[str] | None = None,
        insert_at: int | None = None,
    ) -> Cell:
        """Append a cell, or insert it at `insert_at` shifting later cells down."""
        with self.transaction(notebook_id, owner_id) as notebook:
            _ensure_editable(notebook)
            deps = dependencies or []
            _check_dependencies(notebook, deps)
            cells = sorted(notebook.cells, key=lambda c: c.cell_index)
            position = len(cells) if insert_at is None else max(0, min(insert_at, len(cells)))
            cell = Cell(cell_type=cell_type, title=title, content=content, dependencies=deps)
            cells.insert(position, cell)
            _repack(cells)
            notebook.cells = cells
        logger.info("Added %s cell %s to notebook %s at index %d", cell_type, cell.id, notebook_id, cell.cell_index)
        return cell

    def update_cell(self, notebook_id: str, cell_id: str, owner_id: str | None = None, **edits: Any) -> Cell:
        """Edit cell definition fields between runs."""
        allowed = {"cell_type", "title", "content", "dependencies"}
        unknown = set(edits) - allowed
        if unknown:
            raise ValueError(f"Cannot edit cell fields: {', '.join(sorted(unknown))}")
        with self.transaction(notebook_id, owner_id) as notebook:
            _ensure_editable(notebook)
            cell = _require_cell(notebook, cell_id)
            if edits.get("dependencies") is not None:
                if cell_id in edits["dependencies"]:
                    raise ValueError("A cell cannot depend on itself")
                _check_dependencies(notebook, edits["dependencies"])
            for key, value in edits.items():
                if value is not None:
                    setattr(cell, key, value)
            cell.updated_at = utc_now()
        return cell

    def delete_cell(self, notebook_id: str, cell_id: str, owner_id: str | None = None) -> None:
        """Remove a cell, purge it from other cells' dependencies and re-pack indices."""
        with self.transaction(notebook_id, owner_id) as notebook:
            _ensure_editable(notebook)
            _require_cell(notebook, cell_id)
            remaining = sorted((c for c in notebook.cells if c.id != cell_id), key=lambda c: c.cell_index)
            for cell in remaining:
                if cell_id in cell.dependencies:
                    cell.dependencies = [d for d in cell.dependencies if d != cell_id]
            _repack(remaining)
            notebook.cells = remaining
        logger.info("Deleted cell %s from notebook %s", cell_id, notebook_id)

    def reorder_cells(self, notebook_id: str, cell_order: list[str], owner_id: str | None = None) -> list[Cell]:
        """Reassign cell_index from a complete list of cell ids."""
        with self.transaction(notebook_id, owner_id) as notebook:
            _ensure_editable(notebook)
            if sorted(cell_order) != sorted(c.id for c in notebook.cells):
                raise ValueError("cell_order must list every cell id exactly once")
            by_id = {c.id: c for c in notebook.cells}
            cells = [by_id[cid] for cid in cell_order]
            _repack(cells)
            notebook.cells = cells
        return cells


def _require_cell(notebook: Notebook, cell_id: str) -> Cell:
    cell = notebook.get_cell(cell_id)
    if cell is None:
        raise NotFoundError(f"Cell {cell_id} not found in notebook {notebook.id}")
    return cell


def _ensure_editable(notebook: Notebook) -> None:
    if is_in_flight(notebook.status):
        raise ConflictError(f"Notebook {notebook.id} is {notebook.status}; cells cannot change mid-run")


def _check_dependencies(notebook: Notebook, dependencies: list[str]) -> None:
    for dep in dependencies:
        if notebook.get_cell(dep) is None:
            raise NotFoundError(f"Dependency cell {dep} not found in notebook {notebook.id}")


def _repack(cells: list[Cell]) -> None:
    for i, cell in enumerate(cells):
        cell.cell_index = i


_store: NotebookStore | None = None


def get_store(notebooks_dir: Path | None = None) -> NotebookStore:
    """Get the module-level singleton store."""
    global _store  # noqa: PLW0603
    if _store is None:
        if notebooks_dir is None:
            notebooks_dir = Path.home() / ".cadence" / "notebooks"
        _store = NotebookStore(notebooks_dir)
    return _store


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _store  # noqa: PLW0603
    _store = None
