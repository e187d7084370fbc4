"""Error taxonomy surfaced to engine callers."""

from __future__ import annotations


class CadenceError(Exception):
    """Base class for errors raised to callers of the engine."""

    code = "CADENCE_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(CadenceError):
    """Unknown notebook or cell, or the caller does not own it."""

    code = "NOT_FOUND"


class ConflictError(CadenceError):
    """A run is already in flight for the notebook. Callers may retry later."""

    code = "CONFLICT"


class StateError(CadenceError):
    """The requested operation is not valid in the current run or cell state."""

    code = "INVALID_STATE"


class CellExecutionError(CadenceError):
    """A single cell failed.

    Built from the invoker's diagnostics and recorded on the cell. The engine
    never raises it to callers; the failure policy decides the run outcome.
    """

    code = "CELL_EXECUTION_ERROR"

    def __init__(self, message: str, *, cell_id: str, cell_index: int) -> None:
        super().__init__(message)
        self.cell_id = cell_id
        self.cell_index = cell_index
