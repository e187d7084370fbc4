"""Per-cell-type behaviour, looked up by the cell's type tag.

`command`-like cells go through the tool invoker, `approve` suspends the run,
`note` completes without doing anything. New types register with
`register_handler`; unknown tags fall back to the invoker.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from cadence.core import Result
from cadence.engine.invoker import Invocation, ToolInvoker
from cadence.notebook.cell import Cell, CellType


class CellHandler:
    """Base handler. `suspends` marks gate types that pause the run instead of executing."""

    suspends: bool = False

    async def execute(self, cell: Cell, variables: Mapping[str, Any], invoker: ToolInvoker) -> Result[Invocation]:
        raise NotImplementedError


_HANDLERS: dict[str, CellHandler] = {}


def register_handler(*cell_types: str) -> Callable[[type[CellHandler]], type[CellHandler]]:
    """Class decorator registering a handler for one or more cell type tags."""

    def _register(cls: type[CellHandler]) -> type[CellHandler]:
        instance = cls()
        for cell_type in cell_types:
            _HANDLERS[cell_type] = instance
        return cls

    return _register


def unregister_handler(cell_type: str) -> None:
    _HANDLERS.pop(cell_type, None)


def registered_types() -> list[str]:
    return sorted(_HANDLERS)


@register_handler(CellType.COMMAND, CellType.QUERY, CellType.TRANSFORM, CellType.VISUALIZE, CellType.CONDITION)
class InvokeHandler(CellHandler):
    async def execute(self, cell: Cell, variables: Mapping[str, Any], invoker: ToolInvoker) -> Result[Invocation]:
        return await invoker.execute(cell, variables)


@register_handler(CellType.APPROVE)
class ApprovalHandler(CellHandler):
    suspends = True

    async def execute(self, cell: Cell, variables: Mapping[str, Any], invoker: ToolInvoker) -> Result[Invocation]:
        result: Result[Invocation] = Result()
        result.error("APPROVAL_REQUIRED", f"Cell {cell.id} is an approval gate and needs a human decision")
        return result


@register_handler(CellType.NOTE)
class NoteHandler(CellHandler):
    async def execute(self, cell: Cell, variables: Mapping[str, Any], invoker: ToolInvoker) -> Result[Invocation]:
        return Result(data=Invocation(output=None, output_type=None, reasoning="Note cell, nothing to execute"))


_DEFAULT = InvokeHandler()


def get_handler(cell_type: str) -> CellHandler:
    return _HANDLERS.get(cell_type, _DEFAULT)
