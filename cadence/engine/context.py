"""Variable context threaded through a run."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

LAST_OUTPUT = "last_output"


def output_key(cell_index: int) -> str:
    return f"cell_{cell_index}_output"


class VariableContext:
    """Mutable string-keyed map seeded with caller inputs.

    Owned by exactly one run. After every successful cell the engine records
    the cell's output under `cell_<index>_output`, `last_output` and the cell
    id. The id key survives cells being inserted, deleted or reordered.
    """

    def __init__(self, inputs: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = {}
        if inputs:
            self.seed(inputs)

    def seed(self, inputs: Mapping[str, Any]) -> None:
        for key, value in inputs.items():
            self.set(key, value)

    def set(self, key: str, value: Any) -> None:
        self._values[str(key)] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def record_output(self, cell_index: int, output: Any, cell_id: str | None = None) -> None:
        self.set(output_key(cell_index), output)
        self.set(LAST_OUTPUT, output)
        if cell_id is not None:
            self.set(cell_id, output)

    def snapshot(self) -> Mapping[str, Any]:
        """Return a read-only deep copy for invokers and result reporting."""
        return MappingProxyType(copy.deepcopy(self._values))

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)
