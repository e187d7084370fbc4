"""Tool invoker: executes a cell's actual work.

The engine only depends on the `ToolInvoker` protocol. `AnthropicInvoker` is
the default implementation: it substitutes `{{variable}}` placeholders into
the cell content and sends it to the model with a cell-type-specific system
prompt. Failures are reported as error diagnostics, never raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import Mapping
from typing import Any, Protocol

import anthropic
from pydantic import BaseModel, Field

from cadence.config import LLMConfig
from cadence.core import Result
from cadence.engine.context import LAST_OUTPUT
from cadence.engine.prompts import JSON_CELL_TYPES, build_cell_system_prompt
from cadence.notebook.cell import Cell

logger = logging.getLogger("cadence.invoker")

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
_JSON_FENCE = re.compile(r"```json\s*\n?(.*?)\n?```", re.DOTALL)


class Invocation(BaseModel):
    """What a successful invocation produced."""

    output: Any = None
    output_type: str | None = "text"
    reasoning: str = ""
    tools_used: list[str] = Field(default_factory=list)
    tokens_input: int = 0
    tokens_output: int = 0


class ToolInvoker(Protocol):
    async def execute(self, cell: Cell, variables: Mapping[str, Any]) -> Result[Invocation]: ...


def render_content(content: str, variables: Mapping[str, Any]) -> str:
    """Replace `{{key}}` placeholders with variable values.

    `{{prev}}` is an alias for `last_output`, and `{{<cell id>}}` resolves to that
    cell's output. Unknown placeholders are left as-is.
    """

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key == "prev":
            key = LAST_OUTPUT
        if key not in variables:
            return match.group(0)
        value = variables[key]
        return value if isinstance(value, str) else json.dumps(value, default=str)

    return _PLACEHOLDER.sub(_sub, content)


def parse_output(cell_type: str, text: str) -> tuple[Any, str]:
    """Turn raw model text into (output, output_type) for the given cell type."""
    stripped = text.strip()
    if cell_type in JSON_CELL_TYPES:
        fenced = _JSON_FENCE.search(stripped)
        candidate = fenced.group(1) if fenced else stripped
        if fenced or candidate.startswith(("{", "[")):
            try:
                return json.loads(candidate), "json"
            except json.JSONDecodeError:
                logger.debug("Output of %s cell is not valid JSON, keeping text", cell_type)
    if cell_type == "condition":
        first, _, rest = stripped.partition("\n")
        verdict = first.strip().strip(".").lower()
        if verdict in ("true", "false"):
            return {"result": verdict == "true", "explanation": rest.strip()}, "json"
    return stripped, "text"


class AnthropicInvoker:
    """Executes cells by prompting an Anthropic model."""

    def __init__(self, config: LLMConfig, client: anthropic.Anthropic | None = None) -> None:
        self._config = config
        self._client = client

    def _get_client(self) -> anthropic.Anthropic | None:
        if self._client is not None:
            return self._client
        api_key = os.environ.get(self._config.api_key_env, "")
        if not api_key:
            return None
        self._client = anthropic.Anthropic(api_key=api_key)
        return self._client

    async def execute(self, cell: Cell, variables: Mapping[str, Any]) -> Result[Invocation]:
        result: Result[Invocation] = Result()

        client = self._get_client()
        if client is None:
            result.error(
                "CONFIG_ERROR",
                f"Missing API key: set {self._config.api_key_env} environment variable",
            )
            return result

        prompt = render_content(cell.content, variables)
        system = build_cell_system_prompt(cell.cell_type, list(variables))
        logger.info("Invoking model=%s for %s cell %s (%d chars)", self._config.model, cell.cell_type, cell.id, len(prompt))

        try:
            response = await asyncio.to_thread(
                client.messages.create,
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                temperature=0,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            result.error("API_ERROR", f"Anthropic API error: {e}")
            return result
        except Exception as e:  # noqa: BLE001
            result.error("INVOKE_ERROR", f"Unexpected error: {e}")
            return result

        text = ""
        for block in response.content:
            if block.type == "text":
                text = block.text
                break

        if not text:
            result.error("EMPTY_OUTPUT", "Model returned no text content")
            return result

        output, output_type = parse_output(cell.cell_type, text)
        usage = getattr(response, "usage", None)
        result.data = Invocation(
            output=output,
            output_type=output_type,
            reasoning=f"Processed {cell.cell_type} cell with {len(prompt)} chars input",
            tokens_input=int(getattr(usage, "input_tokens", 0) or 0),
            tokens_output=int(getattr(usage, "output_tokens", 0) or 0),
        )
        return result
