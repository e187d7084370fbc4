"""Critic reviewer: advisory quality review of a completed cell's output.

A review never pauses or fails a run. When the model cannot be reached or
returns something unusable, the critic approves with reduced confidence and
recommends manual review.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Protocol

import anthropic

from cadence.config import LLMConfig
from cadence.engine.prompts import REVIEW_TOOL, build_review_message, build_review_prompt
from cadence.notebook.cell import Cell, CriticReview

logger = logging.getLogger("cadence.critic")


class CriticReviewer(Protocol):
    async def review(self, cell: Cell, output: Any) -> CriticReview: ...


def fallback_review(reason: str) -> CriticReview:
    return CriticReview(
        approved=True,
        confidence=50,
        suggestions=["Critic review unavailable - manual review recommended"],
        reasoning=reason,
    )


class AnthropicCritic:
    def __init__(self, config: LLMConfig, *, strict: bool = False, client: anthropic.Anthropic | None = None) -> None:
        self._config = config
        self._strict = strict
        self._client = client

    async def review(self, cell: Cell, output: Any) -> CriticReview:
        client = self._client
        if client is None:
            api_key = os.environ.get(self._config.api_key_env, "")
            if not api_key:
                return fallback_review(f"Missing API key: {self._config.api_key_env}")
            client = self._client = anthropic.Anthropic(api_key=api_key)

        try:
            response = await asyncio.to_thread(
                client.messages.create,  # type: ignore[call-overload]
                model=self._config.model,
                max_tokens=1024,
                temperature=0,
                system=build_review_prompt(cell.cell_type, strict=self._strict),
                messages=[{"role": "user", "content": build_review_message(cell.content, output)}],
                tools=[REVIEW_TOOL],
                tool_choice={"type": "tool", "name": "submit_review"},
            )
        except anthropic.APIError as e:
            logger.warning("Critic review failed for cell %s: %s", cell.id, e)
            return fallback_review(f"Critic error: {e}")

        tool_input = _extract_tool_input(response, "submit_review")
        if tool_input is None:
            logger.warning("Critic did not return submit_review for cell %s", cell.id)
            return fallback_review("Unable to parse critic response")

        try:
            review = CriticReview.model_validate(tool_input)
        except ValueError as e:
            return fallback_review(f"Invalid critic response: {e}")
        logger.info("Critic review for cell %s: approved=%s confidence=%d", cell.id, review.approved, review.confidence)
        return review


def _extract_tool_input(response: Any, tool_name: str) -> dict[str, Any] | None:
    """Extract the input dict from a tool_use content block."""
    for block in response.content:
        if block.type == "tool_use" and block.name == tool_name:
            return block.input  # type: ignore[no-any-return]
    return None
