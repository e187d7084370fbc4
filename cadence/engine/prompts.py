"""System prompt templates and Anthropic tool definitions for cell execution and review."""

from __future__ import annotations

import json
from typing import Any

_BASE_PROMPT = """\
You are an AI assistant carrying out one step of a business workflow notebook.
Earlier steps' outputs may already be substituted into the request.
Be concise and actionable."""

_CELL_TYPE_PROMPTS: dict[str, str] = {
    "command": (
        "Execute the user's command and provide clear results.\n"
        "If the command requires external data you don't have, explain what would be needed."
    ),
    "query": (
        "Retrieve and structure the requested data.\n"
        "Format data as JSON when possible (wrap in ```json blocks).\n"
        "Include relevant metadata about the query results."
    ),
    "transform": (
        "Transform the input data as requested.\n"
        "Preserve data structure unless explicitly asked to change it.\n"
        "Output the transformed data as JSON (wrap in ```json blocks)."
    ),
    "visualize": (
        "Create a visualization description or structured data for charts.\n"
        "For charts, output JSON with: { chartType, labels, datasets, options }\n"
        "For tables, output JSON with: { columns, rows }"
    ),
    "condition": (
        'Evaluate the condition and respond with exactly "true" or "false" on the first line.\n'
        "Explain your reasoning briefly after the boolean result."
    ),
}

# Cell types whose text output is parsed as JSON when possible.
JSON_CELL_TYPES = frozenset({"query", "transform", "visualize"})


def build_cell_system_prompt(cell_type: str, variable_names: list[str]) -> str:
    """Build the system prompt for executing a cell of the given type."""
    parts = [_BASE_PROMPT]
    extra = _CELL_TYPE_PROMPTS.get(cell_type)
    if extra:
        parts.append(extra)
    if variable_names:
        parts.append("Variables available to this step: " + ", ".join(sorted(variable_names)))
    return "\n\n".join(parts)


REVIEW_TOOL: dict[str, Any] = {
    "name": "submit_review",
    "description": "Submit a structured quality review of an AI-generated workflow step output.",
    "input_schema": {
        "type": "object",
        "properties": {
            "approved": {
                "type": "boolean",
                "description": "True if the output correctly and safely addresses the request.",
            },
            "confidence": {
                "type": "integer",
                "minimum": 0,
                "maximum": 100,
                "description": "Confidence in this review, 0-100.",
            },
            "issues": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Specific problems found. Empty or minor observations only if approved.",
            },
            "suggestions": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Actionable improvements.",
            },
            "reasoning": {"type": "string", "description": "Brief explanation of the review."},
        },
        "required": ["approved", "confidence", "issues", "suggestions", "reasoning"],
    },
}

_REVIEW_SYSTEM_PROMPT = """\
You are a critic reviewing AI-generated outputs before they are shown to a human operator.

Evaluate the output for:
1. Accuracy: does it correctly address the request?
2. Completeness: is anything explicitly requested missing?
3. Quality: is it well-structured and professional?
4. Safety: does it contain harmful, biased, or inappropriate content?
5. Factual correctness: are claims verifiable and reasonable?

Step type: {cell_type}
Mode: {mode}

If approved is true, issues should be empty or contain only minor observations.
If approved is false, give specific, actionable feedback."""


def build_review_prompt(cell_type: str, *, strict: bool = False) -> str:
    return _REVIEW_SYSTEM_PROMPT.format(cell_type=cell_type, mode="STRICT - apply rigorous standards" if strict else "STANDARD")


def build_review_message(request: str, output: Any) -> str:
    """Build the user message carrying the original request and the output under review."""
    output_text = output if isinstance(output, str) else json.dumps(output, indent=2, default=str)
    return (
        "<original_request>\n"
        f"{request}\n"
        "</original_request>\n"
        "<output>\n"
        f"{output_text}\n"
        "</output>"
    )
