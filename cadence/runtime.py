"""Wire the engine to its default collaborators from config."""

from __future__ import annotations

from cadence.config import CadenceConfig
from cadence.engine.approval import ApprovalGate
from cadence.engine.critic import AnthropicCritic, CriticReviewer
from cadence.engine.engine import ExecutionEngine
from cadence.engine.invoker import AnthropicInvoker, ToolInvoker
from cadence.notebook.store import NotebookStore


def build_invoker(config: CadenceConfig) -> ToolInvoker:
    return AnthropicInvoker(config.llm)


def build_critic(config: CadenceConfig) -> CriticReviewer | None:
    if not config.engine.critic_enabled:
        return None
    return AnthropicCritic(config.llm, strict=config.engine.critic_strict)


def build_engine(
    store: NotebookStore,
    config: CadenceConfig,
    invoker: ToolInvoker | None = None,
    critic: CriticReviewer | None = None,
) -> ExecutionEngine:
    return ExecutionEngine(
        store,
        invoker or build_invoker(config),
        critic=critic or build_critic(config),
        settings=config.engine,
    )


def build_gate(store: NotebookStore) -> ApprovalGate:
    return ApprovalGate(store)
