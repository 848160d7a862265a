from __future__ import annotations

from taskforge.agents.base import (
    Agent,
    AgentCapabilities,
    AgentContext,
    AgentEventHandler,
    AgentMetadata,
)
from taskforge.agents.documenter import DocsAgent
from taskforge.agents.feature import FeatureAgent
from taskforge.agents.qa import QAAgent
from taskforge.agents.refactor import RefactorAgent
from taskforge.agents.security import SecurityAgent
from taskforge.agents.tester import TestAgent
from taskforge.backends.base import CompletionClient

AGENT_TYPES: dict[str, type[Agent]] = {
    "test": TestAgent,
    "qa": QAAgent,
    "feature": FeatureAgent,
    "refactor": RefactorAgent,
    "docs": DocsAgent,
    "security": SecurityAgent,
}


def build_agents(client: CompletionClient, *, model: str | None = None) -> dict[str, Agent]:
    return {role: agent_type(client, model=model) for role, agent_type in AGENT_TYPES.items()}


__all__ = [
    "AGENT_TYPES",
    "Agent",
    "AgentCapabilities",
    "AgentContext",
    "AgentEventHandler",
    "AgentMetadata",
    "DocsAgent",
    "FeatureAgent",
    "QAAgent",
    "RefactorAgent",
    "SecurityAgent",
    "TestAgent",
    "build_agents",
]
