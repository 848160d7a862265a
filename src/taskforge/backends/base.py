from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

StopReason = Literal["end_turn", "tool_use", "max_tokens"]


class BackendExecutionError(RuntimeError):
    """Raised when a completion request fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a completion request exceeds the configured timeout."""


@dataclass(slots=True)
class ToolCall:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Completion:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: StopReason = "end_turn"
    usage: dict[str, int] = field(default_factory=dict)


class CompletionClient(ABC):
    """Single-turn chat completion with tool calling.

    Messages use a provider-neutral shape:
    ``{"role": "user", "content": str}``,
    ``{"role": "assistant", "content": str, "tool_calls": [{"id", "name", "input"}]}`` and
    ``{"role": "tool", "tool_call_id": str, "content": str, "is_error": bool}``.
    Tools are ``{"name", "description", "input_schema"}`` dicts.
    """

    @abstractmethod
    async def complete(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        """Run one completion turn."""
