from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from taskforge.models import ToolCategory, ToolResult

ToolHandler = Callable[[dict[str, Any]], Awaitable[ToolResult]]

FILE_MODIFYING_TOOLS = frozenset({"write_file", "edit_file", "delete_file"})


class DuplicateToolError(ValueError):
    """Raised when a tool name is registered twice without ``replace=True``."""


class ToolInput(BaseModel):
    """Base for tool argument models; unknown keys and loose types are rejected."""

    model_config = ConfigDict(extra="forbid", strict=True)


class NoInput(ToolInput):
    pass


def format_validation_errors(exc: ValidationError) -> list[str]:
    errors = []
    for error in exc.errors():
        location = "".join(
            f"[{part}]" if isinstance(part, int) else f".{part}" for part in error["loc"]
        )
        errors.append(f"input{location}: {error['msg']}")
    return errors


@dataclass(slots=True)
class Tool:
    name: str
    description: str
    handler: ToolHandler
    input_model: type[ToolInput] = NoInput
    category: ToolCategory = "file"
    requires_approval: bool = False

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()

    def validate(self, payload: Any) -> list[str]:
        try:
            self.input_model.model_validate(payload)
        except ValidationError as exc:
            return format_validation_errors(exc)
        return []

    async def execute(self, payload: Any) -> ToolResult:
        try:
            parsed = self.input_model.model_validate(payload)
        except ValidationError as exc:
            return ToolResult.fail("Validation failed: " + "; ".join(format_validation_errors(exc)))
        return await self.handler(parsed.model_dump(exclude_unset=True))

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool, *, replace: bool = False) -> None:
        if tool.name in self._tools and not replace:
            raise DuplicateToolError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_all(self) -> list[Tool]:
        return list(self._tools.values())

    def get_by_category(self, category: ToolCategory) -> list[Tool]:
        return [tool for tool in self._tools.values() if tool.category == category]

    def has(self, name: str) -> bool:
        return name in self._tools

    def clear(self) -> None:
        self._tools.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
