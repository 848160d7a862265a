from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskforge.backends.base import Completion, CompletionClient
from taskforge.config import AgentConfig
from taskforge.models import (
    AgentEvent,
    AgentEventType,
    AgentResult,
    AutonomyLevel,
    ExecutionPlan,
    FileChange,
    Task,
    ToolResult,
    ToolUseRecord,
    ValidationIssue,
    ValidationResult,
)
from taskforge.tools.registry import FILE_MODIFYING_TOOLS, Tool

logger = logging.getLogger("taskforge.agents")

AgentEventHandler = Callable[[AgentEvent], Awaitable[None] | None]

CONTINUE_PROMPT = "Continue."
MAX_ITERATIONS_SUMMARY = "Maximum iterations reached without completion"


@dataclass(slots=True, frozen=True)
class AgentCapabilities:
    can_read_files: bool = True
    can_write_files: bool = False
    can_execute_commands: bool = False
    can_modify_tests: bool = False
    can_modify_source: bool = False
    can_commit: bool = False


@dataclass(slots=True, frozen=True)
class AgentMetadata:
    role: str
    name: str
    description: str
    autonomy_level: AutonomyLevel
    capabilities: AgentCapabilities


@dataclass(slots=True)
class AgentContext:
    config: AgentConfig
    task: Task
    tools: dict[str, Tool]
    working_directory: Path
    conversation_history: list[dict[str, Any]] = field(default_factory=list)
    iteration: int = 0
    max_iterations: int = 10

    @property
    def target_files(self) -> list[str]:
        return list(self.task.target.files) if self.task.target else []


class Agent(ABC):
    """Role-specific policy that plans, executes through tools, and validates a task.

    Subclasses declare their role metadata as class attributes and provide the
    plan, prompts and validation rules. ``execute`` drives the shared bounded
    tool-calling loop against the completion client.
    """

    role: str = "agent"
    name: str = "Agent"
    description: str = ""
    autonomy_level: AutonomyLevel = "supervised"
    capabilities: AgentCapabilities = AgentCapabilities()

    def __init__(self, client: CompletionClient, *, model: str | None = None) -> None:
        self.client = client
        self.model = model
        self._handlers: list[AgentEventHandler] = []

    @property
    def metadata(self) -> AgentMetadata:
        return AgentMetadata(
            role=self.role,
            name=self.name,
            description=self.description,
            autonomy_level=self.autonomy_level,
            capabilities=self.capabilities,
        )

    def on_event(self, handler: AgentEventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    async def emit(
        self,
        event_type: AgentEventType,
        context: AgentContext,
        data: dict[str, Any] | None = None,
    ) -> None:
        event = AgentEvent(type=event_type, task_id=context.task.id, data=dict(data or {}))
        for handler in list(self._handlers):
            outcome = handler(event)
            if inspect.isawaitable(outcome):
                await outcome

    @abstractmethod
    def plan_execution(self, context: AgentContext) -> ExecutionPlan:
        """Build the ordered steps and declared risks for the task."""

    @abstractmethod
    def build_system_prompt(self, context: AgentContext) -> str:
        """System prompt describing the role and its rules."""

    @abstractmethod
    def build_initial_prompt(self, context: AgentContext) -> str:
        """First user message for the task."""

    def validate_result(self, result: AgentResult) -> ValidationResult:
        issues: list[ValidationIssue] = []
        if not result.success:
            issues.append(ValidationIssue("error", result.error or "Agent run failed"))
        return ValidationResult.from_issues(issues)

    async def execute(self, context: AgentContext) -> AgentResult:
        return await self.run_agent_loop(context)

    def build_tool_definitions(self, tools: dict[str, Tool]) -> list[dict[str, Any]]:
        return [tool.definition() for tool in tools.values()]

    def is_complete(self, completion: Completion) -> bool:
        return not completion.tool_calls and completion.stop_reason == "end_turn"

    async def execute_tool(
        self,
        tool: Tool,
        payload: dict[str, Any],
        context: AgentContext,
    ) -> ToolResult:
        try:
            return await tool.execute(payload)
        except Exception as exc:
            logger.warning(
                "Tool %s raised during task %s: %s",
                tool.name,
                context.task.id,
                exc,
                exc_info=True,
            )
            return ToolResult.fail(str(exc) or type(exc).__name__)

    @staticmethod
    def track_file_change(
        tool_name: str,
        payload: dict[str, Any],
        result: ToolResult,
    ) -> FileChange | None:
        if tool_name not in FILE_MODIFYING_TOOLS or not result.success:
            return None
        path = str(payload.get("path") or result.metadata.get("path") or "")
        if not path:
            return None
        default_type = "deleted" if tool_name == "delete_file" else "modified"
        return FileChange(
            path=path,
            type=result.metadata.get("change", default_type),
            diff=result.metadata.get("diff"),
        )

    async def run_agent_loop(self, context: AgentContext) -> AgentResult:
        tools_used: list[ToolUseRecord] = []
        changes: list[FileChange] = []
        iterations = 0
        messages = context.conversation_history
        model = self.model or context.config.defaults.model

        try:
            await self.emit(
                "started",
                context,
                {"role": self.role, "max_iterations": context.max_iterations},
            )
            system_prompt = self.build_system_prompt(context)
            tool_definitions = self.build_tool_definitions(context.tools)
            messages.append({"role": "user", "content": self.build_initial_prompt(context)})

            while iterations < context.max_iterations:
                iterations += 1
                context.iteration = iterations
                await self.emit("iteration_start", context, {"iteration": iterations})

                completion = await self.client.complete(
                    system_prompt=system_prompt,
                    messages=messages,
                    tools=tool_definitions,
                    model=model,
                    max_tokens=context.config.defaults.max_tokens,
                    temperature=context.config.defaults.temperature,
                )
                if completion.text:
                    await self.emit("thinking", context, {"text": completion.text})

                messages.append(
                    {
                        "role": "assistant",
                        "content": completion.text,
                        "tool_calls": [
                            {"id": call.id, "name": call.name, "input": call.input}
                            for call in completion.tool_calls
                        ],
                    }
                )

                for call in completion.tool_calls:
                    tool = context.tools.get(call.name)
                    if tool is None:
                        messages.append(
                            {
                                "role": "tool",
                                "tool_call_id": call.id,
                                "content": f"Unknown tool: {call.name}",
                                "is_error": True,
                            }
                        )
                        continue

                    await self.emit(
                        "tool_call",
                        context,
                        {"tool_name": call.name, "tool_input": call.input},
                    )
                    result = await self.execute_tool(tool, call.input, context)
                    tools_used.append(
                        ToolUseRecord(tool_name=call.name, input=call.input, result=result)
                    )
                    change = self.track_file_change(call.name, call.input, result)
                    if change is not None:
                        changes.append(change)
                    await self.emit(
                        "tool_result",
                        context,
                        {
                            "tool_name": call.name,
                            "success": result.success,
                            "output": result.output[:500],
                            "error": result.error,
                        },
                    )
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": call.id,
                            "content": result.output if result.success else (result.error or ""),
                            "is_error": not result.success,
                        }
                    )

                if self.is_complete(completion):
                    agent_result = AgentResult(
                        success=True,
                        summary=completion.text.strip() or "Task completed",
                        changes=changes,
                        tools_used=tools_used,
                        iterations=iterations,
                    )
                    await self.emit(
                        "completed",
                        context,
                        {"iterations": iterations, "tool_calls": len(tools_used)},
                    )
                    return agent_result

                if not completion.tool_calls:
                    messages.append({"role": "user", "content": CONTINUE_PROMPT})
        except Exception as exc:
            logger.exception("Agent %s failed on task %s", self.role, context.task.id)
            agent_result = AgentResult(
                success=False,
                summary=f"Agent failed: {exc}",
                changes=changes,
                tools_used=tools_used,
                iterations=iterations,
                error=str(exc),
            )
            await self.emit("failed", context, {"error": str(exc)})
            return agent_result

        agent_result = AgentResult(
            success=False,
            summary=MAX_ITERATIONS_SUMMARY,
            changes=changes,
            tools_used=tools_used,
            iterations=iterations,
            error=f"Exceeded max iterations ({context.max_iterations})",
        )
        await self.emit("failed", context, {"error": agent_result.error})
        return agent_result

    def _describe_target(self, context: AgentContext) -> str:
        target = context.task.target
        if target is None:
            return "the whole project"
        parts: list[str] = []
        if target.files:
            parts.append("files: " + ", ".join(target.files))
        if target.directories:
            parts.append("directories: " + ", ".join(target.directories))
        if target.pattern:
            parts.append(f"pattern: {target.pattern}")
        if target.scope:
            parts.append(f"scope: {target.scope}")
        return "; ".join(parts) or "the whole project"

    def _tool_listing(self, context: AgentContext) -> str:
        return ", ".join(sorted(context.tools)) or "(none)"


def changed_paths(result: AgentResult) -> list[str]:
    return [change.path for change in result.changes]


def tool_records(result: AgentResult, *names: str) -> list[ToolUseRecord]:
    return [record for record in result.tools_used if record.tool_name in names]


def is_test_path(path: str) -> bool:
    name = Path(path).name
    normalized = path.replace("\\", "/")
    return (
        name.startswith("test_")
        or name.endswith("_test.py")
        or name == "conftest.py"
        or "/tests/" in f"/{normalized}"
    )
