from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

AgentRole = Literal["test", "qa", "feature", "refactor", "docs", "security"]
AutonomyLevel = Literal["full", "supervised", "manual"]
TaskStatus = Literal["pending", "awaiting_approval", "running", "completed", "failed", "cancelled"]
TaskPriority = Literal["critical", "high", "normal", "low"]
ToolCategory = Literal["file", "test", "lint", "git", "analysis", "shell", "search"]
ChangeType = Literal["created", "modified", "deleted"]
Severity = Literal["error", "warning", "info"]
AgentEventType = Literal[
    "started",
    "iteration_start",
    "tool_call",
    "tool_result",
    "thinking",
    "awaiting_approval",
    "approved",
    "rejected",
    "completed",
    "failed",
]

AGENT_ROLES: tuple[str, ...] = ("test", "qa", "feature", "refactor", "docs", "security")
TASK_PRIORITIES: tuple[str, ...] = ("critical", "high", "normal", "low")
PRIORITY_RANK = {priority: rank for rank, priority in enumerate(TASK_PRIORITIES)}
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


@dataclass(slots=True)
class TaskTarget:
    files: list[str] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)
    pattern: str | None = None
    scope: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskTarget:
        return cls(
            files=list(data.get("files") or []),
            directories=list(data.get("directories") or []),
            pattern=data.get("pattern"),
            scope=data.get("scope"),
        )


@dataclass(slots=True)
class ToolResult:
    success: bool
    output: str = ""
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, output: str = "", **metadata: Any) -> ToolResult:
        return cls(success=True, output=output, metadata=metadata)

    @classmethod
    def fail(cls, error: str, output: str = "", **metadata: Any) -> ToolResult:
        return cls(success=False, output=output, error=error, metadata=metadata)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolResult:
        return cls(
            success=bool(data.get("success")),
            output=str(data.get("output") or ""),
            error=data.get("error"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(slots=True)
class ToolUseRecord:
    tool_name: str
    input: dict[str, Any]
    result: ToolResult
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolUseRecord:
        return cls(
            tool_name=data["tool_name"],
            input=dict(data.get("input") or {}),
            result=ToolResult.from_dict(data.get("result") or {}),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass(slots=True)
class FileChange:
    path: str
    type: ChangeType
    diff: str | None = None


@dataclass(slots=True)
class ValidationIssue:
    severity: Severity
    message: str
    file: str | None = None
    line: int | None = None


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    issues: list[ValidationIssue] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    @classmethod
    def from_issues(
        cls, issues: list[ValidationIssue], suggestions: list[str] | None = None
    ) -> ValidationResult:
        return cls(
            valid=not any(issue.severity == "error" for issue in issues),
            issues=issues,
            suggestions=list(suggestions or []),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationResult:
        return cls(
            valid=bool(data.get("valid")),
            issues=[ValidationIssue(**item) for item in data.get("issues") or []],
            suggestions=list(data.get("suggestions") or []),
        )


@dataclass(slots=True)
class AgentResult:
    success: bool
    summary: str
    changes: list[FileChange] = field(default_factory=list)
    tools_used: list[ToolUseRecord] = field(default_factory=list)
    iterations: int = 0
    error: str | None = None
    validation: ValidationResult | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentResult:
        validation = data.get("validation")
        return cls(
            success=bool(data.get("success")),
            summary=str(data.get("summary") or ""),
            changes=[FileChange(**item) for item in data.get("changes") or []],
            tools_used=[ToolUseRecord.from_dict(item) for item in data.get("tools_used") or []],
            iterations=int(data.get("iterations", 0)),
            error=data.get("error"),
            validation=ValidationResult.from_dict(validation) if validation else None,
        )


@dataclass(slots=True)
class TaskMetrics:
    duration: float = 0.0
    iterations_used: int = 0
    tool_call_count: int = 0
    files_modified: int = 0


@dataclass(slots=True)
class TaskResult:
    success: bool
    summary: str
    output: str = ""
    error: str | None = None
    metrics: TaskMetrics = field(default_factory=TaskMetrics)
    agent_result: AgentResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskResult:
        agent_result = data.get("agent_result")
        return cls(
            success=bool(data.get("success")),
            summary=str(data.get("summary") or ""),
            output=str(data.get("output") or ""),
            error=data.get("error"),
            metrics=TaskMetrics(**(data.get("metrics") or {})),
            agent_result=AgentResult.from_dict(agent_result) if agent_result else None,
        )


@dataclass(slots=True)
class ExecutionStep:
    id: str
    description: str
    tool_name: str | None = None
    depends_on: list[str] = field(default_factory=list)
    optional: bool = False


@dataclass(slots=True)
class ExecutionPlan:
    steps: list[ExecutionStep]
    estimated_tool_calls: int
    requires_approval: bool = False
    risks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionPlan:
        return cls(
            steps=[ExecutionStep(**item) for item in data.get("steps") or []],
            estimated_tool_calls=int(data.get("estimated_tool_calls", 0)),
            requires_approval=bool(data.get("requires_approval", False)),
            risks=list(data.get("risks") or []),
        )


@dataclass(slots=True)
class TaskInput:
    type: str
    title: str
    description: str = ""
    priority: TaskPriority = "normal"
    target: TaskTarget | None = None
    options: dict[str, Any] = field(default_factory=dict)
    parent_task_id: str | None = None
    max_retries: int = 3


@dataclass(slots=True)
class Task:
    id: str
    type: str
    title: str
    description: str
    status: TaskStatus = "pending"
    priority: TaskPriority = "normal"
    autonomy_level: AutonomyLevel = "supervised"
    target: TaskTarget | None = None
    options: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    result: TaskResult | None = None
    parent_task_id: str | None = None
    child_task_ids: list[str] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        target = data.get("target")
        result = data.get("result")
        return cls(
            id=data["id"],
            type=data["type"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            status=data.get("status", "pending"),
            priority=data.get("priority", "normal"),
            autonomy_level=data.get("autonomy_level", "supervised"),
            target=TaskTarget.from_dict(target) if target else None,
            options=dict(data.get("options") or {}),
            created_at=float(data.get("created_at", 0.0)),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            result=TaskResult.from_dict(result) if result else None,
            parent_task_id=data.get("parent_task_id"),
            child_task_ids=list(data.get("child_task_ids") or []),
            retry_count=int(data.get("retry_count", 0)),
            max_retries=int(data.get("max_retries", 3)),
        )


@dataclass(slots=True)
class AgentEvent:
    type: AgentEventType
    task_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
