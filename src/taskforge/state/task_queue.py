from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import uuid4

from taskforge.models import (
    PRIORITY_RANK,
    TERMINAL_STATUSES,
    AutonomyLevel,
    Task,
    TaskInput,
    TaskPriority,
    TaskStatus,
)

logger = logging.getLogger("taskforge.task_queue")

TaskEventType = Literal["added", "updated", "removed", "status_changed"]
TaskEventHandler = Callable[["TaskEvent"], None]
Clock = Callable[[], float]

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"awaiting_approval", "running", "cancelled", "failed"}),
    "awaiting_approval": frozenset({"running", "cancelled", "failed"}),
    "running": frozenset({"completed", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


@dataclass(slots=True)
class TaskEvent:
    type: TaskEventType
    task: Task
    timestamp: float
    previous_status: TaskStatus | None = None


@dataclass(slots=True)
class TaskFilter:
    status: list[TaskStatus] = field(default_factory=list)
    type: list[str] = field(default_factory=list)
    priority: list[TaskPriority] = field(default_factory=list)
    since: float | None = None
    until: float | None = None

    def matches(self, task: Task) -> bool:
        if self.status and task.status not in self.status:
            return False
        if self.type and task.type not in self.type:
            return False
        if self.priority and task.priority not in self.priority:
            return False
        if self.since is not None and task.created_at < self.since:
            return False
        if self.until is not None and task.created_at > self.until:
            return False
        return True


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class TaskQueue:
    """Canonical in-memory task set with lifecycle bookkeeping.

    Every mutation is broadcast to the registered handlers synchronously, in
    registration order. Handler exceptions propagate to the caller.
    """

    def __init__(
        self,
        autonomy_levels: Mapping[str, str] | None = None,
        *,
        clock: Clock = time.time,
    ) -> None:
        self.autonomy_levels: dict[str, str] = dict(autonomy_levels or {})
        self._clock = clock
        self._tasks: dict[str, Task] = {}
        self._handlers: list[TaskEventHandler] = []

    def _generate_id(self) -> str:
        return f"task-{int(self._clock() * 1000)}-{uuid4().hex[:7]}"

    def _emit(
        self,
        event_type: TaskEventType,
        task: Task,
        previous_status: TaskStatus | None = None,
    ) -> None:
        event = TaskEvent(
            type=event_type,
            task=task,
            timestamp=self._clock(),
            previous_status=previous_status,
        )
        for handler in list(self._handlers):
            handler(event)

    def on_event(self, handler: TaskEventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def resolve_autonomy(self, task_type: str) -> AutonomyLevel:
        level = self.autonomy_levels.get(task_type, "supervised")
        if level not in {"full", "supervised", "manual"}:
            return "supervised"
        return level  # type: ignore[return-value]

    def create(self, task_input: TaskInput) -> Task:
        task = Task(
            id=self._generate_id(),
            type=task_input.type,
            title=task_input.title,
            description=task_input.description,
            priority=task_input.priority,
            autonomy_level=self.resolve_autonomy(task_input.type),
            target=task_input.target,
            options=dict(task_input.options),
            created_at=self._clock(),
            parent_task_id=task_input.parent_task_id,
            max_retries=task_input.max_retries,
        )
        self._tasks[task.id] = task
        logger.debug("Created task %s (%s, %s)", task.id, task.type, task.priority)
        self._emit("added", task)
        return task

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def get_all(self) -> list[Task]:
        return list(self._tasks.values())

    def get_by_status(self, status: TaskStatus) -> list[Task]:
        return [task for task in self._tasks.values() if task.status == status]

    def get_by_type(self, task_type: str) -> list[Task]:
        return [task for task in self._tasks.values() if task.type == task_type]

    def get_running(self) -> list[Task]:
        return self.get_by_status("running")

    def get_awaiting_approval(self) -> list[Task]:
        return self.get_by_status("awaiting_approval")

    def filter(self, task_filter: TaskFilter) -> list[Task]:
        return [task for task in self._tasks.values() if task_filter.matches(task)]

    def get_next(self) -> Task | None:
        pending = sorted(
            self.get_by_status("pending"),
            key=lambda task: (PRIORITY_RANK.get(task.priority, len(PRIORITY_RANK)), task.created_at),
        )
        return pending[0] if pending else None

    def update_status(self, task_id: str, status: TaskStatus) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        previous = task.status
        if not can_transition(previous, status):
            logger.warning("Rejected transition %s -> %s for task %s", previous, status, task_id)
            return False

        now = self._clock()
        task.status = status
        if status == "running" and task.started_at is None:
            task.started_at = now
        if status in TERMINAL_STATUSES and task.completed_at is None:
            task.completed_at = max(now, task.started_at or now)
        logger.info("Task %s: %s -> %s", task_id, previous, status)
        self._emit("status_changed", task, previous_status=previous)
        return True

    def update(self, task_id: str, **fields: Any) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        for name, value in fields.items():
            if name in {"id", "status"}:
                raise AttributeError(f"Task field '{name}' cannot be updated directly")
            if not hasattr(task, name):
                raise AttributeError(f"Task has no field '{name}'")
            setattr(task, name, value)
        self._emit("updated", task)
        return True

    def remove(self, task_id: str) -> bool:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        self._emit("removed", task)
        return True

    def add_child_task(self, parent_id: str, child_id: str) -> bool:
        parent = self._tasks.get(parent_id)
        if parent is None:
            return False
        if child_id not in parent.child_task_ids:
            parent.child_task_ids.append(child_id)
        self._emit("updated", parent)
        return True

    def can_retry(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and task.retry_count < task.max_retries

    def increment_retry(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        task.retry_count += 1
        self._emit("updated", task)
        return True

    def get_state(self) -> dict[str, list[Task]]:
        return {
            "pending": self.get_by_status("pending"),
            "running": self.get_running(),
            "completed": self.get_by_status("completed"),
            "failed": self.get_by_status("failed"),
        }

    def clear(self) -> None:
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def to_dict(self) -> dict[str, Any]:
        state = self.get_state()
        return {
            "tasks": [task.to_dict() for task in self._tasks.values()],
            "state": {key: [task.id for task in tasks] for key, tasks in state.items()},
        }

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        autonomy_levels: Mapping[str, str] | None = None,
        *,
        clock: Clock = time.time,
    ) -> TaskQueue:
        queue = cls(autonomy_levels, clock=clock)
        queue._load(Task.from_dict(item) for item in data.get("tasks", []))
        return queue

    def _load(self, tasks: Iterable[Task]) -> None:
        for task in tasks:
            self._tasks[task.id] = task
