from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any

from taskforge.models import Task

logger = logging.getLogger("taskforge.scheduler")

AGING_INTERVAL_SECONDS = 60.0
ESTIMATED_TASK_SECONDS = 120.0


def _default_priority_weights() -> dict[str, int]:
    return {"critical": 1000, "high": 100, "normal": 10, "low": 1}


def _default_type_weights() -> dict[str, int]:
    return {"qa": 100, "test": 80, "feature": 50, "refactor": 30}


@dataclass(slots=True)
class ScheduleOptions:
    max_concurrent: int = 1
    priority_weights: dict[str, int] = field(default_factory=_default_priority_weights)
    type_weights: dict[str, int] = field(default_factory=_default_type_weights)
    cooldown_seconds: float = 1.0


@dataclass(slots=True)
class ScheduledTask:
    task: Task
    scheduled_at: float
    estimated_start: float
    priority: float


class Scheduler:
    """Orders pending tasks and gates starts on concurrency and per-type cooldown.

    The score of a task is ``priority_weight * type_weight`` plus one point per
    full minute it has waited since creation. The scheduled list is kept in
    descending score order by insertion; ``reprioritize`` refreshes aging.
    """

    def __init__(
        self,
        options: ScheduleOptions | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.options = options or ScheduleOptions()
        self._clock = clock
        self._scheduled: list[ScheduledTask] = []
        self._running: set[str] = set()
        self._last_run: dict[str, float] = {}

    def calculate_priority(self, task: Task) -> float:
        priority_weight = self.options.priority_weights.get(task.priority, 1)
        type_weight = self.options.type_weights.get(task.type, 0)
        waited = max(0.0, self._clock() - task.created_at)
        return priority_weight * type_weight + math.floor(waited / AGING_INTERVAL_SECONDS)

    def schedule(self, task: Task) -> ScheduledTask:
        now = self._clock()
        score = self.calculate_priority(task)
        entry = ScheduledTask(
            task=task,
            scheduled_at=now,
            estimated_start=self._estimate(task, score),
            priority=score,
        )
        index = next(
            (i for i, existing in enumerate(self._scheduled) if existing.priority < score),
            len(self._scheduled),
        )
        self._scheduled.insert(index, entry)
        logger.debug("Scheduled %s at position %d (score %s)", task.id, index, score)
        return entry

    def unschedule(self, task_id: str) -> bool:
        for index, entry in enumerate(self._scheduled):
            if entry.task.id == task_id:
                del self._scheduled[index]
                return True
        return False

    def get_next(self) -> Task | None:
        if len(self._running) >= self.options.max_concurrent:
            return None
        for entry in self._scheduled:
            if not self.is_in_cooldown(entry.task.type):
                return entry.task
        return None

    def mark_running(self, task_id: str) -> bool:
        if not self.unschedule(task_id):
            return False
        self._running.add(task_id)
        return True

    def mark_complete(self, task_id: str, task_type: str) -> bool:
        if task_id not in self._running:
            return False
        self._running.discard(task_id)
        self._last_run[task_type] = self._clock()
        return True

    def release(self, task_id: str) -> bool:
        """Free a running slot without starting the type cooldown."""
        if task_id not in self._running:
            return False
        self._running.discard(task_id)
        return True

    def is_in_cooldown(self, task_type: str) -> bool:
        return self._remaining_cooldown(task_type) > 0

    def _remaining_cooldown(self, task_type: str) -> float:
        last_run = self._last_run.get(task_type)
        if last_run is None:
            return 0.0
        return max(0.0, self.options.cooldown_seconds - (self._clock() - last_run))

    def can_run_more(self) -> bool:
        return len(self._running) < self.options.max_concurrent

    @property
    def running_count(self) -> int:
        return len(self._running)

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    def get_scheduled(self) -> list[ScheduledTask]:
        return list(self._scheduled)

    def reprioritize(self) -> None:
        for entry in self._scheduled:
            entry.priority = self.calculate_priority(entry.task)
        # list.sort is stable, so equal scores keep their scheduling order
        self._scheduled.sort(key=lambda entry: entry.priority, reverse=True)
        for entry in self._scheduled:
            entry.estimated_start = self._estimate(entry.task, entry.priority)

    def estimate_start_time(self, task: Task) -> float:
        return self._estimate(task, self.calculate_priority(task))

    def _estimate(self, task: Task, score: float) -> float:
        now = self._clock()
        ahead = sum(
            1
            for entry in self._scheduled
            if entry.task.id != task.id and self.calculate_priority(entry.task) > score
        )
        return now + self._remaining_cooldown(task.type) + ahead * ESTIMATED_TASK_SECONDS

    def update_options(self, **changes: Any) -> None:
        known = {item.name for item in fields(ScheduleOptions)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise TypeError(f"Unknown schedule options: {', '.join(unknown)}")
        self.options = replace(self.options, **changes)
        self.reprioritize()

    def clear(self) -> None:
        self._scheduled.clear()
        self._running.clear()
        self._last_run.clear()
