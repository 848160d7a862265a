from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskforge.agents import Agent, AgentContext, build_agents
from taskforge.approval import ApprovalGate, ApprovalHandler
from taskforge.backends.base import CompletionClient
from taskforge.config import AgentConfig
from taskforge.models import (
    AgentEvent,
    AgentResult,
    ExecutionPlan,
    Task,
    TaskInput,
    TaskMetrics,
    TaskResult,
)
from taskforge.scheduler import ScheduleOptions, Scheduler
from taskforge.state.store import TaskStore, TaskStoreError
from taskforge.state.task_queue import TaskEvent, TaskFilter, TaskQueue
from taskforge.tools import FILE_MODIFYING_TOOLS, Tool, ToolRegistry, register_all_tools

logger = logging.getLogger("taskforge.orchestrator")

COMMAND_TOOLS = frozenset({"run_command"})
COMMIT_TOOLS = frozenset({"git_commit"})
DRY_RUN_BLOCKED_TOOLS = FILE_MODIFYING_TOOLS | COMMIT_TOOLS | {"git_add", "git_branch"}


class TaskNotFoundError(LookupError):
    """Raised when a task id is unknown to the queue."""


class AgentNotFoundError(LookupError):
    """Raised when no agent is registered for a task's role."""


class TaskStateError(RuntimeError):
    """Raised when a task cannot be run from its current status."""


@dataclass(slots=True)
class OrchestratorEvents:
    on_task_started: Callable[[Task], Any] | None = None
    on_task_completed: Callable[[Task, TaskResult], Any] | None = None
    on_task_failed: Callable[[Task, str], Any] | None = None
    on_approval_required: Callable[[Task], Any] | None = None
    on_agent_event: Callable[[AgentEvent], Any] | None = None


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


def _summarize_tools(agent_result: AgentResult) -> str:
    lines = []
    for record in agent_result.tools_used:
        status = "ok" if record.result.success else f"failed: {record.result.error}"
        lines.append(f"{record.tool_name}: {status}")
    return "\n".join(lines)


class Orchestrator:
    """Creates, schedules, gates and runs agent tasks.

    Owns the task queue, scheduler, approval gate and tool registry for its
    lifetime. An optional ``TaskStore`` mirrors task creation, status changes,
    results and agent events. Store writes run in order on one worker thread so a
slow store never stalls the event loop; failures are logged and never abort a
run. ``run_task`` waits for its writes before returning, and ``close`` flushes
the rest and closes the store.
    """

    def __init__(
        self,
        config: AgentConfig,
        client: CompletionClient,
        *,
        working_directory: Path,
        store: TaskStore | None = None,
        registry: ToolRegistry | None = None,
        agents: dict[str, Agent] | None = None,
        approval_handler: ApprovalHandler | None = None,
        events: OrchestratorEvents | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.working_directory = working_directory.resolve()
        self.store = store
        self.events = events or OrchestratorEvents()
        self._clock = clock

        self.task_queue = TaskQueue(config.autonomy.task_types, clock=clock)
        schedule_options = ScheduleOptions(
            max_concurrent=max(1, config.scheduler.max_concurrent),
            cooldown_seconds=config.scheduler.cooldown_seconds,
        )
        schedule_options.type_weights.update(config.scheduler.type_weights)
        self.scheduler = Scheduler(schedule_options, clock=clock)
        self.approval_gate = ApprovalGate(
            max_auto_approvals=config.autonomy.max_auto_approvals,
            handler=approval_handler,
        )
        if registry is None:
            registry = register_all_tools(ToolRegistry(), self.working_directory, config)
        self.tool_registry = registry
        self.agents = agents if agents is not None else build_agents(client)
        for agent in self.agents.values():
            agent.on_event(self._handle_agent_event)
        self._store_executor: ThreadPoolExecutor | None = None
        self._store_tail: Future[None] | None = None
        if store is not None:
            self._store_executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="taskforge-store"
            )
            self.task_queue.on_event(self._mirror_to_store)

        self._running = False
        self._stop_event: asyncio.Event | None = None

    def set_approval_handler(self, handler: ApprovalHandler | None) -> None:
        self.approval_gate.set_approval_handler(handler)

    def set_event_handlers(self, events: OrchestratorEvents) -> None:
        self.events = events

    def get_agent(self, role: str) -> Agent | None:
        return self.agents.get(role)

    def create_task(self, task_input: TaskInput) -> Task:
        task = self.task_queue.create(task_input)
        if task_input.parent_task_id:
            self.task_queue.add_child_task(task_input.parent_task_id, task.id)
        self.scheduler.schedule(task)
        logger.info("Created %s task %s (%s)", task.type, task.id, task.priority)
        return task

    def get_task(self, task_id: str) -> Task | None:
        return self.task_queue.get(task_id)

    def get_tasks(self, task_filter: TaskFilter | None = None) -> list[Task]:
        if task_filter is None:
            return self.task_queue.get_all()
        return self.task_queue.filter(task_filter)

    def cancel_task(self, task_id: str) -> bool:
        task = self.task_queue.get(task_id)
        if task is None or task.is_terminal:
            return False
        self.scheduler.unschedule(task_id)
        return self.task_queue.update_status(task_id, "cancelled")

    def _tools_for(self, task: Task, agent: Agent) -> dict[str, Tool]:
        capabilities = agent.capabilities
        commit_enabled = bool(task.options.get("enable_commit"))
        dry_run = bool(task.options.get("dry_run"))
        tools: dict[str, Tool] = {}
        for tool in self.tool_registry.get_all():
            if tool.name in FILE_MODIFYING_TOOLS and not capabilities.can_write_files:
                continue
            if tool.name in COMMAND_TOOLS and not capabilities.can_execute_commands:
                continue
            if tool.name in COMMIT_TOOLS and not (capabilities.can_commit and commit_enabled):
                continue
            if dry_run and tool.name in DRY_RUN_BLOCKED_TOOLS:
                continue
            tools[tool.name] = tool
        return tools

    def create_context(self, task: Task, agent: Agent) -> AgentContext:
        max_iterations = int(
            task.options.get("max_iterations") or self.config.defaults.max_iterations
        )
        return AgentContext(
            config=self.config,
            task=task,
            tools=self._tools_for(task, agent),
            working_directory=self.working_directory,
            max_iterations=max_iterations,
        )

    def _plan(self, agent: Agent, context: AgentContext) -> ExecutionPlan:
        plan = agent.plan_execution(context)
        if self.config.autonomy.require_approval_for_destructive and not plan.requires_approval:
            for step in plan.steps:
                tool = self.tool_registry.get(step.tool_name) if step.tool_name else None
                if tool is not None and tool.requires_approval:
                    plan.requires_approval = True
                    plan.risks.append(f"Step '{step.id}' uses {tool.name}, which needs approval")
                    break
        return plan

    def plan_task(self, task_id: str) -> ExecutionPlan:
        task, agent = self._resolve(task_id)
        return self._plan(agent, self.create_context(task, agent))

    def _resolve(self, task_id: str) -> tuple[Task, Agent]:
        task = self.task_queue.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        agent = self.agents.get(task.type)
        if agent is None:
            raise AgentNotFoundError(f"No agent registered for task type: {task.type}")
        return task, agent

    def _finish(self, task: Task, result: TaskResult, status: str) -> None:
        self.task_queue.update(task.id, result=result)
        self.task_queue.update_status(task.id, status)  # type: ignore[arg-type]
        if self.store is not None:
            self._submit_store("record result", task.id, self.store.record_result, task.id, result)

    async def run_task(self, task_id: str) -> TaskResult:
        task, agent = self._resolve(task_id)
        if task.status != "pending":
            raise TaskStateError(f"Task {task_id} is {task.status}, expected pending")

        reserved = self.scheduler.is_running(task.id)
        started = False
        start_time = self._clock()
        try:
            context = self.create_context(task, agent)
            plan = self._plan(agent, context)
            needs_approval = self.approval_gate.requires_approval(task, plan)
            if needs_approval:
                self.task_queue.update_status(task.id, "awaiting_approval")
                await _notify(self.events.on_approval_required, task)
                await agent.emit("awaiting_approval", context, {"plan": plan.to_dict()})

            decision = await self.approval_gate.request_approval(task, plan)
            if (
                not needs_approval
                and self.approval_gate.auto_approval_count > self.approval_gate.max_auto_approvals
            ):
                logger.warning(
                    "Auto-approval count %d exceeds the configured budget of %d",
                    self.approval_gate.auto_approval_count,
                    self.approval_gate.max_auto_approvals,
                )

            if not decision.approved:
                reason = decision.reason or "Rejected"
                await agent.emit("rejected", context, {"reason": reason})
                result = TaskResult(
                    success=False,
                    summary=f"Task rejected: {reason}",
                    error=reason,
                    metrics=TaskMetrics(duration=self._clock() - start_time),
                )
                self._finish(task, result, "cancelled")
                logger.info("Task %s rejected: %s", task.id, reason)
                return result

            await agent.emit("approved", context, {"reason": decision.reason})
            if not self.task_queue.update_status(task.id, "running"):
                result = TaskResult(
                    success=False,
                    summary="Task was cancelled before it started",
                    error=f"Task is {task.status}",
                )
                self.task_queue.update(task.id, result=result)
                return result
            if not reserved:
                self.scheduler.mark_running(task.id)
            started = True
            await _notify(self.events.on_task_started, task)

            agent_result = await agent.execute(context)
            agent_result.validation = agent.validate_result(agent_result)
            result = TaskResult(
                success=agent_result.success,
                summary=agent_result.summary,
                output=_summarize_tools(agent_result),
                error=agent_result.error,
                metrics=TaskMetrics(
                    duration=self._clock() - start_time,
                    iterations_used=agent_result.iterations,
                    tool_call_count=len(agent_result.tools_used),
                    files_modified=len({change.path for change in agent_result.changes}),
                ),
                agent_result=agent_result,
            )
            self._finish(task, result, "completed" if result.success else "failed")
            if result.success:
                await _notify(self.events.on_task_completed, task, result)
            else:
                await _notify(self.events.on_task_failed, task, result.error or result.summary)
            return result
        except Exception as exc:
            logger.exception("Task %s failed", task.id)
            result = TaskResult(
                success=False,
                summary=f"Task failed: {exc}",
                error=str(exc),
                metrics=TaskMetrics(duration=self._clock() - start_time),
            )
            self._finish(task, result, "failed")
            await _notify(self.events.on_task_failed, task, str(exc))
            return result
        finally:
            if started:
                self.scheduler.mark_complete(task.id, task.type)
            elif reserved:
                self.scheduler.release(task.id)
            else:
                self.scheduler.unschedule(task.id)
            await self.drain_store()

    async def _run_reserved(self, task_id: str) -> TaskResult | None:
        try:
            return await self.run_task(task_id)
        except (TaskNotFoundError, AgentNotFoundError, TaskStateError) as exc:
            logger.warning("Skipping task %s: %s", task_id, exc)
            self.scheduler.release(task_id)
            return None

    async def run_queue(self) -> list[TaskResult]:
        if self._running:
            raise RuntimeError("Task queue is already running")
        self._running = True
        self._stop_event = asyncio.Event()
        poll_interval = max(0.0, self.config.scheduler.poll_interval_seconds)
        in_flight: set[asyncio.Task[TaskResult | None]] = set()
        results: list[TaskResult] = []

        def _harvest() -> None:
            for job in [job for job in in_flight if job.done()]:
                in_flight.discard(job)
                outcome = job.result()
                if outcome is not None:
                    results.append(outcome)

        try:
            while self._running:
                self.scheduler.reprioritize()
                while self._running and self.scheduler.can_run_more():
                    task = self.scheduler.get_next()
                    if task is None:
                        break
                    self.scheduler.mark_running(task.id)
                    in_flight.add(asyncio.create_task(self._run_reserved(task.id)))

                if not in_flight and not self.scheduler.get_scheduled():
                    break

                stop_waiter = asyncio.ensure_future(self._stop_event.wait())
                try:
                    await asyncio.wait(
                        {*in_flight, stop_waiter},
                        timeout=poll_interval,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    stop_waiter.cancel()
                _harvest()

            if in_flight:
                await asyncio.wait(in_flight)
                _harvest()
        finally:
            self._running = False
            await self.drain_store()
        return results

    def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    def _handle_agent_event(self, event: AgentEvent) -> Any:
        if self.store is not None:
            self._submit_store(
                f"record {event.type} event",
                event.task_id,
                self.store.record_event,
                event.task_id,
                event,
            )
        if self.events.on_agent_event is not None:
            return self.events.on_agent_event(event)
        return None

    def _mirror_to_store(self, event: TaskEvent) -> None:
        if self.store is None:
            return
        if event.type == "added":
            self._submit_store(
                "mirror added", event.task.id, self.store.create_task, copy.copy(event.task)
            )
        elif event.type == "status_changed":
            self._submit_store(
                "mirror status_changed",
                event.task.id,
                self.store.update_status,
                event.task.id,
                event.task.status,
            )

    def _submit_store(
        self, action: str, task_id: str, write: Callable[..., None], *args: Any
    ) -> None:
        if self._store_executor is None:
            return
        self._store_tail = self._store_executor.submit(
            _apply_store_write, action, task_id, write, *args
        )

    async def drain_store(self) -> None:
        """Wait until every store write submitted so far has been applied."""
        tail = self._store_tail
        while tail is not None:
            await asyncio.wrap_future(tail)
            if tail is self._store_tail:
                return
            tail = self._store_tail

    def close(self) -> None:
        if self._store_executor is not None:
            self._store_executor.shutdown(wait=True)
            self._store_executor = None
        if self.store is not None:
            self.store.close()


def _apply_store_write(action: str, task_id: str, write: Callable[..., None], *args: Any) -> None:
    try:
        write(*args)
    except TaskStoreError as exc:
        logger.warning("Failed to %s for %s: %s", action, task_id, exc)
