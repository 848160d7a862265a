from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from uuid import uuid4

import click

from taskforge.models import AutonomyLevel, ExecutionPlan, Task

logger = logging.getLogger("taskforge.approval")

AUTO_APPROVED_REASON = "Auto-approved based on autonomy level"
NO_HANDLER_REASON = "No approval handler configured"
REJECTED_BY_USER_REASON = "Rejected by user"


@dataclass(slots=True)
class ApprovalRequest:
    id: str
    task: Task
    plan: ExecutionPlan
    summary: str
    risks: list[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class ApprovalDecision:
    request_id: str
    approved: bool
    reason: str | None = None
    modified_plan: ExecutionPlan | None = None
    timestamp: float = field(default_factory=time.time)


ApprovalHandler = Callable[[ApprovalRequest], Awaitable[ApprovalDecision]]
PromptFn = Callable[[str, list[str]], Awaitable[str]]


def build_approval_summary(task: Task, plan: ExecutionPlan) -> str:
    lines = [
        f"Task: {task.title}",
        f"Type: {task.type}",
        f"Description: {task.description}",
        "",
        "Execution Plan:",
    ]
    for index, step in enumerate(plan.steps, start=1):
        suffix = " (optional)" if step.optional else ""
        lines.append(f"  {index}. {step.description}{suffix}")
    lines.append("")
    lines.append(f"Estimated tool calls: {plan.estimated_tool_calls}")
    if plan.risks:
        lines.append("")
        lines.append("Risks:")
        lines.extend(f"  - {risk}" for risk in plan.risks)
    return "\n".join(lines)


class ApprovalGate:
    """Decides whether a plan needs sign-off and brokers the decision.

    Autonomy decides whether to ask; the installed handler decides the answer.
    The auto-approval counter is informational: ``request_approval`` never
    refuses on it, callers consult ``should_auto_approve``.
    """

    def __init__(
        self,
        *,
        max_auto_approvals: int = 10,
        handler: ApprovalHandler | None = None,
    ) -> None:
        self.max_auto_approvals = max_auto_approvals
        self._handler = handler
        self._pending: dict[str, ApprovalRequest] = {}
        self._auto_approval_count = 0

    def set_approval_handler(self, handler: ApprovalHandler | None) -> None:
        self._handler = handler

    @property
    def has_handler(self) -> bool:
        return self._handler is not None

    def requires_approval(self, task: Task, plan: ExecutionPlan) -> bool:
        if plan.requires_approval:
            return True
        if task.autonomy_level == "full":
            return False
        return True

    def should_auto_approve(self, task: Task) -> bool:
        return (
            task.autonomy_level == "full"
            and self._auto_approval_count < self.max_auto_approvals
        )

    async def request_approval(self, task: Task, plan: ExecutionPlan) -> ApprovalDecision:
        if not self.requires_approval(task, plan):
            self._auto_approval_count += 1
            logger.debug(
                "Auto-approved %s (%d/%d)",
                task.id,
                self._auto_approval_count,
                self.max_auto_approvals,
            )
            return ApprovalDecision(
                request_id=f"auto-{task.id}",
                approved=True,
                reason=AUTO_APPROVED_REASON,
            )

        request = ApprovalRequest(
            id=f"approval-{int(time.time() * 1000)}-{uuid4().hex[:7]}",
            task=task,
            plan=plan,
            summary=build_approval_summary(task, plan),
            risks=list(plan.risks),
        )
        self._pending[request.id] = request
        try:
            if self._handler is None:
                logger.warning("No approval handler configured; rejecting %s", task.id)
                return ApprovalDecision(
                    request_id=request.id,
                    approved=False,
                    reason=NO_HANDLER_REASON,
                )
            return await self._handler(request)
        finally:
            self._pending.pop(request.id, None)

    def get_pending_approvals(self) -> list[ApprovalRequest]:
        return list(self._pending.values())

    def get_pending_approval(self, request_id: str) -> ApprovalRequest | None:
        return self._pending.get(request_id)

    def cancel_approval(self, request_id: str) -> bool:
        return self._pending.pop(request_id, None) is not None

    @property
    def auto_approval_count(self) -> int:
        return self._auto_approval_count

    def reset_auto_approval_count(self) -> None:
        self._auto_approval_count = 0

    @staticmethod
    def get_autonomy_level(role: str, mapping: Mapping[str, str]) -> AutonomyLevel:
        level = mapping.get(role, "supervised")
        if level in {"full", "supervised", "manual"}:
            return level  # type: ignore[return-value]
        return "supervised"


def create_interactive_approval_handler(
    prompt_fn: PromptFn,
    *,
    echo: Callable[[str], None] = click.echo,
) -> ApprovalHandler:
    async def _handler(request: ApprovalRequest) -> ApprovalDecision:
        echo("")
        echo("=" * 60)
        echo("APPROVAL REQUIRED")
        echo("=" * 60)
        echo(request.summary)
        echo("=" * 60)
        answer = (await prompt_fn("Approve this plan?", ["yes", "no", "modify"])).strip().lower()
        if answer in {"y", "yes"}:
            return ApprovalDecision(request_id=request.id, approved=True, reason="Approved by user")
        if answer in {"m", "modify"}:
            # plan editing is not supported; the original plan is approved as-is
            return ApprovalDecision(
                request_id=request.id,
                approved=True,
                reason="Plan modified by user",
                modified_plan=request.plan,
            )
        return ApprovalDecision(
            request_id=request.id,
            approved=False,
            reason=REJECTED_BY_USER_REASON,
        )

    return _handler


def create_auto_approve_handler() -> ApprovalHandler:
    async def _handler(request: ApprovalRequest) -> ApprovalDecision:
        return ApprovalDecision(
            request_id=request.id,
            approved=True,
            reason="Auto-approved for testing",
        )

    return _handler


def create_auto_reject_handler(reason: str = REJECTED_BY_USER_REASON) -> ApprovalHandler:
    async def _handler(request: ApprovalRequest) -> ApprovalDecision:
        return ApprovalDecision(request_id=request.id, approved=False, reason=reason)

    return _handler
