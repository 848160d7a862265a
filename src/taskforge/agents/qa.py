from __future__ import annotations

from taskforge.agents.base import Agent, AgentCapabilities, AgentContext
from taskforge.models import (
    AgentResult,
    ExecutionPlan,
    ExecutionStep,
    ValidationIssue,
    ValidationResult,
)

QA_SUGGESTION = "Fix the reported issues before committing"


class QAAgent(Agent):
    role = "qa"
    name = "QA Agent"
    description = "Validates code quality through linting, type checking, and test execution"
    autonomy_level = "full"
    capabilities = AgentCapabilities(
        can_read_files=True,
        can_write_files=False,
        can_execute_commands=True,
        can_modify_tests=False,
        can_modify_source=False,
        can_commit=False,
    )

    def plan_execution(self, context: AgentContext) -> ExecutionPlan:
        return ExecutionPlan(
            steps=[
                ExecutionStep("type-check", "Run the type checker", "run_type_check"),
                ExecutionStep("lint", "Run the linter", "run_lint"),
                ExecutionStep("run-tests", "Execute the test suite", "run_tests"),
                ExecutionStep(
                    "check-coverage",
                    "Check test coverage",
                    "get_coverage",
                    depends_on=["run-tests"],
                    optional=True,
                ),
            ],
            estimated_tool_calls=4,
            requires_approval=False,
            risks=[],
        )

    def validate_result(self, result: AgentResult) -> ValidationResult:
        issues: list[ValidationIssue] = []
        for record in result.tools_used:
            if record.result.success:
                continue
            severity = "error" if "test" in record.tool_name else "warning"
            issues.append(
                ValidationIssue(
                    severity,
                    f"{record.tool_name} failed: {record.result.error or 'Unknown error'}",
                )
            )
        return ValidationResult.from_issues(issues, [QA_SUGGESTION] if issues else [])

    def build_system_prompt(self, context: AgentContext) -> str:
        threshold = context.config.testing.coverage_threshold
        return f"""You are a QA Agent responsible for validating code quality and ensuring all checks pass.

Your responsibilities:
1. Run the type checker to catch type errors
2. Run the linter to identify style and quality issues
3. Run the test suite to verify functionality
4. Check test coverage against thresholds
5. Report all issues found clearly and concisely

You must NOT modify any files. Your role is strictly to validate and report.

Available tools: {self._tool_listing(context)}
Working directory: {context.working_directory}

Coverage thresholds:
- Lines: {threshold.lines}%
- Branches: {threshold.branches}%
- Functions: {threshold.functions}%

When complete, reply without calling tools and summarize:
- Type check results (pass/fail, error count)
- Lint results (error and warning counts)
- Test results (passed, failed, skipped)
- Coverage percentage
- Overall QA status (PASS/FAIL)"""

    def build_initial_prompt(self, context: AgentContext) -> str:
        mode = " (pre-commit mode)" if context.task.options.get("pre_commit") else ""
        return f"""Run QA validation checks{mode}.

Task: {context.task.description or context.task.title}

Execute the following checks in order:
1. Type checking
2. Lint
3. Test suite
4. Coverage analysis

Report all findings and provide an overall QA status.

Begin with type checking."""
