from __future__ import annotations

from taskforge.agents.base import Agent, AgentCapabilities, AgentContext, tool_records
from taskforge.models import (
    AgentResult,
    ExecutionPlan,
    ExecutionStep,
    ValidationIssue,
    ValidationResult,
)

REFACTOR_TYPES = {
    "simplify": "Reduce complexity and nesting without changing behaviour",
    "extract": "Extract functions, classes or modules from large units",
    "rename": "Rename symbols for clarity and update every reference",
    "modernize": "Adopt current language idioms consistently",
    "performance": "Remove obvious inefficiencies while keeping results identical",
}


class RefactorAgent(Agent):
    role = "refactor"
    name = "Refactor Agent"
    description = "Improves code quality through refactoring while preserving behavior"
    autonomy_level = "supervised"
    capabilities = AgentCapabilities(
        can_read_files=True,
        can_write_files=True,
        can_execute_commands=True,
        can_modify_tests=False,
        can_modify_source=True,
        can_commit=False,
    )

    @staticmethod
    def refactor_type(context: AgentContext) -> str:
        return str(context.task.options.get("refactor_type") or "simplify")

    def plan_execution(self, context: AgentContext) -> ExecutionPlan:
        refactor_type = self.refactor_type(context)
        steps = [
            ExecutionStep(
                "analyze-current",
                "Analyze current code structure and complexity",
                "analyze_complexity",
            ),
            ExecutionStep(
                "identify-issues",
                "Identify code smells and improvement opportunities",
                "analyze_file",
                depends_on=["analyze-current"],
            ),
            ExecutionStep(
                "find-dependencies",
                "Find all files that depend on the target code",
                "find_dependencies",
                depends_on=["analyze-current"],
            ),
            ExecutionStep(
                "run-tests-before",
                "Run tests to establish baseline",
                "run_tests",
            ),
            ExecutionStep(
                "perform-refactor",
                f"Perform {refactor_type} refactoring",
                "edit_file",
                depends_on=["identify-issues", "find-dependencies", "run-tests-before"],
            ),
            ExecutionStep(
                "update-dependents",
                "Update dependent files if needed",
                "edit_file",
                depends_on=["perform-refactor"],
                optional=True,
            ),
            ExecutionStep(
                "run-tests-after",
                "Verify tests still pass after refactoring",
                "run_tests",
                depends_on=["perform-refactor"],
            ),
            ExecutionStep(
                "type-check",
                "Verify no type errors introduced",
                "run_type_check",
                depends_on=["perform-refactor"],
            ),
        ]
        affected = len(context.target_files) or "unknown"
        return ExecutionPlan(
            steps=steps,
            estimated_tool_calls=len(steps) * 2,
            requires_approval=True,
            risks=[
                "Refactoring may break dependent code",
                "Behavior may change unintentionally",
                "Tests may need updates",
                f"Affects {affected} file(s)",
            ],
        )

    def validate_result(self, result: AgentResult) -> ValidationResult:
        issues: list[ValidationIssue] = []
        if not result.success:
            issues.append(ValidationIssue("error", result.error or "Refactoring failed"))
        test_runs = tool_records(result, "run_tests")
        if len(test_runs) < 2:
            issues.append(
                ValidationIssue("warning", "Tests should be run before and after refactoring")
            )
        failed_tests = [record for record in test_runs if not record.result.success]
        if failed_tests:
            issues.append(
                ValidationIssue(
                    "error", "Tests failed after refactoring - behavior may have changed"
                )
            )
        if any(not record.result.success for record in tool_records(result, "run_type_check")):
            issues.append(ValidationIssue("error", "Type errors introduced during refactoring"))
        suggestions = (
            ["Review the changes and fix test failures", "Consider reverting if behavior changed"]
            if failed_tests
            else []
        )
        return ValidationResult.from_issues(issues, suggestions)

    def build_system_prompt(self, context: AgentContext) -> str:
        refactor_type = self.refactor_type(context)
        goal = REFACTOR_TYPES.get(refactor_type, refactor_type)
        return f"""You are a Refactor Agent that improves code structure while preserving behaviour.

Refactoring type: {refactor_type} ({goal})

Rules:
1. Run the test suite before changing anything to record a baseline
2. Make small, behaviour-preserving edits with edit_file
3. Update every dependent module you find
4. Run the test suite and the type checker again after the change
5. Do not change tests to make them pass

Available tools: {self._tool_listing(context)}
Working directory: {context.working_directory}

When you are done, reply without calling tools and summarize what changed and why it is equivalent."""

    def build_initial_prompt(self, context: AgentContext) -> str:
        task = context.task
        return f"""Refactor {self._describe_target(context)}.

Task: {task.description or task.title}

Begin by measuring complexity and running the tests for a baseline."""
