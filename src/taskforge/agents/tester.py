from __future__ import annotations

from taskforge.agents.base import (
    Agent,
    AgentCapabilities,
    AgentContext,
    changed_paths,
    is_test_path,
)
from taskforge.models import (
    AgentResult,
    ExecutionPlan,
    ExecutionStep,
    ValidationIssue,
    ValidationResult,
)


class TestAgent(Agent):
    __test__ = False

    role = "test"
    name = "Test Agent"
    description = "Writes and updates unit tests for source files"
    autonomy_level = "full"
    capabilities = AgentCapabilities(
        can_read_files=True,
        can_write_files=True,
        can_execute_commands=True,
        can_modify_tests=True,
        can_modify_source=False,
        can_commit=False,
    )

    def plan_execution(self, context: AgentContext) -> ExecutionPlan:
        steps: list[ExecutionStep] = []
        for path in context.target_files:
            steps.append(
                ExecutionStep(
                    id=f"analyze-{path}",
                    description=f"Analyze {path} for testable units",
                    tool_name="analyze_file",
                )
            )
            steps.append(
                ExecutionStep(
                    id=f"check-test-{path}",
                    description=f"Look for an existing test module covering {path}",
                    tool_name="check_test_file",
                    depends_on=[f"analyze-{path}"],
                )
            )
        steps.append(
            ExecutionStep(
                id="generate-tests",
                description="Write or extend test modules",
                tool_name="write_file",
                depends_on=[step.id for step in steps],
            )
        )
        steps.append(
            ExecutionStep(
                id="run-tests",
                description="Run the new tests and fix failures",
                tool_name="run_tests",
                depends_on=["generate-tests"],
            )
        )
        return ExecutionPlan(
            steps=steps,
            estimated_tool_calls=len(steps) * 2,
            requires_approval=False,
            risks=["May overwrite existing test files"],
        )

    def validate_result(self, result: AgentResult) -> ValidationResult:
        issues: list[ValidationIssue] = []
        if not result.success:
            issues.append(ValidationIssue("error", result.error or "Test generation failed"))
        if not any(is_test_path(path) for path in changed_paths(result)):
            issues.append(ValidationIssue("warning", "No test files were created or modified"))
        return ValidationResult.from_issues(issues)

    def build_system_prompt(self, context: AgentContext) -> str:
        testing = context.config.testing
        return f"""You are a Test Agent that writes focused, maintainable unit tests.

Your responsibilities:
1. Read the target source files and identify their public behaviour
2. Find existing tests for them and extend those before creating new modules
3. Cover happy paths, edge cases and error handling
4. Run the tests you wrote and fix them until they pass

Rules:
- Use {testing.framework}; test modules match `{testing.test_pattern}` and live in
  `{context.config.project.tests_dir}/`
- Do not modify source files, only tests
- Prefer plain test functions and fixtures such as tmp_path and monkeypatch

Available tools: {self._tool_listing(context)}
Working directory: {context.working_directory}

When you are done, reply without calling tools and summarize which tests you added."""

    def build_initial_prompt(self, context: AgentContext) -> str:
        task = context.task
        lines = [
            f"Write tests for {self._describe_target(context)}.",
            "",
            f"Task: {task.description or task.title}",
        ]
        coverage_target = task.options.get("coverage_target")
        if coverage_target:
            lines.append(f"Aim for at least {coverage_target}% line coverage.")
        test_filter = task.options.get("test_filter")
        if test_filter:
            lines.append(f"Only run tests matching: {test_filter}")
        lines.append("")
        lines.append("Start by analyzing the target files.")
        return "\n".join(lines)
