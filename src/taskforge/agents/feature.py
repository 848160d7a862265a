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


class FeatureAgent(Agent):
    role = "feature"
    name = "Feature Agent"
    description = "Implements new features based on specifications"
    autonomy_level = "supervised"
    capabilities = AgentCapabilities(
        can_read_files=True,
        can_write_files=True,
        can_execute_commands=True,
        can_modify_tests=True,
        can_modify_source=True,
        can_commit=True,
    )

    def plan_execution(self, context: AgentContext) -> ExecutionPlan:
        steps = [
            ExecutionStep(
                "understand-codebase",
                "Analyze relevant parts of the codebase",
                "search_files",
            ),
            ExecutionStep(
                "identify-patterns",
                "Identify existing patterns and conventions",
                "analyze_file",
                depends_on=["understand-codebase"],
            ),
            ExecutionStep(
                "implement-feature",
                "Implement the feature following existing patterns",
                "write_file",
                depends_on=["identify-patterns"],
            ),
            ExecutionStep(
                "add-tests",
                "Add tests for the new feature",
                "write_file",
                depends_on=["implement-feature"],
            ),
            ExecutionStep(
                "run-tests",
                "Verify tests pass",
                "run_tests",
                depends_on=["add-tests"],
            ),
            ExecutionStep(
                "type-check",
                "Verify no type errors",
                "run_type_check",
                depends_on=["implement-feature"],
            ),
        ]
        return ExecutionPlan(
            steps=steps,
            estimated_tool_calls=len(steps) * 3,
            requires_approval=True,
            risks=[
                "May modify existing files",
                "Feature implementation may affect other components",
                "Tests may need adjustment after review",
            ],
        )

    def validate_result(self, result: AgentResult) -> ValidationResult:
        issues: list[ValidationIssue] = []
        if not result.success:
            issues.append(
                ValidationIssue("error", result.error or "Feature implementation failed")
            )
        paths = changed_paths(result)
        test_files = [path for path in paths if is_test_path(path)]
        if result.success and len(test_files) == len(paths):
            issues.append(ValidationIssue("warning", "No source files were created or modified"))
        if not test_files:
            issues.append(
                ValidationIssue("warning", "No test files were created for the new feature")
            )
        suggestions = [] if test_files else ["Consider adding tests for the new feature"]
        return ValidationResult.from_issues(issues, suggestions)

    def build_system_prompt(self, context: AgentContext) -> str:
        project = context.config.project
        conventions = ""
        if project.convention_docs:
            conventions = "\nRead these convention documents first: " + ", ".join(
                project.convention_docs
            )
        return f"""You are a Feature Agent responsible for implementing new features in a Python codebase.

Your responsibilities:
1. Understand the feature requirements from the specification
2. Analyze the existing codebase to understand patterns and conventions
3. Implement the feature following the project's coding standards
4. Write tests for the new functionality
5. Make sure the type checker and linter stay clean

Implementation guidelines:
- Follow existing code patterns and conventions in the project
- Keep functions small and focused
- Handle errors where the surrounding code does
- Preserve backward compatibility unless the specification says otherwise

Project structure:
- Source code: {project.src_dir}/
- Tests: {project.tests_dir}/ ({context.config.testing.test_pattern}){conventions}

Available tools: {self._tool_listing(context)}
Working directory: {context.working_directory}

When you are done, reply without calling tools and summarize the changes you made."""

    def build_initial_prompt(self, context: AgentContext) -> str:
        task = context.task
        spec = task.options.get("feature_spec") or task.description
        return f"""Implement the following feature: {task.title}

Specification:
{spec}

Scope: {self._describe_target(context)}

Start by exploring the codebase to find where this feature belongs."""
