from __future__ import annotations

from taskforge.agents.base import Agent, AgentCapabilities, AgentContext, changed_paths
from taskforge.models import (
    AgentResult,
    ExecutionPlan,
    ExecutionStep,
    ValidationIssue,
    ValidationResult,
)

DOC_TARGETS = {
    "readme": "README.md",
    "api": "docs/api.md",
    "changelog": "CHANGELOG.md",
    "guide": "docs/guide.md",
}


def is_doc_path(path: str) -> bool:
    normalized = path.replace("\\", "/")
    return (
        normalized.endswith((".md", ".rst"))
        or "docs/" in normalized
        or "CHANGELOG" in normalized
        or "README" in normalized
    )


class DocsAgent(Agent):
    role = "docs"
    name = "Docs Agent"
    description = (
        "Generates and maintains documentation including README, API docs, and changelogs"
    )
    autonomy_level = "supervised"
    capabilities = AgentCapabilities(
        can_read_files=True,
        can_write_files=True,
        can_execute_commands=False,
        can_modify_tests=False,
        can_modify_source=False,
        can_commit=True,
    )

    @staticmethod
    def doc_type(context: AgentContext) -> str:
        return str(context.task.options.get("doc_type") or "readme")

    def plan_execution(self, context: AgentContext) -> ExecutionPlan:
        doc_type = self.doc_type(context)
        steps = [
            ExecutionStep("analyze-structure", "Analyze project structure and key files", "list_files"),
            ExecutionStep(
                "read-existing-docs",
                "Read existing documentation files",
                "read_file",
                depends_on=["analyze-structure"],
            ),
        ]
        if doc_type == "api":
            steps.append(
                ExecutionStep(
                    "analyze-exports",
                    "Analyze exported functions and classes",
                    "get_exports",
                    depends_on=["analyze-structure"],
                )
            )
            inputs = ["analyze-exports", "read-existing-docs"]
        elif doc_type == "changelog":
            steps.append(
                ExecutionStep(
                    "analyze-git-history",
                    "Analyze git commit history for changelog",
                    "git_log",
                )
            )
            inputs = ["analyze-git-history", "read-existing-docs"]
        else:
            inputs = ["analyze-structure", "read-existing-docs"]
        steps.append(
            ExecutionStep(
                "generate-docs",
                f"Generate {doc_type} documentation",
                "write_file",
                depends_on=inputs,
            )
        )
        return ExecutionPlan(
            steps=steps,
            estimated_tool_calls=len(steps) * 3,
            requires_approval=True,
            risks=[
                "May overwrite existing documentation files",
                "Generated docs may need manual review for accuracy",
            ],
        )

    def validate_result(self, result: AgentResult) -> ValidationResult:
        issues: list[ValidationIssue] = []
        if not result.success:
            issues.append(
                ValidationIssue("error", result.error or "Documentation generation failed")
            )
        if result.success and not any(is_doc_path(path) for path in changed_paths(result)):
            issues.append(
                ValidationIssue("warning", "No documentation files were created or modified")
            )
        return ValidationResult.from_issues(issues)

    def build_system_prompt(self, context: AgentContext) -> str:
        doc_type = self.doc_type(context)
        return f"""You are a Docs Agent that writes accurate, concise project documentation.

Documentation type: {doc_type}
Default output file: {DOC_TARGETS.get(doc_type, "docs/")}

Rules:
- Describe only behaviour you have confirmed by reading the code
- Keep existing sections that are still correct and update the rest
- Use Markdown with short sections and runnable examples
- Never modify source code or tests

Available tools: {self._tool_listing(context)}
Working directory: {context.working_directory}

When you are done, reply without calling tools and list the files you wrote."""

    def build_initial_prompt(self, context: AgentContext) -> str:
        task = context.task
        return f"""Generate {self.doc_type(context)} documentation for {self._describe_target(context)}.

Task description: {task.description or task.title}

Start by looking at the project structure and the existing documentation."""
