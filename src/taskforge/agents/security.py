from __future__ import annotations

from taskforge.agents.base import Agent, AgentCapabilities, AgentContext, changed_paths
from taskforge.models import (
    AgentResult,
    ExecutionPlan,
    ExecutionStep,
    ValidationIssue,
    ValidationResult,
)

REPORT_PATH = "SECURITY_AUDIT.md"


class SecurityAgent(Agent):
    role = "security"
    name = "Security Agent"
    description = (
        "Performs security auditing including dependency scanning, SAST, and secret detection"
    )
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
    def scan_type(context: AgentContext) -> str:
        return str(context.task.options.get("scan_type") or "full")

    def plan_execution(self, context: AgentContext) -> ExecutionPlan:
        scan_type = self.scan_type(context)
        steps = [
            ExecutionStep(
                "analyze-structure",
                "Analyze project structure and identify files to scan",
                "list_files",
            )
        ]
        if scan_type in {"full", "dependencies"}:
            steps.append(
                ExecutionStep(
                    "read-dependencies",
                    "Read the project's dependency declarations",
                    "read_file",
                    depends_on=["analyze-structure"],
                )
            )
            steps.append(
                ExecutionStep(
                    "check-vulnerabilities",
                    "Check dependencies for known vulnerabilities",
                    "run_command",
                    depends_on=["read-dependencies"],
                )
            )
        if scan_type in {"full", "secrets"}:
            steps.append(
                ExecutionStep(
                    "scan-secrets",
                    "Scan codebase for hardcoded secrets and credentials",
                    "search_content",
                    depends_on=["analyze-structure"],
                )
            )
            steps.append(
                ExecutionStep(
                    "check-env-files",
                    "Check for exposed environment files",
                    "search_files",
                    depends_on=["analyze-structure"],
                )
            )
        if scan_type in {"full", "sast"}:
            steps.append(
                ExecutionStep(
                    "analyze-code-patterns",
                    "Analyze code for security anti-patterns",
                    "analyze_file",
                    depends_on=["analyze-structure"],
                )
            )
            steps.append(
                ExecutionStep(
                    "check-input-validation",
                    "Check for missing input validation",
                    "search_content",
                    depends_on=["analyze-structure"],
                )
            )
        steps.append(
            ExecutionStep(
                "generate-report",
                "Generate security audit report",
                "write_file",
                depends_on=[step.id for step in steps],
            )
        )
        return ExecutionPlan(
            steps=steps,
            estimated_tool_calls=len(steps) * 3,
            requires_approval=True,
            risks=[
                "May expose security vulnerabilities in logs",
                "Dependency audits may require network access",
            ],
        )

    def validate_result(self, result: AgentResult) -> ValidationResult:
        issues: list[ValidationIssue] = []
        if not result.success:
            issues.append(ValidationIssue("error", result.error or "Security audit failed"))
        reports = [
            path
            for path in changed_paths(result)
            if "security" in path.lower() or "audit" in path.lower()
        ]
        if result.success and not reports:
            issues.append(ValidationIssue("warning", "No security report was generated"))
        return ValidationResult.from_issues(issues)

    def build_system_prompt(self, context: AgentContext) -> str:
        scan_type = self.scan_type(context)
        return f"""You are a Security Agent that audits a Python project.

Scan type: {scan_type}

Checks:
- dependencies: run `pip-audit` (or the project's equivalent) and review pinned versions
- secrets: search for hardcoded keys, tokens, passwords and committed .env files
- sast: look for eval/exec, shell=True with untrusted input, unsafe deserialization
  (pickle, yaml.load), SQL built with string formatting and missing input validation

Rules:
- Report findings with file, line, severity (critical/high/medium/low) and a fix
- Never print full secret values; mask all but the last 4 characters
- Do not modify source files unless the task explicitly asks for fixes
- Write the final report to {REPORT_PATH}

Available tools: {self._tool_listing(context)}
Working directory: {context.working_directory}

When you are done, reply without calling tools and summarize the findings by severity."""

    def build_initial_prompt(self, context: AgentContext) -> str:
        task = context.task
        return f"""Run a {self.scan_type(context)} security audit of {self._describe_target(context)}.

Task: {task.description or task.title}

Begin by listing the project files."""
