from __future__ import annotations

import asyncio
import os
import re
import shlex
from pathlib import Path
from typing import Any

from pydantic import Field

from taskforge.config import AgentConfig
from taskforge.models import ToolResult
from taskforge.tools.file_ops import WorkspacePathError, resolve_workspace_path
from taskforge.tools.registry import Tool, ToolInput

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
PYTEST_SUMMARY_PATTERN = re.compile(r"(\d+) (passed|failed|errors?|skipped)")
COVERAGE_TOTAL_PATTERN = re.compile(r"^TOTAL\s+.*?(\d{1,3}(?:\.\d+)?)%", re.MULTILINE)
DEFAULT_TIMEOUT_SECONDS = 300.0
OUTPUT_TAIL_CHARS = 4000


class RunCommandInput(ToolInput):
    command: str = Field(min_length=1)
    timeout_seconds: float | None = Field(default=None, ge=1)


class RunTestsInput(ToolInput):
    path: str | None = None
    filter: str | None = Field(default=None, description="Test name expression passed to -k")


class CheckTestFileInput(ToolInput):
    path: str


class RunLintInput(ToolInput):
    fix: bool = False


async def run_command(
    command: str,
    cwd: Path,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    command_text = command.strip()
    if not command_text:
        return {
            "command": command,
            "exit_code": 1,
            "stdout_tail": "",
            "stderr_tail": "Command is empty.",
            "used_shell": False,
            "timed_out": False,
        }

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    argv: list[str] = []
    if not used_shell:
        try:
            argv = shlex.split(command_text)
        except ValueError:
            used_shell = True

    env = {**os.environ, "NO_COLOR": "1", "FORCE_COLOR": "0"}
    try:
        if used_shell:
            proc = await asyncio.create_subprocess_shell(
                command_text,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        else:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
    except OSError as exc:
        return {
            "command": command,
            "exit_code": 127,
            "stdout_tail": "",
            "stderr_tail": str(exc),
            "used_shell": used_shell,
            "timed_out": False,
        }

    timed_out = False
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        timed_out = True
        proc.kill()
        stdout, stderr = await proc.communicate()
        stderr = (stderr or b"") + f"\nProcess timed out after {timeout_seconds:.0f}s".encode()

    stdout_text = (stdout or b"").decode("utf-8", errors="replace").rstrip()
    stderr_text = (stderr or b"").decode("utf-8", errors="replace").rstrip()
    return {
        "command": command,
        "exit_code": 124 if timed_out else proc.returncode,
        "stdout_tail": stdout_text[-OUTPUT_TAIL_CHARS:],
        "stderr_tail": stderr_text[-OUTPUT_TAIL_CHARS:],
        "used_shell": used_shell,
        "timed_out": timed_out,
    }


def _command_result(result: dict[str, Any], **metadata: Any) -> ToolResult:
    output = "\n".join(part for part in (result["stdout_tail"], result["stderr_tail"]) if part)
    metadata = {
        "command": result["command"],
        "exit_code": result["exit_code"],
        "timed_out": result["timed_out"],
        **metadata,
    }
    if result["exit_code"] == 0:
        return ToolResult(success=True, output=output, metadata=metadata)
    return ToolResult(
        success=False,
        output=output,
        error=f"Command exited with code {result['exit_code']}",
        metadata=metadata,
    )


def parse_test_counts(output: str) -> dict[str, int]:
    counts = {"passed": 0, "failed": 0, "errors": 0, "skipped": 0}
    for number, label in PYTEST_SUMMARY_PATTERN.findall(output):
        key = "errors" if label.startswith("error") else label
        counts[key] = int(number)
    return counts


def parse_coverage_percent(output: str) -> float | None:
    match = COVERAGE_TOTAL_PATTERN.search(output)
    return float(match.group(1)) if match else None


def find_test_file(root: Path, source: str, tests_dir: str) -> str | None:
    source_path = Path(source)
    stem = source_path.stem
    candidates = [
        Path(tests_dir) / f"test_{stem}.py",
        source_path.with_name(f"test_{stem}.py"),
        source_path.with_name(f"{stem}_test.py"),
    ]
    for candidate in candidates:
        if (root / candidate).is_file():
            return candidate.as_posix()
    tests_root = root / tests_dir
    if tests_root.is_dir():
        for match in sorted(tests_root.rglob(f"test_{stem}.py")):
            return match.relative_to(root).as_posix()
    return None


def create_command_tools(working_directory: Path, config: AgentConfig) -> list[Tool]:
    root = working_directory.resolve()
    project = config.project

    async def run_shell_command(payload: dict[str, Any]) -> ToolResult:
        timeout = float(payload.get("timeout_seconds") or DEFAULT_TIMEOUT_SECONDS)
        return _command_result(await run_command(payload["command"], root, timeout_seconds=timeout))

    async def run_tests(payload: dict[str, Any]) -> ToolResult:
        command = project.test_command
        if payload.get("path"):
            command += f" {shlex.quote(payload['path'])}"
        if payload.get("filter"):
            command += f" -k {shlex.quote(payload['filter'])}"
        result = await run_command(command, root)
        counts = parse_test_counts(result["stdout_tail"] + "\n" + result["stderr_tail"])
        return _command_result(result, **counts)

    async def get_coverage(payload: dict[str, Any]) -> ToolResult:
        result = await run_command(project.coverage_command, root)
        percent = parse_coverage_percent(result["stdout_tail"])
        threshold = config.testing.coverage_threshold.lines
        tool_result = _command_result(result, coverage=percent, threshold=threshold)
        if tool_result.success and percent is not None and percent < threshold:
            tool_result.success = False
            tool_result.error = f"Line coverage {percent:.1f}% is below threshold {threshold}%"
        return tool_result

    async def check_test_file(payload: dict[str, Any]) -> ToolResult:
        try:
            resolve_workspace_path(root, payload["path"])
        except WorkspacePathError as exc:
            return ToolResult.fail(str(exc))
        test_path = find_test_file(root, payload["path"], project.tests_dir)
        if test_path is None:
            return ToolResult.ok(f"No test file found for {payload['path']}", exists=False)
        return ToolResult.ok(test_path, exists=True, test_path=test_path)

    async def run_lint(payload: dict[str, Any]) -> ToolResult:
        command = project.lint_command
        if payload.get("fix"):
            command += " --fix"
        return _command_result(await run_command(command, root))

    async def run_type_check(payload: dict[str, Any]) -> ToolResult:
        return _command_result(await run_command(project.type_check_command, root))

    return [
        Tool(
            name="run_command",
            description="Run a shell command in the working directory",
            handler=run_shell_command,
            category="shell",
            input_model=RunCommandInput,
        ),
        Tool(
            name="run_tests",
            description="Run the project test suite, optionally limited to a path or name filter",
            handler=run_tests,
            category="test",
            input_model=RunTestsInput,
        ),
        Tool(
            name="get_coverage",
            description="Run the test suite with coverage and compare against the line threshold",
            handler=get_coverage,
            category="test",
        ),
        Tool(
            name="check_test_file",
            description="Find the test module that covers a source file",
            handler=check_test_file,
            category="test",
            input_model=CheckTestFileInput,
        ),
        Tool(
            name="run_lint",
            description="Run the project linter",
            handler=run_lint,
            category="lint",
            input_model=RunLintInput,
        ),
        Tool(
            name="run_type_check",
            description="Run the project type checker",
            handler=run_type_check,
            category="lint",
        ),
    ]
