import ast
import asyncio
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Any, Literal, Union

import pytest
from pydantic import Field

from taskforge.config import AgentConfig
from taskforge.models import ToolResult
from taskforge.tools import DuplicateToolError, Tool, ToolInput, ToolRegistry, register_all_tools
from taskforge.tools.analysis import function_complexity, module_exports
from taskforge.tools.commands import (
    find_test_file,
    parse_coverage_percent,
    parse_test_counts,
    run_command,
)
from taskforge.tools.file_ops import WorkspacePathError, is_excluded, resolve_workspace_path
from taskforge.tools.git_ops import parse_porcelain_status


def _python(code: str) -> str:
    return shlex.join([sys.executable, "-c", code])


def _registry(root: Path, config: AgentConfig | None = None) -> ToolRegistry:
    return register_all_tools(ToolRegistry(), root, config or AgentConfig.default())


def _call(registry: ToolRegistry, name: str, payload: dict[str, Any]) -> ToolResult:
    tool = registry.get(name)
    assert tool is not None, name
    return asyncio.run(tool.execute(payload))


async def _echo(payload: dict[str, Any]) -> ToolResult:
    return ToolResult.ok(str(payload.get("text", "")))


def test_registry_rejects_duplicates_unless_replacing() -> None:
    registry = ToolRegistry([Tool(name="echo", description="Echo", handler=_echo)])

    with pytest.raises(DuplicateToolError):
        registry.register(Tool(name="echo", description="Again", handler=_echo))

    registry.register(Tool(name="echo", description="Replaced", handler=_echo), replace=True)
    assert registry.get("echo").description == "Replaced"
    assert "echo" in registry
    assert registry.unregister("echo") is True
    assert registry.unregister("echo") is False
    assert len(registry) == 0


def test_all_tools_are_registered_with_categories(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    names = {tool.name for tool in registry.get_all()}
    assert {
        "read_file",
        "write_file",
        "edit_file",
        "delete_file",
        "list_files",
        "search_files",
        "search_content",
        "file_exists",
        "run_command",
        "run_tests",
        "get_coverage",
        "check_test_file",
        "run_lint",
        "run_type_check",
        "git_status",
        "git_diff",
        "git_log",
        "git_add",
        "git_commit",
        "git_branch",
        "analyze_file",
        "find_definition",
        "get_exports",
        "find_dependencies",
        "analyze_complexity",
    } == names
    assert {tool.name for tool in registry.get_all() if tool.requires_approval} == {
        "delete_file",
        "git_commit",
    }
    assert [tool.name for tool in registry.get_by_category("shell")] == ["run_command"]
    definition = registry.get("read_file").definition()
    assert definition["input_schema"]["required"] == ["path"]


class _SampleInput(ToolInput):
    path: str = Field(min_length=1)
    count: int = Field(default=1, ge=1)
    mode: Literal["fast", "slow"] = "fast"
    tags: list[str] = []
    target: Union[int, Literal["all"]] = "all"


def test_input_model_validation_reports_violations() -> None:
    tool = Tool(name="sample", description="Sample", handler=_echo, input_model=_SampleInput)

    assert tool.validate({"path": "a.py", "count": 2, "tags": ["x"], "target": 3}) == []
    errors = tool.validate({"count": True, "mode": "medium", "tags": [1], "extra": 1})
    assert "input.path: Field required" in errors
    assert any(error.startswith("input.count:") for error in errors)
    assert any(error.startswith("input.mode:") for error in errors)
    assert any(error.startswith("input.tags[0]:") for error in errors)
    assert "input.extra: Extra inputs are not permitted" in errors
    assert any(error.startswith("input.target") for error in tool.validate({"path": "a", "target": "some"}))
    assert tool.validate("not an object")[0].startswith("input: Input should be a valid dictionary")
    assert tool.input_schema["required"] == ["path"]
    assert tool.input_schema["additionalProperties"] is False


def test_tools_without_inputs_reject_arguments() -> None:
    tool = Tool(name="echo", description="Echo", handler=_echo)

    assert tool.validate({}) == []
    result = asyncio.run(tool.execute({"text": "hi"}))
    assert result.success is False
    assert result.error == "Validation failed: input.text: Extra inputs are not permitted"


def test_handlers_receive_only_supplied_fields() -> None:
    seen: list[dict[str, Any]] = []

    async def _record(payload: dict[str, Any]) -> ToolResult:
        seen.append(payload)
        return ToolResult.ok("recorded")

    tool = Tool(name="sample", description="Sample", handler=_record, input_model=_SampleInput)
    asyncio.run(tool.execute({"path": "a.py", "count": 3}))

    assert seen == [{"path": "a.py", "count": 3}]


def test_invalid_input_never_reaches_the_handler(tmp_path: Path) -> None:
    result = _call(_registry(tmp_path), "write_file", {"path": "a.txt"})

    assert result.success is False
    assert result.error.startswith("Validation failed:")
    assert not (tmp_path / "a.txt").exists()


def test_file_tools_write_edit_read_delete(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    created = _call(registry, "write_file", {"path": "pkg/mod.py", "content": "x = 1\ny = 2\n"})
    assert created.success is True
    assert created.metadata["change"] == "created"
    assert "+x = 1" in created.metadata["diff"]

    edited = _call(
        registry,
        "edit_file",
        {"path": "pkg/mod.py", "old_content": "y = 2", "new_content": "y = 3"},
    )
    assert edited.success is True
    assert edited.metadata["change"] == "modified"

    missing = _call(
        registry,
        "edit_file",
        {"path": "pkg/mod.py", "old_content": "z = 9", "new_content": "z = 0"},
    )
    assert missing.success is False
    assert missing.error == "The specified content was not found in the file"

    read = _call(registry, "read_file", {"path": "pkg/mod.py", "start_line": 2, "end_line": 2})
    assert read.output == "y = 3\n"

    exists = _call(registry, "file_exists", {"path": "pkg/mod.py"})
    assert exists.metadata["exists"] is True

    deleted = _call(registry, "delete_file", {"path": "pkg/mod.py"})
    assert deleted.success is True
    assert deleted.metadata["change"] == "deleted"
    assert not (tmp_path / "pkg" / "mod.py").exists()


def test_file_tools_refuse_paths_outside_workspace(tmp_path: Path) -> None:
    registry = _registry(tmp_path / "work")
    (tmp_path / "work").mkdir()

    result = _call(registry, "write_file", {"path": "../escape.txt", "content": "x"})

    assert result.success is False
    assert "escapes" in result.error
    assert not (tmp_path / "escape.txt").exists()
    with pytest.raises(WorkspacePathError):
        resolve_workspace_path(tmp_path / "work", "../../etc/passwd")


def test_listing_and_search_skip_excluded_paths(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("API_KEY = 'abc'\n", encoding="utf-8")
    (tmp_path / "__pycache__").mkdir()
    (tmp_path / "__pycache__" / "app.py").write_text("API_KEY = 'cached'\n", encoding="utf-8")
    registry = _registry(tmp_path)

    listed = _call(registry, "list_files", {})
    assert listed.output.splitlines() == ["src/app.py"]

    found = _call(registry, "search_files", {"pattern": "**/*.py"})
    assert found.output == "src/app.py"

    hits = _call(registry, "search_content", {"pattern": "api_key", "case_sensitive": False})
    assert hits.output == "src/app.py:1: API_KEY = 'abc'"
    assert is_excluded("a/__pycache__/b.pyc", ["__pycache__"])


def test_run_command_captures_exit_code_and_output(tmp_path: Path) -> None:
    ok = asyncio.run(run_command(_python("print('hello')"), tmp_path))
    assert ok["exit_code"] == 0
    assert ok["stdout_tail"] == "hello"
    assert ok["used_shell"] is False

    failed = asyncio.run(run_command(_python("import sys; sys.exit(3)"), tmp_path))
    assert failed["exit_code"] == 3

    piped = asyncio.run(run_command("echo one | cat", tmp_path))
    assert piped["used_shell"] is True
    assert piped["stdout_tail"] == "one"

    missing = asyncio.run(run_command("definitely-not-a-real-binary-xyz", tmp_path))
    assert missing["exit_code"] == 127


def test_run_command_times_out(tmp_path: Path) -> None:
    result = asyncio.run(
        run_command(_python("import time; time.sleep(5)"), tmp_path, timeout_seconds=0.2)
    )

    assert result["timed_out"] is True
    assert result["exit_code"] == 124


def test_project_commands_come_from_config(tmp_path: Path) -> None:
    config = AgentConfig.default()
    config.project.test_command = _python("print('3 passed, 1 skipped in 0.1s')")
    config.project.lint_command = _python("import sys; print('E501'); sys.exit(1)")
    config.project.coverage_command = _python("print('TOTAL    100    40    60%')")
    registry = _registry(tmp_path, config)

    tests = _call(registry, "run_tests", {})
    assert tests.success is True
    assert tests.metadata["passed"] == 3
    assert tests.metadata["skipped"] == 1

    lint = _call(registry, "run_lint", {})
    assert lint.success is False
    assert lint.error == "Command exited with code 1"
    assert "E501" in lint.output

    coverage = _call(registry, "get_coverage", {})
    assert coverage.success is False
    assert coverage.metadata["coverage"] == 60.0
    assert "below threshold 80%" in coverage.error


def test_output_parsers() -> None:
    assert parse_test_counts("1 failed, 4 passed, 2 errors in 1.2s") == {
        "passed": 4,
        "failed": 1,
        "errors": 2,
        "skipped": 0,
    }
    assert parse_coverage_percent("Name  Stmts\nTOTAL   50   5   90%\n") == 90.0
    assert parse_coverage_percent("no coverage here") is None
    assert parse_porcelain_status(" M src/a.py\nA  src/b.py\n?? notes.txt\nR  old.py -> new.py\n") == {
        "staged": ["src/b.py", "new.py"],
        "modified": ["src/a.py"],
        "untracked": ["notes.txt"],
    }


def test_find_test_file_checks_conventional_locations(tmp_path: Path) -> None:
    (tmp_path / "tests" / "unit").mkdir(parents=True)
    (tmp_path / "tests" / "unit" / "test_parser.py").write_text("", encoding="utf-8")

    assert find_test_file(tmp_path, "src/pkg/parser.py", "tests") == "tests/unit/test_parser.py"
    assert find_test_file(tmp_path, "src/pkg/other.py", "tests") is None


def test_git_status_reports_untracked_files(tmp_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=tmp_path, check=True, text=True, capture_output=True)
    (tmp_path / "new.py").write_text("x = 1\n", encoding="utf-8")

    result = _call(_registry(tmp_path), "git_status", {})

    assert result.success is True
    assert result.metadata["untracked"] == ["new.py"]
    assert result.metadata["clean"] is False


def test_analysis_tools(tmp_path: Path) -> None:
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "core.py").write_text(
        '"""Core helpers."""\n'
        "import os\n\n"
        "__all__ = ['public']\n\n"
        "def public(value):\n"
        "    if value and os.sep:\n"
        "        for item in value:\n"
        "            if item:\n"
        "                return item\n"
        "    return None\n\n"
        "class Widget:\n"
        "    def run(self):\n"
        "        return 1\n",
        encoding="utf-8",
    )
    (tmp_path / "pkg" / "user.py").write_text("from pkg.core import public\n", encoding="utf-8")
    registry = _registry(tmp_path)

    summary = _call(registry, "analyze_file", {"path": "pkg/core.py"})
    assert summary.metadata["docstring"] == "Core helpers."
    assert summary.metadata["classes"][0]["methods"] == ["run"]

    exports = _call(registry, "get_exports", {"path": "pkg/core.py"})
    assert exports.metadata["exports"] == ["public"]

    definition = _call(registry, "find_definition", {"symbol": "Widget"})
    assert definition.output == "pkg/core.py:13"

    dependents = _call(registry, "find_dependencies", {"module": "pkg.core"})
    assert dependents.metadata["files"] == ["pkg/user.py"]

    complexity = _call(registry, "analyze_complexity", {"path": "pkg/core.py", "threshold": 3})
    assert complexity.metadata["functions"][0]["name"] == "public"
    assert complexity.metadata["functions"][0]["complexity"] == 5
    assert [item["name"] for item in complexity.metadata["hotspots"]] == ["public"]


def test_module_exports_without_all() -> None:
    tree = ast.parse("def a(): pass\ndef _b(): pass\nclass C: pass\nVALUE = 1\n")

    assert module_exports(tree) == ["a", "C", "VALUE"]
    assert function_complexity(ast.parse("def f(x):\n    return x").body[0]) == 1
