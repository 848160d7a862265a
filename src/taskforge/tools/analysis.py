from __future__ import annotations

import ast
import json
from pathlib import Path
from typing import Any

from pydantic import Field

from taskforge.models import ToolResult
from taskforge.tools.file_ops import (
    PathInput,
    WorkspacePath,
    WorkspacePathError,
    is_excluded,
    resolve_workspace_path,
)
from taskforge.tools.registry import Tool, ToolInput

BRANCH_NODES = (
    ast.If,
    ast.For,
    ast.AsyncFor,
    ast.While,
    ast.ExceptHandler,
    ast.With,
    ast.AsyncWith,
    ast.IfExp,
    ast.comprehension,
    ast.Assert,
    ast.match_case,
)
COMPLEXITY_WARNING = 10


class FindDefinitionInput(ToolInput):
    symbol: str = Field(min_length=1, description="Function or class name")


class FindDependenciesInput(ToolInput):
    module: str = Field(min_length=1, description="Dotted module name")


class ComplexityInput(ToolInput):
    path: WorkspacePath
    threshold: int = Field(default=COMPLEXITY_WARNING, ge=1)


def _parse(path: Path) -> ast.Module:
    return ast.parse(path.read_text(encoding="utf-8"), filename=str(path))


def function_complexity(node: ast.AST) -> int:
    score = 1
    for child in ast.walk(node):
        if isinstance(child, BRANCH_NODES):
            score += 1
        elif isinstance(child, ast.BoolOp):
            score += len(child.values) - 1
    return score


def summarize_module(tree: ast.Module) -> dict[str, Any]:
    classes: list[dict[str, Any]] = []
    functions: list[dict[str, Any]] = []
    imports: list[str] = []
    for node in tree.body:
        if isinstance(node, ast.ClassDef):
            methods = [
                item.name
                for item in node.body
                if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef))
            ]
            classes.append({"name": node.name, "line": node.lineno, "methods": methods})
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            functions.append(
                {
                    "name": node.name,
                    "line": node.lineno,
                    "async": isinstance(node, ast.AsyncFunctionDef),
                    "args": [arg.arg for arg in node.args.args],
                }
            )
        elif isinstance(node, ast.Import):
            imports.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            imports.append("." * node.level + (node.module or ""))
    return {
        "classes": classes,
        "functions": functions,
        "imports": imports,
        "docstring": ast.get_docstring(tree),
    }


def module_exports(tree: ast.Module) -> list[str]:
    for node in tree.body:
        if isinstance(node, ast.Assign) and any(
            isinstance(target, ast.Name) and target.id == "__all__" for target in node.targets
        ):
            try:
                return [str(name) for name in ast.literal_eval(node.value)]
            except (TypeError, ValueError):
                break
    names: list[str] = []
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.append(node.name)
        elif isinstance(node, ast.Assign):
            names.extend(target.id for target in node.targets if isinstance(target, ast.Name))
    return [name for name in names if not name.startswith("_")]


def _imports_module(tree: ast.Module, module: str) -> bool:
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            if any(alias.name == module or alias.name.startswith(module + ".") for alias in node.names):
                return True
        elif isinstance(node, ast.ImportFrom) and node.module:
            if node.module == module or node.module.startswith(module + "."):
                return True
    return False


def create_analysis_tools(working_directory: Path, exclude_patterns: list[str] | None = None) -> list[Tool]:
    root = working_directory.resolve()
    excluded = list(exclude_patterns or [])

    def _python_files(base: Path):
        for path in sorted(base.rglob("*.py")):
            relative = path.relative_to(root).as_posix()
            if not is_excluded(relative, excluded):
                yield path, relative

    async def analyze_file(payload: dict[str, Any]) -> ToolResult:
        try:
            path = resolve_workspace_path(root, payload["path"])
            source = path.read_text(encoding="utf-8")
            tree = ast.parse(source, filename=str(path))
        except (OSError, UnicodeDecodeError, SyntaxError, WorkspacePathError) as exc:
            return ToolResult.fail(str(exc))
        summary = summarize_module(tree)
        summary["lines"] = len(source.splitlines())
        return ToolResult.ok(json.dumps(summary, indent=2), **summary)

    async def find_definition(payload: dict[str, Any]) -> ToolResult:
        symbol = payload["symbol"]
        matches: list[str] = []
        for path, relative in _python_files(root):
            try:
                tree = _parse(path)
            except (OSError, UnicodeDecodeError, SyntaxError):
                continue
            for node in ast.walk(tree):
                if (
                    isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef))
                    and node.name == symbol
                ):
                    matches.append(f"{relative}:{node.lineno}")
        if not matches:
            return ToolResult.ok(f"No definition found for {symbol}", count=0)
        return ToolResult.ok("\n".join(matches), count=len(matches))

    async def get_exports(payload: dict[str, Any]) -> ToolResult:
        try:
            tree = _parse(resolve_workspace_path(root, payload["path"]))
        except (OSError, UnicodeDecodeError, SyntaxError, WorkspacePathError) as exc:
            return ToolResult.fail(str(exc))
        exports = module_exports(tree)
        return ToolResult.ok("\n".join(exports), exports=exports)

    async def find_dependencies(payload: dict[str, Any]) -> ToolResult:
        module = payload["module"]
        dependents: list[str] = []
        for path, relative in _python_files(root):
            try:
                tree = _parse(path)
            except (OSError, UnicodeDecodeError, SyntaxError):
                continue
            if _imports_module(tree, module):
                dependents.append(relative)
        return ToolResult.ok("\n".join(dependents), count=len(dependents), files=dependents)

    async def analyze_complexity(payload: dict[str, Any]) -> ToolResult:
        try:
            tree = _parse(resolve_workspace_path(root, payload["path"]))
        except (OSError, UnicodeDecodeError, SyntaxError, WorkspacePathError) as exc:
            return ToolResult.fail(str(exc))
        threshold = int(payload.get("threshold") or COMPLEXITY_WARNING)
        report = [
            {"name": node.name, "line": node.lineno, "complexity": function_complexity(node)}
            for node in ast.walk(tree)
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef))
        ]
        report.sort(key=lambda item: item["complexity"], reverse=True)
        hotspots = [item for item in report if item["complexity"] > threshold]
        lines = [f"{item['name']} (line {item['line']}): {item['complexity']}" for item in report]
        return ToolResult.ok("\n".join(lines), functions=report, hotspots=hotspots)

    return [
        Tool(
            name="analyze_file",
            description="Summarize a Python module: classes, functions, imports and size",
            handler=analyze_file,
            category="analysis",
            input_model=PathInput,
        ),
        Tool(
            name="find_definition",
            description="Locate where a function or class is defined",
            handler=find_definition,
            category="analysis",
            input_model=FindDefinitionInput,
        ),
        Tool(
            name="get_exports",
            description="List the public names a module exports",
            handler=get_exports,
            category="analysis",
            input_model=PathInput,
        ),
        Tool(
            name="find_dependencies",
            description="Find modules that import the given module",
            handler=find_dependencies,
            category="analysis",
            input_model=FindDependenciesInput,
        ),
        Tool(
            name="analyze_complexity",
            description="Report per-function cyclomatic complexity for a module",
            handler=analyze_complexity,
            category="analysis",
            input_model=ComplexityInput,
        ),
    ]
