from __future__ import annotations

import difflib
import fnmatch
import re
from pathlib import Path
from typing import Annotated, Any

from pydantic import Field

from taskforge.models import ToolResult
from taskforge.tools.registry import Tool, ToolInput

MAX_READ_CHARS = 200_000
MAX_SEARCH_RESULTS = 200

WorkspacePath = Annotated[str, Field(description="Path relative to the working directory")]


class PathInput(ToolInput):
    path: WorkspacePath


class ReadFileInput(ToolInput):
    path: WorkspacePath
    start_line: int = Field(default=1, ge=1)
    end_line: int | None = Field(default=None, ge=1)


class WriteFileInput(ToolInput):
    path: WorkspacePath
    content: str


class EditFileInput(ToolInput):
    path: WorkspacePath
    old_content: str = Field(min_length=1)
    new_content: str
    replace_all: bool = False


class ListFilesInput(ToolInput):
    path: WorkspacePath = "."
    pattern: str | None = None
    recursive: bool = True


class SearchFilesInput(ToolInput):
    pattern: str
    path: WorkspacePath = "."


class SearchContentInput(ToolInput):
    pattern: str
    path: WorkspacePath = "."
    file_pattern: str | None = None
    case_sensitive: bool = True


class WorkspacePathError(ValueError):
    """Raised when a tool path escapes the working directory."""


def resolve_workspace_path(root: Path, relative: str) -> Path:
    root = root.resolve()
    candidate = (root / relative).resolve()
    if candidate != root and root not in candidate.parents:
        raise WorkspacePathError(f"Path escapes working directory: {relative}")
    return candidate


def is_excluded(relative: str, exclude_patterns: list[str]) -> bool:
    parts = relative.split("/")
    for pattern in exclude_patterns:
        if fnmatch.fnmatch(relative, pattern) or any(fnmatch.fnmatch(part, pattern) for part in parts):
            return True
    return False


def _iter_files(root: Path, base: Path, pattern: str, exclude_patterns: list[str]):
    for path in sorted(base.glob(pattern)):
        if not path.is_file():
            continue
        relative = path.relative_to(root).as_posix()
        if is_excluded(relative, exclude_patterns):
            continue
        yield path, relative


def _unified_diff(path: str, before: str, after: str) -> str:
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
        )
    )


def create_file_tools(working_directory: Path, exclude_patterns: list[str] | None = None) -> list[Tool]:
    root = working_directory.resolve()
    excluded = list(exclude_patterns or [])

    async def read_file(payload: dict[str, Any]) -> ToolResult:
        try:
            path = resolve_workspace_path(root, payload["path"])
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError, WorkspacePathError) as exc:
            return ToolResult.fail(str(exc))
        start = payload.get("start_line")
        end = payload.get("end_line")
        if start is not None or end is not None:
            lines = content.splitlines(keepends=True)
            content = "".join(lines[max(0, (start or 1) - 1) : end])
        truncated = len(content) > MAX_READ_CHARS
        return ToolResult.ok(
            content[:MAX_READ_CHARS],
            path=payload["path"],
            truncated=truncated,
        )

    async def write_file(payload: dict[str, Any]) -> ToolResult:
        try:
            path = resolve_workspace_path(root, payload["path"])
            existed = path.exists()
            before = path.read_text(encoding="utf-8") if existed else ""
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(payload["content"], encoding="utf-8")
        except (OSError, UnicodeDecodeError, WorkspacePathError) as exc:
            return ToolResult.fail(str(exc))
        return ToolResult.ok(
            f"Wrote {payload['path']}",
            path=payload["path"],
            change="modified" if existed else "created",
            diff=_unified_diff(payload["path"], before, payload["content"]),
        )

    async def edit_file(payload: dict[str, Any]) -> ToolResult:
        old = payload["old_content"]
        new = payload["new_content"]
        try:
            path = resolve_workspace_path(root, payload["path"])
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError, WorkspacePathError) as exc:
            return ToolResult.fail(str(exc))
        occurrences = content.count(old)
        if occurrences == 0:
            return ToolResult.fail("The specified content was not found in the file")
        if payload.get("replace_all"):
            updated = content.replace(old, new)
        else:
            updated = content.replace(old, new, 1)
        try:
            path.write_text(updated, encoding="utf-8")
        except OSError as exc:
            return ToolResult.fail(str(exc))
        return ToolResult.ok(
            f"Edited {payload['path']}",
            path=payload["path"],
            change="modified",
            replacements=occurrences if payload.get("replace_all") else 1,
            diff=_unified_diff(payload["path"], content, updated),
        )

    async def delete_file(payload: dict[str, Any]) -> ToolResult:
        try:
            path = resolve_workspace_path(root, payload["path"])
            if not path.is_file():
                return ToolResult.fail(f"File not found: {payload['path']}")
            path.unlink()
        except (OSError, WorkspacePathError) as exc:
            return ToolResult.fail(str(exc))
        return ToolResult.ok(f"Deleted {payload['path']}", path=payload["path"], change="deleted")

    async def list_files(payload: dict[str, Any]) -> ToolResult:
        pattern = payload.get("pattern") or ("**/*" if payload.get("recursive", True) else "*")
        try:
            base = resolve_workspace_path(root, payload.get("path") or ".")
        except WorkspacePathError as exc:
            return ToolResult.fail(str(exc))
        if not base.is_dir():
            return ToolResult.fail(f"Directory not found: {payload.get('path')}")
        files = [relative for _, relative in _iter_files(root, base, pattern, excluded)]
        return ToolResult.ok("\n".join(files), count=len(files))

    async def search_files(payload: dict[str, Any]) -> ToolResult:
        try:
            base = resolve_workspace_path(root, payload.get("path") or ".")
        except WorkspacePathError as exc:
            return ToolResult.fail(str(exc))
        matches = [
            relative
            for _, relative in _iter_files(root, base, payload["pattern"], excluded)
        ][:MAX_SEARCH_RESULTS]
        return ToolResult.ok("\n".join(matches), count=len(matches))

    async def search_content(payload: dict[str, Any]) -> ToolResult:
        flags = 0 if payload.get("case_sensitive", True) else re.IGNORECASE
        try:
            regex = re.compile(payload["pattern"], flags)
            base = resolve_workspace_path(root, payload.get("path") or ".")
        except (re.error, WorkspacePathError) as exc:
            return ToolResult.fail(str(exc))
        hits: list[str] = []
        for path, relative in _iter_files(root, base, payload.get("file_pattern") or "**/*", excluded):
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            for number, line in enumerate(lines, start=1):
                if regex.search(line):
                    hits.append(f"{relative}:{number}: {line.strip()}")
                    if len(hits) >= MAX_SEARCH_RESULTS:
                        return ToolResult.ok("\n".join(hits), count=len(hits), truncated=True)
        return ToolResult.ok("\n".join(hits), count=len(hits), truncated=False)

    async def file_exists(payload: dict[str, Any]) -> ToolResult:
        try:
            path = resolve_workspace_path(root, payload["path"])
        except WorkspacePathError as exc:
            return ToolResult.fail(str(exc))
        exists = path.exists()
        return ToolResult.ok(
            "true" if exists else "false",
            exists=exists,
            is_directory=path.is_dir(),
        )

    return [
        Tool(
            name="read_file",
            description="Read the contents of a file, optionally limited to a line range",
            handler=read_file,
            category="file",
            input_model=ReadFileInput,
        ),
        Tool(
            name="write_file",
            description="Write content to a file, creating parent directories as needed",
            handler=write_file,
            category="file",
            input_model=WriteFileInput,
        ),
        Tool(
            name="edit_file",
            description="Replace an exact snippet of a file with new content",
            handler=edit_file,
            category="file",
            input_model=EditFileInput,
        ),
        Tool(
            name="delete_file",
            description="Delete a file",
            handler=delete_file,
            category="file",
            requires_approval=True,
            input_model=PathInput,
        ),
        Tool(
            name="list_files",
            description="List files under a directory, skipping excluded paths",
            handler=list_files,
            category="file",
            input_model=ListFilesInput,
        ),
        Tool(
            name="search_files",
            description="Find files whose path matches a glob pattern",
            handler=search_files,
            category="search",
            input_model=SearchFilesInput,
        ),
        Tool(
            name="search_content",
            description="Search file contents with a regular expression",
            handler=search_content,
            category="search",
            input_model=SearchContentInput,
        ),
        Tool(
            name="file_exists",
            description="Check whether a file or directory exists",
            handler=file_exists,
            category="file",
            input_model=PathInput,
        ),
    ]
