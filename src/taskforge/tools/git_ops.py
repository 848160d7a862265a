from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any

from pydantic import Field

from taskforge.models import ToolResult
from taskforge.tools.commands import run_command
from taskforge.tools.registry import Tool, ToolInput

GIT_TIMEOUT_SECONDS = 60.0


class GitDiffInput(ToolInput):
    staged: bool = False
    stat: bool = False
    path: str | None = None


class GitLogInput(ToolInput):
    limit: int = Field(default=10, ge=1, le=200)
    path: str | None = None


class GitAddInput(ToolInput):
    files: list[str]


class GitCommitInput(ToolInput):
    message: str = Field(min_length=1)
    all: bool = Field(default=False, description="Stage every tracked change before committing")


class GitBranchInput(ToolInput):
    name: str | None = None
    checkout: bool = False


def parse_porcelain_status(output: str) -> dict[str, list[str]]:
    staged: list[str] = []
    modified: list[str] = []
    untracked: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        index_flag, worktree_flag, path = line[0], line[1], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if index_flag == "?" and worktree_flag == "?":
            untracked.append(path)
            continue
        if index_flag not in {" ", "?"}:
            staged.append(path)
        if worktree_flag not in {" ", "?"}:
            modified.append(path)
    return {"staged": staged, "modified": modified, "untracked": untracked}


def create_git_tools(working_directory: Path) -> list[Tool]:
    root = working_directory.resolve()

    async def _git(args: list[str]) -> dict[str, Any]:
        return await run_command(
            shlex.join(["git", "--no-pager", *args]),
            root,
            timeout_seconds=GIT_TIMEOUT_SECONDS,
        )

    def _result(result: dict[str, Any], **metadata: Any) -> ToolResult:
        if result["exit_code"] != 0:
            return ToolResult.fail(
                result["stderr_tail"] or f"git exited with code {result['exit_code']}",
                output=result["stdout_tail"],
            )
        return ToolResult.ok(result["stdout_tail"], **metadata)

    async def git_status(payload: dict[str, Any]) -> ToolResult:
        result = await _git(["status", "--porcelain"])
        if result["exit_code"] != 0:
            return _result(result)
        parsed = parse_porcelain_status(result["stdout_tail"])
        clean = not any(parsed.values())
        return ToolResult.ok(result["stdout_tail"] or "Working tree clean", clean=clean, **parsed)

    async def git_diff(payload: dict[str, Any]) -> ToolResult:
        args = ["diff"]
        if payload.get("staged"):
            args.append("--cached")
        if payload.get("stat"):
            args.append("--stat")
        if payload.get("path"):
            args.extend(["--", payload["path"]])
        return _result(await _git(args))

    async def git_log(payload: dict[str, Any]) -> ToolResult:
        limit = int(payload.get("limit") or 10)
        args = ["log", f"-n{limit}", "--pretty=format:%h %ad %an %s", "--date=short"]
        if payload.get("path"):
            args.extend(["--", payload["path"]])
        result = await _git(args)
        return _result(result, count=len(result["stdout_tail"].splitlines()))

    async def git_add(payload: dict[str, Any]) -> ToolResult:
        files = list(payload["files"])
        result = await _git(["add", "--", *files])
        if result["exit_code"] == 0 and not result["stdout_tail"]:
            result["stdout_tail"] = f"Staged {len(files)} file(s)"
        return _result(result, files=files)

    async def git_commit(payload: dict[str, Any]) -> ToolResult:
        args = ["commit", "-m", payload["message"]]
        if payload.get("all"):
            args.insert(1, "-a")
        return _result(await _git(args))

    async def git_branch(payload: dict[str, Any]) -> ToolResult:
        name = payload.get("name")
        if not name:
            return _result(await _git(["branch", "--show-current"]))
        args = ["switch", "-c", name] if payload.get("checkout") else ["branch", name]
        return _result(await _git(args), branch=name)

    return [
        Tool(
            name="git_status",
            description="Show staged, modified and untracked files",
            handler=git_status,
            category="git",
        ),
        Tool(
            name="git_diff",
            description="Show the working tree or staged diff",
            handler=git_diff,
            category="git",
            input_model=GitDiffInput,
        ),
        Tool(
            name="git_log",
            description="Show recent commits",
            handler=git_log,
            category="git",
            input_model=GitLogInput,
        ),
        Tool(
            name="git_add",
            description="Stage files for commit",
            handler=git_add,
            category="git",
            input_model=GitAddInput,
        ),
        Tool(
            name="git_commit",
            description="Create a commit from the staged changes",
            handler=git_commit,
            category="git",
            requires_approval=True,
            input_model=GitCommitInput,
        ),
        Tool(
            name="git_branch",
            description="Show the current branch or create a new one",
            handler=git_branch,
            category="git",
            input_model=GitBranchInput,
        ),
    ]
