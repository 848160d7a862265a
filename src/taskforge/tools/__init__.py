from __future__ import annotations

from pathlib import Path

from taskforge.config import AgentConfig
from taskforge.tools.analysis import create_analysis_tools
from taskforge.tools.commands import create_command_tools
from taskforge.tools.file_ops import create_file_tools
from taskforge.tools.git_ops import create_git_tools
from taskforge.tools.registry import (
    FILE_MODIFYING_TOOLS,
    DuplicateToolError,
    NoInput,
    Tool,
    ToolInput,
    ToolRegistry,
    format_validation_errors,
)


def register_all_tools(
    registry: ToolRegistry,
    working_directory: Path,
    config: AgentConfig,
) -> ToolRegistry:
    excluded = config.project.exclude_patterns
    for tool in (
        *create_file_tools(working_directory, excluded),
        *create_command_tools(working_directory, config),
        *create_git_tools(working_directory),
        *create_analysis_tools(working_directory, excluded),
    ):
        registry.register(tool)
    return registry


__all__ = [
    "DuplicateToolError",
    "FILE_MODIFYING_TOOLS",
    "NoInput",
    "Tool",
    "ToolInput",
    "ToolRegistry",
    "format_validation_errors",
    "register_all_tools",
]
