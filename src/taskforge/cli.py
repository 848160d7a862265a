from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, get_args

import click

from taskforge.approval import (
    ApprovalHandler,
    create_auto_approve_handler,
    create_auto_reject_handler,
    create_interactive_approval_handler,
)
from taskforge.backends import (
    CompletionClient,
    OpenAIChatClient,
    ResilientCompletionClient,
    RetryPolicy,
)
from taskforge.config import DEFAULT_CONFIG_FILE, AgentConfig, load_config, save_config
from taskforge.models import (
    AGENT_ROLES,
    TASK_PRIORITIES,
    AgentEvent,
    TaskInput,
    TaskResult,
    TaskTarget,
    ToolCategory,
)
from taskforge.orchestrator import Orchestrator, OrchestratorEvents
from taskforge.state import TaskStore, TaskStoreError, create_task_store

logger = logging.getLogger("taskforge.cli")


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: AgentConfig
    store: TaskStore
    orchestrator: Orchestrator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.info("Backend event: %s", event)


def _build_single_client(config: AgentConfig) -> OpenAIChatClient:
    api_key = os.environ.get(config.backend.api_key_env) if config.backend.api_key_env else None
    return OpenAIChatClient(api_key=api_key, base_url=config.backend.base_url or None)


def _build_client(config: AgentConfig) -> CompletionClient:
    primary = _build_single_client(config)
    fallback = primary
    if config.backend.fallback != config.backend.primary:
        fallback = _build_single_client(config)
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientCompletionClient(
        primary_name=config.backend.primary,
        primary_client=primary,
        fallback_name=config.backend.fallback,
        fallback_client=fallback,
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


async def _prompt_choice(message: str, choices: list[str]) -> str:
    return await asyncio.to_thread(
        click.prompt, message, type=click.Choice(choices), default="no"
    )


def _approval_handler(mode: str) -> ApprovalHandler:
    if mode == "auto":
        return create_auto_approve_handler()
    if mode == "reject":
        return create_auto_reject_handler()
    return create_interactive_approval_handler(_prompt_choice)


def _echo_agent_event(event: AgentEvent) -> None:
    if event.type == "tool_call":
        click.echo(f"  -> {event.data.get('tool_name')}")
    elif event.type == "tool_result" and not event.data.get("success"):
        click.echo(f"     failed: {event.data.get('error')}")


def _load_runtime(
    repo_root: Path,
    config_path: Path,
    *,
    approval_handler: ApprovalHandler | None = None,
) -> Runtime:
    config = load_config(config_path)
    try:
        store = create_task_store(config.persistence)
    except TaskStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    orchestrator = Orchestrator(
        config,
        _build_client(config),
        working_directory=repo_root,
        store=store,
        approval_handler=approval_handler,
        events=OrchestratorEvents(on_agent_event=_echo_agent_event),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        orchestrator=orchestrator,
    )


def _parse_options(values: tuple[str, ...]) -> dict[str, Any]:
    options: dict[str, Any] = {}
    for value in values:
        key, sep, raw = value.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected key=value, got '{value}'", param_hint="--option")
        options[key.strip()] = raw
    return options


def _run_single(runtime: Runtime, task_input: TaskInput) -> TaskResult:
    task = runtime.orchestrator.create_task(task_input)
    click.echo(f"Task {task.id} ({task.type}, {task.autonomy_level})")
    try:
        return asyncio.run(runtime.orchestrator.run_task(task.id))
    finally:
        runtime.orchestrator.close()


def _echo_result(result: TaskResult) -> None:
    click.echo("")
    click.echo(f"{'PASS' if result.success else 'FAIL'}: {result.summary}")
    if result.error and result.error != result.summary:
        click.echo(f"Error: {result.error}")
    metrics = result.metrics
    click.echo(
        f"Iterations: {metrics.iterations_used}  Tool calls: {metrics.tool_call_count}  "
        f"Files modified: {metrics.files_modified}  Duration: {metrics.duration:.1f}s"
    )
    validation = result.agent_result.validation if result.agent_result else None
    if validation is None:
        return
    for issue in validation.issues:
        location = f" ({issue.file}:{issue.line})" if issue.file else ""
        click.echo(f"[{issue.severity}] {issue.message}{location}")
    for suggestion in validation.suggestions:
        click.echo(f"Suggestion: {suggestion}")


@click.group()
def cli() -> None:
    """TaskForge CLI."""


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if config.project.name == "my-project":
        config.project.name = repo_root.name
    save_config(config_path, config)
    click.echo(f"Initialized TaskForge in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Model: {config.defaults.model}")


@cli.command("run")
@click.argument("role", type=click.Choice(AGENT_ROLES))
@click.argument("description")
@click.option("--title", default=None, help="Short task title (defaults to the description).")
@click.option("--priority", type=click.Choice(TASK_PRIORITIES), default="normal", show_default=True)
@click.option("--file", "files", multiple=True, help="Target file; may be repeated.")
@click.option("--option", "option_values", multiple=True, help="Task option as key=value.")
@click.option("--enable-commit", is_flag=True, default=False)
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--approve",
    type=click.Choice(["interactive", "auto", "reject"]),
    default="interactive",
    show_default=True,
)
@click.option("--max-iterations", type=int, default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--verbose", is_flag=True, default=False)
def run_command(
    role: str,
    description: str,
    title: str | None,
    priority: str,
    files: tuple[str, ...],
    option_values: tuple[str, ...],
    enable_commit: bool,
    dry_run: bool,
    approve: str,
    max_iterations: int | None,
    config_value: str,
    verbose: bool,
) -> None:
    _configure_logging(verbose)
    options = _parse_options(option_values)
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root,
        _resolve_config_path(repo_root, config_value),
        approval_handler=_approval_handler(approve),
    )
    if enable_commit:
        options["enable_commit"] = True
    if dry_run:
        options["dry_run"] = True
    if max_iterations is not None:
        options["max_iterations"] = max_iterations
    if role == "feature":
        options.setdefault("feature_spec", description)

    task_input = TaskInput(
        type=role,  # type: ignore[arg-type]
        title=title or description[:80],
        description=description,
        priority=priority,  # type: ignore[arg-type]
        target=TaskTarget(files=list(files)) if files else None,
        options=options,
    )
    result = _run_single(runtime, task_input)
    _echo_result(result)
    if not result.success:
        raise SystemExit(1)


@cli.command("qa")
@click.option("--pre-commit", "pre_commit", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--verbose", is_flag=True, default=False)
def qa_command(pre_commit: bool, config_value: str, verbose: bool) -> None:
    _configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root,
        _resolve_config_path(repo_root, config_value),
        approval_handler=create_auto_approve_handler(),
    )
    task_input = TaskInput(
        type="qa",
        title="Pre-commit quality checks" if pre_commit else "Quality checks",
        description="Run type checking, linting, tests and coverage",
        priority="high" if pre_commit else "normal",
        options={"pre_commit": pre_commit},
    )
    result = _run_single(runtime, task_input)

    click.echo("")
    click.echo("QA summary:")
    records = result.agent_result.tools_used if result.agent_result else []
    if not records:
        click.echo("  (no checks were run)")
    for record in records:
        status = "PASS" if record.result.success else "FAIL"
        click.echo(f"  {status} {record.tool_name}")
    passed = result.success and all(record.result.success for record in records)
    click.echo(f"Overall: {'PASS' if passed else 'FAIL'}")
    if pre_commit and not passed:
        raise SystemExit(1)


@cli.command("tools")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def tools_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    registry = runtime.orchestrator.tool_registry
    for category in get_args(ToolCategory):
        tools = registry.get_by_category(category)
        if not tools:
            continue
        click.echo(f"{category}:")
        for tool in tools:
            marker = " (requires approval)" if tool.requires_approval else ""
            click.echo(f"  {tool.name:<18} {tool.description}{marker}")
    runtime.orchestrator.close()
