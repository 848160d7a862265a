from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

BackendName = Literal["openai"]
PersistenceBackendName = Literal["memory", "http"]

DEFAULT_CONFIG_FILE = "taskforge.toml"


def _default_autonomy_map() -> dict[str, str]:
    return {
        "test": "full",
        "qa": "full",
        "feature": "supervised",
        "refactor": "supervised",
        "docs": "supervised",
        "security": "supervised",
    }


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    src_dir: str = "src"
    tests_dir: str = "tests"
    exclude_patterns: list[str] = field(
        default_factory=lambda: [".git", "__pycache__", ".venv", "node_modules", "dist", "build"]
    )
    convention_docs: list[str] = field(default_factory=list)
    test_command: str = "pytest -q"
    lint_command: str = "ruff check ."
    type_check_command: str = "python -m compileall -q src"
    coverage_command: str = "pytest -q --cov --cov-report=term"


@dataclass(slots=True)
class DefaultsConfig:
    model: str = "gpt-4.1"
    max_iterations: int = 10
    temperature: float = 0.0
    max_tokens: int = 8192


@dataclass(slots=True)
class AutonomyConfig:
    task_types: dict[str, str] = field(default_factory=_default_autonomy_map)
    max_auto_approvals: int = 10
    require_approval_for_destructive: bool = True


@dataclass(slots=True)
class CoverageThreshold:
    lines: int = 80
    branches: int = 70
    functions: int = 80


@dataclass(slots=True)
class TestingConfig:
    framework: str = "pytest"
    coverage_threshold: CoverageThreshold = field(default_factory=CoverageThreshold)
    test_pattern: str = "test_*.py"


@dataclass(slots=True)
class SchedulerConfig:
    max_concurrent: int = 1
    cooldown_seconds: float = 1.0
    poll_interval_seconds: float = 0.1
    type_weights: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "openai"
    fallback: BackendName = "openai"
    base_url: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class PersistenceConfig:
    backend: PersistenceBackendName = "memory"
    base_url: str = ""
    api_key_env: str = "TASKFORGE_API_KEY"
    timeout_seconds: float = 15.0


@dataclass(slots=True)
class AgentConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    autonomy: AutonomyConfig = field(default_factory=AutonomyConfig)
    testing: TestingConfig = field(default_factory=TestingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    @classmethod
    def default(cls) -> AgentConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AgentConfig:
        autonomy = dict(data.get("autonomy", {}))
        task_types = _default_autonomy_map()
        task_types.update(autonomy.pop("task_types", {}))
        testing = dict(data.get("testing", {}))
        threshold = CoverageThreshold(**testing.pop("coverage_threshold", {}))
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            defaults=DefaultsConfig(**data.get("defaults", {})),
            autonomy=AutonomyConfig(task_types=task_types, **autonomy),
            testing=TestingConfig(coverage_threshold=threshold, **testing),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            backend=BackendConfig(**data.get("backend", {})),
            persistence=PersistenceConfig(**data.get("persistence", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "src_dir": self.project.src_dir,
                "tests_dir": self.project.tests_dir,
                "exclude_patterns": list(self.project.exclude_patterns),
                "convention_docs": list(self.project.convention_docs),
                "test_command": self.project.test_command,
                "lint_command": self.project.lint_command,
                "type_check_command": self.project.type_check_command,
                "coverage_command": self.project.coverage_command,
            },
            "defaults": {
                "model": self.defaults.model,
                "max_iterations": self.defaults.max_iterations,
                "temperature": self.defaults.temperature,
                "max_tokens": self.defaults.max_tokens,
            },
            "autonomy": {
                "task_types": dict(self.autonomy.task_types),
                "max_auto_approvals": self.autonomy.max_auto_approvals,
                "require_approval_for_destructive": self.autonomy.require_approval_for_destructive,
            },
            "testing": {
                "framework": self.testing.framework,
                "coverage_threshold": {
                    "lines": self.testing.coverage_threshold.lines,
                    "branches": self.testing.coverage_threshold.branches,
                    "functions": self.testing.coverage_threshold.functions,
                },
                "test_pattern": self.testing.test_pattern,
            },
            "scheduler": {
                "max_concurrent": self.scheduler.max_concurrent,
                "cooldown_seconds": self.scheduler.cooldown_seconds,
                "poll_interval_seconds": self.scheduler.poll_interval_seconds,
                "type_weights": dict(self.scheduler.type_weights),
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "base_url": self.backend.base_url,
                "api_key_env": self.backend.api_key_env,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "persistence": {
                "backend": self.persistence.backend,
                "base_url": self.persistence.base_url,
                "api_key_env": self.persistence.api_key_env,
                "timeout_seconds": self.persistence.timeout_seconds,
            },
        }


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        pairs = ", ".join(f"{key} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + pairs + " }" if pairs else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AgentConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "project",
        "defaults",
        "autonomy",
        "testing",
        "scheduler",
        "backend",
        "persistence",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AgentConfig:
    if not path.exists():
        return AgentConfig.default()
    return AgentConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AgentConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
