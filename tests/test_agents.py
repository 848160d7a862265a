import asyncio
from pathlib import Path
from typing import Any

from taskforge.agents import (
    AGENT_TYPES,
    AgentContext,
    DocsAgent,
    FeatureAgent,
    QAAgent,
    RefactorAgent,
    SecurityAgent,
    TestAgent,
    build_agents,
)
from taskforge.agents.base import CONTINUE_PROMPT, MAX_ITERATIONS_SUMMARY, is_test_path
from taskforge.backends.base import Completion, CompletionClient, ToolCall
from taskforge.config import AgentConfig
from taskforge.models import (
    AgentEvent,
    AgentResult,
    FileChange,
    Task,
    TaskTarget,
    ToolResult,
    ToolUseRecord,
)
from taskforge.tools import Tool, ToolRegistry, register_all_tools


class ScriptedClient(CompletionClient):
    def __init__(self, completions: list[Completion]) -> None:
        self.completions = list(completions)
        self.requests: list[dict[str, Any]] = []

    async def complete(self, **kwargs: Any) -> Completion:
        self.requests.append({**kwargs, "messages": list(kwargs["messages"])})
        if not self.completions:
            return Completion(text="", stop_reason="end_turn")
        return self.completions.pop(0)


class ExplodingClient(CompletionClient):
    async def complete(self, **kwargs: Any) -> Completion:
        _ = kwargs
        raise RuntimeError("provider down")


def _task(role: str, **options: Any) -> Task:
    return Task(
        id=f"task-{role}",
        type=role,
        title=f"{role} task",
        description=f"Do the {role} work",
        options=options,
    )


def _context(
    root: Path,
    task: Task,
    tools: dict[str, Tool] | None = None,
    max_iterations: int = 5,
) -> AgentContext:
    config = AgentConfig.default()
    if tools is None:
        registry = register_all_tools(ToolRegistry(), root, config)
        tools = {tool.name: tool for tool in registry.get_all()}
    return AgentContext(
        config=config,
        task=task,
        tools=tools,
        working_directory=root,
        max_iterations=max_iterations,
    )


def _record(name: str, success: bool = True) -> ToolUseRecord:
    result = ToolResult.ok("ok") if success else ToolResult.fail(f"{name} broke")
    return ToolUseRecord(tool_name=name, input={}, result=result)


def test_agent_loop_executes_tools_and_tracks_changes(tmp_path: Path) -> None:
    client = ScriptedClient(
        [
            Completion(
                text="Writing the test",
                tool_calls=[
                    ToolCall(
                        id="call-1",
                        name="write_file",
                        input={"path": "tests/test_x.py", "content": "def test_x():\n    pass\n"},
                    )
                ],
                stop_reason="tool_use",
            ),
            Completion(text="Added tests/test_x.py", stop_reason="end_turn"),
        ]
    )
    agent = TestAgent(client)
    events: list[AgentEvent] = []
    agent.on_event(events.append)
    context = _context(tmp_path, _task("test"))

    result = asyncio.run(agent.execute(context))

    assert result.success is True
    assert result.summary == "Added tests/test_x.py"
    assert result.iterations == 2
    assert result.changes == [
        FileChange(path="tests/test_x.py", type="created", diff=result.changes[0].diff)
    ]
    assert [record.tool_name for record in result.tools_used] == ["write_file"]
    assert (tmp_path / "tests" / "test_x.py").exists()
    assert [event.type for event in events] == [
        "started",
        "iteration_start",
        "thinking",
        "tool_call",
        "tool_result",
        "iteration_start",
        "thinking",
        "completed",
    ]

    second_request = client.requests[1]
    assert second_request["model"] == "gpt-4.1"
    tool_message = second_request["messages"][-1]
    assert tool_message == {
        "role": "tool",
        "tool_call_id": "call-1",
        "content": "Wrote tests/test_x.py",
        "is_error": False,
    }


def test_agent_loop_reports_unknown_tools_without_recording(tmp_path: Path) -> None:
    client = ScriptedClient(
        [
            Completion(
                tool_calls=[ToolCall(id="call-1", name="launch_rockets", input={})],
                stop_reason="tool_use",
            ),
            Completion(text="done"),
        ]
    )
    context = _context(tmp_path, _task("qa"))

    result = asyncio.run(QAAgent(client).execute(context))

    assert result.success is True
    assert result.tools_used == []
    error_message = client.requests[1]["messages"][-1]
    assert error_message["is_error"] is True
    assert error_message["content"] == "Unknown tool: launch_rockets"


def test_agent_loop_turns_tool_exceptions_into_failures(tmp_path: Path) -> None:
    async def _boom(payload: dict[str, Any]) -> ToolResult:
        raise ValueError("disk on fire")

    tools = {"explode": Tool(name="explode", description="Explode", handler=_boom)}
    client = ScriptedClient(
        [
            Completion(tool_calls=[ToolCall(id="c1", name="explode", input={})], stop_reason="tool_use"),
            Completion(text="gave up"),
        ]
    )

    result = asyncio.run(QAAgent(client).execute(_context(tmp_path, _task("qa"), tools)))

    assert result.success is True
    assert result.tools_used[0].result.success is False
    assert result.tools_used[0].result.error == "disk on fire"
    assert client.requests[1]["messages"][-1]["content"] == "disk on fire"


def test_agent_loop_nudges_when_model_stops_early(tmp_path: Path) -> None:
    client = ScriptedClient(
        [
            Completion(text="partial", stop_reason="max_tokens"),
            Completion(text="finished", stop_reason="end_turn"),
        ]
    )

    result = asyncio.run(QAAgent(client).execute(_context(tmp_path, _task("qa"))))

    assert result.success is True
    assert result.iterations == 2
    assert client.requests[1]["messages"][-1] == {"role": "user", "content": CONTINUE_PROMPT}


def test_agent_loop_stops_at_max_iterations(tmp_path: Path) -> None:
    looping = [
        Completion(
            tool_calls=[ToolCall(id=f"c{index}", name="file_exists", input={"path": "x"})],
            stop_reason="tool_use",
        )
        for index in range(5)
    ]
    agent = QAAgent(ScriptedClient(looping))
    events: list[AgentEvent] = []
    agent.on_event(events.append)

    result = asyncio.run(agent.execute(_context(tmp_path, _task("qa"), max_iterations=3)))

    assert result.success is False
    assert result.iterations == 3
    assert result.summary == MAX_ITERATIONS_SUMMARY
    assert result.error == "Exceeded max iterations (3)"
    assert len(result.tools_used) == 3
    assert events[-1].type == "failed"


def test_agent_loop_converts_client_errors_into_failed_results(tmp_path: Path) -> None:
    agent = QAAgent(ExplodingClient())
    events: list[AgentEvent] = []

    async def _async_handler(event: AgentEvent) -> None:
        events.append(event)

    agent.on_event(_async_handler)

    result = asyncio.run(agent.execute(_context(tmp_path, _task("qa"))))

    assert result.success is False
    assert result.summary == "Agent failed: provider down"
    assert result.error == "provider down"
    assert events[-1].type == "failed"


def test_unsubscribed_handlers_stop_receiving_events(tmp_path: Path) -> None:
    agent = QAAgent(ScriptedClient([Completion(text="done")]))
    events: list[AgentEvent] = []
    unsubscribe = agent.on_event(events.append)
    unsubscribe()

    asyncio.run(agent.execute(_context(tmp_path, _task("qa"))))

    assert events == []


def test_registry_of_roles_and_metadata() -> None:
    agents = build_agents(ScriptedClient([]), model="gpt-test")

    assert set(agents) == {"test", "qa", "feature", "refactor", "docs", "security"}
    assert all(isinstance(agents[role], AGENT_TYPES[role]) for role in agents)
    assert agents["qa"].model == "gpt-test"
    assert agents["test"].metadata.autonomy_level == "full"
    assert agents["qa"].capabilities.can_write_files is False
    assert agents["feature"].capabilities.can_commit is True
    assert agents["refactor"].capabilities.can_commit is False
    assert agents["docs"].capabilities.can_execute_commands is False
    assert agents["security"].autonomy_level == "supervised"


def test_test_agent_plan_covers_each_target(tmp_path: Path) -> None:
    task = _task("test")
    task.target = TaskTarget(files=["src/a.py", "src/b.py"])

    plan = TestAgent(ScriptedClient([])).plan_execution(_context(tmp_path, task))

    assert [step.id for step in plan.steps] == [
        "analyze-src/a.py",
        "check-test-src/a.py",
        "analyze-src/b.py",
        "check-test-src/b.py",
        "generate-tests",
        "run-tests",
    ]
    assert plan.estimated_tool_calls == 12
    assert plan.requires_approval is False


def test_test_agent_validation_wants_test_changes() -> None:
    agent = TestAgent(ScriptedClient([]))

    no_tests = agent.validate_result(AgentResult(success=True, summary="done"))
    assert no_tests.valid is True
    assert no_tests.issues[0].message == "No test files were created or modified"

    wrote = agent.validate_result(
        AgentResult(
            success=True,
            summary="done",
            changes=[FileChange(path="tests/test_a.py", type="created")],
        )
    )
    assert wrote.issues == []


def test_qa_agent_plan_and_validation(tmp_path: Path) -> None:
    agent = QAAgent(ScriptedClient([]))
    plan = agent.plan_execution(_context(tmp_path, _task("qa")))

    assert [step.tool_name for step in plan.steps] == [
        "run_type_check",
        "run_lint",
        "run_tests",
        "get_coverage",
    ]
    assert plan.steps[-1].optional is True
    assert plan.requires_approval is False

    validation = agent.validate_result(
        AgentResult(
            success=True,
            summary="done",
            tools_used=[_record("run_lint", success=False), _record("run_tests", success=False)],
        )
    )
    assert [issue.severity for issue in validation.issues] == ["warning", "error"]
    assert validation.valid is False
    assert validation.suggestions == ["Fix the reported issues before committing"]


def test_feature_agent_validation_flags_missing_tests(tmp_path: Path) -> None:
    agent = FeatureAgent(ScriptedClient([]))
    plan = agent.plan_execution(_context(tmp_path, _task("feature")))
    assert len(plan.steps) == 6
    assert plan.estimated_tool_calls == 18
    assert plan.requires_approval is True

    source_only = agent.validate_result(
        AgentResult(
            success=True,
            summary="done",
            changes=[FileChange(path="src/app/login.py", type="created")],
        )
    )
    assert source_only.valid is True
    assert "Consider adding tests for the new feature" in source_only.suggestions

    tests_only = agent.validate_result(
        AgentResult(
            success=True,
            summary="done",
            changes=[FileChange(path="tests/test_login.py", type="created")],
        )
    )
    assert tests_only.issues[0].message == "No source files were created or modified"


def test_refactor_agent_demands_passing_tests_before_and_after(tmp_path: Path) -> None:
    agent = RefactorAgent(ScriptedClient([]))
    task = _task("refactor", refactor_type="extract")
    task.target = TaskTarget(files=["src/big.py"])
    plan = agent.plan_execution(_context(tmp_path, task))

    assert "Perform extract refactoring" in [step.description for step in plan.steps]
    assert "Affects 1 file(s)" in plan.risks
    assert plan.estimated_tool_calls == 16

    single_run = agent.validate_result(
        AgentResult(success=True, summary="done", tools_used=[_record("run_tests")])
    )
    assert single_run.valid is True
    assert single_run.issues[0].severity == "warning"

    broken = agent.validate_result(
        AgentResult(
            success=True,
            summary="done",
            tools_used=[
                _record("run_tests"),
                _record("run_tests", success=False),
                _record("run_type_check", success=False),
            ],
        )
    )
    assert broken.valid is False
    messages = [issue.message for issue in broken.issues]
    assert "Tests failed after refactoring - behavior may have changed" in messages
    assert "Type errors introduced during refactoring" in messages
    assert broken.suggestions


def test_docs_agent_plan_depends_on_doc_type(tmp_path: Path) -> None:
    agent = DocsAgent(ScriptedClient([]))

    api_plan = agent.plan_execution(_context(tmp_path, _task("docs", doc_type="api")))
    changelog_plan = agent.plan_execution(_context(tmp_path, _task("docs", doc_type="changelog")))
    readme_plan = agent.plan_execution(_context(tmp_path, _task("docs")))

    assert "get_exports" in [step.tool_name for step in api_plan.steps]
    assert "git_log" in [step.tool_name for step in changelog_plan.steps]
    assert [step.id for step in readme_plan.steps] == [
        "analyze-structure",
        "read-existing-docs",
        "generate-docs",
    ]
    assert readme_plan.estimated_tool_calls == 9

    validation = agent.validate_result(
        AgentResult(
            success=True,
            summary="done",
            changes=[FileChange(path="src/app.py", type="modified")],
        )
    )
    assert validation.issues[0].message == "No documentation files were created or modified"


def test_security_agent_plan_by_scan_type(tmp_path: Path) -> None:
    agent = SecurityAgent(ScriptedClient([]))

    full = agent.plan_execution(_context(tmp_path, _task("security")))
    secrets = agent.plan_execution(_context(tmp_path, _task("security", scan_type="secrets")))

    assert len(full.steps) == 8
    assert [step.id for step in secrets.steps] == [
        "analyze-structure",
        "scan-secrets",
        "check-env-files",
        "generate-report",
    ]
    assert secrets.steps[-1].depends_on == ["analyze-structure", "scan-secrets", "check-env-files"]
    assert secrets.requires_approval is True

    missing_report = agent.validate_result(AgentResult(success=True, summary="done"))
    assert missing_report.issues[0].message == "No security report was generated"
    with_report = agent.validate_result(
        AgentResult(
            success=True,
            summary="done",
            changes=[FileChange(path="SECURITY_AUDIT.md", type="created")],
        )
    )
    assert with_report.issues == []


def test_prompts_mention_tools_and_options(tmp_path: Path) -> None:
    context = _context(tmp_path, _task("test", coverage_target=90, test_filter="parser"))
    agent = TestAgent(ScriptedClient([]))

    system_prompt = agent.build_system_prompt(context)
    initial_prompt = agent.build_initial_prompt(context)

    assert "read_file" in system_prompt
    assert str(tmp_path) in system_prompt
    assert "90% line coverage" in initial_prompt
    assert "parser" in initial_prompt
    assert "pre-commit mode" in QAAgent(ScriptedClient([])).build_initial_prompt(
        _context(tmp_path, _task("qa", pre_commit=True))
    )


def test_is_test_path() -> None:
    assert is_test_path("tests/test_a.py")
    assert is_test_path("pkg/a_test.py")
    assert is_test_path("conftest.py")
    assert not is_test_path("src/testing_utils.py")
