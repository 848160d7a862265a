import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest

from taskforge.backends import (
    BackendExecutionError,
    Completion,
    CompletionClient,
    OpenAIChatClient,
    ResilientCompletionClient,
    RetryPolicy,
    ToolCall,
)


class AlwaysFailClient(CompletionClient):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def complete(self, **kwargs: Any) -> Completion:
        _ = kwargs
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)


class SuccessClient(CompletionClient):
    def __init__(self) -> None:
        self.calls = 0

    async def complete(self, **kwargs: Any) -> Completion:
        _ = kwargs
        self.calls += 1
        return Completion(text="ok")


class SlowClient(CompletionClient):
    async def complete(self, **kwargs: Any) -> Completion:
        _ = kwargs
        await asyncio.sleep(1.0)
        return Completion(text="late")


def _complete(client: CompletionClient) -> Completion:
    return asyncio.run(
        client.complete(
            system_prompt="system",
            messages=[{"role": "user", "content": "hi"}],
            tools=[],
            model="gpt-test",
            max_tokens=128,
            temperature=0.0,
        )
    )


def test_resilient_client_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailClient()
    fallback = SuccessClient()
    client = ResilientCompletionClient(
        primary_name="primary",
        primary_client=primary,
        fallback_name="fallback",
        fallback_client=fallback,
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    completion = _complete(client)

    assert completion.text == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert event_names.count("backend_attempt_failed") == 2
    assert "backend_retry" in event_names
    assert event_names[-1] == "backend_fallback_success"


def test_resilient_client_skips_retries_for_non_retriable_errors() -> None:
    primary = AlwaysFailClient(retriable=False)
    fallback = SuccessClient()
    client = ResilientCompletionClient(
        primary_name="primary",
        primary_client=primary,
        fallback_name="fallback",
        fallback_client=fallback,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    assert _complete(client).text == "ok"
    assert primary.calls == 1
    assert fallback.calls == 1


def test_resilient_client_does_not_repeat_identical_fallback() -> None:
    primary = AlwaysFailClient()
    client = ResilientCompletionClient(
        primary_name="openai",
        primary_client=primary,
        fallback_name="openai",
        fallback_client=primary,
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError, match="All completion attempts failed") as excinfo:
        _complete(client)

    assert excinfo.value.retriable is False
    assert primary.calls == 1


def test_resilient_client_reports_timeouts() -> None:
    events: list[dict[str, Any]] = []
    client = ResilientCompletionClient(
        primary_name="slow",
        primary_client=SlowClient(),
        fallback_name="fallback",
        fallback_client=SuccessClient(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.01),
        event_hook=events.append,
    )

    assert _complete(client).text == "ok"
    assert "timed out" in events[0]["error"]


class FakeCompletions:
    def __init__(self, response: Any = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.requests: list[dict[str, Any]] = []

    def create(self, **request: Any) -> Any:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


def _fake_openai(completions: FakeCompletions) -> Any:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _response(content: str | None, tool_calls: list[Any] | None, finish_reason: str) -> Any:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=5),
    )


def test_openai_client_maps_tool_calls_and_messages() -> None:
    call = SimpleNamespace(
        id="call_1",
        function=SimpleNamespace(name="read_file", arguments=json.dumps({"path": "a.py"})),
    )
    completions = FakeCompletions(_response(None, [call], "tool_calls"))
    client = OpenAIChatClient(client=_fake_openai(completions))

    completion = asyncio.run(
        client.complete(
            system_prompt="be helpful",
            messages=[
                {"role": "user", "content": "read a.py"},
                {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [{"id": "call_0", "name": "list_files", "input": {}}],
                },
                {"role": "tool", "tool_call_id": "call_0", "content": "nope", "is_error": True},
            ],
            tools=[{"name": "read_file", "description": "Read", "input_schema": {"type": "object"}}],
            model="gpt-test",
            max_tokens=256,
            temperature=0.2,
        )
    )

    assert completion.tool_calls == [ToolCall(id="call_1", name="read_file", input={"path": "a.py"})]
    assert completion.stop_reason == "tool_use"
    assert completion.usage == {"input_tokens": 12, "output_tokens": 5}

    request = completions.requests[0]
    assert request["model"] == "gpt-test"
    assert request["messages"][0] == {"role": "system", "content": "be helpful"}
    assistant = request["messages"][2]
    assert assistant["tool_calls"][0]["function"]["name"] == "list_files"
    assert request["messages"][3]["content"] == "Error: nope"
    assert request["tools"][0]["function"]["name"] == "read_file"


def test_openai_client_omits_empty_tools_and_maps_length() -> None:
    completions = FakeCompletions(_response("partial", None, "length"))
    client = OpenAIChatClient(client=_fake_openai(completions))

    completion = _complete(client)

    assert completion.text == "partial"
    assert completion.stop_reason == "max_tokens"
    assert "tools" not in completions.requests[0]


def test_openai_client_wraps_sdk_errors() -> None:
    error = RuntimeError("bad request")
    error.status_code = 400  # type: ignore[attr-defined]
    client = OpenAIChatClient(client=_fake_openai(FakeCompletions(error=error)))

    with pytest.raises(BackendExecutionError) as excinfo:
        _complete(client)

    assert excinfo.value.status_code == 400
    assert excinfo.value.retriable is False
    assert excinfo.value.backend == "openai"


def test_openai_client_is_built_on_first_request(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    client = OpenAIChatClient()

    assert client.name == "openai"
