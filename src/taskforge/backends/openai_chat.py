from __future__ import annotations

import asyncio
import json
from typing import Any

from openai import OpenAI

from taskforge.backends.base import (
    BackendExecutionError,
    Completion,
    CompletionClient,
    StopReason,
    ToolCall,
)

FINISH_REASONS: dict[str, StopReason] = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}


def _to_openai_messages(system_prompt: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for message in messages:
        role = message["role"]
        if role == "tool":
            content = message.get("content", "")
            if message.get("is_error"):
                content = f"Error: {content}"
            converted.append(
                {"role": "tool", "tool_call_id": message["tool_call_id"], "content": content}
            )
        elif role == "assistant" and message.get("tool_calls"):
            converted.append(
                {
                    "role": "assistant",
                    "content": message.get("content") or None,
                    "tool_calls": [
                        {
                            "id": call["id"],
                            "type": "function",
                            "function": {
                                "name": call["name"],
                                "arguments": json.dumps(call.get("input") or {}),
                            },
                        }
                        for call in message["tool_calls"]
                    ],
                }
            )
        else:
            converted.append({"role": role, "content": message.get("content", "")})
    return converted


def _to_openai_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
            },
        }
        for tool in tools
    ]


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw_arguments": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class OpenAIChatClient(CompletionClient):
    """Chat Completions backend on the official ``openai`` SDK."""

    name = "openai"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url or None
        self._client = client

    def _get_client(self) -> Any:
        # OpenAI() raises without a key, so build it on first request.
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def complete(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        request: dict[str, Any] = {
            "model": model,
            "messages": _to_openai_messages(system_prompt, messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if tools:
            request["tools"] = _to_openai_tools(tools)

        def _request() -> Any:
            return self._get_client().chat.completions.create(**request)

        try:
            response = await asyncio.to_thread(_request)
        except Exception as exc:
            status_code = getattr(exc, "status_code", None)
            retriable = status_code is None or status_code == 429 or status_code >= 500
            raise BackendExecutionError(
                f"OpenAI completion failed: {exc}",
                backend=self.name,
                status_code=status_code,
                retriable=retriable,
            ) from exc

        if not response.choices:
            raise BackendExecutionError("OpenAI returned no choices", backend=self.name)
        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                input=_parse_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        ]
        stop_reason = FINISH_REASONS.get(choice.finish_reason or "stop", "end_turn")
        if tool_calls:
            stop_reason = "tool_use"
        usage = getattr(response, "usage", None)
        return Completion(
            text=message.content or "",
            tool_calls=tool_calls,
            stop_reason=stop_reason,
            usage={
                "input_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "output_tokens": getattr(usage, "completion_tokens", 0) or 0,
            },
        )
