from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from taskforge.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    Completion,
    CompletionClient,
)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0


class ResilientCompletionClient(CompletionClient):
    """Wraps primary/fallback completion clients with timeout, retry, and failover."""

    def __init__(
        self,
        primary_name: str,
        primary_client: CompletionClient,
        fallback_name: str,
        fallback_client: CompletionClient,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_client = primary_client
        self.fallback_name = fallback_name
        self.fallback_client = fallback_client
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempts(self) -> list[tuple[str, CompletionClient]]:
        attempts: list[tuple[str, CompletionClient]] = [(self.primary_name, self.primary_client)]
        if self.fallback_name != self.primary_name or self.fallback_client is not self.primary_client:
            attempts.append((self.fallback_name, self.fallback_client))
        return attempts

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
        errors: list[str] = []
        for backend_name, client in self._attempts():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    completion = await asyncio.wait_for(
                        client.complete(
                            system_prompt=system_prompt,
                            messages=messages,
                            tools=tools,
                            model=model,
                            max_tokens=max_tokens,
                            temperature=temperature,
                        ),
                        timeout=self.retry_policy.timeout_seconds,
                    )
                except TimeoutError:
                    error = BackendTimeoutError(
                        "Completion request timed out after "
                        f"{self.retry_policy.timeout_seconds:.1f}s",
                        backend=backend_name,
                    )
                    errors.append(f"{backend_name}[{attempt}]: {error}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(error),
                            "retriable": True,
                        }
                    )
                    continue
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue

                if client is not self.primary_client:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                return completion

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All completion attempts failed. {summary}",
            retriable=False,
        )
