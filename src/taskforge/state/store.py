from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from taskforge.config import PersistenceConfig
from taskforge.models import AgentEvent, Task, TaskResult, TaskStatus

logger = logging.getLogger("taskforge.store")


class TaskStoreError(RuntimeError):
    """Raised when a task store request fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TaskStore(ABC):
    """Minimal persistence contract consumed by the orchestrator."""

    @abstractmethod
    def create_task(self, task: Task) -> None:
        """Persist a newly created task."""

    @abstractmethod
    def update_status(self, task_id: str, status: TaskStatus) -> None:
        """Persist a status transition."""

    @abstractmethod
    def record_result(self, task_id: str, result: TaskResult) -> None:
        """Attach the final result to a task."""

    @abstractmethod
    def record_event(self, task_id: str, event: AgentEvent) -> None:
        """Append an agent event to a task's event log."""

    @abstractmethod
    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Return the stored task payload, or None when unknown."""

    @abstractmethod
    def get_task_events(self, task_id: str) -> list[dict[str, Any]]:
        """Return the stored events for a task, oldest first."""

    @abstractmethod
    def get_recent_tasks(self, limit: int = 10) -> list[dict[str, Any]]:
        """Return the most recently created tasks, newest first."""

    def close(self) -> None:
        return None


class InMemoryTaskStore(TaskStore):
    def __init__(self) -> None:
        self._tasks: dict[str, dict[str, Any]] = {}
        self._events: dict[str, list[dict[str, Any]]] = {}

    def create_task(self, task: Task) -> None:
        self._tasks[task.id] = task.to_dict()
        self._events.setdefault(task.id, [])

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        payload = self._tasks.get(task_id)
        if payload is not None:
            payload["status"] = status

    def record_result(self, task_id: str, result: TaskResult) -> None:
        payload = self._tasks.get(task_id)
        if payload is not None:
            payload["result"] = result.to_dict()
            payload["completed_at"] = time.time()

    def record_event(self, task_id: str, event: AgentEvent) -> None:
        self._events.setdefault(task_id, []).append(event.to_dict())

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        payload = self._tasks.get(task_id)
        return dict(payload) if payload is not None else None

    def get_task_events(self, task_id: str) -> list[dict[str, Any]]:
        return list(self._events.get(task_id, []))

    def get_recent_tasks(self, limit: int = 10) -> list[dict[str, Any]]:
        ordered = sorted(
            self._tasks.values(),
            key=lambda payload: payload.get("created_at", 0.0),
            reverse=True,
        )
        return [dict(payload) for payload in ordered[:limit]]


class HttpTaskStore(TaskStore):
    """Task store backed by a remote JSON API under ``/api/agent/tasks``."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, json=json, params=params)
        except httpx.RequestError as exc:
            raise TaskStoreError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise TaskStoreError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
        return response

    def create_task(self, task: Task) -> None:
        self._request("POST", "/api/agent/tasks", json=task.to_dict())

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        self._request("PATCH", f"/api/agent/tasks/{task_id}/status", json={"status": status})

    def record_result(self, task_id: str, result: TaskResult) -> None:
        self._request("POST", f"/api/agent/tasks/{task_id}/result", json=result.to_dict())

    def record_event(self, task_id: str, event: AgentEvent) -> None:
        self._request("POST", f"/api/agent/tasks/{task_id}/events", json=event.to_dict())

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        try:
            response = self._request("GET", f"/api/agent/tasks/{task_id}")
        except TaskStoreError as exc:
            if exc.status_code == 404:
                return None
            raise
        return response.json()

    def get_task_events(self, task_id: str) -> list[dict[str, Any]]:
        return self._request("GET", f"/api/agent/tasks/{task_id}/events").json()

    def get_recent_tasks(self, limit: int = 10) -> list[dict[str, Any]]:
        return self._request("GET", "/api/agent/tasks", params={"limit": limit}).json()

    def close(self) -> None:
        self._client.close()


def create_task_store(
    config: PersistenceConfig,
    *,
    transport: httpx.BaseTransport | None = None,
) -> TaskStore:
    if config.backend == "memory":
        return InMemoryTaskStore()
    if config.backend == "http":
        if not config.base_url:
            raise TaskStoreError("persistence.base_url is required for the http task store")
        api_key = os.environ.get(config.api_key_env) if config.api_key_env else None
        logger.info("Using HTTP task store at %s", config.base_url)
        return HttpTaskStore(
            config.base_url,
            api_key,
            timeout=config.timeout_seconds,
            transport=transport,
        )
    raise TaskStoreError(f"Unsupported persistence backend: {config.backend}")
