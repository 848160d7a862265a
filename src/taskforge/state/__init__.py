from taskforge.state.store import (
    HttpTaskStore,
    InMemoryTaskStore,
    TaskStore,
    TaskStoreError,
    create_task_store,
)
from taskforge.state.task_queue import TaskEvent, TaskFilter, TaskQueue

__all__ = [
    "HttpTaskStore",
    "InMemoryTaskStore",
    "TaskEvent",
    "TaskFilter",
    "TaskQueue",
    "TaskStore",
    "TaskStoreError",
    "create_task_store",
]
