from taskforge.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    Completion,
    CompletionClient,
    ToolCall,
)
from taskforge.backends.openai_chat import OpenAIChatClient
from taskforge.backends.resilient import ResilientCompletionClient, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendTimeoutError",
    "Completion",
    "CompletionClient",
    "OpenAIChatClient",
    "ResilientCompletionClient",
    "RetryPolicy",
    "ToolCall",
]
