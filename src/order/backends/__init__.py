from order.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    collect_output,
)
from order.backends.claude import ClaudeCodeBackend
from order.backends.codex import CodexBackend
from order.backends.codex_sdk import CodexSDKBackend
from order.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CodexSDKBackend",
    "ResilientBackend",
    "RetryPolicy",
    "collect_output",
]
