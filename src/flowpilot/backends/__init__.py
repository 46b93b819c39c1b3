from flowpilot.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from flowpilot.backends.claude import ClaudeCodeBackend
from flowpilot.backends.codex import CodexBackend
from flowpilot.backends.codex_sdk import CodexSDKBackend
from flowpilot.backends.resilient import ResilientBackend, RetryPolicy

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
]
