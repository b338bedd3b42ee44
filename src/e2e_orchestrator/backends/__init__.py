from e2e_orchestrator.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from e2e_orchestrator.backends.claude import ClaudeCodeBackend
from e2e_orchestrator.backends.cursor import CursorAgentBackend

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CursorAgentBackend",
]
