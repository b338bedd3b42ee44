from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from e2e_orchestrator.errors import ExecutionError


class BackendExecutionError(ExecutionError):
    """Raised when a backend process execution fails."""


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


# Agent stream-json events carry whole tool results on one line.
STREAM_LIMIT = 16 * 1024 * 1024
MAX_BUFFERED_LINES = 50


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def execute(self, prompt: str) -> AsyncIterator[str]:
        """Run the agent on a prompt and stream textual output."""


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def _decode_object(raw: str) -> dict[str, Any] | None:
    try:
        event = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


class JsonLineDecoder:
    """Decodes newline-delimited JSON, joining objects split across lines.

    A line that decodes on its own ends any pending partial object, and the
    buffer is given up as noise after ``max_lines`` continuation lines.
    """

    def __init__(self, max_lines: int = MAX_BUFFERED_LINES) -> None:
        self.buffer = ""
        self.max_lines = max_lines
        self._buffered_lines = 0

    def feed(self, line: str) -> tuple[dict[str, Any] | None, str | None]:
        """Return ``(event, noise)``; either may be ``None``, both are while buffering."""
        if self.buffer:
            event = _decode_object(line)
            if event is not None:
                return event, self.flush()
            candidate = f"{self.buffer}{line}"
        else:
            candidate = line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if appears_partial_json(candidate) and self._buffered_lines < self.max_lines:
                self.buffer = candidate
                self._buffered_lines += 1
                return None, None
            self.flush()
            return None, candidate
        self.flush()
        if not isinstance(event, dict):
            return None, candidate
        return event, None

    def flush(self) -> str:
        remaining, self.buffer = self.buffer, ""
        self._buffered_lines = 0
        return remaining
