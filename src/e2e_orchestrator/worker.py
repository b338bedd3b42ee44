from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from e2e_orchestrator.backends.base import AgentBackend, BackendTimeoutError
from e2e_orchestrator.errors import AgentOutputError
from e2e_orchestrator.scheduler import Task, TestResult
from e2e_orchestrator.specs import TestSpec, load_spec

DEFAULT_FAILURE_MESSAGE = "Agent reported failure"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AgentVerdict:
    success: bool
    error: str | None = None
    steps_completed: tuple[str, ...] | None = None


def build_test_prompt(spec: TestSpec, base_url: str) -> str:
    steps = "\n".join(f"{index}. {step}" for index, step in enumerate(spec.steps, start=1))
    criteria = "\n".join(f"- {criterion}" for criterion in spec.success_criteria)
    steps = steps or "(no explicit steps; achieve the goal)"
    criteria = criteria or "- The goal is achieved"
    start_url = f"{base_url.rstrip('/')}{spec.start_url}"
    return f"""You are an E2E test runner. Run the following test using agent-browser CLI.

## Test Details
- **Goal:** {spec.goal}
- **Start URL:** {start_url}

## Steps to Execute
{steps}

## Success Criteria
{criteria}

## Browser Automation

Use `bunx agent-browser` for web automation. Run `bunx agent-browser --help` for all commands.

Core workflow:
1. `bunx agent-browser open <url>` - Navigate to page
2. `bunx agent-browser snapshot -i` - Get interactive elements with refs (@e1, @e2)
3. `bunx agent-browser click @e1` / `fill @e2 "text"` - Interact using refs
4. Re-snapshot after page changes

## Response Format
When finished, your final line of output must be exactly one JSON object on a single
line (no markdown, nothing after it):
{{"success": true | false, "error": "description if failed (omit if success)", \
"stepsCompleted": ["opened page", "clicked book button", ...]}}

Run the test now."""


def parse_agent_result(output: str) -> AgentVerdict:
    """Parse the result record the agent must print as its final line."""
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        raise AgentOutputError("Agent produced no output", retriable=False)
    last_line = lines[-1]
    try:
        payload = json.loads(last_line)
    except json.JSONDecodeError as exc:
        raise AgentOutputError(
            f"Agent output did not end with a JSON result line: {last_line[:200]!r}",
            retriable=False,
        ) from exc
    if not isinstance(payload, dict):
        raise AgentOutputError("Agent result line must be a JSON object", retriable=False)

    success = payload.get("success")
    if not isinstance(success, bool):
        raise AgentOutputError("Agent result 'success' must be a boolean", retriable=False)
    error = payload.get("error")
    if error is not None and not isinstance(error, str):
        raise AgentOutputError("Agent result 'error' must be a string", retriable=False)
    steps = payload.get("stepsCompleted")
    if steps is not None and (
        not isinstance(steps, list) or not all(isinstance(step, str) for step in steps)
    ):
        raise AgentOutputError(
            "Agent result 'stepsCompleted' must be a list of strings", retriable=False
        )
    return AgentVerdict(
        success=success,
        error=error,
        steps_completed=tuple(steps) if steps is not None else None,
    )


class TestWorker:
    """Runs one spec through an agent backend and turns the verdict into a result.

    Timeouts resolve to a failed result. Spec load errors, backend failures
    and malformed agent output are raised for the scheduler to record.
    """

    __test__ = False

    def __init__(
        self,
        backend: AgentBackend,
        *,
        base_url: str,
        timeout_seconds: float = 300.0,
        transcript_dir: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.transcript_dir = transcript_dir
        self.event_hook = event_hook
        self.clock = clock

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def _collect_output(self, prompt: str, timeout: float) -> str:
        async def _consume() -> str:
            chunks: list[str] = []
            async for chunk in self.backend.execute(prompt):
                chunks.append(chunk)
            return "".join(chunks)

        try:
            return await asyncio.wait_for(_consume(), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Timed out after {timeout:g}s",
                backend=self.backend.name,
                retriable=True,
            ) from exc

    def _save_transcript(self, spec: str, prompt: str, output: str) -> Path | None:
        if self.transcript_dir is None:
            return None
        self.transcript_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        safe_name = _UNSAFE_FILENAME_CHARS.sub("_", spec)
        path = self.transcript_dir / f"{safe_name}-{stamp}.log"
        path.write_text(f"# Prompt\n\n{prompt}\n\n# Output\n\n{output}\n", encoding="utf-8")
        return path

    async def run(self, task: Task) -> TestResult:
        started = self.clock()
        spec_path = Path(task.payload) if task.payload is not None else Path(task.id)
        self._emit({"event": "worker_start", "spec": task.id})
        spec = load_spec(spec_path)
        prompt = build_test_prompt(spec, self.base_url)
        self._emit({"event": "worker_prompt", "spec": task.id, "prompt_chars": len(prompt)})

        timeout = spec.metadata.timeout_seconds or self.timeout_seconds
        try:
            output = await self._collect_output(prompt, timeout)
        except BackendTimeoutError as exc:
            duration = self.clock() - started
            self._emit({"event": "worker_timeout", "spec": task.id, "timeout_seconds": timeout})
            return TestResult(spec=task.id, status="failed", duration=duration, error=str(exc))

        try:
            transcript = self._save_transcript(task.id, prompt, output)
        except OSError as exc:
            logger.warning("Could not save transcript for %s: %s", task.id, exc)
            self._emit({"event": "worker_transcript_failed", "spec": task.id, "error": str(exc)})
        else:
            if transcript is not None:
                self._emit(
                    {"event": "worker_transcript", "spec": task.id, "path": str(transcript)}
                )
        verdict = parse_agent_result(output)
        duration = self.clock() - started
        status = "passed" if verdict.success else "failed"
        error = verdict.error
        if not verdict.success and not error:
            error = DEFAULT_FAILURE_MESSAGE
        self._emit(
            {
                "event": "worker_finish",
                "spec": task.id,
                "status": status,
                "duration_seconds": round(duration, 3),
            }
        )
        return TestResult(
            spec=task.id,
            status=status,
            duration=duration,
            error=error,
            steps_completed=verdict.steps_completed,
        )
