import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from e2e_orchestrator.backends.base import AgentBackend, BackendProcessError
from e2e_orchestrator.errors import AgentOutputError, SpecLoadError
from e2e_orchestrator.scheduler import Task
from e2e_orchestrator.specs import SpecMetadata, TestSpec
from e2e_orchestrator.worker import (
    AgentVerdict,
    TestWorker,
    build_test_prompt,
    parse_agent_result,
)

SPEC_BODY = """\
goal = "Sign up a new user"
start_url = "/signup"
steps = ["Fill email", "Submit"]
success_criteria = ["Welcome banner visible"]
"""


class ScriptedBackend(AgentBackend):
    name = "scripted"

    def __init__(self, chunks: list[str], delay: float = 0.0) -> None:
        self.chunks = chunks
        self.delay = delay
        self.prompts: list[str] = []

    async def execute(self, prompt: str) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        for chunk in self.chunks:
            yield chunk


class BrokenBackend(AgentBackend):
    async def execute(self, prompt: str) -> AsyncIterator[str]:
        _ = prompt
        raise BackendProcessError("CURSOR_API_KEY not set", backend="fake", retriable=False)
        yield ""  # pragma: no cover


def _spec_task(tmp_path: Path, body: str = SPEC_BODY, name: str = "signup") -> Task:
    path = tmp_path / f"{name}.spec.toml"
    path.write_text(body, encoding="utf-8")
    return Task(id=name, payload=path)


def _run(worker: TestWorker, task: Task):
    return asyncio.run(worker.run(task))


def test_prompt_contains_spec_sections() -> None:
    spec = TestSpec(
        path=Path("x.spec.toml"),
        goal="Check out a cart",
        start_url="/cart",
        steps=["Click checkout", "Pay"],
        success_criteria=["Order number shown"],
    )

    prompt = build_test_prompt(spec, "http://localhost:4000/")

    assert "**Goal:** Check out a cart" in prompt
    assert "**Start URL:** http://localhost:4000/cart" in prompt
    assert "1. Click checkout\n2. Pay" in prompt
    assert "- Order number shown" in prompt
    assert "bunx agent-browser" in prompt
    assert "final line of output must be exactly one JSON object" in prompt


def test_prompt_handles_empty_steps_and_criteria() -> None:
    spec = TestSpec(path=Path("x"), goal="Smoke", start_url="/", metadata=SpecMetadata())

    prompt = build_test_prompt(spec, "http://app")

    assert "(no explicit steps; achieve the goal)" in prompt
    assert "- The goal is achieved" in prompt


def test_parse_agent_result_reads_final_line() -> None:
    output = (
        "Opened the page\nClicked submit\n"
        '{"success": true, "stepsCompleted": ["opened page", "clicked submit"]}\n\n'
    )

    verdict = parse_agent_result(output)

    assert verdict == AgentVerdict(
        success=True, error=None, steps_completed=("opened page", "clicked submit")
    )


def test_parse_agent_result_failure_verdict() -> None:
    verdict = parse_agent_result('{"success": false, "error": "Banner missing"}')

    assert verdict.success is False
    assert verdict.error == "Banner missing"
    assert verdict.steps_completed is None


@pytest.mark.parametrize(
    "output",
    [
        "",
        "   \n  ",
        'Here is the result: {"success": true}',
        '{"success": true}\nDone!',
        "```json\n{\"success\": true}\n```",
        '["success"]',
        '{"success": "yes"}',
        '{"success": false, "error": 42}',
        '{"success": true, "stepsCompleted": "all"}',
    ],
)
def test_parse_agent_result_rejects_malformed_output(output: str) -> None:
    with pytest.raises(AgentOutputError) as excinfo:
        parse_agent_result(output)

    assert excinfo.value.retriable is False


def test_worker_passes_on_success_verdict(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    backend = ScriptedBackend(["Working...\n", '{"success": true, "stepsCompleted": ["a"]}\n'])
    worker = TestWorker(backend, base_url="http://localhost:4000", event_hook=events.append)

    result = _run(worker, _spec_task(tmp_path))

    assert result.status == "passed"
    assert result.spec == "signup"
    assert result.error is None
    assert result.steps_completed == ("a",)
    assert "http://localhost:4000/signup" in backend.prompts[0]
    event_names = [event["event"] for event in events]
    assert event_names == ["worker_start", "worker_prompt", "worker_finish"]
    assert events[-1]["status"] == "passed"


def test_worker_failure_without_message_gets_default_error(tmp_path: Path) -> None:
    worker = TestWorker(ScriptedBackend(['{"success": false}']), base_url="http://app")

    result = _run(worker, _spec_task(tmp_path))

    assert result.status == "failed"
    assert result.error == "Agent reported failure"


def test_worker_timeout_becomes_failed_result(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    worker = TestWorker(
        ScriptedBackend(['{"success": true}'], delay=1.0),
        base_url="http://app",
        timeout_seconds=0.05,
        event_hook=events.append,
    )

    result = _run(worker, _spec_task(tmp_path))

    assert result.status == "failed"
    assert result.error == "Timed out after 0.05s"
    assert result.duration > 0
    assert any(event["event"] == "worker_timeout" for event in events)


def test_spec_timeout_overrides_configured_timeout(tmp_path: Path) -> None:
    body = SPEC_BODY + "\n[metadata]\ntimeout = 0.05\n"
    worker = TestWorker(
        ScriptedBackend(['{"success": true}'], delay=1.0),
        base_url="http://app",
        timeout_seconds=30.0,
    )

    result = _run(worker, _spec_task(tmp_path, body))

    assert result.error == "Timed out after 0.05s"


def test_worker_raises_for_malformed_agent_output(tmp_path: Path) -> None:
    worker = TestWorker(ScriptedBackend(["I think it worked"]), base_url="http://app")

    with pytest.raises(AgentOutputError):
        _run(worker, _spec_task(tmp_path))


def test_worker_raises_for_invalid_spec(tmp_path: Path) -> None:
    backend = ScriptedBackend(['{"success": true}'])
    worker = TestWorker(backend, base_url="http://app")

    with pytest.raises(SpecLoadError, match="missing goal or start_url"):
        _run(worker, _spec_task(tmp_path, 'steps = ["x"]\n'))
    assert backend.prompts == []


def test_worker_propagates_backend_errors(tmp_path: Path) -> None:
    worker = TestWorker(BrokenBackend(), base_url="http://app")

    with pytest.raises(BackendProcessError, match="CURSOR_API_KEY not set"):
        _run(worker, _spec_task(tmp_path))


def test_worker_saves_transcript_when_enabled(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    transcript_dir = tmp_path / "logs"
    worker = TestWorker(
        ScriptedBackend(['{"success": true}']),
        base_url="http://app",
        transcript_dir=transcript_dir,
        event_hook=events.append,
    )

    _run(worker, _spec_task(tmp_path, name="auth-login"))

    saved = list(transcript_dir.glob("auth-login-*.log"))
    assert len(saved) == 1
    content = saved[0].read_text(encoding="utf-8")
    assert "# Prompt" in content
    assert '{"success": true}' in content
    assert any(event["event"] == "worker_transcript" for event in events)


def test_worker_uses_injected_clock_for_duration(tmp_path: Path) -> None:
    ticks = iter([10.0, 12.5])
    worker = TestWorker(
        ScriptedBackend(['{"success": true}']),
        base_url="http://app",
        clock=lambda: next(ticks),
    )

    result = _run(worker, _spec_task(tmp_path))

    assert result.duration == 2.5


def test_transcript_write_failure_keeps_verdict(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    blocker = tmp_path / "logs"
    blocker.write_text("not a directory", encoding="utf-8")
    worker = TestWorker(
        ScriptedBackend(['{"success": true}']),
        base_url="http://app",
        transcript_dir=blocker,
        event_hook=events.append,
    )

    result = _run(worker, _spec_task(tmp_path))

    assert result.status == "passed"
    failures = [event for event in events if event["event"] == "worker_transcript_failed"]
    assert len(failures) == 1
    assert failures[0]["spec"] == "signup"
    assert events[-1]["event"] == "worker_finish"
