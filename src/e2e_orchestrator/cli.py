from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from e2e_orchestrator.backends import AgentBackend, ClaudeCodeBackend, CursorAgentBackend
from e2e_orchestrator.config import (
    DEFAULT_CONFIG_FILE,
    OrchestratorConfig,
    load_config,
    require_credentials,
    save_config,
)
from e2e_orchestrator.errors import OrchestratorError
from e2e_orchestrator.logging_config import configure_logging
from e2e_orchestrator.orchestrator import Orchestrator
from e2e_orchestrator.progress import ProgressPrinter
from e2e_orchestrator.report import render_summary
from e2e_orchestrator.specs import SPEC_TEMPLATE
from e2e_orchestrator.worker import TestWorker

logger = logging.getLogger("e2e_orchestrator")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
TEMPLATE_NAME = ".template.spec.toml"
EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config: OrchestratorConfig
    backend: AgentBackend
    worker: TestWorker
    orchestrator: Orchestrator


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _format_event(event: dict[str, Any], debug: bool) -> str | None:
    name = event.get("event")
    spec = event.get("spec", "")
    if name == "worker_start":
        return f"Running test: {spec}"
    if name == "worker_finish":
        return f"  {event.get('status')}: {spec} ({event.get('duration_seconds')}s)"
    if name == "worker_timeout":
        return f"  timed out: {spec} after {event.get('timeout_seconds'):g}s"
    if not debug:
        return None
    if name == "worker_prompt":
        return f"  Calling agent for {spec} (prompt length: {event.get('prompt_chars')} chars)"
    if name == "agent_init":
        return f"  Model: {event.get('model')}"
    if name == "agent_tool_call":
        return f"  [{event.get('index')}] {event.get('kind')}: {event.get('detail')}"
    if name == "agent_result":
        return f"  Agent completed in {event.get('duration_seconds', 0)}s"
    if name == "agent_cli_exit" and event.get("stderr"):
        return f"  stderr: {event.get('stderr')}"
    return None


def _event_sink(debug: bool) -> EventHook:
    def _record(event: dict[str, Any]) -> None:
        logger.debug("%s", event.get("event"), extra={"payload": event})
        line = _format_event(event, debug)
        if line is not None:
            click.echo(line)

    return _record


def _build_backend(
    config: OrchestratorConfig, project_root: Path, debug: bool, event_hook: EventHook
) -> AgentBackend:
    if config.agent.backend == "claude":
        return ClaudeCodeBackend(
            binary=config.agent.binary or "claude",
            working_directory=project_root,
            event_hook=event_hook,
        )
    return CursorAgentBackend(
        binary=config.agent.binary or "agent",
        model=config.agent.model,
        working_directory=project_root,
        api_key_env=config.agent.api_key_env,
        debug=debug,
        event_hook=event_hook,
    )


def _load_runtime(
    project_root: Path,
    config_path: Path,
    *,
    overrides: dict[str, dict[str, Any]],
    debug: bool,
) -> Runtime:
    config = load_config(config_path, overrides=overrides, dotenv_path=project_root / ".env")
    require_credentials(config)
    event_hook = _event_sink(debug)
    backend = _build_backend(config, project_root, debug, event_hook)
    transcript_dir = None
    if config.agent.save_logs:
        transcript_dir = _resolve_config_path(project_root, config.run.report_dir) / "logs"
    worker = TestWorker(
        backend,
        base_url=config.run.base_url,
        timeout_seconds=float(config.run.timeout_seconds),
        transcript_dir=transcript_dir,
        event_hook=event_hook,
    )
    orchestrator = Orchestrator(
        config,
        worker,
        project_root=project_root,
        progress_hook=ProgressPrinter(),
    )
    return Runtime(
        project_root=project_root,
        config=config,
        backend=backend,
        worker=worker,
        orchestrator=orchestrator,
    )


@click.group()
def cli() -> None:
    """E2E agent orchestrator: run declarative test specs through an agent."""


@cli.command("run")
@click.argument("spec_path", required=False, type=click.Path(path_type=Path))
@click.option("--debug", is_flag=True, default=False, help="Stream agent activity.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--max-workers", type=int, default=None, help="Maximum parallel tests.")
@click.option("--specs-dir", default=None)
@click.option("--report-dir", default=None)
@click.option("--base-url", default=None)
@click.option("--timeout", "timeout_seconds", type=float, default=None, help="Per-test seconds.")
@click.option("--deadline", "deadline_seconds", type=float, default=None, help="Whole-run seconds.")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.option("--log-json", is_flag=True, default=False)
@click.pass_context
def run_command(
    ctx: click.Context,
    spec_path: Path | None,
    debug: bool,
    config_value: str,
    max_workers: int | None,
    specs_dir: str | None,
    report_dir: str | None,
    base_url: str | None,
    timeout_seconds: float | None,
    deadline_seconds: float | None,
    log_level: str,
    log_json: bool,
) -> None:
    """Run all specs, or only SPEC_PATH when given."""
    configure_logging(log_level, json_output=log_json)
    project_root = Path.cwd().resolve()
    overrides = {
        "run": {
            "max_workers": max_workers,
            "specs_dir": specs_dir,
            "report_dir": report_dir,
            "base_url": base_url,
            "timeout_seconds": timeout_seconds,
            "run_deadline_seconds": deadline_seconds,
        }
    }
    try:
        runtime = _load_runtime(
            project_root,
            _resolve_config_path(project_root, config_value),
            overrides=overrides,
            debug=debug,
        )
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc

    orchestrator = runtime.orchestrator
    if spec_path is not None:
        click.echo("Running single test spec...")
        result = asyncio.run(orchestrator.run_single(spec_path))
        click.echo(f"{result.status}: {result.spec} ({result.duration:.2f}s)")
        if result.error:
            click.echo(f"Error: {result.error}")
        ctx.exit(0 if result.passed else 1)

    click.echo(f"Discovering test specs in {runtime.config.run.specs_dir}...")
    try:
        tasks = orchestrator.discover_tasks()
        plural = "s" if len(tasks) != 1 else ""
        click.echo(f"Found {len(tasks)} test spec{plural}")
        click.echo(f"Running tests with max {runtime.config.run.max_workers} workers...")
        outcome = asyncio.run(orchestrator.run(tasks))
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo("")
    click.echo(f"Report saved to: {outcome.report_path}")
    click.echo("")
    click.echo(render_summary(outcome.aggregate))
    ctx.exit(0 if outcome.aggregate.success else 1)


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(config_value: str) -> None:
    """Create a config file and a spec template."""
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    if config_path.exists():
        click.echo(f"Config file already exists: {config_path}")
    else:
        save_config(config_path, OrchestratorConfig.default())
        click.echo(f"Created config file: {config_path}")

    specs_dir = project_root / OrchestratorConfig.default().run.specs_dir
    specs_dir.mkdir(parents=True, exist_ok=True)
    template_path = specs_dir / TEMPLATE_NAME
    if template_path.exists():
        click.echo(f"Template already exists: {template_path}")
    else:
        template_path.write_text(SPEC_TEMPLATE, encoding="utf-8")
        click.echo(f"Created template: {template_path}")

    click.echo("")
    click.echo("Next steps:")
    click.echo(f"  1. Copy {TEMPLATE_NAME} to <name>.spec.toml and fill it in")
    click.echo("  2. Set CURSOR_API_KEY (or select the claude backend in the config)")
    click.echo("  3. Run: e2e-agent run")
