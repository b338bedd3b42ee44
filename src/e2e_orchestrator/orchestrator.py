from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from e2e_orchestrator.config import OrchestratorConfig
from e2e_orchestrator.errors import DiscoveryError
from e2e_orchestrator.report import generate_report, write_report
from e2e_orchestrator.scheduler import (
    AggregateResult,
    ProgressHook,
    Scheduler,
    Task,
    TestResult,
)
from e2e_orchestrator.specs import discover_specs, spec_name
from e2e_orchestrator.worker import TestWorker

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunOutcome:
    aggregate: AggregateResult
    report_path: Path


def _resolve(project_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = project_root / path
    return path.resolve()


class Orchestrator:
    def __init__(
        self,
        config: OrchestratorConfig,
        worker: TestWorker,
        *,
        project_root: Path,
        progress_hook: ProgressHook | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.config = config
        self.worker = worker
        self.project_root = project_root.resolve()
        self.progress_hook = progress_hook
        self.now = now

    @property
    def specs_dir(self) -> Path:
        return _resolve(self.project_root, self.config.run.specs_dir)

    @property
    def report_dir(self) -> Path:
        return _resolve(self.project_root, self.config.run.report_dir)

    def discover_tasks(self) -> list[Task]:
        specs_dir = self.specs_dir
        paths = discover_specs(specs_dir)
        if not paths:
            raise DiscoveryError(f"No test specs found in {self.config.run.specs_dir}")
        return [Task(id=spec_name(path, specs_dir), payload=path) for path in paths]

    def build_scheduler(self) -> Scheduler:
        return Scheduler(
            self.config.run.max_workers,
            progress_hook=self.progress_hook,
            deadline_seconds=self.config.deadline_seconds,
        )

    async def run(self, tasks: list[Task] | None = None) -> RunOutcome:
        """Run every discovered spec and write the Markdown report."""
        scheduler = self.build_scheduler()
        if tasks is None:
            tasks = self.discover_tasks()
        logger.info(
            "Running %d specs with max %d workers", len(tasks), scheduler.concurrency_limit
        )
        aggregate = await scheduler.run(tasks, self.worker.run)
        generated_at = self.now()
        report_path = write_report(
            self.report_dir,
            generate_report(aggregate, generated_at),
            now=generated_at,
        )
        logger.info(
            "Run finished: %d passed, %d failed; report at %s",
            aggregate.passed,
            aggregate.failed,
            report_path,
        )
        return RunOutcome(aggregate=aggregate, report_path=report_path)

    async def run_single(self, spec_path: Path) -> TestResult:
        """Run one spec without writing a report."""
        path = _resolve(self.project_root, str(spec_path))
        task = Task(id=spec_name(path, self.specs_dir), payload=path)
        scheduler = Scheduler(1, progress_hook=self.progress_hook)
        aggregate = await scheduler.run([task], self.worker.run)
        return aggregate.results[0]
