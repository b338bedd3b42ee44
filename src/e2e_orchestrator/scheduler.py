"""Bounded-concurrency work queue for independent test runs.

The scheduler keeps three collections: a pending queue, the set of
in-flight tasks and the completed results. Only the coordinating
coroutine touches them, so no locks are involved. At most
``concurrency_limit`` tasks are in flight; whenever one finishes its slot
is refilled from the head of the queue. A task that raises is recorded as
a failed result and never stops the rest of the run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from e2e_orchestrator.errors import ConfigurationError

logger = logging.getLogger(__name__)

Status = Literal["passed", "failed"]


@dataclass(frozen=True, slots=True)
class TestResult:
    spec: str
    status: Status
    duration: float
    error: str | None = None
    steps_completed: tuple[str, ...] | None = None

    __test__ = False

    @property
    def passed(self) -> bool:
        return self.status == "passed"


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    payload: Any = None


@dataclass(frozen=True, slots=True)
class RunningEntry:
    id: str
    started_at: float


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    completed: int
    total: int
    passed: int
    failed: int
    running: int
    queued: int


@dataclass(frozen=True, slots=True)
class AggregateResult:
    total: int
    passed: int
    failed: int
    results: tuple[TestResult, ...]
    elapsed_seconds: float

    @classmethod
    def from_results(cls, results: Iterable[TestResult], elapsed_seconds: float) -> AggregateResult:
        ordered = tuple(results)
        passed = sum(1 for result in ordered if result.status == "passed")
        return cls(
            total=len(ordered),
            passed=passed,
            failed=len(ordered) - passed,
            results=ordered,
            elapsed_seconds=elapsed_seconds,
        )

    @property
    def success(self) -> bool:
        return self.failed == 0


Executor = Callable[[Task], Awaitable[TestResult]]
ProgressHook = Callable[[ProgressSnapshot], None]


def failed_result(spec: str, error: BaseException | str, duration: float = 0.0) -> TestResult:
    """Build the failed result recorded for a task that raised."""
    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
    else:
        message = error
    return TestResult(spec=spec, status="failed", duration=duration, error=message)


class Scheduler:
    def __init__(
        self,
        concurrency_limit: int,
        *,
        progress_hook: ProgressHook | None = None,
        deadline_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if (
            isinstance(concurrency_limit, bool)
            or not isinstance(concurrency_limit, int)
            or concurrency_limit < 1
        ):
            raise ConfigurationError(
                f"Concurrency limit must be a positive integer, got {concurrency_limit!r}"
            )
        if deadline_seconds is not None and deadline_seconds <= 0:
            raise ConfigurationError(
                f"Run deadline must be greater than zero, got {deadline_seconds!r}"
            )
        self.concurrency_limit = concurrency_limit
        self.progress_hook = progress_hook
        self.deadline_seconds = deadline_seconds
        self.clock = clock
        self._pending: deque[Task] = deque()
        self._running: dict[asyncio.Task[TestResult], RunningEntry] = {}
        self._results: list[TestResult] = []
        self._total = 0
        self._active = False
        self._last_snapshot: ProgressSnapshot | None = None

    @property
    def running_entries(self) -> tuple[RunningEntry, ...]:
        return tuple(self._running.values())

    def snapshot(self) -> ProgressSnapshot:
        passed = sum(1 for result in self._results if result.status == "passed")
        return ProgressSnapshot(
            completed=len(self._results),
            total=self._total,
            passed=passed,
            failed=len(self._results) - passed,
            running=len(self._running),
            queued=len(self._pending),
        )

    def _emit_progress(self) -> None:
        snapshot = self.snapshot()
        if snapshot == self._last_snapshot:
            return
        self._last_snapshot = snapshot
        if self.progress_hook is not None:
            self.progress_hook(snapshot)

    @staticmethod
    async def _invoke(execute: Executor, task: Task) -> TestResult:
        # Calling inside the coroutine turns a synchronous raise into a task error.
        return await execute(task)

    def _admit(self, execute: Executor) -> None:
        while len(self._running) < self.concurrency_limit and self._pending:
            task = self._pending.popleft()
            handle = asyncio.create_task(self._invoke(execute, task), name=f"e2e:{task.id}")
            self._running[handle] = RunningEntry(id=task.id, started_at=self.clock())
            logger.debug("Admitted %s (%d running)", task.id, len(self._running))
            self._emit_progress()

    def _normalize(self, handle: asyncio.Task[TestResult], entry: RunningEntry) -> TestResult:
        if handle.cancelled():
            return failed_result(entry.id, "Cancelled", self.clock() - entry.started_at)
        error = handle.exception()
        if error is not None:
            logger.warning("Test %s raised %s: %s", entry.id, type(error).__name__, error)
            return failed_result(entry.id, error)
        result = handle.result()
        if not isinstance(result, TestResult):
            return failed_result(
                entry.id, f"Executor returned {type(result).__name__} instead of a TestResult"
            )
        return result

    def _complete(self, handle: asyncio.Task[TestResult]) -> None:
        entry = self._running.pop(handle)
        result = self._normalize(handle, entry)
        self._results.append(result)
        logger.debug("Completed %s: %s", entry.id, result.status)
        self._emit_progress()

    async def _expire(self) -> None:
        message = f"Run deadline of {self.deadline_seconds:g}s exceeded"
        logger.warning(
            "%s; stopping %d running and %d queued tests",
            message,
            len(self._running),
            len(self._pending),
        )
        for handle in self._running:
            handle.cancel()
        await asyncio.gather(*self._running, return_exceptions=True)
        for handle in list(self._running):
            entry = self._running.pop(handle)
            if handle.cancelled():
                result = failed_result(entry.id, message, self.clock() - entry.started_at)
            else:
                result = self._normalize(handle, entry)
            self._results.append(result)
            self._emit_progress()
        while self._pending:
            task = self._pending.popleft()
            self._results.append(failed_result(task.id, f"Not started: {message}"))
            self._emit_progress()

    async def _cancel_running(self) -> None:
        for handle in self._running:
            handle.cancel()
        await asyncio.gather(*self._running, return_exceptions=True)
        self._running.clear()

    async def run(self, tasks: Sequence[Task], execute: Executor) -> AggregateResult:
        """Run every task, at most ``concurrency_limit`` at a time."""
        if self._active:
            raise RuntimeError("Scheduler is already running")
        counts = Counter(task.id for task in tasks)
        duplicates = sorted(name for name, count in counts.items() if count > 1)
        if duplicates:
            raise ConfigurationError(f"Duplicate task identifiers: {', '.join(duplicates)}")
        if not tasks:
            return AggregateResult.from_results([], 0.0)

        loop = asyncio.get_running_loop()
        started_at = self.clock()
        deadline = loop.time() + self.deadline_seconds if self.deadline_seconds else None
        self._pending = deque(tasks)
        self._running = {}
        self._results = []
        self._total = len(tasks)
        self._last_snapshot = None
        self._active = True
        try:
            self._emit_progress()
            self._admit(execute)
            while self._running:
                timeout = None if deadline is None else max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    self._running, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    await self._expire()
                    break
                for handle in [item for item in self._running if item in done]:
                    self._complete(handle)
                    self._admit(execute)
        finally:
            if self._running:
                await self._cancel_running()
            self._active = False

        return AggregateResult.from_results(self._results, self.clock() - started_at)
