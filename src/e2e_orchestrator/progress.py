from __future__ import annotations

from collections.abc import Callable

import click

from e2e_orchestrator.scheduler import ProgressSnapshot


def format_progress(snapshot: ProgressSnapshot) -> str:
    line = (
        f"Progress: {snapshot.completed}/{snapshot.total} completed"
        f" | {snapshot.passed} passed"
        f" | {snapshot.failed} failed"
        f" | {snapshot.running} running"
    )
    if snapshot.queued > 0:
        line += f" | {snapshot.queued} queued"
    return line


class ProgressPrinter:
    """Echoes progress lines, skipping a line identical to the previous one."""

    def __init__(self, echo: Callable[[str], None] = click.echo) -> None:
        self.echo = echo
        self.last_line: str | None = None

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        line = format_progress(snapshot)
        if line == self.last_line:
            return
        self.last_line = line
        self.echo(line)
