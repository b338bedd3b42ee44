from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from e2e_orchestrator.scheduler import AggregateResult, TestResult


def success_rate(aggregate: AggregateResult) -> float:
    if aggregate.total == 0:
        return 0.0
    return aggregate.passed / aggregate.total * 100


def _format_steps(result: TestResult) -> list[str]:
    if not result.steps_completed:
        return []
    lines = [f"- Steps Completed: {len(result.steps_completed)}"]
    lines.extend(f"  - {step}" for step in result.steps_completed)
    return lines


def generate_report(aggregate: AggregateResult, generated_at: datetime | None = None) -> str:
    """Render the Markdown report; results keep completion order."""
    generated_at = generated_at or datetime.now(UTC)
    elapsed = aggregate.elapsed_seconds
    lines = [
        "# E2E Test Execution Report",
        "",
        f"Date: {generated_at.isoformat()}",
        f"Execution Time: {elapsed:.2f}s ({elapsed / 60:.2f} minutes)",
        "",
        "## Summary",
        "",
        f"- Total Specs: {aggregate.total}",
        f"- Passed: {aggregate.passed}",
        f"- Failed: {aggregate.failed}",
        f"- Success Rate: {success_rate(aggregate):.1f}%",
        "",
        "## Test Results",
        "",
    ]
    for result in aggregate.results:
        icon = "✅" if result.passed else "❌"
        lines.append(f"### {icon} {result.spec}")
        lines.append("")
        lines.append(f"- Status: {result.status}")
        lines.append(f"- Duration: {result.duration:.2f}s")
        lines.extend(_format_steps(result))
        if result.error:
            lines.append(f"- Error: {result.error}")
        lines.append("")

    failed = [result for result in aggregate.results if not result.passed]
    if failed:
        lines.extend(["## Failed Tests", ""])
        for result in failed:
            lines.append(f"### {result.spec}")
            lines.append("")
            lines.append(f"**Error:** {result.error or 'Unknown error'}")
            lines.append(f"**Duration:** {result.duration:.2f}s")
            lines.append("")
            if result.steps_completed:
                lines.append("**Steps Completed:**")
                lines.extend(f"- {step}" for step in result.steps_completed)
                lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def render_summary(aggregate: AggregateResult) -> str:
    return "\n".join(
        [
            "Summary",
            "=======",
            "",
            f"Total: {aggregate.total} | Passed: {aggregate.passed} | Failed: {aggregate.failed}",
            f"Success Rate: {success_rate(aggregate):.1f}%",
            f"Execution Time: {aggregate.elapsed_seconds:.2f}s",
        ]
    )


def report_filename(prefix: str = "test-report", now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"{prefix}-{now.strftime('%Y-%m-%dT%H-%M-%S')}.md"


def write_report(report_dir: Path, content: str, now: datetime | None = None) -> Path:
    report_dir.mkdir(parents=True, exist_ok=True)
    path = report_dir / report_filename(now=now)
    path.write_text(content, encoding="utf-8")
    return path
