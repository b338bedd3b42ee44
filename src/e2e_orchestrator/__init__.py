from e2e_orchestrator.scheduler import (
    AggregateResult,
    ProgressSnapshot,
    RunningEntry,
    Scheduler,
    Task,
    TestResult,
)

__version__ = "0.1.0"

__all__ = [
    "AggregateResult",
    "ProgressSnapshot",
    "RunningEntry",
    "Scheduler",
    "Task",
    "TestResult",
    "__version__",
]
