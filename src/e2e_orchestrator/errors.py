from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""


class ConfigurationError(OrchestratorError):
    """Raised when configuration or credentials are invalid."""


class DiscoveryError(OrchestratorError):
    """Raised when no test specs could be found."""


class SpecLoadError(OrchestratorError):
    """Raised when a spec file cannot be read or validated."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class ExecutionError(OrchestratorError):
    """Raised when running a single test could not produce a verdict."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class AgentOutputError(ExecutionError):
    """Raised when the agent's final output line is not a valid result record."""
