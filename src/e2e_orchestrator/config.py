from __future__ import annotations

import json
import os
import sys
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv

from e2e_orchestrator.errors import ConfigurationError

BackendName = Literal["cursor", "claude"]
BACKEND_NAMES = ("cursor", "claude")
DEFAULT_CONFIG_FILE = "e2e.toml"


def _env_flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() == "true"


def detect_base_url(environ: Mapping[str, str] | None = None, platform: str | None = None) -> str:
    """Pick the app URL, accounting for Docker/CI hosts."""
    env = os.environ if environ is None else environ
    platform = platform or sys.platform
    if env.get("BASE_URL"):
        return env["BASE_URL"]
    if _env_flag(env, "DOCKER") or _env_flag(env, "CI"):
        if platform.startswith("linux"):
            return env.get("HOST_URL") or "http://172.17.0.1:4000"
        return "http://host.docker.internal:4000"
    return "http://localhost:4000"


@dataclass(slots=True)
class RunConfig:
    specs_dir: str = "e2e/specs"
    max_workers: int = 5
    timeout_seconds: float = 300.0
    run_deadline_seconds: float = 0.0
    report_dir: str = "docs/e2e-test-results"
    base_url: str = field(default_factory=detect_base_url)


@dataclass(slots=True)
class AgentConfig:
    backend: BackendName = "cursor"
    binary: str = ""
    model: str = "auto"
    api_key_env: str = "CURSOR_API_KEY"
    save_logs: bool = False


@dataclass(slots=True)
class OrchestratorConfig:
    run: RunConfig = field(default_factory=RunConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)

    @classmethod
    def default(cls) -> OrchestratorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OrchestratorConfig:
        unknown_sections = set(data) - {"run", "agent"}
        if unknown_sections:
            raise ConfigurationError(
                f"Unknown config sections: {', '.join(sorted(unknown_sections))}"
            )
        try:
            config = cls(
                run=RunConfig(**data.get("run", {})),
                agent=AgentConfig(**data.get("agent", {})),
            )
        except TypeError as exc:
            raise ConfigurationError(f"Invalid config: {exc}") from exc
        config.validate()
        return config

    def to_dict(self) -> dict:
        return {
            "run": {
                "specs_dir": self.run.specs_dir,
                "max_workers": self.run.max_workers,
                "timeout_seconds": self.run.timeout_seconds,
                "run_deadline_seconds": self.run.run_deadline_seconds,
                "report_dir": self.run.report_dir,
                "base_url": self.run.base_url,
            },
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "model": self.agent.model,
                "api_key_env": self.agent.api_key_env,
                "save_logs": self.agent.save_logs,
            },
        }

    @property
    def deadline_seconds(self) -> float | None:
        return self.run.run_deadline_seconds if self.run.run_deadline_seconds > 0 else None

    def validate(self) -> None:
        workers = self.run.max_workers
        if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
            raise ConfigurationError(f"max_workers must be a positive integer, got {workers!r}")
        for name in ("timeout_seconds", "run_deadline_seconds"):
            value = getattr(self.run, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{name} must be a number, got {value!r}")
        if self.run.timeout_seconds <= 0:
            raise ConfigurationError("timeout_seconds must be greater than zero")
        if self.run.run_deadline_seconds < 0:
            raise ConfigurationError("run_deadline_seconds must not be negative")
        if self.agent.backend not in BACKEND_NAMES:
            raise ConfigurationError(
                f"Unsupported agent backend: {self.agent.backend!r} "
                f"(expected one of {', '.join(BACKEND_NAMES)})"
            )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: OrchestratorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("run", "agent"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def _parse_number(name: str, raw: str, kind: type) -> Any:
    try:
        return kind(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def env_overrides(environ: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    """Collect config overrides from environment variables."""
    run: dict[str, Any] = {}
    agent: dict[str, Any] = {}
    if environ.get("E2E_SPECS_DIR"):
        run["specs_dir"] = environ["E2E_SPECS_DIR"]
    if environ.get("MAX_WORKERS"):
        run["max_workers"] = _parse_number("MAX_WORKERS", environ["MAX_WORKERS"], int)
    if environ.get("TIMEOUT"):
        run["timeout_seconds"] = _parse_number("TIMEOUT", environ["TIMEOUT"], float)
    if environ.get("E2E_RUN_DEADLINE"):
        run["run_deadline_seconds"] = _parse_number(
            "E2E_RUN_DEADLINE", environ["E2E_RUN_DEADLINE"], float
        )
    if environ.get("E2E_REPORT_DIR"):
        run["report_dir"] = environ["E2E_REPORT_DIR"]
    if environ.get("BASE_URL"):
        run["base_url"] = environ["BASE_URL"]
    if "SAVE_LLM_LOGS" in environ:
        agent["save_logs"] = _env_flag(environ, "SAVE_LLM_LOGS")
    return {"run": run, "agent": agent}


def _merge(base: dict[str, dict[str, Any]], *layers: Mapping[str, Mapping[str, Any]]) -> dict:
    merged = {section: dict(values) for section, values in base.items()}
    for layer in layers:
        for section, values in layer.items():
            if not isinstance(values, Mapping):
                raise ConfigurationError(f"Config section [{section}] must be a table")
            merged.setdefault(section, {}).update(
                {key: value for key, value in values.items() if value is not None}
            )
    return merged


def read_config_file(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {path}: {exc}") from exc


def load_config(
    path: Path,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Mapping[str, Any]] | None = None,
    dotenv_path: Path | None = None,
) -> OrchestratorConfig:
    """Merge defaults < config file < environment < explicit overrides."""
    if environ is None:
        if dotenv_path is not None and dotenv_path.exists():
            load_dotenv(dotenv_path, override=False)
        environ = os.environ
    defaults = OrchestratorConfig(
        run=RunConfig(base_url=detect_base_url(environ)),
    ).to_dict()
    merged = _merge(defaults, read_config_file(path), env_overrides(environ), overrides or {})
    return OrchestratorConfig.from_dict(merged)


def save_config(path: Path, config: OrchestratorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


def require_credentials(config: OrchestratorConfig, environ: Mapping[str, str] | None = None) -> None:
    """Fail before scheduling when the selected backend has no credentials."""
    env = os.environ if environ is None else environ
    if config.agent.backend != "cursor":
        return
    if not env.get(config.agent.api_key_env, "").strip():
        raise ConfigurationError(f"{config.agent.api_key_env} not set")


