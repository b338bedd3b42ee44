"""Test spec discovery and loading.

Specs are plain data files (``*.spec.toml`` or ``*.spec.json``). They are
parsed, never imported or executed.
"""

from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from e2e_orchestrator.errors import SpecLoadError

logger = logging.getLogger(__name__)

SPEC_SUFFIXES = (".spec.toml", ".spec.json")

SPEC_TEMPLATE = '''\
# Test spec template. Copy this file to <name>.spec.toml and fill it in.
# The agent drives the browser with agent-browser; describe what should
# happen, not how to automate it.

# Clear, concise description of the test objective.
goal = "DESCRIBE_TEST_GOAL_HERE"

# Page where the test begins, relative to base_url.
start_url = "/path/to/start/page"

# Be specific: field names, expected values, button text.
steps = [
    "Step 1: Describe the first action (be specific)",
    "Step 2: Describe the second action (include expected values)",
    "Step 3: Describe verification step",
]

# Verifiable assertions checked after all steps.
success_criteria = [
    "URL contains /checkout/success",
    "Page displays 'Booking Confirmed' or similar success message",
]

[metadata]
# Informational only; specs always run independently.
prerequisites = []
dependencies = []
tags = []
# Per-spec timeout in seconds; omit to use the configured default.
# timeout = 300
'''


@dataclass(slots=True)
class SpecMetadata:
    dependencies: list[str] = field(default_factory=list)
    prerequisites: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    timeout_seconds: float | None = None


@dataclass(slots=True)
class TestSpec:
    path: Path
    goal: str
    start_url: str
    steps: list[str] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)
    metadata: SpecMetadata = field(default_factory=SpecMetadata)

    __test__ = False


def is_spec_file(path: Path) -> bool:
    return path.is_file() and path.name.endswith(SPEC_SUFFIXES) and not path.name.startswith(".")


def discover_specs(specs_dir: Path) -> list[Path]:
    """Return every spec file under ``specs_dir``, sorted by path."""
    if not specs_dir.is_dir():
        logger.warning("Could not read spec directory %s", specs_dir)
        return []
    return sorted(path for path in specs_dir.rglob("*") if is_spec_file(path))


def spec_name(path: Path, specs_dir: Path | None = None) -> str:
    relative = Path(path.name)
    if specs_dir is not None:
        try:
            relative = path.resolve().relative_to(specs_dir.resolve())
        except ValueError:
            pass
    name = relative.as_posix()
    for suffix in SPEC_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def _read_spec_data(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SpecLoadError(f"Failed to load spec {path}: {exc}", path=str(path)) from exc
    try:
        if path.name.endswith(".json"):
            data = json.loads(raw)
        else:
            data = tomllib.loads(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise SpecLoadError(f"Failed to load spec {path}: {exc}", path=str(path)) from exc
    if not isinstance(data, dict):
        raise SpecLoadError(
            f"Failed to load spec {path}: top level must be a table", path=str(path)
        )
    return data


def _string_list(data: dict[str, Any], *keys: str, path: Path) -> list[str]:
    for key in keys:
        if key not in data:
            continue
        value = data[key]
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise SpecLoadError(
                f"Invalid spec format: '{key}' must be a list of strings in {path}",
                path=str(path),
            )
        return list(value)
    return []


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _load_metadata(data: dict[str, Any], path: Path) -> SpecMetadata:
    raw = data.get("metadata", {})
    if not isinstance(raw, dict):
        raise SpecLoadError(
            f"Invalid spec format: 'metadata' must be a table in {path}", path=str(path)
        )
    timeout = raw.get("timeout")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
    ):
        raise SpecLoadError(
            f"Invalid spec format: metadata timeout must be a positive number in {path}",
            path=str(path),
        )
    return SpecMetadata(
        dependencies=_string_list(raw, "dependencies", path=path),
        prerequisites=_string_list(raw, "prerequisites", path=path),
        tags=_string_list(raw, "tags", path=path),
        timeout_seconds=float(timeout) if timeout is not None else None,
    )


def load_spec(path: Path) -> TestSpec:
    data = _read_spec_data(path)
    goal = _first(data, "goal")
    start_url = _first(data, "start_url", "startUrl")
    if not isinstance(goal, str) or not goal.strip() or not isinstance(start_url, str) or not start_url:
        raise SpecLoadError(
            f"Invalid spec format: missing goal or start_url in {path}", path=str(path)
        )
    return TestSpec(
        path=path,
        goal=goal,
        start_url=start_url,
        steps=_string_list(data, "steps", path=path),
        success_criteria=_string_list(data, "success_criteria", "successCriteria", path=path),
        metadata=_load_metadata(data, path),
    )
