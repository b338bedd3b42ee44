import json
from pathlib import Path

import pytest

from e2e_orchestrator.errors import SpecLoadError
from e2e_orchestrator.specs import (
    SPEC_TEMPLATE,
    discover_specs,
    load_spec,
    spec_name,
)

BOOKING_SPEC = """\
goal = "Book a table for two"
start_url = "/restaurants/1"
steps = ["Click 'Book'", "Pick tomorrow 19:00"]
success_criteria = ["Page shows 'Booking Confirmed'"]

[metadata]
tags = ["booking"]
dependencies = ["auth/login"]
timeout = 120
"""


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_discover_specs_finds_nested_data_files_sorted(tmp_path: Path) -> None:
    specs_dir = tmp_path / "specs"
    _write(specs_dir / "b.spec.toml", BOOKING_SPEC)
    _write(specs_dir / "auth" / "login.spec.json", "{}")
    _write(specs_dir / "a.spec.toml", BOOKING_SPEC)
    _write(specs_dir / ".template.spec.toml", SPEC_TEMPLATE)
    _write(specs_dir / "notes.md", "not a spec")
    _write(specs_dir / "helper.spec.ts", "export {}")

    found = discover_specs(specs_dir)

    assert [path.relative_to(specs_dir).as_posix() for path in found] == [
        "a.spec.toml",
        "auth/login.spec.json",
        "b.spec.toml",
    ]


def test_discover_specs_missing_directory_returns_empty(tmp_path: Path) -> None:
    assert discover_specs(tmp_path / "absent") == []


def test_spec_name_is_relative_path_without_suffix(tmp_path: Path) -> None:
    specs_dir = tmp_path / "specs"

    assert spec_name(specs_dir / "auth" / "login.spec.toml", specs_dir) == "auth/login"
    assert spec_name(specs_dir / "checkout.spec.json", specs_dir) == "checkout"
    assert spec_name(tmp_path / "elsewhere" / "one.spec.toml", specs_dir) == "one"
    assert spec_name(Path("plain.txt")) == "plain.txt"


def test_load_toml_spec(tmp_path: Path) -> None:
    path = _write(tmp_path / "booking.spec.toml", BOOKING_SPEC)

    spec = load_spec(path)

    assert spec.goal == "Book a table for two"
    assert spec.start_url == "/restaurants/1"
    assert spec.steps == ["Click 'Book'", "Pick tomorrow 19:00"]
    assert spec.success_criteria == ["Page shows 'Booking Confirmed'"]
    assert spec.metadata.tags == ["booking"]
    assert spec.metadata.dependencies == ["auth/login"]
    assert spec.metadata.prerequisites == []
    assert spec.metadata.timeout_seconds == 120.0


def test_load_json_spec_accepts_camel_case_keys(tmp_path: Path) -> None:
    payload = {
        "goal": "Log in",
        "startUrl": "/login",
        "steps": ["Fill email"],
        "successCriteria": ["Dashboard visible"],
    }
    path = _write(tmp_path / "login.spec.json", json.dumps(payload))

    spec = load_spec(path)

    assert spec.start_url == "/login"
    assert spec.success_criteria == ["Dashboard visible"]
    assert spec.metadata.timeout_seconds is None


def test_template_is_a_loadable_spec(tmp_path: Path) -> None:
    path = _write(tmp_path / "template.spec.toml", SPEC_TEMPLATE)

    spec = load_spec(path)

    assert spec.goal == "DESCRIBE_TEST_GOAL_HERE"
    assert len(spec.steps) == 3


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ('start_url = "/x"\n', "missing goal or start_url"),
        ('goal = "x"\n', "missing goal or start_url"),
        ('goal = "x"\nstart_url = "/x"\nsteps = "one"\n', "'steps' must be a list"),
        ('goal = "x"\nstart_url = "/x"\n[metadata]\ntimeout = -5\n', "timeout"),
        ('goal = "x"\nstart_url = "/x"\nmetadata = 3\n', "'metadata' must be a table"),
        ("goal = = broken", "Failed to load spec"),
    ],
)
def test_invalid_specs_raise_spec_load_error(tmp_path: Path, content: str, message: str) -> None:
    path = _write(tmp_path / "bad.spec.toml", content)

    with pytest.raises(SpecLoadError, match=message) as excinfo:
        load_spec(path)

    assert excinfo.value.path == str(path)


def test_json_spec_must_be_an_object(tmp_path: Path) -> None:
    path = _write(tmp_path / "list.spec.json", "[1, 2]")

    with pytest.raises(SpecLoadError, match="top level"):
        load_spec(path)


def test_missing_spec_file_raises(tmp_path: Path) -> None:
    with pytest.raises(SpecLoadError, match="Failed to load spec"):
        load_spec(tmp_path / "ghost.spec.toml")
