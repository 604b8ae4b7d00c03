"""Tests for the command line interface."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from conftest import END, START, approval, edge

from flowforge.engine.main import build_parser, main


@pytest.fixture(autouse=True)
def state_dir(monkeypatch: pytest.MonkeyPatch, temp_state_dir: Path) -> Iterator[Path]:
    """Point the CLI at a scratch store and restore logging afterwards."""
    monkeypatch.setenv("FLOWFORGE_STORAGE_PATH", str(temp_state_dir))
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield temp_state_dir
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def definition_file(tmp_path: Path) -> Path:
    path = tmp_path / "purchase.json"
    path.write_text(
        json.dumps(
            {
                "id": "purchase",
                "name": "Purchase approval",
                "nodes": [START, approval("review", "alice"), END],
                "edges": [edge("start", "review"), edge("review", "end")],
            }
        ),
        encoding="utf-8",
    )
    return path


def _output_lines(capsys: pytest.CaptureFixture[str]) -> list[str]:
    # Log records are JSON lines on stdout; keep only the command's own output.
    return [line for line in capsys.readouterr().out.splitlines() if not line.startswith("{")]


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_start_parses_json_input() -> None:
    args = build_parser().parse_args(["start", "purchase", "--input", '{"amount": 5}'])

    assert args.input == {"amount": 5}
    assert args.def_version is None


def test_validate_reports_ok(definition_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["validate", str(definition_file)]) == 0
    assert any("OK (3 nodes, 2 edges)" in line for line in _output_lines(capsys))


def test_validate_lists_violations(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "broken.json"
    path.write_text(json.dumps({"id": "b", "name": "b", "nodes": [START]}), encoding="utf-8")

    assert main(["validate", str(path)]) == 3
    assert "Definition must have at least one end node" in capsys.readouterr().err


def test_end_to_end_approval(definition_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["import", str(definition_file), "--publish"]) == 0
    assert "Published purchase version 1" in _output_lines(capsys)

    assert main(["start", "purchase", "--input", '{"amount": 900}']) == 0
    assert any(line.endswith(": running") for line in _output_lines(capsys))

    assert main(["tasks", "--assignee", "alice"]) == 0
    [task_line] = _output_lines(capsys)
    task_id, status, assignee = task_line.split("\t")[:3]
    assert (status, assignee) == ("pending", "alice")

    assert main(["complete-task", task_id, "--user", "alice", "--outcome", "approved"]) == 0
    assert any(line.endswith("is completed") for line in _output_lines(capsys))

    assert main(["instances", "--status", "completed"]) == 0
    [instance_line] = _output_lines(capsys)
    instance_id = instance_line.split("\t")[0]
    assert "purchase@1" in instance_line

    assert main(["cancel", instance_id]) == 5


def test_unknown_definition_exits_with_not_found(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["start", "missing"]) == 4
    assert "missing" in capsys.readouterr().err


def test_sla_sweep_with_nothing_due(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["sla-sweep"]) == 0
    assert "Escalated 0 item(s)" in _output_lines(capsys)


def test_invalid_configuration_exits_with_2(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLOWFORGE_MAX_STEPS_PER_ADVANCE", "0")

    assert main(["sla-sweep"]) == 2
