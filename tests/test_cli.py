"""
Tests for the nodeflow command-line interface.
"""

import json
from unittest.mock import Mock

import pytest

from nodeflow import cli

WORKFLOW = {
    "id": "research",
    "name": "Research and summarize",
    "nodes": [
        {"id": "in", "data": {"type": "dataInput", "label": "Topic"}},
        {
            "id": "llm",
            "data": {
                "type": "llmTask",
                "label": "Writer",
                "config": {"model": "gpt-4o-mini", "prompt": "Write about {{Topic.output}}"},
            },
        },
        {"id": "out", "data": {"type": "dataOutput", "label": "Result"}},
    ],
    "edges": [
        {"id": "e1", "source": "in", "target": "llm"},
        {"id": "e2", "source": "llm", "target": "out"},
    ],
}


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("NODEFLOW_CONFIG", str(tmp_path / "missing.json"))
    monkeypatch.setattr(cli, "configure_logging", Mock())


@pytest.fixture
def workflow_file(tmp_path):
    path = tmp_path / "research.json"
    path.write_text(json.dumps(WORKFLOW))
    return path


@pytest.fixture
def cyclic_file(tmp_path):
    back_edge = {"id": "e3", "source": "out", "target": "in"}
    document = dict(WORKFLOW, edges=[*WORKFLOW["edges"], back_edge])
    path = tmp_path / "cyclic.json"
    path.write_text(json.dumps(document))
    return path


def test_validate_valid_workflow(workflow_file, capsys):
    assert cli.main(["validate", str(workflow_file)]) == 0
    assert "✓ Workflow is valid" in capsys.readouterr().out


def test_validate_invalid_workflow(cyclic_file, capsys):
    assert cli.main(["validate", str(cyclic_file)]) == 1
    out = capsys.readouterr().out
    assert "❌ Workflow is invalid" in out
    assert "Circular dependency detected" in out


def test_validate_json_output(cyclic_file, capsys):
    cli.main(["validate", str(cyclic_file), "--json"])
    result = json.loads(capsys.readouterr().out)
    assert result["is_valid"] is False
    assert result["errors"][0]["type"] == "circular_dependency"


def test_validate_missing_file(tmp_path, capsys):
    assert cli.main(["validate", str(tmp_path / "nope.json")]) == 1
    assert "Cannot read" in capsys.readouterr().err


def test_run_dry_run_with_passthrough(workflow_file, capsys):
    code = cli.main(["run", str(workflow_file), "--input", '"solar power"', "--json"])

    assert code == 0
    plan = json.loads(capsys.readouterr().out)
    assert plan["status"] == "completed"
    assert plan["workflow_id"] == "research"
    assert plan["outputs"]["out"]["output"] == "solar power"
    # The passthrough processor echoes the resolved config
    assert plan["outputs"]["llm"]["data"]["config"]["prompt"] == "Write about solar power"
    cli.configure_logging.assert_called_once()


def test_run_plain_input_and_options(workflow_file, capsys):
    code = cli.main(
        [
            "run",
            str(workflow_file),
            "--input",
            "not json",
            "--mode",
            "parallel",
            "--max-concurrency",
            "2",
            "--max-retries",
            "0",
        ]
    )

    assert code == 0
    out = capsys.readouterr().out
    assert "completed (parallel)" in out
    assert "[success] Writer (llmTask)" in out
    assert 'Output (Result): "not json"' in out


def test_run_rejects_out_of_range_options(workflow_file, capsys):
    assert cli.main(["run", str(workflow_file), "--timeout", "10"]) == 1
    assert "Invalid execution options" in capsys.readouterr().err


def test_run_invalid_workflow_exits_nonzero(cyclic_file, capsys):
    assert cli.main(["run", str(cyclic_file)]) == 1
    out = capsys.readouterr().out
    assert "failed" in out
    assert "validation: Circular dependency detected" in out


def test_unknown_mode_is_rejected(workflow_file):
    with pytest.raises(SystemExit):
        cli.main(["run", str(workflow_file), "--mode", "eventually"])
