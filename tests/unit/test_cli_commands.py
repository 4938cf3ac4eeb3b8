"""CLI tests against a SQLite database."""

import json

import pytest
from typer.testing import CliRunner

from ledgerflow.cli import app
from ledgerflow.workflows import invoice_approval as sample

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    for name in ("DATABASE_URL", "LEDGERFLOW_TRANSPORT", "LEDGERFLOW_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LEDGERFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("LEDGERFLOW_DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("LEDGERFLOW_ACTION_MODULES", "ledgerflow.workflows.invoice_approval")
    schema_path = tmp_path / "form.json"
    schema_path.write_text(json.dumps(sample.APPROVAL_FORM_SCHEMA))
    return schema_path


def _ok(args):
    result = runner.invoke(app, args)
    assert result.exit_code == 0, f"{args} failed with {result.exit_code}: {result.output}"
    return result.output


def test_invoice_approval_from_the_command_line(cli_env):
    assert "Database initialised" in _ok(["db", "init"])
    _ok(["form", "register", sample.FORM_ID, "Invoice approval", "1.0.0", str(cli_env)])
    _ok(
        [
            "workflow",
            "register",
            sample.WORKFLOW_NAME,
            "1.0.0",
            "ledgerflow.workflows.invoice_approval:invoice_approval",
            "--initial-state",
            "draft",
        ]
    )
    assert f"{sample.WORKFLOW_NAME}\t1.0.0" in _ok(["workflow", "list"])

    started = _ok(
        ["execution", "start", sample.WORKFLOW_NAME, "--context", '{"invoice_number": "9"}']
    )
    execution_id = started.split()[1].rstrip(":")
    assert "State: draft" in started

    delivered = _ok(["execution", "deliver", execution_id, "Submit", "--user", "bob"])
    assert "draft -> pending_approval (active)" in delivered

    listing = _ok(["task", "list", "--user", "carol", "--role", sample.APPROVER_ROLE])
    task_id = listing.split()[0]
    assert "Approve Invoice #9" in listing

    assert "CLAIMED by carol" in _ok(["task", "claim", task_id, "carol"])
    completed = _ok(["task", "complete", task_id, '{"approved": true}', "--user", "carol"])
    assert "COMPLETED" in completed

    shown = _ok(["execution", "show", execution_id])
    assert '"current_state": "approved"' in shown
    assert '"status": "completed"' in shown
    assert "Submit" in _ok(["execution", "events", execution_id])
    replayed = json.loads(_ok(["execution", "replay", execution_id, "--no-snapshots"]))
    assert replayed["state"] == "approved"

    history = _ok(["task", "show", task_id])
    assert "claim" in history and "complete" in history

    again = runner.invoke(app, ["task", "complete", task_id, '{"approved": true}'])
    assert again.exit_code == 1
    assert "Error" in again.output


def test_missing_records_and_invalid_input(cli_env):
    _ok(["db", "init"])
    missing = runner.invoke(app, ["workflow", "show", "nope"])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.output

    assert "No executions found" in _ok(["execution", "list"])
    assert runner.invoke(app, ["execution", "show", "nope"]).exit_code == 1
    assert runner.invoke(app, ["execution", "start", "x", "--context", "[1]"]).exit_code == 2

    _ok(["form", "register", sample.FORM_ID, "Invoice approval", "1.0.0", str(cli_env)])
    invalid = runner.invoke(app, ["form", "validate", sample.FORM_ID, '{"approved": "x"}'])
    assert invalid.exit_code == 1
    assert "approved" in invalid.output
    assert "Valid" in _ok(["form", "validate", sample.FORM_ID, '{"approved": true}'])
    assert sample.FORM_ID in _ok(["form", "list"])
