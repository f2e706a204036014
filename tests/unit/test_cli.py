import asyncio
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest
from typer.testing import CliRunner

import gantry.persistence as persistence
from gantry.cli import app
from gantry.persistence import InMemoryRunRepository

FIXTURES = Path(__file__).parent.parent / "fixtures"

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    for name in ("GANTRY_CONFIG", "GANTRY_DATABASE_URL", "DATABASE_URL", "GANTRY_MAX_CONCURRENCY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.chdir(tmp_path)


def _summary(output):
    return next(line for line in output.splitlines() if line.startswith("Run "))


def _config(tmp_path, failing=False):
    status = "failed" if failing else "succeeded"
    config_path = tmp_path / "gantry.yaml"
    config_path.write_text(
        f"""
database_url: sqlite://{tmp_path / 'runs.db'}
collaborators:
  step:
    kind: static
    status: {status}
    message: step exploded
    outputs:
      coverage: "91"
"""
    )
    return config_path


def test_validate_lists_jobs():
    result = runner.invoke(app, ["validate", str(FIXTURES / "release.yml")])
    assert result.exit_code == 0, result.output
    assert "Workflow release is valid" in result.output
    assert "- build: uses container-build (needs lint)" in result.output
    assert "- deploy: uses gitops (needs build) if ref_name == 'main'" in result.output


def test_validate_rejects_cycle():
    result = runner.invoke(app, ["validate", str(FIXTURES / "cycle.yml")])
    assert result.exit_code == 1
    assert "Invalid workflow" in result.output


def test_validate_missing_file(tmp_path):
    result = runner.invoke(app, ["validate", str(tmp_path / "absent.yml")])
    assert result.exit_code == 1
    assert "Workflow file not found" in result.output


def test_plan_prints_stages():
    result = runner.invoke(app, ["plan", str(FIXTURES / "cleanup.yml")])
    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == [
        "Stage 1: test",
        "Stage 2: publish, notify, report",
    ]


def test_plan_for_one_job_keeps_only_what_it_needs():
    result = runner.invoke(app, ["plan", str(FIXTURES / "release.yml"), "--job", "build"])
    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == ["Stage 1: lint", "Stage 2: build"]

    unknown = runner.invoke(app, ["plan", str(FIXTURES / "release.yml"), "--job", "nope"])
    assert unknown.exit_code == 1
    assert "Unknown job 'nope'" in unknown.output


def test_run_succeeds_and_is_recorded(tmp_path):
    config_path = _config(tmp_path)
    result = runner.invoke(
        app,
        ["run", str(FIXTURES / "cleanup.yml"), "--event", "push", "--config", str(config_path)],
    )
    assert result.exit_code == 0, result.output
    summary = _summary(result.output)
    assert summary.endswith(": succeeded")
    assert "- notify: skipped" in result.output
    run_id = summary.split()[1].rstrip(":")

    listed = runner.invoke(app, ["runs", "list", "--config", str(config_path)])
    assert listed.exit_code == 0, listed.output
    assert f"{run_id}\ttest-and-report\tsucceeded" in listed.output

    shown = runner.invoke(app, ["runs", "show", run_id, "--config", str(config_path)])
    assert shown.exit_code == 0, shown.output
    assert "- test: pending -> ready -> running -> succeeded" in shown.output
    assert "- notify: pending -> blocked -> ready -> skipped" in shown.output


def test_run_failure_exits_nonzero(tmp_path):
    config_path = _config(tmp_path, failing=True)
    result = runner.invoke(
        app, ["run", str(FIXTURES / "cleanup.yml"), "--config", str(config_path)]
    )
    assert result.exit_code == 1
    assert _summary(result.output).endswith(": failed")
    assert "- test: failed (step exploded)" in result.output


def test_run_rejects_missing_required_input(tmp_path):
    config_path = _config(tmp_path)
    result = runner.invoke(
        app, ["run", str(FIXTURES / "release.yml"), "--config", str(config_path)]
    )
    assert result.exit_code == 1
    assert "Invalid trigger" in result.output
    assert "environment" in result.output


def test_run_rejects_malformed_pair(tmp_path):
    config_path = _config(tmp_path)
    result = runner.invoke(
        app,
        ["run", str(FIXTURES / "cleanup.yml"), "--config", str(config_path), "-s", "NOVALUE"],
    )
    assert result.exit_code != 0


def test_runs_list_and_show_from_shared_repository():
    repo = InMemoryRunRepository()
    persistence._repository_instance = repo
    run_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    asyncio.run(repo.create_run(run_id, "release", {"event_name": "push"}))
    asyncio.run(repo.record_transition(run_id, "lint", "ready", now))
    asyncio.run(repo.record_transition(run_id, "lint", "running", now))
    asyncio.run(repo.record_transition(run_id, "lint", "failed", now, reason="style"))
    asyncio.run(repo.mark_run_completed(run_id, "failed", {}))

    listed = runner.invoke(app, ["runs", "list"])
    assert listed.exit_code == 0, listed.output
    assert run_id in listed.output

    shown = runner.invoke(app, ["runs", "show", run_id])
    assert shown.exit_code == 0, shown.output
    assert f"Run {run_id}: failed" in shown.output
    assert "- lint: pending -> ready -> running -> failed" in shown.output

    missing = runner.invoke(app, ["runs", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.output


def test_runs_list_empty():
    persistence._repository_instance = InMemoryRunRepository()
    result = runner.invoke(app, ["runs", "list"])
    assert result.exit_code == 0
    assert "No runs found" in result.output
