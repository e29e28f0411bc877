import asyncio
from datetime import timedelta

import pytest
from typer.testing import CliRunner

from poflow.cli import app
from poflow.persistence import SQLiteWorkflowRepository, WorkflowRecord, WorkflowStatus
from poflow.persistence.models import utcnow
from poflow.stages import DEFAULT_STAGES
from poflow.state import new_workflow


@pytest.fixture
def repo(tmp_path, monkeypatch) -> SQLiteWorkflowRepository:
    db_path = tmp_path / "poflow.db"
    monkeypatch.setenv("POFLOW_DATABASE_URL", f"sqlite://{db_path}")
    monkeypatch.setenv("POFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("POFLOW_QUEUE_BACKEND", raising=False)
    monkeypatch.delenv("POFLOW_METADATA_BACKEND", raising=False)
    return SQLiteWorkflowRepository(db_path)


def _create(repo, **fields) -> str:
    workflow = new_workflow(DEFAULT_STAGES, owner_id="merchant-1", document_name="po.pdf")
    workflow = workflow.model_copy(update=fields)
    return asyncio.run(repo.create_workflow(workflow))


def test_workflow_list_and_filter(repo):
    pending = _create(repo)
    failed = _create(repo, status=WorkflowStatus.FAILED, failed_stage="persistence")

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert pending in result.stdout
    assert failed in result.stdout

    result = runner.invoke(app, ["workflow", "list", "--status", "failed"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert failed in result.stdout
    assert pending not in result.stdout


def test_workflow_list_empty(repo):
    result = CliRunner().invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "No workflows found" in result.stdout


def test_workflow_show_details_and_missing(repo):
    workflow_id = _create(
        repo,
        status=WorkflowStatus.FAILED,
        error_message="persistence failed: connection refused",
    )
    asyncio.run(
        repo.upsert_stage_record(
            workflow_id,
            "extraction",
            {"stage_order": 1, "status": "completed", "duration_ms": 412.0},
        )
    )

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "show", workflow_id])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert f"Workflow {workflow_id}: failed" in result.stdout
    assert "Error: persistence failed: connection refused" in result.stdout
    assert "- extraction: completed (412 ms)" in result.stdout

    missing = runner.invoke(app, ["workflow", "show", "wf_missing"])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.stdout


def test_workflow_resubmit(repo):
    workflow_id = _create(
        repo,
        status=WorkflowStatus.REVIEW_NEEDED,
        failed_stage="sync",
        error_message="sync failed: SKU unknown",
    )

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "resubmit", workflow_id])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert f"Workflow {workflow_id} resubmitted" in result.stdout

    wf = asyncio.run(repo.get_workflow(workflow_id))
    assert wf.status == WorkflowStatus.PROCESSING
    assert wf.current_stage == "extraction"
    assert wf.error_message is None

    # processing workflows cannot be resubmitted
    again = runner.invoke(app, ["workflow", "resubmit", workflow_id])
    assert again.exit_code == 1

    missing = runner.invoke(app, ["workflow", "resubmit", "wf_missing"])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.stdout


def test_workflow_dispatch_pending(repo):
    ids = [_create(repo) for _ in range(3)]

    result = CliRunner().invoke(app, ["workflow", "dispatch-pending", "--limit", "2"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "Dispatched 2 workflows" in result.stdout

    statuses = sorted(asyncio.run(repo.get_workflow(i)).status.value for i in ids)
    assert statuses == ["pending", "processing", "processing"]


def test_sweep_run_once(repo):
    stalled = WorkflowRecord(
        owner_id="merchant-1",
        status=WorkflowStatus.PROCESSING,
        current_stage="extraction",
        stages_total=len(DEFAULT_STAGES),
        updated_at=utcnow() - timedelta(minutes=30),
    )
    asyncio.run(repo.create_workflow(stalled))

    result = CliRunner().invoke(app, ["sweep", "run", "--once", "--no-dispatch-pending"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "scanned=1" in result.stdout
    assert "reset=1" in result.stdout
    assert "dispatched=" not in result.stdout

    wf = asyncio.run(repo.get_workflow(stalled.workflow_id))
    assert wf.status == WorkflowStatus.PENDING
    assert wf.reattempt_count == 1


def test_sweep_run_once_redispatches_reset_workflows(repo):
    stalled = WorkflowRecord(
        owner_id="merchant-1",
        status=WorkflowStatus.PROCESSING,
        current_stage="normalization",
        stages_total=len(DEFAULT_STAGES),
        updated_at=utcnow() - timedelta(minutes=30),
    )
    asyncio.run(repo.create_workflow(stalled))

    result = CliRunner().invoke(app, ["sweep", "run", "--once"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "reset=1" in result.stdout
    assert "dispatched=1" in result.stdout

    wf = asyncio.run(repo.get_workflow(stalled.workflow_id))
    assert wf.status == WorkflowStatus.PROCESSING
    assert wf.current_stage == "extraction"
    assert wf.reattempt_count == 1


def test_queue_commands(repo):
    runner = CliRunner()
    result = runner.invoke(app, ["queue", "counts"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    for name in DEFAULT_STAGES.names:
        assert name in result.stdout
    assert "waiting=0" in result.stdout

    paused = runner.invoke(app, ["queue", "pause", "sync"])
    assert paused.exit_code == 0
    assert "Paused sync" in paused.stdout

    drained = runner.invoke(app, ["queue", "drain-failed", "sync"])
    assert drained.exit_code == 0
    assert "No failed jobs" in drained.stdout

    unknown = runner.invoke(app, ["queue", "pause", "shipping"])
    assert unknown.exit_code == 1
    assert "Unknown stage: shipping" in unknown.stdout
