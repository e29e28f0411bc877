"""Tests for workflow transitions and the stage sequence."""

from datetime import datetime, timezone

import pytest

from poflow.errors import InvalidTransition
from poflow.persistence.models import WorkflowStatus
from poflow.stages import DEFAULT_STAGES, StageDefinition, StageSequence
from poflow.state import (
    abandoned_patch,
    can_transition,
    compute_progress,
    failure_patch,
    new_workflow,
    recovered_patch,
    reset_patch,
    resubmit_patch,
    retry_patch,
    stage_finished_patch,
    start_patch,
)


def _processing(stage_name: str = "extraction"):
    wf = new_workflow(DEFAULT_STAGES, owner_id="m1", options={"sync": True})
    return wf.model_copy(
        update={"status": WorkflowStatus.PROCESSING, "current_stage": stage_name}
    )


def test_default_sequence_order_and_inputs():
    assert DEFAULT_STAGES.names == [
        "extraction",
        "normalization",
        "persistence",
        "enrichment",
        "sync",
        "status_update",
    ]
    assert DEFAULT_STAGES.get("enrichment").inputs == ("normalization", "persistence")
    assert DEFAULT_STAGES.next_after("sync").name == "status_update"
    assert DEFAULT_STAGES.next_after("status_update") is None
    with pytest.raises(KeyError):
        DEFAULT_STAGES.get("missing")


def test_stage_sequence_rejects_gaps():
    with pytest.raises(ValueError):
        StageSequence([StageDefinition(name="a", order=1), StageDefinition(name="b", order=3)])


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        ("pending", "processing", True),
        ("processing", "processing", True),
        ("processing", "completed", True),
        ("processing", "review_needed", True),
        ("processing", "pending", True),
        ("failed", "pending", True),
        ("review_needed", "pending", True),
        ("pending", "completed", False),
        ("completed", "pending", False),
        ("completed", "processing", False),
        ("failed", "processing", False),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_new_workflow_is_pending():
    wf = new_workflow(DEFAULT_STAGES, owner_id="m1")
    assert wf.workflow_id.startswith("wf_")
    assert wf.status == WorkflowStatus.PENDING
    assert wf.current_stage is None
    assert wf.stages_completed == 0
    assert wf.stages_total == 6


def test_start_patch():
    wf = new_workflow(DEFAULT_STAGES)
    patch = start_patch(wf, DEFAULT_STAGES, "queued")
    assert patch["status"] == WorkflowStatus.PROCESSING
    assert patch["current_stage"] == "extraction"
    assert patch["started_at"] is not None
    assert patch["metadata"]["execution_mode"] == "queued"

    with pytest.raises(InvalidTransition):
        start_patch(_processing(), DEFAULT_STAGES, "queued")


def test_stage_finished_uses_stage_position():
    wf = _processing("persistence")
    patch = stage_finished_patch(wf, DEFAULT_STAGES.get("persistence"), DEFAULT_STAGES)
    assert patch["stages_completed"] == 3
    assert patch["progress_percent"] == 50
    assert patch["current_stage"] == "enrichment"
    assert "status" not in patch

    # a redelivered completion yields the same numbers
    again = stage_finished_patch(wf, DEFAULT_STAGES.get("persistence"), DEFAULT_STAGES)
    assert again["stages_completed"] == 3


def test_final_stage_completes_workflow():
    wf = _processing("status_update")
    patch = stage_finished_patch(wf, DEFAULT_STAGES.last(), DEFAULT_STAGES)
    assert patch["status"] == WorkflowStatus.COMPLETED
    assert patch["progress_percent"] == 100
    assert patch["stages_completed"] == 6
    assert patch["completed_at"] is not None


def test_retry_and_failure_patches():
    wf = _processing("extraction")
    when = datetime(2030, 1, 1, tzinfo=timezone.utc)
    patch = retry_patch(wf, DEFAULT_STAGES.first(), "extraction failed: 429", "quota_exceeded", when)
    assert patch["retry_count"] == 1
    assert patch["metadata"]["retry_reason"] == "quota_exceeded"
    assert patch["metadata"]["next_retry_at"] == when.isoformat()
    assert "status" not in patch

    failed = failure_patch(wf, DEFAULT_STAGES.first(), "extraction failed: boom")
    assert failed["status"] == WorkflowStatus.FAILED
    assert failed["failed_stage"] == "extraction"
    assert failed["error_message"] == "extraction failed: boom"


def test_resubmit_only_from_failed_or_review_needed():
    failed = _processing().model_copy(
        update={"status": WorkflowStatus.FAILED, "error_message": "x", "failed_stage": "sync"}
    )
    patch = resubmit_patch(failed)
    assert patch["status"] == WorkflowStatus.PENDING
    assert patch["error_message"] is None
    assert patch["failed_stage"] is None

    with pytest.raises(InvalidTransition):
        resubmit_patch(_processing())
    with pytest.raises(InvalidTransition):
        resubmit_patch(new_workflow(DEFAULT_STAGES))


def test_recovery_patches_record_provenance():
    wf = _processing("sync")
    done = recovered_patch(wf, DEFAULT_STAGES, WorkflowStatus.COMPLETED, "stalled")
    assert done["current_stage"] == "status_update"
    assert done["stages_completed"] == done["stages_total"] == 6
    assert done["completed_at"] is not None
    assert done["metadata"]["recovery"][-1]["action"] == "completed"

    review = recovered_patch(wf, DEFAULT_STAGES, WorkflowStatus.REVIEW_NEEDED, "low confidence")
    assert review["failed_stage"] == "sync"
    assert review["error_message"] == "low confidence"

    reset = reset_patch(wf, "no data")
    assert reset["status"] == WorkflowStatus.PENDING
    assert reset["current_stage"] is None
    assert reset["reattempt_count"] == 1

    abandoned = abandoned_patch(wf, "abandoned, no data extracted")
    assert abandoned["status"] == WorkflowStatus.FAILED
    assert abandoned["metadata"]["recovery"][-1]["action"] == "abandoned"


def test_compute_progress():
    assert compute_progress(0, 6) == 0
    assert compute_progress(1, 6) == 17
    assert compute_progress(6, 6) == 100
    assert compute_progress(3, 0) == 0
