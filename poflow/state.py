"""Workflow state machine: allowed transitions and the patches that apply them.

Every function here is pure. It takes the workflow as last read from the
repository and returns the patch to hand to ``update_workflow`` together
with the status and stage observed, which makes the write a compare-and-set.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from .errors import InvalidTransition
from .persistence.models import (
    WorkflowRecord,
    WorkflowStatus,
    new_workflow_id,
    utcnow,
)
from .stages import StageDefinition, StageSequence

ALLOWED_TRANSITIONS: Dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset({WorkflowStatus.PROCESSING}),
    WorkflowStatus.PROCESSING: frozenset(
        {
            WorkflowStatus.PROCESSING,
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.REVIEW_NEEDED,
            # only through the recovery sweep
            WorkflowStatus.PENDING,
        }
    ),
    WorkflowStatus.FAILED: frozenset({WorkflowStatus.PENDING}),
    WorkflowStatus.REVIEW_NEEDED: frozenset({WorkflowStatus.PENDING}),
    WorkflowStatus.COMPLETED: frozenset(),
}

# Metadata keys describing a scheduled retry; cleared once the stage moves on.
RETRY_METADATA_KEYS = ("retry_reason", "next_retry_at")


def can_transition(current: WorkflowStatus | str, target: WorkflowStatus | str) -> bool:
    return WorkflowStatus(target) in ALLOWED_TRANSITIONS[WorkflowStatus(current)]


def assert_transition(current: WorkflowStatus | str, target: WorkflowStatus | str) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(WorkflowStatus(current).value, WorkflowStatus(target).value)


def compute_progress(stages_completed: int, stages_total: int) -> int:
    if stages_total <= 0:
        return 0
    return round(min(stages_completed, stages_total) / stages_total * 100)


def new_workflow(
    stages: StageSequence,
    owner_id: Optional[str] = None,
    document_name: Optional[str] = None,
    document_ref: Optional[str] = None,
    options: Optional[Dict[str, Any]] = None,
    workflow_id: Optional[str] = None,
) -> WorkflowRecord:
    """Build the record of a freshly uploaded document."""
    return WorkflowRecord(
        workflow_id=workflow_id or new_workflow_id(),
        owner_id=owner_id,
        status=WorkflowStatus.PENDING,
        stages_total=len(stages),
        document_name=document_name,
        document_ref=document_ref,
        metadata={"options": dict(options or {})},
    )


def _metadata(workflow: WorkflowRecord, drop: tuple[str, ...] = ()) -> Dict[str, Any]:
    metadata = dict(workflow.metadata)
    for key in drop:
        metadata.pop(key, None)
    return metadata


def start_patch(
    workflow: WorkflowRecord, stages: StageSequence, execution_mode: str
) -> Dict[str, Any]:
    """pending -> processing at the first stage."""
    if workflow.status != WorkflowStatus.PENDING:
        raise InvalidTransition(workflow.status.value, WorkflowStatus.PROCESSING.value)
    metadata = _metadata(workflow, drop=RETRY_METADATA_KEYS)
    metadata["execution_mode"] = execution_mode
    return {
        "status": WorkflowStatus.PROCESSING,
        "current_stage": stages.first().name,
        "stages_total": len(stages),
        "stages_completed": 0,
        "progress_percent": 0,
        "started_at": utcnow(),
        "completed_at": None,
        "metadata": metadata,
    }


def stage_finished_patch(
    workflow: WorkflowRecord, stage: StageDefinition, stages: StageSequence
) -> Dict[str, Any]:
    """Record ``stage`` as completed or skipped and advance to the next one.

    ``stages_completed`` is set to the stage's position rather than
    incremented, so a redelivered completion cannot count twice.
    """
    following = stages.next_after(stage.name)
    target = WorkflowStatus.PROCESSING if following else WorkflowStatus.COMPLETED
    assert_transition(workflow.status, target)

    patch: Dict[str, Any] = {
        "stages_completed": stage.order,
        "progress_percent": compute_progress(stage.order, len(stages)),
        "metadata": _metadata(workflow, drop=RETRY_METADATA_KEYS),
    }
    if following is not None:
        patch["current_stage"] = following.name
    else:
        patch.update(
            status=WorkflowStatus.COMPLETED,
            current_stage=stage.name,
            stages_completed=len(stages),
            progress_percent=100,
            completed_at=utcnow(),
        )
    return patch


def retry_patch(
    workflow: WorkflowRecord,
    stage: StageDefinition,
    error_message: str,
    reason: str,
    next_retry_at: datetime,
) -> Dict[str, Any]:
    """processing -> processing with a scheduled retry of ``stage``."""
    assert_transition(workflow.status, WorkflowStatus.PROCESSING)
    metadata = _metadata(workflow)
    metadata.update(
        last_error=error_message,
        retry_reason=reason,
        next_retry_at=next_retry_at.isoformat(),
    )
    return {
        "current_stage": stage.name,
        "retry_count": workflow.retry_count + 1,
        "error_message": error_message,
        "metadata": metadata,
    }


def failure_patch(
    workflow: WorkflowRecord,
    stage: StageDefinition,
    error_message: str,
    status: WorkflowStatus = WorkflowStatus.FAILED,
) -> Dict[str, Any]:
    """processing -> failed or review_needed after a stage gave up."""
    assert_transition(workflow.status, status)
    metadata = _metadata(workflow, drop=RETRY_METADATA_KEYS)
    metadata["last_error"] = error_message
    return {
        "status": status,
        "current_stage": stage.name,
        "failed_stage": stage.name,
        "error_message": error_message,
        "metadata": metadata,
    }


def resubmit_patch(workflow: WorkflowRecord) -> Dict[str, Any]:
    """failed or review_needed -> pending, clearing the previous run."""
    assert_transition(workflow.status, WorkflowStatus.PENDING)
    if workflow.status == WorkflowStatus.PROCESSING:
        raise InvalidTransition(workflow.status.value, WorkflowStatus.PENDING.value)
    return {
        "status": WorkflowStatus.PENDING,
        "current_stage": None,
        "stages_completed": 0,
        "progress_percent": 0,
        "retry_count": 0,
        "error_message": None,
        "failed_stage": None,
        "completed_at": None,
        "metadata": _metadata(
            workflow, drop=RETRY_METADATA_KEYS + ("last_error", "outcome")
        ),
    }


def recovery_note(workflow: WorkflowRecord, action: str, reason: str) -> Dict[str, Any]:
    """Metadata with a provenance entry appended to ``metadata['recovery']``."""
    metadata = _metadata(workflow)
    history = list(metadata.get("recovery") or [])
    history.append({"action": action, "reason": reason, "at": utcnow().isoformat()})
    metadata["recovery"] = history
    return metadata


def recovered_patch(
    workflow: WorkflowRecord,
    stages: StageSequence,
    status: WorkflowStatus,
    reason: str,
) -> Dict[str, Any]:
    """Force a stalled workflow with persisted data into a terminal status."""
    assert_transition(workflow.status, status)
    last = stages.last()
    patch: Dict[str, Any] = {
        "status": status,
        "current_stage": last.name,
        "stages_total": len(stages),
        "stages_completed": len(stages),
        "progress_percent": 100,
        "metadata": recovery_note(workflow, status.value, reason),
    }
    if status == WorkflowStatus.COMPLETED:
        patch["completed_at"] = utcnow()
    else:
        patch["failed_stage"] = workflow.current_stage or last.name
        patch["error_message"] = reason
    return patch


def reset_patch(workflow: WorkflowRecord, reason: str) -> Dict[str, Any]:
    """processing -> pending so the workflow is dispatched again."""
    assert_transition(workflow.status, WorkflowStatus.PENDING)
    metadata = recovery_note(workflow, "reset", reason)
    for key in RETRY_METADATA_KEYS:
        metadata.pop(key, None)
    return {
        "status": WorkflowStatus.PENDING,
        "current_stage": None,
        "stages_completed": 0,
        "progress_percent": 0,
        "reattempt_count": workflow.reattempt_count + 1,
        "metadata": metadata,
    }


def abandoned_patch(workflow: WorkflowRecord, error_message: str) -> Dict[str, Any]:
    """processing -> failed once the sweep ran out of re-attempts."""
    assert_transition(workflow.status, WorkflowStatus.FAILED)
    return {
        "status": WorkflowStatus.FAILED,
        "failed_stage": workflow.current_stage,
        "error_message": error_message,
        "metadata": recovery_note(workflow, "abandoned", error_message),
    }
