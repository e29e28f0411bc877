"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_workflow_id() -> str:
    return f"wf_{uuid.uuid4().hex}"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REVIEW_NEEDED = "review_needed"


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


FINISHED_STAGE_STATUSES = frozenset({StageStatus.COMPLETED, StageStatus.SKIPPED})


class StageRecord(BaseModel):
    """Record of one stage of one workflow."""

    workflow_id: str
    stage_name: str
    stage_order: int
    status: StageStatus = StageStatus.PENDING
    attempt: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error_message: Optional[str] = None


class WorkflowRecord(BaseModel):
    """Persisted processing record for one uploaded document."""

    workflow_id: str = Field(default_factory=new_workflow_id)
    owner_id: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_stage: Optional[str] = None
    stages_total: int = 0
    stages_completed: int = 0
    progress_percent: int = 0
    retry_count: int = 0
    reattempt_count: int = 0
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    aggregate_id: Optional[str] = None
    document_name: Optional[str] = None
    document_ref: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    stages: list[StageRecord] = Field(default_factory=list)

    def stage(self, stage_name: str) -> Optional[StageRecord]:
        for record in self.stages:
            if record.stage_name == stage_name:
                return record
        return None


# Columns a caller may change through ``update_workflow``.
WORKFLOW_PATCH_FIELDS = frozenset(
    {
        "owner_id",
        "status",
        "current_stage",
        "stages_total",
        "stages_completed",
        "progress_percent",
        "retry_count",
        "reattempt_count",
        "error_message",
        "failed_stage",
        "aggregate_id",
        "document_name",
        "document_ref",
        "metadata",
        "started_at",
        "completed_at",
    }
)

STAGE_PATCH_FIELDS = frozenset(
    {
        "stage_order",
        "status",
        "attempt",
        "started_at",
        "completed_at",
        "duration_ms",
        "error_message",
    }
)


def check_patch(patch: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"Unknown fields in patch: {sorted(unknown)}")
