"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from .models import (
    STAGE_PATCH_FIELDS,
    WORKFLOW_PATCH_FIELDS,
    StageRecord,
    WorkflowRecord,
    WorkflowStatus,
    check_patch,
    utcnow,
)
from .repository import UNSET, WorkflowRepository


def _matches(
    wf: WorkflowRecord, expected_status: WorkflowStatus | str, expected_stage: Optional[str]
) -> bool:
    if wf.status != WorkflowStatus(expected_status):
        return False
    return expected_stage is UNSET or wf.current_stage == expected_stage


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Reads return copies, so a caller
    holding a record sees the state it read, like a database row.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowRecord] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: WorkflowRecord) -> str:
        async with self._lock:
            if workflow.workflow_id in self._workflows:
                raise ValueError(f"Workflow {workflow.workflow_id} already exists")
            self._workflows[workflow.workflow_id] = workflow.model_copy(deep=True)
        return workflow.workflow_id

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def update_workflow(
        self,
        workflow_id: str,
        patch: dict[str, Any],
        expected_status: WorkflowStatus | str,
        expected_stage: Optional[str] = UNSET,
    ) -> bool:
        check_patch(patch, WORKFLOW_PATCH_FIELDS)
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf is None:
                return False
            if not _matches(wf, expected_status, expected_stage):
                return False
            data = wf.model_dump()
            data.update(patch)
            data["updated_at"] = utcnow()
            self._workflows[workflow_id] = WorkflowRecord.model_validate(data)
        return True

    async def upsert_stage_record(
        self,
        workflow_id: str,
        stage_name: str,
        patch: dict[str, Any],
        expected_status: WorkflowStatus | str | None = None,
        expected_stage: Optional[str] = UNSET,
    ) -> bool:
        check_patch(patch, STAGE_PATCH_FIELDS)
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf is None:
                return False
            if expected_status is not None and not _matches(
                wf, expected_status, expected_stage
            ):
                return False
            existing = wf.stage(stage_name)
            if existing is None:
                data = {"workflow_id": workflow_id, "stage_name": stage_name, "stage_order": 0}
                data.update(patch)
                wf.stages.append(StageRecord.model_validate(data))
                wf.stages.sort(key=lambda s: s.stage_order)
            else:
                data = existing.model_dump()
                data.update(patch)
                index = wf.stages.index(existing)
                wf.stages[index] = StageRecord.model_validate(data)
        return True

    async def list_stuck_workflows(
        self, status: WorkflowStatus | str, older_than: datetime, limit: int | None = None
    ) -> list[WorkflowRecord]:
        wanted = WorkflowStatus(status)
        stuck = [
            wf.model_copy(deep=True)
            for wf in sorted(self._workflows.values(), key=lambda w: w.updated_at)
            if wf.status == wanted and wf.updated_at < older_than
        ]
        return stuck[:limit] if limit is not None else stuck

    async def list_workflows(
        self, status: WorkflowStatus | str | None = None, limit: int | None = None
    ) -> list[WorkflowRecord]:
        wanted = WorkflowStatus(status) if status is not None else None
        workflows = [
            wf.model_copy(deep=True)
            for wf in sorted(self._workflows.values(), key=lambda w: w.created_at)
            if wanted is None or wf.status == wanted
        ]
        return workflows[:limit] if limit is not None else workflows
