"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from .models import WorkflowRecord, WorkflowStatus


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Every status change goes through ``update_workflow`` with the status (and
    optionally the stage) the caller last observed. The write only happens
    when the stored row still matches, so a stage handler and the recovery
    sweep racing on one workflow cannot both win.
    """

    async def create_workflow(self, workflow: WorkflowRecord) -> str:
        """Persist a new workflow and return its id."""

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        """Retrieve the workflow, including its stage records."""

    async def update_workflow(
        self,
        workflow_id: str,
        patch: dict[str, Any],
        expected_status: WorkflowStatus | str,
        expected_stage: Optional[str] = UNSET,
    ) -> bool:
        """Apply ``patch`` if status (and stage) still match; return success."""

    async def upsert_stage_record(
        self,
        workflow_id: str,
        stage_name: str,
        patch: dict[str, Any],
        expected_status: WorkflowStatus | str | None = None,
        expected_stage: Optional[str] = UNSET,
    ) -> bool:
        """Create or update the record of one stage.

        With ``expected_status`` the write only happens while the workflow
        still has that status (and stage); returns whether it was written.
        """

    async def list_stuck_workflows(
        self, status: WorkflowStatus | str, older_than: datetime, limit: int | None = None
    ) -> list[WorkflowRecord]:
        """Return workflows in ``status`` not updated since ``older_than``."""

    async def list_workflows(
        self, status: WorkflowStatus | str | None = None, limit: int | None = None
    ) -> list[WorkflowRecord]:
        """Return persisted workflows, oldest first."""
