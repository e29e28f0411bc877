"""Workflow dispatcher for poflow."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .config import PoflowConfig
from .constants import UPLOAD_SLOT
from .executors import BaseExecutor
from .metadata import MetadataStore, stage_key
from .persistence import WorkflowRepository
from .persistence.models import WorkflowStatus
from .pipeline import encode_upload
from .stages import DEFAULT_STAGES, StageSequence
from .state import new_workflow, resubmit_patch

logger = logging.getLogger(__name__)


class WorkflowDispatcher:
    """Service responsible for creating and dispatching workflows."""

    def __init__(
        self,
        repository: WorkflowRepository,
        metadata_store: MetadataStore,
        executors: Dict[str, BaseExecutor],
        stages: StageSequence = DEFAULT_STAGES,
        config: Optional[PoflowConfig] = None,
    ) -> None:
        self.repository = repository
        self.metadata_store = metadata_store
        self.executors = executors
        self.stages = stages
        self.config = config or PoflowConfig()

    def executor_for(self, owner_id: Optional[str]) -> BaseExecutor:
        """Executor selected by the owner's configured execution mode."""
        mode = self.config.execution.mode_for(owner_id)
        try:
            return self.executors[mode]
        except KeyError:
            raise ValueError(f"No executor available for mode '{mode}'") from None

    async def submit(
        self,
        owner_id: Optional[str],
        document: Optional[bytes] = None,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        document_ref: Optional[str] = None,
        dispatch: bool = True,
    ) -> str:
        """Create a workflow for an uploaded document.

        Args:
            owner_id: Merchant that uploaded the document.
            document: Raw document bytes, kept in the metadata store.
            file_name: Original file name.
            mime_type: Content type of the document.
            options: Per-workflow processing options (e.g. ``{"sync": False}``).
            document_ref: Object-storage reference used when the upload expired.
            dispatch: Start processing right away.

        Returns:
            The new workflow's identifier.
        """
        if document is None and document_ref is None:
            raise ValueError("Either document bytes or a document_ref is required")

        workflow = new_workflow(
            self.stages,
            owner_id=owner_id,
            document_name=file_name,
            document_ref=document_ref,
            options=options,
        )
        workflow_id = await self.repository.create_workflow(workflow)
        if document is not None:
            await self.metadata_store.set(
                stage_key(workflow_id, UPLOAD_SLOT),
                encode_upload(document, file_name, mime_type),
                ttl_seconds=self.config.metadata.ttl_seconds,
            )
        logger.info(f"Created workflow {workflow_id} for owner {owner_id}")

        if dispatch:
            await self.dispatch(workflow_id)
        return workflow_id

    async def dispatch(self, workflow_id: str) -> Any:
        """Hand a pending workflow to the executor of its owner."""
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise LookupError(f"Workflow {workflow_id} not found")
        executor = self.executor_for(workflow.owner_id)
        logger.info(f"Dispatching workflow {workflow_id} to {executor.mode} executor")
        return await executor.dispatch(workflow_id)

    async def dispatch_pending(self, limit: Optional[int] = None) -> int:
        """Dispatch pending workflows, oldest first; return how many started."""
        pending = await self.repository.list_workflows(WorkflowStatus.PENDING, limit=limit)
        started = 0
        for workflow in pending:
            result = await self.dispatch(workflow.workflow_id)
            if result:
                started += 1
        if pending:
            logger.info(f"Dispatched {started} of {len(pending)} pending workflows")
        return started

    async def resubmit(self, workflow_id: str, dispatch: bool = True) -> bool:
        """Send a failed or review_needed workflow back through the pipeline."""
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise LookupError(f"Workflow {workflow_id} not found")
        patch = resubmit_patch(workflow)
        won = await self.repository.update_workflow(
            workflow_id, patch, expected_status=workflow.status
        )
        if not won:
            logger.warning(f"Workflow {workflow_id} changed before it could be resubmitted")
            return False
        logger.info(f"Resubmitted workflow {workflow_id} (was {workflow.status.value})")
        if dispatch:
            await self.dispatch(workflow_id)
        return True
