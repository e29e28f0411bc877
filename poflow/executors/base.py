"""Stage execution shared by the queued and sequential executors."""

from __future__ import annotations

import abc
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel

from ..config import PoflowConfig
from ..errors import ErrorClass, classify_error, describe_error
from ..metadata import MetadataStore, stage_key
from ..persistence import WorkflowRepository
from ..persistence.models import StageStatus, WorkflowRecord, WorkflowStatus, utcnow
from ..pipeline import PurchaseOrderPipeline, StageContext, StageResult
from ..stages import DEFAULT_STAGES, StageDefinition, StageSequence
from ..state import failure_patch, retry_patch, stage_finished_patch, start_patch
from ..utils.retry import compute_backoff, compute_quota_backoff

logger = logging.getLogger(__name__)


class StageFailure(BaseModel):
    """How a stage failure was recorded."""

    error_class: ErrorClass
    error_message: str
    status: WorkflowStatus
    retry_delay: Optional[float] = None
    applied: bool = True

    @property
    def will_retry(self) -> bool:
        return self.applied and self.retry_delay is not None


def _elapsed_ms(started_at: datetime) -> float:
    return (utcnow() - started_at).total_seconds() * 1000


class BaseExecutor(metaclass=abc.ABCMeta):
    """Runs stages and applies state transitions; subclasses decide dispatch."""

    mode: str = ""

    def __init__(
        self,
        repository: WorkflowRepository,
        metadata_store: MetadataStore,
        pipeline: PurchaseOrderPipeline,
        stages: StageSequence = DEFAULT_STAGES,
        config: Optional[PoflowConfig] = None,
    ) -> None:
        self.repository = repository
        self.metadata_store = metadata_store
        self.pipeline = pipeline
        self.stages = stages
        self.config = config or PoflowConfig()

    @abc.abstractmethod
    async def dispatch(self, workflow_id: str) -> Any:
        """Start processing a pending workflow."""
        raise NotImplementedError

    async def start_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        """Move a pending workflow to processing at its first stage."""
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            logger.warning(f"Workflow {workflow_id} not found, nothing to dispatch")
            return None
        if workflow.status != WorkflowStatus.PENDING:
            logger.warning(
                f"Workflow {workflow_id} is {workflow.status.value}, not dispatching"
            )
            return None

        patch = start_patch(workflow, self.stages, self.mode)
        won = await self.repository.update_workflow(
            workflow_id, patch, expected_status=WorkflowStatus.PENDING
        )
        if not won:
            logger.info(f"Workflow {workflow_id} was dispatched concurrently")
            return None
        for stage in self.stages:
            await self.repository.upsert_stage_record(
                workflow_id,
                stage.name,
                {"stage_order": stage.order, "status": StageStatus.PENDING},
            )
        logger.info(
            f"Workflow {workflow_id} started in {self.mode} mode "
            f"at stage {self.stages.first().name}"
        )
        return await self.repository.get_workflow(workflow_id)

    async def load_inputs(
        self,
        workflow_id: str,
        stage: StageDefinition,
        cached: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        inputs: Dict[str, Any] = {}
        for slot in stage.inputs:
            if cached is not None and slot in cached:
                inputs[slot] = cached[slot]
            else:
                inputs[slot] = await self.metadata_store.get(stage_key(workflow_id, slot))
        return inputs

    async def execute_stage(
        self,
        workflow: WorkflowRecord,
        stage: StageDefinition,
        attempt: int,
        started_at: datetime,
        cached: Optional[Dict[str, Any]] = None,
    ) -> Optional[StageResult]:
        """Run the handler of ``stage`` and publish its output.

        Returns ``None`` without running anything when the workflow is no
        longer processing ``stage``, e.g. because the recovery sweep finished it.
        """
        claimed = await self.repository.upsert_stage_record(
            workflow.workflow_id,
            stage.name,
            {
                "stage_order": stage.order,
                "status": StageStatus.PROCESSING,
                "attempt": attempt,
                "started_at": started_at,
                "completed_at": None,
                "error_message": None,
            },
            expected_status=WorkflowStatus.PROCESSING,
            expected_stage=stage.name,
        )
        if not claimed:
            logger.info(
                f"Workflow {workflow.workflow_id} is no longer at {stage.name}, not starting it"
            )
            return None
        inputs = await self.load_inputs(workflow.workflow_id, stage, cached)
        context = StageContext(
            workflow=workflow, stage=stage, inputs=inputs, attempt=attempt
        )
        result = await self.pipeline.run(context)
        if result.output is not None:
            await self.metadata_store.set(
                stage_key(workflow.workflow_id, stage.name),
                result.output,
                ttl_seconds=self.config.metadata.ttl_seconds,
            )
        return result

    async def complete_stage(
        self,
        workflow: WorkflowRecord,
        stage: StageDefinition,
        result: StageResult,
        started_at: datetime,
    ) -> bool:
        """Advance the workflow past ``stage``; ``False`` if it was taken over."""
        patch = stage_finished_patch(workflow, stage, self.stages)
        patch.update(result.workflow_updates)
        patch["metadata"].update(result.metadata_updates)

        won = await self.repository.update_workflow(
            workflow.workflow_id,
            patch,
            expected_status=WorkflowStatus.PROCESSING,
            expected_stage=stage.name,
        )
        if not won:
            logger.warning(
                f"Discarding stale completion of {stage.name} "
                f"for workflow_id={workflow.workflow_id}"
            )
            return False

        status = StageStatus.SKIPPED if result.skipped else StageStatus.COMPLETED
        await self.repository.upsert_stage_record(
            workflow.workflow_id,
            stage.name,
            {
                "stage_order": stage.order,
                "status": status,
                "completed_at": utcnow(),
                "duration_ms": _elapsed_ms(started_at),
                "error_message": result.skip_reason if result.skipped else None,
            },
        )
        if result.skipped:
            logger.info(
                f"Stage {stage.name} skipped for workflow_id={workflow.workflow_id}: "
                f"{result.skip_reason}"
            )
        else:
            logger.info(
                f"Stage {stage.name} completed for workflow_id={workflow.workflow_id}"
            )
        if patch.get("status") == WorkflowStatus.COMPLETED:
            logger.info(f"Workflow {workflow.workflow_id} completed")
        return True

    async def terminal_status_for(
        self, workflow: WorkflowRecord, error_class: ErrorClass
    ) -> WorkflowStatus:
        """``review_needed`` for validation failures that left persisted data."""
        if error_class != ErrorClass.VALIDATION:
            return WorkflowStatus.FAILED
        aggregates = self.pipeline.collaborators.aggregates
        if aggregates is None:
            return WorkflowStatus.FAILED
        summary = await aggregates.describe(workflow.workflow_id)
        if summary is not None and summary.child_record_count > 0:
            return WorkflowStatus.REVIEW_NEEDED
        return WorkflowStatus.FAILED

    def retry_delay(self, error_class: ErrorClass, attempt: int) -> float:
        retry = self.config.retry
        if error_class == ErrorClass.QUOTA:
            return compute_quota_backoff(
                attempt,
                base_delay=retry.base_delay,
                max_delay=retry.max_delay,
                jitter=retry.jitter,
                multiplier=retry.quota_delay_multiplier,
            )
        return compute_backoff(
            attempt,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
            jitter=retry.jitter,
        )

    async def fail_stage(
        self,
        workflow: WorkflowRecord,
        stage: StageDefinition,
        exc: BaseException,
        attempt: int,
        started_at: datetime,
        allow_retry: bool = True,
    ) -> StageFailure:
        """Record a handler exception as a scheduled retry or a terminal failure."""
        error_class = classify_error(exc)
        message = describe_error(stage.name, exc)
        # exceptions outside the taxonomy are transient
        retryable = getattr(exc, "retryable", True)
        max_attempts = self.config.stage_max_attempts(stage.name)

        if allow_retry and retryable and attempt < max_attempts:
            delay = self.retry_delay(error_class, attempt)
            reason = getattr(exc, "reason", ErrorClass.TRANSIENT.value)
            patch = retry_patch(
                workflow,
                stage,
                message,
                reason,
                next_retry_at=utcnow() + timedelta(seconds=delay),
            )
            failure = StageFailure(
                error_class=error_class,
                error_message=message,
                status=WorkflowStatus.PROCESSING,
                retry_delay=delay,
            )
            logger.warning(
                f"{message} (workflow_id={workflow.workflow_id}, attempt "
                f"{attempt}/{max_attempts}), retrying in {delay:.1f}s"
            )
        else:
            status = await self.terminal_status_for(workflow, error_class)
            patch = failure_patch(workflow, stage, message, status)
            failure = StageFailure(
                error_class=error_class, error_message=message, status=status
            )
            logger.error(
                f"{message} (workflow_id={workflow.workflow_id}, attempt {attempt}), "
                f"workflow is now {status.value}"
            )

        won = await self.repository.update_workflow(
            workflow.workflow_id,
            patch,
            expected_status=WorkflowStatus.PROCESSING,
            expected_stage=stage.name,
        )
        if not won:
            logger.warning(
                f"Workflow {workflow.workflow_id} moved on while {stage.name} failed, "
                "not recording failure"
            )
            return failure.model_copy(update={"applied": False})

        await self.repository.upsert_stage_record(
            workflow.workflow_id,
            stage.name,
            {
                "stage_order": stage.order,
                "status": StageStatus.FAILED,
                "attempt": attempt,
                "completed_at": utcnow(),
                "duration_ms": _elapsed_ms(started_at),
                "error_message": message,
            },
        )
        return failure
