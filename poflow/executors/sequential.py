"""Sequential executor: every stage of a workflow in one call chain."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, Field

from ..config import PoflowConfig
from ..metadata import MetadataStore
from ..persistence import WorkflowRepository
from ..persistence.models import WorkflowStatus, utcnow
from ..pipeline import PurchaseOrderPipeline
from ..stages import DEFAULT_STAGES, StageSequence
from .base import BaseExecutor

logger = logging.getLogger(__name__)


class RunResult(BaseModel):
    """Outcome of one sequential run."""

    workflow_id: str
    status: WorkflowStatus
    failed_stage: Optional[str] = None
    error_message: Optional[str] = None
    timings: Dict[str, float] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)


class SequentialExecutor(BaseExecutor):
    """Runs the stage sequence in-process, without queue hand-off.

    Each stage gets the previous outputs from memory and still publishes its
    own output to the metadata store, so persisted state matches a queued
    run. There is no automatic retry: the first failing stage ends the run.
    """

    mode = "sequential"

    def __init__(
        self,
        repository: WorkflowRepository,
        metadata_store: MetadataStore,
        pipeline: PurchaseOrderPipeline,
        stages: StageSequence = DEFAULT_STAGES,
        config: Optional[PoflowConfig] = None,
    ) -> None:
        super().__init__(repository, metadata_store, pipeline, stages, config)
        self._semaphore = asyncio.Semaphore(
            max(1, self.config.execution.sequential_max_concurrency)
        )

    async def dispatch(
        self, workflow_id: str, inputs: Optional[Dict[str, Any]] = None
    ) -> RunResult | None:
        return await self.run(workflow_id, inputs)

    async def run(
        self, workflow_id: str, inputs: Optional[Dict[str, Any]] = None
    ) -> RunResult | None:
        """Run a pending workflow to a terminal status.

        ``inputs`` may pre-seed the in-memory slots (for example the upload),
        anything missing is read from the metadata store. Returns ``None``
        when the workflow could not be started.
        """
        async with self._semaphore:
            return await self._run(workflow_id, dict(inputs or {}))

    async def _run(self, workflow_id: str, cached: Dict[str, Any]) -> RunResult | None:
        workflow = await self.start_workflow(workflow_id)
        if workflow is None:
            return None
        result = RunResult(workflow_id=workflow_id, status=workflow.status)

        for stage in self.stages:
            if (
                workflow.status != WorkflowStatus.PROCESSING
                or workflow.current_stage != stage.name
            ):
                logger.warning(
                    f"Workflow {workflow_id} changed underneath the sequential run "
                    f"at stage {stage.name}, stopping"
                )
                break

            started_at = utcnow()
            try:
                outcome = await self.execute_stage(
                    workflow, stage, attempt=1, started_at=started_at, cached=cached
                )
            except Exception as exc:
                failure = await self.fail_stage(
                    workflow, stage, exc, 1, started_at, allow_retry=False
                )
                result.failed_stage = stage.name
                result.error_message = failure.error_message
                result.timings[stage.name] = (utcnow() - started_at).total_seconds() * 1000
                break

            if outcome is None:
                break
            if not await self.complete_stage(workflow, stage, outcome, started_at):
                break
            result.timings[stage.name] = (utcnow() - started_at).total_seconds() * 1000
            if outcome.skipped:
                result.skipped.append(stage.name)
            if outcome.output is not None:
                cached[stage.name] = outcome.output

            workflow = await self.repository.get_workflow(workflow_id)
            if workflow is None:
                break

        final = await self.repository.get_workflow(workflow_id)
        if final is not None:
            result.status = final.status
        return result

    async def run_many(
        self, workflow_ids: Iterable[str]
    ) -> list[RunResult | None]:
        """Run several workflows concurrently, bounded by the configured limit."""
        return list(await asyncio.gather(*(self.run(wf_id) for wf_id in workflow_ids)))
