"""Queue-driven executor: one stage queue per stage, chained by enqueue."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Tuple

from ..config import PoflowConfig
from ..contracts import FailedJob, Job, QueueCounts
from ..errors import FatalConfigurationError, StageFailed
from ..metadata import MetadataStore, stage_key
from ..persistence import WorkflowRepository
from ..persistence.models import WorkflowStatus, utcnow
from ..pipeline import PurchaseOrderPipeline
from ..queues import BaseQueueBackend, JobHandler
from ..stages import DEFAULT_STAGES, StageDefinition, StageSequence
from .base import BaseExecutor

logger = logging.getLogger(__name__)


class QueueExecutor(BaseExecutor):
    """Dispatches every stage through its own queue.

    A job only carries the workflow id and stage name; stage inputs are read
    from the metadata store. Completion of stage N enqueues stage N+1.
    """

    mode = "queued"

    def __init__(
        self,
        backend: BaseQueueBackend,
        repository: WorkflowRepository,
        metadata_store: MetadataStore,
        pipeline: PurchaseOrderPipeline,
        stages: StageSequence = DEFAULT_STAGES,
        config: Optional[PoflowConfig] = None,
    ) -> None:
        super().__init__(repository, metadata_store, pipeline, stages, config)
        self.backend = backend
        self._handlers: Dict[str, Tuple[JobHandler, int]] = {}
        for stage in self.stages:
            self.register(stage.name)

    def register(
        self,
        stage_name: str,
        handler: Optional[JobHandler] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        """Attach ``handler`` (default: ``handle_job``) to a stage's queue."""
        self.stages.get(stage_name)
        self._handlers[stage_name] = (
            handler or self.handle_job,
            concurrency or self.config.stage_concurrency(stage_name),
        )

    def concurrency(self, stage_name: str) -> int:
        return self._handlers[stage_name][1]

    def _queue(self, stage_name: str) -> str:
        return self.stages.get(stage_name).queue

    async def enqueue_stage(
        self,
        workflow_id: str,
        stage: StageDefinition,
        attempts_made: int = 0,
        delay: float = 0,
    ) -> str:
        job = Job(
            workflow_id=workflow_id,
            stage_name=stage.name,
            attempts_made=attempts_made,
            payload_ref=stage_key(workflow_id, stage.inputs[0]) if stage.inputs else None,
        )
        return await self.backend.enqueue(stage.queue, job, delay=delay)

    async def dispatch(self, workflow_id: str) -> bool:
        workflow = await self.start_workflow(workflow_id)
        if workflow is None:
            return False
        await self.enqueue_stage(workflow_id, self.stages.first())
        return True

    async def handle_job(self, job: Job) -> None:
        """Process one stage job.

        Raises ``StageFailed`` after recording a failure so that the queue
        backend marks the job as failed. A retry, if any, is enqueued as a
        fresh job before raising.
        """
        try:
            stage = self.stages.get(job.stage_name)
        except KeyError as e:
            raise FatalConfigurationError(str(e), stage=job.stage_name) from e

        workflow = await self.repository.get_workflow(job.workflow_id)
        if workflow is None:
            logger.warning(f"Dropping job {job.job_id}: workflow {job.workflow_id} not found")
            return
        if (
            workflow.status != WorkflowStatus.PROCESSING
            or workflow.current_stage != stage.name
        ):
            logger.info(
                f"Discarding stale {stage.name} job {job.job_id} for "
                f"workflow_id={job.workflow_id} ({workflow.status.value} at "
                f"{workflow.current_stage})"
            )
            return

        attempt = job.attempts_made + 1
        started_at = utcnow()
        try:
            result = await self.execute_stage(workflow, stage, attempt, started_at)
        except Exception as exc:
            failure = await self.fail_stage(workflow, stage, exc, attempt, started_at)
            if failure.will_retry:
                await self.backend.enqueue(
                    stage.queue, job.next_attempt(), delay=failure.retry_delay
                )
            raise StageFailed(job.workflow_id, stage.name, exc) from exc

        if result is None:
            return
        if not await self.complete_stage(workflow, stage, result, started_at):
            return
        following = self.stages.next_after(stage.name)
        if following is not None:
            await self.enqueue_stage(job.workflow_id, following)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume every stage queue until ``lifespan`` expires (or forever)."""
        logger.info(
            "Starting stage workers: "
            + ", ".join(f"{name}={self.concurrency(name)}" for name in self._handlers)
        )
        await asyncio.gather(
            *(
                self.backend.process(
                    self._queue(name), concurrency, handler, lifespan=lifespan
                )
                for name, (handler, concurrency) in self._handlers.items()
            )
        )

    async def run_until_idle(self, max_jobs: Optional[int] = None) -> int:
        """Process ready jobs stage by stage until every queue is empty.

        Delayed jobs that are not due yet are left alone. Returns the number
        of jobs handled.
        """
        handled = 0
        progressed = True
        while progressed:
            progressed = False
            for name, (handler, _) in self._handlers.items():
                queue = self._queue(name)
                while max_jobs is None or handled < max_jobs:
                    job = await self.backend.fetch(queue)
                    if job is None:
                        break
                    await self.backend.run_job(queue, job, handler)
                    handled += 1
                    progressed = True
            if max_jobs is not None and handled >= max_jobs:
                break
        return handled

    async def pause(self, stage_name: str) -> None:
        await self.backend.pause(self._queue(stage_name))
        logger.info(f"Paused queue for stage {stage_name}")

    async def resume(self, stage_name: str) -> None:
        await self.backend.resume(self._queue(stage_name))
        logger.info(f"Resumed queue for stage {stage_name}")

    async def counts(self) -> Dict[str, QueueCounts]:
        return {
            stage.name: await self.backend.counts(stage.queue) for stage in self.stages
        }

    async def drain_failed(self, stage_name: str) -> list[FailedJob]:
        drained = await self.backend.drain_failed(self._queue(stage_name))
        logger.info(f"Drained {len(drained)} failed jobs from stage {stage_name}")
        return drained
