"""Recovery sweep for workflows that stalled mid-pipeline.

A workflow is stalled when it has been ``processing`` without an update for
longer than the staleness threshold and is not waiting on a scheduled retry.
Each stalled workflow is forced into a deterministic state:

* data was persisted: ``completed`` or ``review_needed`` depending on the
  extraction confidence;
* nothing was persisted: back to ``pending`` for another attempt, or
  ``failed`` once the re-attempt budget is spent.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

from .config import RecoveryConfig
from .constants import ABANDONED_REASON
from .persistence import WorkflowRepository
from .persistence.models import (
    FINISHED_STAGE_STATUSES,
    StageStatus,
    WorkflowRecord,
    WorkflowStatus,
    utcnow,
)
from .stages import DEFAULT_STAGES, StageSequence
from .state import abandoned_patch, recovered_patch, reset_patch

logger = logging.getLogger(__name__)

ACTION_COMPLETED = "completed"
ACTION_REVIEW_NEEDED = "review_needed"
ACTION_RESET = "reset"
ACTION_ABANDONED = "abandoned"
ACTION_RETRY_PENDING = "retry_pending"
ACTION_UNCHANGED = "unchanged"
ACTION_LOST_RACE = "lost_race"


class SweepReport(BaseModel):
    """Counts of what one sweep pass did."""

    scanned: int = 0
    completed: int = 0
    review_needed: int = 0
    reset: int = 0
    abandoned: int = 0
    retry_pending: int = 0
    unchanged: int = 0
    lost_race: int = 0
    errors: int = 0

    def record(self, action: str) -> None:
        setattr(self, action, getattr(self, action) + 1)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump()


def _parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


class RecoverySweep:
    """Scans for stalled workflows and repairs them."""

    def __init__(
        self,
        repository: WorkflowRepository,
        aggregates: Any = None,
        stages: StageSequence = DEFAULT_STAGES,
        config: Optional[RecoveryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.aggregates = aggregates
        self.stages = stages
        self.config = config or RecoveryConfig()
        self._clock = clock

    def cutoff(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.config.staleness_threshold_seconds)

    async def run_once(self) -> SweepReport:
        """Run a single pass over stalled workflows."""
        now = self._clock()
        report = SweepReport()
        candidates = await self.repository.list_stuck_workflows(
            WorkflowStatus.PROCESSING, self.cutoff(now), limit=self.config.batch_size
        )
        for workflow in candidates:
            report.scanned += 1
            try:
                action = await self.recover(workflow.workflow_id, now)
            except Exception as e:
                logger.error(f"Recovery of workflow {workflow.workflow_id} failed: {e}")
                report.errors += 1
                continue
            report.record(action)
        if report.scanned:
            logger.info(f"Recovery sweep finished: {report.as_dict()}")
        return report

    async def recover(self, workflow_id: str, now: Optional[datetime] = None) -> str:
        """Decide and apply the recovery of one workflow; return the action."""
        now = now or self._clock()
        workflow = await self.repository.get_workflow(workflow_id)
        if (
            workflow is None
            or workflow.status != WorkflowStatus.PROCESSING
            or workflow.updated_at >= self.cutoff(now)
        ):
            return ACTION_UNCHANGED

        next_retry_at = _parse_time(workflow.metadata.get("next_retry_at"))
        if next_retry_at is not None and next_retry_at > now:
            logger.debug(
                f"Workflow {workflow_id} waits for a retry at {next_retry_at}, skipping"
            )
            return ACTION_RETRY_PENDING

        summary = None
        if self.aggregates is not None:
            summary = await self.aggregates.describe(workflow_id)

        if summary is not None and summary.child_record_count > 0:
            return await self._finish(workflow, summary)
        return await self._retry_or_abandon(workflow)

    async def _finish(self, workflow: WorkflowRecord, summary: Any) -> str:
        confidence = summary.confidence_score or 0.0
        status = (
            WorkflowStatus.COMPLETED
            if confidence >= self.config.acceptance_threshold
            else WorkflowStatus.REVIEW_NEEDED
        )
        reason = (
            f"stalled at {workflow.current_stage} with "
            f"{summary.child_record_count} persisted line items, "
            f"confidence {confidence:.2f}"
        )
        patch = recovered_patch(workflow, self.stages, status, reason)
        if workflow.aggregate_id is None:
            patch["aggregate_id"] = summary.aggregate_id

        if not await self._apply(workflow, patch):
            return ACTION_LOST_RACE
        for stage in self.stages:
            record = workflow.stage(stage.name)
            if record is not None and record.status in FINISHED_STAGE_STATUSES:
                continue
            await self.repository.upsert_stage_record(
                workflow.workflow_id,
                stage.name,
                {
                    "stage_order": stage.order,
                    "status": StageStatus.SKIPPED,
                    "completed_at": utcnow(),
                    "error_message": f"recovered: {reason}",
                },
            )
        logger.info(f"Recovered workflow {workflow.workflow_id} as {status.value}: {reason}")
        return status.value

    async def _retry_or_abandon(self, workflow: WorkflowRecord) -> str:
        if workflow.reattempt_count >= self.config.max_reattempts:
            patch = abandoned_patch(workflow, ABANDONED_REASON)
            if not await self._apply(workflow, patch):
                return ACTION_LOST_RACE
            if workflow.current_stage is not None:
                await self.repository.upsert_stage_record(
                    workflow.workflow_id,
                    workflow.current_stage,
                    {
                        "stage_order": self._order(workflow.current_stage),
                        "status": StageStatus.FAILED,
                        "error_message": ABANDONED_REASON,
                    },
                )
            logger.warning(
                f"Workflow {workflow.workflow_id} abandoned after "
                f"{workflow.reattempt_count} re-attempts"
            )
            return ACTION_ABANDONED

        reason = f"stalled at {workflow.current_stage} with no persisted data"
        if not await self._apply(workflow, reset_patch(workflow, reason)):
            return ACTION_LOST_RACE
        logger.info(
            f"Workflow {workflow.workflow_id} reset to pending "
            f"(re-attempt {workflow.reattempt_count + 1}/{self.config.max_reattempts})"
        )
        return ACTION_RESET

    def _order(self, stage_name: str) -> int:
        return self.stages.get(stage_name).order if stage_name in self.stages else 0

    async def _apply(self, workflow: WorkflowRecord, patch: Dict[str, Any]) -> bool:
        won = await self.repository.update_workflow(
            workflow.workflow_id,
            patch,
            expected_status=workflow.status,
            expected_stage=workflow.current_stage,
        )
        if not won:
            logger.info(
                f"Workflow {workflow.workflow_id} changed during recovery, leaving it"
            )
        return won

    async def run_forever(
        self,
        interval: Optional[float] = None,
        lifespan: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
        on_pass: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> None:
        """Run passes every ``interval`` seconds until stopped or ``lifespan`` ends.

        ``on_pass`` runs after every pass; the CLI uses it to dispatch the
        workflows a pass reset to pending.
        """
        interval = interval if interval is not None else self.config.interval_seconds
        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Recovery sweep pass failed: {e}")
            if on_pass is not None:
                try:
                    await on_pass()
                except Exception as e:
                    logger.error(f"Post-sweep hook failed: {e}")

            timeout = interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                timeout = min(interval, remaining)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
