"""Tests for the queue-driven executor."""

from datetime import datetime, timedelta

import pytest

from poflow.config import PoflowConfig
from poflow.errors import QuotaExceededError, StageError, TransientError, ValidationError
from poflow.metadata import stage_key
from poflow.metadata.inmemory import InMemoryMetadataStore
from poflow.persistence import InMemoryWorkflowRepository, StageStatus, WorkflowStatus
from poflow.persistence.models import utcnow
from poflow.queues.inmemory import InMemoryQueueBackend
from poflow.runtime import build_runtime
from poflow.stages import DEFAULT_STAGES


async def _submit(runtime, **kwargs):
    kwargs.setdefault("document", b"%PDF-1.4 purchase order")
    kwargs.setdefault("file_name", "po.pdf")
    return await runtime.dispatcher.submit("merchant-1", **kwargs)


@pytest.mark.asyncio
async def test_workflow_runs_through_every_stage(runtime, aggregates, sync_service):
    workflow_id = await _submit(runtime)

    counts = await runtime.queued.counts()
    assert counts["extraction"].waiting == 1
    assert all(c.waiting == 0 for name, c in counts.items() if name != "extraction")

    handled = await runtime.queued.run_until_idle()
    assert handled == 6

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.COMPLETED
    assert wf.completed_at is not None
    assert wf.progress_percent == 100
    assert wf.stages_completed == wf.stages_total == 6
    assert wf.aggregate_id == f"po_{workflow_id}"
    assert wf.metadata["outcome"] == "completed"
    assert wf.metadata["execution_mode"] == "queued"
    assert [s.stage_name for s in wf.stages] == DEFAULT_STAGES.names
    assert all(s.status == StageStatus.COMPLETED for s in wf.stages)
    assert all(s.duration_ms is not None for s in wf.stages)

    assert aggregates.aggregates[workflow_id]["currency"] == "USD"
    assert sync_service.pushed == [wf.aggregate_id]
    normalized = await runtime.metadata_store.get(stage_key(workflow_id, "normalization"))
    assert len(normalized["line_items"]) == 2

    # final stage enqueues nothing further
    counts = await runtime.queued.counts()
    assert all(c.waiting == 0 and c.delayed == 0 for c in counts.values())
    assert all(c.completed == 1 for c in counts.values())


@pytest.mark.asyncio
async def test_optional_stages_are_skipped(runtime, sync_service):
    runtime.pipeline.collaborators.enrichment = None
    workflow_id = await _submit(runtime, options={"sync": False})
    await runtime.queued.run_until_idle()

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.COMPLETED
    assert wf.stage("enrichment").status == StageStatus.SKIPPED
    assert wf.stage("sync").status == StageStatus.SKIPPED
    assert sync_service.pushed == []


@pytest.mark.asyncio
async def test_quota_error_schedules_delayed_retry(collaborators, extraction):
    runtime = build_runtime(
        PoflowConfig(),
        collaborators=collaborators,
        repository=InMemoryWorkflowRepository(),
        metadata_store=InMemoryMetadataStore(),
        queue_backend=InMemoryQueueBackend(),
    )
    extraction.failures.append(QuotaExceededError("monthly page quota reached"))
    workflow_id = await _submit(runtime)

    before = utcnow()
    await runtime.queued.run_until_idle()

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.PROCESSING
    assert wf.current_stage == "extraction"
    assert wf.retry_count == 1
    assert wf.metadata["retry_reason"] == "quota_exceeded"
    next_retry_at = datetime.fromisoformat(wf.metadata["next_retry_at"])
    assert next_retry_at > before + timedelta(seconds=9)
    assert wf.stage("extraction").status == StageStatus.FAILED

    counts = (await runtime.queued.counts())["extraction"]
    assert counts.failed == 1
    assert counts.delayed == 1
    [retry] = runtime.queue_backend.pending_jobs("extraction")
    assert retry.attempts_made == 1


@pytest.mark.asyncio
async def test_transient_error_is_retried(runtime, extraction):
    extraction.failures.append(TransientError("extraction provider timed out"))
    workflow_id = await _submit(runtime)
    await runtime.queued.run_until_idle()

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.COMPLETED
    assert wf.retry_count == 1
    assert wf.stage("extraction").attempt == 2
    assert "next_retry_at" not in wf.metadata
    assert len(extraction.calls) == 2


@pytest.mark.asyncio
async def test_retry_budget_exhausted_fails_workflow(runtime, aggregates):
    aggregates.failures.extend(RuntimeError("connection refused") for _ in range(3))
    workflow_id = await _submit(runtime)
    await runtime.queued.run_until_idle()

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.FAILED
    assert wf.failed_stage == "persistence"
    assert wf.error_message == "persistence failed: connection refused"
    assert wf.retry_count == 2
    assert wf.stage("persistence").status == StageStatus.FAILED

    failed = await runtime.queued.drain_failed("persistence")
    assert [f.job.attempts_made for f in failed] == [0, 1, 2]
    assert (await runtime.queued.counts())["enrichment"].waiting == 0


@pytest.mark.asyncio
async def test_missing_upload_fails_without_retry(runtime, extraction):
    workflow_id = await _submit(runtime, dispatch=False)
    await runtime.metadata_store.delete(stage_key(workflow_id, "upload"))
    await runtime.dispatcher.dispatch(workflow_id)
    await runtime.queued.run_until_idle()

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.FAILED
    assert wf.failed_stage == "extraction"
    assert wf.retry_count == 0
    assert "uploaded document not available" in wf.error_message
    assert extraction.calls == []


@pytest.mark.asyncio
async def test_validation_error_before_persistence_fails(runtime, extraction):
    extraction.fields["totals"]["subtotal"] = "999.00"
    workflow_id = await _submit(runtime)
    await runtime.queued.run_until_idle()

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.FAILED
    assert wf.failed_stage == "normalization"
    assert wf.retry_count == 0


@pytest.mark.asyncio
async def test_validation_error_after_persistence_needs_review(runtime, sync_service):
    sync_service.failures.append(ValidationError("SKU B-2 unknown to the platform"))
    workflow_id = await _submit(runtime)
    await runtime.queued.run_until_idle()

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.REVIEW_NEEDED
    assert wf.failed_stage == "sync"
    assert wf.error_message == "sync failed: SKU B-2 unknown to the platform"
    assert wf.stage("status_update").status == StageStatus.PENDING


@pytest.mark.asyncio
async def test_redelivered_job_is_discarded(runtime, aggregates):
    workflow_id = await _submit(runtime)
    await runtime.queued.run_until_idle()
    assert aggregates.upserts == 1

    await runtime.queued.enqueue_stage(workflow_id, DEFAULT_STAGES.get("persistence"))
    await runtime.queued.run_until_idle()

    assert aggregates.upserts == 1
    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_completion_after_sweep_reset_is_stale(runtime, extraction):
    workflow_id = await _submit(runtime)
    original_extract = extraction.extract

    async def extract_then_get_swept(document, wf_id, options):
        result = await original_extract(document, wf_id, options)
        await runtime.sweep.recover(wf_id, now=utcnow() + timedelta(hours=1))
        return result

    extraction.extract = extract_then_get_swept
    await runtime.queued.run_until_idle()

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.PENDING
    assert wf.reattempt_count == 1
    assert wf.stages_completed == 0
    counts = await runtime.queued.counts()
    assert counts["normalization"].completed == 0
    assert counts["normalization"].waiting == 0


@pytest.mark.asyncio
async def test_pause_and_resume(runtime):
    await runtime.queued.pause("extraction")
    workflow_id = await _submit(runtime)

    assert await runtime.queued.run_until_idle() == 0
    assert (await runtime.queued.counts())["extraction"].paused

    await runtime.queued.resume("extraction")
    await runtime.queued.run_until_idle()
    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_start_consumes_queues_for_lifespan(runtime):
    workflow_ids = [await _submit(runtime) for _ in range(3)]
    await runtime.queued.start(lifespan=3.0)

    for workflow_id in workflow_ids:
        wf = await runtime.repository.get_workflow(workflow_id)
        assert wf.status == WorkflowStatus.COMPLETED


class DuplicateOrder(StageError):
    """A collaborator-specific error that must not be retried."""

    reason = "duplicate_order"


@pytest.mark.asyncio
async def test_non_retryable_stage_error_is_not_retried(runtime, sync_service):
    sync_service.failures.append(DuplicateOrder("PO-1001 already exists"))
    workflow_id = await _submit(runtime)
    await runtime.queued.run_until_idle()

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.FAILED
    assert wf.failed_stage == "sync"
    assert wf.retry_count == 0
    assert sync_service.pushed == []


@pytest.mark.asyncio
async def test_stage_finished_by_sweep_is_not_restarted(runtime, enricher):
    workflow_id = await _submit(runtime)
    await runtime.queued.run_until_idle(max_jobs=3)

    # the worker read the workflow, then the sweep finished it
    workflow = await runtime.repository.get_workflow(workflow_id)
    assert await runtime.sweep.recover(workflow_id, now=utcnow() + timedelta(hours=1)) == "completed"

    stage = DEFAULT_STAGES.get("enrichment")
    result = await runtime.queued.execute_stage(workflow, stage, attempt=1, started_at=utcnow())
    assert result is None

    wf = await runtime.repository.get_workflow(workflow_id)
    assert wf.status == WorkflowStatus.COMPLETED
    assert all(
        s.status in (StageStatus.COMPLETED, StageStatus.SKIPPED) for s in wf.stages
    )
    assert await runtime.metadata_store.get(stage_key(workflow_id, "enrichment")) is None
    assert enricher.calls == []
