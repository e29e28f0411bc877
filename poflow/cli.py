"""Command line interface for running poflow workers and operating workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer

from .config import load_config
from .errors import InvalidTransition
from .persistence.models import WorkflowStatus
from .runtime import Runtime, build_runtime

app = typer.Typer(help="CLI for poflow purchase-order workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running stage workers")
sweep_app = typer.Typer(help="Commands for the stuck-workflow recovery sweep")
workflow_app = typer.Typer(help="Commands for inspecting and repairing workflows")
queue_app = typer.Typer(help="Commands for administering stage queues")

app.add_typer(worker_app, name="worker")
app.add_typer(sweep_app, name="sweep")
app.add_typer(workflow_app, name="workflow")
app.add_typer(queue_app, name="queue")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to a poflow YAML config file"
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """poflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config_path": config}


def _runtime(ctx: typer.Context) -> Runtime:
    config_path = (ctx.obj or {}).get("config_path")
    return build_runtime(load_config(config_path))


def _check_stage(runtime: Runtime, stage: str) -> None:
    if stage not in runtime.queued.stages:
        typer.secho(f"Unknown stage: {stage}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@worker_app.command("run")
def worker_run(
    ctx: typer.Context,
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run consumers for every stage queue.

    Each stage is consumed with its configured concurrency. The worker keeps
    running until stopped or until ``--lifespan`` expires.

    Example:
        poflow worker run
        poflow --config poflow.yaml worker run --lifespan 300
    """
    runtime = _runtime(ctx)

    async def _run() -> None:
        async with runtime:
            await runtime.queued.start(lifespan=lifespan)

    typer.echo("Starting stage workers")
    asyncio.run(_run())


@sweep_app.command("run")
def sweep_run(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Run a single pass and exit"),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
    interval: Optional[float] = typer.Option(
        None, help="Seconds between passes (default: recovery.interval_seconds)"
    ),
    dispatch_pending: bool = typer.Option(
        True,
        "--dispatch-pending/--no-dispatch-pending",
        help="Dispatch pending workflows, including those just reset, after each pass",
    ),
) -> None:
    """
    Repair workflows stuck in processing.

    Example:
        poflow sweep run --once
        # Output: scanned=2 completed=1 review_needed=0 reset=1 abandoned=0 ... dispatched=1
    """
    runtime = _runtime(ctx)
    on_pass = runtime.dispatcher.dispatch_pending if dispatch_pending else None

    async def _once() -> str:
        async with runtime:
            report = await runtime.sweep.run_once()
            summary = " ".join(f"{k}={v}" for k, v in report.as_dict().items())
            if on_pass is not None:
                summary += f" dispatched={await on_pass()}"
            return summary

    async def _forever() -> None:
        async with runtime:
            await runtime.sweep.run_forever(
                interval=interval, lifespan=lifespan, on_pass=on_pass
            )

    if once:
        typer.echo(asyncio.run(_once()))
        return
    asyncio.run(_forever())


@workflow_app.command("list")
def workflow_list(
    ctx: typer.Context,
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only this status"),
    limit: Optional[int] = typer.Option(None, help="Maximum number of workflows"),
) -> None:
    """
    List workflows with their status and progress.

    Example:
        poflow workflow list --status processing
        # Output: wf_3f2a...    processing    persistence    33%
    """
    runtime = _runtime(ctx)
    workflows = asyncio.run(runtime.repository.list_workflows(status, limit=limit))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(
            f"{wf.workflow_id}\t{wf.status.value}\t"
            f"{wf.current_stage or '-'}\t{wf.progress_percent}%"
        )


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """
    Show a workflow and the record of each of its stages.

    Example:
        poflow workflow show wf_3f2a...
        # Output: Workflow wf_3f2a...: failed (persistence)
        #         Error: persistence failed: connection refused
        #         - extraction: completed (412 ms)
    """
    runtime = _runtime(ctx)
    wf = asyncio.run(runtime.repository.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Workflow {wf.workflow_id}: {wf.status.value}"
        + (f" ({wf.current_stage})" if wf.current_stage else "")
    )
    typer.echo(
        f"Progress: {wf.stages_completed}/{wf.stages_total} ({wf.progress_percent}%)"
    )
    if wf.owner_id:
        typer.echo(f"Owner: {wf.owner_id}")
    if wf.error_message:
        typer.echo(f"Error: {wf.error_message}")
    if wf.metadata:
        typer.echo(f"Metadata: {json.dumps(wf.metadata, default=str)}")
    for stage in wf.stages:
        typer.echo(
            f"- {stage.stage_name}: {stage.status.value}"
            + (f" ({stage.duration_ms:.0f} ms)" if stage.duration_ms is not None else "")
            + (f" [{stage.error_message}]" if stage.error_message else "")
        )


@workflow_app.command("resubmit")
def workflow_resubmit(ctx: typer.Context, workflow_id: str) -> None:
    """
    Send a failed or review_needed workflow back to pending and dispatch it.

    Example:
        poflow workflow resubmit wf_3f2a...
    """
    runtime = _runtime(ctx)

    async def _resubmit() -> bool:
        async with runtime:
            return await runtime.dispatcher.resubmit(workflow_id)

    try:
        resubmitted = asyncio.run(_resubmit())
    except LookupError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    except InvalidTransition as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not resubmitted:
        typer.secho("Workflow changed concurrently, not resubmitted", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} resubmitted")


@workflow_app.command("dispatch-pending")
def workflow_dispatch_pending(
    ctx: typer.Context,
    limit: Optional[int] = typer.Option(None, help="Maximum number to dispatch"),
) -> None:
    """
    Dispatch pending workflows, including those reset by the recovery sweep.

    Example:
        poflow workflow dispatch-pending --limit 20
    """
    runtime = _runtime(ctx)

    async def _dispatch() -> int:
        async with runtime:
            return await runtime.dispatcher.dispatch_pending(limit=limit)

    started = asyncio.run(_dispatch())
    typer.echo(f"Dispatched {started} workflows")


@queue_app.command("counts")
def queue_counts(ctx: typer.Context) -> None:
    """
    Show waiting/active/completed/failed/delayed counts per stage queue.
    """
    runtime = _runtime(ctx)

    async def _counts():
        async with runtime:
            return await runtime.queued.counts()

    for stage, counts in asyncio.run(_counts()).items():
        typer.echo(
            f"{stage}\twaiting={counts.waiting} active={counts.active} "
            f"completed={counts.completed} failed={counts.failed} "
            f"delayed={counts.delayed}" + (" paused" if counts.paused else "")
        )


@queue_app.command("pause")
def queue_pause(ctx: typer.Context, stage: str) -> None:
    """Stop handing out jobs for a stage."""
    runtime = _runtime(ctx)
    _check_stage(runtime, stage)

    async def _pause() -> None:
        async with runtime:
            await runtime.queued.pause(stage)

    asyncio.run(_pause())
    typer.echo(f"Paused {stage}")


@queue_app.command("resume")
def queue_resume(ctx: typer.Context, stage: str) -> None:
    """Resume a paused stage queue."""
    runtime = _runtime(ctx)
    _check_stage(runtime, stage)

    async def _resume() -> None:
        async with runtime:
            await runtime.queued.resume(stage)

    asyncio.run(_resume())
    typer.echo(f"Resumed {stage}")


@queue_app.command("drain-failed")
def queue_drain_failed(ctx: typer.Context, stage: str) -> None:
    """Remove and print the failed jobs of a stage queue."""
    runtime = _runtime(ctx)
    _check_stage(runtime, stage)

    async def _drain():
        async with runtime:
            return await runtime.queued.drain_failed(stage)

    drained = asyncio.run(_drain())
    if not drained:
        typer.echo("No failed jobs")
        return
    for failed in drained:
        typer.echo(
            f"{failed.job.job_id}\t{failed.job.workflow_id}\t"
            f"attempt {failed.job.attempts_made + 1}\t{failed.error}"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
