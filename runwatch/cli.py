"""Command line interface for watching pipeline runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import typer

from runwatch import RunMonitor, get_client, load_config
from runwatch.cli_utils.render import format_builds, format_timeline
from runwatch.config import RunwatchConfig
from runwatch.contracts import ApprovalDecision, Pipeline
from runwatch.errors import RunwatchError
from runwatch.monitor import MonitoredEntity

app = typer.Typer(help="CLI for watching Azure DevOps pipeline runs")

# Command groups
stage_app = typer.Typer(help="Commands acting on a stage of a run")
run_app = typer.Typer(help="Commands acting on a whole run")

app.add_typer(stage_app, name="stage")
app.add_typer(run_app, name="run")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to runwatch.yaml (default: RUNWATCH_CONFIG)"
    ),
) -> None:
    """Runwatch CLI entry point."""
    settings = load_config(config)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


def _settings(ctx: typer.Context, watch: bool = False) -> RunwatchConfig:
    settings: RunwatchConfig = ctx.obj or load_config()
    if watch:
        return settings
    # One-shot commands never leave a timer behind.
    settings = settings.model_copy(deep=True)
    settings.polling.enabled = False
    return settings


def _run(
    settings: RunwatchConfig, action: Callable[[RunMonitor], Awaitable[None]]
) -> None:
    """Run ``action`` against a monitor, reporting failures in red."""

    async def runner() -> None:
        async with get_client(config=settings) as client:
            monitor = RunMonitor(client, settings)
            try:
                await action(monitor)
            finally:
                monitor.close()

    try:
        asyncio.run(runner())
    except (RunwatchError, ValueError) as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


async def _watch(monitor: RunMonitor, entity: MonitoredEntity, render: Callable[[], None]) -> None:
    """Re-render ``entity`` on every change until its polling stops."""
    if not monitor.polling_active(entity):
        return
    finished = asyncio.Event()

    def on_changed(changed: MonitoredEntity) -> None:
        if changed is entity:
            render()

    def on_polling(changed: MonitoredEntity, active: bool) -> None:
        if changed is entity and not active:
            finished.set()

    def on_error(changed: MonitoredEntity, error: BaseException) -> None:
        typer.secho(f"Refresh failed: {error}", fg=typer.colors.RED, err=True)

    monitor.on_snapshot_changed(on_changed)
    monitor.on_polling_changed(on_polling)
    monitor.on_refresh_error(on_error)
    await finished.wait()


@app.command("projects")
def projects(ctx: typer.Context) -> None:
    """List the projects of the configured organization."""

    async def action(monitor: RunMonitor) -> None:
        items = await monitor.client.list_projects()
        if not items:
            typer.echo("No projects found")
            return
        for project in items:
            typer.echo(project.name)

    _run(_settings(ctx), action)


@app.command("pipelines")
def pipelines(ctx: typer.Context, project: str) -> None:
    """List the pipelines of PROJECT."""

    async def action(monitor: RunMonitor) -> None:
        items = await monitor.client.list_pipelines(project)
        if not items:
            typer.echo("No pipelines found")
            return
        for pipeline in items:
            folder = (pipeline.folder or "\\").rstrip("\\")
            typer.echo(f"{pipeline.id}\t{folder}\\{pipeline.name}")

    _run(_settings(ctx), action)


@app.command("builds")
def builds(
    ctx: typer.Context,
    project: str,
    pipeline_id: int,
    watch: bool = typer.Option(False, help="Keep refreshing while builds are active"),
    pages: int = typer.Option(1, min=1, help="Number of pages of builds to show"),
) -> None:
    """
    Show the most recent runs of a pipeline.

    Example:
        runwatch builds MyProject 12 --pages 2
        # Output: ✓ #20240101.1 (345)  main  Fix flaky test
    """

    async def action(monitor: RunMonitor) -> None:
        await monitor.select_pipeline(project, Pipeline(id=pipeline_id))
        for _ in range(pages - 1):
            await monitor.load_more_builds()

        def render() -> None:
            lines = format_builds(monitor.builds)
            typer.echo("\n".join(lines) if lines else "No builds found")

        render()
        await _watch(monitor, MonitoredEntity.BUILDS, render)

    _run(_settings(ctx, watch=watch), action)


@app.command("timeline")
def timeline(
    ctx: typer.Context,
    project: str,
    pipeline_id: int,
    run_id: int,
    watch: bool = typer.Option(False, help="Keep refreshing while the run is active"),
) -> None:
    """Show the stage tree of a run."""

    async def action(monitor: RunMonitor) -> None:
        await _select(monitor, project, pipeline_id, run_id)

        def render() -> None:
            index = monitor.timeline()
            lines = format_timeline(index) if index is not None else []
            typer.echo("\n".join(lines) if lines else "No stages found")

        render()
        await _watch(monitor, MonitoredEntity.TIMELINE, render)

    _run(_settings(ctx, watch=watch), action)


async def _select(
    monitor: RunMonitor, project: str, pipeline_id: int, run_id: Optional[int] = None
) -> None:
    await monitor.select_pipeline(project, Pipeline(id=pipeline_id))
    if run_id is not None:
        await monitor.select_run(run_id)


@stage_app.command("retry")
def stage_retry(
    ctx: typer.Context,
    project: str,
    pipeline_id: int,
    run_id: int,
    stage_id: str,
    dependents: bool = typer.Option(
        False, help="When rerunning a succeeded stage, also rerun its dependents"
    ),
) -> None:
    """Retry or rerun a stage, choosing the strategy from its outcome."""

    async def action(monitor: RunMonitor) -> None:
        await _select(monitor, project, pipeline_id, run_id)
        decision = monitor.resolve_retry_action(stage_id)
        await monitor.execute_retry(
            decision,
            retry_dependents=dependents and decision.requires_dependents_choice,
        )
        typer.echo(f"{decision.strategy.value}: {decision.stage_name or stage_id}")

    _run(_settings(ctx), action)


@stage_app.command("approve")
def stage_approve(
    ctx: typer.Context,
    project: str,
    pipeline_id: int,
    run_id: int,
    stage_id: str,
    reject: bool = typer.Option(False, "--reject", help="Reject instead of approving"),
    comment: str = typer.Option("", help="Comment recorded with the decision"),
) -> None:
    """Approve (or reject) the manual approval blocking a stage."""

    async def action(monitor: RunMonitor) -> None:
        await _select(monitor, project, pipeline_id, run_id)
        decision = ApprovalDecision.REJECT if reject else ApprovalDecision.APPROVE
        approval = await monitor.decide_approval(stage_id, decision, comment)
        typer.echo(f"Approval {approval.id}: {approval.status.value}")

    _run(_settings(ctx), action)


@run_app.command("cancel")
def run_cancel(ctx: typer.Context, project: str, pipeline_id: int, run_id: int) -> None:
    """Cancel an active run."""

    async def action(monitor: RunMonitor) -> None:
        await _select(monitor, project, pipeline_id)
        await monitor.cancel_run(run_id)
        typer.echo(f"Run {run_id} is being cancelled")

    _run(_settings(ctx), action)


@run_app.command("delete")
def run_delete(ctx: typer.Context, project: str, pipeline_id: int, run_id: int) -> None:
    """Delete a run."""

    async def action(monitor: RunMonitor) -> None:
        await _select(monitor, project, pipeline_id)
        await monitor.delete_run(run_id)
        typer.echo(f"Run {run_id} deleted")

    _run(_settings(ctx), action)


@run_app.command("retain")
def run_retain(
    ctx: typer.Context,
    project: str,
    pipeline_id: int,
    run_id: int,
    release: bool = typer.Option(False, "--release", help="Release the retention leases"),
) -> None:
    """Retain a run indefinitely, or release it with --release."""

    async def action(monitor: RunMonitor) -> None:
        await _select(monitor, project, pipeline_id)
        await monitor.set_retention(run_id, keep=not release)
        typer.echo(f"Run {run_id} " + ("released" if release else "retained"))

    _run(_settings(ctx), action)


@run_app.command("trigger")
def run_trigger(
    ctx: typer.Context,
    project: str,
    pipeline_id: int,
    branch: str = typer.Option(..., help="Branch to run the pipeline on"),
) -> None:
    """Queue a new run of a pipeline."""

    async def action(monitor: RunMonitor) -> None:
        await _select(monitor, project, pipeline_id)
        build = await monitor.run_pipeline(branch)
        typer.echo(f"Queued run {build.id} on {branch}")

    _run(_settings(ctx), action)


@run_app.command("retrigger")
def run_retrigger(ctx: typer.Context, project: str, pipeline_id: int, run_id: int) -> None:
    """Queue a new run with the branch and parameters of an earlier one."""

    async def action(monitor: RunMonitor) -> None:
        await _select(monitor, project, pipeline_id)
        build = await monitor.retrigger_run(run_id)
        typer.echo(f"Queued run {build.id} on {build.branch}")

    _run(_settings(ctx), action)


@run_app.command("log")
def run_log(
    ctx: typer.Context, project: str, pipeline_id: int, run_id: int, record_id: str
) -> None:
    """Print the log of a task, job or stage of a run."""

    async def action(monitor: RunMonitor) -> None:
        await _select(monitor, project, pipeline_id, run_id)
        for line in await monitor.get_task_log(record_id):
            typer.echo(line)

    _run(_settings(ctx), action)


if __name__ == "__main__":
    app()
