"""Command line interface for operating mailflow."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
import yaml

from .config import MailflowConfig, load_config
from .delivery import (
    InMemorySubscriberDirectory,
    RecordingSendGateway,
    SendGridGateway,
    StaticTemplateRenderer,
)
from .engine import Collaborators, WorkflowEngine, create_engine
from .errors import MailflowError, ValidationError
from .events import get_transport
from .scheduler import EventListener

T = TypeVar("T")

app = typer.Typer(help="CLI for mailflow email automation")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
execution_app = typer.Typer(help="Commands for inspecting executions")
failures_app = typer.Typer(help="Commands for email delivery failures")
scheduler_app = typer.Typer(help="Commands for the background scheduler")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(failures_app, name="failures")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Root logging level"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to mailflow.yaml"),
) -> None:
    """mailflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config": str(config) if config else None}


def _config(ctx: typer.Context) -> MailflowConfig:
    return load_config((ctx.obj or {}).get("config"))


def _load_factory(target: str) -> Callable[[MailflowConfig], Collaborators]:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter("Factory must look like 'module:callable'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise typer.BadParameter(f"{module_name} has no attribute {attr}") from exc


def _default_collaborators(config: MailflowConfig) -> Collaborators:
    if config.sendgrid.api_key:
        gateway = SendGridGateway(config.sendgrid.api_key, config.sendgrid.base_url)
    else:
        gateway = RecordingSendGateway()
    return Collaborators(
        renderer=StaticTemplateRenderer(),
        gateway=gateway,
        directory=InMemorySubscriberDirectory(),
    )


def _build_engine(config: MailflowConfig, factory: Optional[str] = None) -> WorkflowEngine:
    if factory:
        collaborators = _load_factory(factory)(config)
    else:
        collaborators = _default_collaborators(config)
    return create_engine(
        config,
        renderer=collaborators.renderer,
        gateway=collaborators.gateway,
        directory=collaborators.directory,
    )


def _run(
    ctx: typer.Context,
    action: Callable[[WorkflowEngine], Awaitable[T]],
    factory: Optional[str] = None,
) -> T:
    """Run ``action`` against a fresh engine and turn mailflow errors into exit codes."""

    async def runner() -> T:
        engine = _build_engine(_config(ctx), factory)
        try:
            return await action(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(runner())
    except ValidationError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        for problem in exc.problems:
            typer.secho(f"  - {problem}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except MailflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _dump(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("list")
def workflow_list(ctx: typer.Context) -> None:
    """
    List all workflows.

    Example:
        mailflow workflow list
        # Output: 3f2c...    Welcome Series    active    v1
    """
    workflows = _run(ctx, lambda engine: engine.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "active" if wf.is_active else "inactive"
        typer.echo(f"{wf.id}\t{wf.name}\t{state}\tv{wf.version}")


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """Show a workflow's trigger, steps and counters."""
    wf = _run(ctx, lambda engine: engine.get_workflow(workflow_id))
    state = "active" if wf.is_active else "inactive"
    typer.echo(f"Workflow {wf.id}: {wf.name} (v{wf.version}, {state})")
    if wf.trigger is not None:
        typer.echo(f"Trigger: {wf.trigger.type}")
        for condition in wf.trigger.conditions:
            typer.echo(
                f"  {condition.logical_operator} {condition.field} {condition.operator} "
                f"{_dump(condition.value)}"
            )
    for step in wf.steps:
        targets = ", ".join(step.outgoing_refs()) or "end"
        typer.echo(f"- {step.id} [{step.type}] -> {targets}")
    stats = wf.stats
    typer.echo(
        f"Stats: triggered={stats.triggered} completed={stats.completed} failed={stats.failed}"
    )


@workflow_app.command("create")
def workflow_create(ctx: typer.Context, path: Path) -> None:
    """
    Create a workflow from a YAML or JSON file.

    Example:
        mailflow workflow create ./welcome.yaml
        # Output: Created workflow 3f2c...
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        typer.secho("Workflow file must contain a mapping", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    wf = _run(ctx, lambda engine: engine.create_workflow(data))
    typer.echo(f"Created workflow {wf.id}")


@workflow_app.command("delete")
def workflow_delete(
    ctx: typer.Context,
    workflow_id: str,
    cascade: bool = typer.Option(
        False, help="Fail in-flight executions instead of refusing the delete"
    ),
) -> None:
    """Delete a workflow."""
    _run(ctx, lambda engine: engine.delete_workflow(workflow_id, cascade=cascade))
    typer.echo(f"Deleted workflow {workflow_id}")


# ----------------------------------------------------------------------
# Executions


@execution_app.command("list")
def execution_list(
    ctx: typer.Context,
    workflow: Optional[str] = typer.Option(None, help="Only executions of this workflow"),
    limit: int = typer.Option(20, help="Maximum number of executions"),
) -> None:
    """List the most recent executions, newest first."""
    executions = _run(ctx, lambda engine: engine.recent_executions(workflow, limit=limit))
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(f"{ex.id}\t{ex.workflow_id}\t{ex.subscriber_id}\t{ex.status.value}")


@execution_app.command("show")
def execution_show(ctx: typer.Context, execution_id: str) -> None:
    """
    Show an execution and its step log.

    Example:
        mailflow execution show 9a1b...
        # Output: Execution 9a1b...: pending
        #         Scheduled: 2024-01-04T10:00:00+00:00
        #         - welcome_email: started
        #         - welcome_email: completed (12.5 ms)
    """
    ex = _run(ctx, lambda engine: engine.get_execution(execution_id))
    typer.echo(f"Execution {ex.id}: {ex.status.value}")
    typer.echo(f"Workflow: {ex.workflow_id} (v{ex.workflow_version})")
    typer.echo(f"Subscriber: {ex.subscriber_id}")
    if ex.current_step_id:
        typer.echo(f"Current step: {ex.current_step_id}")
    if ex.scheduled_at:
        typer.echo(f"Scheduled: {ex.scheduled_at.isoformat()}")
    if ex.awaiting_retry:
        typer.echo(f"Awaiting retry: {ex.awaiting_retry}")
    if ex.error:
        typer.secho(f"Error: {ex.error}", fg=typer.colors.RED)
    for entry in ex.execution_log:
        line = f"- {entry.step_id}: {entry.status}"
        if entry.duration_ms is not None:
            line += f" ({entry.duration_ms} ms)"
        if entry.error:
            line += f" error={entry.error}"
        typer.echo(line)


@execution_app.command("pause")
def execution_pause(ctx: typer.Context, execution_id: str) -> None:
    """Pause an execution at its next step boundary."""
    ex = _run(ctx, lambda engine: engine.pause_execution(execution_id))
    typer.echo(f"Execution {ex.id}: {ex.status.value}")


@execution_app.command("resume")
def execution_resume(
    ctx: typer.Context,
    execution_id: str,
    factory: Optional[str] = typer.Option(
        None, help="'module:callable' collaborators to run the execution here"
    ),
) -> None:
    """
    Resume a paused execution.

    Without --factory the execution is queued for the scheduler, which holds
    the real renderer, gateway and directory.

    Example:
        mailflow execution resume 9a1b...
        # Output: Execution 9a1b...: pending
    """
    ex = _run(
        ctx,
        lambda engine: engine.resume_execution(execution_id, advance=factory is not None),
        factory=factory,
    )
    typer.echo(f"Execution {ex.id}: {ex.status.value}")


# ----------------------------------------------------------------------
# Failures


@failures_app.command("report")
def failures_report(
    ctx: typer.Context,
    timeframe: str = typer.Option("24h", help="One of 1h, 24h or 7d"),
) -> None:
    """Summarise email delivery failures within a time window."""
    report = _run(ctx, lambda engine: engine.failure_report(timeframe))
    typer.echo(f"Failures since {report.since.isoformat()} ({report.timeframe})")
    typer.echo(f"Total: {report.total_failures}")
    typer.echo(f"Pending retries: {report.pending_retries}")
    typer.echo(f"Permanent: {report.permanent_failures}")
    for kind, count in sorted(report.error_breakdown.items()):
        typer.echo(f"  {kind}: {count}")
    for item in report.top_failed_recipients:
        typer.echo(f"  {item.recipient}: {item.count}")


# ----------------------------------------------------------------------
# Scheduler


@scheduler_app.command("run")
def scheduler_run(
    ctx: typer.Context,
    factory: str = typer.Option(
        ..., help="'module:callable' returning the renderer, gateway and directory"
    ),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until interrupted)"
    ),
    listen_events: bool = typer.Option(
        False, help="Also consume trigger events from the configured transport"
    ),
) -> None:
    """
    Run the scheduler loop.

    Processes due delayed executions and email retries every poll interval,
    optionally while consuming trigger events.

    Example:
        mailflow scheduler run --factory myapp.mail:collaborators
        mailflow scheduler run --factory myapp.mail:collaborators --lifespan 300 --listen-events
    """
    config = _config(ctx)

    async def serve(engine: WorkflowEngine) -> None:
        tasks = [engine.scheduler.run(lifespan=lifespan)]
        transport = get_transport(config=config) if listen_events else None
        if transport is not None:
            listener = EventListener(transport, engine.handle_event, topic=config.events.topic)
            tasks.append(listener.run(lifespan=lifespan))
        typer.echo("Starting scheduler")
        try:
            await asyncio.gather(*tasks)
        finally:
            if transport is not None:
                await transport.disconnect()
            typer.echo("Scheduler stopped")

    _run(ctx, serve, factory=factory)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
