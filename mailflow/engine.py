"""The workflow engine: the public entry point for operators and integrations."""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar, Union

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .conditions import evaluate_conditions
from .config import MailflowConfig, load_config
from .constants import RECENT_EXECUTIONS_LIMIT
from .contracts import (
    STRUCTURAL_FIELDS,
    AnalyticsStats,
    Delay,
    ExecutionStatus,
    TriggerEvent,
    WorkflowAnalytics,
    WorkflowDefinition,
    WorkflowDraft,
    WorkflowExecution,
    WorkflowSummary,
    utcnow,
)
from .delivery.base import SendGateway, SubscriberDirectory, TemplateRenderer
from .delivery.coordinator import RetryCoordinator
from .delivery.models import ErrorReport, FailureStats
from .errors import EngineError, MailflowError, NotFoundError, ValidationError
from .persistence import WorkflowStore, get_store
from .runner import ExecutionRunner
from .scheduler import Scheduler
from .steps import StepHandlers
from .templates import abandoned_cart, welcome_series
from .validation import coerce_draft, validate_definition

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = (
    ExecutionStatus.PENDING,
    ExecutionStatus.RUNNING,
    ExecutionStatus.PAUSED,
)
PROTECTED_FIELDS = {"id", "version", "created_at", "updated_at", "stats"}

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def engine_boundary(func: F) -> F:
    """Let mailflow errors through and wrap anything else in ``EngineError``."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except MailflowError:
            raise
        except Exception as exc:
            logger.exception(f"{func.__name__} failed unexpectedly")
            raise EngineError(f"{func.__name__} failed: {exc}") from exc

    return wrapper  # type: ignore[return-value]


@dataclass
class Collaborators:
    """The external services an engine needs to send and personalise email."""

    renderer: TemplateRenderer
    gateway: SendGateway
    directory: SubscriberDirectory


class WorkflowEngine:
    """Create workflows, trigger executions and query their progress."""

    def __init__(
        self,
        store: WorkflowStore,
        directory: SubscriberDirectory,
        coordinator: RetryCoordinator,
        runner: ExecutionRunner,
        scheduler: Scheduler,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.directory = directory
        self.coordinator = coordinator
        self.runner = runner
        self.scheduler = scheduler
        self._clock = clock

    # ------------------------------------------------------------------
    # Workflows
    @engine_boundary
    async def create_workflow(
        self, draft: Union[WorkflowDraft, Mapping[str, Any]]
    ) -> WorkflowDefinition:
        draft = coerce_draft(draft)
        validate_definition(draft)
        now = self._clock()
        workflow = WorkflowDefinition.model_validate(
            {**draft.model_dump(), "created_at": now, "updated_at": now}
        )
        await self.store.save_workflow(workflow)
        logger.info(f"Created workflow {workflow.id} ({workflow.name})")
        return workflow

    @engine_boundary
    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    @engine_boundary
    async def list_workflows(self) -> List[WorkflowDefinition]:
        return await self.store.list_workflows()

    async def _in_flight(self, workflow_id: str) -> List[WorkflowExecution]:
        return await self.store.list_executions(
            workflow_id=workflow_id, statuses=IN_FLIGHT_STATUSES
        )

    @engine_boundary
    async def update_workflow(
        self, workflow_id: str, changes: Union[WorkflowDraft, Mapping[str, Any]]
    ) -> WorkflowDefinition:
        """Apply ``changes`` to a stored workflow.

        Changing the trigger or the steps is refused while executions of the
        workflow are still in flight, and bumps ``version`` when accepted.
        """
        current = await self.get_workflow(workflow_id)
        if isinstance(changes, BaseModel):
            updates: Dict[str, Any] = changes.model_dump(exclude_unset=True)
        else:
            updates = dict(changes)
        for field in PROTECTED_FIELDS.intersection(updates):
            updates.pop(field)

        merged = current.model_dump(exclude={"stats"})
        merged.update(updates)
        try:
            candidate = WorkflowDefinition.model_validate(merged)
        except PydanticValidationError as exc:
            problems = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            ]
            raise ValidationError("Invalid workflow definition", problems) from exc
        validate_definition(candidate)

        structural = any(
            getattr(candidate, field) != getattr(current, field) for field in STRUCTURAL_FIELDS
        )
        if structural:
            in_flight = await self._in_flight(workflow_id)
            if in_flight:
                raise ValidationError(
                    f"Workflow {workflow_id} has {len(in_flight)} in-flight execution(s); "
                    "trigger and step changes are refused until they finish"
                )
            candidate.version = current.version + 1

        candidate.updated_at = self._clock()
        await self.store.save_workflow(candidate)
        logger.info(f"Updated workflow {workflow_id} (version {candidate.version})")
        return await self.get_workflow(workflow_id)

    @engine_boundary
    async def delete_workflow(self, workflow_id: str, cascade: bool = False) -> None:
        """Delete a workflow.

        With executions still in flight this raises ``ValidationError`` unless
        ``cascade`` is set, in which case they are failed with
        "Workflow deleted" first.
        """
        await self.get_workflow(workflow_id)
        in_flight = await self._in_flight(workflow_id)
        if in_flight and not cascade:
            raise ValidationError(
                f"Workflow {workflow_id} has {len(in_flight)} in-flight execution(s)"
            )

        for execution in in_flight:
            async with self.runner.locks.hold(execution.id):
                fresh = await self.store.get_execution(execution.id)
                if fresh is None or fresh.is_terminal:
                    continue
                if fresh.awaiting_retry:
                    await self.store.delete_send_failure(fresh.awaiting_retry)
                fresh.transition(ExecutionStatus.FAILED, self._clock(), error="Workflow deleted")
                await self.store.save_execution(fresh)

        await self.store.delete_workflow(workflow_id)
        logger.info(f"Deleted workflow {workflow_id} ({len(in_flight)} executions closed)")

    # ------------------------------------------------------------------
    # Executions
    @engine_boundary
    async def trigger_workflow(
        self,
        workflow_id: str,
        subscriber_id: str,
        event_payload: Optional[Mapping[str, Any]] = None,
        delay: Optional[Delay] = None,
    ) -> WorkflowExecution:
        workflow = await self.get_workflow(workflow_id)
        if not workflow.is_active:
            raise ValidationError(f"Workflow {workflow_id} is not active")

        subscriber = await self.directory.get(subscriber_id)
        if subscriber is None:
            raise NotFoundError(f"Subscriber {subscriber_id} not found")

        data = {**subscriber, **(event_payload or {})}
        conditions = workflow.trigger.conditions if workflow.trigger else []
        if not evaluate_conditions(conditions, data):
            raise ValidationError(
                f"Trigger conditions not met for workflow {workflow_id} "
                f"and subscriber {subscriber_id}"
            )

        now = self._clock()
        due = now + delay.to_timedelta() if delay is not None else None
        deferred = due is not None and due > now
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            subscriber_id=subscriber_id,
            subscriber_data=data,
            current_step_id=workflow.first_step_id(),
            status=ExecutionStatus.PENDING if deferred else ExecutionStatus.RUNNING,
            started_at=now,
            updated_at=now,
            scheduled_at=due if deferred else None,
        )
        await self.store.create_execution(execution)
        await self.store.increment_workflow_stats(workflow.id, triggered=1)
        logger.info(
            f"Triggered workflow {workflow.id} for {subscriber_id} (execution {execution.id})"
        )

        if deferred:
            return execution
        return await self.runner.advance(execution.id)

    @engine_boundary
    async def handle_event(self, event: TriggerEvent) -> List[WorkflowExecution]:
        """Start every active workflow whose trigger matches ``event``."""
        started: List[WorkflowExecution] = []
        for workflow in await self.store.list_workflows():
            if not workflow.is_active or workflow.trigger is None:
                continue
            if workflow.trigger.type != event.event_type:
                continue
            try:
                started.append(
                    await self.trigger_workflow(workflow.id, event.subscriber_id, event.payload)
                )
            except ValidationError as e:
                logger.debug(f"Event {event.event_id} skipped workflow {workflow.id}: {e}")
            except MailflowError as e:
                logger.warning(f"Event {event.event_id} failed for workflow {workflow.id}: {e}")
        return started

    @engine_boundary
    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    @engine_boundary
    async def pause_execution(self, execution_id: str) -> WorkflowExecution:
        async with self.runner.locks.hold(execution_id):
            execution = await self.get_execution(execution_id)
            if execution.status not in (ExecutionStatus.RUNNING, ExecutionStatus.PENDING):
                raise ValidationError(
                    f"Cannot pause execution {execution_id} in status {execution.status.value}"
                )
            execution.resume_at = execution.scheduled_at
            execution.transition(ExecutionStatus.PAUSED, self._clock())
            await self.store.save_execution(execution)
        logger.info(f"Paused execution {execution_id}")
        return execution

    @engine_boundary
    async def resume_execution(
        self, execution_id: str, advance: bool = True
    ) -> WorkflowExecution:
        """Resume a paused execution.

        With ``advance`` false a ready execution is queued as due now for the
        scheduler instead of being run in this process.
        """
        async with self.runner.locks.hold(execution_id):
            execution = await self.get_execution(execution_id)
            if execution.status != ExecutionStatus.PAUSED:
                raise ValidationError(f"Execution {execution_id} is not paused")

            now = self._clock()
            resume_at, execution.resume_at = execution.resume_at, None
            if execution.awaiting_retry:
                execution.transition(ExecutionStatus.PENDING, now)
            elif resume_at is not None and resume_at > now:
                execution.transition(ExecutionStatus.PENDING, now, scheduled_at=resume_at)
            elif not advance:
                execution.transition(ExecutionStatus.PENDING, now, scheduled_at=now)
            else:
                execution.transition(ExecutionStatus.RUNNING, now)
            await self.store.save_execution(execution)
        logger.info(f"Resumed execution {execution_id} as {execution.status.value}")

        if execution.status == ExecutionStatus.RUNNING:
            return await self.runner.advance(execution_id)
        return execution

    # ------------------------------------------------------------------
    # Analytics
    @engine_boundary
    async def get_workflow_analytics(self, workflow_id: str) -> WorkflowAnalytics:
        workflow = await self.get_workflow(workflow_id)
        executions = await self.store.list_executions(workflow_id=workflow_id)

        durations = [
            (e.completed_at - e.started_at).total_seconds()
            for e in executions
            if e.status == ExecutionStatus.COMPLETED and e.completed_at is not None
        ]
        avg_minutes = round(sum(durations) / len(durations) / 60) if durations else 0

        return WorkflowAnalytics(
            workflow=WorkflowSummary(
                id=workflow.id, name=workflow.name, is_active=workflow.is_active
            ),
            stats=AnalyticsStats(
                **workflow.stats.model_dump(), avg_completion_minutes=avg_minutes
            ),
            recent_executions=executions[:RECENT_EXECUTIONS_LIMIT],
        )

    @engine_boundary
    async def recent_executions(
        self, workflow_id: Optional[str] = None, limit: int = RECENT_EXECUTIONS_LIMIT
    ) -> List[WorkflowExecution]:
        return await self.store.list_executions(workflow_id=workflow_id, limit=limit)

    @engine_boundary
    async def failure_report(self, timeframe: str = "24h") -> ErrorReport:
        return await self.coordinator.error_report(timeframe)

    @engine_boundary
    async def failure_stats(self) -> FailureStats:
        return await self.coordinator.failure_stats()

    # ------------------------------------------------------------------
    # Pre-built workflows
    async def create_welcome_workflow(
        self, template_id: str, followup_template_id: Optional[str] = None
    ) -> WorkflowDefinition:
        return await self.create_workflow(welcome_series(template_id, followup_template_id))

    async def create_abandoned_cart_workflow(self, template_id: str) -> WorkflowDefinition:
        return await self.create_workflow(abandoned_cart(template_id, self._clock()))

    async def close(self) -> None:
        self.scheduler.stop()
        await self.store.close()


def create_engine(
    config: Optional[MailflowConfig] = None,
    *,
    renderer: TemplateRenderer,
    gateway: SendGateway,
    directory: SubscriberDirectory,
    store: Optional[WorkflowStore] = None,
    clock: Callable[[], datetime] = utcnow,
    http_client: Optional[httpx.AsyncClient] = None,
) -> WorkflowEngine:
    """Wire a store, retry coordinator, runner and scheduler into an engine."""

    config = config or load_config()
    store = store or get_store(config=config)
    coordinator = RetryCoordinator(
        store,
        gateway,
        directory=directory,
        config=config.retry,
        send_timeout=config.timeouts.email,
        clock=clock,
    )
    handlers = StepHandlers(
        renderer,
        coordinator,
        directory,
        sender=config.sender,
        webhook_timeout=config.timeouts.webhook,
        http_client=http_client,
        clock=clock,
    )
    runner = ExecutionRunner(
        store, handlers, max_steps_per_tick=config.scheduler.max_steps_per_tick, clock=clock
    )
    scheduler = Scheduler(store, runner, coordinator, config=config.scheduler, clock=clock)
    return WorkflowEngine(store, directory, coordinator, runner, scheduler, clock=clock)
