"""Drives workflow executions forward one step at a time."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from .contracts import (
    ExecutionStatus,
    StepBase,
    WorkflowDefinition,
    WorkflowExecution,
    utcnow,
)
from .delivery.models import RetryOutcome
from .errors import NotFoundError, TransientSendError
from .persistence import WorkflowStore
from .steps import StepHandlers
from .utils.locks import KeyedLock

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


class ExecutionRunner:
    """Advance executions through their workflow graph.

    The per-execution lock is held for one step at a time and the execution
    is re-read before every step, so a pause issued while a step is running
    takes effect at the next step boundary.
    """

    def __init__(
        self,
        store: WorkflowStore,
        handlers: StepHandlers,
        max_steps_per_tick: int = 50,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self._store = store
        self._handlers = handlers
        self._max_steps = max_steps_per_tick
        self._clock = clock
        self.locks = locks or KeyedLock()

    async def _load(self, execution_id: str) -> WorkflowExecution:
        execution = await self._store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def advance(self, execution_id: str) -> WorkflowExecution:
        """Run a ``running`` execution until it waits, stops or finishes."""
        steps_taken = 0
        while True:
            async with self.locks.hold(execution_id):
                execution = await self._load(execution_id)
                if execution.status != ExecutionStatus.RUNNING:
                    return execution
                proceed = await self._step_once(execution, steps_taken)
            if not proceed:
                return execution
            steps_taken += 1

    async def _step_once(self, execution: WorkflowExecution, steps_taken: int) -> bool:
        workflow = await self._store.get_workflow(execution.workflow_id)
        if workflow is None:
            await self._fail(execution, None, "Workflow not found")
            return False

        step = workflow.get_step(execution.current_step_id)
        if step is None:
            await self._complete(execution, workflow)
            return False

        now = self._clock()
        if steps_taken >= self._max_steps:
            execution.transition(ExecutionStatus.PENDING, now, scheduled_at=now)
            await self._store.save_execution(execution)
            logger.info(
                f"Execution {execution.id} yielded after {steps_taken} steps; "
                f"rescheduled at step {step.id}"
            )
            return False

        execution.log(step, "started", now)
        await self._store.save_execution(execution)
        started = time.perf_counter()

        try:
            result = await self._handlers.run(step, execution)
        except TransientSendError as exc:
            execution.log(
                step,
                "retrying",
                self._clock(),
                duration_ms=_elapsed_ms(started),
                data={
                    "attempt": exc.attempts,
                    "kind": exc.kind,
                    "next_retry": exc.next_retry.isoformat() if exc.next_retry else None,
                },
                error=str(exc),
            )
            execution.awaiting_retry = exc.retry_key
            execution.transition(ExecutionStatus.PENDING, now)
            await self._store.save_execution(execution)
            return False
        except Exception as exc:
            logger.warning(f"Step {step.id} of execution {execution.id} failed: {exc}")
            execution.log(
                step, "failed", self._clock(), duration_ms=_elapsed_ms(started), error=str(exc)
            )
            await self._fail(execution, workflow, str(exc))
            return False

        execution.log(
            step, "completed", self._clock(), duration_ms=_elapsed_ms(started), data=result.data
        )
        execution.current_step_id = result.next_step_id

        if result.defer_until is not None:
            execution.transition(ExecutionStatus.PENDING, now, scheduled_at=result.defer_until)
            await self._store.save_execution(execution)
            logger.debug(
                f"Execution {execution.id} waiting until {result.defer_until.isoformat()}"
            )
            return False

        if result.next_step_id is None:
            await self._complete(execution, workflow)
            return False

        await self._store.save_execution(execution)
        return True

    async def _complete(
        self, execution: WorkflowExecution, workflow: Optional[WorkflowDefinition]
    ) -> None:
        execution.transition(ExecutionStatus.COMPLETED, self._clock())
        await self._store.save_execution(execution)
        if workflow is not None:
            await self._store.increment_workflow_stats(workflow.id, completed=1)
        logger.info(f"Execution {execution.id} completed")

    async def _fail(
        self,
        execution: WorkflowExecution,
        workflow: Optional[WorkflowDefinition],
        error: str,
    ) -> None:
        execution.transition(ExecutionStatus.FAILED, self._clock(), error=error)
        await self._store.save_execution(execution)
        if workflow is not None:
            await self._store.increment_workflow_stats(workflow.id, failed=1)
        logger.error(f"Execution {execution.id} failed: {error}")

    # ------------------------------------------------------------------
    async def resume_after_retry(self, outcome: RetryOutcome) -> Optional[WorkflowExecution]:
        """Apply the result of a background email retry to its execution."""
        if not outcome.execution_id:
            return None

        async with self.locks.hold(outcome.execution_id):
            execution = await self._store.get_execution(outcome.execution_id)
            if execution is None or execution.is_terminal:
                return execution
            if execution.awaiting_retry != outcome.key:
                logger.debug(
                    f"Ignoring retry outcome {outcome.key} for execution {execution.id}"
                )
                return execution

            workflow = await self._store.get_workflow(execution.workflow_id)
            if workflow is None:
                await self._fail(execution, None, "Workflow not found")
                return execution

            step_id = outcome.step_id or execution.current_step_id or "unknown"
            step = workflow.get_step(step_id) or StepBase(id=step_id)
            now = self._clock()

            if outcome.status == "rescheduled":
                execution.log(
                    step,
                    "retrying",
                    now,
                    data={
                        "attempt": outcome.attempt,
                        "kind": outcome.kind,
                        "next_retry": (
                            outcome.next_retry.isoformat() if outcome.next_retry else None
                        ),
                    },
                    error=outcome.error,
                )
                await self._store.save_execution(execution)
                return execution

            if outcome.status == "failed":
                execution.log(
                    step, "failed", now, data={"attempt": outcome.attempt}, error=outcome.error
                )
                await self._fail(
                    execution, workflow, f"Failed to send email: {outcome.error}"
                )
                return execution

            execution.log(
                step,
                "completed",
                now,
                data={"message_id": outcome.message_id, "attempt": outcome.attempt},
            )
            execution.awaiting_retry = None
            execution.current_step_id = step.first_successor()

            if execution.status == ExecutionStatus.PAUSED:
                await self._store.save_execution(execution)
                return execution
            if execution.current_step_id is None:
                await self._complete(execution, workflow)
                return execution

            execution.transition(ExecutionStatus.RUNNING, now)
            await self._store.save_execution(execution)

        return await self.advance(outcome.execution_id)
