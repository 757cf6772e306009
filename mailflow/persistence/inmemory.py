"""In-memory implementation of the workflow store."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..contracts import (
    TERMINAL_STATUSES,
    ExecutionStatus,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStats,
)
from ..delivery.models import PermanentFailure, SendFailure
from .store import WorkflowStore


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in
    and out so callers never share objects with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._stats: Dict[str, WorkflowStats] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._send_failures: Dict[str, SendFailure] = {}
        self._permanent_failures: List[PermanentFailure] = []

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        self._stats.setdefault(workflow.id, workflow.stats.model_copy())

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            return None
        copy = wf.model_copy(deep=True)
        copy.stats = self._stats[workflow_id].model_copy()
        return copy

    async def list_workflows(self) -> list[WorkflowDefinition]:
        result = []
        for workflow_id in list(self._workflows):
            wf = await self.get_workflow(workflow_id)
            if wf is not None:
                result.append(wf)
        return result

    async def delete_workflow(self, workflow_id: str) -> bool:
        self._stats.pop(workflow_id, None)
        return self._workflows.pop(workflow_id, None) is not None

    async def increment_workflow_stats(
        self, workflow_id: str, triggered: int = 0, completed: int = 0, failed: int = 0
    ) -> None:
        stats = self._stats.get(workflow_id)
        if stats is None:
            return
        stats.triggered += triggered
        stats.completed += completed
        stats.failed += failed

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def save_execution(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        ex = self._executions.get(execution_id)
        return ex.model_copy(deep=True) if ex else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        wanted = set(statuses) if statuses is not None else None
        matches = [
            ex
            for ex in self._executions.values()
            if (workflow_id is None or ex.workflow_id == workflow_id)
            and (wanted is None or ex.status in wanted)
        ]
        matches.sort(key=lambda ex: ex.started_at, reverse=True)
        if limit is not None:
            matches = matches[:limit]
        return [ex.model_copy(deep=True) for ex in matches]

    async def delete_execution(self, execution_id: str) -> bool:
        return self._executions.pop(execution_id, None) is not None

    async def list_due_executions(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[WorkflowExecution]:
        due = [
            ex
            for ex in self._executions.values()
            if ex.status == ExecutionStatus.PENDING
            and ex.scheduled_at is not None
            and ex.scheduled_at <= now
        ]
        due.sort(key=lambda ex: ex.scheduled_at)
        if limit is not None:
            due = due[:limit]
        return [ex.model_copy(deep=True) for ex in due]

    async def claim_execution(
        self, execution_id: str, now: datetime
    ) -> WorkflowExecution | None:
        ex = self._executions.get(execution_id)
        if (
            ex is None
            or ex.status != ExecutionStatus.PENDING
            or ex.scheduled_at is None
            or ex.scheduled_at > now
        ):
            return None
        ex.transition(ExecutionStatus.RUNNING, now)
        return ex.model_copy(deep=True)

    async def purge_terminal_executions(self, cutoff: datetime) -> int:
        expired = [
            ex.id
            for ex in self._executions.values()
            if ex.status in TERMINAL_STATUSES
            and ex.completed_at is not None
            and ex.completed_at < cutoff
        ]
        for execution_id in expired:
            del self._executions[execution_id]
        return len(expired)

    # ------------------------------------------------------------------
    async def save_send_failure(self, failure: SendFailure) -> None:
        self._send_failures[failure.key] = failure.model_copy(deep=True)

    async def get_send_failure(self, key: str) -> SendFailure | None:
        failure = self._send_failures.get(key)
        return failure.model_copy(deep=True) if failure else None

    async def delete_send_failure(self, key: str) -> bool:
        return self._send_failures.pop(key, None) is not None

    async def list_send_failures(self) -> list[SendFailure]:
        return [f.model_copy(deep=True) for f in self._send_failures.values()]

    async def list_due_send_failures(self, now: datetime) -> list[SendFailure]:
        return [
            f.model_copy(deep=True)
            for f in self._send_failures.values()
            if f.retryable and f.next_retry is not None and f.next_retry <= now
        ]

    async def record_permanent_failure(self, failure: PermanentFailure) -> None:
        self._permanent_failures.append(failure.model_copy(deep=True))

    async def list_permanent_failures(
        self, since: Optional[datetime] = None
    ) -> list[PermanentFailure]:
        return [
            f.model_copy(deep=True)
            for f in self._permanent_failures
            if since is None or f.created_at >= since
        ]

    async def close(self) -> None:
        pass
