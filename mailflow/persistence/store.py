"""Store abstraction for workflow definitions, executions and send failures."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..contracts import ExecutionStatus, WorkflowDefinition, WorkflowExecution
from ..delivery.models import PermanentFailure, SendFailure


class WorkflowStore(Protocol):
    """Protocol for workflow state persistence backends.

    The store is the system of record. Stats counters are kept apart from
    the definition body so :meth:`save_workflow` never overwrites them.
    """

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition (stats are left untouched)."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition with its current stats."""

    async def list_workflows(self) -> list[WorkflowDefinition]:
        """Return all workflow definitions."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Remove a workflow definition."""

    async def increment_workflow_stats(
        self, workflow_id: str, triggered: int = 0, completed: int = 0, failed: int = 0
    ) -> None:
        """Atomically bump the aggregate counters of a workflow."""

    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Persist a new execution."""

    async def save_execution(self, execution: WorkflowExecution) -> None:
        """Persist the current state of an existing execution."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        """Return executions, newest ``started_at`` first."""

    async def delete_execution(self, execution_id: str) -> bool:
        """Remove an execution."""

    async def list_due_executions(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[WorkflowExecution]:
        """Executions with ``status=pending`` and ``scheduled_at <= now``."""

    async def claim_execution(
        self, execution_id: str, now: datetime
    ) -> WorkflowExecution | None:
        """Atomically move a due pending execution to running.

        Returns the claimed execution, or ``None`` if it is no longer pending
        and due (another worker got there first, or it was paused).
        """

    async def purge_terminal_executions(self, cutoff: datetime) -> int:
        """Delete completed/failed executions finished before ``cutoff``."""

    async def save_send_failure(self, failure: SendFailure) -> None:
        """Insert or replace the pending retry for ``failure.key``."""

    async def get_send_failure(self, key: str) -> SendFailure | None:
        """Retrieve the pending retry for a (recipient, template) key."""

    async def delete_send_failure(self, key: str) -> bool:
        """Drop a pending retry."""

    async def list_send_failures(self) -> list[SendFailure]:
        """Return all pending retries."""

    async def list_due_send_failures(self, now: datetime) -> list[SendFailure]:
        """Pending retries whose ``next_retry`` has elapsed."""

    async def record_permanent_failure(self, failure: PermanentFailure) -> None:
        """Append a terminal send failure record."""

    async def list_permanent_failures(
        self, since: Optional[datetime] = None
    ) -> list[PermanentFailure]:
        """Return terminal send failures, optionally only those after ``since``."""

    async def close(self) -> None:
        """Release connections held by the backend."""
