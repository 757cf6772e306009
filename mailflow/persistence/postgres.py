"""PostgreSQL implementation of the workflow store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

from ..contracts import (
    TERMINAL_STATUSES,
    ExecutionStatus,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStats,
)
from ..delivery.models import PermanentFailure, SendFailure
from .store import WorkflowStore


class PostgresWorkflowStore(WorkflowStore):
    """Persist workflow state using PostgreSQL.

    Suitable for several engine instances sharing one database: claims use
    ``SELECT ... FOR UPDATE SKIP LOCKED`` so a due execution is handed to
    exactly one scheduler.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn, min_size=self._min_size, max_size=self._max_size
            )
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS mailflow_workflows (
                id TEXT PRIMARY KEY,
                body JSONB NOT NULL,
                triggered INTEGER NOT NULL DEFAULT 0,
                completed INTEGER NOT NULL DEFAULT 0,
                failed INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS mailflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                scheduled_at TIMESTAMPTZ,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_mailflow_executions_due "
            "ON mailflow_executions (status, scheduled_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS mailflow_send_failures (
                key TEXT PRIMARY KEY,
                next_retry TIMESTAMPTZ,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS mailflow_permanent_failures (
                id TEXT PRIMARY KEY,
                created_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> str:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.execute(query, *params)

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetch(query, *params)

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchrow(query, *params)

    @staticmethod
    def _affected(status: str) -> int:
        # asyncpg returns command tags such as "DELETE 3"
        try:
            return int(status.rsplit(" ", 1)[-1])
        except ValueError:
            return 0

    @staticmethod
    def _workflow_from_row(row: asyncpg.Record) -> WorkflowDefinition:
        wf = WorkflowDefinition.model_validate_json(row["body"])
        wf.stats = WorkflowStats(
            triggered=row["triggered"], completed=row["completed"], failed=row["failed"]
        )
        return wf

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await self._execute(
            """
            INSERT INTO mailflow_workflows (id, body, triggered, completed, failed, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE SET body = EXCLUDED.body
            """,
            workflow.id,
            workflow.model_dump_json(exclude={"stats"}),
            workflow.stats.triggered,
            workflow.stats.completed,
            workflow.stats.failed,
            workflow.created_at,
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await self._fetchrow(
            "SELECT body, triggered, completed, failed FROM mailflow_workflows WHERE id = $1",
            workflow_id,
        )
        return self._workflow_from_row(row) if row else None

    async def list_workflows(self) -> list[WorkflowDefinition]:
        rows = await self._fetch(
            "SELECT body, triggered, completed, failed FROM mailflow_workflows "
            "ORDER BY created_at"
        )
        return [self._workflow_from_row(r) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> bool:
        status = await self._execute("DELETE FROM mailflow_workflows WHERE id = $1", workflow_id)
        return self._affected(status) > 0

    async def increment_workflow_stats(
        self, workflow_id: str, triggered: int = 0, completed: int = 0, failed: int = 0
    ) -> None:
        await self._execute(
            """
            UPDATE mailflow_workflows
            SET triggered = triggered + $1, completed = completed + $2, failed = failed + $3
            WHERE id = $4
            """,
            triggered,
            completed,
            failed,
            workflow_id,
        )

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        await self._execute(
            """
            INSERT INTO mailflow_executions
                (id, workflow_id, status, scheduled_at, started_at, completed_at, body)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            execution.id,
            execution.workflow_id,
            execution.status.value,
            execution.scheduled_at,
            execution.started_at,
            execution.completed_at,
            execution.model_dump_json(),
        )

    async def save_execution(self, execution: WorkflowExecution) -> None:
        await self._execute(
            """
            UPDATE mailflow_executions
            SET status = $1, scheduled_at = $2, completed_at = $3, body = $4
            WHERE id = $5
            """,
            execution.status.value,
            execution.scheduled_at,
            execution.completed_at,
            execution.model_dump_json(),
            execution.id,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await self._fetchrow(
            "SELECT body FROM mailflow_executions WHERE id = $1", execution_id
        )
        return WorkflowExecution.model_validate_json(row["body"]) if row else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if statuses is not None:
            params.append([ExecutionStatus(s).value for s in statuses])
            clauses.append(f"status = ANY(${len(params)}::text[])")
        query = "SELECT body FROM mailflow_executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        rows = await self._fetch(query, *params)
        return [WorkflowExecution.model_validate_json(r["body"]) for r in rows]

    async def delete_execution(self, execution_id: str) -> bool:
        status = await self._execute(
            "DELETE FROM mailflow_executions WHERE id = $1", execution_id
        )
        return self._affected(status) > 0

    async def list_due_executions(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[WorkflowExecution]:
        query = (
            "SELECT body FROM mailflow_executions WHERE status = $1 "
            "AND scheduled_at IS NOT NULL AND scheduled_at <= $2 ORDER BY scheduled_at"
        )
        params: list[Any] = [ExecutionStatus.PENDING.value, now]
        if limit is not None:
            params.append(limit)
            query += " LIMIT $3"
        rows = await self._fetch(query, *params)
        return [WorkflowExecution.model_validate_json(r["body"]) for r in rows]

    async def claim_execution(
        self, execution_id: str, now: datetime
    ) -> WorkflowExecution | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT body FROM mailflow_executions
                    WHERE id = $1 AND status = $2
                      AND scheduled_at IS NOT NULL AND scheduled_at <= $3
                    FOR UPDATE SKIP LOCKED
                    """,
                    execution_id,
                    ExecutionStatus.PENDING.value,
                    now,
                )
                if row is None:
                    return None
                execution = WorkflowExecution.model_validate_json(row["body"])
                execution.transition(ExecutionStatus.RUNNING, now)
                await conn.execute(
                    "UPDATE mailflow_executions SET status = $1, scheduled_at = NULL, body = $2 "
                    "WHERE id = $3",
                    execution.status.value,
                    execution.model_dump_json(),
                    execution_id,
                )
        return execution

    async def purge_terminal_executions(self, cutoff: datetime) -> int:
        status = await self._execute(
            "DELETE FROM mailflow_executions WHERE status = ANY($1::text[]) "
            "AND completed_at IS NOT NULL AND completed_at < $2",
            [s.value for s in TERMINAL_STATUSES],
            cutoff,
        )
        return self._affected(status)

    # ------------------------------------------------------------------
    async def save_send_failure(self, failure: SendFailure) -> None:
        await self._execute(
            """
            INSERT INTO mailflow_send_failures (key, next_retry, body) VALUES ($1, $2, $3)
            ON CONFLICT (key) DO UPDATE SET next_retry = EXCLUDED.next_retry, body = EXCLUDED.body
            """,
            failure.key,
            failure.next_retry if failure.retryable else None,
            failure.model_dump_json(),
        )

    async def get_send_failure(self, key: str) -> SendFailure | None:
        row = await self._fetchrow("SELECT body FROM mailflow_send_failures WHERE key = $1", key)
        return SendFailure.model_validate_json(row["body"]) if row else None

    async def delete_send_failure(self, key: str) -> bool:
        status = await self._execute("DELETE FROM mailflow_send_failures WHERE key = $1", key)
        return self._affected(status) > 0

    async def list_send_failures(self) -> list[SendFailure]:
        rows = await self._fetch("SELECT body FROM mailflow_send_failures")
        return [SendFailure.model_validate_json(r["body"]) for r in rows]

    async def list_due_send_failures(self, now: datetime) -> list[SendFailure]:
        rows = await self._fetch(
            "SELECT body FROM mailflow_send_failures "
            "WHERE next_retry IS NOT NULL AND next_retry <= $1 ORDER BY next_retry",
            now,
        )
        return [SendFailure.model_validate_json(r["body"]) for r in rows]

    async def record_permanent_failure(self, failure: PermanentFailure) -> None:
        await self._execute(
            "INSERT INTO mailflow_permanent_failures (id, created_at, body) VALUES ($1, $2, $3)",
            failure.id,
            failure.created_at,
            failure.model_dump_json(),
        )

    async def list_permanent_failures(
        self, since: Optional[datetime] = None
    ) -> list[PermanentFailure]:
        if since is None:
            rows = await self._fetch(
                "SELECT body FROM mailflow_permanent_failures ORDER BY created_at"
            )
        else:
            rows = await self._fetch(
                "SELECT body FROM mailflow_permanent_failures WHERE created_at >= $1 "
                "ORDER BY created_at",
                since,
            )
        return [PermanentFailure.model_validate_json(r["body"]) for r in rows]
