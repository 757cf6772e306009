"""SQLite implementation of the workflow store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import (
    TERMINAL_STATUSES,
    ExecutionStatus,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStats,
)
from ..delivery.models import PermanentFailure, SendFailure
from .store import WorkflowStore


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


class SQLiteWorkflowStore(WorkflowStore):
    """Persist workflow state using SQLite.

    Model bodies are stored as JSON next to the columns the queries filter
    on. Timestamps in filter columns are POSIX seconds.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    body TEXT NOT NULL,
                    triggered INTEGER NOT NULL DEFAULT 0,
                    completed INTEGER NOT NULL DEFAULT 0,
                    failed INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL
                );
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    scheduled_at REAL,
                    started_at REAL NOT NULL,
                    completed_at REAL,
                    body TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_executions_due
                    ON executions (status, scheduled_at);
                CREATE INDEX IF NOT EXISTS idx_executions_workflow
                    ON executions (workflow_id, started_at);
                CREATE TABLE IF NOT EXISTS send_failures (
                    key TEXT PRIMARY KEY,
                    next_retry REAL,
                    body TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS permanent_failures (
                    id TEXT PRIMARY KEY,
                    created_at REAL NOT NULL,
                    body TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def _close(self) -> None:
        with self._lock:
            self._conn.close()

    async def close(self) -> None:
        await asyncio.to_thread(self._close)

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _workflow_from_row(row: sqlite3.Row) -> WorkflowDefinition:
        wf = WorkflowDefinition.model_validate_json(row["body"])
        wf.stats = WorkflowStats(
            triggered=row["triggered"], completed=row["completed"], failed=row["failed"]
        )
        return wf

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, body, triggered, completed, failed, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET body = excluded.body
            """,
            workflow.id,
            workflow.model_dump_json(exclude={"stats"}),
            workflow.stats.triggered,
            workflow.stats.completed,
            workflow.stats.failed,
            _ts(workflow.created_at),
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body, triggered, completed, failed FROM workflows WHERE id = ?",
            workflow_id,
        )
        return self._workflow_from_row(row) if row else None

    async def list_workflows(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body, triggered, completed, failed FROM workflows ORDER BY created_at",
        )
        return [self._workflow_from_row(r) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id
        )
        return count > 0

    async def increment_workflow_stats(
        self, workflow_id: str, triggered: int = 0, completed: int = 0, failed: int = 0
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflows
            SET triggered = triggered + ?, completed = completed + ?, failed = failed + ?
            WHERE id = ?
            """,
            triggered,
            completed,
            failed,
            workflow_id,
        )

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO executions
                (id, workflow_id, status, scheduled_at, started_at, completed_at, body)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            execution.id,
            execution.workflow_id,
            execution.status.value,
            _ts(execution.scheduled_at),
            _ts(execution.started_at),
            _ts(execution.completed_at),
            execution.model_dump_json(),
        )

    async def save_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE executions
            SET status = ?, scheduled_at = ?, completed_at = ?, body = ?
            WHERE id = ?
            """,
            execution.status.value,
            _ts(execution.scheduled_at),
            _ts(execution.completed_at),
            execution.model_dump_json(),
            execution.id,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM executions WHERE id = ?", execution_id
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
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if statuses is not None:
            values = [ExecutionStatus(s).value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        query = "SELECT body FROM executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowExecution.model_validate_json(r["body"]) for r in rows]

    async def delete_execution(self, execution_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM executions WHERE id = ?", execution_id
        )
        return count > 0

    async def list_due_executions(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[WorkflowExecution]:
        query = (
            "SELECT body FROM executions WHERE status = ? AND scheduled_at IS NOT NULL "
            "AND scheduled_at <= ? ORDER BY scheduled_at"
        )
        params: list[Any] = [ExecutionStatus.PENDING.value, _ts(now)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowExecution.model_validate_json(r["body"]) for r in rows]

    def _claim(self, execution_id: str, now: datetime) -> WorkflowExecution | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT body FROM executions WHERE id = ? AND status = ? "
                "AND scheduled_at IS NOT NULL AND scheduled_at <= ?",
                (execution_id, ExecutionStatus.PENDING.value, _ts(now)),
            )
            row = cur.fetchone()
            if row is None:
                return None
            execution = WorkflowExecution.model_validate_json(row["body"])
            execution.transition(ExecutionStatus.RUNNING, now)
            cur.execute(
                "UPDATE executions SET status = ?, scheduled_at = NULL, body = ? "
                "WHERE id = ? AND status = ?",
                (
                    execution.status.value,
                    execution.model_dump_json(),
                    execution_id,
                    ExecutionStatus.PENDING.value,
                ),
            )
            self._conn.commit()
            return execution if cur.rowcount == 1 else None

    async def claim_execution(
        self, execution_id: str, now: datetime
    ) -> WorkflowExecution | None:
        return await asyncio.to_thread(self._claim, execution_id, now)

    async def purge_terminal_executions(self, cutoff: datetime) -> int:
        statuses = [s.value for s in TERMINAL_STATUSES]
        return await asyncio.to_thread(
            self._execute,
            "DELETE FROM executions WHERE status IN (?, ?) "
            "AND completed_at IS NOT NULL AND completed_at < ?",
            *statuses,
            _ts(cutoff),
        )

    # ------------------------------------------------------------------
    # Send failures
    async def save_send_failure(self, failure: SendFailure) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO send_failures (key, next_retry, body) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET next_retry = excluded.next_retry, body = excluded.body
            """,
            failure.key,
            _ts(failure.next_retry) if failure.retryable else None,
            failure.model_dump_json(),
        )

    async def get_send_failure(self, key: str) -> SendFailure | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM send_failures WHERE key = ?", key
        )
        return SendFailure.model_validate_json(row["body"]) if row else None

    async def delete_send_failure(self, key: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM send_failures WHERE key = ?", key
        )
        return count > 0

    async def list_send_failures(self) -> list[SendFailure]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT body FROM send_failures")
        return [SendFailure.model_validate_json(r["body"]) for r in rows]

    async def list_due_send_failures(self, now: datetime) -> list[SendFailure]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM send_failures WHERE next_retry IS NOT NULL AND next_retry <= ? "
            "ORDER BY next_retry",
            _ts(now),
        )
        return [SendFailure.model_validate_json(r["body"]) for r in rows]

    async def record_permanent_failure(self, failure: PermanentFailure) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO permanent_failures (id, created_at, body) VALUES (?, ?, ?)",
            failure.id,
            _ts(failure.created_at),
            failure.model_dump_json(),
        )

    async def list_permanent_failures(
        self, since: Optional[datetime] = None
    ) -> list[PermanentFailure]:
        if since is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT body FROM permanent_failures ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM permanent_failures WHERE created_at >= ? ORDER BY created_at",
                _ts(since),
            )
        return [PermanentFailure.model_validate_json(r["body"]) for r in rows]
