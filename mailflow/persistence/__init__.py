"""Persistence layer for mailflow workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import MailflowConfig, load_config
from .inmemory import InMemoryWorkflowStore
from .sqlite import SQLiteWorkflowStore
from .store import WorkflowStore


def get_store(
    database_url: Optional[str] = None, config: Optional[MailflowConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``MAILFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("MAILFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryWorkflowStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowStore(path)
    if database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        from .postgres import PostgresWorkflowStore

        return PostgresWorkflowStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "SQLiteWorkflowStore",
    "get_store",
]
