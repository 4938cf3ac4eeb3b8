"""Persistence layer for ledgerflow workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LedgerflowConfig, load_config
from .inmemory import InMemoryWorkflowStore
from .models import (
    ActionResult,
    ExecutionStatus,
    ExecutionUpdate,
    FormDefinition,
    FormSchema,
    FormStatus,
    FormWithSchema,
    JsonDict,
    TaskDefinition,
    TaskHistoryEntry,
    TaskStatus,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowRegistration,
    WorkflowRegistrationVersion,
    WorkflowSnapshot,
    WorkflowTask,
    WorkflowTemplate,
)
from .repository import ExecutionSession, WorkflowStore
from .sql import SQLWorkflowStore

_SQL_SCHEMES = ("sqlite", "postgresql", "postgres")


def get_store(
    database_url: Optional[str] = None, config: Optional[LedgerflowConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``LEDGERFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("LEDGERFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryWorkflowStore()

    scheme = database_url.split(":", 1)[0].split("+", 1)[0]
    if scheme not in _SQL_SCHEMES:
        raise ValueError(f"Unsupported database backend: {database_url}")
    if "+" not in database_url.split(":", 1)[0]:
        # Plain URLs get the async driver ledgerflow ships with.
        driver = "sqlite+aiosqlite" if scheme == "sqlite" else "postgresql+asyncpg"
        database_url = f"{driver}:{database_url.split(':', 1)[1]}"
    return SQLWorkflowStore(database_url)


__all__ = [
    "ActionResult",
    "ExecutionSession",
    "ExecutionStatus",
    "ExecutionUpdate",
    "FormDefinition",
    "FormSchema",
    "FormStatus",
    "FormWithSchema",
    "InMemoryWorkflowStore",
    "JsonDict",
    "SQLWorkflowStore",
    "TaskDefinition",
    "TaskHistoryEntry",
    "TaskStatus",
    "WorkflowEvent",
    "WorkflowExecution",
    "WorkflowRegistration",
    "WorkflowRegistrationVersion",
    "WorkflowSnapshot",
    "WorkflowStore",
    "WorkflowTask",
    "WorkflowTemplate",
    "get_store",
]
