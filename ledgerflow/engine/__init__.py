"""Execution engine: replay context, event folding and the engine itself."""

from __future__ import annotations

from .context import (
    CANCEL_EVENT,
    CREATE_TASK_ACTION,
    STARTED_EVENT,
    STARTED_TYPE,
    SYSTEM_EVENT_TYPES,
    TASK_CREATED_TYPE,
    Suspend,
    WorkflowContext,
)
from .engine import RunOutcome, WorkflowEngine
from .replay import Fold, apply_event, diff_context, fold

__all__ = [
    "CANCEL_EVENT",
    "CREATE_TASK_ACTION",
    "Fold",
    "RunOutcome",
    "STARTED_EVENT",
    "STARTED_TYPE",
    "SYSTEM_EVENT_TYPES",
    "Suspend",
    "TASK_CREATED_TYPE",
    "WorkflowContext",
    "WorkflowEngine",
    "apply_event",
    "diff_context",
    "fold",
]
