"""Exception taxonomy shared by every ledgerflow service."""

from __future__ import annotations

from typing import Any, Optional


class LedgerflowError(Exception):
    """Base class for all errors raised by ledgerflow."""


class ValidationError(LedgerflowError):
    """Input did not match a schema or parameter specification."""

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(LedgerflowError):
    """A registration, form, task, execution or definition does not exist."""


class ConflictError(LedgerflowError):
    """The operation collided with existing or concurrent state."""


class DuplicateKeyError(ConflictError):
    """A unique constraint rejected an insert."""


class ExecutionClosedError(ConflictError):
    """An event was delivered to an execution that already terminated."""

    def __init__(self, execution_id: str, status: str) -> None:
        super().__init__(f"Execution {execution_id} is {status} and accepts no events")
        self.execution_id = execution_id
        self.status = status


class InvalidTaskTransitionError(ConflictError):
    """A task lifecycle change is not allowed from the task's current status."""


class ExecutionFailure(LedgerflowError):
    """Unhandled failure raised by workflow logic or an action handler."""


class ActionExecutionError(ExecutionFailure):
    """An action handler raised; the failure has been recorded."""

    def __init__(self, action_name: str, idempotency_key: str, cause: BaseException) -> None:
        super().__init__(f"Action {action_name} failed: {cause}")
        self.action_name = action_name
        self.idempotency_key = idempotency_key
        self.cause = cause


class WorkflowLogicError(ExecutionFailure):
    """Workflow logic misbehaved (bad state name, non-deterministic replay, ...)."""


__all__ = [
    "LedgerflowError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "DuplicateKeyError",
    "ExecutionClosedError",
    "InvalidTaskTransitionError",
    "ExecutionFailure",
    "ActionExecutionError",
    "WorkflowLogicError",
]
