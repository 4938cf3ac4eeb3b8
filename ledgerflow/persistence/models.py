"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

JsonDict = dict[str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ExecutionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"

    @property
    def accepts_events(self) -> bool:
        # A failed execution recovers through a corrective event.
        return self in (ExecutionStatus.ACTIVE, ExecutionStatus.FAILED)


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class FormStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


# ----------------------------------------------------------------------
# Workflow registry


class WorkflowRegistrationVersion(BaseModel):
    """One version of a registered workflow."""

    registration_id: str
    tenant: str
    version: str
    is_current: bool = False
    definition: JsonDict = Field(default_factory=dict)
    parameters: JsonDict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowRegistration(BaseModel):
    """A named workflow owned by a tenant."""

    registration_id: str = Field(default_factory=new_id)
    tenant: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    status: str = "active"
    source_template_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowTemplate(BaseModel):
    """Reusable definition from which registrations are cloned."""

    template_id: str = Field(default_factory=new_id)
    tenant: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    definition: JsonDict = Field(default_factory=dict)
    default_parameters: JsonDict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# ----------------------------------------------------------------------
# Executions and their event log


class WorkflowExecution(BaseModel):
    """Persisted execution of a workflow registration."""

    execution_id: str = Field(default_factory=new_id)
    tenant: str
    workflow_name: str
    workflow_version_id: str
    workflow_version: str
    current_state: str
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    context_data: JsonDict = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WorkflowEvent(BaseModel):
    """Immutable entry of an execution's event log.

    ``sequence`` is assigned by the store on insert and breaks ties between
    events sharing a ``created_at`` timestamp. ``context_patch`` and
    ``context_removed`` describe how the event changed the execution context,
    which keeps the log foldable without re-running workflow logic.
    """

    event_id: str = Field(default_factory=new_id)
    execution_id: str
    tenant: str
    sequence: Optional[int] = None
    event_name: str
    event_type: str = "external"
    from_state: str = ""
    to_state: str = ""
    user_id: Optional[str] = None
    payload: JsonDict = Field(default_factory=dict)
    context_patch: JsonDict = Field(default_factory=dict)
    context_removed: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowSnapshot(BaseModel):
    """Materialised fold of an event log up to ``sequence``.

    Stores stamp ``sequence`` with the event committed alongside the snapshot.
    """

    execution_id: str
    tenant: str
    sequence: int = 0
    state: str
    context: JsonDict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ExecutionUpdate(BaseModel):
    """Changes written to an execution together with a new event."""

    current_state: str
    status: ExecutionStatus
    context_data: JsonDict
    error_message: Optional[str] = None


# ----------------------------------------------------------------------
# Actions


class ActionResult(BaseModel):
    """Recorded attempt of an idempotent action call."""

    result_id: str = Field(default_factory=new_id)
    tenant: str
    execution_id: str
    action_name: str
    event_id: Optional[str] = None
    idempotency_key: str
    parameters: JsonDict = Field(default_factory=dict)
    result: Any = None
    error_message: Optional[str] = None
    success: bool = False
    attempts: int = 1
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def in_progress(self) -> bool:
        return self.completed_at is None


# ----------------------------------------------------------------------
# Task inbox


class TaskDefinition(BaseModel):
    """Reusable description of a kind of human task."""

    task_definition_id: str = Field(default_factory=lambda: f"taskdef-{uuid.uuid4()}")
    tenant: str
    task_type: str
    name: str
    description: Optional[str] = None
    form_id: str
    default_priority: str = "medium"
    default_sla_days: int = 3
    created_at: datetime = Field(default_factory=utcnow)


class TaskHistoryEntry(BaseModel):
    """Append-only record of a task status change."""

    history_id: str = Field(default_factory=lambda: f"hist-{uuid.uuid4()}")
    task_id: str
    tenant: str
    action: str
    from_status: Optional[TaskStatus] = None
    to_status: TaskStatus
    user_id: Optional[str] = None
    details: JsonDict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowTask(BaseModel):
    """Human-actionable work item created by a workflow."""

    task_id: str = Field(default_factory=lambda: f"task-{uuid.uuid4()}")
    tenant: str
    execution_id: str
    task_definition_id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: str = "medium"
    due_date: Optional[datetime] = None
    context_data: JsonDict = Field(default_factory=dict)
    assigned_roles: list[str] = Field(default_factory=list)
    assigned_users: list[str] = Field(default_factory=list)
    claimed_by: Optional[str] = None
    completed_by: Optional[str] = None
    response_data: Optional[JsonDict] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ----------------------------------------------------------------------
# Forms


class FormDefinition(BaseModel):
    form_id: str
    tenant: str
    version: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    status: FormStatus = FormStatus.DRAFT
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FormSchema(BaseModel):
    form_id: str
    tenant: str
    version: str
    json_schema: JsonDict
    ui_schema: Optional[JsonDict] = None
    default_values: Optional[JsonDict] = None


class FormWithSchema(BaseModel):
    """A form definition paired with the schema of the same version."""

    definition: FormDefinition
    form_schema: FormSchema
