"""SQLModel tables backing :class:`~ledgerflow.persistence.sql.SQLWorkflowStore`."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from .models import utcnow


def _ts(**kwargs: Any) -> Any:
    return Field(sa_type=DateTime(timezone=True), **kwargs)


class WorkflowRegistrationRow(SQLModel, table=True):
    __tablename__ = "workflow_registrations"
    __table_args__ = (UniqueConstraint("tenant", "name"),)

    registration_id: str = Field(primary_key=True)
    tenant: str = Field(index=True)
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list = Field(default_factory=list, sa_column=Column(JSON))
    status: str = "active"
    source_template_id: Optional[str] = None
    created_at: datetime = _ts(default_factory=utcnow)


class WorkflowRegistrationVersionRow(SQLModel, table=True):
    __tablename__ = "workflow_registration_versions"

    registration_id: str = Field(
        foreign_key="workflow_registrations.registration_id", primary_key=True
    )
    version: str = Field(primary_key=True)
    tenant: str = Field(index=True)
    is_current: bool = False
    definition: dict = Field(default_factory=dict, sa_column=Column(JSON))
    parameters: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = _ts(default_factory=utcnow)


class WorkflowTemplateRow(SQLModel, table=True):
    __tablename__ = "workflow_templates"

    template_id: str = Field(primary_key=True)
    tenant: str = Field(index=True)
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list = Field(default_factory=list, sa_column=Column(JSON))
    definition: dict = Field(default_factory=dict, sa_column=Column(JSON))
    default_parameters: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = _ts(default_factory=utcnow)


class WorkflowExecutionRow(SQLModel, table=True):
    __tablename__ = "workflow_executions"

    execution_id: str = Field(primary_key=True)
    tenant: str = Field(index=True)
    workflow_name: str
    workflow_version_id: str
    workflow_version: str
    current_state: str
    status: str = Field(default="active", index=True)
    context_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    error_message: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = _ts(default_factory=utcnow)
    updated_at: datetime = _ts(default_factory=utcnow)


class WorkflowEventRow(SQLModel, table=True):
    """Append-only event log; ``sequence`` doubles as insertion order."""

    __tablename__ = "workflow_events"

    sequence: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True)
    execution_id: str = Field(foreign_key="workflow_executions.execution_id", index=True)
    tenant: str = Field(index=True)
    event_name: str
    event_type: str
    from_state: str
    to_state: str
    user_id: Optional[str] = None
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    context_patch: dict = Field(default_factory=dict, sa_column=Column(JSON))
    context_removed: list = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = _ts(default_factory=utcnow)


class WorkflowSnapshotRow(SQLModel, table=True):
    __tablename__ = "workflow_snapshots"

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(foreign_key="workflow_executions.execution_id", index=True)
    tenant: str
    sequence: int
    state: str
    context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = _ts(default_factory=utcnow)


class ActionResultRow(SQLModel, table=True):
    __tablename__ = "workflow_action_results"
    __table_args__ = (
        UniqueConstraint("tenant", "execution_id", "action_name", "idempotency_key"),
    )

    result_id: str = Field(primary_key=True)
    tenant: str
    execution_id: str = Field(index=True)
    action_name: str
    event_id: Optional[str] = None
    idempotency_key: str
    parameters: dict = Field(default_factory=dict, sa_column=Column(JSON))
    result: Optional[Any] = Field(default=None, sa_column=Column(JSON, nullable=True))
    error_message: Optional[str] = None
    success: bool = False
    attempts: int = 1
    started_at: datetime = _ts(default_factory=utcnow)
    completed_at: Optional[datetime] = _ts(default=None, nullable=True)


class TaskDefinitionRow(SQLModel, table=True):
    __tablename__ = "workflow_task_definitions"
    __table_args__ = (UniqueConstraint("tenant", "task_type"),)

    task_definition_id: str = Field(primary_key=True)
    tenant: str
    task_type: str
    name: str
    description: Optional[str] = None
    form_id: str
    default_priority: str = "medium"
    default_sla_days: int = 3
    created_at: datetime = _ts(default_factory=utcnow)


class WorkflowTaskRow(SQLModel, table=True):
    __tablename__ = "workflow_tasks"

    task_id: str = Field(primary_key=True)
    tenant: str = Field(index=True)
    execution_id: str = Field(foreign_key="workflow_executions.execution_id", index=True)
    task_definition_id: str = Field(foreign_key="workflow_task_definitions.task_definition_id")
    title: str
    description: Optional[str] = None
    status: str = Field(default="PENDING", index=True)
    priority: str = "medium"
    due_date: Optional[datetime] = _ts(default=None, nullable=True)
    context_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    assigned_roles: list = Field(default_factory=list, sa_column=Column(JSON))
    assigned_users: list = Field(default_factory=list, sa_column=Column(JSON))
    claimed_by: Optional[str] = None
    completed_by: Optional[str] = None
    response_data: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_by: Optional[str] = None
    created_at: datetime = _ts(default_factory=utcnow)
    updated_at: datetime = _ts(default_factory=utcnow)


class TaskHistoryRow(SQLModel, table=True):
    __tablename__ = "workflow_task_history"

    history_id: str = Field(primary_key=True)
    task_id: str = Field(foreign_key="workflow_tasks.task_id", index=True)
    tenant: str
    action: str
    from_status: Optional[str] = None
    to_status: str
    user_id: Optional[str] = None
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
    timestamp: datetime = _ts(default_factory=utcnow)


class FormDefinitionRow(SQLModel, table=True):
    __tablename__ = "workflow_form_definitions"

    tenant: str = Field(primary_key=True)
    form_id: str = Field(primary_key=True)
    version: str = Field(primary_key=True)
    name: str
    description: Optional[str] = None
    category: Optional[str] = Field(default=None, index=True)
    status: str = "draft"
    created_by: Optional[str] = None
    created_at: datetime = _ts(default_factory=utcnow)
    updated_at: datetime = _ts(default_factory=utcnow)


class FormSchemaRow(SQLModel, table=True):
    __tablename__ = "workflow_form_schemas"

    tenant: str = Field(primary_key=True)
    form_id: str = Field(primary_key=True)
    version: str = Field(primary_key=True)
    json_schema: dict = Field(default_factory=dict, sa_column=Column(JSON))
    ui_schema: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    default_values: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
