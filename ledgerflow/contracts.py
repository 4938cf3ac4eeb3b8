"""Core contracts shared by the engine, actions, inbox and transports."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .persistence.models import ExecutionStatus, WorkflowEvent

ParameterType = Literal["string", "number", "boolean", "object", "array", "any"]


class ActionParameter(BaseModel):
    """Declares one named parameter of an action."""

    name: str
    type: ParameterType
    required: bool = True
    default: Any = None
    description: Optional[str] = None


class ActionContext(BaseModel):
    """Context handed to every action handler."""

    tenant: str
    execution_id: str
    idempotency_key: str
    user_id: Optional[str] = None
    event_id: Optional[str] = None


class AssignTo(BaseModel):
    roles: List[str] = Field(default_factory=list)
    users: List[str] = Field(default_factory=list)

    @staticmethod
    def _as_list(value: Any) -> List[str]:
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [str(v) for v in value]
        return []

    @classmethod
    def normalise(cls, raw: Any) -> "AssignTo":
        """Accept a string or a list per key; anything else means no assignment."""
        if isinstance(raw, AssignTo):
            return raw
        if not isinstance(raw, dict):
            return cls()
        return cls(roles=cls._as_list(raw.get("roles")), users=cls._as_list(raw.get("users")))


class TaskCreationParams(BaseModel):
    """Typed view of the ``create_human_task`` parameters."""

    model_config = ConfigDict(populate_by_name=True)

    task_type: str = Field(alias="taskType")
    title: str
    description: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[datetime] = Field(default=None, alias="dueDate")
    assign_to: AssignTo = Field(default_factory=AssignTo, alias="assignTo")
    context_data: Dict[str, Any] = Field(default_factory=dict, alias="contextData")
    form_id: Optional[str] = Field(default=None, alias="formId")

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "TaskCreationParams":
        data = dict(params)
        data["assignTo"] = AssignTo.normalise(data.pop("assignTo", data.pop("assign_to", None)))
        for key in ("contextData", "context_data"):
            if key in data and data[key] is None:
                del data[key]
        return cls.model_validate(data)


class DeliveryResult(BaseModel):
    """Outcome of delivering one event to an execution."""

    execution_id: str
    previous_state: str
    current_state: str
    status: ExecutionStatus
    event: Optional[WorkflowEvent] = None
    duplicate: bool = False


class ReplayResult(BaseModel):
    """State and context reconstructed by folding an event log."""

    execution_id: str
    state: str
    context: Dict[str, Any] = Field(default_factory=dict)
    last_sequence: Optional[int] = None
    events_applied: int = 0
    from_snapshot: bool = False


class DeliveryRequest(BaseModel):
    """
    Envelope exchanged over the bus asking a worker to deliver an event.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tenant: str
    execution_id: str
    event_name: str
    event_type: str = "external"
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    payload: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    attempt: int = 0

    def bump_attempt(self) -> "DeliveryRequest":
        """Return a copy for redelivery; ``event_id`` is kept so retries stay idempotent."""
        return self.model_copy(
            update={
                "attempt": self.attempt + 1,
                "message_id": str(uuid.uuid4()),
                "timestamp": datetime.now(timezone.utc),
            }
        )

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "DeliveryRequest":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
