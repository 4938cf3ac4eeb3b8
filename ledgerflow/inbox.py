"""Task Inbox: human work items that feed events back into their execution."""

from __future__ import annotations

import logging
import math
from datetime import timezone
from typing import TYPE_CHECKING, Any, Iterable, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from .contracts import ActionContext, ActionParameter, TaskCreationParams
from .engine.context import CREATE_TASK_ACTION, TASK_CREATED_TYPE
from .errors import DuplicateKeyError, ExecutionClosedError, NotFoundError, ValidationError
from .persistence.models import (
    JsonDict,
    TaskDefinition,
    TaskHistoryEntry,
    TaskStatus,
    WorkflowEvent,
    WorkflowTask,
    utcnow,
)
from .persistence.repository import WorkflowStore

if TYPE_CHECKING:
    from .actions import ActionRegistry
    from .engine import WorkflowEngine
    from .forms import FormRegistry

logger = logging.getLogger(__name__)

OPEN_STATUSES = (TaskStatus.PENDING, TaskStatus.CLAIMED)

CREATE_TASK_PARAMETERS = [
    ActionParameter(name="taskType", type="string"),
    ActionParameter(name="title", type="string"),
    ActionParameter(name="description", type="string", required=False),
    ActionParameter(name="priority", type="string", required=False),
    ActionParameter(name="dueDate", type="string", required=False),
    # Malformed assignments are dropped rather than rejected.
    ActionParameter(name="assignTo", type="any", required=False),
    ActionParameter(name="contextData", type="object", required=False),
    ActionParameter(name="formId", type="string", required=False),
]


def task_event_name(task_id: str, action: str) -> str:
    return f"Task:{task_id}:{action}"


# History action -> (event name suffix, event type) of the lifecycle event it emits.
_LIFECYCLE_EVENTS = {
    "claim": ("Claim", "task_claimed"),
    "release": ("Release", "task_released"),
    "complete": ("Complete", "task_completed"),
    "cancel": ("Cancel", "task_cancelled"),
}


def _event_payload(task: WorkflowTask, entry: TaskHistoryEntry) -> JsonDict:
    if entry.action == "complete":
        return dict(entry.details.get("formData", {}))
    if entry.action == "claim":
        return {"taskId": task.task_id, "claimedBy": entry.user_id}
    if entry.action == "cancel":
        return {"taskId": task.task_id, "reason": entry.details.get("reason")}
    return {"taskId": task.task_id}


def _statuses(status: Union[None, TaskStatus, str, Iterable[Union[TaskStatus, str]]]) -> Optional[list[TaskStatus]]:
    if status is None:
        return None
    if isinstance(status, (TaskStatus, str)):
        return [TaskStatus(status)]
    return [TaskStatus(s) for s in status]


class TaskInboxService:
    """Create and drive human tasks on behalf of workflow executions."""

    def __init__(
        self,
        store: WorkflowStore,
        forms: "FormRegistry",
        engine: "WorkflowEngine",
        default_sla_days: int = 3,
        default_priority: str = "medium",
    ) -> None:
        self.store = store
        self.forms = forms
        self.engine = engine
        self.default_sla_days = default_sla_days
        self.default_priority = default_priority

    # ------------------------------------------------------------------
    # Creation
    @staticmethod
    def _parse(params: Union[TaskCreationParams, JsonDict]) -> TaskCreationParams:
        if isinstance(params, TaskCreationParams):
            return params
        try:
            return TaskCreationParams.from_params(params)
        except PydanticValidationError as exc:
            errors = [
                {"path": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
                for e in exc.errors()
            ]
            raise ValidationError(f"Invalid task parameters: {exc}", errors) from exc

    async def _new_definition(self, tenant: str, params: TaskCreationParams) -> TaskDefinition:
        if not params.form_id:
            raise ValidationError(
                f"formId is required to define new task type {params.task_type}",
                [{"path": "formId", "message": "required for a new task type"}],
            )
        if await self.forms.get_form(tenant, params.form_id) is None:
            raise NotFoundError(f"Form {params.form_id} not found")
        sla_days = self.default_sla_days
        if params.due_date is not None:
            remaining = params.due_date - utcnow()
            sla_days = math.ceil(remaining.total_seconds() / 86400)
        return TaskDefinition(
            tenant=tenant,
            task_type=params.task_type,
            name=params.title,
            description=params.description,
            form_id=params.form_id,
            default_priority=params.priority or self.default_priority,
            default_sla_days=sla_days,
        )

    async def _create(
        self,
        tenant: str,
        execution_id: str,
        raw: Union[TaskCreationParams, JsonDict],
        user_id: Optional[str],
        state: Optional[str] = None,
    ) -> Tuple[str, str, JsonDict]:
        """Insert a task; log its ``task_created`` event too when ``state`` is given.

        Returns the task id, the creation history id (the event id of
        ``task_created``) and the event payload.
        """
        params = self._parse(raw)
        if params.due_date is not None and params.due_date.tzinfo is None:
            params.due_date = params.due_date.replace(tzinfo=timezone.utc)

        definition = await self.store.get_task_definition(tenant, params.task_type)
        new_definition = None
        if definition is None:
            new_definition = await self._new_definition(tenant, params)
            definition = new_definition

        task = WorkflowTask(
            tenant=tenant,
            execution_id=execution_id,
            task_definition_id=definition.task_definition_id,
            title=params.title,
            description=params.description,
            priority=params.priority or definition.default_priority,
            due_date=params.due_date,
            context_data=params.context_data,
            assigned_roles=params.assign_to.roles,
            assigned_users=params.assign_to.users,
            created_by=user_id,
        )
        history = TaskHistoryEntry(
            task_id=task.task_id,
            tenant=tenant,
            action="create",
            to_status=TaskStatus.PENDING,
            user_id=user_id,
        )
        payload = {
            "taskId": task.task_id,
            "taskType": params.task_type,
            "title": task.title,
            "description": task.description,
            "priority": task.priority,
            "dueDate": task.due_date.isoformat() if task.due_date else None,
            "assignedRoles": task.assigned_roles,
            "assignedUsers": task.assigned_users,
            "contextData": task.context_data,
        }
        event = None
        if state is not None:
            event = WorkflowEvent(
                event_id=history.history_id,
                execution_id=execution_id,
                tenant=tenant,
                event_name=task_event_name(task.task_id, "Create"),
                event_type=TASK_CREATED_TYPE,
                from_state=state,
                to_state=state,
                user_id=user_id,
                payload=payload,
            )
        try:
            await self.store.create_task(task, history, event, new_definition)
        except DuplicateKeyError:
            if new_definition is None:
                raise
            # Another caller defined the task type first; reuse theirs.
            definition = await self.store.get_task_definition(tenant, params.task_type)
            if definition is None:
                raise
            task.task_definition_id = definition.task_definition_id
            await self.store.create_task(task, history, event)
        logger.info(f"Created task {task.task_id} ({params.task_type}) for execution {execution_id}")
        return task.task_id, history.history_id, payload

    async def create_task(
        self,
        tenant: str,
        execution_id: str,
        params: Union[TaskCreationParams, JsonDict],
        user_id: Optional[str] = None,
    ) -> str:
        """Create a task for ``execution_id`` and log ``task_created`` on it.

        Runs under the execution's lock so the event is ordered against
        concurrent deliveries.
        """
        async with self.store.lock_execution(tenant, execution_id) as session:
            task_id, _, _ = await self._create(
                tenant, execution_id, params, user_id, state=session.execution.current_state
            )
            return task_id

    def register_task_actions(self, actions: "ActionRegistry") -> None:
        """Expose ``create_human_task`` to workflow logic.

        The action only inserts the task; the engine logs ``task_created``
        right after the event whose delivery ran the action.
        """

        async def create_human_task(params: JsonDict, context: ActionContext) -> JsonDict:
            task_id, event_id, payload = await self._create(
                context.tenant, context.execution_id, params, context.user_id
            )
            return {"success": True, "taskId": task_id, "eventId": event_id, "task": payload}

        actions.register_simple_action(
            CREATE_TASK_ACTION,
            "Create a human task in the Task Inbox",
            CREATE_TASK_PARAMETERS,
            create_human_task,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    async def _emit(self, task: WorkflowTask, entry: TaskHistoryEntry) -> None:
        event_action, event_type = _LIFECYCLE_EVENTS[entry.action]
        name = task_event_name(task.task_id, event_action)
        payload = _event_payload(task, entry)
        try:
            await self.engine.deliver_event(
                task.tenant,
                task.execution_id,
                name,
                payload,
                entry.user_id,
                event_id=entry.history_id,
                event_type=event_type,
            )
        except ExecutionClosedError:
            logger.info(f"Execution {task.execution_id} is closed; recording {name} only")
            await self.engine.record_event(
                task.tenant,
                task.execution_id,
                name,
                payload,
                entry.user_id,
                event_type=event_type,
                event_id=entry.history_id,
            )

    async def _unlogged(
        self, task: WorkflowTask, action: str, target: TaskStatus
    ) -> Optional[TaskHistoryEntry]:
        """The last ``action`` entry when it moved the task to ``target`` but its event is missing."""
        if task.status != target:
            return None
        history = await self.store.get_task_history(task.tenant, task.task_id)
        if not history or history[-1].action != action:
            return None
        logged = await self.engine.events(task.tenant, task.execution_id)
        if any(e.event_id == history[-1].history_id for e in logged):
            return None
        return history[-1]

    async def _transition(
        self,
        tenant: str,
        task_id: str,
        *,
        action: str,
        expected: Iterable[TaskStatus],
        target: TaskStatus,
        changes: JsonDict,
        user_id: Optional[str],
        details: JsonDict,
    ) -> WorkflowTask:
        """Move a task to ``target`` and deliver the matching event.

        The status change commits first. If the event delivery then fails,
        repeating the call re-delivers the event under the same id instead of
        refusing the transition.
        """
        task = await self.get_task(tenant, task_id)
        pending = await self._unlogged(task, action, target)
        if pending is not None:
            logger.info(f"Task {task_id} is {target.value}; re-delivering its {action} event")
            await self._emit(task, pending)
            return task

        entry = TaskHistoryEntry(
            task_id=task_id,
            tenant=tenant,
            action=action,
            from_status=task.status,
            to_status=target,
            user_id=user_id,
            details=details,
        )
        updated = await self.store.transition_task(
            tenant, task_id, expected, {"status": target, **changes}, entry
        )
        logger.info(f"Task {task_id} {task.status.value} -> {target.value} by {user_id}")
        await self._emit(updated, entry)
        return updated

    async def claim_task(self, tenant: str, task_id: str, user_id: str) -> WorkflowTask:
        return await self._transition(
            tenant,
            task_id,
            action="claim",
            expected=[TaskStatus.PENDING],
            target=TaskStatus.CLAIMED,
            changes={"claimed_by": user_id},
            user_id=user_id,
            details={},
        )

    async def release_task(self, tenant: str, task_id: str, user_id: str) -> WorkflowTask:
        return await self._transition(
            tenant,
            task_id,
            action="release",
            expected=[TaskStatus.CLAIMED],
            target=TaskStatus.PENDING,
            changes={"claimed_by": None},
            user_id=user_id,
            details={},
        )

    async def complete_task(
        self,
        tenant: str,
        task_id: str,
        response_data: JsonDict,
        user_id: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> WorkflowTask:
        """Complete a task with form data validated against the task's form."""
        task = await self.get_task(tenant, task_id)
        definition = await self.store.get_task_definition_by_id(tenant, task.task_definition_id)
        if definition is None:
            raise NotFoundError(f"Task definition {task.task_definition_id} not found")
        result = await self.forms.validate_form_data(tenant, definition.form_id, response_data)
        if not result.valid:
            raise ValidationError(f"Form validation failed for task {task_id}", result.errors)
        final = dict(response_data)
        if comments:
            final["__comments"] = comments
        return await self._transition(
            tenant,
            task_id,
            action="complete",
            expected=OPEN_STATUSES,
            target=TaskStatus.COMPLETED,
            changes={"completed_by": user_id, "response_data": final},
            user_id=user_id,
            details={"formData": final},
        )

    async def cancel_task(
        self,
        tenant: str,
        task_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> WorkflowTask:
        return await self._transition(
            tenant,
            task_id,
            action="cancel",
            expected=OPEN_STATUSES,
            target=TaskStatus.CANCELLED,
            changes={},
            user_id=user_id,
            details={"reason": reason} if reason else {},
        )

    # ------------------------------------------------------------------
    # Queries
    async def get_task(self, tenant: str, task_id: str) -> WorkflowTask:
        task = await self.store.get_task(tenant, task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    async def list_tasks(
        self,
        tenant: str,
        execution_id: Optional[str] = None,
        status: Any = None,
    ) -> list[WorkflowTask]:
        return await self.store.list_tasks(tenant, execution_id, _statuses(status))

    async def tasks_for_user(
        self,
        tenant: str,
        user_id: str,
        roles: Iterable[str] = (),
        status: Any = OPEN_STATUSES,
    ) -> list[WorkflowTask]:
        """Tasks assigned to ``user_id`` directly or through one of ``roles``."""
        wanted_roles = set(roles)
        return [
            task
            for task in await self.store.list_tasks(tenant, statuses=_statuses(status))
            if user_id in task.assigned_users or wanted_roles.intersection(task.assigned_roles)
        ]

    async def get_task_history(self, tenant: str, task_id: str) -> list[TaskHistoryEntry]:
        await self.get_task(tenant, task_id)
        return await self.store.get_task_history(tenant, task_id)
