"""In-memory implementation of the workflow store."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, Optional, Sequence, Tuple, TypeVar

from pydantic import BaseModel

from ..errors import DuplicateKeyError, InvalidTaskTransitionError, NotFoundError
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
    utcnow,
)
from .repository import WorkflowStore

ModelT = TypeVar("ModelT", bound=BaseModel)


def _copy(model: ModelT) -> ModelT:
    return model.model_copy(deep=True)


class _InMemoryExecutionSession:
    def __init__(self, store: "InMemoryWorkflowStore", execution: WorkflowExecution) -> None:
        self._store = store
        self.execution = execution

    async def events(self) -> list[WorkflowEvent]:
        return await self._store.list_events(self.execution.tenant, self.execution.execution_id)

    async def commit_event(
        self,
        event: WorkflowEvent,
        update: ExecutionUpdate,
        snapshot: Optional[WorkflowSnapshot] = None,
        appended: Sequence[WorkflowEvent] = (),
    ) -> WorkflowEvent:
        key = (self.execution.tenant, self.execution.execution_id)
        stored = self._store._executions[key]
        for candidate in [event, *appended]:
            if candidate.event_id in self._store._event_ids:
                raise DuplicateKeyError(f"Event {candidate.event_id} already recorded")
        committed = self._store._insert_event(event)
        last = committed
        for extra in appended:
            last = self._store._insert_event(extra)
        stored.current_state = update.current_state
        stored.status = update.status
        stored.context_data = dict(update.context_data)
        stored.error_message = update.error_message
        stored.updated_at = committed.created_at
        if snapshot is not None:
            stamped = _copy(snapshot)
            stamped.sequence = last.sequence
            self._store._snapshots[key].append(stamped)
        self.execution = _copy(stored)
        return _copy(committed)


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._registrations: Dict[str, WorkflowRegistration] = {}
        self._versions: Dict[str, list[WorkflowRegistrationVersion]] = defaultdict(list)
        self._templates: Dict[Tuple[str, str], WorkflowTemplate] = {}
        self._executions: Dict[Tuple[str, str], WorkflowExecution] = {}
        self._events: Dict[Tuple[str, str], list[WorkflowEvent]] = defaultdict(list)
        self._event_ids: set[str] = set()
        self._snapshots: Dict[Tuple[str, str], list[WorkflowSnapshot]] = defaultdict(list)
        self._action_results: Dict[Tuple[str, str, str, str], ActionResult] = {}
        self._task_definitions: Dict[Tuple[str, str], TaskDefinition] = {}
        self._tasks: Dict[Tuple[str, str], WorkflowTask] = {}
        self._task_history: Dict[Tuple[str, str], list[TaskHistoryEntry]] = defaultdict(list)
        self._forms: Dict[Tuple[str, str, str], Tuple[FormDefinition, FormSchema]] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._sequence = 0

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Registrations
    async def create_registration(
        self, registration: WorkflowRegistration, version: WorkflowRegistrationVersion
    ) -> None:
        if await self.get_registration_by_name(registration.tenant, registration.name):
            raise DuplicateKeyError(f"Workflow {registration.name} already registered")
        self._registrations[registration.registration_id] = _copy(registration)
        stored = _copy(version)
        stored.is_current = True
        self._versions[registration.registration_id] = [stored]

    async def add_registration_version(self, version: WorkflowRegistrationVersion) -> None:
        versions = self._versions.get(version.registration_id)
        if versions is None:
            raise NotFoundError(f"Registration {version.registration_id} not found")
        if any(v.version == version.version for v in versions):
            raise DuplicateKeyError(
                f"Version {version.version} already exists for {version.registration_id}"
            )
        for existing in versions:
            existing.is_current = False
        stored = _copy(version)
        stored.is_current = True
        versions.append(stored)

    async def set_current_version(self, tenant: str, registration_id: str, version: str) -> None:
        versions = [v for v in self._versions.get(registration_id, []) if v.tenant == tenant]
        if not any(v.version == version for v in versions):
            raise NotFoundError(f"Version {version} of {registration_id} not found")
        for existing in versions:
            existing.is_current = existing.version == version

    async def get_registration(
        self, tenant: str, registration_id: str
    ) -> WorkflowRegistration | None:
        reg = self._registrations.get(registration_id)
        if reg is None or reg.tenant != tenant:
            return None
        return _copy(reg)

    async def get_registration_by_name(
        self, tenant: str, name: str
    ) -> WorkflowRegistration | None:
        for reg in self._registrations.values():
            if reg.tenant == tenant and reg.name == name:
                return _copy(reg)
        return None

    async def get_registration_version(
        self, tenant: str, registration_id: str, version: Optional[str] = None
    ) -> WorkflowRegistrationVersion | None:
        for existing in self._versions.get(registration_id, []):
            if existing.tenant != tenant:
                continue
            if (version is None and existing.is_current) or existing.version == version:
                return _copy(existing)
        return None

    async def list_registrations(self, tenant: str) -> list[WorkflowRegistration]:
        return [_copy(r) for r in self._registrations.values() if r.tenant == tenant]

    async def list_registration_versions(
        self, tenant: str, registration_id: str
    ) -> list[WorkflowRegistrationVersion]:
        return [
            _copy(v) for v in self._versions.get(registration_id, []) if v.tenant == tenant
        ]

    async def create_template(self, template: WorkflowTemplate) -> None:
        key = (template.tenant, template.template_id)
        if key in self._templates:
            raise DuplicateKeyError(f"Template {template.template_id} already exists")
        self._templates[key] = _copy(template)

    async def get_template(self, tenant: str, template_id: str) -> WorkflowTemplate | None:
        template = self._templates.get((tenant, template_id))
        return _copy(template) if template else None

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> None:
        key = (execution.tenant, execution.execution_id)
        if key in self._executions:
            raise DuplicateKeyError(f"Execution {execution.execution_id} already exists")
        self._executions[key] = _copy(execution)

    async def get_execution(self, tenant: str, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get((tenant, execution_id))
        return _copy(execution) if execution else None

    async def list_executions(
        self, tenant: str, status: Optional[ExecutionStatus] = None
    ) -> list[WorkflowExecution]:
        return [
            _copy(e)
            for (t, _), e in self._executions.items()
            if t == tenant and (status is None or e.status == status)
        ]

    @asynccontextmanager
    async def lock_execution(
        self, tenant: str, execution_id: str
    ) -> AsyncIterator[_InMemoryExecutionSession]:
        key = (tenant, execution_id)
        async with self._locks[key]:
            execution = self._executions.get(key)
            if execution is None:
                raise NotFoundError(f"Execution {execution_id} not found")
            yield _InMemoryExecutionSession(self, _copy(execution))

    def _insert_event(self, event: WorkflowEvent) -> WorkflowEvent:
        key = (event.tenant, event.execution_id)
        log = self._events[key]
        self._sequence += 1
        stored = _copy(event)
        stored.sequence = self._sequence
        created_at = utcnow()
        if log and log[-1].created_at > created_at:
            created_at = log[-1].created_at
        stored.created_at = created_at
        log.append(stored)
        self._event_ids.add(stored.event_id)
        return stored

    async def append_event(self, event: WorkflowEvent) -> WorkflowEvent:
        if (event.tenant, event.execution_id) not in self._executions:
            raise NotFoundError(f"Execution {event.execution_id} not found")
        if event.event_id in self._event_ids:
            raise DuplicateKeyError(f"Event {event.event_id} already recorded")
        return _copy(self._insert_event(event))

    async def list_events(
        self,
        tenant: str,
        execution_id: str,
        after: Optional[int] = None,
        until: Optional[int] = None,
    ) -> list[WorkflowEvent]:
        return [
            _copy(e)
            for e in self._events.get((tenant, execution_id), [])
            if (after is None or e.sequence > after) and (until is None or e.sequence <= until)
        ]

    async def latest_snapshot(
        self, tenant: str, execution_id: str, until: Optional[int] = None
    ) -> WorkflowSnapshot | None:
        candidates = [
            s
            for s in self._snapshots.get((tenant, execution_id), [])
            if until is None or s.sequence <= until
        ]
        if not candidates:
            return None
        return _copy(max(candidates, key=lambda s: s.sequence))

    # ------------------------------------------------------------------
    # Action results
    async def get_action_result(
        self, tenant: str, execution_id: str, action_name: str, idempotency_key: str
    ) -> ActionResult | None:
        result = self._action_results.get((tenant, execution_id, action_name, idempotency_key))
        return _copy(result) if result else None

    async def insert_action_result(self, result: ActionResult) -> None:
        key = (result.tenant, result.execution_id, result.action_name, result.idempotency_key)
        if key in self._action_results:
            raise DuplicateKeyError(f"Idempotency key {result.idempotency_key} already claimed")
        self._action_results[key] = _copy(result)

    def _find_result(self, tenant: str, result_id: str) -> ActionResult:
        for result in self._action_results.values():
            if result.tenant == tenant and result.result_id == result_id:
                return result
        raise NotFoundError(f"Action result {result_id} not found")

    async def reclaim_action_result(
        self, tenant: str, result_id: str, expected_attempts: int
    ) -> bool:
        result = self._find_result(tenant, result_id)
        if result.success or result.attempts != expected_attempts:
            return False
        result.attempts += 1
        result.started_at = utcnow()
        result.completed_at = None
        result.error_message = None
        return True

    async def complete_action_result(
        self,
        tenant: str,
        result_id: str,
        success: bool,
        result: object = None,
        error_message: Optional[str] = None,
    ) -> None:
        stored = self._find_result(tenant, result_id)
        stored.success = success
        stored.result = result
        stored.error_message = error_message
        stored.completed_at = utcnow()

    async def list_action_results(self, tenant: str, execution_id: str) -> list[ActionResult]:
        return [
            _copy(r)
            for r in self._action_results.values()
            if r.tenant == tenant and r.execution_id == execution_id
        ]

    # ------------------------------------------------------------------
    # Tasks
    async def get_task_definition(self, tenant: str, task_type: str) -> TaskDefinition | None:
        definition = self._task_definitions.get((tenant, task_type))
        return _copy(definition) if definition else None

    async def get_task_definition_by_id(
        self, tenant: str, task_definition_id: str
    ) -> TaskDefinition | None:
        for definition in self._task_definitions.values():
            if definition.tenant == tenant and definition.task_definition_id == task_definition_id:
                return _copy(definition)
        return None

    async def create_task(
        self,
        task: WorkflowTask,
        history: TaskHistoryEntry,
        event: Optional[WorkflowEvent] = None,
        definition: Optional[TaskDefinition] = None,
    ) -> None:
        if (task.tenant, task.execution_id) not in self._executions:
            raise NotFoundError(f"Execution {task.execution_id} not found")
        if definition is not None and (definition.tenant, definition.task_type) in self._task_definitions:
            raise DuplicateKeyError(f"Task type {definition.task_type} already defined")
        if event is not None and event.event_id in self._event_ids:
            raise DuplicateKeyError(f"Event {event.event_id} already recorded")
        if definition is not None:
            self._task_definitions[(definition.tenant, definition.task_type)] = _copy(definition)
        self._tasks[(task.tenant, task.task_id)] = _copy(task)
        self._task_history[(task.tenant, task.task_id)].append(_copy(history))
        if event is not None:
            self._insert_event(event)

    async def get_task(self, tenant: str, task_id: str) -> WorkflowTask | None:
        task = self._tasks.get((tenant, task_id))
        return _copy(task) if task else None

    async def list_tasks(
        self,
        tenant: str,
        execution_id: Optional[str] = None,
        statuses: Optional[Iterable[TaskStatus]] = None,
    ) -> list[WorkflowTask]:
        wanted = set(statuses) if statuses is not None else None
        tasks = [
            _copy(t)
            for (t_tenant, _), t in self._tasks.items()
            if t_tenant == tenant
            and (execution_id is None or t.execution_id == execution_id)
            and (wanted is None or t.status in wanted)
        ]
        return sorted(tasks, key=lambda t: t.created_at)

    async def transition_task(
        self,
        tenant: str,
        task_id: str,
        expected: Iterable[TaskStatus],
        changes: JsonDict,
        history: TaskHistoryEntry,
    ) -> WorkflowTask:
        task = self._tasks.get((tenant, task_id))
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        if task.status not in set(expected):
            raise InvalidTaskTransitionError(
                f"Task {task_id} is {task.status.value} and cannot move to {history.to_status.value}"
            )
        for field, value in changes.items():
            setattr(task, field, value)
        task.updated_at = utcnow()
        self._task_history[(tenant, task_id)].append(_copy(history))
        return _copy(task)

    async def get_task_history(self, tenant: str, task_id: str) -> list[TaskHistoryEntry]:
        return [_copy(h) for h in self._task_history.get((tenant, task_id), [])]

    # ------------------------------------------------------------------
    # Forms
    async def create_form(self, definition: FormDefinition, schema: FormSchema) -> None:
        key = (definition.tenant, definition.form_id, definition.version)
        if key in self._forms:
            raise DuplicateKeyError(
                f"Form {definition.form_id} version {definition.version} already exists"
            )
        self._forms[key] = (_copy(definition), _copy(schema))

    async def update_form(self, definition: FormDefinition, schema: FormSchema) -> None:
        key = (definition.tenant, definition.form_id, definition.version)
        if key not in self._forms:
            raise NotFoundError(f"Form {definition.form_id} version {definition.version} not found")
        self._forms[key] = (_copy(definition), _copy(schema))

    async def get_form(self, tenant: str, form_id: str, version: str) -> FormWithSchema | None:
        stored = self._forms.get((tenant, form_id, version))
        if stored is None:
            return None
        definition, schema = stored
        return FormWithSchema(definition=_copy(definition), form_schema=_copy(schema))

    async def list_form_versions(self, tenant: str, form_id: str) -> list[FormDefinition]:
        return [
            _copy(d) for (t, f, _), (d, _s) in self._forms.items() if t == tenant and f == form_id
        ]

    async def list_forms(
        self,
        tenant: str,
        category: Optional[str] = None,
        status: Optional[FormStatus] = None,
    ) -> list[FormDefinition]:
        return [
            _copy(d)
            for (t, _, _), (d, _s) in self._forms.items()
            if t == tenant
            and (category is None or d.category == category)
            and (status is None or d.status == status)
        ]
