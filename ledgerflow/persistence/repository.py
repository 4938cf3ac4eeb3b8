"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import AsyncContextManager, Iterable, Optional, Protocol, Sequence

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


class ExecutionSession(Protocol):
    """Exclusive handle on one execution, held while an event is delivered.

    Only one session per execution exists at a time. Writes made through
    ``commit_event`` become visible atomically when it returns; leaving the
    session without committing discards nothing but the lock.
    """

    execution: WorkflowExecution

    async def events(self) -> list[WorkflowEvent]:
        """Return the execution's full ordered event log."""

    async def commit_event(
        self,
        event: WorkflowEvent,
        update: ExecutionUpdate,
        snapshot: Optional[WorkflowSnapshot] = None,
        appended: Sequence[WorkflowEvent] = (),
    ) -> WorkflowEvent:
        """Append ``event``, then ``appended``, and apply ``update`` in a single transaction."""


class WorkflowStore(Protocol):
    """Protocol for workflow persistence backends."""

    async def init(self) -> None:
        """Create schema / prepare the backend."""

    async def close(self) -> None:
        """Release backend resources."""

    # -- registrations ---------------------------------------------------
    async def create_registration(
        self, registration: WorkflowRegistration, version: WorkflowRegistrationVersion
    ) -> None:
        """Insert a registration together with its first (current) version."""

    async def add_registration_version(self, version: WorkflowRegistrationVersion) -> None:
        """Insert a version and make it the only current one."""

    async def set_current_version(self, tenant: str, registration_id: str, version: str) -> None:
        """Atomically flip ``is_current`` to ``version``."""

    async def get_registration(
        self, tenant: str, registration_id: str
    ) -> WorkflowRegistration | None:
        """Retrieve a registration by id."""

    async def get_registration_by_name(
        self, tenant: str, name: str
    ) -> WorkflowRegistration | None:
        """Retrieve a registration by name."""

    async def get_registration_version(
        self, tenant: str, registration_id: str, version: Optional[str] = None
    ) -> WorkflowRegistrationVersion | None:
        """Return ``version`` or, when omitted, the current version."""

    async def list_registrations(self, tenant: str) -> list[WorkflowRegistration]:
        """Return every registration of ``tenant``."""

    async def list_registration_versions(
        self, tenant: str, registration_id: str
    ) -> list[WorkflowRegistrationVersion]:
        """Return all versions of a registration."""

    async def create_template(self, template: WorkflowTemplate) -> None:
        """Persist a workflow template."""

    async def get_template(self, tenant: str, template_id: str) -> WorkflowTemplate | None:
        """Retrieve a template by id."""

    # -- executions ------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Insert a new execution record."""

    async def get_execution(self, tenant: str, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self, tenant: str, status: Optional[ExecutionStatus] = None
    ) -> list[WorkflowExecution]:
        """Return executions of ``tenant``, optionally filtered by status."""

    def lock_execution(
        self, tenant: str, execution_id: str
    ) -> AsyncContextManager[ExecutionSession]:
        """Serialise access to one execution (raises ``NotFoundError``)."""

    async def append_event(self, event: WorkflowEvent) -> WorkflowEvent:
        """Append an event that does not change execution state."""

    async def list_events(
        self,
        tenant: str,
        execution_id: str,
        after: Optional[int] = None,
        until: Optional[int] = None,
    ) -> list[WorkflowEvent]:
        """Return ordered events with ``after < sequence <= until``."""

    async def latest_snapshot(
        self, tenant: str, execution_id: str, until: Optional[int] = None
    ) -> WorkflowSnapshot | None:
        """Return the newest snapshot taken at or before ``until``."""

    # -- action results --------------------------------------------------
    async def get_action_result(
        self, tenant: str, execution_id: str, action_name: str, idempotency_key: str
    ) -> ActionResult | None:
        """Look up the record guarding one idempotency key."""

    async def insert_action_result(self, result: ActionResult) -> None:
        """Claim an idempotency key (raises ``DuplicateKeyError`` if taken)."""

    async def reclaim_action_result(
        self, tenant: str, result_id: str, expected_attempts: int
    ) -> bool:
        """Restart a failed or stale attempt; ``False`` if another caller won."""

    async def complete_action_result(
        self,
        tenant: str,
        result_id: str,
        success: bool,
        result: object = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Record the outcome of a claimed attempt."""

    async def list_action_results(self, tenant: str, execution_id: str) -> list[ActionResult]:
        """Return all recorded action attempts of an execution."""

    # -- tasks -----------------------------------------------------------
    async def get_task_definition(self, tenant: str, task_type: str) -> TaskDefinition | None:
        """Find the definition registered for ``task_type``."""

    async def get_task_definition_by_id(
        self, tenant: str, task_definition_id: str
    ) -> TaskDefinition | None:
        """Retrieve a task definition by id."""

    async def create_task(
        self,
        task: WorkflowTask,
        history: TaskHistoryEntry,
        event: Optional[WorkflowEvent] = None,
        definition: Optional[TaskDefinition] = None,
    ) -> None:
        """Insert (definition,) task, history entry and (event) atomically."""

    async def get_task(self, tenant: str, task_id: str) -> WorkflowTask | None:
        """Retrieve a task by id."""

    async def list_tasks(
        self,
        tenant: str,
        execution_id: Optional[str] = None,
        statuses: Optional[Iterable[TaskStatus]] = None,
    ) -> list[WorkflowTask]:
        """Return tasks filtered by execution and status."""

    async def transition_task(
        self,
        tenant: str,
        task_id: str,
        expected: Iterable[TaskStatus],
        changes: JsonDict,
        history: TaskHistoryEntry,
    ) -> WorkflowTask:
        """Apply ``changes`` if the task is still in one of ``expected``."""

    async def get_task_history(self, tenant: str, task_id: str) -> list[TaskHistoryEntry]:
        """Return the ordered history of a task."""

    # -- forms -----------------------------------------------------------
    async def create_form(self, definition: FormDefinition, schema: FormSchema) -> None:
        """Insert a form version (raises ``DuplicateKeyError``)."""

    async def update_form(self, definition: FormDefinition, schema: FormSchema) -> None:
        """Overwrite an existing form version."""

    async def get_form(
        self, tenant: str, form_id: str, version: str
    ) -> FormWithSchema | None:
        """Return one exact form version."""

    async def list_form_versions(self, tenant: str, form_id: str) -> list[FormDefinition]:
        """Return every version of ``form_id``."""

    async def list_forms(
        self,
        tenant: str,
        category: Optional[str] = None,
        status: Optional[FormStatus] = None,
    ) -> list[FormDefinition]:
        """Return form versions filtered by category and status."""
