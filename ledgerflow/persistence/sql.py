"""SQLModel/SQLAlchemy implementation of the workflow store.

Works with any async driver SQLAlchemy supports; ledgerflow is tested on
``sqlite+aiosqlite`` and deployed on ``postgresql+asyncpg``. Executions are
serialised with an in-process lock plus a ``FOR NO KEY UPDATE`` row lock held
by the delivering session, which still lets concurrent inserts of rows that
reference the execution (tasks, events) take their foreign key share locks.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, update
from sqlalchemy import select as sa_select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

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
from .tables import (
    ActionResultRow,
    FormDefinitionRow,
    FormSchemaRow,
    TaskDefinitionRow,
    TaskHistoryRow,
    WorkflowEventRow,
    WorkflowExecutionRow,
    WorkflowRegistrationRow,
    WorkflowRegistrationVersionRow,
    WorkflowSnapshotRow,
    WorkflowTaskRow,
    WorkflowTemplateRow,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _aware(value: Any) -> Any:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_values(model: BaseModel) -> JsonDict:
    return {key: _plain(value) for key, value in model.model_dump().items()}


def _to_model(model_cls: Type[ModelT], row: SQLModel) -> ModelT:
    data = {key: _aware(value) for key, value in row.model_dump().items()}
    return model_cls.model_validate(data)


@asynccontextmanager
async def _unique(session: AsyncSession, message: str) -> AsyncIterator[None]:
    try:
        yield
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateKeyError(message) from exc


async def _next_event_row(session: AsyncSession, event: WorkflowEvent) -> WorkflowEventRow:
    """Stage ``event`` with a timestamp never older than the execution's last one."""
    last = await session.scalar(
        sa_select(func.max(WorkflowEventRow.created_at)).where(
            WorkflowEventRow.tenant == event.tenant,
            WorkflowEventRow.execution_id == event.execution_id,
        )
    )
    created_at = utcnow()
    if last is not None and _aware(last) > created_at:
        created_at = _aware(last)
    values = _row_values(event)
    values.pop("sequence", None)
    values["created_at"] = created_at
    row = WorkflowEventRow(**values)
    session.add(row)
    await session.flush()
    return row


async def _select_execution(
    session: AsyncSession, tenant: str, execution_id: str, lock: bool = False
) -> WorkflowExecutionRow | None:
    stmt = select(WorkflowExecutionRow).where(
        WorkflowExecutionRow.tenant == tenant,
        WorkflowExecutionRow.execution_id == execution_id,
    )
    if lock:
        stmt = stmt.with_for_update(key_share=True)
    stmt = stmt.execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalars().first()


class _SQLExecutionSession:
    def __init__(self, session: AsyncSession, execution: WorkflowExecution) -> None:
        self._session = session
        self.execution = execution

    async def events(self) -> list[WorkflowEvent]:
        stmt = (
            select(WorkflowEventRow)
            .where(
                WorkflowEventRow.tenant == self.execution.tenant,
                WorkflowEventRow.execution_id == self.execution.execution_id,
            )
            .order_by(WorkflowEventRow.created_at, WorkflowEventRow.sequence)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_to_model(WorkflowEvent, r) for r in rows]

    async def commit_event(
        self,
        event: WorkflowEvent,
        update: ExecutionUpdate,
        snapshot: Optional[WorkflowSnapshot] = None,
        appended: Sequence[WorkflowEvent] = (),
    ) -> WorkflowEvent:
        session = self._session
        tenant, execution_id = self.execution.tenant, self.execution.execution_id
        async with _unique(session, f"Event {event.event_id} already recorded"):
            row = await _next_event_row(session, event)
            last = row
            for extra in appended:
                last = await _next_event_row(session, extra)
            execution = await _select_execution(session, tenant, execution_id, lock=True)
            if execution is None:
                raise NotFoundError(f"Execution {execution_id} not found")
            execution.current_state = update.current_state
            execution.status = update.status.value
            execution.context_data = dict(update.context_data)
            execution.error_message = update.error_message
            execution.updated_at = row.created_at
            session.add(execution)
            if snapshot is not None:
                values = _row_values(snapshot)
                values["sequence"] = last.sequence
                session.add(WorkflowSnapshotRow(**values))
            await session.commit()
        committed = _to_model(WorkflowEvent, row)
        # Committing released the row lock; take it again for the rest of the session.
        execution = await _select_execution(session, tenant, execution_id, lock=True)
        self.execution = _to_model(WorkflowExecution, execution)
        return committed


class SQLWorkflowStore(WorkflowStore):
    """Persist workflow state through SQLModel tables."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        connect_args: Dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.database_url = database_url
        self.engine = create_async_engine(
            database_url, echo=echo, future=True, connect_args=connect_args
        )
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.debug(f"Initialised workflow tables on {self.engine.url.render_as_string()}")

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def _all(self, stmt: Any, model_cls: Type[ModelT]) -> list[ModelT]:
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_model(model_cls, r) for r in rows]

    async def _first(self, stmt: Any, model_cls: Type[ModelT]) -> ModelT | None:
        async with self.session() as session:
            row = (await session.execute(stmt)).scalars().first()
        return _to_model(model_cls, row) if row is not None else None

    # ------------------------------------------------------------------
    # Registrations
    async def create_registration(
        self, registration: WorkflowRegistration, version: WorkflowRegistrationVersion
    ) -> None:
        async with self.session() as session:
            async with _unique(session, f"Workflow {registration.name} already registered"):
                session.add(WorkflowRegistrationRow(**_row_values(registration)))
                await session.flush()
                values = _row_values(version)
                values["is_current"] = True
                session.add(WorkflowRegistrationVersionRow(**values))
                await session.commit()

    async def add_registration_version(self, version: WorkflowRegistrationVersion) -> None:
        async with self.session() as session:
            registration = await session.get(WorkflowRegistrationRow, version.registration_id)
            if registration is None or registration.tenant != version.tenant:
                raise NotFoundError(f"Registration {version.registration_id} not found")
            async with _unique(
                session,
                f"Version {version.version} already exists for {version.registration_id}",
            ):
                await session.execute(
                    update(WorkflowRegistrationVersionRow)
                    .where(WorkflowRegistrationVersionRow.registration_id == version.registration_id)
                    .values(is_current=False)
                )
                values = _row_values(version)
                values["is_current"] = True
                session.add(WorkflowRegistrationVersionRow(**values))
                await session.commit()

    async def set_current_version(self, tenant: str, registration_id: str, version: str) -> None:
        async with self.session() as session:
            target = await session.get(WorkflowRegistrationVersionRow, (registration_id, version))
            if target is None or target.tenant != tenant:
                raise NotFoundError(f"Version {version} of {registration_id} not found")
            await session.execute(
                update(WorkflowRegistrationVersionRow)
                .where(WorkflowRegistrationVersionRow.registration_id == registration_id)
                .values(is_current=False)
            )
            await session.execute(
                update(WorkflowRegistrationVersionRow)
                .where(
                    WorkflowRegistrationVersionRow.registration_id == registration_id,
                    WorkflowRegistrationVersionRow.version == version,
                )
                .values(is_current=True)
            )
            await session.commit()

    async def get_registration(
        self, tenant: str, registration_id: str
    ) -> WorkflowRegistration | None:
        stmt = select(WorkflowRegistrationRow).where(
            WorkflowRegistrationRow.tenant == tenant,
            WorkflowRegistrationRow.registration_id == registration_id,
        )
        return await self._first(stmt, WorkflowRegistration)

    async def get_registration_by_name(
        self, tenant: str, name: str
    ) -> WorkflowRegistration | None:
        stmt = select(WorkflowRegistrationRow).where(
            WorkflowRegistrationRow.tenant == tenant, WorkflowRegistrationRow.name == name
        )
        return await self._first(stmt, WorkflowRegistration)

    async def get_registration_version(
        self, tenant: str, registration_id: str, version: Optional[str] = None
    ) -> WorkflowRegistrationVersion | None:
        stmt = select(WorkflowRegistrationVersionRow).where(
            WorkflowRegistrationVersionRow.tenant == tenant,
            WorkflowRegistrationVersionRow.registration_id == registration_id,
        )
        if version is None:
            stmt = stmt.where(WorkflowRegistrationVersionRow.is_current == True)  # noqa: E712
        else:
            stmt = stmt.where(WorkflowRegistrationVersionRow.version == version)
        return await self._first(stmt, WorkflowRegistrationVersion)

    async def list_registrations(self, tenant: str) -> list[WorkflowRegistration]:
        stmt = (
            select(WorkflowRegistrationRow)
            .where(WorkflowRegistrationRow.tenant == tenant)
            .order_by(WorkflowRegistrationRow.created_at)
        )
        return await self._all(stmt, WorkflowRegistration)

    async def list_registration_versions(
        self, tenant: str, registration_id: str
    ) -> list[WorkflowRegistrationVersion]:
        stmt = (
            select(WorkflowRegistrationVersionRow)
            .where(
                WorkflowRegistrationVersionRow.tenant == tenant,
                WorkflowRegistrationVersionRow.registration_id == registration_id,
            )
            .order_by(WorkflowRegistrationVersionRow.created_at)
        )
        return await self._all(stmt, WorkflowRegistrationVersion)

    async def create_template(self, template: WorkflowTemplate) -> None:
        async with self.session() as session:
            async with _unique(session, f"Template {template.template_id} already exists"):
                session.add(WorkflowTemplateRow(**_row_values(template)))
                await session.commit()

    async def get_template(self, tenant: str, template_id: str) -> WorkflowTemplate | None:
        stmt = select(WorkflowTemplateRow).where(
            WorkflowTemplateRow.tenant == tenant, WorkflowTemplateRow.template_id == template_id
        )
        return await self._first(stmt, WorkflowTemplate)

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> None:
        async with self.session() as session:
            async with _unique(session, f"Execution {execution.execution_id} already exists"):
                session.add(WorkflowExecutionRow(**_row_values(execution)))
                await session.commit()

    async def get_execution(self, tenant: str, execution_id: str) -> WorkflowExecution | None:
        async with self.session() as session:
            row = await _select_execution(session, tenant, execution_id)
        return _to_model(WorkflowExecution, row) if row is not None else None

    async def list_executions(
        self, tenant: str, status: Optional[ExecutionStatus] = None
    ) -> list[WorkflowExecution]:
        stmt = select(WorkflowExecutionRow).where(WorkflowExecutionRow.tenant == tenant)
        if status is not None:
            stmt = stmt.where(WorkflowExecutionRow.status == _plain(status))
        return await self._all(stmt.order_by(WorkflowExecutionRow.created_at), WorkflowExecution)

    @asynccontextmanager
    async def lock_execution(
        self, tenant: str, execution_id: str
    ) -> AsyncIterator[_SQLExecutionSession]:
        async with self._locks[(tenant, execution_id)]:
            async with self.session() as session:
                row = await _select_execution(session, tenant, execution_id, lock=True)
                if row is None:
                    raise NotFoundError(f"Execution {execution_id} not found")
                yield _SQLExecutionSession(session, _to_model(WorkflowExecution, row))

    async def append_event(self, event: WorkflowEvent) -> WorkflowEvent:
        async with self.session() as session:
            if await _select_execution(session, event.tenant, event.execution_id) is None:
                raise NotFoundError(f"Execution {event.execution_id} not found")
            async with _unique(session, f"Event {event.event_id} already recorded"):
                row = await _next_event_row(session, event)
                await session.commit()
        return _to_model(WorkflowEvent, row)

    async def list_events(
        self,
        tenant: str,
        execution_id: str,
        after: Optional[int] = None,
        until: Optional[int] = None,
    ) -> list[WorkflowEvent]:
        stmt = select(WorkflowEventRow).where(
            WorkflowEventRow.tenant == tenant, WorkflowEventRow.execution_id == execution_id
        )
        if after is not None:
            stmt = stmt.where(WorkflowEventRow.sequence > after)
        if until is not None:
            stmt = stmt.where(WorkflowEventRow.sequence <= until)
        stmt = stmt.order_by(WorkflowEventRow.created_at, WorkflowEventRow.sequence)
        return await self._all(stmt, WorkflowEvent)

    async def latest_snapshot(
        self, tenant: str, execution_id: str, until: Optional[int] = None
    ) -> WorkflowSnapshot | None:
        stmt = select(WorkflowSnapshotRow).where(
            WorkflowSnapshotRow.tenant == tenant, WorkflowSnapshotRow.execution_id == execution_id
        )
        if until is not None:
            stmt = stmt.where(WorkflowSnapshotRow.sequence <= until)
        stmt = stmt.order_by(WorkflowSnapshotRow.sequence.desc()).limit(1)
        return await self._first(stmt, WorkflowSnapshot)

    # ------------------------------------------------------------------
    # Action results
    async def get_action_result(
        self, tenant: str, execution_id: str, action_name: str, idempotency_key: str
    ) -> ActionResult | None:
        stmt = select(ActionResultRow).where(
            ActionResultRow.tenant == tenant,
            ActionResultRow.execution_id == execution_id,
            ActionResultRow.action_name == action_name,
            ActionResultRow.idempotency_key == idempotency_key,
        )
        return await self._first(stmt, ActionResult)

    async def insert_action_result(self, result: ActionResult) -> None:
        async with self.session() as session:
            async with _unique(
                session, f"Idempotency key {result.idempotency_key} already claimed"
            ):
                session.add(ActionResultRow(**_row_values(result)))
                await session.commit()

    async def reclaim_action_result(
        self, tenant: str, result_id: str, expected_attempts: int
    ) -> bool:
        async with self.session() as session:
            outcome = await session.execute(
                update(ActionResultRow)
                .where(
                    ActionResultRow.tenant == tenant,
                    ActionResultRow.result_id == result_id,
                    ActionResultRow.success == False,  # noqa: E712
                    ActionResultRow.attempts == expected_attempts,
                )
                .values(
                    attempts=expected_attempts + 1,
                    started_at=utcnow(),
                    completed_at=None,
                    error_message=None,
                )
            )
            claimed = outcome.rowcount == 1
            await session.commit()
        return claimed

    async def complete_action_result(
        self,
        tenant: str,
        result_id: str,
        success: bool,
        result: object = None,
        error_message: Optional[str] = None,
    ) -> None:
        async with self.session() as session:
            row = await session.get(ActionResultRow, result_id)
            if row is None or row.tenant != tenant:
                raise NotFoundError(f"Action result {result_id} not found")
            row.success = success
            row.result = result
            row.error_message = error_message
            row.completed_at = utcnow()
            session.add(row)
            await session.commit()

    async def list_action_results(self, tenant: str, execution_id: str) -> list[ActionResult]:
        stmt = (
            select(ActionResultRow)
            .where(ActionResultRow.tenant == tenant, ActionResultRow.execution_id == execution_id)
            .order_by(ActionResultRow.started_at)
        )
        return await self._all(stmt, ActionResult)

    # ------------------------------------------------------------------
    # Tasks
    async def get_task_definition(self, tenant: str, task_type: str) -> TaskDefinition | None:
        stmt = select(TaskDefinitionRow).where(
            TaskDefinitionRow.tenant == tenant, TaskDefinitionRow.task_type == task_type
        )
        return await self._first(stmt, TaskDefinition)

    async def get_task_definition_by_id(
        self, tenant: str, task_definition_id: str
    ) -> TaskDefinition | None:
        stmt = select(TaskDefinitionRow).where(
            TaskDefinitionRow.tenant == tenant,
            TaskDefinitionRow.task_definition_id == task_definition_id,
        )
        return await self._first(stmt, TaskDefinition)

    async def create_task(
        self,
        task: WorkflowTask,
        history: TaskHistoryEntry,
        event: Optional[WorkflowEvent] = None,
        definition: Optional[TaskDefinition] = None,
    ) -> None:
        async with self.session() as session:
            if await _select_execution(session, task.tenant, task.execution_id) is None:
                raise NotFoundError(f"Execution {task.execution_id} not found")
            async with _unique(session, f"Task {task.task_id} collides with existing rows"):
                if definition is not None:
                    session.add(TaskDefinitionRow(**_row_values(definition)))
                    await session.flush()
                session.add(WorkflowTaskRow(**_row_values(task)))
                await session.flush()
                session.add(TaskHistoryRow(**_row_values(history)))
                if event is not None:
                    await _next_event_row(session, event)
                await session.commit()

    async def get_task(self, tenant: str, task_id: str) -> WorkflowTask | None:
        stmt = select(WorkflowTaskRow).where(
            WorkflowTaskRow.tenant == tenant, WorkflowTaskRow.task_id == task_id
        )
        return await self._first(stmt, WorkflowTask)

    async def list_tasks(
        self,
        tenant: str,
        execution_id: Optional[str] = None,
        statuses: Optional[Iterable[TaskStatus]] = None,
    ) -> list[WorkflowTask]:
        stmt = select(WorkflowTaskRow).where(WorkflowTaskRow.tenant == tenant)
        if execution_id is not None:
            stmt = stmt.where(WorkflowTaskRow.execution_id == execution_id)
        if statuses is not None:
            stmt = stmt.where(WorkflowTaskRow.status.in_([_plain(s) for s in statuses]))
        return await self._all(stmt.order_by(WorkflowTaskRow.created_at), WorkflowTask)

    async def transition_task(
        self,
        tenant: str,
        task_id: str,
        expected: Iterable[TaskStatus],
        changes: JsonDict,
        history: TaskHistoryEntry,
    ) -> WorkflowTask:
        allowed = [_plain(s) for s in expected]
        values = {field: _plain(value) for field, value in changes.items()}
        values["updated_at"] = utcnow()
        async with self.session() as session:
            outcome = await session.execute(
                update(WorkflowTaskRow)
                .where(
                    WorkflowTaskRow.tenant == tenant,
                    WorkflowTaskRow.task_id == task_id,
                    WorkflowTaskRow.status.in_(allowed),
                )
                .values(**values)
            )
            if outcome.rowcount != 1:
                await session.rollback()
                current = await session.get(WorkflowTaskRow, task_id)
                if current is None or current.tenant != tenant:
                    raise NotFoundError(f"Task {task_id} not found")
                raise InvalidTaskTransitionError(
                    f"Task {task_id} is {current.status} and cannot move to "
                    f"{_plain(history.to_status)}"
                )
            session.add(TaskHistoryRow(**_row_values(history)))
            await session.commit()
        task = await self.get_task(tenant, task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    async def get_task_history(self, tenant: str, task_id: str) -> list[TaskHistoryEntry]:
        stmt = (
            select(TaskHistoryRow)
            .where(TaskHistoryRow.tenant == tenant, TaskHistoryRow.task_id == task_id)
            .order_by(TaskHistoryRow.timestamp)
        )
        return await self._all(stmt, TaskHistoryEntry)

    # ------------------------------------------------------------------
    # Forms
    async def create_form(self, definition: FormDefinition, schema: FormSchema) -> None:
        async with self.session() as session:
            async with _unique(
                session, f"Form {definition.form_id} version {definition.version} already exists"
            ):
                session.add(FormDefinitionRow(**_row_values(definition)))
                await session.flush()
                session.add(FormSchemaRow(**_row_values(schema)))
                await session.commit()

    async def update_form(self, definition: FormDefinition, schema: FormSchema) -> None:
        key = (definition.tenant, definition.form_id, definition.version)
        async with self.session() as session:
            def_row = await session.get(FormDefinitionRow, key)
            schema_row = await session.get(FormSchemaRow, key)
            if def_row is None or schema_row is None:
                raise NotFoundError(
                    f"Form {definition.form_id} version {definition.version} not found"
                )
            for field, value in _row_values(definition).items():
                setattr(def_row, field, value)
            for field, value in _row_values(schema).items():
                setattr(schema_row, field, value)
            session.add(def_row)
            session.add(schema_row)
            await session.commit()

    async def get_form(self, tenant: str, form_id: str, version: str) -> FormWithSchema | None:
        async with self.session() as session:
            def_row = await session.get(FormDefinitionRow, (tenant, form_id, version))
            schema_row = await session.get(FormSchemaRow, (tenant, form_id, version))
        if def_row is None or schema_row is None:
            return None
        return FormWithSchema(
            definition=_to_model(FormDefinition, def_row),
            form_schema=_to_model(FormSchema, schema_row),
        )

    async def list_form_versions(self, tenant: str, form_id: str) -> list[FormDefinition]:
        stmt = (
            select(FormDefinitionRow)
            .where(FormDefinitionRow.tenant == tenant, FormDefinitionRow.form_id == form_id)
            .order_by(FormDefinitionRow.created_at)
        )
        return await self._all(stmt, FormDefinition)

    async def list_forms(
        self,
        tenant: str,
        category: Optional[str] = None,
        status: Optional[FormStatus] = None,
    ) -> list[FormDefinition]:
        stmt = select(FormDefinitionRow).where(FormDefinitionRow.tenant == tenant)
        if category is not None:
            stmt = stmt.where(FormDefinitionRow.category == category)
        if status is not None:
            stmt = stmt.where(FormDefinitionRow.status == _plain(status))
        return await self._all(stmt.order_by(FormDefinitionRow.created_at), FormDefinition)
