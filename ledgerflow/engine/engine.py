"""Event-sourced execution engine."""

from __future__ import annotations

import copy
import logging
from typing import Optional

from pydantic import BaseModel, Field

from ..actions import ActionRegistry
from ..contracts import DeliveryResult, ReplayResult
from ..errors import ConflictError, ExecutionClosedError, NotFoundError, ValidationError
from ..persistence.models import (
    ExecutionStatus,
    ExecutionUpdate,
    JsonDict,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowSnapshot,
    new_id,
)
from ..persistence.repository import ExecutionSession, WorkflowStore
from ..registry import Registration, WorkflowRegistry
from .context import CANCEL_EVENT, STARTED_EVENT, STARTED_TYPE, Suspend, WorkflowContext
from .replay import Fold, diff_context

logger = logging.getLogger(__name__)


class RunOutcome(BaseModel):
    state: str
    context: JsonDict
    status: ExecutionStatus
    error_message: Optional[str] = None
    # Bookkeeping events produced by the run, committed after the triggering event.
    appended: list[WorkflowEvent] = Field(default_factory=list)


class WorkflowEngine:
    """Create executions and drive them by delivering events.

    Every delivery re-runs the workflow logic from its start against the
    execution's recorded history plus the new event, then commits the event
    together with the resulting state, context and status.
    """

    def __init__(
        self,
        store: WorkflowStore,
        registry: WorkflowRegistry,
        actions: ActionRegistry,
        snapshot_interval: int = 20,
    ) -> None:
        self.store = store
        self.registry = registry
        self.actions = actions
        self.snapshot_interval = snapshot_interval

    # ------------------------------------------------------------------
    # Queries
    async def get_execution(self, tenant: str, execution_id: str) -> WorkflowExecution:
        execution = await self.store.get_execution(tenant, execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def list_executions(
        self, tenant: str, status: Optional[ExecutionStatus] = None
    ) -> list[WorkflowExecution]:
        return await self.store.list_executions(tenant, status)

    async def events(
        self,
        tenant: str,
        execution_id: str,
        after: Optional[int] = None,
        until: Optional[int] = None,
    ) -> list[WorkflowEvent]:
        """Ordered events with ``after < sequence <= until``."""
        return await self.store.list_events(tenant, execution_id, after=after, until=until)

    async def replay(
        self,
        tenant: str,
        execution_id: str,
        up_to: Optional[int] = None,
        *,
        use_snapshots: bool = True,
    ) -> ReplayResult:
        """Rebuild state and context by folding the log, without running logic."""
        snapshot = None
        if use_snapshots:
            snapshot = await self.store.latest_snapshot(tenant, execution_id, until=up_to)
        after = snapshot.sequence if snapshot else None
        events = await self.store.list_events(tenant, execution_id, after=after, until=up_to)
        if snapshot is None and not events:
            if await self.store.get_execution(tenant, execution_id) is None:
                raise NotFoundError(f"Execution {execution_id} not found")
        result = Fold(snapshot).apply(events)
        return ReplayResult(
            execution_id=execution_id,
            state=result.state,
            context=result.context,
            last_sequence=result.last_sequence,
            events_applied=result.events_applied,
            from_snapshot=snapshot is not None,
        )

    # ------------------------------------------------------------------
    # Running logic
    async def _registration(self, execution: WorkflowExecution) -> Registration:
        registration_id = execution.workflow_version_id.partition(":")[0]
        registration = await self.registry.get_by_id(
            execution.tenant, registration_id, execution.workflow_version
        )
        if registration is None:
            raise NotFoundError(
                f"Workflow {execution.workflow_name}@{execution.workflow_version} not found"
            )
        return registration

    async def _run(
        self,
        registration: Registration,
        execution: WorkflowExecution,
        history: list[WorkflowEvent],
    ) -> RunOutcome:
        logic = self.registry.load_logic(registration)
        ctx = WorkflowContext(
            execution,
            history,
            self.actions,
            registration.definition.initial_state,
            registration.parameters,
        )
        try:
            await logic(ctx)
        except Suspend:
            status, error = ExecutionStatus.ACTIVE, None
        except ConflictError:
            # Concurrent claim of an action key; the caller retries the delivery.
            raise
        except Exception as exc:
            logger.error(
                f"Workflow {execution.workflow_name} failed in execution "
                f"{execution.execution_id}: {exc}"
            )
            status, error = ExecutionStatus.FAILED, str(exc) or type(exc).__name__
        else:
            if ctx.rejected:
                status, error = ExecutionStatus.REJECTED, ctx.rejection_reason
            else:
                status, error = ExecutionStatus.COMPLETED, None
        return RunOutcome(
            state=ctx.state,
            context=ctx.data,
            status=status,
            error_message=error,
            appended=ctx.pending_events,
        )

    async def _commit(
        self,
        session: ExecutionSession,
        event: WorkflowEvent,
        outcome: RunOutcome,
        log_length: int,
        before: Optional[JsonDict] = None,
    ) -> WorkflowEvent:
        if before is None:
            before = session.execution.context_data
        patch, removed = diff_context(before, outcome.context)
        event.to_state = outcome.state
        event.context_patch = patch
        event.context_removed = removed
        for extra in outcome.appended:
            extra.from_state = outcome.state
            extra.to_state = outcome.state
        snapshot = None
        if self.snapshot_interval and log_length % self.snapshot_interval == 0:
            snapshot = WorkflowSnapshot(
                execution_id=event.execution_id,
                tenant=event.tenant,
                state=outcome.state,
                context=copy.deepcopy(outcome.context),
            )
        update = ExecutionUpdate(
            current_state=outcome.state,
            status=outcome.status,
            context_data=outcome.context,
            error_message=outcome.error_message,
        )
        return await session.commit_event(event, update, snapshot, outcome.appended)

    async def _start(self, session: ExecutionSession, registration: Registration) -> WorkflowEvent:
        """Run the logic against the start event alone and commit it.

        The start event id is derived from the execution id, so rerunning an
        interrupted start resolves to the same action keys.
        """
        execution = session.execution
        started = WorkflowEvent(
            event_id=f"{execution.execution_id}:started",
            execution_id=execution.execution_id,
            tenant=execution.tenant,
            event_name=STARTED_EVENT,
            event_type=STARTED_TYPE,
            from_state="",
            user_id=execution.created_by,
            payload={"context": copy.deepcopy(execution.context_data)},
        )
        outcome = await self._run(registration, execution, [started])
        return await self._commit(session, started, outcome, 1, before={})

    # ------------------------------------------------------------------
    # Commands
    async def create_execution(
        self,
        tenant: str,
        workflow_name: str,
        version: Optional[str] = None,
        initial_context: Optional[JsonDict] = None,
        *,
        user_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> str:
        """Start ``workflow_name`` and run its logic up to the first suspension.

        If the start run is interrupted, the execution is kept with its
        initial context and the next delivery starts it before anything else.
        """
        registration = await self.registry.get_by_name(tenant, workflow_name, version)
        if registration is None:
            detail = f"@{version}" if version else ""
            raise NotFoundError(f"Workflow {workflow_name}{detail} not found")
        # Fail fast on a broken entrypoint before anything is written.
        self.registry.load_logic(registration)

        execution = WorkflowExecution(
            execution_id=execution_id or new_id(),
            tenant=tenant,
            workflow_name=registration.name,
            workflow_version_id=registration.version_id,
            workflow_version=registration.version,
            current_state=registration.definition.initial_state,
            context_data=copy.deepcopy(initial_context or {}),
            created_by=user_id,
        )
        await self.store.create_execution(execution)
        logger.info(
            f"Created execution {execution.execution_id} of {registration.name}@"
            f"{registration.version} for tenant {tenant}"
        )

        async with self.store.lock_execution(tenant, execution.execution_id) as session:
            await self._start(session, registration)
        return execution.execution_id

    async def deliver_event(
        self,
        tenant: str,
        execution_id: str,
        event_name: str,
        payload: Optional[JsonDict] = None,
        user_id: Optional[str] = None,
        *,
        event_id: Optional[str] = None,
        event_type: str = "external",
    ) -> DeliveryResult:
        """Append ``event_name`` and advance the execution.

        Redelivering an ``event_id`` that is already in the log is a no-op
        reported with ``duplicate=True``. A ``failed`` execution accepts the
        event and re-runs its logic, which is how it recovers; ``completed``,
        ``rejected`` and cancelled executions refuse it.
        """
        if not event_name:
            raise ValidationError("event_name must be a non-empty string")
        async with self.store.lock_execution(tenant, execution_id) as session:
            history = await session.events()
            if not any(e.event_type == STARTED_TYPE for e in history):
                logger.warning(f"Execution {execution_id} has no start event; starting it now")
                await self._start(session, await self._registration(session.execution))
                history = await session.events()
            execution = session.execution
            if event_id is not None:
                recorded = next((e for e in history if e.event_id == event_id), None)
                if recorded is not None:
                    logger.info(f"Event {event_id} already delivered to {execution_id}")
                    return DeliveryResult(
                        execution_id=execution_id,
                        previous_state=recorded.from_state,
                        current_state=execution.current_state,
                        status=execution.status,
                        event=recorded,
                        duplicate=True,
                    )
            if not execution.status.accepts_events:
                raise ExecutionClosedError(execution_id, execution.status.value)
            if any(e.event_name == CANCEL_EVENT for e in history):
                raise ExecutionClosedError(execution_id, "cancelled")
            if execution.status is ExecutionStatus.FAILED:
                logger.info(f"Re-running failed execution {execution_id} on {event_name}")

            event = WorkflowEvent(
                event_id=event_id or new_id(),
                execution_id=execution_id,
                tenant=tenant,
                event_name=event_name,
                event_type=event_type,
                from_state=execution.current_state,
                user_id=user_id,
                payload=copy.deepcopy(payload or {}),
            )
            if event_name == CANCEL_EVENT:
                reason = event.payload.get("reason") or "Cancelled by administrator"
                outcome = RunOutcome(
                    state=execution.current_state,
                    context=execution.context_data,
                    status=ExecutionStatus.FAILED,
                    error_message=reason,
                )
            else:
                registration = await self._registration(execution)
                outcome = await self._run(registration, execution, history + [event])
            committed = await self._commit(session, event, outcome, len(history) + 1)

        logger.info(
            f"Delivered {event_name} to {execution_id}: {committed.from_state} -> "
            f"{committed.to_state} ({outcome.status.value})"
        )
        return DeliveryResult(
            execution_id=execution_id,
            previous_state=committed.from_state,
            current_state=committed.to_state,
            status=outcome.status,
            event=committed,
        )

    async def cancel_execution(
        self, tenant: str, execution_id: str, reason: str, user_id: Optional[str] = None
    ) -> DeliveryResult:
        """Force-stop an execution by delivering a ``workflow.cancel`` event."""
        return await self.deliver_event(
            tenant, execution_id, CANCEL_EVENT, {"reason": reason}, user_id, event_type="admin"
        )

    async def record_event(
        self,
        tenant: str,
        execution_id: str,
        event_name: str,
        payload: Optional[JsonDict] = None,
        user_id: Optional[str] = None,
        *,
        event_type: str = "system",
        event_id: Optional[str] = None,
    ) -> WorkflowEvent:
        """Append an event that leaves state, context and status untouched.

        Used for facts that must reach the log of an execution whose logic no
        longer runs, such as task changes after the execution terminated.
        Recording an ``event_id`` that is already logged returns the logged event.
        """
        async with self.store.lock_execution(tenant, execution_id) as session:
            if event_id is not None:
                recorded = next((e for e in await session.events() if e.event_id == event_id), None)
                if recorded is not None:
                    return recorded
            event = WorkflowEvent(
                event_id=event_id or new_id(),
                execution_id=execution_id,
                tenant=tenant,
                event_name=event_name,
                event_type=event_type,
                from_state=session.execution.current_state,
                to_state=session.execution.current_state,
                user_id=user_id,
                payload=copy.deepcopy(payload or {}),
            )
            return await self.store.append_event(event)
