"""The handle workflow logic uses to read events and call actions."""

from __future__ import annotations

import copy
import logging
from collections import Counter
from typing import TYPE_CHECKING, Any, Optional, Tuple

from ..contracts import ActionContext
from ..errors import WorkflowLogicError
from ..persistence.models import JsonDict, WorkflowEvent, WorkflowExecution

if TYPE_CHECKING:
    from ..actions import ActionRegistry

logger = logging.getLogger(__name__)

STARTED_EVENT = "workflow.started"
CANCEL_EVENT = "workflow.cancel"
STARTED_TYPE = "workflow_started"
TASK_CREATED_TYPE = "task_created"
CREATE_TASK_ACTION = "create_human_task"

# Events the engine writes for bookkeeping; ``wait_for`` never returns them.
SYSTEM_EVENT_TYPES = frozenset({STARTED_TYPE, TASK_CREATED_TYPE})


class Suspend(BaseException):
    """Raised by ``wait_for`` when the history holds no further matching event.

    Derives from ``BaseException`` so that ``except Exception`` blocks in
    workflow logic do not swallow it.
    """


class WorkflowContext:
    """Replay cursor over an execution's history.

    Workflow logic is re-run from its first line on every delivery. Each
    ``wait_for`` consumes events from the recorded history in order and
    suspends the run once the history is exhausted; every action call is keyed
    by the event most recently consumed, so calls made in earlier runs resolve
    to their recorded results instead of running again.
    """

    def __init__(
        self,
        execution: WorkflowExecution,
        history: list[WorkflowEvent],
        actions: "ActionRegistry",
        initial_state: str,
        parameters: Optional[JsonDict] = None,
    ) -> None:
        self.tenant = execution.tenant
        self.execution_id = execution.execution_id
        self.workflow_name = execution.workflow_name
        self.parameters: JsonDict = copy.deepcopy(parameters or {})
        self._actions = actions
        self._history = history
        self._cursor = 0
        started = next((e for e in history if e.event_type == STARTED_TYPE), None)
        if started is None:
            raise WorkflowLogicError(f"Execution {self.execution_id} has no start event")
        self._trigger = started
        self.data: JsonDict = copy.deepcopy(started.payload.get("context", {}))
        self._state = initial_state
        self._calls: Counter[Tuple[str, str]] = Counter()
        self.rejected = False
        self.rejection_reason: Optional[str] = None
        self._logged = {e.event_id for e in history}
        self.pending_events: list[WorkflowEvent] = []

    # ------------------------------------------------------------------
    # State
    @property
    def state(self) -> str:
        return self._state

    def set_state(self, state: str) -> None:
        if not isinstance(state, str) or not state:
            raise WorkflowLogicError(f"Invalid state name: {state!r}")
        self._state = state

    @property
    def event(self) -> WorkflowEvent:
        """The event that most recently resumed the logic."""
        return self._trigger

    @property
    def user_id(self) -> Optional[str]:
        return self._trigger.user_id

    def reject(self, reason: Optional[str] = None) -> None:
        """End the execution as ``rejected`` once the logic returns."""
        self.rejected = True
        self.rejection_reason = reason

    def complete(self) -> None:
        """End the execution as ``completed`` once the logic returns."""
        self.rejected = False
        self.rejection_reason = None

    # ------------------------------------------------------------------
    # Events
    async def wait_for(self, *event_names: str) -> WorkflowEvent:
        """Return the next recorded event named in ``event_names``.

        Events that do not match are consumed and skipped. With no names any
        event matches.
        """
        while self._cursor < len(self._history):
            event = self._history[self._cursor]
            self._cursor += 1
            if event.event_type in SYSTEM_EVENT_TYPES:
                continue
            self._trigger = event
            if not event_names or event.event_name in event_names:
                return event
        raise Suspend()

    # ------------------------------------------------------------------
    # Actions
    def _idempotency_key(self, action_name: str) -> str:
        trigger_id = self._trigger.event_id
        self._calls[(action_name, trigger_id)] += 1
        count = self._calls[(action_name, trigger_id)]
        key = f"{self.execution_id}:{action_name}:{trigger_id}"
        return key if count == 1 else f"{key}:{count}"

    async def action(self, action_name: str, params: Optional[JsonDict] = None, **kwargs: Any) -> Any:
        """Call a registered action at most once for this point in the logic."""
        merged = {**(params or {}), **kwargs}
        context = ActionContext(
            tenant=self.tenant,
            execution_id=self.execution_id,
            idempotency_key=self._idempotency_key(action_name),
            user_id=self._trigger.user_id,
            event_id=self._trigger.event_id,
        )
        result = await self._actions.execute(action_name, merged, context)
        if action_name == CREATE_TASK_ACTION:
            self._stage_task_created(result)
        return result

    def _stage_task_created(self, result: JsonDict) -> None:
        # Logged once; a replayed call finds its event already in the history.
        event_id = result.get("eventId") if isinstance(result, dict) else None
        if not event_id or event_id in self._logged:
            return
        self._logged.add(event_id)
        self.pending_events.append(
            WorkflowEvent(
                event_id=event_id,
                execution_id=self.execution_id,
                tenant=self.tenant,
                event_name=f"Task:{result['taskId']}:Create",
                event_type=TASK_CREATED_TYPE,
                user_id=self._trigger.user_id,
                payload=copy.deepcopy(result.get("task", {})),
            )
        )

    async def create_task(self, params: Optional[JsonDict] = None, **kwargs: Any) -> str:
        """Create a human task through ``create_human_task`` and return its id."""
        result = await self.action(CREATE_TASK_ACTION, params, **kwargs)
        return result["taskId"]

    async def wait_for_task(self, task_id: str, *actions: str) -> WorkflowEvent:
        """Wait until task ``task_id`` reaches one of ``actions`` (default: Complete or Cancel)."""
        names = [f"Task:{task_id}:{a}" for a in (actions or ("Complete", "Cancel"))]
        return await self.wait_for(*names)
