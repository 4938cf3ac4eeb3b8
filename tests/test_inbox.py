"""Task inbox tests."""

from datetime import timedelta

import pytest

from ledgerflow.config import LedgerflowConfig
from ledgerflow.engine import TASK_CREATED_TYPE
from ledgerflow.errors import (
    ConflictError,
    InvalidTaskTransitionError,
    NotFoundError,
    ValidationError,
)
from ledgerflow.persistence import InMemoryWorkflowStore
from ledgerflow.persistence.models import ExecutionStatus, FormStatus, TaskStatus, utcnow
from ledgerflow.registry import define_workflow
from ledgerflow.runtime import build_runtime

TENANT = "acme"
FORM_ID = "expense-form"
FORM_SCHEMA = {
    "type": "object",
    "properties": {"approved": {"type": "boolean"}, "note": {"type": "string"}},
    "required": ["approved"],
}


CRASHES = []


class SimulatedCrash(BaseException):
    """Stands in for the process dying mid-delivery."""


@define_workflow(initial_state="open")
async def idle_flow(ctx):
    await ctx.wait_for("Close")
    ctx.set_state("closed")


@define_workflow(initial_state="open")
async def review_flow(ctx):
    await ctx.wait_for("Submit")
    task_id = await ctx.create_task(taskType="review_expense", title="Review", formId=FORM_ID)
    if CRASHES:
        CRASHES.pop()
        raise SimulatedCrash()
    ctx.set_state("in_review")
    done = await ctx.wait_for_task(task_id)
    ctx.set_state("reviewed" if done.payload.get("approved") else "returned")


async def _setup():
    runtime = build_runtime(LedgerflowConfig(), store=InMemoryWorkflowStore())
    await runtime.forms.register(
        TENANT, FORM_ID, "Expense", "1.0.0", FORM_SCHEMA, status=FormStatus.ACTIVE
    )
    await runtime.workflows.register(TENANT, "idle", "1.0.0", idle_flow)
    await runtime.workflows.register(TENANT, "review", "1.0.0", review_flow)
    execution_id = await runtime.engine.create_execution(TENANT, "idle")
    return runtime, execution_id


def _params(**overrides):
    params = {"taskType": "review_expense", "title": "Review expense", "formId": FORM_ID}
    params.update(overrides)
    return params


@pytest.mark.asyncio
async def test_create_task_writes_task_history_and_event():
    runtime, execution_id = await _setup()
    due = utcnow() + timedelta(days=5)
    task_id = await runtime.inbox.create_task(
        TENANT,
        execution_id,
        _params(
            description="Check receipts",
            priority="high",
            dueDate=due.isoformat(),
            assignTo={"users": ["dave", "erin"]},
            contextData={"amount": 42},
        ),
        user_id="alice",
    )

    task = await runtime.inbox.get_task(TENANT, task_id)
    assert task.status == TaskStatus.PENDING
    assert task.priority == "high"
    assert task.assigned_users == ["dave", "erin"]
    assert task.assigned_roles == []
    assert task.context_data == {"amount": 42}
    assert task.created_by == "alice"

    definition = await runtime.store.get_task_definition(TENANT, "review_expense")
    assert definition.form_id == FORM_ID
    assert definition.name == "Review expense"
    assert definition.default_priority == "high"
    assert definition.default_sla_days == 5

    [history] = await runtime.inbox.get_task_history(TENANT, task_id)
    assert (history.action, history.from_status, history.to_status) == (
        "create",
        None,
        TaskStatus.PENDING,
    )

    event = (await runtime.engine.events(TENANT, execution_id))[-1]
    assert event.event_name == f"Task:{task_id}:Create"
    assert event.event_type == TASK_CREATED_TYPE
    assert event.from_state == event.to_state == "open"
    assert event.payload["taskId"] == task_id
    assert event.payload["assignedUsers"] == ["dave", "erin"]

    # A task event never moves the execution.
    execution = await runtime.engine.get_execution(TENANT, execution_id)
    assert execution.current_state == "open"


@pytest.mark.asyncio
async def test_task_definition_is_reused_by_type():
    runtime, execution_id = await _setup()
    first = await runtime.inbox.create_task(TENANT, execution_id, _params(title="First"))
    second = await runtime.inbox.create_task(
        TENANT, execution_id, _params(title="Second", formId=None)
    )

    first_task = await runtime.inbox.get_task(TENANT, first)
    second_task = await runtime.inbox.get_task(TENANT, second)
    assert first_task.task_definition_id == second_task.task_definition_id
    assert second_task.title == "Second"
    definition = await runtime.store.get_task_definition(TENANT, "review_expense")
    assert definition.name == "First"
    assert definition.default_sla_days == 3
    assert second_task.priority == "medium"


@pytest.mark.asyncio
async def test_new_task_type_needs_a_form():
    runtime, execution_id = await _setup()
    with pytest.raises(ValidationError):
        await runtime.inbox.create_task(TENANT, execution_id, _params(formId=None))
    with pytest.raises(ValidationError):
        await runtime.inbox.create_task(TENANT, execution_id, {"title": "No type"})
    assert await runtime.inbox.list_tasks(TENANT) == []


@pytest.mark.asyncio
async def test_assign_to_normalisation():
    runtime, execution_id = await _setup()
    roles_as_string = await runtime.inbox.create_task(
        TENANT, execution_id, _params(assignTo={"roles": "finance", "users": 7})
    )
    malformed = await runtime.inbox.create_task(
        TENANT, execution_id, _params(assignTo="finance")
    )

    task = await runtime.inbox.get_task(TENANT, roles_as_string)
    assert task.assigned_roles == ["finance"]
    assert task.assigned_users == []
    other = await runtime.inbox.get_task(TENANT, malformed)
    assert other.assigned_roles == [] and other.assigned_users == []


@pytest.mark.asyncio
async def test_task_lifecycle_emits_events():
    runtime, execution_id = await _setup()
    task_id = await runtime.inbox.create_task(TENANT, execution_id, _params())

    claimed = await runtime.inbox.claim_task(TENANT, task_id, "dave")
    assert claimed.status == TaskStatus.CLAIMED
    assert claimed.claimed_by == "dave"
    with pytest.raises(InvalidTaskTransitionError):
        await runtime.inbox.claim_task(TENANT, task_id, "erin")

    released = await runtime.inbox.release_task(TENANT, task_id, "dave")
    assert released.status == TaskStatus.PENDING
    assert released.claimed_by is None

    with pytest.raises(ValidationError) as exc_info:
        await runtime.inbox.complete_task(TENANT, task_id, {"approved": "yes"}, "erin")
    assert exc_info.value.errors[0]["path"] == "approved"
    assert (await runtime.inbox.get_task(TENANT, task_id)).status == TaskStatus.PENDING

    completed = await runtime.inbox.complete_task(
        TENANT, task_id, {"approved": True}, "erin", comments="fine"
    )
    assert completed.status == TaskStatus.COMPLETED
    assert completed.completed_by == "erin"
    assert completed.response_data == {"approved": True, "__comments": "fine"}

    with pytest.raises(InvalidTaskTransitionError):
        await runtime.inbox.cancel_task(TENANT, task_id, "erin")

    history = await runtime.inbox.get_task_history(TENANT, task_id)
    assert [h.action for h in history] == ["create", "claim", "release", "complete"]

    names = [e.event_name for e in await runtime.engine.events(TENANT, execution_id)]
    assert names[-4:] == [
        f"Task:{task_id}:Create",
        f"Task:{task_id}:Claim",
        f"Task:{task_id}:Release",
        f"Task:{task_id}:Complete",
    ]
    complete_event = (await runtime.engine.events(TENANT, execution_id))[-1]
    assert complete_event.event_type == "task_completed"
    assert complete_event.payload == {"approved": True, "__comments": "fine"}
    assert complete_event.user_id == "erin"


@pytest.mark.asyncio
async def test_task_events_reach_closed_executions():
    runtime, execution_id = await _setup()
    task_id = await runtime.inbox.create_task(TENANT, execution_id, _params())
    closed = await runtime.engine.deliver_event(TENANT, execution_id, "Close")
    assert closed.status == ExecutionStatus.COMPLETED

    cancelled = await runtime.inbox.cancel_task(TENANT, task_id, "admin", reason="obsolete")
    assert cancelled.status == TaskStatus.CANCELLED

    execution = await runtime.engine.get_execution(TENANT, execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    last = (await runtime.engine.events(TENANT, execution_id))[-1]
    assert last.event_name == f"Task:{task_id}:Cancel"
    assert last.to_state == "closed"
    assert last.payload["reason"] == "obsolete"


@pytest.mark.asyncio
async def test_task_queries():
    runtime, execution_id = await _setup()
    for_role = await runtime.inbox.create_task(
        TENANT, execution_id, _params(assignTo={"roles": ["finance"]})
    )
    for_user = await runtime.inbox.create_task(
        TENANT, execution_id, _params(assignTo={"users": "dave"})
    )
    await runtime.inbox.cancel_task(TENANT, for_user)

    mine = await runtime.inbox.tasks_for_user(TENANT, "zoe", roles=["finance"])
    assert [t.task_id for t in mine] == [for_role]
    assert await runtime.inbox.tasks_for_user(TENANT, "dave") == []
    closed = await runtime.inbox.tasks_for_user(TENANT, "dave", status=TaskStatus.CANCELLED)
    assert [t.task_id for t in closed] == [for_user]

    pending = await runtime.inbox.list_tasks(TENANT, execution_id, status="PENDING")
    assert [t.task_id for t in pending] == [for_role]
    assert len(await runtime.inbox.list_tasks(TENANT, execution_id)) == 2
    assert await runtime.inbox.list_tasks("globex") == []

    with pytest.raises(NotFoundError):
        await runtime.inbox.get_task(TENANT, "task-missing")
    with pytest.raises(NotFoundError):
        await runtime.inbox.claim_task(TENANT, "task-missing", "dave")


async def _submitted_review(runtime):
    execution_id = await runtime.engine.create_execution(TENANT, "review")
    await runtime.engine.deliver_event(TENANT, execution_id, "Submit", event_id="sub-1")
    [task] = await runtime.inbox.list_tasks(TENANT, execution_id)
    return execution_id, task.task_id


@pytest.mark.asyncio
async def test_task_created_follows_the_event_that_created_it():
    runtime, _ = await _setup()
    execution_id, task_id = await _submitted_review(runtime)

    events = await runtime.engine.events(TENANT, execution_id)
    assert [e.event_name for e in events] == [
        "workflow.started",
        "Submit",
        f"Task:{task_id}:Create",
    ]
    created = events[-1]
    assert created.sequence > events[1].sequence
    assert created.from_state == created.to_state == "in_review"
    assert created.payload["taskId"] == task_id
    [history] = await runtime.inbox.get_task_history(TENANT, task_id)
    assert created.event_id == history.history_id

    replayed = await runtime.engine.replay(TENANT, execution_id, use_snapshots=False)
    assert replayed.state == "in_review"


@pytest.mark.asyncio
async def test_rolled_back_delivery_leaves_no_task_created_event():
    runtime, _ = await _setup()
    execution_id = await runtime.engine.create_execution(TENANT, "review")

    CRASHES.append(True)
    with pytest.raises(SimulatedCrash):
        await runtime.engine.deliver_event(TENANT, execution_id, "Submit", event_id="sub-1")
    names = [e.event_name for e in await runtime.engine.events(TENANT, execution_id)]
    assert names == ["workflow.started"]
    [task] = await runtime.inbox.list_tasks(TENANT, execution_id)

    await runtime.engine.deliver_event(TENANT, execution_id, "Submit", event_id="sub-1")
    names = [e.event_name for e in await runtime.engine.events(TENANT, execution_id)]
    assert names == ["workflow.started", "Submit", f"Task:{task.task_id}:Create"]
    assert len(await runtime.inbox.list_tasks(TENANT, execution_id)) == 1


@pytest.mark.asyncio
async def test_failed_event_delivery_can_be_retried(monkeypatch):
    runtime, _ = await _setup()
    execution_id, task_id = await _submitted_review(runtime)
    original = runtime.engine.deliver_event
    failures = [ConflictError("execution busy")]

    async def flaky(*args, **kwargs):
        if failures:
            raise failures.pop()
        return await original(*args, **kwargs)

    monkeypatch.setattr(runtime.engine, "deliver_event", flaky)
    with pytest.raises(ConflictError):
        await runtime.inbox.complete_task(TENANT, task_id, {"approved": True}, "erin")

    # The task moved but its event never reached the execution.
    assert (await runtime.inbox.get_task(TENANT, task_id)).status == TaskStatus.COMPLETED
    names = [e.event_name for e in await runtime.engine.events(TENANT, execution_id)]
    assert f"Task:{task_id}:Complete" not in names
    assert (await runtime.engine.get_execution(TENANT, execution_id)).current_state == "in_review"

    retried = await runtime.inbox.complete_task(TENANT, task_id, {"approved": True}, "erin")
    assert retried.status == TaskStatus.COMPLETED
    execution = await runtime.engine.get_execution(TENANT, execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.current_state == "reviewed"
    names = [e.event_name for e in await runtime.engine.events(TENANT, execution_id)]
    assert names.count(f"Task:{task_id}:Complete") == 1
    history = await runtime.inbox.get_task_history(TENANT, task_id)
    assert [h.action for h in history] == ["create", "complete"]

    with pytest.raises(InvalidTaskTransitionError):
        await runtime.inbox.complete_task(TENANT, task_id, {"approved": True}, "erin")
