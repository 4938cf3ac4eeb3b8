"""Core engine guarantees repeated against the SQL store on SQLite."""

import asyncio

import pytest

from ledgerflow.config import EngineConfig, LedgerflowConfig
from ledgerflow.errors import (
    ConflictError,
    DuplicateKeyError,
    InvalidTaskTransitionError,
    NotFoundError,
)
from ledgerflow.persistence import SQLWorkflowStore
from ledgerflow.persistence.models import (
    ActionResult,
    ExecutionStatus,
    FormStatus,
    TaskStatus,
)
from ledgerflow.registry import define_workflow
from ledgerflow.runtime import build_runtime
from ledgerflow.workflows import invoice_approval as sample

TENANT = "acme"


@define_workflow(initial_state="zero")
async def ticking_flow(ctx):
    while True:
        await ctx.wait_for("Tick")
        ctx.data["count"] = ctx.data.get("count", 0) + 1
        ctx.data.pop("previous", None)
        if ctx.data["count"] % 2:
            ctx.data["previous"] = ctx.event.event_id
        ctx.set_state(f"tick-{ctx.data['count']}")


async def _runtime(tmp_path, snapshot_interval=20):
    store = SQLWorkflowStore(f"sqlite+aiosqlite:///{tmp_path / 'wf.db'}")
    config = LedgerflowConfig(engine=EngineConfig(snapshot_interval=snapshot_interval))
    runtime = build_runtime(config, store=store)
    await runtime.start()
    outbox = []
    await sample.install(runtime, TENANT, deliver=outbox.append)
    return runtime, outbox


@pytest.mark.asyncio
async def test_sql_invoice_flow_and_replay(tmp_path):
    runtime, outbox = await _runtime(tmp_path)
    try:
        execution_id = await runtime.engine.create_execution(
            TENANT, sample.WORKFLOW_NAME, initial_context={"invoice_number": "77"}
        )
        result = await runtime.engine.deliver_event(
            TENANT, execution_id, "Submit", {"amount": 10}, "bob", event_id="evt-1"
        )
        assert result.current_state == "pending_approval"

        retry = await runtime.engine.deliver_event(
            TENANT, execution_id, "Submit", {"amount": 10}, "bob", event_id="evt-1"
        )
        assert retry.duplicate
        assert len(outbox) == 1

        [task] = await runtime.inbox.list_tasks(TENANT, execution_id)
        assert task.assigned_roles == [sample.APPROVER_ROLE]
        await runtime.inbox.claim_task(TENANT, task.task_id, "carol")
        with pytest.raises(InvalidTaskTransitionError):
            await runtime.inbox.claim_task(TENANT, task.task_id, "dave")
        await runtime.inbox.complete_task(TENANT, task.task_id, {"approved": True}, "carol")

        execution = await runtime.engine.get_execution(TENANT, execution_id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.current_state == "approved"
        events = await runtime.engine.events(TENANT, execution_id)
        assert events[-1].to_state == execution.current_state
        replayed = await runtime.engine.replay(TENANT, execution_id, use_snapshots=False)
        assert (replayed.state, replayed.context) == (
            execution.current_state,
            execution.context_data,
        )
        history = await runtime.inbox.get_task_history(TENANT, task.task_id)
        assert [h.to_status for h in history] == [
            TaskStatus.PENDING,
            TaskStatus.CLAIMED,
            TaskStatus.COMPLETED,
        ]
        assert len(outbox) == 2
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_sql_ranges_and_snapshots(tmp_path):
    runtime, _ = await _runtime(tmp_path, snapshot_interval=4)
    try:
        await runtime.workflows.register(TENANT, "ticker", "1.0.0", ticking_flow)
        execution_id = await runtime.engine.create_execution(TENANT, "ticker")
        for _ in range(9):
            await runtime.engine.deliver_event(TENANT, execution_id, "Tick")

        full = await runtime.engine.events(TENANT, execution_id)
        cut = full[4].sequence
        head = await runtime.engine.events(TENANT, execution_id, until=cut)
        tail = await runtime.engine.events(TENANT, execution_id, after=cut)
        assert [e.event_id for e in head + tail] == [e.event_id for e in full]

        execution = await runtime.engine.get_execution(TENANT, execution_id)
        fast = await runtime.engine.replay(TENANT, execution_id)
        slow = await runtime.engine.replay(TENANT, execution_id, use_snapshots=False)
        assert fast.from_snapshot
        assert (fast.state, fast.context) == (slow.state, slow.context)
        assert (slow.state, slow.context) == (execution.current_state, execution.context_data)
        assert "previous" in slow.context
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_sql_unknown_form_writes_nothing(tmp_path):
    runtime, _ = await _runtime(tmp_path)
    try:
        execution_id = await runtime.engine.create_execution(TENANT, sample.WORKFLOW_NAME)
        before = await runtime.engine.events(TENANT, execution_id)
        with pytest.raises(NotFoundError):
            await runtime.inbox.create_task(
                TENANT, execution_id, {"taskType": "audit", "title": "Audit", "formId": "nope"}
            )
        assert await runtime.store.get_task_definition(TENANT, "audit") is None
        assert await runtime.inbox.list_tasks(TENANT) == []
        assert len(await runtime.engine.events(TENANT, execution_id)) == len(before)

        first = await runtime.inbox.create_task(
            TENANT,
            execution_id,
            {"taskType": "audit", "title": "Audit A", "formId": sample.FORM_ID},
        )
        second = await runtime.inbox.create_task(
            TENANT, execution_id, {"taskType": "audit", "title": "Audit B"}
        )
        a = await runtime.inbox.get_task(TENANT, first)
        b = await runtime.inbox.get_task(TENANT, second)
        assert a.task_definition_id == b.task_definition_id
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_sql_action_claims(tmp_path):
    runtime, _ = await _runtime(tmp_path)
    try:
        execution_id = await runtime.engine.create_execution(TENANT, sample.WORKFLOW_NAME)
        record = ActionResult(
            tenant=TENANT,
            execution_id=execution_id,
            action_name="send_notification",
            idempotency_key="k1",
        )
        await runtime.store.insert_action_result(record)
        duplicate = ActionResult(
            tenant=TENANT,
            execution_id=execution_id,
            action_name="send_notification",
            idempotency_key="k1",
        )
        with pytest.raises(DuplicateKeyError):
            await runtime.store.insert_action_result(duplicate)

        await runtime.store.complete_action_result(
            TENANT, record.result_id, success=False, error_message="smtp down"
        )
        assert await runtime.store.reclaim_action_result(TENANT, record.result_id, 1)
        assert not await runtime.store.reclaim_action_result(TENANT, record.result_id, 1)

        stored = await runtime.store.get_action_result(
            TENANT, execution_id, "send_notification", "k1"
        )
        assert stored.attempts == 2
        assert stored.in_progress
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_sql_registry_and_forms(tmp_path):
    runtime, _ = await _runtime(tmp_path)
    try:
        reg_id = await runtime.workflows.register(
            TENANT, sample.WORKFLOW_NAME, "1.1.0", sample.invoice_approval
        )
        with pytest.raises(ConflictError):
            await runtime.workflows.register(
                TENANT, sample.WORKFLOW_NAME, "1.1.0", sample.invoice_approval
            )
        await runtime.workflows.set_current_version(TENANT, reg_id, "1.0.0")
        versions = await runtime.workflows.list_versions(TENANT, reg_id)
        assert [(v.version, v.is_current) for v in versions] == [("1.0.0", True), ("1.1.0", False)]

        forked = await runtime.forms.create_new_version(TENANT, sample.FORM_ID, "1.1.0")
        assert forked.definition.status == FormStatus.DRAFT
        assert forked.form_schema.json_schema == sample.APPROVAL_FORM_SCHEMA
        active = await runtime.forms.get_form(TENANT, sample.FORM_ID)
        assert active.definition.version == "1.0.0"
        with pytest.raises(ConflictError):
            await runtime.forms.update_form(TENANT, sample.FORM_ID, "1.0.0", name="x")
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_sql_concurrent_deliveries_form_one_chain(tmp_path):
    runtime, _ = await _runtime(tmp_path, snapshot_interval=3)
    try:
        await runtime.workflows.register(TENANT, "ticker", "1.0.0", ticking_flow)
        execution_id = await runtime.engine.create_execution(TENANT, "ticker")

        await asyncio.gather(
            *(
                runtime.engine.deliver_event(TENANT, execution_id, "Tick", event_id=f"tick-{n}")
                for n in range(8)
            )
        )

        events = await runtime.engine.events(TENANT, execution_id)
        assert len(events) == 9
        sequences = [e.sequence for e in events]
        assert sequences == sorted(set(sequences))
        for previous, current in zip(events, events[1:]):
            assert current.from_state == previous.to_state
        execution = await runtime.engine.get_execution(TENANT, execution_id)
        assert execution.current_state == events[-1].to_state == "tick-8"
        replayed = await runtime.engine.replay(TENANT, execution_id)
        assert (replayed.state, replayed.context) == (
            execution.current_state,
            execution.context_data,
        )
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_sql_task_created_is_logged_after_its_trigger(tmp_path):
    runtime, _ = await _runtime(tmp_path)
    try:
        execution_id = await runtime.engine.create_execution(TENANT, sample.WORKFLOW_NAME)
        await runtime.engine.deliver_event(TENANT, execution_id, "Submit", {"amount": 10}, "bob")
        [task] = await runtime.inbox.list_tasks(TENANT, execution_id)

        events = await runtime.engine.events(TENANT, execution_id)
        assert [e.event_name for e in events] == [
            "workflow.started",
            "Submit",
            f"Task:{task.task_id}:Create",
        ]
        assert events[-1].to_state == "pending_approval"
        assert events[-1].user_id == "bob"
    finally:
        await runtime.close()
