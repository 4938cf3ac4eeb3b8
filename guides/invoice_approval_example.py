"""Example running the sample invoice approval workflow end to end in memory."""

import asyncio

from ledgerflow import build_runtime
from ledgerflow.persistence import InMemoryWorkflowStore
from ledgerflow.workflows import invoice_approval

TENANT = "acme"


async def main():
    runtime = build_runtime(store=InMemoryWorkflowStore())
    async with runtime:
        await invoice_approval.install(runtime, TENANT, deliver=print)

        execution_id = await runtime.engine.create_execution(
            TENANT,
            invoice_approval.WORKFLOW_NAME,
            initial_context={"invoice_number": "1042", "amount": 980.0},
            user_id="bob",
        )
        result = await runtime.engine.deliver_event(
            TENANT, execution_id, "Submit", {"amount": 980.0}, "bob"
        )
        print(f"After submit: {result.current_state}")

        tasks = await runtime.inbox.tasks_for_user(
            TENANT, "carol", roles=[invoice_approval.APPROVER_ROLE]
        )
        task = tasks[0]
        await runtime.inbox.claim_task(TENANT, task.task_id, "carol")
        await runtime.inbox.complete_task(
            TENANT, task.task_id, {"approved": True}, "carol", comments="Looks right"
        )

        execution = await runtime.engine.get_execution(TENANT, execution_id)
        print(f"Final state: {execution.current_state} ({execution.status.value})")


if __name__ == "__main__":
    asyncio.run(main())
