"""Invoice approval: submit, notify finance, wait for a human decision."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ..contracts import ActionContext, ActionParameter
from ..engine import WorkflowContext
from ..persistence.models import FormStatus, JsonDict
from ..registry import define_workflow

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "invoice-approval"
FORM_ID = "invoice-approval-form"
TASK_TYPE = "approve_invoice"
APPROVER_ROLE = "finance_approver"

APPROVAL_FORM_SCHEMA: JsonDict = {
    "type": "object",
    "properties": {
        "approved": {"type": "boolean"},
        "comments": {"type": "string", "maxLength": 2000},
        "approved_amount": {"type": "number", "minimum": 0},
    },
    "required": ["approved"],
    "additionalProperties": False,
}

NOTIFICATION_PARAMETERS = [
    ActionParameter(name="recipient", type="string"),
    ActionParameter(name="message", type="string"),
    ActionParameter(name="channel", type="string", required=False, default="email"),
]


def make_send_notification(
    deliver: Optional[Callable[[JsonDict], Any]] = None,
) -> Callable[[JsonDict, ActionContext], JsonDict]:
    """Build a ``send_notification`` handler that passes each message to ``deliver``."""

    def send_notification(params: JsonDict, context: ActionContext) -> JsonDict:
        if deliver is not None:
            deliver(params)
        logger.info(
            f"Notified {params['recipient']} via {params['channel']} "
            f"for execution {context.execution_id}"
        )
        return {"sent": True, "recipient": params["recipient"]}

    return send_notification


def register_actions(actions: Any, deliver: Optional[Callable[[JsonDict], Any]] = None) -> None:
    """Register the actions this workflow calls; loadable through ``action_modules``."""
    if actions.get_action("send_notification") is None:
        actions.register_simple_action(
            "send_notification",
            "Send a notification message",
            NOTIFICATION_PARAMETERS,
            make_send_notification(deliver),
        )


@define_workflow(initial_state="draft", description="Route an invoice to finance for approval")
async def invoice_approval(ctx: WorkflowContext) -> None:
    invoice_number = ctx.data.get("invoice_number", "unknown")

    submitted = await ctx.wait_for("Submit")
    ctx.set_state("submitted")
    ctx.data["submitted_by"] = submitted.user_id
    if submitted.payload.get("amount") is not None:
        ctx.data["amount"] = submitted.payload["amount"]
    await ctx.action(
        "send_notification",
        recipient=APPROVER_ROLE,
        message=f"Invoice #{invoice_number} was submitted for approval",
    )

    task_id = await ctx.create_task(
        taskType=TASK_TYPE,
        title=f"Approve Invoice #{invoice_number}",
        formId=FORM_ID,
        priority=ctx.parameters.get("priority", "medium"),
        assignTo={"roles": APPROVER_ROLE},
        contextData={"invoice_number": invoice_number, "amount": ctx.data.get("amount")},
    )
    ctx.data["approval_task_id"] = task_id
    ctx.set_state("pending_approval")

    decision = await ctx.wait_for_task(task_id)
    if decision.event_name.endswith(":Cancel"):
        ctx.set_state("rejected")
        ctx.reject(decision.payload.get("reason") or "Approval task cancelled")
        return
    ctx.data["decision"] = {
        "approved": decision.payload.get("approved", False),
        "comments": decision.payload.get("comments"),
        "decided_by": decision.user_id,
    }
    if not decision.payload.get("approved"):
        ctx.set_state("rejected")
        ctx.reject(decision.payload.get("comments") or "Invoice rejected")
        return

    ctx.set_state("approved")
    await ctx.action(
        "send_notification",
        recipient=ctx.data.get("submitted_by") or "submitter",
        message=f"Invoice #{invoice_number} was approved",
    )


async def install(
    runtime: Any, tenant: str, deliver: Optional[Callable[[JsonDict], Any]] = None
) -> str:
    """Register the approval form, the notification action and the workflow."""
    await runtime.forms.register(
        tenant,
        FORM_ID,
        "Invoice approval",
        "1.0.0",
        APPROVAL_FORM_SCHEMA,
        category="finance",
        status=FormStatus.ACTIVE,
    )
    register_actions(runtime.actions, deliver)
    return await runtime.workflows.register(
        tenant, WORKFLOW_NAME, "1.0.0", invoice_approval, category="finance"
    )
