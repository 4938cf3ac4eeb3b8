"""Command line interface for ledgerflow."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer
import yaml
from pydantic import BaseModel

from .config import configure_logging, load_config
from .errors import LedgerflowError
from .persistence.models import ExecutionStatus, FormStatus, TaskStatus
from .runtime import Runtime, build_runtime
from .transports import get_transport
from .worker import EventDeliveryWorker, publish_event

T = TypeVar("T")

app = typer.Typer(help="CLI for ledgerflow workflows")

# Command groups
db_app = typer.Typer(help="Commands for managing the database")
workflow_app = typer.Typer(help="Commands for managing workflow registrations")
execution_app = typer.Typer(help="Commands for running and inspecting executions")
form_app = typer.Typer(help="Commands for managing forms")
task_app = typer.Typer(help="Commands for working the task inbox")
worker_app = typer.Typer(help="Commands for running delivery workers")

app.add_typer(db_app, name="db")
app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(form_app, name="form")
app.add_typer(task_app, name="task")
app.add_typer(worker_app, name="worker")

TENANT = typer.Option("default", "--tenant", "-t", envvar="LEDGERFLOW_TENANT", help="Tenant id")


@app.callback()
def main() -> None:
    """ledgerflow CLI entry point."""
    pass


def _run(fn: Callable[[Runtime], Awaitable[T]]) -> T:
    """Run ``fn`` against a freshly started runtime, reporting domain errors."""
    config = load_config()
    configure_logging(config.log_level)

    async def runner() -> T:
        async with build_runtime(config) as runtime:
            return await fn(runtime)

    try:
        return asyncio.run(runner())
    except LedgerflowError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        for error in getattr(exc, "errors", []):
            typer.secho(f"  {error['path'] or '<root>'}: {error['message']}", err=True)
        raise typer.Exit(code=1)


def _json_arg(value: Optional[str], name: str) -> dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"{name} is not valid JSON: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    if not isinstance(data, dict):
        typer.secho(f"{name} must be a JSON object", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    return data


def _echo_model(model: BaseModel) -> None:
    typer.echo(json.dumps(model.model_dump(mode="json"), indent=2))


# ----------------------------------------------------------------------
# db


@db_app.command("init")
def db_init() -> None:
    """Create the database schema for the configured store."""

    async def go(runtime: Runtime) -> None:
        return None

    _run(go)
    typer.echo("Database initialised")


# ----------------------------------------------------------------------
# workflows


@workflow_app.command("register")
def workflow_register(
    name: str,
    version: str,
    entrypoint: str,
    initial_state: str = typer.Option("initial", help="State of a new execution"),
    description: Optional[str] = None,
    category: Optional[str] = None,
    params: Optional[str] = typer.Option(None, help="JSON object of workflow parameters"),
    tenant: str = TENANT,
) -> None:
    """
    Register ``entrypoint`` (``module:function``) as ``name`` at ``version``.

    Example:
        ledgerflow workflow register invoice-approval 1.0.0 \\
            ledgerflow.workflows.invoice_approval:invoice_approval
    """
    parameters = _json_arg(params, "params")
    definition = {
        "entrypoint": entrypoint,
        "initial_state": initial_state,
        "description": description,
    }

    async def go(runtime: Runtime) -> str:
        return await runtime.workflows.register(
            tenant, name, version, definition, parameters, category=category
        )

    registration_id = _run(go)
    typer.echo(f"Registered {name}@{version} ({registration_id})")


@workflow_app.command("list")
def workflow_list(tenant: str = TENANT) -> None:
    """List registered workflows and their current version."""
    registrations = _run(lambda runtime: runtime.workflows.list_registrations(tenant))
    if not registrations:
        typer.echo("No workflows found")
        return
    for reg in registrations:
        typer.echo(f"{reg.name}\t{reg.version}\t{reg.definition.entrypoint}")


@workflow_app.command("show")
def workflow_show(name: str, version: Optional[str] = None, tenant: str = TENANT) -> None:
    """Show one workflow version (the current one by default) and all its versions."""

    async def go(runtime: Runtime):
        registration = await runtime.workflows.get_by_name(tenant, name, version)
        if registration is None:
            return None, []
        versions = await runtime.workflows.list_versions(tenant, registration.registration_id)
        return registration, versions

    registration, versions = _run(go)
    if registration is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    _echo_model(registration)
    for record in versions:
        marker = "*" if record.is_current else " "
        typer.echo(f"{marker} {record.version}")


# ----------------------------------------------------------------------
# executions


@execution_app.command("start")
def execution_start(
    workflow_name: str,
    version: Optional[str] = None,
    context: Optional[str] = typer.Option(None, help="JSON object of initial context"),
    user: Optional[str] = None,
    tenant: str = TENANT,
) -> None:
    """Start a new execution of ``workflow_name``."""
    initial = _json_arg(context, "context")

    async def go(runtime: Runtime):
        execution_id = await runtime.engine.create_execution(
            tenant, workflow_name, version, initial, user_id=user
        )
        return await runtime.engine.get_execution(tenant, execution_id)

    execution = _run(go)
    typer.echo(f"Execution {execution.execution_id}: {execution.status.value}")
    typer.echo(f"State: {execution.current_state}")


@execution_app.command("list")
def execution_list(
    status: Optional[ExecutionStatus] = typer.Option(None, case_sensitive=False),
    tenant: str = TENANT,
) -> None:
    """List executions with their status and state."""
    executions = _run(lambda runtime: runtime.engine.list_executions(tenant, status))
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(
            f"{ex.execution_id}\t{ex.workflow_name}@{ex.workflow_version}\t"
            f"{ex.status.value}\t{ex.current_state}"
        )


@execution_app.command("show")
def execution_show(execution_id: str, tenant: str = TENANT) -> None:
    """Show an execution's status, state and context."""
    execution = _run(lambda runtime: runtime.engine.get_execution(tenant, execution_id))
    _echo_model(execution)


@execution_app.command("events")
def execution_events(execution_id: str, tenant: str = TENANT) -> None:
    """Print the event log of an execution."""
    events = _run(lambda runtime: runtime.engine.events(tenant, execution_id))
    if not events:
        typer.echo("No events found")
        return
    for event in events:
        typer.echo(
            f"{event.sequence}\t{event.created_at.isoformat()}\t{event.event_name}\t"
            f"{event.from_state} -> {event.to_state}"
        )


@execution_app.command("replay")
def execution_replay(
    execution_id: str,
    up_to: Optional[int] = typer.Option(None, help="Last sequence number to fold"),
    snapshots: bool = typer.Option(True, help="Start from the newest usable snapshot"),
    tenant: str = TENANT,
) -> None:
    """Rebuild state and context from the event log."""
    result = _run(
        lambda runtime: runtime.engine.replay(
            tenant, execution_id, up_to, use_snapshots=snapshots
        )
    )
    _echo_model(result)


@execution_app.command("deliver")
def execution_deliver(
    execution_id: str,
    event_name: str,
    payload: Optional[str] = typer.Option(None, help="JSON object payload"),
    user: Optional[str] = None,
    event_id: Optional[str] = None,
    queue: bool = typer.Option(False, help="Publish to the transport instead of delivering"),
    tenant: str = TENANT,
) -> None:
    """Deliver ``event_name`` to an execution, directly or through a worker."""
    data = _json_arg(payload, "payload")

    async def go(runtime: Runtime):
        if not queue:
            return await runtime.engine.deliver_event(
                tenant, execution_id, event_name, data, user, event_id=event_id
            )
        transport = get_transport(config=runtime.config)
        await transport.connect()
        try:
            return await publish_event(
                transport,
                tenant,
                execution_id,
                event_name,
                data,
                user,
                topic=runtime.config.transport.topic,
                event_id=event_id,
            )
        finally:
            await transport.disconnect()

    result = _run(go)
    if queue:
        typer.echo(f"Queued {event_name} as {result.event_id}")
        return
    if result.duplicate:
        typer.echo(f"Event already delivered; state {result.current_state}")
        return
    typer.echo(
        f"{result.previous_state} -> {result.current_state} ({result.status.value})"
    )


@execution_app.command("cancel")
def execution_cancel(
    execution_id: str,
    reason: str = typer.Option("Cancelled by administrator"),
    user: Optional[str] = None,
    tenant: str = TENANT,
) -> None:
    """Force an execution into ``failed``."""
    result = _run(
        lambda runtime: runtime.engine.cancel_execution(tenant, execution_id, reason, user)
    )
    typer.echo(f"Execution {execution_id}: {result.status.value}")


# ----------------------------------------------------------------------
# forms


@form_app.command("register")
def form_register(
    form_id: str,
    name: str,
    version: str,
    schema_path: Path,
    status: FormStatus = typer.Option(FormStatus.ACTIVE, case_sensitive=False),
    category: Optional[str] = None,
    user: Optional[str] = None,
    tenant: str = TENANT,
) -> None:
    """Register a form from a JSON or YAML schema file."""
    if not schema_path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    json_schema = yaml.safe_load(schema_path.read_text())

    _run(
        lambda runtime: runtime.forms.register(
            tenant,
            form_id,
            name,
            version,
            json_schema,
            category=category,
            status=status,
            user_id=user,
        )
    )
    typer.echo(f"Registered form {form_id}@{version} ({status.value})")


@form_app.command("list")
def form_list(
    category: Optional[str] = None,
    status: Optional[FormStatus] = typer.Option(None, case_sensitive=False),
    tenant: str = TENANT,
) -> None:
    """List form versions."""
    forms = _run(lambda runtime: runtime.forms.list_forms(tenant, category, status))
    if not forms:
        typer.echo("No forms found")
        return
    for form in forms:
        typer.echo(f"{form.form_id}\t{form.version}\t{form.status.value}\t{form.name}")


@form_app.command("show")
def form_show(form_id: str, version: Optional[str] = None, tenant: str = TENANT) -> None:
    """Show a form version (the highest active one by default)."""
    form = _run(lambda runtime: runtime.forms.get_form(tenant, form_id, version))
    if form is None:
        typer.echo("Form not found")
        raise typer.Exit(code=1)
    _echo_model(form)


@form_app.command("validate")
def form_validate(
    form_id: str,
    data: str,
    version: Optional[str] = None,
    partial: bool = False,
    tenant: str = TENANT,
) -> None:
    """Validate a JSON document against a form."""
    document = _json_arg(data, "data")
    result = _run(
        lambda runtime: runtime.forms.validate_form_data(
            tenant, form_id, document, version, partial
        )
    )
    if result.valid:
        typer.echo("Valid")
        return
    for error in result.errors:
        typer.echo(f"{error['path'] or '<root>'}: {error['message']}")
    raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# tasks


@task_app.command("list")
def task_list(
    execution_id: Optional[str] = typer.Option(None, "--execution"),
    status: Optional[List[TaskStatus]] = typer.Option(None, case_sensitive=False),
    user: Optional[str] = typer.Option(None, help="Only tasks assigned to this user"),
    role: Optional[List[str]] = typer.Option(None, help="Roles of --user"),
    tenant: str = TENANT,
) -> None:
    """List tasks, optionally only those assigned to a user or their roles."""

    async def go(runtime: Runtime):
        if user:
            kwargs = {"status": status} if status else {}
            return await runtime.inbox.tasks_for_user(tenant, user, role or (), **kwargs)
        return await runtime.inbox.list_tasks(tenant, execution_id, status or None)

    tasks = _run(go)
    if not tasks:
        typer.echo("No tasks found")
        return
    for task in tasks:
        typer.echo(f"{task.task_id}\t{task.status.value}\t{task.priority}\t{task.title}")


@task_app.command("show")
def task_show(task_id: str, tenant: str = TENANT) -> None:
    """Show a task and its history."""

    async def go(runtime: Runtime):
        task = await runtime.inbox.get_task(tenant, task_id)
        return task, await runtime.inbox.get_task_history(tenant, task_id)

    task, history = _run(go)
    _echo_model(task)
    for entry in history:
        before = entry.from_status.value if entry.from_status else "-"
        typer.echo(
            f"{entry.timestamp.isoformat()}\t{entry.action}\t{before} -> "
            f"{entry.to_status.value}\t{entry.user_id or ''}"
        )


@task_app.command("claim")
def task_claim(task_id: str, user: str, tenant: str = TENANT) -> None:
    """Claim a pending task."""
    task = _run(lambda runtime: runtime.inbox.claim_task(tenant, task_id, user))
    typer.echo(f"Task {task.task_id}: {task.status.value} by {task.claimed_by}")


@task_app.command("release")
def task_release(task_id: str, user: str, tenant: str = TENANT) -> None:
    """Return a claimed task to the pool."""
    task = _run(lambda runtime: runtime.inbox.release_task(tenant, task_id, user))
    typer.echo(f"Task {task.task_id}: {task.status.value}")


@task_app.command("complete")
def task_complete(
    task_id: str,
    data: str,
    user: Optional[str] = None,
    comments: Optional[str] = None,
    tenant: str = TENANT,
) -> None:
    """Complete a task with a JSON form response."""
    response = _json_arg(data, "data")
    task = _run(
        lambda runtime: runtime.inbox.complete_task(tenant, task_id, response, user, comments)
    )
    typer.echo(f"Task {task.task_id}: {task.status.value}")


@task_app.command("cancel")
def task_cancel(
    task_id: str,
    reason: Optional[str] = None,
    user: Optional[str] = None,
    tenant: str = TENANT,
) -> None:
    """Cancel an open task."""
    task = _run(lambda runtime: runtime.inbox.cancel_task(tenant, task_id, user, reason))
    typer.echo(f"Task {task.task_id}: {task.status.value}")


# ----------------------------------------------------------------------
# worker


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to keep listening (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker that delivers queued events to their executions.

    Example:
        ledgerflow worker run --lifespan 300
    """

    async def go(runtime: Runtime) -> int:
        settings = runtime.config
        transport = get_transport(config=settings)
        await transport.connect()
        worker = EventDeliveryWorker(
            transport,
            runtime.engine,
            topic=settings.transport.topic,
            max_retries=settings.worker.max_retries,
            backoff_base=settings.worker.backoff_base_seconds,
            backoff_cap=settings.worker.backoff_cap_seconds,
        )
        try:
            await worker.start(lifespan=lifespan)
        finally:
            await transport.disconnect()
        return worker.processed

    typer.echo("Starting delivery worker")
    processed = _run(go)
    typer.echo(f"Worker stopped after {processed} deliveries")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
