"""Workflow registry tests."""

import pytest

from ledgerflow.errors import ConflictError, NotFoundError, ValidationError
from ledgerflow.persistence import InMemoryWorkflowStore
from ledgerflow.registry import (
    SemanticVersion,
    WorkflowRegistry,
    define_workflow,
    load_entrypoint,
    to_definition,
)


@define_workflow(initial_state="draft", description="Two-step approval")
async def approval(ctx):
    await ctx.wait_for("Submit")
    ctx.set_state("submitted")


async def plain(ctx):
    """Plain logic without metadata."""


def test_to_definition_from_function_and_dict():
    definition = to_definition(approval)
    assert definition.entrypoint == f"{__name__}:approval"
    assert definition.initial_state == "draft"
    assert definition.description == "Two-step approval"

    assert to_definition(plain).initial_state == "initial"
    assert to_definition({"entrypoint": "pkg.mod:fn"}).entrypoint == "pkg.mod:fn"


def test_to_definition_rejects_bad_input():
    with pytest.raises(ValidationError):
        to_definition({"entrypoint": "no-colon"})
    with pytest.raises(ValidationError):
        to_definition(lambda ctx: None)

    async def nested(ctx):
        pass

    with pytest.raises(ValidationError):
        to_definition(nested)


def test_load_entrypoint():
    assert load_entrypoint(f"{__name__}:approval") is approval
    with pytest.raises(NotFoundError):
        load_entrypoint("ledgerflow.nope:missing")


def test_semantic_version_ordering():
    assert SemanticVersion.parse("1.10.0").key > SemanticVersion.parse("1.9.3").key


@pytest.mark.asyncio
async def test_register_versions_keeps_one_current():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    reg_id = await registry.register("acme", "invoice", "1.0.0", approval)
    same_id = await registry.register("acme", "invoice", "1.1.0", approval, {"limit": 5})
    assert reg_id == same_id

    current = await registry.get_by_name("acme", "invoice")
    assert current.version == "1.1.0"
    assert current.parameters == {"limit": 5}
    assert current.version_id == f"{reg_id}:1.1.0"

    await registry.set_current_version("acme", reg_id, "1.0.0")
    versions = await registry.list_versions("acme", reg_id)
    assert [v.version for v in versions if v.is_current] == ["1.0.0"]
    assert (await registry.get_by_id("acme", reg_id)).version == "1.0.0"
    assert (await registry.get_by_name("acme", "invoice", "1.1.0")).version == "1.1.0"

    with pytest.raises(NotFoundError):
        await registry.set_current_version("acme", reg_id, "9.9.9")
    with pytest.raises(ConflictError):
        await registry.register("acme", "invoice", "1.0.0", approval)


@pytest.mark.asyncio
async def test_registrations_are_tenant_scoped():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    await registry.register("acme", "invoice", "1.0.0", approval)
    assert await registry.get_by_name("globex", "invoice") is None
    assert [r.name for r in await registry.list_registrations("acme")] == ["invoice"]
    assert await registry.list_registrations("globex") == []


@pytest.mark.asyncio
async def test_create_from_template_merges_parameters():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    template_id = await registry.add_template(
        "acme",
        "approval-template",
        approval,
        category="finance",
        tags=["approval"],
        default_parameters={"limit": 100, "currency": "EUR"},
    )
    reg_id = await registry.create_from_template(
        "acme", template_id, "expense-approval", {"limit": 50}
    )

    registration = await registry.get_by_id("acme", reg_id)
    assert registration.name == "expense-approval"
    assert registration.version == "1.0.0"
    assert registration.is_current
    assert registration.source_template_id == template_id
    assert registration.category == "finance"
    assert registration.parameters == {"limit": 50, "currency": "EUR"}
    assert registry.load_logic(registration) is approval

    with pytest.raises(NotFoundError):
        await registry.create_from_template("acme", "missing", "x")
