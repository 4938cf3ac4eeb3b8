"""Form registry tests."""

import pytest

from ledgerflow.errors import ConflictError, NotFoundError, ValidationError
from ledgerflow.forms import FormRegistry, validate, validate_partial
from ledgerflow.persistence import InMemoryWorkflowStore
from ledgerflow.persistence.models import FormStatus

SCHEMA = {
    "type": "object",
    "properties": {
        "approved": {"type": "boolean"},
        "amount": {"type": "number", "minimum": 0},
        "address": {
            "type": "object",
            "properties": {"city": {"type": "string"}},
            "required": ["city"],
        },
    },
    "required": ["approved", "address"],
}


def test_validate_reports_paths():
    result = validate(SCHEMA, {"approved": "yes", "amount": -1, "address": {}})
    assert not result.valid
    paths = {e["path"] for e in result.errors}
    assert paths == {"approved", "amount", "address"}


def test_validate_partial_drops_required_at_any_depth():
    result = validate_partial(SCHEMA, {"address": {}})
    assert result.valid
    assert result.errors == []
    # type constraints still apply
    assert not validate_partial(SCHEMA, {"amount": "ten"}).valid


def test_validate_partial_keeps_property_named_required():
    schema = {
        "type": "object",
        "properties": {"required": {"type": "boolean"}},
        "required": ["required"],
    }
    assert validate_partial(schema, {}).valid
    assert not validate_partial(schema, {"required": "no"}).valid


@pytest.mark.asyncio
async def test_register_and_get_highest_active_version():
    forms = FormRegistry(InMemoryWorkflowStore())
    await forms.register("acme", "f1", "Form", "1.0.0", SCHEMA, status=FormStatus.ACTIVE)
    await forms.register("acme", "f1", "Form", "1.10.0", SCHEMA, status=FormStatus.ACTIVE)
    await forms.register("acme", "f1", "Form", "2.0.0", SCHEMA)  # draft

    latest = await forms.get_form("acme", "f1")
    assert latest.definition.version == "1.10.0"
    exact = await forms.get_form("acme", "f1", "2.0.0")
    assert exact.definition.status == FormStatus.DRAFT
    assert await forms.get_form("acme", "missing") is None
    assert await forms.get_form("other-tenant", "f1") is None


@pytest.mark.asyncio
async def test_register_duplicate_and_invalid_schema():
    forms = FormRegistry(InMemoryWorkflowStore())
    await forms.register("acme", "f1", "Form", "1.0.0", SCHEMA)
    with pytest.raises(ConflictError):
        await forms.register("acme", "f1", "Form", "1.0.0", SCHEMA)
    with pytest.raises(ValidationError):
        await forms.register("acme", "f2", "Bad", "1.0.0", {"type": "not-a-type"})


@pytest.mark.asyncio
async def test_create_new_version_forks_latest_as_draft():
    forms = FormRegistry(InMemoryWorkflowStore())
    await forms.register(
        "acme", "f1", "Form", "1.0.0", SCHEMA, category="finance", status=FormStatus.ACTIVE
    )
    forked = await forms.create_new_version("acme", "f1", "1.1.0", {"name": "Form v2"})
    assert forked.definition.name == "Form v2"
    assert forked.definition.category == "finance"
    assert forked.definition.status == FormStatus.DRAFT
    assert forked.form_schema.json_schema == SCHEMA

    with pytest.raises(ConflictError):
        await forms.create_new_version("acme", "f1", "1.1.0")
    with pytest.raises(NotFoundError):
        await forms.create_new_version("acme", "missing", "1.0.0")


@pytest.mark.asyncio
async def test_only_drafts_are_edited_in_place():
    forms = FormRegistry(InMemoryWorkflowStore())
    await forms.register("acme", "f1", "Form", "1.0.0", SCHEMA)
    updated = await forms.update_form("acme", "f1", "1.0.0", name="Renamed")
    assert updated.definition.name == "Renamed"

    await forms.update_status("acme", "f1", "1.0.0", FormStatus.ACTIVE)
    with pytest.raises(ConflictError):
        await forms.update_form("acme", "f1", "1.0.0", name="Again")

    versions = await forms.get_all_versions("acme", "f1")
    assert [v.version for v in versions] == ["1.0.0"]
    assert [f.form_id for f in await forms.list_forms("acme", status=FormStatus.ACTIVE)] == ["f1"]


@pytest.mark.asyncio
async def test_validate_form_data_uses_stored_schema():
    forms = FormRegistry(InMemoryWorkflowStore())
    await forms.register("acme", "f1", "Form", "1.0.0", SCHEMA, status=FormStatus.ACTIVE)
    ok = await forms.validate_form_data("acme", "f1", {"approved": True, "address": {"city": "Oslo"}})
    assert ok.valid
    partial = await forms.validate_form_data("acme", "f1", {"approved": True}, partial=True)
    assert partial.valid
    with pytest.raises(NotFoundError):
        await forms.validate_form_data("acme", "nope", {})
