"""Versioned JSON-schema form definitions and validation."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, Field

from .errors import ConflictError, DuplicateKeyError, NotFoundError, ValidationError
from .persistence.models import (
    FormDefinition,
    FormSchema,
    FormStatus,
    FormWithSchema,
    JsonDict,
    utcnow,
)
from .persistence.repository import WorkflowStore
from .registry.models import version_sort_key

logger = logging.getLogger(__name__)

_DEFINITION_FIELDS = ("name", "description", "category")
_SCHEMA_FIELDS = ("json_schema", "ui_schema", "default_values")


class FormValidationResult(BaseModel):
    valid: bool
    errors: List[Dict[str, str]] = Field(default_factory=list)


def _strip_required(node: Any) -> Any:
    if isinstance(node, dict):
        return {
            key: _strip_required(value)
            for key, value in node.items()
            if not (key == "required" and isinstance(value, list))
        }
    if isinstance(node, list):
        return [_strip_required(item) for item in node]
    return node


def check_schema(json_schema: JsonDict) -> None:
    """Raise :class:`ValidationError` if ``json_schema`` is not a valid Draft 7 schema."""
    try:
        Draft7Validator.check_schema(json_schema)
    except SchemaError as exc:
        raise ValidationError(
            f"Invalid JSON schema: {exc.message}",
            [{"path": ".".join(str(p) for p in exc.path), "message": exc.message}],
        ) from exc


def validate(json_schema: JsonDict, data: Any) -> FormValidationResult:
    """Validate ``data`` against ``json_schema``."""
    validator = Draft7Validator(json_schema)
    errors = [
        {"path": ".".join(str(p) for p in error.absolute_path), "message": error.message}
        for error in sorted(
            validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path]
        )
    ]
    return FormValidationResult(valid=not errors, errors=errors)


def validate_partial(json_schema: JsonDict, data: Any) -> FormValidationResult:
    """Validate ``data`` ignoring every ``required`` constraint, at any depth."""
    return validate(_strip_required(json_schema), data)


class FormRegistry:
    """Manage form definitions for one store."""

    def __init__(self, store: WorkflowStore) -> None:
        self.store = store

    validate = staticmethod(validate)
    validate_partial = staticmethod(validate_partial)

    async def register(
        self,
        tenant: str,
        form_id: str,
        name: str,
        version: str,
        json_schema: JsonDict,
        *,
        category: Optional[str] = None,
        status: FormStatus = FormStatus.DRAFT,
        ui_schema: Optional[JsonDict] = None,
        default_values: Optional[JsonDict] = None,
        description: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """Register ``form_id`` at ``version``; duplicates raise ``ConflictError``."""
        check_schema(json_schema)
        definition = FormDefinition(
            form_id=form_id,
            tenant=tenant,
            version=version,
            name=name,
            description=description,
            category=category,
            status=status,
            created_by=user_id,
        )
        schema = FormSchema(
            form_id=form_id,
            tenant=tenant,
            version=version,
            json_schema=json_schema,
            ui_schema=ui_schema,
            default_values=default_values,
        )
        await self.store.create_form(definition, schema)
        logger.info(f"Registered form {form_id}@{version} for tenant {tenant}")
        return form_id

    async def _latest(
        self, tenant: str, form_id: str, status: Optional[FormStatus] = None
    ) -> FormDefinition | None:
        versions = await self.store.list_form_versions(tenant, form_id)
        if status is not None:
            versions = [v for v in versions if v.status == status]
        if not versions:
            return None
        return max(versions, key=lambda v: version_sort_key(v.version))

    async def get_form(
        self, tenant: str, form_id: str, version: Optional[str] = None
    ) -> FormWithSchema | None:
        """Return ``version`` exactly, or the highest active version when omitted."""
        if version is not None:
            return await self.store.get_form(tenant, form_id, version)
        latest = await self._latest(tenant, form_id, FormStatus.ACTIVE)
        if latest is None:
            return None
        return await self.store.get_form(tenant, form_id, latest.version)

    async def _require(self, tenant: str, form_id: str, version: str) -> FormWithSchema:
        form = await self.store.get_form(tenant, form_id, version)
        if form is None:
            raise NotFoundError(f"Form {form_id} version {version} not found")
        return form

    async def update_form(
        self, tenant: str, form_id: str, version: str, **updates: Any
    ) -> FormWithSchema:
        """Edit a draft version in place."""
        form = await self._require(tenant, form_id, version)
        if form.definition.status != FormStatus.DRAFT:
            raise ConflictError(
                f"Form {form_id} version {version} is {form.definition.status.value}; "
                "create a new version instead"
            )
        unknown = set(updates) - set(_DEFINITION_FIELDS) - set(_SCHEMA_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown form fields: {', '.join(sorted(unknown))}")
        if updates.get("json_schema") is not None:
            check_schema(updates["json_schema"])
        definition = form.definition.model_copy(
            update={k: v for k, v in updates.items() if k in _DEFINITION_FIELDS}
        )
        definition.updated_at = utcnow()
        schema = form.form_schema.model_copy(
            update={k: v for k, v in updates.items() if k in _SCHEMA_FIELDS}
        )
        await self.store.update_form(definition, schema)
        return FormWithSchema(definition=definition, form_schema=schema)

    async def update_status(
        self, tenant: str, form_id: str, version: str, status: FormStatus
    ) -> FormDefinition:
        form = await self._require(tenant, form_id, version)
        definition = form.definition.model_copy(
            update={"status": FormStatus(status), "updated_at": utcnow()}
        )
        await self.store.update_form(definition, form.form_schema)
        logger.info(f"Form {form_id}@{version} is now {definition.status.value}")
        return definition

    async def create_new_version(
        self,
        tenant: str,
        form_id: str,
        new_version: str,
        overrides: Optional[JsonDict] = None,
        user_id: Optional[str] = None,
    ) -> FormWithSchema:
        """Fork the highest existing version into a new draft."""
        overrides = dict(overrides or {})
        latest = await self._latest(tenant, form_id)
        if latest is None:
            raise NotFoundError(f"Form {form_id} not found")
        base = await self._require(tenant, form_id, latest.version)
        unknown = set(overrides) - set(_DEFINITION_FIELDS) - set(_SCHEMA_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown form fields: {', '.join(sorted(unknown))}")

        def pick(field: str, source: BaseModel) -> Any:
            value = overrides.get(field)
            return copy.deepcopy(value if value is not None else getattr(source, field))

        try:
            await self.register(
                tenant,
                form_id,
                pick("name", base.definition),
                new_version,
                pick("json_schema", base.form_schema),
                category=pick("category", base.definition),
                ui_schema=pick("ui_schema", base.form_schema),
                default_values=pick("default_values", base.form_schema),
                description=pick("description", base.definition),
                user_id=user_id or base.definition.created_by,
            )
        except DuplicateKeyError as exc:
            raise DuplicateKeyError(
                f"Version {new_version} already exists for form {form_id}"
            ) from exc
        return await self._require(tenant, form_id, new_version)

    async def get_all_versions(self, tenant: str, form_id: str) -> list[FormDefinition]:
        versions = await self.store.list_form_versions(tenant, form_id)
        return sorted(versions, key=lambda v: version_sort_key(v.version))

    async def list_forms(
        self,
        tenant: str,
        category: Optional[str] = None,
        status: Optional[FormStatus] = None,
    ) -> list[FormDefinition]:
        return await self.store.list_forms(tenant, category=category, status=status)

    async def validate_form_data(
        self,
        tenant: str,
        form_id: str,
        data: Any,
        version: Optional[str] = None,
        partial: bool = False,
    ) -> FormValidationResult:
        """Validate ``data`` against a stored form."""
        form = await self.get_form(tenant, form_id, version)
        if form is None:
            raise NotFoundError(f"Form {form_id} not found")
        check = validate_partial if partial else validate
        return check(form.form_schema.json_schema, data)
