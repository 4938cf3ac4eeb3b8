"""Versioned workflow registrations and templates."""

from __future__ import annotations

import importlib
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..errors import NotFoundError, ValidationError
from ..persistence.models import (
    JsonDict,
    WorkflowRegistration,
    WorkflowRegistrationVersion,
    WorkflowTemplate,
)
from ..persistence.repository import WorkflowStore
from .models import Registration, WorkflowDefinition, version_sort_key

logger = logging.getLogger(__name__)

WorkflowLogic = Callable[..., Any]
DefinitionLike = Union[WorkflowDefinition, JsonDict, WorkflowLogic]

TEMPLATE_VERSION = "1.0.0"


def define_workflow(
    initial_state: str = "initial", description: Optional[str] = None
) -> Callable[[WorkflowLogic], WorkflowLogic]:
    """Attach definition metadata to an ``async def logic(ctx)`` function."""

    def decorator(func: WorkflowLogic) -> WorkflowLogic:
        func.initial_state = initial_state  # type: ignore[attr-defined]
        func.description = description or inspect.getdoc(func)  # type: ignore[attr-defined]
        return func

    return decorator


def to_definition(definition: DefinitionLike) -> WorkflowDefinition:
    """Normalise a dict, model or logic function into a ``WorkflowDefinition``."""
    if isinstance(definition, WorkflowDefinition):
        return definition
    if isinstance(definition, dict):
        try:
            return WorkflowDefinition.model_validate(definition)
        except PydanticValidationError as exc:
            errors = [
                {"path": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
                for e in exc.errors()
            ]
            raise ValidationError(f"Invalid workflow definition: {exc}", errors) from exc
    if callable(definition):
        if not inspect.iscoroutinefunction(definition):
            raise ValidationError("Workflow logic must be an 'async def' function")
        if "<locals>" in definition.__qualname__:
            raise ValidationError("Workflow logic must be importable (defined at module level)")
        return WorkflowDefinition(
            entrypoint=f"{definition.__module__}:{definition.__qualname__}",
            initial_state=getattr(definition, "initial_state", "initial"),
            description=getattr(definition, "description", None),
        )
    raise ValidationError(f"Unsupported workflow definition type: {type(definition).__name__}")


def load_entrypoint(entrypoint: str) -> WorkflowLogic:
    """Import ``module:qualname`` and return the object it names."""
    module_name, _, qualname = entrypoint.partition(":")
    try:
        target: Any = importlib.import_module(module_name)
        for attr in qualname.split("."):
            target = getattr(target, attr)
    except (ImportError, AttributeError) as exc:
        raise NotFoundError(f"Workflow entrypoint {entrypoint} cannot be loaded: {exc}") from exc
    return target


class WorkflowRegistry:
    """Register, version and resolve workflow definitions."""

    def __init__(self, store: WorkflowStore) -> None:
        self.store = store

    async def register(
        self,
        tenant: str,
        name: str,
        version: str,
        definition: DefinitionLike,
        parameters: Optional[JsonDict] = None,
        *,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        description: Optional[str] = None,
        source_template_id: Optional[str] = None,
    ) -> str:
        """Register ``name`` at ``version`` and make that version current.

        A new name creates the registration; a known name gains a version.
        Registering an existing version raises ``DuplicateKeyError``.
        """
        if not version:
            raise ValidationError("version must be a non-empty string")
        workflow_definition = to_definition(definition)
        existing = await self.store.get_registration_by_name(tenant, name)
        registration_id = existing.registration_id if existing else None
        if existing is None:
            registration = WorkflowRegistration(
                tenant=tenant,
                name=name,
                description=description or workflow_definition.description,
                category=category,
                tags=list(tags or []),
                source_template_id=source_template_id,
            )
            registration_id = registration.registration_id
        record = WorkflowRegistrationVersion(
            registration_id=registration_id,
            tenant=tenant,
            version=version,
            is_current=True,
            definition=workflow_definition.model_dump(),
            parameters=dict(parameters or {}),
        )
        if existing is None:
            await self.store.create_registration(registration, record)
        else:
            await self.store.add_registration_version(record)
        logger.info(f"Registered workflow {name}@{version} for tenant {tenant}")
        return registration_id

    async def _resolve(
        self, registration: Optional[WorkflowRegistration], version: Optional[str]
    ) -> Registration | None:
        if registration is None:
            return None
        record = await self.store.get_registration_version(
            registration.tenant, registration.registration_id, version
        )
        if record is None:
            return None
        return Registration.resolve(registration, record)

    async def get_by_name(
        self, tenant: str, name: str, version: Optional[str] = None
    ) -> Registration | None:
        """Return ``version`` of ``name``, or its current version."""
        return await self._resolve(await self.store.get_registration_by_name(tenant, name), version)

    async def get_by_id(
        self, tenant: str, registration_id: str, version: Optional[str] = None
    ) -> Registration | None:
        return await self._resolve(
            await self.store.get_registration(tenant, registration_id), version
        )

    async def set_current_version(self, tenant: str, registration_id: str, version: str) -> None:
        await self.store.set_current_version(tenant, registration_id, version)
        logger.info(f"Workflow {registration_id} current version is now {version}")

    async def list_registrations(self, tenant: str) -> list[Registration]:
        resolved = []
        for registration in await self.store.list_registrations(tenant):
            current = await self._resolve(registration, None)
            if current is not None:
                resolved.append(current)
        return resolved

    async def list_versions(
        self, tenant: str, registration_id: str
    ) -> list[WorkflowRegistrationVersion]:
        versions = await self.store.list_registration_versions(tenant, registration_id)
        return sorted(versions, key=lambda v: version_sort_key(v.version))

    # ------------------------------------------------------------------
    # Templates
    async def add_template(
        self,
        tenant: str,
        name: str,
        definition: DefinitionLike,
        *,
        description: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        default_parameters: Optional[JsonDict] = None,
    ) -> str:
        template = WorkflowTemplate(
            tenant=tenant,
            name=name,
            description=description,
            category=category,
            tags=list(tags or []),
            definition=to_definition(definition).model_dump(),
            default_parameters=dict(default_parameters or {}),
        )
        await self.store.create_template(template)
        return template.template_id

    async def create_from_template(
        self,
        tenant: str,
        template_id: str,
        name: str,
        parameters: Optional[JsonDict] = None,
        *,
        description: Optional[str] = None,
    ) -> str:
        """Clone a template into a new registration at version ``1.0.0``."""
        template = await self.store.get_template(tenant, template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        merged: Dict[str, Any] = {**template.default_parameters, **(parameters or {})}
        registration = WorkflowRegistration(
            tenant=tenant,
            name=name,
            description=description or template.description,
            category=template.category,
            tags=list(template.tags),
            source_template_id=template.template_id,
        )
        record = WorkflowRegistrationVersion(
            registration_id=registration.registration_id,
            tenant=tenant,
            version=TEMPLATE_VERSION,
            is_current=True,
            definition=dict(template.definition),
            parameters=merged,
        )
        await self.store.create_registration(registration, record)
        logger.info(f"Created workflow {name} from template {template_id} for tenant {tenant}")
        return registration.registration_id

    def load_logic(self, registration: Registration) -> WorkflowLogic:
        """Import the logic function a registration points at."""
        logic = load_entrypoint(registration.definition.entrypoint)
        if not inspect.iscoroutinefunction(logic):
            raise ValidationError(
                f"Workflow entrypoint {registration.definition.entrypoint} is not an async function"
            )
        return logic
