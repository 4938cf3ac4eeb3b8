"""Pydantic models describing registry entities."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from ..persistence.models import WorkflowRegistration, WorkflowRegistrationVersion


class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse a dotted semantic version string."""
        parts = value.split(".")
        if len(parts) != 3:
            raise ValueError("Semantic version must have three components")
        major, minor, patch = (int(p) for p in parts)
        return cls(major=major, minor=minor, patch=patch)

    @property
    def key(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.major}.{self.minor}.{self.patch}"


def version_sort_key(value: str) -> Tuple[int, Tuple[int, ...], str]:
    """Order semantic versions numerically; anything else sorts first, by text."""
    try:
        return (1, SemanticVersion.parse(value).key, value)
    except ValueError:
        return (0, (), value)


class WorkflowDefinition(BaseModel):
    """The ``definition`` payload stored with a registration version."""

    entrypoint: str = Field(..., description="'module:qualname' of the async workflow logic")
    initial_state: str = "initial"
    description: Optional[str] = None

    @field_validator("entrypoint")
    @classmethod
    def _ensure_entrypoint(cls, v: str) -> str:
        module, sep, qualname = v.partition(":")
        if not sep or not module or not qualname:
            raise ValueError("entrypoint must look like 'package.module:function'")
        return v

    @field_validator("initial_state")
    @classmethod
    def _ensure_state(cls, v: str) -> str:
        if not v:
            raise ValueError("initial_state must be a non-empty string")
        return v


class Registration(BaseModel):
    """A registration resolved to one of its versions."""

    registration_id: str
    tenant: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: str = "active"
    source_template_id: Optional[str] = None
    version: str
    is_current: bool
    definition: WorkflowDefinition
    parameters: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @property
    def version_id(self) -> str:
        return f"{self.registration_id}:{self.version}"

    @classmethod
    def resolve(
        cls, registration: WorkflowRegistration, version: WorkflowRegistrationVersion
    ) -> "Registration":
        return cls(
            registration_id=registration.registration_id,
            tenant=registration.tenant,
            name=registration.name,
            description=registration.description,
            category=registration.category,
            tags=list(registration.tags),
            status=registration.status,
            source_template_id=registration.source_template_id,
            version=version.version,
            is_current=version.is_current,
            definition=WorkflowDefinition.model_validate(version.definition),
            parameters=dict(version.parameters),
            created_at=version.created_at,
        )
