"""Workflow registry models and service."""

from __future__ import annotations

from .models import Registration, SemanticVersion, WorkflowDefinition, version_sort_key
from .service import (
    TEMPLATE_VERSION,
    WorkflowRegistry,
    define_workflow,
    load_entrypoint,
    to_definition,
)

__all__ = [
    "Registration",
    "SemanticVersion",
    "TEMPLATE_VERSION",
    "WorkflowDefinition",
    "WorkflowRegistry",
    "define_workflow",
    "load_entrypoint",
    "to_definition",
    "version_sort_key",
]
