"""Ledgerflow: event-sourced workflow execution with a human task inbox."""

from .actions import ActionRegistry
from .config import LedgerflowConfig, load_config
from .contracts import ActionContext, ActionParameter, DeliveryRequest, DeliveryResult
from .engine import WorkflowContext, WorkflowEngine
from .forms import FormRegistry
from .inbox import TaskInboxService
from .persistence import get_store
from .registry import WorkflowRegistry, define_workflow
from .runtime import Runtime, build_runtime
from .transports import get_transport
from .worker import EventDeliveryWorker, publish_event

__version__ = "0.1.0"
__all__ = [
    "ActionContext",
    "ActionParameter",
    "ActionRegistry",
    "DeliveryRequest",
    "DeliveryResult",
    "EventDeliveryWorker",
    "FormRegistry",
    "LedgerflowConfig",
    "Runtime",
    "TaskInboxService",
    "WorkflowContext",
    "WorkflowEngine",
    "WorkflowRegistry",
    "build_runtime",
    "define_workflow",
    "get_store",
    "get_transport",
    "load_config",
    "publish_event",
]
