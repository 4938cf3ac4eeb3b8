"""Wire the services of one ledgerflow process together."""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from typing import Optional

from .actions import ActionRegistry
from .config import LedgerflowConfig, load_config
from .engine import WorkflowEngine
from .errors import NotFoundError
from .forms import FormRegistry
from .inbox import TaskInboxService
from .persistence import WorkflowStore, get_store
from .registry import WorkflowRegistry

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: LedgerflowConfig
    store: WorkflowStore
    forms: FormRegistry
    actions: ActionRegistry
    workflows: WorkflowRegistry
    engine: WorkflowEngine
    inbox: TaskInboxService

    async def start(self) -> "Runtime":
        await self.store.init()
        return self

    async def close(self) -> None:
        await self.store.close()

    async def __aenter__(self) -> "Runtime":
        return await self.start()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def load_action_module(module_name: str, actions: ActionRegistry) -> None:
    """Import ``module_name`` and let it register its actions."""
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise NotFoundError(f"Action module {module_name} cannot be imported: {exc}") from exc
    register = getattr(module, "register_actions", None)
    if register is None:
        raise NotFoundError(f"Action module {module_name} has no register_actions()")
    register(actions)
    logger.debug(f"Loaded actions from {module_name}")


def build_runtime(
    config: Optional[LedgerflowConfig] = None, store: Optional[WorkflowStore] = None
) -> Runtime:
    """Create every service on one store, with ``create_human_task`` registered."""
    config = config or load_config()
    store = store or get_store(config=config)
    forms = FormRegistry(store)
    actions = ActionRegistry(
        store, claim_timeout_seconds=config.engine.action_claim_timeout_seconds
    )
    workflows = WorkflowRegistry(store)
    engine = WorkflowEngine(
        store, workflows, actions, snapshot_interval=config.engine.snapshot_interval
    )
    inbox = TaskInboxService(
        store,
        forms,
        engine,
        default_sla_days=config.inbox.default_sla_days,
        default_priority=config.inbox.default_priority,
    )
    inbox.register_task_actions(actions)
    for module_name in config.action_modules:
        load_action_module(module_name, actions)
    return Runtime(
        config=config,
        store=store,
        forms=forms,
        actions=actions,
        workflows=workflows,
        engine=engine,
        inbox=inbox,
    )
