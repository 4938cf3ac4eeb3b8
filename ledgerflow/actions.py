"""Registry of named, idempotent side-effecting actions."""

from __future__ import annotations

import inspect
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .contracts import ActionContext, ActionParameter
from .errors import (
    ActionExecutionError,
    ConflictError,
    DuplicateKeyError,
    NotFoundError,
    ValidationError,
)
from .persistence.models import ActionResult, JsonDict, utcnow
from .persistence.repository import WorkflowStore

logger = logging.getLogger(__name__)

ActionHandler = Callable[[JsonDict, ActionContext], Any]

_TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
    "any": lambda v: True,
}


class ActionDefinition(BaseModel):
    """A registered action and its parameter contract."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    parameters: List[ActionParameter] = Field(default_factory=list)
    handler: Callable[..., Any]

    def validate_parameters(self, params: Optional[JsonDict]) -> JsonDict:
        """Return ``params`` with defaults applied, or raise ``ValidationError``."""
        params = dict(params or {})
        errors: list[dict[str, Any]] = []
        for param in self.parameters:
            value = params.get(param.name)
            if value is None:
                if param.default is not None:
                    params[param.name] = param.default
                elif param.required:
                    errors.append({"path": param.name, "message": "required parameter missing"})
                continue
            if not _TYPE_CHECKS[param.type](value):
                errors.append(
                    {
                        "path": param.name,
                        "message": f"expected {param.type}, got {type(value).__name__}",
                    }
                )
        if errors:
            detail = "; ".join(f"{e['path']}: {e['message']}" for e in errors)
            raise ValidationError(f"Invalid parameters for action {self.name}: {detail}", errors)
        return params


class ActionRegistry:
    """Hold action definitions and execute them at most once per idempotency key."""

    def __init__(self, store: WorkflowStore, claim_timeout_seconds: float = 300.0) -> None:
        self.store = store
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._actions: Dict[str, ActionDefinition] = {}

    def register_simple_action(
        self,
        name: str,
        description: str,
        parameters: List[ActionParameter],
        handler: ActionHandler,
    ) -> None:
        """Register ``handler`` under ``name``; a handler may be sync or async."""
        if name in self._actions:
            raise ConflictError(f"Action {name} is already registered")
        self._actions[name] = ActionDefinition(
            name=name, description=description, parameters=list(parameters), handler=handler
        )
        logger.debug(f"Registered action {name}")

    def get_action(self, name: str) -> ActionDefinition | None:
        return self._actions.get(name)

    def list_actions(self) -> list[ActionDefinition]:
        return list(self._actions.values())

    async def _claim(self, record: ActionResult) -> Optional[ActionResult]:
        """Claim ``record``'s key; return the stored record if it already succeeded."""
        try:
            await self.store.insert_action_result(record)
            return None
        except DuplicateKeyError:
            existing = await self.store.get_action_result(
                record.tenant, record.execution_id, record.action_name, record.idempotency_key
            )
        if existing is None:
            raise ConflictError(
                f"Action {record.action_name} claim for {record.idempotency_key} vanished"
            )
        if existing.success:
            return existing
        stale = utcnow() - existing.started_at > self.claim_timeout
        if existing.in_progress and not stale:
            raise ConflictError(
                f"Action {record.action_name} with key {record.idempotency_key} is already running"
            )
        if not await self.store.reclaim_action_result(
            existing.tenant, existing.result_id, existing.attempts
        ):
            raise ConflictError(
                f"Action {record.action_name} with key {record.idempotency_key} "
                "was claimed concurrently"
            )
        logger.info(
            f"Retrying action {record.action_name} (attempt {existing.attempts + 1}) "
            f"for key {record.idempotency_key}"
        )
        record.result_id = existing.result_id
        return None

    async def execute(
        self, action_name: str, params: Optional[JsonDict], context: ActionContext
    ) -> Any:
        """Run ``action_name`` unless its idempotency key already succeeded."""
        action = self.get_action(action_name)
        if action is None:
            raise NotFoundError(f"Action {action_name} not found")
        values = action.validate_parameters(params)

        record = ActionResult(
            tenant=context.tenant,
            execution_id=context.execution_id,
            action_name=action_name,
            event_id=context.event_id,
            idempotency_key=context.idempotency_key,
            parameters=values,
        )
        done = await self._claim(record)
        if done is not None:
            logger.debug(f"Action {action_name} already done for key {context.idempotency_key}")
            return done.result

        logger.info(
            f"Executing action {action_name} for execution {context.execution_id} "
            f"with idempotency key {context.idempotency_key}"
        )
        try:
            result = action.handler(values, context)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            await self.store.complete_action_result(
                context.tenant, record.result_id, success=False, error_message=str(exc)
            )
            logger.warning(f"Action {action_name} failed for key {context.idempotency_key}: {exc}")
            raise ActionExecutionError(action_name, context.idempotency_key, exc) from exc

        await self.store.complete_action_result(
            context.tenant, record.result_id, success=True, result=result
        )
        return result
