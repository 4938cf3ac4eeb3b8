"""Pure folding of an execution's event log."""

from __future__ import annotations

import copy
from typing import Iterable, Optional, Tuple

from ..persistence.models import JsonDict, WorkflowEvent, WorkflowSnapshot


def diff_context(before: JsonDict, after: JsonDict) -> Tuple[JsonDict, list[str]]:
    """Return the ``(patch, removed)`` pair that turns ``before`` into ``after``."""
    patch = {
        key: copy.deepcopy(value)
        for key, value in after.items()
        if key not in before or before[key] != value
    }
    removed = [key for key in before if key not in after]
    return patch, removed


def apply_event(state: str, context: JsonDict, event: WorkflowEvent) -> Tuple[str, JsonDict]:
    """Fold one event: its ``to_state`` wins and its context change is applied."""
    updated = {**context, **copy.deepcopy(event.context_patch)}
    for key in event.context_removed:
        updated.pop(key, None)
    return event.to_state, updated


class Fold:
    """Running fold over an ordered event sequence."""

    def __init__(self, snapshot: Optional[WorkflowSnapshot] = None) -> None:
        self.state = snapshot.state if snapshot else ""
        self.context: JsonDict = copy.deepcopy(snapshot.context) if snapshot else {}
        self.last_sequence: Optional[int] = snapshot.sequence if snapshot else None
        self.events_applied = 0

    def apply(self, events: Iterable[WorkflowEvent]) -> "Fold":
        for event in events:
            self.state, self.context = apply_event(self.state, self.context, event)
            self.last_sequence = event.sequence
            self.events_applied += 1
        return self


def fold(events: Iterable[WorkflowEvent]) -> Tuple[str, JsonDict]:
    """Fold ``events`` from an empty state and context."""
    result = Fold().apply(events)
    return result.state, result.context
