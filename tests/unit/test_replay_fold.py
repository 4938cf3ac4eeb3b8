"""Pure event folding tests."""

from ledgerflow.engine import Fold, apply_event, diff_context, fold
from ledgerflow.persistence.models import WorkflowEvent, WorkflowSnapshot


def _event(seq, to_state, patch=None, removed=None):
    return WorkflowEvent(
        execution_id="e1",
        tenant="acme",
        sequence=seq,
        event_name=f"evt-{seq}",
        to_state=to_state,
        context_patch=patch or {},
        context_removed=removed or [],
    )


def test_diff_context_reports_changes_and_removals():
    patch, removed = diff_context({"a": 1, "b": 2, "c": {"x": 1}}, {"a": 1, "c": {"x": 2}, "d": 4})
    assert patch == {"c": {"x": 2}, "d": 4}
    assert removed == ["b"]


def test_apply_event_does_not_mutate_input():
    context = {"a": 1}
    state, updated = apply_event("draft", context, _event(1, "submitted", {"b": 2}, ["a"]))
    assert state == "submitted"
    assert updated == {"b": 2}
    assert context == {"a": 1}


def test_fold_from_empty_reaches_last_state():
    events = [
        _event(1, "draft", {"invoice": "123"}),
        _event(2, "submitted", {"amount": 10}),
        _event(3, "approved", {}, ["amount"]),
    ]
    state, context = fold(events)
    assert state == "approved"
    assert context == {"invoice": "123"}


def test_fold_resumes_from_snapshot():
    snapshot = WorkflowSnapshot(
        execution_id="e1", tenant="acme", sequence=2, state="submitted", context={"a": 1}
    )
    result = Fold(snapshot).apply([_event(3, "approved", {"b": 2})])
    assert result.state == "approved"
    assert result.context == {"a": 1, "b": 2}
    assert result.last_sequence == 3
    assert result.events_applied == 1


def test_fold_of_nothing_is_empty():
    assert fold([]) == ("", {})
