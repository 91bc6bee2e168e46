import pytest

from household_ledger.undo import UNDO_KEY, UndoStack

pytestmark = pytest.mark.unit


def test_push_and_pop_is_lifo(store):
    stack = UndoStack(store)
    stack.push("month", "2025-03", None, {"v": 1})
    stack.push("month", "2025-03", {"v": 1}, {"v": 2})

    entry = stack.pop()
    assert (entry.old_value, entry.new_value) == ({"v": 1}, {"v": 2})
    assert stack.pop().old_value is None
    assert stack.pop() is None


def test_stack_is_bounded(store):
    stack = UndoStack(store, max_entries=3)
    for n in range(5):
        stack.push("month", "2025-03", {"v": n}, {"v": n + 1})

    entries = stack.entries()
    assert len(entries) == 3
    assert [e.old_value["v"] for e in entries] == [2, 3, 4]


def test_zero_depth_disables_undo(store):
    stack = UndoStack(store, max_entries=0)
    assert stack.push("month", "2025-03", None, {}) is None
    assert store.read_json(UNDO_KEY) is None


def test_clear(store):
    stack = UndoStack(store)
    stack.push("month", "2025-03", None, {})
    stack.clear()
    assert stack.entries() == []
