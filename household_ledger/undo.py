"""Bounded undo stack of pre-mutation snapshots, persisted in the blob store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from household_ledger.core import new_id, now_iso
from household_ledger.storage import JsonStore

logger = logging.getLogger(__name__)

UNDO_KEY = "undo/stack.json"


@dataclass
class UndoEntry:
    id: str
    entity_type: str
    entity_id: str
    old_value: Any
    new_value: Any
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UndoEntry:
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            timestamp=data.get("timestamp", ""),
        )


class UndoStack:
    def __init__(self, store: JsonStore, max_entries: int = 5) -> None:
        self.store = store
        self.max_entries = max_entries

    def entries(self) -> list[UndoEntry]:
        raw = self.store.read_json(UNDO_KEY) or []
        return [UndoEntry.from_dict(item) for item in raw]

    def push(self, entity_type: str, entity_id: str, old_value: Any, new_value: Any) -> UndoEntry | None:
        if self.max_entries <= 0:
            return None
        entry = UndoEntry(
            id=new_id(),
            entity_type=entity_type,
            entity_id=entity_id,
            old_value=old_value,
            new_value=new_value,
            timestamp=now_iso(),
        )
        with self.store.lock(UNDO_KEY):
            stack = self.entries()
            stack.append(entry)
            stack = stack[-self.max_entries :]
            self.store.write_json(UNDO_KEY, [e.to_dict() for e in stack])
        return entry

    def pop(self) -> UndoEntry | None:
        """Remove and return the most recent entry."""
        with self.store.lock(UNDO_KEY):
            stack = self.entries()
            if not stack:
                return None
            entry = stack.pop()
            self.store.write_json(UNDO_KEY, [e.to_dict() for e in stack])
        logger.info(f"Popped undo entry for {entry.entity_type} {entry.entity_id}")
        return entry

    def clear(self) -> None:
        with self.store.lock(UNDO_KEY):
            self.store.write_json(UNDO_KEY, [])
