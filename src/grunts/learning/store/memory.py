"""In-memory knowledge backend.

Nothing survives the process; used for tests and memory-only runs.
"""

import threading
from collections.abc import Iterable

from grunts.learning.models import KnowledgeEntry
from grunts.learning.store.base import KnowledgeBackend, merge_by_signature


class InMemoryKnowledgeBackend(KnowledgeBackend):
    """Dictionary-backed knowledge storage.

    Entries are stored as deep copies so callers cannot mutate persisted
    state behind the store's back.
    """

    def __init__(self) -> None:
        self._entries: dict[str, KnowledgeEntry] = {}
        self._lock = threading.Lock()

    def load_entries(self) -> list[KnowledgeEntry]:
        with self._lock:
            return [entry.model_copy(deep=True) for entry in self._entries.values()]

    def upsert(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        with self._lock:
            return merge_by_signature(self._entries, entry).model_copy(deep=True)

    def replace_all(self, entries: Iterable[KnowledgeEntry]) -> None:
        replacement = {entry.id: entry.model_copy(deep=True) for entry in entries}
        with self._lock:
            self._entries = replacement

    def delete(self, entry_id: str) -> bool:
        with self._lock:
            return self._entries.pop(entry_id, None) is not None

    def clear(self) -> None:
        """Remove all entries."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
