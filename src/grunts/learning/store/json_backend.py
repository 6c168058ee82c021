"""JSON file-based knowledge backend.

Stores the whole knowledge base as one JSON document:

    {"version": "1.0", "entries": [...], "saved_at": "..."}
"""

import json
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from grunts.core.errors import KnowledgeStoreError
from grunts.core.logging import get_logger
from grunts.learning.models import EXPORT_VERSION, KnowledgeEntry
from grunts.learning.store.base import KnowledgeBackend, merge_by_signature

_logger = get_logger("learning.json_backend")


class JsonKnowledgeBackend(KnowledgeBackend):
    """Single-file JSON knowledge storage.

    Every operation re-reads the document, so entries written by another
    store sharing the file are merged rather than overwritten. Writes
    replace the document atomically (temp file + rename). Inside
    ``batch()`` the document is read once and written once on exit.
    """

    def __init__(self, path: Path) -> None:
        """Initialize JSON backend.

        Args:
            path: Location of the knowledge document. Parent directories
                are created on first write.
        """
        self.path = Path(path)
        self._lock = threading.RLock()
        self._pending: dict[str, KnowledgeEntry] | None = None

    def _read(self) -> dict[str, KnowledgeEntry]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
            entries = [KnowledgeEntry.model_validate(item) for item in data.get("entries", [])]
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as e:
            raise KnowledgeStoreError(f"Failed to load knowledge from {self.path}: {e}") from e
        _logger.debug("json_backend.loaded", path=str(self.path), entries=len(entries))
        return {entry.id: entry for entry in entries}

    def _write(self, entries: dict[str, KnowledgeEntry]) -> None:
        document = {
            "version": EXPORT_VERSION,
            "entries": [entry.model_dump(mode="json") for entry in entries.values()],
            "saved_at": datetime.now(UTC).isoformat(),
        }
        temp_file = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w") as f:
                json.dump(document, f, indent=2)
            temp_file.replace(self.path)
        except OSError as e:
            raise KnowledgeStoreError(f"Failed to write knowledge to {self.path}: {e}") from e

    def _current(self) -> dict[str, KnowledgeEntry]:
        return self._pending if self._pending is not None else self._read()

    def _commit(self, entries: dict[str, KnowledgeEntry]) -> None:
        if self._pending is None:
            self._write(entries)
        else:
            self._pending = entries

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Read the document once and write it once when the block exits.

        Nothing is written if the block raises.
        """
        with self._lock:
            if self._pending is not None:
                yield
                return
            self._pending = self._read()
            try:
                yield
                entries = self._pending
            finally:
                self._pending = None
            self._write(entries)

    def load_entries(self) -> list[KnowledgeEntry]:
        with self._lock:
            return [entry.model_copy(deep=True) for entry in self._current().values()]

    def upsert(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        with self._lock:
            entries = self._current()
            stored = merge_by_signature(entries, entry)
            self._commit(entries)
            return stored.model_copy(deep=True)

    def replace_all(self, entries: Iterable[KnowledgeEntry]) -> None:
        with self._lock:
            self._commit({entry.id: entry.model_copy(deep=True) for entry in entries})

    def delete(self, entry_id: str) -> bool:
        with self._lock:
            entries = self._current()
            if entries.pop(entry_id, None) is None:
                return False
            self._commit(entries)
            return True
