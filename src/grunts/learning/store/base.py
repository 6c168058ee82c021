"""Abstract base for durable knowledge backends."""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from grunts.learning.models import KnowledgeEntry


def merge_by_signature(
    entries: dict[str, KnowledgeEntry], entry: KnowledgeEntry
) -> KnowledgeEntry:
    """Fold ``entry`` into ``entries`` (keyed by id), merging on signature.

    Returns:
        The entry as stored. When the signature was already present it keeps
        the stored id.
    """
    for stored in entries.values():
        if stored.signature == entry.signature:
            merged = stored.combine(entry)
            entries[merged.id] = merged
            return merged
    entries[entry.id] = entry.model_copy(deep=True)
    return entries[entry.id]


class KnowledgeBackend(ABC):
    """Abstract base class for knowledge entry persistence.

    Several stores (one per process or worker) may share a backend, so
    writes merge instead of overwrite: signatures are unique, and upserting
    a known signature reconciles both copies with KnowledgeEntry.combine().
    Matching and eviction are decided by the KnowledgeStore.
    Implementations raise KnowledgeStoreError on I/O or decoding failures.
    """

    @abstractmethod
    def load_entries(self) -> list[KnowledgeEntry]:
        """Load every persisted entry, as currently stored.

        Returns:
            All entries, in no particular order.
        """
        ...

    @abstractmethod
    def upsert(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        """Insert an entry or merge it into the stored entry with its signature.

        Args:
            entry: Entry to persist.

        Returns:
            A copy of the entry as stored. Its id is the stored entry's id
            when the signature already existed.
        """
        ...

    @abstractmethod
    def replace_all(self, entries: Iterable[KnowledgeEntry]) -> None:
        """Atomically replace the stored entries with ``entries``.

        Args:
            entries: The complete new contents of the store.
        """
        ...

    @abstractmethod
    def delete(self, entry_id: str) -> bool:
        """Delete an entry.

        Args:
            entry_id: Id of the entry to remove.

        Returns:
            True if deleted, False if not found.
        """
        ...

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group writes so they are committed together.

        The default commits each write on its own.
        """
        yield

    def close(self) -> None:  # noqa: B027 - concrete no-op default
        """Release any resources held by the backend."""
