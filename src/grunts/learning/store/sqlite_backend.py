"""SQLite knowledge backend.

Entries live in a single ``knowledge_entries`` table. Indexed columns
(signature, category, occurrences, last_seen) are kept alongside the full
JSON payload so the store can be inspected with plain SQL.

Uses WAL mode for safe concurrent access from several processes. Upserts
merge into the row that already holds the signature, so stores sharing the
database never duplicate or clobber each other's entries.
"""

import contextvars
import json
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from grunts.core.errors import KnowledgeStoreError
from grunts.core.logging import get_logger
from grunts.learning.models import KnowledgeEntry
from grunts.learning.store.base import KnowledgeBackend

_logger = get_logger("learning.sqlite_backend")

SQLParam = str | int | float | bytes | None


class SqliteKnowledgeBackend(KnowledgeBackend):
    """SQLite-based knowledge storage.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        """Initialize the backend, creating the schema if needed.

        Args:
            db_path: Path to the SQLite database file.

        Raises:
            KnowledgeStoreError: If the database cannot be opened or migrated.
        """
        self.db_path = Path(db_path)
        # Scoped per asyncio task so one task's batch never leaks into another.
        self._batch_conn: contextvars.ContextVar[sqlite3.Connection | None] = (
            contextvars.ContextVar("_knowledge_batch_conn", default=None)
        )
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._migrate_if_needed()
        except (OSError, sqlite3.Error) as e:
            raise KnowledgeStoreError(f"Cannot open knowledge database {self.db_path}: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a configured connection.

        Inside ``batch_connection()`` the batch connection is reused and
        committed by the batch; otherwise each call commits on its own.
        """
        batch = self._batch_conn.get()
        if batch is not None:
            yield batch
            return

        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            _logger.warning(
                "sqlite_backend.operation_failed",
                path=str(self.db_path),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise
        finally:
            conn.close()

    @contextmanager
    def batch_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Run several operations in one transaction.

        Committed once on successful exit, rolled back on error.
        """
        conn = self._connect()
        token = self._batch_conn.set(conn)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._batch_conn.reset(token)
            conn.close()

    def _migrate_if_needed(self) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)"
            )
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            current = row["version"] if row else 0
            if current >= self.SCHEMA_VERSION:
                return
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS knowledge_entries (
                    id TEXT PRIMARY KEY,
                    signature TEXT NOT NULL UNIQUE,
                    category TEXT NOT NULL,
                    occurrences INTEGER NOT NULL,
                    last_seen TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_knowledge_category "
                "ON knowledge_entries(category)"
            )
            conn.execute("DELETE FROM schema_version")
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,))
            _logger.info("sqlite_backend.schema_created", version=self.SCHEMA_VERSION)

    @staticmethod
    def _row_params(entry: KnowledgeEntry) -> tuple[SQLParam, ...]:
        return (
            entry.id,
            entry.signature,
            entry.category.value,
            entry.occurrences,
            entry.last_seen.isoformat(),
            json.dumps(entry.model_dump(mode="json")),
        )

    def load_entries(self) -> list[KnowledgeEntry]:
        try:
            with self._get_connection() as conn:
                rows = conn.execute("SELECT payload FROM knowledge_entries").fetchall()
            return [KnowledgeEntry.model_validate_json(row["payload"]) for row in rows]
        except (sqlite3.Error, ValidationError) as e:
            raise KnowledgeStoreError(f"Failed to load knowledge from {self.db_path}: {e}") from e

    def _upsert(self, conn: sqlite3.Connection, entry: KnowledgeEntry) -> KnowledgeEntry:
        """Merge ``entry`` into the row holding its signature, or insert it.

        Takes the write lock before reading so two processes cannot both
        insert the same signature.
        """
        if not conn.in_transaction:
            conn.execute("BEGIN IMMEDIATE")
        row = conn.execute(
            "SELECT payload FROM knowledge_entries WHERE signature = ?",
            (entry.signature,),
        ).fetchone()
        stored = entry
        if row is not None:
            stored = KnowledgeEntry.model_validate_json(row["payload"]).combine(entry)
        conn.execute(
            """
            INSERT INTO knowledge_entries
                (id, signature, category, occurrences, last_seen, payload)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                signature = excluded.signature,
                category = excluded.category,
                occurrences = excluded.occurrences,
                last_seen = excluded.last_seen,
                payload = excluded.payload
            """,
            self._row_params(stored),
        )
        return stored.model_copy(deep=True)

    def upsert(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        try:
            with self._get_connection() as conn:
                return self._upsert(conn, entry)
        except (sqlite3.Error, ValidationError) as e:
            raise KnowledgeStoreError(f"Failed to save entry {entry.id}: {e}") from e

    @contextmanager
    def batch(self) -> Generator[None, None, None]:
        try:
            with self.batch_connection():
                yield
        except sqlite3.Error as e:
            raise KnowledgeStoreError(
                f"Failed to commit knowledge batch to {self.db_path}: {e}"
            ) from e

    def replace_all(self, entries: Iterable[KnowledgeEntry]) -> None:
        try:
            with self.batch_connection() as conn:
                conn.execute("DELETE FROM knowledge_entries")
                for entry in entries:
                    self._upsert(conn, entry)
        except (sqlite3.Error, ValidationError) as e:
            raise KnowledgeStoreError(f"Failed to replace knowledge in {self.db_path}: {e}") from e

    def delete(self, entry_id: str) -> bool:
        try:
            with self._get_connection() as conn:
                cursor = conn.execute("DELETE FROM knowledge_entries WHERE id = ?", (entry_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise KnowledgeStoreError(f"Failed to delete entry {entry_id}: {e}") from e

    def count(self, category: str | None = None) -> int:
        """Number of stored entries, optionally within one category."""
        with self._get_connection() as conn:
            if category is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM knowledge_entries").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM knowledge_entries WHERE category = ?",
                    (category,),
                ).fetchone()
        return int(row["n"])
