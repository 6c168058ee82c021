"""Error knowledge store.

The KnowledgeStore captures errors reported during a validation session,
remembers which fixes resolved them, and suggests those fixes when a
similar error shows up again.

Two tiers of storage back it:

- Session records (ErrorRecord) live in a VolatileStore and expire with the
  session TTL. Capturing an error writes the record, its category index key
  and its fingerprint in one transaction.
- Knowledge entries (signature -> solution) are cached in memory and
  persisted through a KnowledgeBackend. Confirmed fixes are merged in as
  they arrive; pruning and eviction happen only at ``end_session()``.

A signature maps to exactly one entry. Categories are derived from the
signature, and a fix for a signature that is already stored always merges
into that entry. Several stores may share one durable backend: upserts
merge by signature, and ``end_session()`` re-reads the backend before
evicting, deleting only the entries it evicts.

Every infrastructure failure degrades to "no match" or a no-op and is
logged; callers never see a storage exception from lookups or writes.

Example:
    store = KnowledgeStore(KnowledgeConfig(backend="sqlite"))
    capture = store.record_error("worker-1", "Cannot resolve module 'phaser'")
    store.record_fix(capture.error_id, Solution(description="npm install phaser"), "worker-1")
    store.suggest_fix("Cannot resolve module phaser").description
    # -> 'npm install phaser'
"""

from __future__ import annotations

import json
import threading
import uuid
from collections import Counter
from collections.abc import Callable, Iterator, Mapping
from contextlib import ExitStack, contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from grunts.core.config import KnowledgeConfig
from grunts.core.errors import ErrorInput, KnowledgeStoreError
from grunts.core.logging import get_logger
from grunts.learning.models import (
    CaptureResult,
    ErrorRecord,
    KnowledgeEntry,
    KnowledgeExport,
    KnowledgeMatch,
    SessionAnalysis,
    Solution,
    Suggestion,
)
from grunts.learning.normalizer import ErrorCategory, categorize_error, normalize_error
from grunts.learning.similarity import (
    Fingerprint,
    MinHashMatcher,
    best_match,
    build_matcher,
    prefilter,
)
from grunts.learning.store import (
    InMemoryKnowledgeBackend,
    InProcessVolatileStore,
    KnowledgeBackend,
    RedisVolatileStore,
    VolatileStore,
    create_backend,
)

_logger = get_logger("learning.knowledge")

# Well-known errors and their fixes, loaded by seed_defaults().
DEFAULT_KNOWN_ERRORS: tuple[tuple[str, str], ...] = (
    ("Cannot resolve module 'phaser'", "npm install phaser"),
    ("Phaser is not defined", "Add: import Phaser from 'phaser'"),
    (
        "Cannot read property 'Scene' of undefined",
        "Ensure Phaser is properly imported: import Phaser from 'phaser'",
    ),
    ("SyntaxError: Unexpected token 'export'", "Add 'type': 'module' to package.json"),
    ("ReferenceError: require is not defined", "Use ES6 imports instead of require()"),
    ("this.preload is not a function", "Ensure class extends Phaser.Scene"),
    ("Missing required method: preload", "Add preload() method to scene class"),
    ("Missing required method: create", "Add create() method to scene class"),
    ("Missing required method: update", "Add update() method to scene class"),
    ("SyntaxError: Unexpected token", "Check for missing semicolons, brackets, or quotes"),
    ("SyntaxError: Unexpected end of input", "Check for unclosed brackets or braces"),
    ("Failed to load external script", "Replace CDN script tags with npm packages"),
    ("Network error loading CDN resource", "Use local npm package instead of CDN"),
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _coerce_solution(solution: Solution | str | Mapping[str, Any], worker_id: str) -> Solution:
    if isinstance(solution, Solution):
        if solution.worker_id is None:
            return solution.model_copy(update={"worker_id": worker_id})
        return solution
    if isinstance(solution, str):
        return Solution(description=solution, worker_id=worker_id)
    data = dict(solution)
    data.setdefault("worker_id", worker_id)
    return Solution.model_validate(data)


class KnowledgeStore:
    """Session error capture plus durable signature -> solution knowledge.

    Args:
        config: Store configuration. Defaults to an in-memory store.
        backend: Durable backend. Built from ``config.backend`` when omitted.
        volatile: Session key/value store. When omitted, a RedisVolatileStore
            is opened from ``config.volatile_url`` if set; an
            InProcessVolatileStore is used otherwise or when unreachable.
        session_id: Identifier scoping the session keys. Generated when omitted.
        now: Wall-clock source used for timestamps and retention.
    """

    def __init__(
        self,
        config: KnowledgeConfig | None = None,
        backend: KnowledgeBackend | None = None,
        volatile: VolatileStore | None = None,
        session_id: str | None = None,
        *,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or KnowledgeConfig()
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        self._now = now
        self._lock = threading.RLock()
        # Serializes backend I/O; never acquired while holding _lock
        self._backend_lock = threading.RLock()
        self._minhash = MinHashMatcher.from_config(self.config.similarity)
        self._matcher = build_matcher(self.config.similarity)
        self._entries: dict[str, KnowledgeEntry] = {}
        self._fingerprints: dict[str, Fingerprint] = {}
        self._signatures: dict[str, str] = {}
        self._backend = backend if backend is not None else self._open_backend()
        self._volatile = self._connect_volatile(volatile)
        self._load_entries()
        if self.config.seed_defaults:
            self.seed_defaults()

    # ------------------------------------------------------------------
    # Setup and degradation
    # ------------------------------------------------------------------

    def _open_backend(self) -> KnowledgeBackend:
        try:
            return create_backend(self.config)
        except KnowledgeStoreError as e:
            _logger.warning(
                "knowledge.backend_unavailable",
                backend=self.config.backend,
                error=str(e),
                fallback="memory",
            )
            return InMemoryKnowledgeBackend()

    def _connect_volatile(self, volatile: VolatileStore | None) -> VolatileStore:
        if volatile is None:
            if self.config.volatile_url is None:
                return InProcessVolatileStore()
            try:
                volatile = RedisVolatileStore.from_url(
                    self.config.volatile_url, self.config.volatile_timeout_seconds
                )
            except ValueError as e:
                _logger.warning(
                    "knowledge.volatile_unavailable",
                    url=self.config.volatile_url,
                    error=str(e),
                    fallback="in_process",
                )
                return InProcessVolatileStore()
        try:
            reachable = volatile.ping()
        except Exception as e:
            _logger.warning("knowledge.volatile_unavailable", error=str(e), fallback="in_process")
            return InProcessVolatileStore()
        if not reachable:
            _logger.warning("knowledge.volatile_unavailable", fallback="in_process")
            return InProcessVolatileStore()
        return volatile

    def _degrade_volatile(self, error: Exception) -> None:
        """Switch session storage to an in-process store after a failure."""
        if isinstance(self._volatile, InProcessVolatileStore):
            raise error
        _logger.warning(
            "knowledge.volatile_failed",
            error_type=type(error).__name__,
            error=str(error),
            fallback="in_process",
        )
        self._volatile = InProcessVolatileStore()

    def _load_entries(self) -> None:
        try:
            entries = self._backend.load_entries()
        except KnowledgeStoreError as e:
            _logger.warning("knowledge.load_failed", error=str(e), fallback="memory")
            self._backend = InMemoryKnowledgeBackend()
            entries = []
        with self._lock:
            for entry in entries:
                self._cache(entry)
        _logger.debug("knowledge.loaded", entries=len(entries), session_id=self.session_id)

    def _cache(self, entry: KnowledgeEntry) -> None:
        self._entries[entry.id] = entry
        self._fingerprints[entry.id] = self._minhash.fingerprint(entry.signature)
        self._signatures[entry.signature] = entry.id

    def _uncache(self, entry_id: str) -> KnowledgeEntry | None:
        entry = self._entries.pop(entry_id, None)
        if entry is None:
            return None
        self._fingerprints.pop(entry_id, None)
        if self._signatures.get(entry.signature) == entry_id:
            del self._signatures[entry.signature]
        return entry

    def _persist(self, entry: KnowledgeEntry) -> KnowledgeEntry | None:
        """Upsert ``entry`` and adopt the backend's merged copy.

        The backend may already hold the signature under another id (written
        by another store), in which case the cache is re-keyed to that id.

        Returns:
            The stored entry, or None when the backend write failed.
        """
        try:
            with self._backend_lock:
                stored = self._backend.upsert(entry)
        except KnowledgeStoreError as e:
            _logger.warning("knowledge.persist_failed", entry_id=entry.id, error=str(e))
            return None
        with self._lock:
            # Keep any merge made locally while the write was in flight
            current = self._uncache(entry.id)
            self._cache(stored if current is None else stored.combine(current))
        return stored.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Session keys
    # ------------------------------------------------------------------

    @property
    def session_prefix(self) -> str:
        return f"{self.config.key_prefix}:{self.session_id}:"

    def _record_key(self, error_id: str) -> str:
        return f"{self.session_prefix}errors:{error_id}"

    def _category_key(self, category: ErrorCategory, error_id: str) -> str:
        return f"{self.session_prefix}category:{category.value}:{error_id}"

    def _fingerprint_key(self, error_id: str) -> str:
        return f"{self.session_prefix}fingerprint:{error_id}"

    def _write_record(
        self, record: ErrorRecord, fingerprint: Fingerprint | None = None
    ) -> None:
        """Write a record (and, on capture, its indexes) in one transaction."""
        ttl = self.config.session_ttl_seconds

        def write() -> None:
            with self._volatile.transaction() as tx:
                tx.set(self._record_key(record.id), record.model_dump_json(), ttl)
                if fingerprint is not None:
                    tx.set(self._category_key(record.category, record.id), record.id, ttl)
                    tx.set(self._fingerprint_key(record.id), json.dumps(list(fingerprint)), ttl)

        try:
            write()
        except Exception as e:
            self._degrade_volatile(e)
            write()

    def _read_record(self, error_id: str) -> ErrorRecord | None:
        try:
            data = self._volatile.get(self._record_key(error_id))
        except Exception as e:
            self._degrade_volatile(e)
            return None
        if data is None:
            return None
        try:
            return ErrorRecord.model_validate_json(data)
        except ValidationError as e:
            _logger.warning("knowledge.record_corrupt", error_id=error_id, error=str(e))
            return None

    def _session_records(self) -> list[ErrorRecord]:
        prefix = f"{self.session_prefix}errors:"
        try:
            keys = self._volatile.keys(prefix)
        except Exception as e:
            self._degrade_volatile(e)
            return []
        records = []
        for key in keys:
            record = self._read_record(key[len(prefix):])
            if record is not None:
                records.append(record)
        return records

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _lookup(
        self,
        signature: str,
        category: ErrorCategory,
        threshold: float | None = None,
        fingerprint: Fingerprint | None = None,
    ) -> KnowledgeMatch | None:
        """Best in-category entry at or above ``threshold``."""
        sim = self.config.similarity
        with self._lock:
            candidates = [e for e in self._entries.values() if e.category == category]
            if len(candidates) > sim.prefilter_limit:
                query_fp = fingerprint or self._minhash.fingerprint(signature)
                candidates = prefilter(
                    query_fp,
                    ((e, self._fingerprints[e.id]) for e in candidates),
                    sim.prefilter_limit,
                    self._minhash,
                )
            match = best_match(
                signature,
                candidates,
                sim.threshold if threshold is None else threshold,
                self._matcher,
                key=lambda e: e.signature,
                tie_key=lambda e: e.occurrences,
            )
        if match is None:
            return None
        return KnowledgeMatch(entry=match.candidate, similarity=match.similarity)

    def _safe_lookup(self, signature: str, category: ErrorCategory, **kwargs: Any) -> KnowledgeMatch | None:
        try:
            return self._lookup(signature, category, **kwargs)
        except Exception as e:
            _logger.warning(
                "knowledge.lookup_failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

    def _find_identical(self, signature: str, category: ErrorCategory) -> KnowledgeEntry | None:
        """Entry to merge into: same signature in any category, else a near-identical one."""
        entry_id = self._signatures.get(signature)
        if entry_id is not None:
            return self._entries[entry_id]
        match = self._lookup(
            signature, category, threshold=self.config.similarity.identical_threshold
        )
        return self._entries.get(match.entry.id) if match else None

    # ------------------------------------------------------------------
    # Capture and learning
    # ------------------------------------------------------------------

    def record_error(
        self,
        worker_id: str,
        raw_message: ErrorInput | str | BaseException | Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
    ) -> CaptureResult:
        """Capture an error and look up a known solution for it.

        Never mutates knowledge entries.

        Args:
            worker_id: Worker that produced the error.
            raw_message: The error as reported (text, ErrorInput, exception
                or mapping with a "message" key).
            context: Free-form context stored with the record (task, attempt...).

        Returns:
            CaptureResult with the new record id and the best match, if any.
        """
        error = ErrorInput.coerce(raw_message)
        signature = normalize_error(error)
        category = categorize_error(signature)
        record_context = dict(context or {})
        if error.raw:
            record_context.setdefault("raw", dict(error.raw))
        record = ErrorRecord(
            worker_id=worker_id,
            timestamp=self._now(),
            raw_message=error.message,
            signature=signature,
            category=category,
            context=record_context,
        )
        fingerprint = self._minhash.fingerprint(signature)
        try:
            self._write_record(record, fingerprint)
        except Exception as e:
            _logger.warning("knowledge.capture_failed", error_id=record.id, error=str(e))

        match = self._safe_lookup(signature, category, fingerprint=fingerprint)
        _logger.debug(
            "knowledge.error_recorded",
            error_id=record.id,
            worker_id=worker_id,
            category=category.value,
            matched=match is not None,
            similarity=round(match.similarity, 1) if match else None,
        )
        return CaptureResult(
            error_id=record.id,
            signature=signature,
            category=category,
            match=match,
        )

    def record_fix(
        self,
        error_id: str,
        solution: Solution | str | Mapping[str, Any],
        worker_id: str,
    ) -> KnowledgeEntry | None:
        """Record that ``solution`` resolved a previously captured error.

        Marks the session record resolved and merges the fix into the
        knowledge base: the entry holding the same signature (in any
        category) or an in-category entry at or above the identical
        threshold gains an occurrence, otherwise a new entry is created. The
        entry is persisted immediately and merged with any copy another
        store has written for the same signature.

        Returns:
            A copy of the created or updated entry, or None when the error
            record is unknown or expired.
        """
        fix = _coerce_solution(solution, worker_id)
        record = self._read_record(error_id)
        if record is None:
            _logger.warning("knowledge.error_record_missing", error_id=error_id)
            return None

        record.resolved = True
        record.solution = fix
        try:
            self._write_record(record)
        except Exception as e:
            _logger.warning("knowledge.record_update_failed", error_id=error_id, error=str(e))

        with self._lock:
            entry = self._find_identical(record.signature, record.category)
            if entry is not None:
                entry.merge(fix, record.context, self.config.max_context_samples, now=self._now())
                created = False
            else:
                entry = KnowledgeEntry(
                    signature=record.signature,
                    original_message=record.raw_message,
                    solution=fix,
                    last_seen=self._now(),
                    category=record.category,
                    context_samples=[record.context] if record.context else [],
                )
                if self.config.max_context_samples == 0:
                    entry.context_samples = []
                self._cache(entry)
                created = True
            snapshot = entry.model_copy(deep=True)

        stored = self._persist(snapshot)
        if stored is not None:
            snapshot = stored
        _logger.info(
            "knowledge.fix_recorded",
            error_id=error_id,
            entry_id=snapshot.id,
            created=created,
            occurrences=snapshot.occurrences,
            solution=fix.description,
        )
        return snapshot

    def find_similar(
        self, raw_message: ErrorInput | str | BaseException | Mapping[str, Any]
    ) -> KnowledgeMatch | None:
        """Best in-category knowledge entry for an error, or None."""
        error = ErrorInput.coerce(raw_message)
        signature = normalize_error(error)
        return self._safe_lookup(signature, categorize_error(signature))

    def suggest_fix(
        self, raw_message: ErrorInput | str | BaseException | Mapping[str, Any]
    ) -> Suggestion | None:
        """Suggest the learned fix for an error.

        Confidence is the match similarity (as a fraction) scaled by the
        stored solution's confidence.
        """
        match = self.find_similar(raw_message)
        if match is None:
            return None
        solution = match.entry.solution
        suggestion = Suggestion(
            description=solution.description,
            confidence=match.similarity / 100.0 * solution.confidence,
            similarity=match.similarity,
            type=solution.type,
            code=solution.code,
            occurrences=match.entry.occurrences,
            success_rate=match.entry.success_rate,
            entry_id=match.entry.id,
        )
        _logger.debug(
            "knowledge.fix_suggested",
            entry_id=suggestion.entry_id,
            confidence=round(suggestion.confidence, 3),
        )
        return suggestion

    def get_entries(self, category: ErrorCategory | str | None = None) -> list[KnowledgeEntry]:
        """Copies of stored entries, most frequent first."""
        wanted = ErrorCategory(category) if category is not None else None
        with self._lock:
            entries = [
                e.model_copy(deep=True)
                for e in self._entries.values()
                if wanted is None or e.category == wanted
            ]
        return sorted(entries, key=lambda e: e.occurrences, reverse=True)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_knowledge(self) -> KnowledgeExport:
        """Snapshot every entry in the portable export format."""
        with self._lock:
            exported = [entry.to_export() for entry in self._entries.values()]
        return KnowledgeExport(entries=exported, exported_at=self._now())

    def import_knowledge(self, document: KnowledgeExport | Mapping[str, Any]) -> int:
        """Add exported entries that are not already known.

        An entry is skipped when its signature is already stored, or when an
        existing entry in its category is at or above the identical threshold.

        Returns:
            Number of entries added.

        Raises:
            KnowledgeStoreError: If the document is not a valid export.
        """
        if isinstance(document, KnowledgeExport):
            doc = document
        else:
            try:
                doc = KnowledgeExport.model_validate(document)
            except ValidationError as e:
                raise KnowledgeStoreError(f"Invalid knowledge export document: {e}") from e

        added: list[KnowledgeEntry] = []
        with self._lock:
            for item in doc.entries:
                if self._find_identical(item.signature, item.category) is not None:
                    continue
                entry = KnowledgeEntry(
                    signature=item.signature,
                    solution=item.solution.model_copy(deep=True),
                    occurrences=item.occurrences,
                    success_rate=item.success_rate,
                    last_seen=item.last_seen,
                    category=item.category,
                )
                self._cache(entry)
                added.append(entry.model_copy(deep=True))

        with self.batch_writes():
            for entry in added:
                self._persist(entry)
        _logger.info(
            "knowledge.imported",
            added=len(added),
            skipped=len(doc.entries) - len(added),
        )
        return len(added)

    def seed_defaults(self) -> int:
        """Pre-populate the store with well-known errors and their fixes.

        Returns:
            Number of entries added; already-known errors are skipped.
        """
        document = KnowledgeExport(
            entries=[
                {
                    "signature": signature,
                    "solution": Solution(description=fix, type="pre-populated"),
                    "last_seen": self._now(),
                    "category": categorize_error(signature),
                }
                for signature, fix in (
                    (normalize_error(message), fix) for message, fix in DEFAULT_KNOWN_ERRORS
                )
            ]
        )
        return self.import_knowledge(document)

    # ------------------------------------------------------------------
    # Session boundary
    # ------------------------------------------------------------------

    @contextmanager
    def batch_writes(self) -> Iterator[None]:
        """Group backend writes made inside the block into one commit.

        Backend errors are logged, not raised; the in-memory knowledge is
        kept either way. Writes fall back to one commit each when the
        backend cannot open a batch.
        """
        with self._backend_lock:
            stack = ExitStack()
            try:
                stack.enter_context(self._backend.batch())
            except KnowledgeStoreError as e:
                _logger.warning("knowledge.batch_unavailable", error=str(e))
            try:
                with stack:
                    yield
            except KnowledgeStoreError as e:
                _logger.warning("knowledge.batch_failed", error=str(e))

    def _stale_ids(self, max_age: timedelta) -> list[str]:
        cutoff = self._now() - max_age
        return [
            entry.id
            for entry in self._entries.values()
            if entry.last_seen < cutoff and entry.occurrences < 2
        ]

    def _delete_from_backend(self, entry_ids: list[str]) -> None:
        for entry_id in entry_ids:
            try:
                with self._backend_lock:
                    self._backend.delete(entry_id)
            except KnowledgeStoreError as e:
                _logger.warning("knowledge.delete_failed", entry_id=entry_id, error=str(e))

    def prune(self, max_age: timedelta | None = None) -> int:
        """Delete stale entries: older than ``max_age`` and seen only once.

        Args:
            max_age: Retention window. Defaults to ``config.retention_days``.

        Returns:
            Number of entries removed.
        """
        window = max_age if max_age is not None else timedelta(days=self.config.retention_days)
        with self._lock:
            stale = self._stale_ids(window)
            for entry_id in stale:
                self._uncache(entry_id)
        self._delete_from_backend(stale)
        if stale:
            _logger.info("knowledge.pruned", removed=len(stale))
        return len(stale)

    def _merge_durable(self) -> int:
        """Fold entries other stores wrote to the backend into the cache.

        Returns:
            Number of durable entries that were new to this store.
        """
        try:
            with self._backend_lock:
                durable = self._backend.load_entries()
        except KnowledgeStoreError as e:
            _logger.warning("knowledge.load_failed", error=str(e))
            return 0
        added = 0
        with self._lock:
            for stored in durable:
                local_id = self._signatures.get(stored.signature)
                local = self._uncache(local_id) if local_id is not None else None
                if local is None:
                    added += 1
                self._cache(stored if local is None else stored.combine(local))
        return added

    def end_session(self) -> int:
        """Close the session: merge, prune, evict, persist, and clear session keys.

        The backend is re-read first so entries written by other stores
        sharing it take part in ranking. The ``max_entries`` highest-ranked
        entries (last seen time x occurrences) are kept; only the evicted ids
        are deleted from the backend.

        Returns:
            Number of entries retained.
        """
        merged = self._merge_durable()
        pruned = self.prune()
        with self._lock:
            ranked = sorted(
                self._entries.values(), key=lambda e: e.retention_rank(), reverse=True
            )
            evicted = [e.id for e in ranked[self.config.max_entries:]]
            for entry_id in evicted:
                self._uncache(entry_id)
            snapshot = [e.model_copy(deep=True) for e in ranked[: self.config.max_entries]]

        with self.batch_writes():
            for entry in snapshot:
                self._persist(entry)
            self._delete_from_backend(evicted)

        cleared = self._clear_session_keys()
        _logger.info(
            "knowledge.session_ended",
            session_id=self.session_id,
            retained=len(snapshot),
            merged=merged,
            evicted=len(evicted),
            pruned=pruned,
            session_keys_cleared=cleared,
        )
        return len(snapshot)

    def _clear_session_keys(self) -> int:
        try:
            keys = self._volatile.keys(self.session_prefix)
            with self._volatile.transaction() as tx:
                for key in keys:
                    tx.delete(key)
        except Exception as e:
            _logger.warning("knowledge.session_cleanup_failed", error=str(e))
            return 0
        return len(keys)

    def analyze_session(self, top: int = 10) -> SessionAnalysis:
        """Statistics over errors captured in the current session."""
        records = self._session_records()
        signatures = Counter(r.signature for r in records)
        categories = Counter(r.category.value for r in records)
        return SessionAnalysis(
            total_errors=len(records),
            resolved_errors=sum(1 for r in records if r.resolved),
            knowledge_entries=len(self._entries),
            categories=dict(categories),
            top_errors=[(sig[:80], count) for sig, count in signatures.most_common(top)],
        )

    def close(self) -> None:
        """Release the durable backend."""
        self._backend.close()


__all__ = ["DEFAULT_KNOWN_ERRORS", "KnowledgeStore"]
