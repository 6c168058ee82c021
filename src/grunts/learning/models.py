"""Data models for the error knowledge store.

ErrorRecord, Solution and KnowledgeEntry are pydantic models because they
cross the persistence boundary (JSON documents, SQLite rows, exports).
Lookup results are plain dataclasses that never leave the process.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from grunts.learning.normalizer import ErrorCategory

EXPORT_VERSION = "1.0"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class Solution(BaseModel):
    """A fix that resolved an error."""

    description: str = Field(min_length=1)
    type: str = Field(default="auto-fix", description="Kind of fix, e.g. dependency, code")
    code: str | None = Field(default=None, description="Optional patch or snippet")
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    applied_at: datetime = Field(default_factory=_utcnow)
    worker_id: str | None = None
    attempts: int = Field(default=1, ge=1, description="Attempts it took to resolve")


class ErrorRecord(BaseModel):
    """One captured error occurrence within a session."""

    id: str = Field(default_factory=lambda: _new_id("err"))
    worker_id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    raw_message: str
    signature: str
    category: ErrorCategory
    resolved: bool = False
    solution: Solution | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class KnowledgeEntry(BaseModel):
    """A learned association between an error signature and its fix."""

    id: str = Field(default_factory=lambda: _new_id("kb"))
    signature: str
    original_message: str | None = None
    solution: Solution
    occurrences: int = Field(default=1, ge=1)
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    last_seen: datetime = Field(default_factory=_utcnow)
    category: ErrorCategory
    context_samples: list[dict[str, Any]] = Field(default_factory=list)

    def merge(
        self,
        solution: Solution,
        context: dict[str, Any] | None,
        max_samples: int,
        now: datetime | None = None,
    ) -> None:
        """Fold a repeat fix into this entry.

        Bumps occurrences and last_seen, keeps the higher-confidence
        solution, and appends the context keeping only the newest samples.
        """
        self.occurrences += 1
        self.last_seen = now or _utcnow()
        if solution.confidence > self.solution.confidence:
            self.solution = solution
        if context:
            self.context_samples.append(dict(context))
        if len(self.context_samples) > max_samples:
            self.context_samples = self.context_samples[-max_samples:] if max_samples else []

    def combine(self, other: KnowledgeEntry) -> KnowledgeEntry:
        """Reconcile two stored copies of the same signature.

        Used when several stores write to one durable backend. The result
        keeps this entry's id, the higher occurrence count and the
        higher-confidence solution; every other field comes from the copy
        seen most recently.
        """
        newer, older = (other, self) if other.last_seen >= self.last_seen else (self, other)
        solution = newer.solution
        if older.solution.confidence > solution.confidence:
            solution = older.solution
        return newer.model_copy(
            deep=True,
            update={
                "id": self.id,
                "occurrences": max(self.occurrences, other.occurrences),
                "solution": solution.model_copy(deep=True),
                "original_message": newer.original_message or older.original_message,
            },
        )

    def retention_rank(self) -> float:
        """Ranking used to decide which entries survive eviction."""
        return self.last_seen.timestamp() * self.occurrences

    def to_export(self) -> ExportedEntry:
        return ExportedEntry(
            signature=self.signature,
            solution=self.solution.model_copy(deep=True),
            occurrences=self.occurrences,
            success_rate=self.success_rate,
            last_seen=self.last_seen,
            category=self.category,
        )


class ExportedEntry(BaseModel):
    """One entry of a knowledge export document."""

    signature: str
    solution: Solution
    occurrences: int = Field(default=1, ge=1)
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    last_seen: datetime = Field(default_factory=_utcnow)
    category: ErrorCategory


class KnowledgeExport(BaseModel):
    """Portable snapshot of a knowledge store."""

    version: str = EXPORT_VERSION
    entries: list[ExportedEntry] = Field(default_factory=list)
    exported_at: datetime = Field(default_factory=_utcnow)


@dataclass(frozen=True)
class KnowledgeMatch:
    """A stored entry that matched a looked-up signature."""

    entry: KnowledgeEntry
    similarity: float


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of recording an error."""

    error_id: str
    signature: str
    category: ErrorCategory
    match: KnowledgeMatch | None = None


@dataclass(frozen=True)
class Suggestion:
    """A fix proposed for an error from learned knowledge.

    ``confidence`` is the match similarity scaled by the stored solution's
    own confidence, in [0, 1].
    """

    description: str
    confidence: float
    similarity: float
    type: str
    code: str | None
    occurrences: int
    success_rate: float
    entry_id: str = field(compare=False)
    source: str = "learned"


@dataclass
class SessionAnalysis:
    """Statistics over the errors captured in the current session."""

    total_errors: int = 0
    resolved_errors: int = 0
    knowledge_entries: int = 0
    categories: dict[str, int] = field(default_factory=dict)
    top_errors: list[tuple[str, int]] = field(default_factory=list)

    @property
    def resolution_rate(self) -> float:
        """Resolved errors as a percentage of captured errors."""
        if self.total_errors == 0:
            return 0.0
        return self.resolved_errors / self.total_errors * 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "resolved_errors": self.resolved_errors,
            "resolution_rate": self.resolution_rate,
            "knowledge_entries": self.knowledge_entries,
            "categories": dict(self.categories),
            "top_errors": [{"signature": s, "count": c} for s, c in self.top_errors],
        }


__all__ = [
    "EXPORT_VERSION",
    "CaptureResult",
    "ErrorRecord",
    "ExportedEntry",
    "KnowledgeEntry",
    "KnowledgeExport",
    "KnowledgeMatch",
    "SessionAnalysis",
    "Solution",
    "Suggestion",
]
