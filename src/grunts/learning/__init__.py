"""Error learning: normalization, similarity matching and the knowledge store."""

from grunts.learning.knowledge import DEFAULT_KNOWN_ERRORS, KnowledgeStore
from grunts.learning.models import (
    CaptureResult,
    ErrorRecord,
    ExportedEntry,
    KnowledgeEntry,
    KnowledgeExport,
    KnowledgeMatch,
    SessionAnalysis,
    Solution,
    Suggestion,
)
from grunts.learning.normalizer import ErrorCategory, categorize_error, normalize_error
from grunts.learning.similarity import (
    LevenshteinMatcher,
    MinHashMatcher,
    SimilarityMatcher,
    best_match,
    prefilter,
)

# Imported last: hooks depends on the execution package, which in turn
# imports the knowledge store above.
from grunts.learning.hooks import CaptureConfig, CapturingExecutor, capture_errors  # noqa: E402

__all__ = [
    # Normalization
    "ErrorCategory",
    "categorize_error",
    "normalize_error",
    # Similarity
    "LevenshteinMatcher",
    "MinHashMatcher",
    "SimilarityMatcher",
    "best_match",
    "prefilter",
    # Knowledge
    "DEFAULT_KNOWN_ERRORS",
    "CaptureResult",
    "ErrorRecord",
    "ExportedEntry",
    "KnowledgeEntry",
    "KnowledgeExport",
    "KnowledgeMatch",
    "KnowledgeStore",
    "SessionAnalysis",
    "Solution",
    "Suggestion",
    # Hooks
    "CaptureConfig",
    "CapturingExecutor",
    "capture_errors",
]
