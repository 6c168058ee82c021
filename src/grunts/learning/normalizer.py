"""Error normalization and categorization.

Reduces raw error text to a canonical signature so that errors differing
only in literals (line numbers, file locations, quoting) compare as equal,
and assigns each error to a fixed category taxonomy.
"""

from __future__ import annotations

import re
from enum import Enum

from grunts.core.errors import ErrorInput

_PUNCTUATION = re.compile(r"[^\w\s]")
_LINE_NUMBER = re.compile(r"\bline\s+\d+\b")
_COLUMN_NUMBER = re.compile(r"\bcolumn\s+\d+\b")
_STANDALONE_INTEGER = re.compile(r"\b\d+\b")
_LOCATION = re.compile(r"\bat\s+\S+")
_WHITESPACE = re.compile(r"\s+")


class ErrorCategory(str, Enum):
    """Coarse classification of an error signature.

    Knowledge entries are partitioned by category; similarity search never
    crosses a category boundary.
    """

    DEPENDENCY = "dependency"
    """A package or module could not be resolved."""

    SYNTAX = "syntax"
    """The source failed to parse."""

    MODULE_SYSTEM = "module_system"
    """Import/export or require() mismatches."""

    REFERENCE = "reference"
    """An identifier is used but never defined."""

    EXTERNAL_RESOURCE = "external_resource"
    """A CDN script, network fetch or other remote resource failed."""

    OTHER = "other"
    """Anything the keyword rules do not recognize."""


# First matching rule wins, so order matters.
_CATEGORY_RULES: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.DEPENDENCY, ("cannot resolve", "module not found")),
    (ErrorCategory.SYNTAX, ("syntax", "unexpected token")),
    (ErrorCategory.MODULE_SYSTEM, ("import", "export", "require")),
    (ErrorCategory.REFERENCE, ("undefined", "not defined")),
    (ErrorCategory.EXTERNAL_RESOURCE, ("cdn", "script", "network", "fetch")),
)


def _message_of(raw: str | ErrorInput) -> str:
    if isinstance(raw, ErrorInput):
        return raw.message
    return raw


def normalize_error(raw: str | ErrorInput) -> str:
    """Map raw error text to its canonical signature.

    Steps, in order: lowercase, replace "at <location>" with "at file",
    strip punctuation, replace "line N" and "column N" with placeholders,
    replace remaining standalone integers with "num", collapse whitespace.

    The location token is replaced whole before punctuation is stripped, so
    paths of any depth collapse to the same placeholder.

    Placeholders are plain lowercase words, so normalizing a signature again
    returns it unchanged.

    Example:
        >>> normalize_error("SyntaxError: Unexpected token at line 42")
        'syntaxerror unexpected token at file num'

    Args:
        raw: Error text or an ErrorInput.

    Returns:
        The normalized signature. Empty input yields an empty string.
    """
    text = _message_of(raw).lower()
    text = _LOCATION.sub("at file", text)
    text = _PUNCTUATION.sub(" ", text)
    text = _LINE_NUMBER.sub("line num", text)
    text = _COLUMN_NUMBER.sub("column num", text)
    text = _STANDALONE_INTEGER.sub("num", text)
    return _WHITESPACE.sub(" ", text).strip()


def categorize_error(raw: str | ErrorInput) -> ErrorCategory:
    """Assign an error to a category using keyword rules.

    Works on raw text or on an already-normalized signature.
    """
    text = _message_of(raw).lower()
    for category, keywords in _CATEGORY_RULES:
        if any(keyword in text for keyword in keywords):
            return category
    return ErrorCategory.OTHER


__all__ = ["ErrorCategory", "categorize_error", "normalize_error"]
