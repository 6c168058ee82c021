"""Exception hierarchy and error value types for Grunts.

All Grunts exceptions inherit from GruntsError so callers can catch broadly
or narrowly. The hierarchy is kept flat:

- ConfigurationError: invalid thresholds or limits, raised before any attempt runs
- KnowledgeStoreError: persistence failures inside the learning store
- VolatileStoreUnavailableError: the session key/value store cannot be reached
- AttemptTimeoutError: an attempt exceeded its per-attempt timeout
- ProbeError: a scoring probe crashed or returned an invalid score
- IterationStateError: an illegal iteration state transition was requested

Errors *reported* by an attempt (compiler output, failing assertions) are not
exceptions; they travel as ErrorInput values inside an ExecutionReport.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


class GruntsError(Exception):
    """Base exception for all Grunts errors."""


class ConfigurationError(GruntsError, ValueError):
    """Raised when engine configuration is invalid.

    Fails fast at construction time, before any attempt runs.
    """


class KnowledgeStoreError(GruntsError):
    """Raised by knowledge backends when a read or write fails.

    The KnowledgeStore catches these at its own boundary and degrades to
    "no match" or a no-op; they never reach the iteration controller.
    """


class VolatileStoreUnavailableError(KnowledgeStoreError):
    """Raised when the volatile session store cannot be reached."""


class AttemptTimeoutError(GruntsError):
    """Raised when an attempt exceeds the per-attempt timeout.

    Attributes:
        attempt: Attempt number that timed out.
        timeout_seconds: The timeout that was exceeded.
    """

    def __init__(self, attempt: int, timeout_seconds: float) -> None:
        self.attempt = attempt
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Attempt {attempt} timed out after {timeout_seconds:g}s"
        )


class ProbeError(GruntsError):
    """Raised when a dimension probe fails or returns an out-of-range score."""


class IterationStateError(GruntsError):
    """Raised on an attempt to leave a terminal iteration state."""


@dataclass(frozen=True)
class ErrorInput:
    """A single error reported by an attempt.

    Attributes:
        message: Human-readable error text. This is what gets normalized.
        raw: Optional structured payload (stack, file, severity, ...).
    """

    message: str
    raw: Mapping[str, Any] | None = None

    @property
    def severity(self) -> str:
        """Severity carried in the raw payload, "medium" when absent."""
        if self.raw is not None:
            return str(self.raw.get("severity", "medium"))
        return "medium"

    @classmethod
    def coerce(cls, value: ErrorInput | str | BaseException | Mapping[str, Any]) -> ErrorInput:
        """Build an ErrorInput from the loosely typed values executors produce.

        Args:
            value: An ErrorInput, a plain string, an exception, or a mapping
                with a "message" key (remaining keys become the raw payload).

        Raises:
            TypeError: If the value cannot be interpreted as an error.
        """
        if isinstance(value, ErrorInput):
            return value
        if isinstance(value, str):
            return cls(message=value)
        if isinstance(value, BaseException):
            return cls(
                message=str(value) or type(value).__name__,
                raw={"type": type(value).__name__},
            )
        if isinstance(value, Mapping):
            if "message" not in value:
                raise TypeError("error mapping requires a 'message' key")
            payload = {k: v for k, v in value.items() if k != "message"}
            return cls(message=str(value["message"]), raw=payload or None)
        raise TypeError(f"cannot interpret {type(value).__name__} as an error")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary."""
        return {"message": self.message, "raw": dict(self.raw) if self.raw else None}


__all__ = [
    "AttemptTimeoutError",
    "ConfigurationError",
    "ErrorInput",
    "GruntsError",
    "IterationStateError",
    "KnowledgeStoreError",
    "ProbeError",
    "VolatileStoreUnavailableError",
]
