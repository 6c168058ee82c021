"""Attempt executor boundary.

An attempt executor runs one validation attempt of a task inside a worker's
workspace and reports what happened: a score, a success flag, the errors
and warnings it saw, and any fixes it applied on its own.

Executors are supplied by the caller. FunctionExecutor adapts a plain
function (sync or async) so tests and simple integrations need no class.

Example usage:
    async def run_tests(task, context):
        return {"score": 75.0, "success": False, "errors": ["Phaser is not defined"]}

    executor = FunctionExecutor(run_tests)
    report = await executor.execute(task, WorkspaceContext(worker_id="w-1"))
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from grunts.core.errors import ErrorInput


@dataclass
class WorkspaceContext:
    """Where and for whom an attempt runs.

    Each worker (and each task within it) gets its own instance, so executors
    may keep per-attempt scratch data in ``metadata`` without leaking it.

    Attributes:
        worker_id: Worker whose artifact is being validated.
        workspace: Worker's workspace directory, if any.
        task_id: Task being iterated.
        attempt: Current attempt number (1-indexed), set by the controller.
        metadata: Free-form executor data.
        applied_fixes: Descriptions of fixes applied so far in this run.
    """

    worker_id: str
    workspace: Path | None = None
    task_id: str = "default"
    attempt: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)
    applied_fixes: list[str] = field(default_factory=list)

    def copy(self, **changes: Any) -> WorkspaceContext:
        """Independent copy; mutable containers are not shared."""
        changes.setdefault("metadata", dict(self.metadata))
        changes.setdefault("applied_fixes", list(self.applied_fixes))
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "workspace": str(self.workspace) if self.workspace else None,
            "task_id": self.task_id,
            "attempt": self.attempt,
        }


@dataclass
class ExecutionReport:
    """What one attempt produced.

    Attributes:
        score: Attempt score, 0-100.
        success: Whether the executor considers the attempt passing.
        errors: Errors reported by the attempt.
        warnings: Non-fatal findings.
        fixes_applied: Descriptions of fixes the executor applied itself.
    """

    score: float = 0.0
    success: bool = False
    errors: list[ErrorInput] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    fixes_applied: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 100.0:
            raise ValueError(f"score must be between 0 and 100, got {self.score}")
        self.errors = [ErrorInput.coerce(e) for e in self.errors]

    @classmethod
    def coerce(cls, value: ExecutionReport | Mapping[str, Any]) -> ExecutionReport:
        """Accept a report or a mapping with the same keys.

        Raises:
            TypeError: If the value is neither.
            ValueError: If the score is out of range.
        """
        if isinstance(value, ExecutionReport):
            return value
        if isinstance(value, Mapping):
            return cls(
                score=float(value.get("score", 0.0)),
                success=bool(value.get("success", False)),
                errors=list(value.get("errors", [])),
                warnings=[str(w) for w in value.get("warnings", [])],
                fixes_applied=[str(f) for f in value.get("fixes_applied", [])],
            )
        raise TypeError(f"executor returned {type(value).__name__}, expected ExecutionReport")


@runtime_checkable
class AttemptExecutor(Protocol):
    """Runs one validation attempt of a task."""

    async def execute(self, task: Any, context: WorkspaceContext) -> ExecutionReport:
        """Execute the task once.

        Raising is allowed; the controller counts an exception as a critical
        error for the attempt.
        """
        ...


ExecutorFunction = Callable[
    [Any, WorkspaceContext],
    "ExecutionReport | Mapping[str, Any] | Awaitable[ExecutionReport | Mapping[str, Any]]",
]


class FunctionExecutor:
    """Adapts a function ``fn(task, context)`` to the AttemptExecutor protocol.

    Coroutine functions are awaited. Plain functions run in a worker thread
    so a slow attempt does not block the event loop.
    """

    def __init__(self, fn: ExecutorFunction, *, run_in_thread: bool = True) -> None:
        self._fn = fn
        self._run_in_thread = run_in_thread and not inspect.iscoroutinefunction(fn)

    async def execute(self, task: Any, context: WorkspaceContext) -> ExecutionReport:
        if self._run_in_thread:
            result = await asyncio.to_thread(self._fn, task, context)
        else:
            result = self._fn(task, context)
        if inspect.isawaitable(result):
            result = await result
        return ExecutionReport.coerce(result)


__all__ = [
    "AttemptExecutor",
    "ExecutionReport",
    "ExecutorFunction",
    "FunctionExecutor",
    "WorkspaceContext",
]
