"""Shared test helpers for Grunts tests."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from grunts.execution.executor import ExecutionReport, WorkspaceContext


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested delays and advances an optional clock instead of sleeping."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


class ScriptedExecutor:
    """Executor returning a fixed sequence of reports, one per attempt.

    Items may be ExecutionReport objects, mappings, or exceptions to raise.
    The last item repeats once the script runs out. Every context it
    receives is kept in ``contexts``.
    """

    def __init__(self, script: Sequence[Any]) -> None:
        self.script = list(script)
        self.contexts: list[WorkspaceContext] = []

    @property
    def calls(self) -> int:
        return len(self.contexts)

    async def execute(self, task: Any, context: WorkspaceContext) -> ExecutionReport:
        snapshot = context.copy()
        self.contexts.append(snapshot)
        index = min(len(self.contexts), len(self.script)) - 1
        item = self.script[index]
        if isinstance(item, BaseException):
            raise item
        return ExecutionReport.coerce(item)


def score_script(*scores: float, errors: Sequence[str] = ()) -> list[ExecutionReport]:
    """Reports with the given scores, each failing with ``errors``."""
    return [ExecutionReport(score=s, errors=list(errors)) for s in scores]
