"""Error-capture middleware for attempt executors.

Wraps any AttemptExecutor so every error it reports is recorded in a
KnowledgeStore, without touching the executor itself:

    executor = capture_errors(store)(FunctionExecutor(run_attempt))

The wrapper:
- records each reported error and attaches learned suggestions to
  ``context.metadata["suggestions"]``
- once an attempt succeeds, records the fix the executor reported as the
  solution for the errors captured on the previous attempt
- notifies registered ``on_errors`` callbacks

If the store is None the wrapper passes reports through untouched.

Use either this middleware or a controller configured with ``knowledge``
for a given executor; combining them records each error twice.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from grunts.core.logging import get_logger
from grunts.execution.executor import AttemptExecutor, ExecutionReport, WorkspaceContext
from grunts.learning.knowledge import KnowledgeStore
from grunts.learning.models import CaptureResult, Solution

_logger = get_logger("learning.hooks")

ErrorCallback = Callable[[WorkspaceContext, list[CaptureResult]], None]


@dataclass
class CaptureConfig:
    """Settings for error capture.

    Attributes:
        attach_suggestions: Put learned suggestions in the context metadata.
        learn_on_success: Record executor-reported fixes once an attempt passes.
        fix_confidence: Confidence stored for executor-reported fixes.
    """

    attach_suggestions: bool = True
    learn_on_success: bool = True
    fix_confidence: float = 0.8


class CapturingExecutor:
    """AttemptExecutor decorator that feeds reported errors to a KnowledgeStore."""

    def __init__(
        self,
        inner: AttemptExecutor,
        knowledge: KnowledgeStore | None,
        worker_id: str | None = None,
        config: CaptureConfig | None = None,
    ) -> None:
        self.inner = inner
        self.knowledge = knowledge
        self.worker_id = worker_id
        self.config = config or CaptureConfig()
        self._callbacks: list[ErrorCallback] = []
        self._pending: dict[tuple[str, str], list[CaptureResult]] = {}

    def on_errors(self, callback: ErrorCallback) -> ErrorCallback:
        """Register a callback run after errors are captured.

        Returns the callback so this can be used as a decorator.
        """
        self._callbacks.append(callback)
        return callback

    async def execute(self, task: Any, context: WorkspaceContext) -> ExecutionReport:
        report = await self.inner.execute(task, context)
        if self.knowledge is None:
            return report

        worker_id = self.worker_id or context.worker_id
        key = (worker_id, context.task_id)

        if report.success and self.config.learn_on_success:
            await asyncio.to_thread(self._learn, key, report, worker_id, context.attempt)

        captures = [
            self.knowledge.record_error(
                worker_id,
                error,
                context={"task": context.task_id, "attempt": context.attempt},
            )
            for error in report.errors
        ]
        self._pending[key] = captures

        if captures and self.config.attach_suggestions:
            context.metadata["suggestions"] = [
                {
                    "error": c.signature,
                    "fix": c.match.entry.solution.description,
                    "similarity": c.match.similarity,
                }
                for c in captures
                if c.match is not None
            ]

        if captures:
            self._notify(context, captures)
        return report

    def _learn(
        self,
        key: tuple[str, str],
        report: ExecutionReport,
        worker_id: str,
        attempt: int,
    ) -> None:
        pending = self._pending.pop(key, [])
        if not pending or not report.fixes_applied or self.knowledge is None:
            return
        solution = Solution(
            description=report.fixes_applied[0],
            confidence=self.config.fix_confidence,
            worker_id=worker_id,
            attempts=max(attempt, 1),
        )
        with self.knowledge.batch_writes():
            for capture in pending:
                self.knowledge.record_fix(capture.error_id, solution, worker_id)
        _logger.debug("hooks.fixes_learned", worker_id=worker_id, count=len(pending))

    def _notify(self, context: WorkspaceContext, captures: list[CaptureResult]) -> None:
        for callback in self._callbacks:
            try:
                callback(context, captures)
            except Exception as e:
                _logger.warning(
                    "hooks.callback_failed",
                    callback=getattr(callback, "__name__", repr(callback)),
                    error_type=type(e).__name__,
                    error=str(e),
                )


def capture_errors(
    knowledge: KnowledgeStore | None,
    worker_id: str | None = None,
    config: CaptureConfig | None = None,
) -> Callable[[AttemptExecutor], CapturingExecutor]:
    """Build a decorator that wraps executors with error capture.

    Args:
        knowledge: Store receiving the errors; None disables capture.
        worker_id: Worker id to record under. Defaults to the context's.
        config: Capture settings.
    """

    def wrap(executor: AttemptExecutor) -> CapturingExecutor:
        return CapturingExecutor(executor, knowledge, worker_id=worker_id, config=config)

    return wrap


__all__ = ["CaptureConfig", "CapturingExecutor", "ErrorCallback", "capture_errors"]
