"""Smart iteration controller.

Runs a bounded sequence of validation attempts for one task and decides
when to stop. Between attempts it applies the most promising fixes seen so
far, backs off exponentially, and teaches the knowledge store which fixes
made errors disappear.

Stopping conditions, checked in order after every attempt:

1. SUCCESS: the executor reports success with a score >= success_threshold
2. CRITICAL_ERROR: critical_error_threshold attempts timed out or crashed
3. NO_PROGRESS: stall_threshold consecutive attempts improved by less than
   progress_threshold
4. TIMEOUT: the run used max_attempts x attempt_timeout_seconds of wall time
5. MAX_ATTEMPTS: the last permitted attempt finished

Both counters are global for the run; they never reset between phases.

Example usage:
    controller = SmartIterationController(
        FunctionExecutor(run_attempt),
        config=IterationConfig(max_attempts=5),
        knowledge=store,
    )
    outcome = await controller.run(task, WorkspaceContext(worker_id="w-1"))
    print(outcome.final_state, outcome.best_score)
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from grunts.core.config import IterationConfig
from grunts.core.errors import (
    AttemptTimeoutError,
    ConfigurationError,
    ErrorInput,
    IterationStateError,
)
from grunts.core.logging import get_logger
from grunts.execution.executor import AttemptExecutor, ExecutionReport, WorkspaceContext
from grunts.execution.fixes import (
    CandidateFix,
    FixApplier,
    FixSource,
    PassiveFixApplier,
    generic_fix_for,
    select_fixes,
)
from grunts.learning.knowledge import KnowledgeStore
from grunts.learning.models import Solution
from grunts.learning.normalizer import normalize_error

_logger = get_logger("iteration")


class IterationState(str, Enum):
    """State of an iteration run. Every state except RUNNING is terminal."""

    RUNNING = "running"
    """Attempts are still being made."""

    SUCCESS = "success"
    """An attempt passed with a score at or above the success threshold."""

    MAX_ATTEMPTS = "max_attempts"
    """The attempt budget ran out without success."""

    NO_PROGRESS = "no_progress"
    """Scores stopped improving for too many consecutive attempts."""

    CRITICAL_ERROR = "critical_error"
    """Too many attempts timed out or crashed."""

    TIMEOUT = "timeout"
    """The overall wall-clock budget was exhausted."""

    @property
    def is_terminal(self) -> bool:
        return self is not IterationState.RUNNING


class AttemptStatus(str, Enum):
    """Outcome of a single attempt."""

    PASSED = "passed"
    FAILED = "failed"
    CRITICAL = "critical"
    """The attempt timed out or the executor raised."""


@dataclass(frozen=True)
class AttemptResult:
    """Record of one attempt.

    Attributes:
        attempt_number: 1-indexed attempt number.
        score: Attempt score (0 for critical attempts).
        success: Executor's success flag.
        errors: Errors reported (or the critical failure itself).
        warnings: Non-fatal findings.
        fixes_applied: Fixes the executor reported applying.
        controller_fixes: Fixes the controller applied before the attempt.
        candidate_fixes: Fixes proposed from this attempt's errors.
        improvement: Score change versus the previous attempt (0 on attempt 1).
        duration_ms: Attempt wall time.
        status: PASSED, FAILED or CRITICAL.
    """

    attempt_number: int
    score: float
    success: bool
    errors: tuple[ErrorInput, ...] = ()
    warnings: tuple[str, ...] = ()
    fixes_applied: tuple[str, ...] = ()
    controller_fixes: tuple[CandidateFix, ...] = ()
    candidate_fixes: tuple[CandidateFix, ...] = ()
    improvement: float = 0.0
    duration_ms: float = 0.0
    status: AttemptStatus = AttemptStatus.FAILED

    @property
    def critical(self) -> bool:
        return self.status is AttemptStatus.CRITICAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "score": self.score,
            "success": self.success,
            "status": self.status.value,
            "improvement": self.improvement,
            "duration_ms": self.duration_ms,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
            "fixes_applied": list(self.fixes_applied),
            "controller_fixes": [f.description for f in self.controller_fixes],
            "candidate_fixes": [
                {"description": f.description, "confidence": f.confidence, "source": f.source.value}
                for f in self.candidate_fixes
            ],
        }


@dataclass
class IterationOutcome:
    """Final result of an iteration run."""

    final_state: IterationState
    total_attempts: int
    best_score: float
    best_attempt: int | None
    final_score: float
    history: list[AttemptResult] = field(default_factory=list)
    critical_errors: int = 0
    progress_stalls: int = 0
    learned_fixes: int = 0
    duration_ms: float = 0.0
    summary: str = ""

    @property
    def success(self) -> bool:
        return self.final_state is IterationState.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_state": self.final_state.value,
            "success": self.success,
            "total_attempts": self.total_attempts,
            "best_score": self.best_score,
            "best_attempt": self.best_attempt,
            "final_score": self.final_score,
            "critical_errors": self.critical_errors,
            "progress_stalls": self.progress_stalls,
            "learned_fixes": self.learned_fixes,
            "duration_ms": self.duration_ms,
            "summary": self.summary,
            "history": [a.to_dict() for a in self.history],
        }


@dataclass
class _Capture:
    """An error seen in an attempt, keyed by signature."""

    signature: str
    error_id: str | None
    message: str


@dataclass
class _RunState:
    """Mutable bookkeeping for one ``run()`` call."""

    started_at: float
    state: IterationState = IterationState.RUNNING
    history: list[AttemptResult] = field(default_factory=list)
    candidates: list[CandidateFix] = field(default_factory=list)
    critical_errors: int = 0
    progress_stalls: int = 0
    previous_score: float = 0.0
    previous_captures: dict[str, _Capture] = field(default_factory=dict)
    learned_fixes: int = 0

    def finish(self, state: IterationState) -> None:
        if self.state.is_terminal:
            raise IterationStateError(
                f"cannot move from terminal state {self.state.value} to {state.value}"
            )
        self.state = state


class SmartIterationController:
    """Adaptive retry loop around an AttemptExecutor.

    Args:
        executor: Runs one attempt.
        config: Iteration settings (model or mapping). Defaults apply when None.
        knowledge: Store used to match errors and learn confirmed fixes.
            Without it only generic fixes are proposed and nothing is learned.
        fix_applier: Applies selected fixes before each retry.
        sleep: Awaitable delay function, injectable for tests.
        clock: Monotonic clock in seconds, injectable for tests.

    Raises:
        ConfigurationError: If the configuration is invalid.
    """

    def __init__(
        self,
        executor: AttemptExecutor,
        config: IterationConfig | Mapping[str, Any] | None = None,
        knowledge: KnowledgeStore | None = None,
        fix_applier: FixApplier | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.config = self._validate_config(config)
        self.knowledge = knowledge
        self.fix_applier = fix_applier or PassiveFixApplier()
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def _validate_config(config: IterationConfig | Mapping[str, Any] | None) -> IterationConfig:
        if config is None:
            return IterationConfig()
        try:
            if isinstance(config, IterationConfig):
                return IterationConfig.model_validate(config.model_dump())
            return IterationConfig.model_validate(dict(config))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid iteration configuration: {e}") from e

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt``."""
        cfg = self.config
        delay = cfg.initial_delay_seconds * cfg.backoff_multiplier ** (attempt - 1)
        return min(delay, cfg.max_delay_seconds)

    async def run(self, task: Any, context: WorkspaceContext) -> IterationOutcome:
        """Iterate on ``task`` until a stopping condition is met.

        Args:
            task: Opaque task descriptor passed to the executor.
            context: Workspace context; a private copy is used for the run.

        Returns:
            IterationOutcome with the full attempt history.
        """
        ctx = context.copy()
        run = _RunState(started_at=self._clock())
        cfg = self.config
        log = _logger.bind(worker_id=ctx.worker_id, task_id=ctx.task_id)
        log.info("iteration.started", max_attempts=cfg.max_attempts)

        for attempt in range(1, cfg.max_attempts + 1):
            ctx.attempt = attempt
            ctx.metadata["previous_attempts"] = self._previous_attempts_summary(run)

            applied: list[CandidateFix] = []
            if attempt > 1:
                applied = await self._apply_fixes(run, ctx)

            result, captures = await self._execute_attempt(task, ctx, run, attempt, applied)
            run.history.append(result)

            if not result.critical:
                run.learned_fixes += await self._learn_confirmed_fixes(
                    run, captures, result, applied, ctx
                )
                run.previous_captures = captures

            log.info(
                "iteration.attempt_completed",
                attempt=attempt,
                score=result.score,
                success=result.success,
                status=result.status.value,
                improvement=result.improvement,
                errors=len(result.errors),
                stalls=run.progress_stalls,
                critical_errors=run.critical_errors,
            )

            stop = self._check_stop(run, result, attempt)
            if stop is not None:
                run.finish(stop)
                break

            await self._sleep(self.backoff_delay(attempt))

        outcome = self._build_outcome(run)
        log.info(
            "iteration.finished",
            final_state=outcome.final_state.value,
            attempts=outcome.total_attempts,
            best_score=outcome.best_score,
            learned_fixes=outcome.learned_fixes,
        )
        return outcome

    async def _execute_attempt(
        self,
        task: Any,
        ctx: WorkspaceContext,
        run: _RunState,
        attempt: int,
        applied: list[CandidateFix],
    ) -> tuple[AttemptResult, dict[str, _Capture]]:
        started = self._clock()
        timeout = self.config.attempt_timeout_seconds
        try:
            report = await asyncio.wait_for(self.executor.execute(task, ctx), timeout=timeout)
        except asyncio.TimeoutError:
            return self._critical_result(
                run, attempt, started, applied, AttemptTimeoutError(attempt, timeout)
            ), {}
        except Exception as e:
            _logger.warning(
                "iteration.executor_failed",
                attempt=attempt,
                error_type=type(e).__name__,
                error=str(e),
            )
            return self._critical_result(run, attempt, started, applied, e), {}

        improvement = report.score - run.previous_score if attempt > 1 else 0.0
        run.previous_score = report.score
        if improvement >= self.config.progress_threshold:
            run.progress_stalls = 0
        else:
            run.progress_stalls += 1

        captures, candidates = self._analyze_errors(report, ctx)
        run.candidates.extend(candidates)

        result = AttemptResult(
            attempt_number=attempt,
            score=report.score,
            success=report.success,
            errors=tuple(report.errors),
            warnings=tuple(report.warnings),
            fixes_applied=tuple(report.fixes_applied),
            controller_fixes=tuple(applied),
            candidate_fixes=tuple(candidates),
            improvement=improvement,
            duration_ms=(self._clock() - started) * 1000,
            status=AttemptStatus.PASSED if report.success else AttemptStatus.FAILED,
        )
        return result, captures

    def _critical_result(
        self,
        run: _RunState,
        attempt: int,
        started: float,
        applied: list[CandidateFix],
        error: Exception,
    ) -> AttemptResult:
        """A timed-out or crashed attempt: scored 0, stall counter untouched."""
        run.critical_errors += 1
        run.previous_score = 0.0
        if isinstance(error, AttemptTimeoutError):
            message = str(error)
        else:
            message = f"Execution failed: {error}"
        return AttemptResult(
            attempt_number=attempt,
            score=0.0,
            success=False,
            errors=(ErrorInput(message, {"severity": "critical", "type": type(error).__name__}),),
            controller_fixes=tuple(applied),
            duration_ms=(self._clock() - started) * 1000,
            status=AttemptStatus.CRITICAL,
        )

    def _analyze_errors(
        self, report: ExecutionReport, ctx: WorkspaceContext
    ) -> tuple[dict[str, _Capture], list[CandidateFix]]:
        """Capture each reported error and propose a fix for it."""
        captures: dict[str, _Capture] = {}
        candidates: list[CandidateFix] = []
        for error in report.errors:
            match = None
            if self.knowledge is not None:
                capture = self.knowledge.record_error(
                    ctx.worker_id,
                    error,
                    context={"task": ctx.task_id, "attempt": ctx.attempt, "severity": error.severity},
                )
                signature, error_id, match = capture.signature, capture.error_id, capture.match
            else:
                signature, error_id = normalize_error(error), None
            captures.setdefault(signature, _Capture(signature, error_id, error.message))

            if match is not None:
                solution = match.entry.solution
                candidates.append(
                    CandidateFix(
                        description=solution.description,
                        confidence=match.similarity / 100.0,
                        source=FixSource.LEARNED,
                        signature=signature,
                        error_id=error_id,
                        type=solution.type,
                        code=solution.code,
                    )
                )
                continue
            generic = generic_fix_for(
                error.message,
                confidence=self.config.generic_fix_confidence,
                signature=signature,
                error_id=error_id,
            )
            if generic is not None:
                candidates.append(generic)
        return captures, candidates

    async def _apply_fixes(self, run: _RunState, ctx: WorkspaceContext) -> list[CandidateFix]:
        selected = select_fixes(
            run.candidates,
            limit=self.config.max_fixes_per_attempt,
            min_confidence=self.config.fix_confidence_threshold,
        )
        applied: list[CandidateFix] = []
        for fix in selected:
            try:
                result = await self.fix_applier.apply(fix, ctx)
            except Exception as e:
                _logger.warning(
                    "iteration.fix_failed",
                    fix=fix.description,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue
            if not result.success:
                _logger.warning("iteration.fix_rejected", fix=fix.description, reason=result.message)
                continue
            applied.append(fix)
            if fix.description not in ctx.applied_fixes:
                ctx.applied_fixes.append(fix.description)
        if applied:
            _logger.debug(
                "iteration.fixes_applied",
                attempt=ctx.attempt,
                fixes=[f.description for f in applied],
            )
        return applied

    async def _learn_confirmed_fixes(
        self,
        run: _RunState,
        captures: dict[str, _Capture],
        result: AttemptResult,
        applied: list[CandidateFix],
        ctx: WorkspaceContext,
    ) -> int:
        """Record fixes for errors that vanished since the previous attempt.

        The solution credited is the applied fix that targeted the error, or
        else the first fix the executor reported for this attempt. The
        knowledge writes run in a worker thread as one backend batch.
        """
        if self.knowledge is None or not run.previous_captures:
            return 0
        confirmed: list[tuple[str, Solution]] = []
        for sig, capture in run.previous_captures.items():
            if sig in captures or capture.error_id is None:
                continue
            solution = self._credited_solution(capture, result, applied)
            if solution is not None:
                confirmed.append((capture.error_id, solution))
        if not confirmed:
            return 0
        return await asyncio.to_thread(
            self._record_fixes, self.knowledge, confirmed, ctx.worker_id
        )

    @staticmethod
    def _record_fixes(
        knowledge: KnowledgeStore, confirmed: list[tuple[str, Solution]], worker_id: str
    ) -> int:
        learned = 0
        with knowledge.batch_writes():
            for error_id, solution in confirmed:
                if knowledge.record_fix(error_id, solution, worker_id) is not None:
                    learned += 1
        return learned

    def _credited_solution(
        self,
        capture: _Capture,
        result: AttemptResult,
        applied: list[CandidateFix],
    ) -> Solution | None:
        for fix in applied:
            if fix.signature == capture.signature:
                return Solution(
                    description=fix.description,
                    type=fix.type,
                    code=fix.code,
                    confidence=fix.confidence,
                    attempts=result.attempt_number,
                )
        if result.fixes_applied:
            return Solution(
                description=result.fixes_applied[0],
                confidence=self.config.executor_fix_confidence,
                attempts=result.attempt_number,
            )
        return None

    def _check_stop(
        self, run: _RunState, result: AttemptResult, attempt: int
    ) -> IterationState | None:
        cfg = self.config
        if result.success and result.score >= cfg.success_threshold:
            return IterationState.SUCCESS
        if run.critical_errors >= cfg.critical_error_threshold:
            return IterationState.CRITICAL_ERROR
        if run.progress_stalls >= cfg.stall_threshold:
            return IterationState.NO_PROGRESS
        if self._clock() - run.started_at >= cfg.overall_timeout_seconds:
            return IterationState.TIMEOUT
        if attempt >= cfg.max_attempts:
            return IterationState.MAX_ATTEMPTS
        return None

    def _previous_attempts_summary(self, run: _RunState) -> dict[str, Any]:
        """History handed to the executor: recurring errors and best fixes."""
        error_counts = Counter(
            e.message.lower() for attempt in run.history for e in attempt.errors
        )
        best_fixes = sorted(
            (f for f in run.candidates if f.confidence > 0.7),
            key=lambda f: f.confidence,
            reverse=True,
        )[:10]
        return {
            "attempt_count": len(run.history),
            "last_score": run.history[-1].score if run.history else 0.0,
            "common_errors": [
                {"error": message, "count": count} for message, count in error_counts.most_common(5)
            ],
            "best_fixes": [
                {"description": f.description, "confidence": f.confidence} for f in best_fixes
            ],
        }

    def _build_outcome(self, run: _RunState) -> IterationOutcome:
        best = max(run.history, key=lambda a: a.score)
        first = run.history[0]
        outcome = IterationOutcome(
            final_state=run.state,
            total_attempts=len(run.history),
            best_score=best.score,
            best_attempt=best.attempt_number,
            final_score=run.history[-1].score,
            history=list(run.history),
            critical_errors=run.critical_errors,
            progress_stalls=run.progress_stalls,
            learned_fixes=run.learned_fixes,
            duration_ms=(self._clock() - run.started_at) * 1000,
        )
        outcome.summary = self._summarize(outcome, first.score)
        return outcome

    def _summarize(self, outcome: IterationOutcome, first_score: float) -> str:
        state = outcome.final_state
        lines: list[str]
        if state is IterationState.SUCCESS:
            lines = [
                f"Success after {outcome.total_attempts} attempts",
                f"Final score: {outcome.final_score:g}/100",
            ]
        elif state is IterationState.MAX_ATTEMPTS:
            lines = [
                f"Reached maximum attempts ({self.config.max_attempts})",
                f"Best score: {outcome.best_score:g}/100",
            ]
        elif state is IterationState.NO_PROGRESS:
            lines = [
                f"No progress for {self.config.stall_threshold} consecutive attempts",
                f"Best score: {outcome.best_score:g}/100",
            ]
        elif state is IterationState.CRITICAL_ERROR:
            lines = [f"Too many critical errors ({outcome.critical_errors})"]
        else:
            lines = [
                "Overall timeout reached",
                f"Best score: {outcome.best_score:g}/100",
            ]
        if outcome.total_attempts > 1:
            delta = outcome.best_score - first_score
            lines.append(f"Total improvement: {delta:+g} points")
        return "\n".join(lines)


__all__ = [
    "AttemptResult",
    "AttemptStatus",
    "IterationOutcome",
    "IterationState",
    "SmartIterationController",
]
