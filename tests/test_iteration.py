"""Tests for grunts.execution.iteration."""

from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path
from typing import Any

import pytest

from grunts.core.config import IterationConfig, KnowledgeConfig
from grunts.core.errors import ConfigurationError
from grunts.execution.executor import ExecutionReport, FunctionExecutor, WorkspaceContext
from grunts.execution.fixes import CandidateFix, FixResult, WorkspaceFixApplier
from grunts.execution.iteration import (
    AttemptStatus,
    IterationState,
    SmartIterationController,
)
from grunts.learning.knowledge import KnowledgeStore
from grunts.learning.store import JsonKnowledgeBackend
from tests.helpers import FakeClock, FakeSleep, ScriptedExecutor, score_script


def _make_controller(
    script: list[Any],
    sleep: FakeSleep,
    clock: FakeClock | None = None,
    knowledge: KnowledgeStore | None = None,
    **config: Any,
) -> tuple[SmartIterationController, ScriptedExecutor]:
    executor = ScriptedExecutor(script)
    controller = SmartIterationController(
        executor,
        config=config or None,
        knowledge=knowledge,
        sleep=sleep,
        clock=clock or FakeClock(),
    )
    return controller, executor


def _make_context() -> WorkspaceContext:
    return WorkspaceContext(worker_id="w-1", task_id="smoke")


class TestStoppingConditions:
    """Each terminal state is reached by the documented rule."""

    @pytest.mark.asyncio
    async def test_success_at_threshold(self, fake_sleep: FakeSleep, fake_clock: FakeClock) -> None:
        script = [*score_script(20, 40, 60), ExecutionReport(score=80, success=True)]
        controller, executor = _make_controller(script, fake_sleep, fake_clock)

        outcome = await controller.run("task", _make_context())

        assert outcome.final_state is IterationState.SUCCESS
        assert outcome.success
        assert outcome.total_attempts == 4
        assert executor.calls == 4
        assert outcome.best_score == 80
        assert outcome.best_attempt == 4
        assert [a.improvement for a in outcome.history] == [0.0, 20.0, 20.0, 20.0]

    @pytest.mark.asyncio
    async def test_success_flag_without_threshold_keeps_going(
        self, fake_sleep: FakeSleep, fake_clock: FakeClock
    ) -> None:
        script = [
            ExecutionReport(score=50, success=True),
            ExecutionReport(score=85, success=True),
        ]
        controller, _ = _make_controller(script, fake_sleep, fake_clock)

        outcome = await controller.run("task", _make_context())

        assert outcome.final_state is IterationState.SUCCESS
        assert outcome.total_attempts == 2

    @pytest.mark.asyncio
    async def test_max_attempts_when_slowly_improving(
        self, fake_sleep: FakeSleep, fake_clock: FakeClock
    ) -> None:
        controller, executor = _make_controller(
            score_script(*range(1, 11)), fake_sleep, fake_clock
        )

        outcome = await controller.run("task", _make_context())

        assert outcome.final_state is IterationState.MAX_ATTEMPTS
        assert outcome.total_attempts == 10
        assert executor.calls == 10
        assert outcome.best_score == 10
        assert len(fake_sleep.delays) == 9

    @pytest.mark.asyncio
    async def test_no_progress_when_flat(self, fake_sleep: FakeSleep, fake_clock: FakeClock) -> None:
        controller, _ = _make_controller(score_script(30), fake_sleep, fake_clock)

        outcome = await controller.run("task", _make_context())

        assert outcome.final_state is IterationState.NO_PROGRESS
        assert outcome.total_attempts == 3
        assert outcome.progress_stalls == 3
        assert outcome.best_score == 30

    @pytest.mark.asyncio
    async def test_critical_error_after_repeated_crashes(
        self, fake_sleep: FakeSleep, fake_clock: FakeClock
    ) -> None:
        controller, _ = _make_controller([RuntimeError("boom")], fake_sleep, fake_clock)

        outcome = await controller.run("task", _make_context())

        assert outcome.final_state is IterationState.CRITICAL_ERROR
        assert outcome.total_attempts == 3
        assert outcome.critical_errors == 3
        assert outcome.progress_stalls == 0
        first = outcome.history[0]
        assert first.status is AttemptStatus.CRITICAL
        assert first.score == 0.0
        assert first.errors[0].message == "Execution failed: boom"
        assert first.errors[0].severity == "critical"

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_critical(self, fake_sleep: FakeSleep) -> None:
        async def slow(task: Any, context: WorkspaceContext) -> dict[str, Any]:
            await asyncio.sleep(5)
            return {"score": 100, "success": True}

        controller = SmartIterationController(
            FunctionExecutor(slow),
            config={"attempt_timeout_seconds": 0.01, "critical_error_threshold": 1},
            sleep=fake_sleep,
        )

        outcome = await controller.run("task", _make_context())

        assert outcome.final_state is IterationState.CRITICAL_ERROR
        assert outcome.total_attempts == 1
        assert outcome.history[0].errors[0].message == "Attempt 1 timed out after 0.01s"

    @pytest.mark.asyncio
    async def test_overall_timeout(self, fake_sleep: FakeSleep, fake_clock: FakeClock) -> None:
        async def slow_clock(task: Any, context: WorkspaceContext) -> ExecutionReport:
            fake_clock.advance(5)
            return ExecutionReport(score=10)

        controller = SmartIterationController(
            FunctionExecutor(slow_clock),
            config={"max_attempts": 3, "attempt_timeout_seconds": 1},
            sleep=fake_sleep,
            clock=fake_clock,
        )

        outcome = await controller.run("task", _make_context())

        assert outcome.final_state is IterationState.TIMEOUT
        assert outcome.total_attempts == 1
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_critical_attempt_resets_score_baseline(
        self, fake_sleep: FakeSleep, fake_clock: FakeClock
    ) -> None:
        script = [ExecutionReport(score=20), RuntimeError("crash"), ExecutionReport(score=40)]
        controller, _ = _make_controller(script, fake_sleep, fake_clock, max_attempts=3)

        outcome = await controller.run("task", _make_context())

        assert outcome.final_state is IterationState.MAX_ATTEMPTS
        assert outcome.critical_errors == 1
        assert outcome.history[2].improvement == 40.0
        assert outcome.progress_stalls == 0


class TestBackoff:
    """Exponential backoff between attempts."""

    @pytest.mark.asyncio
    async def test_delays_grow_by_multiplier(self, fake_sleep: FakeSleep, fake_clock: FakeClock) -> None:
        script = [*score_script(20, 40, 60), ExecutionReport(score=80, success=True)]
        controller, _ = _make_controller(script, fake_sleep, fake_clock)

        await controller.run("task", _make_context())

        assert fake_sleep.delays == pytest.approx([1.0, 1.5, 2.25])

    def test_delay_capped(self) -> None:
        controller = SmartIterationController(
            ScriptedExecutor([ExecutionReport()]),
            config={"initial_delay_seconds": 10, "max_delay_seconds": 12, "backoff_multiplier": 2},
        )
        assert controller.backoff_delay(1) == 10
        assert controller.backoff_delay(2) == 12
        assert controller.backoff_delay(5) == 12


class TestConfiguration:
    """Configuration is validated before any attempt runs."""

    @pytest.mark.parametrize(
        "config",
        [
            {"max_attempts": 0},
            {"attempt_timeout_seconds": -1},
            {"success_threshold": 150},
            {"initial_delay_seconds": 50, "max_delay_seconds": 10},
        ],
    )
    def test_invalid_config_raises(self, config: dict[str, Any]) -> None:
        executor = ScriptedExecutor([ExecutionReport()])
        with pytest.raises(ConfigurationError):
            SmartIterationController(executor, config=config)

    def test_accepts_model(self) -> None:
        controller = SmartIterationController(
            ScriptedExecutor([ExecutionReport()]), config=IterationConfig(max_attempts=2)
        )
        assert controller.config.max_attempts == 2


class TestContextHandling:
    """What the executor sees across attempts."""

    @pytest.mark.asyncio
    async def test_attempt_numbers_and_history(self, fake_sleep: FakeSleep, fake_clock: FakeClock) -> None:
        script = score_script(20, 40, errors=["Assertion failed: expected 3"])
        controller, executor = _make_controller(script, fake_sleep, fake_clock, max_attempts=2)

        await controller.run("task", _make_context())

        assert [c.attempt for c in executor.contexts] == [1, 2]
        first_summary = executor.contexts[0].metadata["previous_attempts"]
        assert first_summary["attempt_count"] == 0
        second_summary = executor.contexts[1].metadata["previous_attempts"]
        assert second_summary["attempt_count"] == 1
        assert second_summary["last_score"] == 20
        assert second_summary["common_errors"] == [
            {"error": "assertion failed: expected 3", "count": 1}
        ]

    @pytest.mark.asyncio
    async def test_callers_context_not_mutated(self, fake_sleep: FakeSleep, fake_clock: FakeClock) -> None:
        controller, _ = _make_controller(score_script(10, 20), fake_sleep, fake_clock, max_attempts=2)
        context = _make_context()

        await controller.run("task", context)

        assert context.attempt == 1
        assert context.metadata == {}
        assert context.applied_fixes == []

    @pytest.mark.asyncio
    async def test_low_confidence_generic_fixes_not_applied(
        self, fake_sleep: FakeSleep, fake_clock: FakeClock
    ) -> None:
        script = score_script(10, 20, errors=["Cannot resolve module 'phaser'"])
        controller, executor = _make_controller(script, fake_sleep, fake_clock, max_attempts=2)

        outcome = await controller.run("task", _make_context())

        assert executor.contexts[1].applied_fixes == []
        candidate = outcome.history[0].candidate_fixes[0]
        assert candidate.description == "npm install phaser"
        assert candidate.confidence == 0.3


class TestLearning:
    """Fixes applied or reported by the executor feed the knowledge store."""

    @pytest.mark.asyncio
    async def test_learned_fix_applied_and_confirmed(
        self, knowledge: KnowledgeStore, fake_sleep: FakeSleep, fake_clock: FakeClock
    ) -> None:
        capture = knowledge.record_error("w-0", "Cannot resolve module 'phaser'")
        knowledge.record_fix(capture.error_id, "npm install phaser", "w-0")

        script = [
            ExecutionReport(score=40, errors=["Cannot resolve module 'phaser'"]),
            ExecutionReport(score=90, success=True),
        ]
        controller, executor = _make_controller(script, fake_sleep, fake_clock, knowledge=knowledge)

        outcome = await controller.run("task", _make_context())

        assert outcome.final_state is IterationState.SUCCESS
        assert executor.contexts[1].applied_fixes == ["npm install phaser"]
        assert [f.description for f in outcome.history[1].controller_fixes] == ["npm install phaser"]
        assert outcome.learned_fixes == 1
        entries = knowledge.get_entries()
        assert len(entries) == 1
        assert entries[0].occurrences == 2

    @pytest.mark.asyncio
    async def test_executor_reported_fix_is_learned(
        self, knowledge: KnowledgeStore, fake_sleep: FakeSleep, fake_clock: FakeClock
    ) -> None:
        script = [
            ExecutionReport(score=50, errors=["Phaser is not defined"]),
            ExecutionReport(score=85, success=True, fixes_applied=["import Phaser from 'phaser'"]),
        ]
        controller, _ = _make_controller(script, fake_sleep, fake_clock, knowledge=knowledge)

        outcome = await controller.run("task", _make_context())

        assert outcome.learned_fixes == 1
        suggestion = knowledge.suggest_fix("Phaser is not defined")
        assert suggestion is not None
        assert suggestion.description == "import Phaser from 'phaser'"
        assert suggestion.confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_persisting_error_is_not_learned(
        self, knowledge: KnowledgeStore, fake_sleep: FakeSleep, fake_clock: FakeClock
    ) -> None:
        script = [
            ExecutionReport(score=50, errors=["Phaser is not defined"]),
            ExecutionReport(score=60, errors=["Phaser is not defined"], fixes_applied=["retry"]),
        ]
        controller, _ = _make_controller(
            script, fake_sleep, fake_clock, knowledge=knowledge, max_attempts=2
        )

        outcome = await controller.run("task", _make_context())

        assert outcome.learned_fixes == 0
        assert len(knowledge) == 0

    @pytest.mark.asyncio
    async def test_failing_applier_does_not_stop_attempt(
        self, knowledge: KnowledgeStore, fake_sleep: FakeSleep, fake_clock: FakeClock
    ) -> None:
        class BrokenApplier:
            async def apply(self, fix: CandidateFix, context: WorkspaceContext) -> FixResult:
                raise OSError("read-only workspace")

        capture = knowledge.record_error("w-0", "Cannot resolve module 'phaser'")
        knowledge.record_fix(capture.error_id, "npm install phaser", "w-0")
        script = [
            ExecutionReport(score=40, errors=["Cannot resolve module 'phaser'"]),
            ExecutionReport(score=90, success=True),
        ]
        executor = ScriptedExecutor(script)
        controller = SmartIterationController(
            executor,
            knowledge=knowledge,
            fix_applier=BrokenApplier(),
            sleep=fake_sleep,
            clock=fake_clock,
        )

        outcome = await controller.run("task", _make_context())

        assert outcome.final_state is IterationState.SUCCESS
        assert executor.contexts[1].applied_fixes == []

    @pytest.mark.asyncio
    async def test_confirmed_fixes_recorded_off_loop_in_one_batch(
        self,
        tmp_path: Path,
        fake_sleep: FakeSleep,
        fake_clock: FakeClock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        backend = JsonKnowledgeBackend(tmp_path / "knowledge.json")
        knowledge = KnowledgeStore(KnowledgeConfig(), backend=backend)
        writes: list[int] = []
        original_write = backend._write
        monkeypatch.setattr(
            backend, "_write", lambda entries: (writes.append(len(entries)), original_write(entries))
        )
        threads: list[int] = []
        original_record_fix = knowledge.record_fix

        def record_fix(*args: Any) -> Any:
            threads.append(threading.get_ident())
            return original_record_fix(*args)

        monkeypatch.setattr(knowledge, "record_fix", record_fix)
        script = [
            ExecutionReport(
                score=40, errors=["Phaser is not defined", "Cannot resolve module 'phaser'"]
            ),
            ExecutionReport(score=90, success=True, fixes_applied=["npm install phaser"]),
        ]
        controller, _ = _make_controller(script, fake_sleep, fake_clock, knowledge=knowledge)

        outcome = await controller.run("task", _make_context())

        assert outcome.learned_fixes == 2
        assert writes == [2]
        assert len(threads) == 2
        assert threading.get_ident() not in threads

    @pytest.mark.asyncio
    async def test_workspace_applier_edits_workspace(
        self, knowledge: KnowledgeStore, fake_sleep: FakeSleep, fake_clock: FakeClock, tmp_path: Path
    ) -> None:
        workspace = tmp_path / "worker"
        workspace.mkdir()
        (workspace / "package.json").write_text(json.dumps({"name": "game"}))
        capture = knowledge.record_error("w-0", "SyntaxError: Unexpected token 'export'")
        knowledge.record_fix(capture.error_id, "Add 'type': 'module' to package.json", "w-0")
        script = [
            ExecutionReport(score=40, errors=["SyntaxError: Unexpected token 'export'"]),
            ExecutionReport(score=90, success=True),
        ]
        executor = ScriptedExecutor(script)
        controller = SmartIterationController(
            executor,
            knowledge=knowledge,
            fix_applier=WorkspaceFixApplier(),
            sleep=fake_sleep,
            clock=fake_clock,
        )

        outcome = await controller.run(
            "task", WorkspaceContext(worker_id="w-1", workspace=workspace)
        )

        assert outcome.final_state is IterationState.SUCCESS
        assert json.loads((workspace / "package.json").read_text())["type"] == "module"
        assert executor.contexts[1].applied_fixes == ["Add 'type': 'module' to package.json"]


class TestOutcome:
    """Outcome summary and serialization."""

    @pytest.mark.asyncio
    async def test_summary_and_dict(self, fake_sleep: FakeSleep, fake_clock: FakeClock) -> None:
        script = [*score_script(20, 40, 60), ExecutionReport(score=80, success=True)]
        controller, _ = _make_controller(script, fake_sleep, fake_clock)

        outcome = await controller.run("task", _make_context())

        assert outcome.summary.splitlines() == [
            "Success after 4 attempts",
            "Final score: 80/100",
            "Total improvement: +60 points",
        ]
        data = outcome.to_dict()
        assert data["final_state"] == "success"
        assert data["total_attempts"] == 4
        assert len(data["history"]) == 4
        assert data["history"][3]["status"] == "passed"

    @pytest.mark.asyncio
    async def test_best_score_prefers_earliest(self, fake_sleep: FakeSleep, fake_clock: FakeClock) -> None:
        controller, _ = _make_controller(
            score_script(50, 70, 70, 60), fake_sleep, fake_clock, max_attempts=4
        )

        outcome = await controller.run("task", _make_context())

        assert outcome.best_score == 70
        assert outcome.best_attempt == 2
        assert outcome.final_score == 60
