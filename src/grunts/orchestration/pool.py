"""Worker pool orchestrator.

Validates many workers' artifacts and compares them. Per worker:

1. Each task runs through its own SmartIterationController in an isolated
   WorkspaceContext; the core-test score is the mean of the task best scores.
2. The dimension probes run concurrently, each under ``probe_timeout``.
   A failing probe zeroes its dimension and records an error.
3. The overall score is the weighted sum of the dimension scores divided by
   the total weight.

Workers run in batches of ``batch_size``. Each batch is joined only after
every worker in it finished, and one worker's failure never cancels or
hides the others: every worker gets a result.

Example usage:
    orchestrator = WorkerPoolOrchestrator(
        executor_factory=lambda spec: FunctionExecutor(run_tests),
        probes={ScoringDimension.CODE_QUALITY: CallableProbe(lint_score)},
        knowledge=store,
    )
    report = await orchestrator.run([WorkerSpec("w-1", tasks={"smoke": task})])
    print(report.summary.best_overall)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from grunts.core.config import IterationConfig, OrchestratorConfig
from grunts.core.errors import ConfigurationError
from grunts.core.logging import ExecutionContext, get_logger, with_context
from grunts.execution.executor import AttemptExecutor, WorkspaceContext
from grunts.execution.fixes import FixApplier
from grunts.execution.iteration import SmartIterationController
from grunts.learning.knowledge import KnowledgeStore
from grunts.orchestration.probes import (
    PROBE_DIMENSIONS,
    DimensionProbe,
    ScoringDimension,
    run_probe,
)
from grunts.orchestration.report import ComparativeReport, WorkerResult

_logger = get_logger("orchestration.pool")


@dataclass
class WorkerSpec:
    """A worker to validate.

    Attributes:
        worker_id: Worker identifier.
        workspace: Directory holding the worker's artifact.
        tasks: Task descriptors keyed by task id, passed to the executor.
    """

    worker_id: str
    workspace: Path | None = None
    tasks: dict[str, Any] = field(default_factory=dict)

    def workspace_ready(self) -> bool:
        """True if the workspace exists and contains at least one entry."""
        if self.workspace is None:
            return False
        path = Path(self.workspace)
        return path.is_dir() and any(path.iterdir())


ExecutorFactory = Callable[[WorkerSpec], AttemptExecutor]


class WorkerPoolOrchestrator:
    """Runs validation for a pool of workers and ranks them.

    Args:
        executor_factory: Builds the attempt executor for a worker.
        probes: Probes keyed by dimension. Dimensions without a probe score 0.
        config: Orchestrator settings (model or mapping).
        knowledge: Shared knowledge store handed to every controller.
        fix_applier: Applier handed to every controller.
        iteration_config: Settings for the per-task controllers.
        sleep: Backoff sleep for the controllers, injectable for tests.
        clock: Monotonic clock, injectable for tests.

    Raises:
        ConfigurationError: If a configuration is invalid.
    """

    def __init__(
        self,
        executor_factory: ExecutorFactory,
        probes: Mapping[ScoringDimension | str, DimensionProbe] | None = None,
        config: OrchestratorConfig | Mapping[str, Any] | None = None,
        knowledge: KnowledgeStore | None = None,
        fix_applier: FixApplier | None = None,
        *,
        iteration_config: IterationConfig | Mapping[str, Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor_factory = executor_factory
        self.config = self._validate_config(config)
        self.probes = self._validate_probes(probes or {})
        self.knowledge = knowledge
        self.fix_applier = fix_applier
        self.iteration_config = self._validate_iteration_config(iteration_config)
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def _validate_config(config: OrchestratorConfig | Mapping[str, Any] | None) -> OrchestratorConfig:
        if config is None:
            return OrchestratorConfig()
        if isinstance(config, OrchestratorConfig):
            return config
        try:
            return OrchestratorConfig.model_validate(dict(config))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid orchestrator configuration: {e}") from e

    @staticmethod
    def _validate_iteration_config(
        config: IterationConfig | Mapping[str, Any] | None,
    ) -> IterationConfig:
        if config is None:
            return IterationConfig()
        if isinstance(config, IterationConfig):
            return config
        try:
            return IterationConfig.model_validate(dict(config))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid iteration configuration: {e}") from e

    @staticmethod
    def _validate_probes(
        probes: Mapping[ScoringDimension | str, DimensionProbe],
    ) -> dict[ScoringDimension, DimensionProbe]:
        validated: dict[ScoringDimension, DimensionProbe] = {}
        for key, probe in probes.items():
            try:
                dimension = ScoringDimension(key)
            except ValueError as e:
                raise ConfigurationError(f"Unknown scoring dimension: {key!r}") from e
            if dimension is ScoringDimension.CORE_TEST:
                raise ConfigurationError("core_test is scored by the iteration controller, not a probe")
            validated[dimension] = probe
        return validated

    async def run(self, workers: Sequence[WorkerSpec]) -> ComparativeReport:
        """Validate every worker and build the comparative report."""
        started = self._clock()
        skipped: list[str] = []
        eligible: list[WorkerSpec] = []
        for spec in workers:
            if self.config.require_workspace and not spec.workspace_ready():
                _logger.warning(
                    "pool.workspace_missing",
                    worker_id=spec.worker_id,
                    workspace=str(spec.workspace) if spec.workspace else None,
                )
                skipped.append(spec.worker_id)
                continue
            eligible.append(spec)

        _logger.info(
            "pool.started",
            workers=len(eligible),
            skipped=len(skipped),
            batch_size=self.config.batch_size,
        )

        results: list[WorkerResult] = []
        batch_size = self.config.batch_size
        for batch_index, start in enumerate(range(0, len(eligible), batch_size)):
            batch = eligible[start : start + batch_size]
            _logger.debug(
                "pool.batch_start",
                batch=batch_index,
                workers=[w.worker_id for w in batch],
            )
            outcomes = await asyncio.gather(
                *(self._validate_worker(spec) for spec in batch),
                return_exceptions=True,
            )
            for spec, outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    _logger.error(
                        "pool.worker_failed",
                        worker_id=spec.worker_id,
                        error_type=type(outcome).__name__,
                        error=str(outcome),
                    )
                    outcome = WorkerResult(
                        worker_id=spec.worker_id,
                        errors=[f"Worker validation failed: {outcome}"],
                    )
                results.append(outcome)

        report = ComparativeReport.from_results(results, skipped)
        if self.config.results_path is not None:
            report.write_json(self.config.results_path)

        if self.knowledge is not None and self.config.end_session_on_complete:
            await asyncio.to_thread(self.knowledge.end_session)

        _logger.info(
            "pool.completed",
            workers=report.total_workers,
            best=report.summary.best_overall if report.summary else None,
            duration_seconds=round(self._clock() - started, 3),
        )
        return report

    async def _validate_worker(self, spec: WorkerSpec) -> WorkerResult:
        session_id = self.knowledge.session_id if self.knowledge else f"run_{uuid.uuid4().hex[:8]}"
        ctx = ExecutionContext(session_id=session_id, worker_id=spec.worker_id, component="pool")
        with with_context(ctx):
            started = self._clock()
            result = WorkerResult(worker_id=spec.worker_id)

            await self._run_tasks(spec, result, ctx)
            await self._run_probes(spec, result)

            result.overall = self._overall_score(result.scores)
            result.execution_time_ms = (self._clock() - started) * 1000
            _logger.info(
                "pool.worker_completed",
                worker_id=spec.worker_id,
                overall=round(result.overall, 2),
                errors=len(result.errors),
            )
            return result

    async def _run_tasks(
        self, spec: WorkerSpec, result: WorkerResult, log_ctx: ExecutionContext
    ) -> None:
        best_scores: list[float] = []
        for task_id, task in spec.tasks.items():
            controller = SmartIterationController(
                self.executor_factory(spec),
                config=self.iteration_config,
                knowledge=self.knowledge,
                fix_applier=self.fix_applier,
                sleep=self._sleep,
                clock=self._clock,
            )
            context = WorkspaceContext(
                worker_id=spec.worker_id,
                workspace=spec.workspace,
                task_id=task_id,
            )
            with with_context(log_ctx.with_task(task_id)):
                outcome = await controller.run(task, context)
            result.task_outcomes[task_id] = outcome
            best_scores.append(outcome.best_score)
        if best_scores:
            result.scores[ScoringDimension.CORE_TEST] = sum(best_scores) / len(best_scores)

    async def _run_probes(self, spec: WorkerSpec, result: WorkerResult) -> None:
        dimensions = [d for d in PROBE_DIMENSIONS if d in self.probes]
        outcomes = await asyncio.gather(
            *(
                run_probe(d, self.probes[d], spec.worker_id, self.config.probe_timeout_seconds)
                for d in dimensions
            )
        )
        for dimension, (probe_result, error) in zip(dimensions, outcomes, strict=True):
            result.scores[dimension] = probe_result.score
            result.details[dimension.value] = probe_result.details
            if error is not None:
                result.errors.append(error)

    def _overall_score(self, scores: Mapping[ScoringDimension, float]) -> float:
        weights = self.config.weights
        weighted = sum(
            scores.get(dim, 0.0) * getattr(weights, dim.value) for dim in ScoringDimension
        )
        return weighted / weights.total


__all__ = ["ExecutorFactory", "WorkerPoolOrchestrator", "WorkerSpec"]
