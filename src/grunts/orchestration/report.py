"""Per-worker results and the comparative report across workers."""

from __future__ import annotations

import json
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from grunts.execution.iteration import IterationOutcome
from grunts.orchestration.probes import ScoringDimension


def standard_deviation(values: Sequence[float]) -> float:
    """Population standard deviation; 0 for an empty sequence."""
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


@dataclass
class WorkerResult:
    """Everything measured for one worker.

    Attributes:
        worker_id: Worker identifier.
        scores: Score per dimension, 0-100.
        overall: Weighted overall score.
        details: Probe details keyed by dimension value.
        errors: Failures recorded while validating (probe errors, crashes).
        execution_time_ms: Wall time spent on this worker.
        task_outcomes: Iteration outcome per task id.
    """

    worker_id: str
    scores: dict[ScoringDimension, float] = field(
        default_factory=lambda: dict.fromkeys(ScoringDimension, 0.0)
    )
    overall: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    execution_time_ms: float = 0.0
    task_outcomes: dict[str, IterationOutcome] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def consistency(self) -> float:
        """Spread of the dimension scores; lower is more consistent."""
        return standard_deviation(list(self.scores.values()))

    def scores_dict(self) -> dict[str, float]:
        scores = {dim.value: score for dim, score in self.scores.items()}
        scores["overall"] = self.overall
        return scores

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "timestamp": self.timestamp.isoformat(),
            "scores": self.scores_dict(),
            "details": self.details,
            "errors": list(self.errors),
            "execution_time_ms": self.execution_time_ms,
            "tasks": {task_id: o.to_dict() for task_id, o in self.task_outcomes.items()},
        }


@dataclass(frozen=True)
class Ranking:
    """A worker's place in the overall ranking."""

    rank: int
    worker_id: str
    overall: float
    percentile: int


@dataclass(frozen=True)
class ReportSummary:
    best_overall: str
    worst_overall: str
    most_consistent: str
    speediest: str


@dataclass
class ComparativeReport:
    """Comparison of all validated workers.

    Rankings are by overall score, highest first; equal scores keep input
    order. Percentile for position ``i`` of ``n`` is round((n - i) / n * 100).
    """

    results: list[WorkerResult] = field(default_factory=list)
    rankings: list[Ranking] = field(default_factory=list)
    category_winners: dict[ScoringDimension, str] = field(default_factory=dict)
    average_scores: dict[str, float] = field(default_factory=dict)
    summary: ReportSummary | None = None
    skipped_workers: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_results(
        cls,
        results: Sequence[WorkerResult],
        skipped_workers: Sequence[str] = (),
    ) -> ComparativeReport:
        report = cls(results=list(results), skipped_workers=list(skipped_workers))
        if not results:
            return report

        n = len(results)
        ranked = sorted(results, key=lambda r: r.overall, reverse=True)
        report.rankings = [
            Ranking(
                rank=index + 1,
                worker_id=result.worker_id,
                overall=result.overall,
                percentile=round((n - index) / n * 100),
            )
            for index, result in enumerate(ranked)
        ]
        report.category_winners = {
            dim: max(results, key=lambda r, d=dim: r.scores.get(d, 0.0)).worker_id
            for dim in ScoringDimension
        }
        report.average_scores = {
            dim.value: sum(r.scores.get(dim, 0.0) for r in results) / n for dim in ScoringDimension
        }
        report.average_scores["overall"] = sum(r.overall for r in results) / n
        report.summary = ReportSummary(
            best_overall=ranked[0].worker_id,
            worst_overall=ranked[-1].worker_id,
            most_consistent=min(results, key=lambda r: r.consistency).worker_id,
            speediest=min(results, key=lambda r: r.execution_time_ms).worker_id,
        )
        return report

    @property
    def total_workers(self) -> int:
        return len(self.results)

    def get_result(self, worker_id: str) -> WorkerResult | None:
        for result in self.results:
            if result.worker_id == worker_id:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "total_workers": self.total_workers,
            "rankings": [
                {
                    "rank": r.rank,
                    "worker_id": r.worker_id,
                    "overall": r.overall,
                    "percentile": r.percentile,
                }
                for r in self.rankings
            ],
            "category_winners": {dim.value: wid for dim, wid in self.category_winners.items()},
            "average_scores": dict(self.average_scores),
            "summary": (
                {
                    "best_overall": self.summary.best_overall,
                    "worst_overall": self.summary.worst_overall,
                    "most_consistent": self.summary.most_consistent,
                    "speediest": self.summary.speediest,
                }
                if self.summary
                else None
            ),
            "skipped_workers": list(self.skipped_workers),
            "results": [r.to_dict() for r in self.results],
        }

    def write_json(self, path: Path) -> Path:
        """Write the report atomically (temp file + rename).

        Returns:
            The path written.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(path.suffix + ".tmp")
        with open(temp_file, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        temp_file.replace(path)
        return path


__all__ = [
    "ComparativeReport",
    "Ranking",
    "ReportSummary",
    "WorkerResult",
    "standard_deviation",
]
