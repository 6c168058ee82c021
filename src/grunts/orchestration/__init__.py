"""Worker pool orchestration, dimension probes and comparative reports."""

from grunts.orchestration.pool import ExecutorFactory, WorkerPoolOrchestrator, WorkerSpec
from grunts.orchestration.probes import (
    PROBE_DIMENSIONS,
    CallableProbe,
    DimensionProbe,
    ProbeResult,
    ScoringDimension,
    run_probe,
)
from grunts.orchestration.report import (
    ComparativeReport,
    Ranking,
    ReportSummary,
    WorkerResult,
    standard_deviation,
)

__all__ = [
    "PROBE_DIMENSIONS",
    "CallableProbe",
    "ComparativeReport",
    "DimensionProbe",
    "ExecutorFactory",
    "ProbeResult",
    "Ranking",
    "ReportSummary",
    "ScoringDimension",
    "WorkerPoolOrchestrator",
    "WorkerResult",
    "WorkerSpec",
    "run_probe",
    "standard_deviation",
]
