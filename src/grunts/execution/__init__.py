"""Attempt execution and the smart iteration controller."""

from grunts.execution.executor import (
    AttemptExecutor,
    ExecutionReport,
    FunctionExecutor,
    WorkspaceContext,
)
from grunts.execution.fixes import (
    GENERIC_FIX_RULES,
    CandidateFix,
    FixApplier,
    FixResult,
    FixSource,
    PassiveFixApplier,
    WorkspaceFixApplier,
    generic_fix_for,
    select_fixes,
)
from grunts.execution.iteration import (
    AttemptResult,
    AttemptStatus,
    IterationOutcome,
    IterationState,
    SmartIterationController,
)

__all__ = [
    "AttemptExecutor",
    "AttemptResult",
    "AttemptStatus",
    "CandidateFix",
    "ExecutionReport",
    "FixApplier",
    "FixResult",
    "FixSource",
    "FunctionExecutor",
    "GENERIC_FIX_RULES",
    "IterationOutcome",
    "IterationState",
    "PassiveFixApplier",
    "SmartIterationController",
    "WorkspaceContext",
    "WorkspaceFixApplier",
    "generic_fix_for",
    "select_fixes",
]
