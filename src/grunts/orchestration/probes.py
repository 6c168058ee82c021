"""Scoring dimensions and dimension probes.

A probe scores one quality dimension of a worker's artifact (static
quality, performance benchmark, browser run, HTTP API check). Probes are
supplied by the caller; ``run_probe`` isolates their failures so one broken
probe only zeroes its own dimension.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from grunts.core.errors import ProbeError
from grunts.core.logging import get_logger

_logger = get_logger("orchestration.probes")


class ScoringDimension(str, Enum):
    """Dimensions contributing to a worker's overall score."""

    CORE_TEST = "core_test"
    """Best scores of the iterated tasks, averaged."""

    CODE_QUALITY = "code_quality"
    PERFORMANCE = "performance"
    BROWSER = "browser"
    API = "api"

    @property
    def label(self) -> str:
        if self is ScoringDimension.API:
            return "API"
        return self.value.replace("_", " ").capitalize()


PROBE_DIMENSIONS: tuple[ScoringDimension, ...] = (
    ScoringDimension.CODE_QUALITY,
    ScoringDimension.PERFORMANCE,
    ScoringDimension.BROWSER,
    ScoringDimension.API,
)


@dataclass
class ProbeResult:
    """Score produced by a probe.

    Attributes:
        score: Dimension score, 0-100.
        details: Probe-specific data kept in the detailed report.
    """

    score: float
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 100.0:
            raise ProbeError(f"probe score must be between 0 and 100, got {self.score}")


@runtime_checkable
class DimensionProbe(Protocol):
    """Scores one dimension for a worker."""

    async def run(self, worker_id: str) -> ProbeResult: ...


ProbeFunction = Callable[[str], "ProbeResult | float | Mapping[str, Any] | Awaitable[Any]"]


def _coerce_result(value: Any) -> ProbeResult:
    if isinstance(value, ProbeResult):
        return value
    if isinstance(value, bool):
        raise ProbeError("probe returned a bool, expected a score")
    if isinstance(value, (int, float)):
        return ProbeResult(score=float(value))
    if isinstance(value, Mapping) and "score" in value:
        return ProbeResult(score=float(value["score"]), details=dict(value.get("details", {})))
    raise ProbeError(f"probe returned {type(value).__name__}, expected ProbeResult or score")


class CallableProbe:
    """Adapts ``fn(worker_id)`` (sync or async) to the DimensionProbe protocol.

    The function may return a ProbeResult, a bare score, or a mapping with
    ``score`` and optional ``details``.
    """

    def __init__(self, fn: ProbeFunction) -> None:
        self._fn = fn

    async def run(self, worker_id: str) -> ProbeResult:
        result = self._fn(worker_id)
        if inspect.isawaitable(result):
            result = await result
        return _coerce_result(result)


async def run_probe(
    dimension: ScoringDimension,
    probe: DimensionProbe,
    worker_id: str,
    timeout: float,
) -> tuple[ProbeResult, str | None]:
    """Run a probe under a timeout, never raising.

    Returns:
        The probe result and None, or a zero result and an error message
        when the probe timed out, raised, or returned an invalid score.
    """
    try:
        result = await asyncio.wait_for(probe.run(worker_id), timeout=timeout)
        return _coerce_result(result), None
    except asyncio.TimeoutError:
        message = f"{dimension.label} probe timed out after {timeout:g}s"
    except Exception as e:
        message = f"{dimension.label} probe failed: {e}"
    _logger.warning(
        "probe.failed",
        dimension=dimension.value,
        worker_id=worker_id,
        error=message,
    )
    return ProbeResult(score=0.0, details={"error": message}), message


__all__ = [
    "PROBE_DIMENSIONS",
    "CallableProbe",
    "DimensionProbe",
    "ProbeFunction",
    "ProbeResult",
    "ScoringDimension",
    "run_probe",
]
