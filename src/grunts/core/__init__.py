"""Core configuration, errors and logging."""

from grunts.core.config import (
    DimensionWeights,
    EngineConfig,
    IterationConfig,
    KnowledgeConfig,
    OrchestratorConfig,
    SimilarityConfig,
)
from grunts.core.errors import (
    AttemptTimeoutError,
    ConfigurationError,
    ErrorInput,
    GruntsError,
    IterationStateError,
    KnowledgeStoreError,
    ProbeError,
    VolatileStoreUnavailableError,
)

__all__ = [
    "AttemptTimeoutError",
    "ConfigurationError",
    "DimensionWeights",
    "EngineConfig",
    "ErrorInput",
    "GruntsError",
    "IterationConfig",
    "IterationStateError",
    "KnowledgeConfig",
    "KnowledgeStoreError",
    "OrchestratorConfig",
    "ProbeError",
    "SimilarityConfig",
    "VolatileStoreUnavailableError",
]
