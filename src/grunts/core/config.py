"""Configuration models for the Grunts engine.

Pydantic models for loading and validating engine configuration, usually
from a YAML file:

    knowledge:
      backend: sqlite
      path: ~/.grunts/knowledge.db
      volatile_url: redis://localhost:6379/0
      similarity:
        threshold: 80
    iteration:
      max_attempts: 10
      attempt_timeout_seconds: 300
    orchestrator:
      batch_size: 2
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator

DEFAULT_STORE_DIR = Path.home() / ".grunts"


class SimilarityConfig(BaseModel):
    """Configuration for signature similarity matching."""

    threshold: float = Field(
        default=80.0,
        ge=0.0,
        le=100.0,
        description="Minimum similarity (0-100) for a knowledge match",
    )
    identical_threshold: float = Field(
        default=95.0,
        ge=0.0,
        le=100.0,
        description="Similarity at which two signatures are treated as the same entry",
    )
    matcher: Literal["exact", "approximate"] = Field(
        default="exact",
        description="Scorer for the final comparison: edit distance or MinHash",
    )
    num_hashes: int = Field(
        default=64, ge=1, le=1024, description="Hash functions per fingerprint"
    )
    shingle_size: int = Field(
        default=3, ge=1, le=16, description="Words per shingle"
    )
    prefilter_limit: int = Field(
        default=64,
        ge=1,
        description="Candidates kept by the fingerprint pre-filter before exact comparison",
    )
    seed: int = Field(default=1, description="Seed for the MinHash hash family")

    @model_validator(mode="after")
    def _validate_thresholds(self) -> SimilarityConfig:
        if self.identical_threshold < self.threshold:
            raise ValueError(
                f"identical_threshold ({self.identical_threshold}) must not be "
                f"below threshold ({self.threshold})"
            )
        return self


class KnowledgeConfig(BaseModel):
    """Configuration for the knowledge store and its backing stores."""

    backend: Literal["memory", "json", "sqlite"] = Field(
        default="memory", description="Durable backend for knowledge entries"
    )
    path: Path | None = Field(
        default=None,
        description="Location of the json/sqlite store. Defaults under ~/.grunts",
    )
    volatile_url: str | None = Field(
        default=None,
        description="redis:// URL of the shared session store. In-process when unset",
    )
    volatile_timeout_seconds: float = Field(
        default=2.0, gt=0, description="Connect and socket timeout for the session store"
    )
    session_ttl_seconds: int = Field(
        default=14400, ge=60, description="Expiry of session keys (4 hours)"
    )
    key_prefix: str = Field(default="grunts:errors", min_length=1)
    max_entries: int = Field(
        default=500, ge=1, description="Entries retained by the durable store"
    )
    retention_days: float = Field(
        default=30.0,
        gt=0,
        description="Entries older than this with fewer than 2 occurrences are pruned",
    )
    max_context_samples: int = Field(default=10, ge=0)
    seed_defaults: bool = Field(
        default=False, description="Pre-populate with well-known errors and fixes"
    )
    similarity: SimilarityConfig = Field(default_factory=SimilarityConfig)

    def get_store_path(self) -> Path | None:
        """Get the resolved path of the durable store (None for memory)."""
        if self.backend == "memory":
            return None
        if self.path is not None:
            return self.path.expanduser()
        suffix = "json" if self.backend == "json" else "db"
        return DEFAULT_STORE_DIR / f"knowledge.{suffix}"


class IterationConfig(BaseModel):
    """Configuration for the smart iteration controller."""

    max_attempts: int = Field(default=10, ge=1, le=100)
    attempt_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Per-attempt timeout (5 minutes)"
    )
    success_threshold: float = Field(default=80.0, ge=0.0, le=100.0)
    progress_threshold: float = Field(
        default=0.1, ge=0.0, description="Minimum improvement that resets the stall counter"
    )
    stall_threshold: int = Field(default=3, ge=1)
    critical_error_threshold: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=1.0, ge=0.0)
    backoff_multiplier: float = Field(default=1.5, ge=1.0)
    max_delay_seconds: float = Field(default=30.0, ge=0.0)
    max_fixes_per_attempt: int = Field(default=5, ge=0)
    fix_confidence_threshold: float = Field(
        default=0.6, ge=0.0, le=1.0, description="Fixes must exceed this to be applied"
    )
    generic_fix_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    executor_fix_confidence: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Confidence recorded for fixes the executor reports itself",
    )

    @model_validator(mode="after")
    def _validate_delay_range(self) -> IterationConfig:
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError(
                f"initial_delay_seconds ({self.initial_delay_seconds}) must not exceed "
                f"max_delay_seconds ({self.max_delay_seconds})"
            )
        return self

    @property
    def overall_timeout_seconds(self) -> float:
        """Wall-clock budget for a whole run."""
        return self.max_attempts * self.attempt_timeout_seconds


class DimensionWeights(BaseModel):
    """Weights for combining per-dimension scores into an overall score."""

    core_test: float = Field(default=0.30, ge=0.0)
    code_quality: float = Field(default=0.25, ge=0.0)
    performance: float = Field(default=0.20, ge=0.0)
    browser: float = Field(default=0.15, ge=0.0)
    api: float = Field(default=0.10, ge=0.0)

    @model_validator(mode="after")
    def _validate_total(self) -> DimensionWeights:
        if self.total <= 0:
            raise ValueError("at least one dimension weight must be positive")
        return self

    @property
    def total(self) -> float:
        return self.core_test + self.code_quality + self.performance + self.browser + self.api


class OrchestratorConfig(BaseModel):
    """Configuration for the worker pool orchestrator."""

    batch_size: int = Field(
        default=2, ge=1, le=32, description="Workers validated concurrently"
    )
    probe_timeout_seconds: float = Field(default=180.0, gt=0)
    weights: DimensionWeights = Field(default_factory=DimensionWeights)
    require_workspace: bool = Field(
        default=False, description="Skip workers whose workspace is missing or empty"
    )
    end_session_on_complete: bool = Field(
        default=True, description="Persist and evict knowledge once all workers finish"
    )
    results_path: Path | None = Field(
        default=None, description="Where to write the comparative report as JSON"
    )


class EngineConfig(BaseModel):
    """Root configuration for a validation engine."""

    knowledge: KnowledgeConfig = Field(default_factory=KnowledgeConfig)
    iteration: IterationConfig = Field(default_factory=IterationConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> EngineConfig:
        """Load engine configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> EngineConfig:
        """Load engine configuration from a YAML string."""
        data = yaml.safe_load(yaml_str)
        return cls.model_validate(data or {})


__all__ = [
    "DEFAULT_STORE_DIR",
    "DimensionWeights",
    "EngineConfig",
    "IterationConfig",
    "KnowledgeConfig",
    "OrchestratorConfig",
    "SimilarityConfig",
]
