"""ReasonFlow Configuration.

Centralized configuration with environment variable support. Every knob
reads a ``REASONFLOW_*`` variable and falls back to a default.

Usage:
    from reasonflow.config import get_config
    print(get_config().cache.capacity)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from reasonflow.utils.errors import ConfigException

_PREFIX = "REASONFLOW_"


def _get_env(key: str, default: str = "") -> str:
    """Get environment variable, treating empty string as unset."""
    value = os.getenv(_PREFIX + key, default)
    return value if value else default


def _get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(_PREFIX + key)
    if value:
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid integer for {_PREFIX}{key}: {value}, using default {default}")
    return default


def _get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(_PREFIX + key)
    if value:
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Invalid float for {_PREFIX}{key}: {value}, using default {default}")
    return default


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get environment variable as boolean."""
    value = _get_env(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


def _get_env_list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Get comma-separated environment variable as a tuple."""
    value = _get_env(key, "")
    if not value:
        return default
    return tuple(item.strip().lower() for item in value.split(",") if item.strip())


class RubricWeights(BaseModel):
    """Evaluator rubric weights. Normalized to sum to 1."""

    feasibility: float = Field(default=0.3, ge=0.0)
    effectiveness: float = Field(default=0.3, ge=0.0)
    efficiency: float = Field(default=0.2, ge=0.0)
    innovation: float = Field(default=0.2, ge=0.0)

    @model_validator(mode="after")
    def _require_positive_total(self) -> RubricWeights:
        if self.total() <= 0:
            raise ValueError("rubric weights must not all be zero")
        return self

    def total(self) -> float:
        return self.feasibility + self.effectiveness + self.efficiency + self.innovation

    def normalized(self) -> tuple[float, float, float, float]:
        """Weights in rubric order, scaled to sum to 1."""
        t = self.total()
        return (
            self.feasibility / t,
            self.effectiveness / t,
            self.efficiency / t,
            self.innovation / t,
        )


@dataclass(frozen=True)
class OracleConfig:
    """Semantic oracle client configuration."""

    model: str = field(default_factory=lambda: _get_env("ORACLE_MODEL", "gpt-4o-mini"))
    base_url: str = field(default_factory=lambda: _get_env("ORACLE_BASE_URL", ""))
    timeout_seconds: float = field(
        default_factory=lambda: _get_env_float("ORACLE_TIMEOUT_SECONDS", 8.0)
    )
    max_retries: int = field(default_factory=lambda: _get_env_int("ORACLE_MAX_RETRIES", 2))


@dataclass(frozen=True)
class MemoryConfig:
    """Memory store bounds and retention."""

    max_bytes: int = field(default_factory=lambda: _get_env_int("MEMORY_MAX_BYTES", 2_000_000))
    max_items: int = field(default_factory=lambda: _get_env_int("MEMORY_MAX_ITEMS", 5000))
    working_capacity: int = field(
        default_factory=lambda: _get_env_int("MEMORY_WORKING_CAPACITY", 7)
    )
    conversation_limit: int = field(
        default_factory=lambda: _get_env_int("MEMORY_CONVERSATION_LIMIT", 200)
    )
    half_life_hours: float = field(
        default_factory=lambda: _get_env_float("MEMORY_HALF_LIFE_HOURS", 72.0)
    )
    compression_target: float = field(
        default_factory=lambda: _get_env_float("MEMORY_COMPRESSION_TARGET", 0.8)
    )


@dataclass(frozen=True)
class ContextConfig:
    """Context assembly thresholds."""

    relevance_threshold: float = field(
        default_factory=lambda: _get_env_float("CONTEXT_RELEVANCE_THRESHOLD", 0.15)
    )
    max_fragments: int = field(default_factory=lambda: _get_env_int("CONTEXT_MAX_FRAGMENTS", 24))
    max_bytes: int = field(default_factory=lambda: _get_env_int("CONTEXT_MAX_BYTES", 16_000))
    half_life_hours: float = field(
        default_factory=lambda: _get_env_float("CONTEXT_HALF_LIFE_HOURS", 24.0)
    )


@dataclass(frozen=True)
class CacheConfig:
    """Result cache sizing and adaptive TTL bounds."""

    enabled: bool = field(default_factory=lambda: _get_env_bool("CACHE_ENABLED", True))
    capacity: int = field(default_factory=lambda: _get_env_int("CACHE_CAPACITY", 256))
    base_ttl_seconds: float = field(
        default_factory=lambda: _get_env_float("CACHE_BASE_TTL_SECONDS", 300.0)
    )
    min_ttl_seconds: float = field(
        default_factory=lambda: _get_env_float("CACHE_MIN_TTL_SECONDS", 30.0)
    )
    max_ttl_seconds: float = field(
        default_factory=lambda: _get_env_float("CACHE_MAX_TTL_SECONDS", 3600.0)
    )
    window: int = field(default_factory=lambda: _get_env_int("CACHE_WINDOW", 50))
    high_hit_rate: float = field(default_factory=lambda: _get_env_float("CACHE_HIGH_HIT_RATE", 0.6))
    low_hit_rate: float = field(default_factory=lambda: _get_env_float("CACHE_LOW_HIT_RATE", 0.2))


@dataclass(frozen=True)
class InferenceConfig:
    """Inference engine approach set and per-approach timeout."""

    approaches: tuple[str, ...] = field(
        default_factory=lambda: _get_env_list(
            "INFERENCE_APPROACHES", ("deductive", "inductive", "analogical", "creative")
        )
    )
    approach_timeout_seconds: float = field(
        default_factory=lambda: _get_env_float("INFERENCE_APPROACH_TIMEOUT_SECONDS", 5.0)
    )


@dataclass(frozen=True)
class SynthesisConfig:
    """Solution synthesizer thresholds."""

    min_confidence: float = field(
        default_factory=lambda: _get_env_float("SYNTHESIS_MIN_CONFIDENCE", 0.3)
    )
    max_synthesized: int = field(
        default_factory=lambda: _get_env_int("SYNTHESIS_MAX_SYNTHESIZED", 8)
    )
    merge_similarity: float = field(
        default_factory=lambda: _get_env_float("SYNTHESIS_MERGE_SIMILARITY", 0.3)
    )


@dataclass(frozen=True)
class EvaluationConfig:
    """Evaluator rubric and confidence aggregation."""

    feasibility: float = field(default_factory=lambda: _get_env_float("EVAL_FEASIBILITY", 0.3))
    effectiveness: float = field(
        default_factory=lambda: _get_env_float("EVAL_EFFECTIVENESS", 0.3)
    )
    efficiency: float = field(default_factory=lambda: _get_env_float("EVAL_EFFICIENCY", 0.2))
    innovation: float = field(default_factory=lambda: _get_env_float("EVAL_INNOVATION", 0.2))
    spread_saturation: float = field(
        default_factory=lambda: _get_env_float("EVAL_SPREAD_SATURATION", 0.2)
    )

    def weights(self) -> RubricWeights:
        """Validated rubric weights.

        Raises:
            ConfigException: If any weight is negative or all are zero.

        """
        try:
            return RubricWeights(
                feasibility=self.feasibility,
                effectiveness=self.effectiveness,
                efficiency=self.efficiency,
                innovation=self.innovation,
            )
        except ValidationError as e:
            raise ConfigException(f"Invalid evaluation weights: {e}") from e


@dataclass(frozen=True)
class LearningConfig:
    """Learning loop rates and decay."""

    enabled: bool = field(default_factory=lambda: _get_env_bool("LEARNING_ENABLED", True))
    learning_rate: float = field(
        default_factory=lambda: _get_env_float("LEARNING_RATE", 0.1)
    )
    exploration_rate: float = field(
        default_factory=lambda: _get_env_float("LEARNING_EXPLORATION_RATE", 0.3)
    )
    decay_rate: float = field(default_factory=lambda: _get_env_float("LEARNING_DECAY_RATE", 0.99))
    decay_threshold_days: int = field(
        default_factory=lambda: _get_env_int("LEARNING_DECAY_THRESHOLD_DAYS", 7)
    )
    min_strategy_effectiveness: float = field(
        default_factory=lambda: _get_env_float("LEARNING_MIN_STRATEGY_EFFECTIVENESS", 0.2)
    )


@dataclass(frozen=True)
class SessionConfig:
    """Session history configuration."""

    history_size: int = field(default_factory=lambda: _get_env_int("SESSION_HISTORY_SIZE", 100))
    default_timeout_seconds: float = field(
        default_factory=lambda: _get_env_float("SESSION_TIMEOUT_SECONDS", 60.0)
    )


@dataclass(frozen=True)
class PersistenceConfig:
    """Durable storage configuration."""

    enabled: bool = field(default_factory=lambda: _get_env_bool("PERSISTENCE_ENABLED", False))
    db_path: str = field(default_factory=lambda: _get_env("DB_PATH", ""))


@dataclass(frozen=True)
class Config:
    """Root configuration object."""

    oracle: OracleConfig = field(default_factory=OracleConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    evaluation: EvaluationConfig = field(default_factory=EvaluationConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary (for logging/debugging)."""
        return {
            "oracle": {
                "model": self.oracle.model,
                "base_url": self.oracle.base_url or None,
                "timeout_seconds": self.oracle.timeout_seconds,
            },
            "memory": {
                "max_bytes": self.memory.max_bytes,
                "max_items": self.memory.max_items,
                "working_capacity": self.memory.working_capacity,
            },
            "context": {
                "relevance_threshold": self.context.relevance_threshold,
                "max_fragments": self.context.max_fragments,
            },
            "cache": {
                "enabled": self.cache.enabled,
                "capacity": self.cache.capacity,
                "base_ttl_seconds": self.cache.base_ttl_seconds,
            },
            "inference": {
                "approaches": list(self.inference.approaches),
                "approach_timeout_seconds": self.inference.approach_timeout_seconds,
            },
            "evaluation": self.evaluation.weights().model_dump(),
            "learning": {
                "enabled": self.learning.enabled,
                "learning_rate": self.learning.learning_rate,
            },
            "session": {"history_size": self.session.history_size},
            "persistence": {
                "enabled": self.persistence.enabled,
                "db_path": self.persistence.db_path or None,
            },
        }


_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """Reload configuration (for testing)."""
    global _config
    _config = Config()
    return _config
