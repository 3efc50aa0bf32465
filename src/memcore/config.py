"""memcore configuration management.

Loads configuration from .env files and YAML config files, merges them,
and provides validated settings via pydantic models.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from memcore.models import MemoryTier, MemoryType, RetrievalOptions

logger = logging.getLogger(__name__)


class EmbeddingProviderName(str, Enum):
    """Supported embedding providers."""
    HASH = "hash"
    OLLAMA = "ollama"


class StorageBackend(str, Enum):
    """Supported storage backends."""
    MEMORY = "memory"
    SQLITE = "sqlite"


def _check_unit_interval(name: str, v: float) -> float:
    if not 0.0 <= v <= 1.0:
        raise ValueError(f"{name} must be between 0.0 and 1.0")
    return v


class EmbeddingConfig(BaseModel):
    """Configuration for the embedding provider."""

    provider: EmbeddingProviderName = EmbeddingProviderName.HASH
    model: str = "nomic-embed-text"
    dimension: int = 384
    host: str = "http://localhost:11434"
    timeout: float = 30.0
    max_batch_size: int = 32

    @field_validator("dimension", "max_batch_size")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Ensure sizes are positive."""
        if v <= 0:
            raise ValueError("dimension and max_batch_size must be positive")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Ensure timeout is positive."""
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v


class StorageConfig(BaseModel):
    """Configuration for the memory store."""

    backend: StorageBackend = StorageBackend.MEMORY
    db_path: str = "data/memcore.db"

    @model_validator(mode="after")
    def expand_db_path(self) -> "StorageConfig":
        """Expand user home directory in db_path."""
        self.db_path = str(Path(self.db_path).expanduser())
        return self


class ServiceConfig(BaseModel):
    """Configuration for the MemoryService orchestrator."""

    default_tier: MemoryTier = MemoryTier.WORKING
    min_importance_to_store: float = 0.1
    min_extraction_confidence: float = 0.6
    deduplication_threshold: float = 0.92
    max_memories_per_user: int = 1000
    auto_consolidate: bool = True
    operation_timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 0.5
    style_min_messages: int = 3
    style_history_scopes: int = 10_000

    @field_validator("min_importance_to_store", "min_extraction_confidence", "deduplication_threshold")
    @classmethod
    def validate_thresholds(cls, v: float) -> float:
        """Ensure thresholds are in valid range."""
        return _check_unit_interval("thresholds", v)

    @field_validator("max_memories_per_user", "style_min_messages", "style_history_scopes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Ensure counts are positive."""
        if v <= 0:
            raise ValueError("service counts must be positive")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Ensure max_retries is not negative."""
        if v < 0:
            raise ValueError("max_retries must not be negative")
        return v


class RetrievalConfig(BaseModel):
    """Default retrieval options.

    The recency/importance weights and diversity threshold are empirical
    and expected to be tuned.
    """

    limit: int = 20
    similarity_threshold: float = 0.5
    recency_weight: float = 0.3
    importance_weight: float = 0.4
    recency_half_life_days: float = 30.0
    diversity_sampling: bool = True
    diversity_threshold: float = 0.8

    @field_validator("limit")
    @classmethod
    def validate_limit(cls, v: int) -> int:
        """Ensure limit is positive."""
        if v <= 0:
            raise ValueError("limit must be positive")
        return v

    @field_validator("similarity_threshold", "diversity_threshold")
    @classmethod
    def validate_similarity(cls, v: float) -> float:
        """Ensure similarity thresholds are in valid range."""
        return _check_unit_interval("similarity thresholds", v)

    @field_validator("recency_weight", "importance_weight")
    @classmethod
    def validate_weights(cls, v: float) -> float:
        """Ensure boost weights are not negative."""
        if v < 0:
            raise ValueError("boost weights must not be negative")
        return v

    def to_options(self, **overrides: Any) -> RetrievalOptions:
        """Build RetrievalOptions from these defaults plus per-call overrides."""
        values = self.model_dump()
        values.update(overrides)
        return RetrievalOptions(**values)


class TierPolicy(BaseModel):
    """Per-tier lifecycle rules."""

    ttl_hours: float | None = None
    max_memories: int = 1000
    consolidation_threshold: float = 0.5
    min_dwell_hours: float = 24.0

    @field_validator("consolidation_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Ensure consolidation_threshold is in valid range."""
        return _check_unit_interval("consolidation_threshold", v)


def _default_tier_policies() -> dict[MemoryTier, TierPolicy]:
    return {
        MemoryTier.WORKING: TierPolicy(
            ttl_hours=24, max_memories=50, consolidation_threshold=0.3, min_dwell_hours=1
        ),
        MemoryTier.SHORT_TERM: TierPolicy(
            ttl_hours=72, max_memories=200, consolidation_threshold=0.5, min_dwell_hours=24
        ),
        MemoryTier.LONG_TERM: TierPolicy(
            ttl_hours=None, max_memories=1000, consolidation_threshold=0.8, min_dwell_hours=24
        ),
        MemoryTier.EPISODIC: TierPolicy(
            ttl_hours=None, max_memories=10000, consolidation_threshold=1.0, min_dwell_hours=0
        ),
    }


def _default_decay_rates() -> dict[MemoryType, float]:
    return {
        MemoryType.FACT: 0.05,
        MemoryType.PREFERENCE: 0.03,
        MemoryType.EVENT: 0.1,
        MemoryType.RELATIONSHIP: 0.03,
        MemoryType.SKILL: 0.04,
        MemoryType.GOAL: 0.05,
        MemoryType.CONTEXT: 0.15,
        MemoryType.FEEDBACK: 0.1,
    }


class ConsolidationConfig(BaseModel):
    """Configuration for tier sweeps and decay."""

    min_age_hours: float = 1.0
    batch_size: int = 100
    decay_floor: float = 0.3
    delete_floor: float = 0.1
    recent_access_days: float = 7.0
    protection_threshold: float = 0.9
    accelerated_decay_threshold: float = 0.3
    accelerated_decay_multiplier: float = 2.0
    merge_threshold: float = 0.95
    decay_rates: dict[MemoryType, float] = Field(default_factory=_default_decay_rates)
    tiers: dict[MemoryTier, TierPolicy] = Field(default_factory=_default_tier_policies)

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        """Ensure batch_size is positive."""
        if v <= 0:
            raise ValueError("batch_size must be positive")
        return v

    @field_validator("decay_floor", "delete_floor", "protection_threshold", "merge_threshold")
    @classmethod
    def validate_unit(cls, v: float) -> float:
        """Ensure floors and thresholds are in valid range."""
        return _check_unit_interval("decay floors and thresholds", v)

    @model_validator(mode="after")
    def fill_missing_tiers(self) -> "ConsolidationConfig":
        """Keep defaults for tiers and types a YAML file leaves out."""
        defaults = _default_tier_policies()
        for tier, policy in defaults.items():
            self.tiers.setdefault(tier, policy)
        for memory_type, rate in _default_decay_rates().items():
            self.decay_rates.setdefault(memory_type, rate)
        return self

    def policy(self, tier: MemoryTier) -> TierPolicy:
        return self.tiers[tier]


def _default_type_weights() -> dict[MemoryType, float]:
    return {
        MemoryType.FACT: 0.6,
        MemoryType.PREFERENCE: 0.7,
        MemoryType.EVENT: 0.5,
        MemoryType.RELATIONSHIP: 0.65,
        MemoryType.SKILL: 0.55,
        MemoryType.GOAL: 0.8,
        MemoryType.CONTEXT: 0.4,
        MemoryType.FEEDBACK: 0.45,
    }


class ImportanceWeights(BaseModel):
    """Versioned weight table for importance scoring.

    Group weights combine the four factor groups; the remaining fields
    tune contributions inside each group.
    """

    version: str = "1"

    content_weight: float = 0.25
    source_weight: float = 0.3
    context_weight: float = 0.25
    usage_weight: float = 0.2

    entity_bonus: float = 0.1
    temporal_bonus: float = 0.08
    emotional_bonus: float = 0.05
    numerical_bonus: float = 0.06
    specificity_multiplier: float = 0.15

    explicit_source_multiplier: float = 1.3
    user_emphasis_multiplier: float = 1.5
    repetition_multiplier: float = 1.2

    type_weights: dict[MemoryType, float] = Field(default_factory=_default_type_weights)
    recency_decay: float = 0.02
    goal_related_bonus: float = 0.15
    clustered_bonus: float = 0.05

    retrieval_weight: float = 0.3
    usage_rate_weight: float = 0.25
    feedback_weight: float = 0.15
    usage_multiplier: float = 0.3

    @field_validator(
        "content_weight", "source_weight", "context_weight", "usage_weight",
        "entity_bonus", "temporal_bonus", "emotional_bonus", "numerical_bonus",
        "specificity_multiplier", "recency_decay", "goal_related_bonus",
        "clustered_bonus", "retrieval_weight", "usage_rate_weight", "feedback_weight",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Ensure weights are not negative."""
        if v < 0:
            raise ValueError("importance weights must not be negative")
        return v

    @field_validator("explicit_source_multiplier", "user_emphasis_multiplier", "repetition_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        """Ensure multipliers never shrink a score."""
        if v < 1.0:
            raise ValueError("source multipliers must be at least 1.0")
        return v

    @field_validator("usage_multiplier")
    @classmethod
    def validate_usage_multiplier(cls, v: float) -> float:
        """Ensure usage_multiplier is in valid range."""
        return _check_unit_interval("usage_multiplier", v)

    @model_validator(mode="after")
    def validate_group_total(self) -> "ImportanceWeights":
        """At least one factor group must contribute."""
        if self.group_total <= 0:
            raise ValueError("group weights must sum to a positive value")
        return self

    @property
    def group_total(self) -> float:
        return self.content_weight + self.source_weight + self.context_weight + self.usage_weight

    def type_weight(self, memory_type: MemoryType) -> float:
        return self.type_weights.get(memory_type, 0.5)


class PersonaConfig(BaseModel):
    """Configuration for persona learning."""

    preferred_language: str = "no"
    min_conversations_for_reliability: int = 5
    auto_ask_questions: bool = True
    low_confidence_threshold: float = 0.5
    max_update_retries: int = 3

    @field_validator("preferred_language")
    @classmethod
    def validate_language(cls, v: str) -> str:
        """Ensure language is supported."""
        if v not in {"no", "en"}:
            raise ValueError("preferred_language must be 'no' or 'en'")
        return v

    @field_validator("min_conversations_for_reliability")
    @classmethod
    def validate_min_conversations(cls, v: int) -> int:
        """Ensure min_conversations_for_reliability is positive."""
        if v <= 0:
            raise ValueError("min_conversations_for_reliability must be positive")
        return v


class MemcoreConfig(BaseSettings):
    """
    memcore's main configuration.

    Loads from:
    1. YAML config files (via load() classmethod)
    2. .env file (via pydantic-settings)
    3. Environment variables with MEMCORE_ prefix

    Environment variables override YAML values.
    """

    model_config = SettingsConfigDict(
        env_prefix="MEMCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = "INFO"
    name: str = "memcore"
    version: str = "0.1.0"

    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    importance: ImportanceWeights = Field(default_factory=ImportanceWeights)
    persona: PersonaConfig = Field(default_factory=PersonaConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log_level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment first so it wins over YAML values passed as init kwargs
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def load(cls, yaml_path: Path | str | None = None) -> "MemcoreConfig":
        """
        Load configuration from YAML and environment.

        Args:
            yaml_path: Path to YAML config file. If None, searches default locations.

        Returns:
            Validated MemcoreConfig instance.
        """
        yaml_file = cls._find_yaml_config(yaml_path)

        yaml_data: dict[str, Any] = {}
        if yaml_file and yaml_file.exists():
            yaml_data = cls._load_yaml_file(yaml_file)
            logger.debug(f"Loaded config from {yaml_file}")

        # A top-level 'memcore' section holds core settings; other keys are sections
        if "memcore" in yaml_data:
            merged_data = dict(yaml_data["memcore"] or {})
            merged_data.update({k: v for k, v in yaml_data.items() if k != "memcore"})
            yaml_data = merged_data

        return cls(**yaml_data)

    @classmethod
    def _find_yaml_config(cls, yaml_path: Path | str | None) -> Path | None:
        """Find the YAML config file to load."""
        if yaml_path:
            return Path(yaml_path)

        default_locations = [
            Path("config/memcore.yaml"),
            Path("config/memcore.yml"),
            Path.home() / ".memcore" / "config.yaml",
            Path("/etc/memcore/config.yaml"),
        ]

        for location in default_locations:
            if location.exists():
                return location

        return None

    @classmethod
    def _load_yaml_file(cls, path: Path) -> dict[str, Any]:
        """Load YAML file and return parsed data."""
        try:
            with path.open("r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Failed to parse YAML file {path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring YAML file {path}: top level is not a mapping")
            return {}
        return data

    def get_log_config(self) -> dict[str, Any]:
        """Get logging configuration dict for use with logging.config."""
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "level": self.log_level,
                    "formatter": "standard",
                },
            },
            "root": {
                "level": self.log_level,
                "handlers": ["console"],
            },
        }
