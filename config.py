"""
Configuration settings for the Mental Model Engine.

Uses Pydantic Settings for environment variable management with .env file support.
Every variable can be overridden with an ``MME_`` prefixed environment variable,
e.g. ``MME_BATCH_WINDOW_MS=250``.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MME_",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Proficiency Scoring
    # ========================================
    proficiency_frequency_weight: float = Field(
        default=0.3,
        description="Weight of the interaction-frequency term",
    )
    proficiency_success_weight: float = Field(
        default=0.4,
        description="Weight of the Laplace-smoothed success-rate term",
    )
    proficiency_recency_weight: float = Field(
        default=0.2,
        description="Weight of the exponential recency term",
    )
    proficiency_complexity_weight: float = Field(
        default=0.1,
        description="Weight of the (1 - complexity) term",
    )
    proficiency_decay_lambda: float = Field(
        default=0.05,
        description="Recency decay rate per day (e^-lambda*days)",
    )
    proficiency_frequency_saturation: int = Field(
        default=20,
        description="Interactions at which the frequency term saturates at 1.0",
    )
    default_complexity_weight: float = Field(
        default=0.5,
        description="Complexity assumed for nodes the codebase analyzer has not scored",
    )

    # ========================================
    # Struggle Signals
    # ========================================
    signal_weight_repeated_edits: float = Field(default=0.25)
    signal_weight_error_cycle: float = Field(default=0.30)
    signal_weight_long_pause: float = Field(default=0.20)
    signal_weight_frequent_search: float = Field(default=0.15)
    signal_weight_context_switching: float = Field(default=0.10)

    window_lookback_minutes: int = Field(
        default=10,
        description="How far back the rolling event window reaches",
    )
    window_max_events: int = Field(
        default=500,
        description="Hard cap on events kept in the rolling window",
    )
    detector_timeout_seconds: float = Field(
        default=0.5,
        description="Per-batch budget for detector evaluation; late detectors count as absent",
    )

    # ========================================
    # Interventions
    # ========================================
    intervention_threshold: float = Field(
        default=0.65,
        description="Base struggle score above which an intervention is raised",
    )
    intervention_frequency: Literal["minimal", "balanced", "aggressive"] = Field(
        default="balanced",
        description="User preference scaling the intervention threshold",
    )
    intervention_multiplier_minimal: float = Field(default=1.3)
    intervention_multiplier_balanced: float = Field(default=1.0)
    intervention_multiplier_aggressive: float = Field(default=0.7)
    intervention_repeat_margin: float = Field(
        default=0.1,
        description="Score increase needed to re-raise an intervention for the same node",
    )
    intervention_validity_seconds: int = Field(
        default=120,
        description="Validity horizon of a decision; undelivered decisions expire after it",
    )

    # ========================================
    # Graph Maintenance
    # ========================================
    prune_min_proficiency: float = Field(
        default=10.0,
        description="Nodes below this proficiency are prune candidates",
    )
    prune_max_age_days: int = Field(
        default=30,
        description="Nodes untouched for longer than this are prune candidates",
    )
    prune_interval_seconds: int = Field(
        default=3600,
        description="Seconds between maintenance sweeps (0 to disable)",
    )
    audit_log_size: int = Field(
        default=1000,
        description="Pruning audit records kept in memory",
    )
    weak_area_max_age_days: int = Field(
        default=7,
        description="Default look-back for weak-area queries",
    )

    # ========================================
    # Event Pipeline
    # ========================================
    buffer_capacity: int = Field(
        default=10_000,
        description="Bounded event buffer size (drop-oldest when full)",
    )
    batch_window_ms: int = Field(
        default=100,
        description="Fixed batching window for draining the buffer",
    )
    dedup_memory_size: int = Field(
        default=50_000,
        description="Number of (node, event) keys remembered for replay dedup",
    )
    sensitive_path_patterns: list[str] = Field(
        default_factory=lambda: ["*.env", "*.pem", "*.key", "*secrets*", "*/.ssh/*"],
        description="Glob patterns whose events never reach the engine",
    )

    # ========================================
    # Persistence
    # ========================================
    state_db_path: str | None = Field(
        default=None,
        description="SQLite state database (defaults to ~/.mme/state.db)",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )

    # ========================================
    # Helper Methods
    # ========================================
    def get_proficiency_weights(self) -> dict[str, float]:
        """Get the four proficiency term weights."""
        return {
            "frequency": self.proficiency_frequency_weight,
            "success": self.proficiency_success_weight,
            "recency": self.proficiency_recency_weight,
            "complexity": self.proficiency_complexity_weight,
        }

    def get_signal_weights(self) -> dict[str, float]:
        """Get struggle signal weights keyed by signal type value."""
        return {
            "repeated_edits": self.signal_weight_repeated_edits,
            "error_cycle": self.signal_weight_error_cycle,
            "long_pause": self.signal_weight_long_pause,
            "frequent_search": self.signal_weight_frequent_search,
            "context_switching": self.signal_weight_context_switching,
        }

    def get_intervention_multipliers(self) -> dict[str, float]:
        """Get threshold multipliers per intervention frequency setting."""
        return {
            "minimal": self.intervention_multiplier_minimal,
            "balanced": self.intervention_multiplier_balanced,
            "aggressive": self.intervention_multiplier_aggressive,
        }

    def get_pruning_config(self) -> dict[str, float | int]:
        """Get maintenance sweep thresholds as a dictionary."""
        return {
            "min_proficiency": self.prune_min_proficiency,
            "max_age_days": self.prune_max_age_days,
            "interval_seconds": self.prune_interval_seconds,
            "audit_log_size": self.audit_log_size,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
