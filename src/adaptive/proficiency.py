"""
Proficiency Calculator.

Proficiency is a 0-100 estimate of how well the user knows a concept,
computed lazily from a node's counters and the moment of the query.

Formula (additive weighted sum):
    frequency   = min(1, interactions / saturation)
    successRate = (successes + 1) / (interactions + 2)      Laplace prior 0.5
    recency     = exp(-lambda * days_since_last_interaction)
    complexity  = 1 - complexity_weight
    proficiency = 100 * clamp(w_f*f + w_s*s + w_r*r + w_c*c, 0, 1)

Nothing is cached: reads always reflect the exact query time, and a new
event only touches the counters of the node it references.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from src.graph.errors import ConfigurationError
from src.graph.models import KnowledgeNode

if TYPE_CHECKING:
    from config import Settings


class ProficiencyLevel(str, Enum):
    """Reporting bands for a 0-100 proficiency score."""

    NOVICE = "novice"  # < 40
    DEVELOPING = "developing"  # 40-69
    PROFICIENT = "proficient"  # 70-89
    MASTERED = "mastered"  # 90-100

    @classmethod
    def from_score(cls, score: float) -> ProficiencyLevel:
        if score < 40:
            return cls.NOVICE
        elif score < 70:
            return cls.DEVELOPING
        elif score < 90:
            return cls.PROFICIENT
        else:
            return cls.MASTERED

    @property
    def color(self) -> str:
        """Rich color for CLI display."""
        return {
            ProficiencyLevel.NOVICE: "red",
            ProficiencyLevel.DEVELOPING: "yellow",
            ProficiencyLevel.PROFICIENT: "cyan",
            ProficiencyLevel.MASTERED: "green",
        }[self]


@dataclass(frozen=True)
class ProficiencyConfig:
    """Weights and constants for the proficiency formula."""

    frequency_weight: float = 0.3
    success_weight: float = 0.4
    recency_weight: float = 0.2
    complexity_weight: float = 0.1
    decay_lambda: float = 0.05
    frequency_saturation: int = 20

    def __post_init__(self) -> None:
        weights = (
            self.frequency_weight,
            self.success_weight,
            self.recency_weight,
            self.complexity_weight,
        )
        if any(w < 0 for w in weights):
            raise ConfigurationError("Proficiency weights must be non-negative")
        if self.decay_lambda <= 0:
            raise ConfigurationError("decay_lambda must be positive")
        if self.frequency_saturation <= 0:
            raise ConfigurationError("frequency_saturation must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> ProficiencyConfig:
        weights = settings.get_proficiency_weights()
        return cls(
            frequency_weight=weights["frequency"],
            success_weight=weights["success"],
            recency_weight=weights["recency"],
            complexity_weight=weights["complexity"],
            decay_lambda=settings.proficiency_decay_lambda,
            frequency_saturation=settings.proficiency_frequency_saturation,
        )


@dataclass(frozen=True)
class ProficiencyBreakdown:
    """The four normalized terms and the resulting score."""

    frequency: float
    success_rate: float
    recency: float
    complexity: float
    score: float

    @property
    def level(self) -> ProficiencyLevel:
        return ProficiencyLevel.from_score(self.score)

    def to_dict(self) -> dict[str, float]:
        return {
            "frequency": round(self.frequency, 3),
            "success_rate": round(self.success_rate, 3),
            "recency": round(self.recency, 3),
            "complexity": round(self.complexity, 3),
            "score": round(self.score, 2),
        }


class ProficiencyCalculator:
    """
    Pure scoring function over a node's counters plus the current time.

    Usage:
        calculator = ProficiencyCalculator()
        score = calculator.score(node, now)
    """

    def __init__(self, config: ProficiencyConfig | None = None):
        self.config = config or ProficiencyConfig()

    def frequency(self, interaction_count: int) -> float:
        return min(1.0, max(0, interaction_count) / self.config.frequency_saturation)

    @staticmethod
    def success_rate(success_count: int, interaction_count: int) -> float:
        return (success_count + 1) / (interaction_count + 2)

    def recency(self, days_since: float | None) -> float:
        """
        Exponential recency decay, strictly decreasing in days_since.

        A node that was never interacted with has no recency at all.
        """
        if days_since is None:
            return 0.0
        return math.exp(-self.config.decay_lambda * max(0.0, days_since))

    @staticmethod
    def complexity(complexity_weight: float) -> float:
        return 1.0 - min(1.0, max(0.0, complexity_weight))

    def breakdown(self, node: KnowledgeNode, now: datetime) -> ProficiencyBreakdown:
        cfg = self.config
        frequency = self.frequency(node.interaction_count)
        success_rate = self.success_rate(node.success_count, node.interaction_count)
        recency = self.recency(node.days_since_interaction(now))
        complexity = self.complexity(node.complexity_weight)

        combined = (
            cfg.frequency_weight * frequency
            + cfg.success_weight * success_rate
            + cfg.recency_weight * recency
            + cfg.complexity_weight * complexity
        )
        score = 100.0 * min(1.0, max(0.0, combined))

        return ProficiencyBreakdown(
            frequency=frequency,
            success_rate=success_rate,
            recency=recency,
            complexity=complexity,
            score=score,
        )

    def score(self, node: KnowledgeNode, now: datetime) -> float:
        return self.breakdown(node, now).score
