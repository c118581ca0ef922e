"""
Struggle Aggregator.

Combines the signals of one evaluation cycle into a single struggle score
and decides whether to raise an intervention:

    score = sum(weight[type] * confidence)   over signals present
    raise when score > base_threshold * multiplier[interventionFrequency]

The candidate node is the one implicated by the most signals; ties go to
the lowest current proficiency, then to the identifier so the choice is
reproducible.

Within a session a node that already had an intervention is only raised
again when the new score beats the previous one by ``repeat_margin``.
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from loguru import logger

from src.adaptive.struggle_detectors import SignalType, StruggleSignal
from src.graph.errors import ConfigurationError
from src.graph.models import ensure_utc

if TYPE_CHECKING:
    from config import Settings


class InterventionFrequency(str, Enum):
    """User preference for how eagerly interventions are raised."""

    MINIMAL = "minimal"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


DEFAULT_SIGNAL_WEIGHTS: dict[SignalType, float] = {
    SignalType.REPEATED_EDITS: 0.25,
    SignalType.ERROR_CYCLE: 0.30,
    SignalType.LONG_PAUSE: 0.20,
    SignalType.FREQUENT_SEARCH: 0.15,
    SignalType.CONTEXT_SWITCHING: 0.10,
}

DEFAULT_MULTIPLIERS: dict[InterventionFrequency, float] = {
    InterventionFrequency.MINIMAL: 1.3,
    InterventionFrequency.BALANCED: 1.0,
    InterventionFrequency.AGGRESSIVE: 0.7,
}


@dataclass(frozen=True)
class AggregatorConfig:
    """Signal weights, threshold and anti-spam settings."""

    weights: Mapping[SignalType, float] = field(default_factory=lambda: dict(DEFAULT_SIGNAL_WEIGHTS))
    base_threshold: float = 0.65
    frequency: InterventionFrequency = InterventionFrequency.BALANCED
    multipliers: Mapping[InterventionFrequency, float] = field(
        default_factory=lambda: dict(DEFAULT_MULTIPLIERS)
    )
    repeat_margin: float = 0.1
    validity: timedelta = timedelta(seconds=120)

    def __post_init__(self) -> None:
        if any(weight < 0 for weight in self.weights.values()):
            raise ConfigurationError("Signal weights must be non-negative")
        if self.base_threshold <= 0:
            raise ConfigurationError("base_threshold must be positive")
        missing = set(InterventionFrequency) - set(self.multipliers)
        if missing:
            raise ConfigurationError(
                f"Missing threshold multipliers for: {sorted(m.value for m in missing)}"
            )
        if any(value <= 0 for value in self.multipliers.values()):
            raise ConfigurationError("Threshold multipliers must be positive")

    @property
    def threshold(self) -> float:
        return self.base_threshold * self.multipliers[self.frequency]

    @classmethod
    def from_settings(cls, settings: Settings) -> AggregatorConfig:
        weights = {SignalType(name): value for name, value in settings.get_signal_weights().items()}
        multipliers = {
            InterventionFrequency(name): value
            for name, value in settings.get_intervention_multipliers().items()
        }
        return cls(
            weights=weights,
            base_threshold=settings.intervention_threshold,
            frequency=InterventionFrequency(settings.intervention_frequency),
            multipliers=multipliers,
            repeat_margin=settings.intervention_repeat_margin,
            validity=timedelta(seconds=settings.intervention_validity_seconds),
        )


@dataclass(frozen=True)
class InterventionDecision:
    """
    A decision to surface a blind spot.

    Consumed exactly once by the Learning Interface, or discarded when the
    validity horizon passes before delivery.
    """

    score: float
    node_id: str
    signals: tuple[StruggleSignal, ...]
    created_at: datetime
    expires_at: datetime
    decision_id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def signal_types(self) -> list[SignalType]:
        return [signal.signal_type for signal in self.signals]

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(now) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "score": round(self.score, 3),
            "node_id": self.node_id,
            "signals": [signal.to_dict() for signal in self.signals],
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class StruggleAssessment:
    """Full result of one aggregation cycle, raised or not."""

    score: float
    threshold: float
    signals: tuple[StruggleSignal, ...]
    candidate: str | None
    decision: InterventionDecision | None = None
    suppressed: bool = False

    @property
    def triggered(self) -> bool:
        return self.score > self.threshold


class StruggleAggregator:
    """
    Turns detector output into at most one intervention per cycle.

    Usage:
        aggregator = StruggleAggregator(AggregatorConfig())
        assessment = aggregator.evaluate(signals, store.proficiency_or_zero, now)
        if assessment.decision:
            outbox.submit(assessment.decision)
    """

    def __init__(self, config: AggregatorConfig | None = None):
        self.config = config or AggregatorConfig()
        self._raised: dict[str, float] = {}
        self._lock = threading.Lock()

    def score(self, signals: Sequence[StruggleSignal]) -> float:
        total = sum(
            self.config.weights.get(signal.signal_type, 0.0) * signal.confidence
            for signal in signals
        )
        return max(0.0, min(1.0, total))

    @staticmethod
    def select_candidate(
        signals: Sequence[StruggleSignal],
        proficiency: Callable[[str], float],
    ) -> str | None:
        """Most implicated node; ties by lowest proficiency, then identifier."""
        counts = Counter(node_id for signal in signals for node_id in signal.node_ids)
        if not counts:
            return None
        return min(counts, key=lambda node_id: (-counts[node_id], proficiency(node_id), node_id))

    def evaluate(
        self,
        signals: Sequence[StruggleSignal],
        proficiency: Callable[[str], float],
        now: datetime,
    ) -> StruggleAssessment:
        now = ensure_utc(now)
        signals = tuple(signals)
        score = self.score(signals)
        threshold = self.config.threshold
        candidate = self.select_candidate(signals, proficiency)

        if score <= threshold or candidate is None:
            return StruggleAssessment(score, threshold, signals, candidate)

        with self._lock:
            previous = self._raised.get(candidate)
            if previous is not None and score <= previous + self.config.repeat_margin:
                logger.debug(
                    "Suppressed repeat intervention for {} (score {:.2f}, previous {:.2f})",
                    candidate,
                    score,
                    previous,
                )
                return StruggleAssessment(score, threshold, signals, candidate, suppressed=True)
            self._raised[candidate] = score

        decision = InterventionDecision(
            score=score,
            node_id=candidate,
            signals=signals,
            created_at=now,
            expires_at=now + self.config.validity,
        )
        logger.info(
            "Intervention raised for {} (score {:.2f} > {:.2f}; signals: {})",
            candidate,
            score,
            threshold,
            ", ".join(s.signal_type.value for s in signals),
        )
        return StruggleAssessment(score, threshold, signals, candidate, decision=decision)

    def reset_session(self) -> None:
        """Forget previously raised interventions (new session)."""
        with self._lock:
            self._raised.clear()

    @property
    def raised(self) -> dict[str, float]:
        with self._lock:
            return dict(self._raised)
