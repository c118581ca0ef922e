"""
Adaptive Cognition Layer.

Turns a user's interaction history into proficiency estimates and
struggle decisions.

Components:
- ProficiencyCalculator: 0-100 proficiency from node counters and query time
- Struggle detectors: five independent signals over a rolling event window
- StruggleAggregator: weighted score, threshold and intervention decision
"""
from src.adaptive.proficiency import (
    ProficiencyBreakdown,
    ProficiencyCalculator,
    ProficiencyConfig,
    ProficiencyLevel,
)
from src.adaptive.struggle_aggregator import (
    AggregatorConfig,
    InterventionDecision,
    InterventionFrequency,
    StruggleAggregator,
    StruggleAssessment,
)
from src.adaptive.struggle_detectors import (
    DETECTORS,
    DetectionContext,
    DetectionResult,
    DetectorConfig,
    EventWindow,
    SignalType,
    StruggleSignal,
    run_detectors,
)

__all__ = [
    # Proficiency
    "ProficiencyCalculator",
    "ProficiencyConfig",
    "ProficiencyBreakdown",
    "ProficiencyLevel",
    # Detection
    "SignalType",
    "StruggleSignal",
    "DetectorConfig",
    "DetectionContext",
    "DetectionResult",
    "EventWindow",
    "DETECTORS",
    "run_detectors",
    # Aggregation
    "AggregatorConfig",
    "InterventionFrequency",
    "InterventionDecision",
    "StruggleAggregator",
    "StruggleAssessment",
]
