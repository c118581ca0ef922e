"""
Event pipeline and delivery.

Components:
- EventBuffer: bounded drop-oldest queue on the interactive path
- EventIngestor: normalization and sensitive-path exclusion
- MentalModelEngine: batch processor, detectors, aggregator, maintenance
- DecisionOutbox: asynchronous, expiring hand-off to the Learning Interface
- StateStore: SQLite persistence of profile graphs and the pruning audit
"""

from .decision_outbox import CollectingInterface, DecisionOutbox, LearningInterface
from .engine import EngineConfig, EventTimeClock, MentalModelEngine
from .event_buffer import BufferStats, EventBuffer
from .ingestion import EventIngestor, SensitivePathFilter, read_event_log
from .state_store import StateStore

__all__ = [
    # Pipeline
    "MentalModelEngine",
    "EngineConfig",
    "EventTimeClock",
    "EventBuffer",
    "BufferStats",
    # Ingestion
    "EventIngestor",
    "SensitivePathFilter",
    "read_event_log",
    # Delivery
    "DecisionOutbox",
    "LearningInterface",
    "CollectingInterface",
    # Persistence
    "StateStore",
]
