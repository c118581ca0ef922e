"""
Mental Model Engine.

Per-user orchestrator for the event pipeline:

    submit(event) -> EventBuffer (bounded, drop-oldest, never blocks)
        -> fixed-window batches, one at a time
        -> KnowledgeGraphStore counters + rolling EventWindow
        -> Signal Detectors (parallel, time-bounded)
        -> StruggleAggregator (join barrier)
        -> DecisionOutbox -> Learning Interface (asynchronous, expiring)

Graph Maintenance shares the batch lock and runs between batches.
Every component receives the profile's store by reference; there is no
global graph.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from config import Settings, get_settings
from src.adaptive.proficiency import ProficiencyCalculator, ProficiencyConfig
from src.adaptive.struggle_aggregator import (
    AggregatorConfig,
    InterventionDecision,
    StruggleAggregator,
    StruggleAssessment,
)
from src.adaptive.struggle_detectors import (
    DETECTORS,
    DetectionContext,
    DetectorConfig,
    EventWindow,
    SignalType,
    run_detectors,
)
from src.delivery.decision_outbox import DecisionOutbox, LearningInterface
from src.delivery.event_buffer import EventBuffer
from src.graph.knowledge_graph import KnowledgeGraphStore
from src.graph.maintenance import GraphMaintenance, PruningConfig
from src.graph.models import (
    EventType,
    PruneAuditRecord,
    UserEvent,
    WeakArea,
    ensure_utc,
    utcnow,
)


@dataclass(frozen=True)
class EngineConfig:
    """Pipeline sizing and timing."""

    buffer_capacity: int = 10_000
    batch_window: timedelta = timedelta(milliseconds=100)
    detector_timeout: float = 0.5
    weak_area_max_age_days: float = 7.0
    dedup_memory_size: int = 50_000
    default_complexity: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        return cls(
            buffer_capacity=settings.buffer_capacity,
            batch_window=timedelta(milliseconds=settings.batch_window_ms),
            detector_timeout=settings.detector_timeout_seconds,
            weak_area_max_age_days=settings.weak_area_max_age_days,
            dedup_memory_size=settings.dedup_memory_size,
            default_complexity=settings.default_complexity_weight,
        )


@dataclass
class EngineMetrics:
    """Counters for observability surfaces."""

    events_processed: int = 0
    duplicate_interactions: int = 0
    batches: int = 0
    evaluations: int = 0
    interventions_raised: int = 0
    interventions_suppressed: int = 0
    detector_failures: int = 0
    detector_timeouts: int = 0
    detectors_busy: int = 0


class EventTimeClock:
    """
    Clock that follows the newest event timestamp seen.

    Used for replaying recorded logs, where wall-clock time would make every
    decision look stale.
    """

    def __init__(self, start: datetime | None = None):
        self._now = ensure_utc(start) if start else None
        self._lock = threading.Lock()

    def observe(self, timestamp: datetime) -> None:
        timestamp = ensure_utc(timestamp)
        with self._lock:
            if self._now is None or timestamp > self._now:
                self._now = timestamp

    def __call__(self) -> datetime:
        with self._lock:
            return self._now or utcnow()


class MentalModelEngine:
    """
    Converts a user's event stream into proficiency estimates and
    intervention decisions.

    Usage:
        engine = MentalModelEngine("alice", learning_interface=panel)
        engine.start()              # background batch loop
        engine.submit(event)        # from the interactive path
        ...
        engine.stop()

    Or drive it synchronously (replays, tests):
        engine.submit(event)
        assessments = engine.process_pending()
    """

    def __init__(
        self,
        profile_id: str = "default",
        store: KnowledgeGraphStore | None = None,
        settings: Settings | None = None,
        learning_interface: LearningInterface | None = None,
        clock: Callable[[], datetime] | None = None,
        engine_config: EngineConfig | None = None,
        detector_config: DetectorConfig | None = None,
        aggregator_config: AggregatorConfig | None = None,
        pruning_config: PruningConfig | None = None,
        asynchronous_delivery: bool = True,
    ):
        settings = settings or get_settings()
        self.profile_id = profile_id
        self.config = engine_config or EngineConfig.from_settings(settings)
        self.detector_config = detector_config or DetectorConfig.from_settings(settings)
        self.clock = clock or utcnow

        self.store = store or KnowledgeGraphStore(
            profile_id=profile_id,
            calculator=ProficiencyCalculator(ProficiencyConfig.from_settings(settings)),
            dedup_memory_size=self.config.dedup_memory_size,
            default_complexity=self.config.default_complexity,
        )
        self.buffer = EventBuffer(self.config.buffer_capacity)
        self.window = EventWindow(self.detector_config.lookback, self.detector_config.max_events)
        self.aggregator = StruggleAggregator(aggregator_config or AggregatorConfig.from_settings(settings))

        self._batch_lock = threading.RLock()
        self.maintenance = GraphMaintenance(
            self.store,
            pruning_config or PruningConfig.from_settings(settings),
            writer_lock=self._batch_lock,
        )
        self.outbox = DecisionOutbox(
            learning_interface,
            clock=self.clock,
            asynchronous=asynchronous_delivery,
        )
        self._detector_pool = ThreadPoolExecutor(
            max_workers=len(DETECTORS),
            thread_name_prefix="struggle-detector",
        )
        self._in_flight: dict[SignalType, Future] = {}

        self.metrics = EngineMetrics()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    # =========================================================================
    # Producer side
    # =========================================================================

    def submit(self, event: UserEvent) -> None:
        """Queue an event; never blocks on graph processing."""
        self.buffer.put(event)

    def register_concept(
        self,
        node_id: str,
        kind: str | None = None,
        name: str | None = None,
        complexity_weight: float | None = None,
        dependencies: Sequence[str] = (),
    ) -> None:
        """
        Apply codebase-analyzer output (kind, complexity, dependency edges).

        Goes through the writer discipline like any batch.
        """
        with self._batch_lock, self.store.transaction():
            self.store.upsert_node(node_id, kind, name, complexity_weight)
            for target in dependencies:
                self.store.upsert_node(target)
                self.store.add_dependency(node_id, target)

    # =========================================================================
    # Batch processing
    # =========================================================================

    def process_batch(
        self,
        events: Sequence[UserEvent],
        now: datetime | None = None,
    ) -> StruggleAssessment | None:
        """
        Apply one batch and evaluate the struggle detectors.

        Returns:
            The aggregator's assessment, or None for an empty batch
        """
        if not events:
            return None

        ordered = sorted(events, key=lambda event: event.timestamp)
        if isinstance(self.clock, EventTimeClock):
            self.clock.observe(ordered[-1].timestamp)
        now = ensure_utc(now or self.clock())

        with self._batch_lock:
            with self.store.transaction():
                for event in ordered:
                    self._apply(event)
            self.window.extend(ordered)
            self.metrics.batches += 1
            self.metrics.events_processed += len(ordered)

            assessment = self._evaluate(now)
            if assessment.decision is not None:
                self.metrics.interventions_raised += 1
            elif assessment.suppressed:
                self.metrics.interventions_suppressed += 1

        if assessment.decision is not None:
            self.outbox.submit(assessment.decision)
        return assessment

    def process_pending(self, now: datetime | None = None) -> list[StruggleAssessment]:
        """Drain the buffer batch by batch until it is empty."""
        assessments = []
        while True:
            batch = self.buffer.drain(self.config.buffer_capacity)
            if not batch:
                break
            assessment = self.process_batch(batch, now)
            if assessment is not None:
                assessments.append(assessment)
            self.maintenance.run_if_due(now or self.clock())
        return assessments

    def _apply(self, event: UserEvent) -> None:
        for node_id in event.node_ids:
            recorded = self.store.record_interaction(
                node_id,
                event.outcome,
                event.timestamp,
                event_id=event.event_id,
                kind=event.node_kind,
                name=event.node_name if len(event.node_ids) == 1 else None,
            )
            if not recorded:
                self.metrics.duplicate_interactions += 1

    def _evaluate(self, now: datetime) -> StruggleAssessment:
        snapshot = self.window.snapshot(now)
        node_ids = {node_id for event in snapshot for node_id in event.node_ids}
        symbols = {
            event.query.strip()
            for event in snapshot
            if event.event_type is EventType.SEARCH and event.query
        }
        context = DetectionContext(now=now, graph=self.store.view_for(node_ids, symbols))

        result = run_detectors(
            snapshot,
            context,
            self.detector_config,
            executor=self._detector_pool,
            timeout=self.config.detector_timeout,
            in_flight=self._in_flight,
        )
        self.metrics.evaluations += 1
        self.metrics.detector_failures += len(result.failed)
        self.metrics.detector_timeouts += len(result.timed_out)
        self.metrics.detectors_busy += len(result.busy)

        return self.aggregator.evaluate(
            result.signals,
            lambda node_id: self.store.proficiency_or_zero(node_id, now),
            now,
        )

    # =========================================================================
    # Background loop
    # =========================================================================

    def start(self) -> None:
        """Start the fixed-window batch loop in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("Engine for {} already running", self.profile_id)
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"mme-batch-{self.profile_id}",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Mental model engine started for {} (window: {}ms)",
            self.profile_id,
            int(self.config.batch_window.total_seconds() * 1000),
        )

    def stop(self, drain: bool = True) -> None:
        """Stop the batch loop, optionally processing what is still buffered."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._thread = None
        if drain:
            self.process_pending()
        logger.info("Mental model engine stopped for {}", self.profile_id)

    def close(self) -> None:
        self.stop(drain=False)
        self._detector_pool.shutdown(wait=False, cancel_futures=True)
        self.outbox.shutdown()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        interval = self.config.batch_window.total_seconds()
        while not self._stop_event.wait(timeout=interval):
            try:
                batch = self.buffer.drain(self.config.buffer_capacity)
                if batch:
                    self.process_batch(batch)
                self.maintenance.run_if_due(self.clock())
            except Exception:
                logger.exception("Batch processing failed for profile {}", self.profile_id)

    # =========================================================================
    # Read-only projections
    # =========================================================================

    def run_maintenance(self, now: datetime | None = None) -> list[PruneAuditRecord]:
        return self.maintenance.sweep(now or self.clock())

    def proficiency_map(self, now: datetime | None = None) -> dict[str, float]:
        return self.store.proficiency_map(now or self.clock())

    def weak_areas(self, limit: int = 10, max_age_days: float | None = None) -> list[WeakArea]:
        return self.store.query_weak_areas(
            max_age_days if max_age_days is not None else self.config.weak_area_max_age_days,
            limit,
            self.clock(),
        )

    def audit_log(self, limit: int | None = None) -> list[PruneAuditRecord]:
        return self.maintenance.audit_log(limit)

    def take_decisions(self) -> list[InterventionDecision]:
        """Pull pending decisions when no Learning Interface is attached."""
        return self.outbox.take_pending(self.clock())

    def metrics_snapshot(self) -> dict[str, Any]:
        buffer = self.buffer.stats
        outbox = self.outbox.stats
        return {
            **asdict(self.metrics),
            "events_received": buffer.received,
            "events_dropped": buffer.dropped,
            "decisions_delivered": outbox.delivered,
            "decisions_expired": outbox.expired,
            "decisions_failed": outbox.failed,
            "nodes": len(self.store),
            "nodes_pruned": self.maintenance.total_pruned,
        }
