"""
Integration tests for the MentalModelEngine pipeline.

Events go through the buffer, the graph, the detectors and the
aggregator, and decisions come out of the outbox. Most tests drive the
engine synchronously with an event-time clock so results do not depend
on wall-clock timing.
"""

import time
from datetime import timedelta

import pytest

from config import Settings
from src.delivery.decision_outbox import CollectingInterface
from src.delivery.engine import EngineConfig, EventTimeClock, MentalModelEngine
from src.delivery.ingestion import EventIngestor, SensitivePathFilter
from src.graph.maintenance import PruningConfig
from src.graph.models import EventType, UserEvent


@pytest.fixture
def collector():
    return CollectingInterface()


@pytest.fixture
def engine(collector):
    engine = MentalModelEngine(
        "alice",
        settings=Settings(),
        learning_interface=collector,
        clock=EventTimeClock(),
        pruning_config=PruningConfig(interval=timedelta(0)),
        asynchronous_delivery=False,
    )
    yield engine
    engine.close()


@pytest.fixture
def struggle_session(make_event):
    """Repeated edits, an error loop and a long pause, all on one reducer."""
    events = [
        make_event("edit", "reducer", seconds=s, event_id=f"edit-{s}") for s in range(0, 60, 10)
    ]
    for i, kind in enumerate(["error", "fix"] * 4 + ["error"]):
        events.append(
            make_event(
                kind,
                "reducer",
                seconds=60 + i * 10,
                diagnostic="TS2345",
                outcome="failure" if kind == "error" else "success",
                event_id=f"{kind}-{i}",
            )
        )
    events.append(
        make_event("dwell", "reducer", seconds=300, duration_seconds=60, event_id="dwell-1")
    )
    return events


class TestStrugglePipeline:
    def test_struggle_raises_one_intervention(self, engine, collector, struggle_session):
        for event in struggle_session:
            engine.submit(event)

        assessments = engine.process_pending()

        assert len(assessments) == 1
        assert assessments[0].score == pytest.approx(0.75)
        assert len(collector.decisions) == 1
        decision = collector.decisions[0]
        assert decision.node_id == "reducer"
        assert {s.value for s in decision.signal_types} == {
            "repeated_edits",
            "error_cycle",
            "long_pause",
        }

    def test_graph_reflects_events(self, engine, struggle_session):
        for event in struggle_session:
            engine.submit(event)
        engine.process_pending()

        node = engine.store.get_node("reducer")
        assert node.interaction_count == len(struggle_session)
        assert node.failure_count == 5
        assert node.success_count == 4
        assert [area.node_id for area in engine.weak_areas()] == ["reducer"]
        assert 0.0 < engine.proficiency_map()["reducer"] < 100.0

    def test_replayed_session_is_not_double_counted(self, engine, collector, struggle_session):
        for event in struggle_session:
            engine.submit(event)
        engine.process_pending()
        for event in struggle_session:
            engine.submit(event)
        engine.process_pending()

        metrics = engine.metrics_snapshot()
        assert engine.store.get_node("reducer").interaction_count == len(struggle_session)
        assert metrics["duplicate_interactions"] == len(struggle_session)
        assert metrics["interventions_raised"] == 1
        assert metrics["interventions_suppressed"] == 1
        assert len(collector.decisions) == 1

    def test_quiet_session_raises_nothing(self, engine, collector, make_event):
        for i in range(5):
            engine.submit(make_event("edit", "app.py", seconds=i * 120))
        engine.process_pending()

        assert collector.decisions == []
        assert engine.metrics_snapshot()["interventions_raised"] == 0


class TestEngineInputs:
    def test_sensitive_paths_never_reach_the_graph(self, engine, make_event):
        ingestor = EventIngestor(engine, SensitivePathFilter(["*.env"]))
        ingestor.ingest(make_event("edit", "config/.env", file_path="config/.env"))
        ingestor.ingest(make_event("edit", "app.py", file_path="src/app.py"))
        engine.process_pending()

        assert "config/.env" not in engine.store
        assert "app.py" in engine.store

    def test_overflow_drops_events_without_blocking(self, collector, make_event):
        engine = MentalModelEngine(
            "bob",
            settings=Settings(),
            learning_interface=collector,
            engine_config=EngineConfig(buffer_capacity=5),
            pruning_config=PruningConfig(interval=timedelta(0)),
            asynchronous_delivery=False,
        )
        try:
            for i in range(10):
                engine.submit(make_event("keystroke", "a.py", seconds=i))
            assert engine.metrics_snapshot()["events_dropped"] == 5
            engine.process_pending()
            assert engine.store.get_node("a.py").interaction_count == 5
        finally:
            engine.close()

    def test_naive_timestamp_does_not_break_later_batches(self, engine, now):
        naive = UserEvent(
            timestamp=now.replace(tzinfo=None),
            event_type=EventType.EDIT,
            node_ids=("a",),
        )
        assert naive.timestamp == now

        engine.submit(naive)
        assert engine.process_pending()[0].score == 0.0

        engine.submit(
            UserEvent(timestamp=now + timedelta(seconds=5), event_type=EventType.EDIT, node_ids=("b",))
        )
        engine.process_pending()

        assert engine.store.get_node("a").interaction_count == 1
        assert engine.store.get_node("b").interaction_count == 1
        assert len(engine.window) == 2

    def test_register_concept(self, engine):
        engine.register_concept("useFetch", "function", complexity_weight=0.8, dependencies=["axios"])

        assert engine.store.get_node("useFetch").complexity_weight == 0.8
        assert engine.store.edges() == [("useFetch", "axios")]

    def test_empty_batch(self, engine):
        assert engine.process_batch([]) is None
        assert engine.process_pending() == []


class TestEventTimeClock:
    def test_follows_newest_event(self, now):
        clock = EventTimeClock()
        clock.observe(now)
        clock.observe(now - timedelta(minutes=1))
        assert clock() == now


class TestBackgroundLoop:
    def test_background_loop_delivers(self, collector, struggle_session):
        engine = MentalModelEngine(
            "carol",
            settings=Settings(),
            learning_interface=collector,
            clock=EventTimeClock(),
            engine_config=EngineConfig(batch_window=timedelta(milliseconds=20)),
            pruning_config=PruningConfig(interval=timedelta(0)),
        )
        engine.start()
        try:
            assert engine.is_running
            for event in struggle_session:
                engine.submit(event)

            deadline = time.monotonic() + 5
            while not collector.decisions and time.monotonic() < deadline:
                time.sleep(0.02)
        finally:
            engine.stop()
            engine.close()

        assert not engine.is_running
        assert [decision.node_id for decision in collector.decisions] == ["reducer"]
