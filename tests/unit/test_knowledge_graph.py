"""
Unit tests for KnowledgeGraphStore.

Covers node lifecycle, interaction counting, dependency edges and the
read-only projections (weak areas, proficiency map, graph views).
"""

import threading
from datetime import timedelta

import pytest

from src.graph.errors import ConfigurationError, NotFoundError
from src.graph.knowledge_graph import KnowledgeGraphStore
from src.graph.models import NodeKind, Outcome


class TestUpsertNode:
    def test_creates_node_with_defaults(self, store):
        node = store.upsert_node("src/app.py", "file", "app.py")

        assert node.kind is NodeKind.FILE
        assert node.name == "app.py"
        assert node.interaction_count == 0
        assert node.last_interaction is None
        assert node.complexity_weight == 0.5

    def test_unknown_kind_stored_as_unclassified(self, store):
        node = store.upsert_node("weird", "macro")
        assert node.kind is NodeKind.UNCLASSIFIED

    def test_identity_fields_never_change(self, store):
        store.upsert_node("useState", "function", "useState")
        node = store.upsert_node("useState", "class", "renamed")

        assert node.kind is NodeKind.FUNCTION
        assert node.name == "useState"

    def test_complexity_weight_applied(self, store):
        store.upsert_node("reducer", "pattern")
        node = store.upsert_node("reducer", complexity_weight=0.9)
        assert node.complexity_weight == 0.9

    def test_complexity_out_of_range(self, store):
        with pytest.raises(ConfigurationError):
            store.upsert_node("reducer", complexity_weight=1.5)
        assert "reducer" not in store

    def test_returned_node_is_a_copy(self, store):
        node = store.upsert_node("a")
        node.interaction_count = 99
        assert store.get_node("a").interaction_count == 0


class TestRecordInteraction:
    def test_counts_outcomes(self, store, now):
        store.record_interaction("a", Outcome.SUCCESS, now)
        store.record_interaction("a", Outcome.FAILURE, now)
        store.record_interaction("a", Outcome.NEUTRAL, now)

        node = store.get_node("a")
        assert node.interaction_count == 3
        assert node.success_count == 1
        assert node.failure_count == 1
        assert node.success_count + node.failure_count <= node.interaction_count

    def test_creates_missing_node(self, store, now):
        store.record_interaction("new.py", "success", now, kind="file", name="new.py")
        assert store.get_node("new.py").kind is NodeKind.FILE

    def test_out_of_order_event_keeps_latest_timestamp(self, store, now):
        store.record_interaction("a", Outcome.SUCCESS, now)
        store.record_interaction("a", Outcome.SUCCESS, now - timedelta(minutes=5))

        node = store.get_node("a")
        assert node.interaction_count == 2
        assert node.last_interaction == now

    def test_replayed_event_is_ignored(self, store, now):
        assert store.record_interaction("a", Outcome.FAILURE, now, event_id="e-1") is True
        assert store.record_interaction("a", Outcome.FAILURE, now, event_id="e-1") is False

        node = store.get_node("a")
        assert node.interaction_count == 1
        assert node.failure_count == 1

    def test_same_event_counts_once_per_node(self, store, now):
        store.record_interaction("a", Outcome.SUCCESS, now, event_id="e-1")
        assert store.record_interaction("b", Outcome.SUCCESS, now, event_id="e-1") is True

    def test_dedup_memory_is_bounded(self, now):
        store = KnowledgeGraphStore(dedup_memory_size=2)
        for event_id in ("e-1", "e-2", "e-3"):
            store.record_interaction("a", Outcome.SUCCESS, now, event_id=event_id)
        # e-1 has been forgotten
        assert store.record_interaction("a", Outcome.SUCCESS, now, event_id="e-1") is True

    def test_concurrent_writers_lose_nothing(self, store, now):
        def writer():
            for _ in range(200):
                store.record_interaction("shared", Outcome.SUCCESS, now)

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get_node("shared").interaction_count == 800


class TestDependencies:
    def test_add_dependency_is_idempotent(self, store):
        store.upsert_node("a")
        store.upsert_node("b")

        assert store.add_dependency("a", "b") is True
        assert store.add_dependency("a", "b") is False
        assert store.edges() == [("a", "b")]
        assert store.dependents("b") == frozenset({"a"})

    def test_unknown_endpoint_raises(self, store):
        store.upsert_node("a")
        with pytest.raises(NotFoundError) as exc_info:
            store.add_dependency("a", "ghost")
        assert exc_info.value.node_id == "ghost"

    def test_not_found_is_a_key_error(self, store):
        with pytest.raises(KeyError):
            store.get_node("ghost")

    def test_cycles_and_self_loops_are_traversable(self, store):
        for node_id in ("a", "b", "c"):
            store.upsert_node(node_id)
        store.add_dependency("a", "b")
        store.add_dependency("b", "c")
        store.add_dependency("c", "a")
        store.add_dependency("a", "a")

        assert store.related("a") == {"b", "c"}
        assert store.related("a", depth=1) == {"b", "c"}

    def test_related_respects_depth(self, store):
        for node_id in ("a", "b", "c"):
            store.upsert_node(node_id)
        store.add_dependency("a", "b")
        store.add_dependency("b", "c")

        assert store.related("a", depth=1) == {"b"}
        assert store.related("a") == {"b", "c"}

    def test_share_dependency(self, store):
        for node_id in ("a", "b", "lib", "c"):
            store.upsert_node(node_id)
        store.add_dependency("a", "lib")
        store.add_dependency("b", "lib")

        assert store.share_dependency("a", "b") is True
        assert store.share_dependency("a", "lib") is True
        assert store.share_dependency("a", "c") is False


class TestQueries:
    def test_weak_areas_sorted_ascending(self, store, now):
        store.record_interaction("strong", Outcome.SUCCESS, now)
        store.record_interaction("strong", Outcome.SUCCESS, now)
        store.record_interaction("weak", Outcome.FAILURE, now)
        store.record_interaction("weak", Outcome.FAILURE, now)

        areas = store.query_weak_areas(max_age_days=7, limit=10, now=now)

        assert [area.node_id for area in areas] == ["weak", "strong"]
        assert areas[0].proficiency < areas[1].proficiency

    def test_weak_areas_excludes_old_and_untouched(self, store, now):
        store.upsert_node("never")
        store.record_interaction("old", Outcome.FAILURE, now - timedelta(days=30))
        store.record_interaction("recent", Outcome.FAILURE, now)

        areas = store.query_weak_areas(max_age_days=7, limit=10, now=now)
        assert [area.node_id for area in areas] == ["recent"]

    def test_weak_areas_limit(self, store, now):
        for i in range(5):
            store.record_interaction(f"n{i}", Outcome.FAILURE, now)
        assert len(store.query_weak_areas(7, 2, now)) == 2
        assert store.query_weak_areas(7, 0, now) == []

    def test_proficiency_map_covers_every_node(self, store, now):
        store.upsert_node("a")
        store.record_interaction("b", Outcome.SUCCESS, now)

        scores = store.proficiency_map(now)
        assert set(scores) == {"a", "b"}
        assert all(0.0 <= value <= 100.0 for value in scores.values())

    def test_proficiency_or_zero_for_unknown(self, store, now):
        assert store.proficiency_or_zero("ghost", now) == 0.0

    def test_knows_symbol_by_id_or_name(self, store):
        store.upsert_node("src/hooks.ts::useFetch", "function", "useFetch")
        assert store.knows_symbol("useFetch")
        assert store.knows_symbol("src/hooks.ts::useFetch")
        assert not store.knows_symbol("useMemo")

    def test_view_for_is_scoped(self, store):
        for node_id in ("a", "b", "c"):
            store.upsert_node(node_id)
        store.add_dependency("a", "b")

        view = store.view_for(["a", "ghost"], symbols=["c", "nope"])
        assert view.dependencies == {"a": frozenset({"b"})}
        assert view.is_known("c")
        assert not view.is_known("nope")


class TestStateRoundTrip:
    def test_load_state_drops_dangling_edges(self, store):
        store.load_state(
            {
                "profile_id": "test-user",
                "nodes": [
                    {"id": "a", "kind": "file", "name": "a", "dependencies": ["b", "ghost"]},
                    {"id": "b", "kind": "bogus", "name": "b", "dependencies": []},
                ],
            }
        )

        assert store.edges() == [("a", "b")]
        assert store.get_node("b").kind is NodeKind.UNCLASSIFIED

    def test_export_then_load_preserves_counters(self, store, now):
        store.record_interaction("a", Outcome.FAILURE, now)
        store.upsert_node("b")
        store.add_dependency("a", "b")

        restored = KnowledgeGraphStore(profile_id="test-user")
        restored.load_state(store.export_state())

        node = restored.get_node("a")
        assert node.failure_count == 1
        assert node.last_interaction == now
        assert restored.edges() == [("a", "b")]
