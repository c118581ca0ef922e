"""
Knowledge Graph Store.

One instance per user profile. The store exclusively owns every
KnowledgeNode and every dependency edge; callers only ever receive copies
or derived projections (proficiency maps, weak-area lists).

Storage layout:
- Nodes live in a dict keyed by identifier (arena + index).
- Outgoing edges are kept on the node, incoming edges in a reverse index,
  so a node and every edge touching it can be removed together.
- Edges are identifier-keyed; cycles and self-loops are legal and every
  traversal carries a visited set.

Concurrency:
- All mutations take the store lock, so writers never interleave.
- Readers copy what they need under the same lock and therefore never see
  a half-applied batch or a partially pruned graph.
- A mutation that arrives while a prune sweep holds the lock simply waits
  for the sweep to finish and then proceeds; it is never dropped.
"""

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from loguru import logger

from src.adaptive.proficiency import ProficiencyCalculator
from src.graph.errors import ConfigurationError, NotFoundError
from src.graph.models import (
    GraphView,
    KnowledgeNode,
    NodeKind,
    Outcome,
    PruneAuditRecord,
    WeakArea,
    ensure_utc,
    parse_timestamp,
    utcnow,
)


class KnowledgeGraphStore:
    """
    Incremental per-user concept graph.

    Usage:
        store = KnowledgeGraphStore(profile_id="alice")
        store.upsert_node("src/app.py", "file", "app.py")
        store.record_interaction("src/app.py", Outcome.SUCCESS, now, event_id="e-1")
        weak = store.query_weak_areas(max_age_days=7, limit=5)
    """

    def __init__(
        self,
        profile_id: str = "default",
        calculator: ProficiencyCalculator | None = None,
        dedup_memory_size: int = 50_000,
        default_complexity: float = 0.5,
    ):
        self.profile_id = profile_id
        self.calculator = calculator or ProficiencyCalculator()
        self.default_complexity = default_complexity

        self._nodes: dict[str, KnowledgeNode] = {}
        self._dependents: dict[str, set[str]] = {}
        self._names: dict[str, set[str]] = {}

        self._seen_events: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._dedup_memory_size = dedup_memory_size

        self._lock = threading.RLock()

    # =========================================================================
    # Locking
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[KnowledgeGraphStore]:
        """
        Hold the writer lock across several operations.

        The batch processor applies a whole batch inside one transaction so
        readers observe either none or all of it.
        """
        with self._lock:
            yield self

    # =========================================================================
    # Mutations
    # =========================================================================

    def upsert_node(
        self,
        node_id: str,
        kind: NodeKind | str | None = None,
        name: str | None = None,
        complexity_weight: float | None = None,
    ) -> KnowledgeNode:
        """
        Create the node if absent; identity fields of an existing node never change.

        A complexity weight supplied by the codebase analyzer is applied to
        new and existing nodes alike.
        """
        if complexity_weight is not None:
            complexity_weight = self._validate_complexity(complexity_weight)
        with self._lock:
            node = self._ensure_node(node_id, kind, name)
            if complexity_weight is not None:
                node.complexity_weight = complexity_weight
            return node.copy()

    def record_interaction(
        self,
        node_id: str,
        outcome: Outcome | str,
        timestamp: datetime,
        event_id: str | None = None,
        kind: NodeKind | str | None = None,
        name: str | None = None,
    ) -> bool:
        """
        Count one interaction against a node, creating the node if needed.

        Out-of-order timestamps are counted but never move last_interaction
        backwards. Replays of the same (node_id, event_id) are ignored.

        Returns:
            False if the event was a replay and nothing changed
        """
        outcome = Outcome(outcome)
        timestamp = ensure_utc(timestamp)

        with self._lock:
            if event_id is not None:
                key = (node_id, event_id)
                if key in self._seen_events:
                    self._seen_events.move_to_end(key)
                    logger.debug("Duplicate event {} for node {} ignored", event_id, node_id)
                    return False
                self._remember(key)

            node = self._ensure_node(node_id, kind, name)
            node.interaction_count += 1
            if outcome is Outcome.SUCCESS:
                node.success_count += 1
            elif outcome is Outcome.FAILURE:
                node.failure_count += 1

            if node.last_interaction is None or timestamp > node.last_interaction:
                node.last_interaction = timestamp
            else:
                logger.debug(
                    "Out-of-order event for {} ({} < {}); counted without moving timestamp",
                    node_id,
                    timestamp.isoformat(),
                    node.last_interaction.isoformat(),
                )
            return True

    def add_dependency(self, from_id: str, to_id: str) -> bool:
        """
        Insert a directed edge. Idempotent; self-loops and cycles are allowed.

        Returns:
            True if the edge was new
        """
        with self._lock:
            source = self._require(from_id)
            self._require(to_id)
            if to_id in source.dependencies:
                return False
            source.dependencies.add(to_id)
            self._dependents.setdefault(to_id, set()).add(from_id)
            return True

    def prune_candidates(
        self,
        now: datetime,
        min_proficiency: float,
        max_age_days: float,
    ) -> list[PruneAuditRecord]:
        """Audit records for the nodes prune_stale would remove, without removing them."""
        now = ensure_utc(now)
        with self._lock:
            doomed: list[PruneAuditRecord] = []
            for node in self._nodes.values():
                age = node.days_since_interaction(now)
                if age is not None and age <= max_age_days:
                    continue
                score = self.calculator.score(node, now)
                if score < min_proficiency:
                    doomed.append(
                        PruneAuditRecord(
                            node_id=node.id,
                            name=node.name,
                            kind=node.kind,
                            final_proficiency=score,
                            days_since_interaction=age,
                            pruned_at=now,
                        )
                    )
            return doomed

    def prune_stale(
        self,
        now: datetime,
        min_proficiency: float,
        max_age_days: float,
    ) -> list[PruneAuditRecord]:
        """
        Atomically remove nodes that are both weak and stale.

        A node goes when its proficiency is below min_proficiency AND its
        last interaction is older than max_age_days. Every edge touching a
        removed node is deleted with it.

        Returns:
            One audit record per removed node
        """
        with self._lock:
            doomed = self.prune_candidates(now, min_proficiency, max_age_days)
            for record in doomed:
                self._remove_node(record.node_id)

            if doomed:
                logger.info(
                    "Pruned {} stale node(s) from profile {}", len(doomed), self.profile_id
                )
            return doomed

    # =========================================================================
    # Queries
    # =========================================================================

    def get_node(self, node_id: str) -> KnowledgeNode:
        with self._lock:
            return self._require(node_id).copy()

    def has_node(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._nodes

    def __contains__(self, node_id: object) -> bool:
        return isinstance(node_id, str) and self.has_node(node_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def node_ids(self) -> list[str]:
        with self._lock:
            return list(self._nodes)

    def edges(self) -> list[tuple[str, str]]:
        with self._lock:
            return [
                (node.id, target)
                for node in self._nodes.values()
                for target in sorted(node.dependencies)
            ]

    def dependencies(self, node_id: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._require(node_id).dependencies)

    def dependents(self, node_id: str) -> frozenset[str]:
        with self._lock:
            self._require(node_id)
            return frozenset(self._dependents.get(node_id, ()))

    def related(self, node_id: str, depth: int | None = None) -> set[str]:
        """
        All nodes reachable from node_id over edges in either direction.

        Args:
            node_id: Starting node
            depth: Maximum hop count (None for unbounded)
        """
        with self._lock:
            self._require(node_id)
            visited = {node_id}
            frontier = deque([(node_id, 0)])
            while frontier:
                current, hops = frontier.popleft()
                if depth is not None and hops >= depth:
                    continue
                neighbours = self._nodes[current].dependencies | self._dependents.get(current, set())
                for neighbour in neighbours:
                    if neighbour not in visited:
                        visited.add(neighbour)
                        frontier.append((neighbour, hops + 1))
            visited.discard(node_id)
            return visited

    def share_dependency(self, a: str, b: str) -> bool:
        """True if a and b are joined by an edge or depend on a common node."""
        return self.view_for([a, b]).related(a, b)

    def knows_symbol(self, symbol: str) -> bool:
        """Whether a search term names a node already recorded in the graph."""
        with self._lock:
            return symbol in self._nodes or symbol in self._names

    def view_for(self, node_ids: list[str] | set[str], symbols: list[str] | set[str] = ()) -> GraphView:
        with self._lock:
            dependencies = {
                node_id: frozenset(self._nodes[node_id].dependencies)
                for node_id in node_ids
                if node_id in self._nodes
            }
            known = frozenset(symbol for symbol in symbols if self.knows_symbol(symbol))
            return GraphView(dependencies=dependencies, known_symbols=known)

    def proficiency(self, node_id: str, now: datetime | None = None) -> float:
        with self._lock:
            return self.calculator.score(self._require(node_id), ensure_utc(now or utcnow()))

    def proficiency_or_zero(self, node_id: str, now: datetime | None = None) -> float:
        """Proficiency for ranking purposes; unknown concepts count as 0."""
        try:
            return self.proficiency(node_id, now)
        except NotFoundError:
            return 0.0

    def proficiency_map(self, now: datetime | None = None) -> dict[str, float]:
        now = ensure_utc(now or utcnow())
        with self._lock:
            return {
                node_id: self.calculator.score(node, now)
                for node_id, node in self._nodes.items()
            }

    def query_weak_areas(
        self,
        max_age_days: float,
        limit: int,
        now: datetime | None = None,
    ) -> list[WeakArea]:
        """
        Recently touched nodes ordered by ascending proficiency.

        Args:
            max_age_days: Only nodes interacted with within this many days
            limit: Maximum number of entries
            now: Query time (default: now)
        """
        now = ensure_utc(now or utcnow())
        with self._lock:
            candidates = []
            for node in self._nodes.values():
                age = node.days_since_interaction(now)
                if age is None or age > max_age_days:
                    continue
                candidates.append(
                    WeakArea(
                        node_id=node.id,
                        name=node.name,
                        kind=node.kind,
                        proficiency=self.calculator.score(node, now),
                        last_interaction=node.last_interaction,
                    )
                )

        candidates.sort(key=lambda area: (area.proficiency, area.node_id))
        return candidates[: max(0, limit)]

    # =========================================================================
    # Persistence Support
    # =========================================================================

    def export_state(self) -> dict[str, Any]:
        """Serializable copy of all nodes and edges."""
        with self._lock:
            return {
                "profile_id": self.profile_id,
                "nodes": [node.to_dict() for node in self._nodes.values()],
            }

    def load_state(self, state: dict[str, Any]) -> None:
        """
        Replace the entire graph during a persistence restore.

        Edges whose target is missing from the snapshot are dropped so the
        restored graph satisfies referential integrity.
        """
        nodes: dict[str, KnowledgeNode] = {}
        for raw in state.get("nodes", []):
            kind = NodeKind.lookup(raw.get("kind")) or NodeKind.UNCLASSIFIED
            last = raw.get("last_interaction")
            nodes[raw["id"]] = KnowledgeNode(
                id=raw["id"],
                kind=kind,
                name=raw.get("name") or raw["id"],
                interaction_count=int(raw.get("interaction_count", 0)),
                success_count=int(raw.get("success_count", 0)),
                failure_count=int(raw.get("failure_count", 0)),
                last_interaction=parse_timestamp(last) if last else None,
                complexity_weight=float(raw.get("complexity_weight", self.default_complexity)),
                dependencies=set(raw.get("dependencies", [])),
            )

        dependents: dict[str, set[str]] = {}
        names: dict[str, set[str]] = {}
        for node in nodes.values():
            dangling = {target for target in node.dependencies if target not in nodes}
            if dangling:
                logger.warning("Dropping {} dangling edge(s) from {}", len(dangling), node.id)
                node.dependencies -= dangling
            for target in node.dependencies:
                dependents.setdefault(target, set()).add(node.id)
            names.setdefault(node.name, set()).add(node.id)

        with self._lock:
            self._nodes = nodes
            self._dependents = dependents
            self._names = names
            self._seen_events.clear()

    # =========================================================================
    # Internal helpers
    # =========================================================================

    def _require(self, node_id: str) -> KnowledgeNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise NotFoundError(node_id)
        return node

    def _ensure_node(
        self,
        node_id: str,
        kind: NodeKind | str | None,
        name: str | None,
    ) -> KnowledgeNode:
        node = self._nodes.get(node_id)
        if node is not None:
            return node

        resolved = NodeKind.lookup(kind)
        if resolved is None:
            resolved = NodeKind.UNCLASSIFIED
            if kind is not None:
                logger.warning(
                    "Anomaly: unknown concept kind {!r} for {}; stored as unclassified",
                    kind,
                    node_id,
                )

        node = KnowledgeNode(
            id=node_id,
            kind=resolved,
            name=name or node_id,
            complexity_weight=self.default_complexity,
        )
        self._nodes[node_id] = node
        self._names.setdefault(node.name, set()).add(node_id)
        return node

    def _remove_node(self, node_id: str) -> None:
        node = self._nodes.pop(node_id)

        for target in node.dependencies:
            incoming = self._dependents.get(target)
            if incoming is not None:
                incoming.discard(node_id)
        for source in self._dependents.pop(node_id, set()):
            if source in self._nodes:
                self._nodes[source].dependencies.discard(node_id)

        holders = self._names.get(node.name)
        if holders is not None:
            holders.discard(node_id)
            if not holders:
                del self._names[node.name]

    def _remember(self, key: tuple[str, str]) -> None:
        self._seen_events[key] = None
        while len(self._seen_events) > self._dedup_memory_size:
            self._seen_events.popitem(last=False)

    @staticmethod
    def _validate_complexity(value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"complexity_weight must be in [0, 1], got {value}")
        return float(value)
