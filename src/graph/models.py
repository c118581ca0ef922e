"""
Data models for the per-user knowledge graph.

KnowledgeNode is the only mutable record and is owned by the
KnowledgeGraphStore; everything handed out to callers is a copy.
UserEvent is produced by the external collector and is immutable once
ingested.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so event and wall-clock times compare."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: datetime | str | float | int) -> datetime:
    """Parse ISO strings or epoch seconds into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


# =============================================================================
# Enums
# =============================================================================


class NodeKind(str, Enum):
    """Kind of code artifact a concept node tracks."""

    FILE = "file"
    FUNCTION = "function"
    CLASS = "class"
    PATTERN = "pattern"
    LIBRARY = "library"
    UNCLASSIFIED = "unclassified"  # Anything the collector could not classify

    @classmethod
    def lookup(cls, value: NodeKind | str | None) -> NodeKind | None:
        """Return the matching kind, or None if the value is not a known kind."""
        if isinstance(value, cls):
            return value
        if value is None:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class Outcome(str, Enum):
    """Result of a single interaction."""

    SUCCESS = "success"
    FAILURE = "failure"
    NEUTRAL = "neutral"


class EventType(str, Enum):
    """Normalized developer-interaction event types."""

    EDIT = "edit"
    KEYSTROKE = "keystroke"
    DWELL = "dwell"
    FILE_OPEN = "file_open"
    FILE_CLOSE = "file_close"
    FILE_SWITCH = "file_switch"
    ERROR = "error"
    FIX = "fix"
    SEARCH = "search"
    RUN = "run"
    TEST = "test"
    OTHER = "other"


# =============================================================================
# Graph Records
# =============================================================================


@dataclass
class KnowledgeNode:
    """
    One trackable concept: a file, function, class, pattern or library.

    Counters only ever grow through events; the store guarantees
    success_count + failure_count <= interaction_count.
    """

    id: str
    kind: NodeKind
    name: str
    interaction_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_interaction: datetime | None = None
    complexity_weight: float = 0.5
    dependencies: set[str] = field(default_factory=set)

    def copy(self) -> KnowledgeNode:
        """Detached copy safe to hand to readers."""
        return KnowledgeNode(
            id=self.id,
            kind=self.kind,
            name=self.name,
            interaction_count=self.interaction_count,
            success_count=self.success_count,
            failure_count=self.failure_count,
            last_interaction=self.last_interaction,
            complexity_weight=self.complexity_weight,
            dependencies=set(self.dependencies),
        )

    def days_since_interaction(self, now: datetime) -> float | None:
        """Fractional days since the last interaction (None if never touched)."""
        if self.last_interaction is None:
            return None
        delta = (ensure_utc(now) - self.last_interaction).total_seconds() / 86400
        return max(0.0, delta)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "interaction_count": self.interaction_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_interaction": self.last_interaction.isoformat() if self.last_interaction else None,
            "complexity_weight": self.complexity_weight,
            "dependencies": sorted(self.dependencies),
        }


@dataclass(frozen=True)
class WeakArea:
    """Read-only projection of a recently touched, low-proficiency node."""

    node_id: str
    name: str
    kind: NodeKind
    proficiency: float
    last_interaction: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "name": self.name,
            "kind": self.kind.value,
            "proficiency": round(self.proficiency, 2),
            "last_interaction": self.last_interaction.isoformat() if self.last_interaction else None,
        }


@dataclass(frozen=True)
class PruneAuditRecord:
    """Audit entry emitted for every node removed by a pruning sweep."""

    node_id: str
    name: str
    kind: NodeKind
    final_proficiency: float
    days_since_interaction: float | None
    pruned_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "name": self.name,
            "kind": self.kind.value,
            "final_proficiency": round(self.final_proficiency, 2),
            "days_since_interaction": (
                round(self.days_since_interaction, 2)
                if self.days_since_interaction is not None
                else None
            ),
            "pruned_at": self.pruned_at.isoformat(),
        }


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class UserEvent:
    """
    A normalized developer-interaction event.

    Attributes:
        timestamp: When the interaction happened (UTC)
        event_type: What kind of interaction it was
        node_ids: Concept identifiers the event is associated with
        outcome: success / failure / neutral
        duration_seconds: Dwell time or similar, when meaningful
        event_id: Collector-assigned identifier used for replay dedup
        node_kind: Kind hint for nodes first seen through this event
        node_name: Display name hint for nodes first seen through this event
        file_path: Source path the event happened in
        diagnostic: Error code / location key used to match error cycles
        query: Search text for search events
    """

    timestamp: datetime
    event_type: EventType
    node_ids: tuple[str, ...] = ()
    outcome: Outcome = Outcome.NEUTRAL
    duration_seconds: float | None = None
    event_id: str | None = None
    node_kind: str | None = None
    node_name: str | None = None
    file_path: str | None = None
    diagnostic: str | None = None
    query: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    @property
    def primary_node(self) -> str | None:
        return self.node_ids[0] if self.node_ids else None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserEvent:
        """Build an event from a collector record (JSON-compatible dict)."""
        raw_type = str(data.get("event_type") or data.get("type") or "other").lower()
        try:
            event_type = EventType(raw_type)
        except ValueError:
            event_type = EventType.OTHER

        raw_ids = data.get("node_ids")
        if raw_ids is None:
            raw_ids = [data["node_id"]] if data.get("node_id") else []
        elif isinstance(raw_ids, str):
            raw_ids = [raw_ids]

        raw_outcome = str(data.get("outcome") or "neutral").lower()
        try:
            outcome = Outcome(raw_outcome)
        except ValueError:
            outcome = Outcome.NEUTRAL

        duration = data.get("duration_seconds", data.get("duration"))

        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            event_type=event_type,
            node_ids=tuple(str(node_id) for node_id in raw_ids),
            outcome=outcome,
            duration_seconds=float(duration) if duration is not None else None,
            event_id=str(data["event_id"]) if data.get("event_id") is not None else None,
            node_kind=data.get("node_kind") or data.get("kind"),
            node_name=data.get("node_name") or data.get("name"),
            file_path=data.get("file_path"),
            diagnostic=data.get("diagnostic"),
            query=data.get("query"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "node_ids": list(self.node_ids),
            "outcome": self.outcome.value,
            "duration_seconds": self.duration_seconds,
            "event_id": self.event_id,
            "node_kind": self.node_kind,
            "node_name": self.node_name,
            "file_path": self.file_path,
            "diagnostic": self.diagnostic,
            "query": self.query,
        }


@dataclass(frozen=True)
class GraphView:
    """
    Immutable slice of graph structure handed to the struggle detectors.

    Only covers the nodes and symbols referenced by the current event
    window, so building it stays proportional to the window size.
    """

    dependencies: dict[str, frozenset[str]]
    known_symbols: frozenset[str]

    def is_known(self, symbol: str) -> bool:
        return symbol in self.known_symbols

    def related(self, a: str, b: str) -> bool:
        """Two nodes are related if an edge joins them or they share a dependency."""
        if a == b:
            return True
        deps_a = self.dependencies.get(a, frozenset())
        deps_b = self.dependencies.get(b, frozenset())
        return b in deps_a or a in deps_b or bool(deps_a & deps_b)

    def unrelated_subset(self, nodes: Iterable[str], limit: int | None = None) -> list[str]:
        """
        Greedy pairwise-unrelated subset in first-seen order, optionally capped.

        A candidate is related to some chosen node exactly when it is one of
        their dependencies, depends on one of them, or shares a dependency
        with one of them, so three running sets replace the pairwise checks.
        """
        chosen: list[str] = []
        chosen_set: set[str] = set()
        chosen_deps: set[str] = set()
        for node in nodes:
            if node in chosen_set or node in chosen_deps:
                continue
            deps = self.dependencies.get(node, frozenset())
            if not deps.isdisjoint(chosen_set) or not deps.isdisjoint(chosen_deps):
                continue
            chosen.append(node)
            chosen_set.add(node)
            chosen_deps.update(deps)
            if limit is not None and len(chosen) >= limit:
                break
        return chosen
