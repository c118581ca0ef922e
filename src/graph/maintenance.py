"""
Graph Maintenance.

Periodic decay/pruning sweep, independent of the per-event path. A sweep
is a writer: it takes the same batch lock the event processor holds, so it
only ever runs between batches, and the store applies the removal under
its own lock so readers never see a partially pruned graph.

Every removed node yields an audit record (id, final proficiency, age)
kept in a bounded in-memory log and written to the logger.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger

from src.graph.knowledge_graph import KnowledgeGraphStore
from src.graph.models import PruneAuditRecord, ensure_utc, utcnow

if TYPE_CHECKING:
    from config import Settings


@dataclass(frozen=True)
class PruningConfig:
    """Thresholds and cadence for maintenance sweeps."""

    min_proficiency: float = 10.0
    max_age_days: float = 30.0
    interval: timedelta = timedelta(hours=1)
    audit_log_size: int = 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> PruningConfig:
        pruning = settings.get_pruning_config()
        return cls(
            min_proficiency=float(pruning["min_proficiency"]),
            max_age_days=float(pruning["max_age_days"]),
            interval=timedelta(seconds=int(pruning["interval_seconds"])),
            audit_log_size=int(pruning["audit_log_size"]),
        )


class GraphMaintenance:
    """
    Runs pruning sweeps over one profile graph.

    Usage:
        maintenance = GraphMaintenance(store, PruningConfig())
        records = maintenance.sweep()
    """

    def __init__(
        self,
        store: KnowledgeGraphStore,
        config: PruningConfig | None = None,
        writer_lock: threading.RLock | None = None,
    ):
        self.store = store
        self.config = config or PruningConfig()
        self._writer_lock = writer_lock or threading.RLock()
        self._audit: deque[PruneAuditRecord] = deque(maxlen=self.config.audit_log_size)
        self._audit_lock = threading.Lock()
        self.last_sweep_at: datetime | None = None
        self.total_pruned = 0

    def is_due(self, now: datetime) -> bool:
        if self.config.interval <= timedelta(0):
            return False
        if self.last_sweep_at is None:
            return True
        return ensure_utc(now) - self.last_sweep_at >= self.config.interval

    def sweep(self, now: datetime | None = None) -> list[PruneAuditRecord]:
        """Prune weak, stale nodes now and record the audit trail."""
        now = ensure_utc(now or utcnow())
        with self._writer_lock:
            records = self.store.prune_stale(
                now,
                min_proficiency=self.config.min_proficiency,
                max_age_days=self.config.max_age_days,
            )
            self.last_sweep_at = now

        for record in records:
            logger.info(
                "[PRUNE] {} ({}) proficiency={:.1f} idle_days={}",
                record.node_id,
                record.kind.value,
                record.final_proficiency,
                f"{record.days_since_interaction:.1f}"
                if record.days_since_interaction is not None
                else "never",
            )
        with self._audit_lock:
            self._audit.extend(records)
        self.total_pruned += len(records)
        return records

    def preview(self, now: datetime | None = None) -> list[PruneAuditRecord]:
        """What a sweep would remove right now; nothing is removed or logged."""
        return self.store.prune_candidates(
            ensure_utc(now or utcnow()),
            min_proficiency=self.config.min_proficiency,
            max_age_days=self.config.max_age_days,
        )

    def run_if_due(self, now: datetime | None = None) -> list[PruneAuditRecord]:
        now = ensure_utc(now or utcnow())
        if not self.is_due(now):
            return []
        return self.sweep(now)

    def audit_log(self, limit: int | None = None) -> list[PruneAuditRecord]:
        """Most recent audit records, oldest first."""
        with self._audit_lock:
            records = list(self._audit)
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records
