"""
SQLite State Store for the Mental Model Engine.

Provides portable persistence for:
- Knowledge graph snapshots per user profile (nodes + dependency edges)
- Pruning audit log for analytics

Database location: ~/.mme/state.db
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

from loguru import logger

from src.adaptive.proficiency import ProficiencyCalculator
from src.graph.knowledge_graph import KnowledgeGraphStore
from src.graph.models import NodeKind, PruneAuditRecord, parse_timestamp

# =============================================================================
# State Store
# =============================================================================


class StateStore:
    """
    SQLite-backed persistence for profile graphs.

    Handles:
    - Full graph snapshot per profile (replaced atomically on save)
    - Append-only pruning audit log
    """

    DEFAULT_DB_PATH = Path.home() / ".mme" / "state.db"

    def __init__(self, db_path: Path | None = None):
        """
        Initialize the state store.

        Args:
            db_path: Custom database path (defaults to ~/.mme/state.db)
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn: sqlite3.Connection | None = None
        self._init_schema()

        logger.debug(f"StateStore initialized at {self.db_path}")

    @property
    def conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    def _init_schema(self) -> None:
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS knowledge_nodes (
                profile_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                name TEXT NOT NULL,
                interaction_count INTEGER DEFAULT 0,
                success_count INTEGER DEFAULT 0,
                failure_count INTEGER DEFAULT 0,
                last_interaction TEXT,
                complexity_weight REAL DEFAULT 0.5,
                PRIMARY KEY (profile_id, node_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS knowledge_edges (
                profile_id TEXT NOT NULL,
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                PRIMARY KEY (profile_id, source_id, target_id),
                FOREIGN KEY (profile_id, source_id)
                    REFERENCES knowledge_nodes(profile_id, node_id) ON DELETE CASCADE,
                FOREIGN KEY (profile_id, target_id)
                    REFERENCES knowledge_nodes(profile_id, node_id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS prune_audit (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                profile_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                name TEXT,
                kind TEXT,
                final_proficiency REAL NOT NULL,
                days_since_interaction REAL,
                pruned_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_prune_audit_profile
            ON prune_audit(profile_id, pruned_at)
        """)

        self.conn.commit()

    # =========================================================================
    # Graph Snapshots
    # =========================================================================

    def save_graph(self, store: KnowledgeGraphStore) -> int:
        """
        Replace the persisted snapshot of a profile graph.

        Args:
            store: Graph to persist (keyed by its profile_id)

        Returns:
            Number of nodes written
        """
        state = store.export_state()
        profile_id = state["profile_id"]

        with self.conn:
            self.conn.execute("DELETE FROM knowledge_edges WHERE profile_id = ?", (profile_id,))
            self.conn.execute("DELETE FROM knowledge_nodes WHERE profile_id = ?", (profile_id,))
            self.conn.executemany(
                """
                INSERT INTO knowledge_nodes (
                    profile_id, node_id, kind, name, interaction_count,
                    success_count, failure_count, last_interaction, complexity_weight
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                [
                    (
                        profile_id,
                        node["id"],
                        node["kind"],
                        node["name"],
                        node["interaction_count"],
                        node["success_count"],
                        node["failure_count"],
                        node["last_interaction"],
                        node["complexity_weight"],
                    )
                    for node in state["nodes"]
                ],
            )
            self.conn.executemany(
                """
                INSERT INTO knowledge_edges (profile_id, source_id, target_id)
                VALUES (?, ?, ?)
            """,
                [
                    (profile_id, node["id"], target)
                    for node in state["nodes"]
                    for target in node["dependencies"]
                ],
            )

        logger.debug("Saved {} node(s) for profile {}", len(state["nodes"]), profile_id)
        return len(state["nodes"])

    def load_graph(
        self,
        profile_id: str,
        calculator: ProficiencyCalculator | None = None,
        dedup_memory_size: int = 50_000,
        default_complexity: float = 0.5,
    ) -> KnowledgeGraphStore:
        """
        Restore a profile graph (empty graph if the profile is unknown).

        Args:
            profile_id: Profile to load
            calculator: Proficiency calculator for the restored store
        """
        store = KnowledgeGraphStore(
            profile_id=profile_id,
            calculator=calculator,
            dedup_memory_size=dedup_memory_size,
            default_complexity=default_complexity,
        )

        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM knowledge_nodes WHERE profile_id = ?", (profile_id,))
        nodes = {
            row["node_id"]: {
                "id": row["node_id"],
                "kind": row["kind"],
                "name": row["name"],
                "interaction_count": row["interaction_count"],
                "success_count": row["success_count"],
                "failure_count": row["failure_count"],
                "last_interaction": row["last_interaction"],
                "complexity_weight": row["complexity_weight"],
                "dependencies": [],
            }
            for row in cursor.fetchall()
        }

        cursor.execute(
            "SELECT source_id, target_id FROM knowledge_edges WHERE profile_id = ?",
            (profile_id,),
        )
        for row in cursor.fetchall():
            source = nodes.get(row["source_id"])
            if source is not None:
                source["dependencies"].append(row["target_id"])

        store.load_state({"profile_id": profile_id, "nodes": list(nodes.values())})
        logger.debug("Loaded {} node(s) for profile {}", len(nodes), profile_id)
        return store

    def list_profiles(self) -> list[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT DISTINCT profile_id FROM knowledge_nodes ORDER BY profile_id")
        return [row["profile_id"] for row in cursor.fetchall()]

    def delete_profile(self, profile_id: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM knowledge_edges WHERE profile_id = ?", (profile_id,))
            self.conn.execute("DELETE FROM knowledge_nodes WHERE profile_id = ?", (profile_id,))
            self.conn.execute("DELETE FROM prune_audit WHERE profile_id = ?", (profile_id,))

    # =========================================================================
    # Pruning Audit Log
    # =========================================================================

    def append_audit(self, profile_id: str, records: list[PruneAuditRecord]) -> int:
        """
        Persist pruning audit records.

        Returns:
            Number of records written
        """
        if not records:
            return 0
        with self.conn:
            self.conn.executemany(
                """
                INSERT INTO prune_audit (
                    profile_id, node_id, name, kind,
                    final_proficiency, days_since_interaction, pruned_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                [
                    (
                        profile_id,
                        record.node_id,
                        record.name,
                        record.kind.value,
                        record.final_proficiency,
                        record.days_since_interaction,
                        record.pruned_at.isoformat(),
                    )
                    for record in records
                ],
            )
        return len(records)

    def get_audit(self, profile_id: str, limit: int = 100) -> list[PruneAuditRecord]:
        """
        Most recent pruning audit records, newest first.

        Args:
            profile_id: Profile to query
            limit: Maximum records to return
        """
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM prune_audit
            WHERE profile_id = ?
            ORDER BY pruned_at DESC, id DESC
            LIMIT ?
        """,
            (profile_id, limit),
        )
        return [
            PruneAuditRecord(
                node_id=row["node_id"],
                name=row["name"] or row["node_id"],
                kind=NodeKind.lookup(row["kind"]) or NodeKind.UNCLASSIFIED,
                final_proficiency=row["final_proficiency"],
                days_since_interaction=row["days_since_interaction"],
                pruned_at=parse_timestamp(row["pruned_at"]),
            )
            for row in cursor.fetchall()
        ]

    def last_pruned_at(self, profile_id: str) -> datetime | None:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT MAX(pruned_at) AS last FROM prune_audit WHERE profile_id = ?",
            (profile_id,),
        )
        row = cursor.fetchone()
        return parse_timestamp(row["last"]) if row and row["last"] else None

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
