"""
Event ingestion adapter.

Sits upstream of the engine: normalizes collector records into UserEvents
and enforces the sensitive-path exclusion list, so events from matching
paths never reach the graph at all.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import Any, Protocol

from loguru import logger

from src.graph.models import UserEvent


class EventSink(Protocol):
    """Anything that accepts normalized events (normally the engine)."""

    def submit(self, event: UserEvent) -> None: ...


class SensitivePathFilter:
    """
    Glob-based exclusion of sensitive source paths.

    Patterns are matched against the full POSIX-style path and against the
    file name, so ``*.env`` excludes ``/repo/.env`` and ``config/prod.env``.
    """

    def __init__(self, patterns: Iterable[str] = ()):
        self.patterns = [pattern for pattern in patterns if pattern]

    def is_sensitive(self, path: str | None) -> bool:
        if not path or not self.patterns:
            return False
        normalized = path.replace("\\", "/")
        name = PurePosixPath(normalized).name
        return any(
            fnmatch(normalized, pattern) or fnmatch(name, pattern)
            for pattern in self.patterns
        )

    def allows(self, event: UserEvent) -> bool:
        if self.is_sensitive(event.file_path):
            return False
        return not any(self.is_sensitive(node_id) for node_id in event.node_ids if "/" in node_id)


class EventIngestor:
    """
    Normalizes, filters and forwards collector events.

    Usage:
        ingestor = EventIngestor(engine, SensitivePathFilter(settings.sensitive_path_patterns))
        ingestor.ingest({"timestamp": "...", "event_type": "edit", "node_ids": ["a.py"]})
    """

    def __init__(self, sink: EventSink, path_filter: SensitivePathFilter | None = None):
        self.sink = sink
        self.path_filter = path_filter or SensitivePathFilter()
        self.accepted = 0
        self.excluded = 0
        self.malformed = 0

    def ingest(self, record: UserEvent | dict[str, Any]) -> bool:
        """
        Forward one event unless it is malformed or sensitive.

        Returns:
            True if the event was handed to the sink
        """
        if isinstance(record, UserEvent):
            event = record
        else:
            try:
                event = UserEvent.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                self.malformed += 1
                logger.warning("Skipping malformed event record: {}", exc)
                return False

        if not self.path_filter.allows(event):
            self.excluded += 1
            return False

        self.sink.submit(event)
        self.accepted += 1
        return True

    def ingest_many(self, records: Iterable[UserEvent | dict[str, Any]]) -> int:
        return sum(1 for record in records if self.ingest(record))


def read_event_log(path: Path) -> Iterator[dict[str, Any]]:
    """Yield records from a JSON Lines event log, skipping blank and broken lines."""
    with path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("{}:{}: invalid JSON ({})", path, line_number, exc)
