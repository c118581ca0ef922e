"""
Decision outbox: hands intervention decisions to the Learning Interface.

Delivery happens on a dedicated worker so the batch processor never waits
on the collaborator. A decision whose validity horizon has passed by the
time the worker gets to it is discarded instead of delivered, and every
decision is delivered at most once.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from loguru import logger

from src.adaptive.struggle_aggregator import InterventionDecision
from src.graph.models import utcnow


class LearningInterface(Protocol):
    """External collaborator that turns decisions into learning content."""

    def deliver(self, decision: InterventionDecision) -> None: ...


@dataclass
class OutboxStats:
    submitted: int = 0
    delivered: int = 0
    expired: int = 0
    failed: int = 0


class CollectingInterface:
    """In-process Learning Interface that keeps what it receives (replays, tests)."""

    def __init__(self) -> None:
        self.decisions: list[InterventionDecision] = []
        self._lock = threading.Lock()

    def deliver(self, decision: InterventionDecision) -> None:
        with self._lock:
            self.decisions.append(decision)


class DecisionOutbox:
    """
    Asynchronous, expiry-aware delivery of InterventionDecisions.

    Args:
        interface: Learning Interface collaborator (None keeps decisions pending)
        clock: Source of "now" used for the expiry check
        asynchronous: Deliver on a worker thread (False delivers inline)
    """

    def __init__(
        self,
        interface: LearningInterface | None = None,
        clock: Callable[[], datetime] = utcnow,
        asynchronous: bool = True,
    ):
        self.interface = interface
        self.clock = clock
        self._executor = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="decision-outbox")
            if asynchronous
            else None
        )
        self._stats = OutboxStats()
        self._lock = threading.Lock()
        self._pending: list[InterventionDecision] = []
        self._consumed: OrderedDict[str, None] = OrderedDict()

    def submit(self, decision: InterventionDecision) -> Future | None:
        with self._lock:
            self._stats.submitted += 1
            if self.interface is None:
                self._pending.append(decision)
                return None

        if self._executor is None:
            self._deliver(decision)
            return None
        return self._executor.submit(self._deliver, decision)

    def take_pending(self, now: datetime | None = None) -> list[InterventionDecision]:
        """
        Pull undelivered decisions when no interface is attached.

        Expired decisions are discarded on the way out.
        """
        now = now or self.clock()
        with self._lock:
            pending, self._pending = self._pending, []
        live = []
        for decision in pending:
            if decision.is_expired(now):
                self._count("expired")
            elif self._claim(decision):
                self._count("delivered")
                live.append(decision)
        return live

    def _deliver(self, decision: InterventionDecision) -> None:
        if decision.is_expired(self.clock()):
            logger.debug(
                "Discarding stale intervention for {} (expired {})",
                decision.node_id,
                decision.expires_at.isoformat(),
            )
            self._count("expired")
            return
        if not self._claim(decision):
            return
        try:
            self.interface.deliver(decision)
        except Exception:
            logger.exception("Learning interface failed to accept intervention for {}", decision.node_id)
            self._count("failed")
            return
        self._count("delivered")

    def _claim(self, decision: InterventionDecision) -> bool:
        with self._lock:
            if decision.decision_id in self._consumed:
                return False
            self._consumed[decision.decision_id] = None
            while len(self._consumed) > 10_000:
                self._consumed.popitem(last=False)
            return True

    def _count(self, name: str) -> None:
        with self._lock:
            setattr(self._stats, name, getattr(self._stats, name) + 1)

    @property
    def stats(self) -> OutboxStats:
        with self._lock:
            return OutboxStats(**vars(self._stats))

    def flush(self, timeout: float | None = None) -> None:
        """Wait for queued deliveries to finish."""
        if self._executor is None:
            return
        marker = self._executor.submit(lambda: None)
        marker.result(timeout=timeout)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
