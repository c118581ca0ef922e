"""
Struggle Signal Detectors.

Each detector is a pure function of an immutable event-window snapshot
(plus a read-only GraphView). Detectors share no mutable state, so a batch
can evaluate them concurrently and a failing detector only costs its own
signal.

Signals:
1. REPEATED_EDITS: > 3 edits to one node within 5 minutes
2. LONG_PAUSE: dwell >= 30s on a node with no keystroke while its file is open
3. ERROR_CYCLE: >= 2 error -> fix -> error repeats at one diagnostic
4. FREQUENT_SEARCH: search for a symbol unknown to the graph,
   or > 5 distinct file switches within 2 minutes
5. CONTEXT_SWITCHING: rapid alternation between >= 3 unrelated nodes
   within 2 minutes

A detector emits its signal whenever the trigger holds, even when the
confidence formula evaluates to 0 at the exact threshold; such a signal
adds nothing to the struggle score but still names the implicated nodes.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, Future, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger

from src.graph.models import EventType, GraphView, Outcome, UserEvent, ensure_utc

if TYPE_CHECKING:
    from config import Settings


class SignalType(str, Enum):
    """The five independent struggle indicators."""

    REPEATED_EDITS = "repeated_edits"
    LONG_PAUSE = "long_pause"
    ERROR_CYCLE = "error_cycle"
    FREQUENT_SEARCH = "frequent_search"
    CONTEXT_SWITCHING = "context_switching"


@dataclass(frozen=True)
class StruggleSignal:
    """
    One weak indicator of difficulty, recomputed every evaluation.

    Attributes:
        signal_type: Which detector produced it
        confidence: Strength of the indicator in [0, 1]
        node_ids: Nodes the detector implicates
        measurement: The raw value behind the confidence (count, seconds, ...)
    """

    signal_type: SignalType
    confidence: float
    node_ids: frozenset[str]
    measurement: float

    def to_dict(self) -> dict:
        return {
            "signal_type": self.signal_type.value,
            "confidence": round(self.confidence, 3),
            "node_ids": sorted(self.node_ids),
            "measurement": self.measurement,
        }


@dataclass(frozen=True)
class DetectorConfig:
    """Trigger thresholds for the detectors."""

    edit_window: timedelta = timedelta(minutes=5)
    edit_threshold: int = 3
    pause_min_seconds: float = 30.0
    error_cycle_min: int = 2
    switch_window: timedelta = timedelta(minutes=2)
    file_switch_threshold: int = 5
    unfamiliar_symbol_confidence: float = 0.7
    context_switch_min_nodes: int = 3
    lookback: timedelta = timedelta(minutes=10)
    max_events: int = 500

    @classmethod
    def from_settings(cls, settings: Settings) -> DetectorConfig:
        return cls(
            lookback=timedelta(minutes=settings.window_lookback_minutes),
            max_events=settings.window_max_events,
        )


def _ramp(value: float, threshold: float, span: float) -> float:
    """min(1, (value - threshold) / span), floored at 0."""
    return max(0.0, min(1.0, (value - threshold) / span))


# =============================================================================
# Rolling Event Window
# =============================================================================


class EventWindow:
    """
    Rolling window of recent events, bounded by age and by count.

    Only the batch processor appends; detectors read immutable snapshots.
    Age is measured against the evaluation time, so replays of old logs
    behave exactly like live input.
    """

    def __init__(self, lookback: timedelta = timedelta(minutes=10), max_events: int = 500):
        self.lookback = lookback
        self._events: deque[UserEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def extend(self, events: Sequence[UserEvent]) -> None:
        with self._lock:
            self._events.extend(events)

    def snapshot(self, now: datetime) -> tuple[UserEvent, ...]:
        """Evict expired events and return the rest in timestamp order."""
        cutoff = ensure_utc(now) - self.lookback
        with self._lock:
            kept = [event for event in self._events if event.timestamp >= cutoff]
            if len(kept) != len(self._events):
                self._events = deque(kept, maxlen=self._events.maxlen)
        return tuple(sorted(kept, key=lambda event: event.timestamp))

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


@dataclass(frozen=True)
class DetectionContext:
    """Everything a detector may look at besides the events themselves."""

    now: datetime
    graph: GraphView = field(default_factory=lambda: GraphView({}, frozenset()))


# =============================================================================
# Detectors
# =============================================================================


def detect_repeated_edits(
    events: Sequence[UserEvent],
    context: DetectionContext,
    config: DetectorConfig,
) -> StruggleSignal | None:
    """Most edits to a single node inside any edit_window-long span."""
    edits: dict[str, list[datetime]] = defaultdict(list)
    for event in events:
        if event.event_type is EventType.EDIT:
            for node_id in event.node_ids:
                edits[node_id].append(event.timestamp)

    best = 0
    implicated: set[str] = set()
    for node_id, times in edits.items():
        times.sort()
        peak = 0
        left = 0
        for right, ts in enumerate(times):
            while ts - times[left] > config.edit_window:
                left += 1
            peak = max(peak, right - left + 1)
        if peak <= config.edit_threshold:
            continue
        if peak > best:
            best, implicated = peak, {node_id}
        elif peak == best:
            implicated.add(node_id)

    if not implicated:
        return None
    return StruggleSignal(
        signal_type=SignalType.REPEATED_EDITS,
        confidence=_ramp(best, config.edit_threshold, 3),
        node_ids=frozenset(implicated),
        measurement=float(best),
    )


def detect_long_pause(
    events: Sequence[UserEvent],
    context: DetectionContext,
    config: DetectorConfig,
) -> StruggleSignal | None:
    """
    Longest qualifying dwell.

    A dwell event carries its duration and is stamped at the end of the
    pause. It qualifies when no keystroke or edit touched the node during
    the pause and the node's file was not closed before the pause ended.
    """
    typing_events = {EventType.KEYSTROKE, EventType.EDIT}
    best = None
    implicated: set[str] = set()

    for dwell in events:
        if dwell.event_type is not EventType.DWELL or not dwell.node_ids:
            continue
        seconds = dwell.duration_seconds or 0.0
        if seconds < config.pause_min_seconds:
            continue

        start = dwell.timestamp - timedelta(seconds=seconds)
        nodes = set(dwell.node_ids)
        interrupted = False
        for other in events:
            if other is dwell or not (start <= other.timestamp <= dwell.timestamp):
                continue
            touches = nodes.intersection(other.node_ids)
            if other.event_type in typing_events and touches:
                interrupted = True
                break
            if other.event_type is EventType.FILE_CLOSE and (
                touches or (dwell.file_path and other.file_path == dwell.file_path)
            ):
                interrupted = True
                break
        if interrupted:
            continue

        if best is None or seconds > best:
            best, implicated = seconds, set(dwell.node_ids)
        elif seconds == best:
            implicated.update(dwell.node_ids)

    if best is None:
        return None
    return StruggleSignal(
        signal_type=SignalType.LONG_PAUSE,
        confidence=_ramp(best, config.pause_min_seconds, 30),
        node_ids=frozenset(implicated),
        measurement=best,
    )


def _is_error(event: UserEvent) -> bool:
    if event.event_type is EventType.ERROR:
        return True
    return event.event_type in {EventType.RUN, EventType.TEST} and event.outcome is Outcome.FAILURE


def _is_fix(event: UserEvent) -> bool:
    if event.event_type is EventType.FIX:
        return True
    return event.event_type in {EventType.RUN, EventType.TEST} and event.outcome is Outcome.SUCCESS


def detect_error_cycle(
    events: Sequence[UserEvent],
    context: DetectionContext,
    config: DetectorConfig,
) -> StruggleSignal | None:
    """Count error -> fix -> error repeats per diagnostic location."""
    # location -> [state, cycles, nodes]; state 0 idle, 1 error seen, 2 fix after error
    tracks: dict[str, list] = {}

    for event in sorted(events, key=lambda e: e.timestamp):
        error, fix = _is_error(event), _is_fix(event)
        if not (error or fix):
            continue
        location = event.diagnostic or "|".join(event.node_ids)
        if not location:
            continue
        track = tracks.setdefault(location, [0, 0, set()])
        track[2].update(event.node_ids)
        if error:
            if track[0] == 2:
                track[1] += 1
            track[0] = 1
        elif track[0] == 1:
            track[0] = 2

    best = 0
    implicated: set[str] = set()
    for location, (_, cycles, nodes) in tracks.items():
        if cycles < config.error_cycle_min:
            continue
        touched = nodes or {location}
        if cycles > best:
            best, implicated = cycles, set(touched)
        elif cycles == best:
            implicated.update(touched)

    if not implicated:
        return None
    return StruggleSignal(
        signal_type=SignalType.ERROR_CYCLE,
        confidence=_ramp(best, config.error_cycle_min, 2),
        node_ids=frozenset(implicated),
        measurement=float(best),
    )


def _peak_distinct(
    stamped: Sequence[tuple[datetime, str]],
    window: timedelta,
) -> tuple[int, set[str]]:
    """Largest number of distinct keys inside any window-long span."""
    stamped = sorted(stamped, key=lambda item: item[0])
    best, best_keys = 0, set()
    counts: dict[str, int] = defaultdict(int)
    left = 0
    for right, (ts, key) in enumerate(stamped):
        counts[key] += 1
        while ts - stamped[left][0] > window:
            old = stamped[left][1]
            counts[old] -= 1
            if counts[old] == 0:
                del counts[old]
            left += 1
        if len(counts) > best:
            best, best_keys = len(counts), set(counts)
    return best, best_keys


def detect_frequent_search(
    events: Sequence[UserEvent],
    context: DetectionContext,
    config: DetectorConfig,
) -> StruggleSignal | None:
    """Unfamiliar-symbol searches (fixed confidence) or bursts of file switching."""
    confidence = None
    measurement = 0.0
    implicated: set[str] = set()

    for event in events:
        if event.event_type is not EventType.SEARCH or not event.query:
            continue
        symbol = event.query.strip()
        if symbol and not context.graph.is_known(symbol):
            confidence = config.unfamiliar_symbol_confidence
            measurement = 1.0
            implicated.add(symbol)

    switches = [
        (event.timestamp, event.file_path or event.primary_node)
        for event in events
        if event.event_type is EventType.FILE_SWITCH and (event.file_path or event.node_ids)
    ]
    keys_to_nodes: dict[str, set[str]] = defaultdict(set)
    for event in events:
        if event.event_type is EventType.FILE_SWITCH:
            key = event.file_path or event.primary_node
            if key:
                keys_to_nodes[key].update(event.node_ids or (key,))

    distinct, keys = _peak_distinct(switches, config.switch_window)
    if distinct > config.file_switch_threshold:
        switch_confidence = _ramp(distinct, config.file_switch_threshold, 5)
        if confidence is None or switch_confidence > confidence:
            confidence = switch_confidence
            measurement = float(distinct)
        for key in keys:
            implicated.update(keys_to_nodes[key])

    if confidence is None:
        return None
    return StruggleSignal(
        signal_type=SignalType.FREQUENT_SEARCH,
        confidence=confidence,
        node_ids=frozenset(implicated),
        measurement=measurement,
    )


def detect_context_switching(
    events: Sequence[UserEvent],
    context: DetectionContext,
    config: DetectorConfig,
) -> StruggleSignal | None:
    """
    Focus hopping between unrelated nodes.

    The focus sequence is the primary node of every non-search event with
    consecutive repeats collapsed. A switch counts when the two nodes share
    no dependency edge. A window qualifies once it holds at least
    context_switch_min_nodes pairwise-unrelated nodes. That check grows
    with the right edge and is only redone after the left edge moves.
    """
    focus: list[tuple[datetime, str]] = []
    for event in sorted(events, key=lambda e: e.timestamp):
        if event.event_type is EventType.SEARCH or not event.node_ids:
            continue
        node = event.node_ids[0]
        if focus and focus[-1][1] == node:
            continue
        focus.append((event.timestamp, node))

    if len(focus) < 2:
        return None

    graph = context.graph
    # unrelated[k] flags the transition focus[k-1] -> focus[k]
    unrelated = [0] + [
        0 if graph.related(focus[k - 1][1], focus[k][1]) else 1
        for k in range(1, len(focus))
    ]
    prefix = [0]
    for flag in unrelated:
        prefix.append(prefix[-1] + flag)

    needed = config.context_switch_min_nodes
    best = 0
    best_span: tuple[int, int] | None = None
    left = 0
    # Occurrences of each node inside focus[left:right + 1]
    inside: dict[str, int] = defaultdict(int)
    # Capped greedy spread of the current window; None once the left edge moved
    spread: list[str] | None = []

    for right in range(len(focus)):
        node = focus[right][1]
        inside[node] += 1
        if spread is not None and inside[node] == 1 and len(spread) < needed:
            if all(not graph.related(node, other) for other in spread):
                spread.append(node)
        while focus[right][0] - focus[left][0] > config.switch_window:
            gone = focus[left][1]
            inside[gone] -= 1
            if inside[gone] == 0:
                del inside[gone]
            left += 1
            spread = None

        switches = prefix[right + 1] - prefix[left + 1]
        if switches < needed or switches <= best:
            continue
        if len(inside) < needed:
            continue
        if spread is None:
            spread = graph.unrelated_subset((name for _, name in focus[left : right + 1]), limit=needed)
        if len(spread) >= needed:
            best, best_span = switches, (left, right)

    if best_span is None:
        return None
    start, end = best_span
    implicated = graph.unrelated_subset(name for _, name in focus[start : end + 1])
    return StruggleSignal(
        signal_type=SignalType.CONTEXT_SWITCHING,
        confidence=_ramp(best, needed, 3),
        node_ids=frozenset(implicated),
        measurement=float(best),
    )


Detector = Callable[[Sequence[UserEvent], DetectionContext, DetectorConfig], "StruggleSignal | None"]

DETECTORS: dict[SignalType, Detector] = {
    SignalType.REPEATED_EDITS: detect_repeated_edits,
    SignalType.LONG_PAUSE: detect_long_pause,
    SignalType.ERROR_CYCLE: detect_error_cycle,
    SignalType.FREQUENT_SEARCH: detect_frequent_search,
    SignalType.CONTEXT_SWITCHING: detect_context_switching,
}


# =============================================================================
# Batch Evaluation
# =============================================================================


@dataclass
class DetectionResult:
    """Outcome of one detector sweep over a window snapshot."""

    signals: list[StruggleSignal] = field(default_factory=list)
    failed: list[SignalType] = field(default_factory=list)
    timed_out: list[SignalType] = field(default_factory=list)
    busy: list[SignalType] = field(default_factory=list)


def _order(signals: list[StruggleSignal]) -> list[StruggleSignal]:
    rank = {signal_type: i for i, signal_type in enumerate(SignalType)}
    return sorted(signals, key=lambda signal: rank[signal.signal_type])


def run_detectors(
    events: Sequence[UserEvent],
    context: DetectionContext,
    config: DetectorConfig,
    executor: Executor | None = None,
    timeout: float | None = None,
    detectors: dict[SignalType, Detector] | None = None,
    in_flight: dict[SignalType, Future] | None = None,
) -> DetectionResult:
    """
    Evaluate every detector against the same snapshot.

    With an executor the detectors run concurrently and this function is
    the join barrier: it waits at most ``timeout`` seconds, and anything
    still running (or anything that raised) counts as signal absent.

    A running thread cannot be cancelled, so callers that evaluate batch
    after batch pass the same ``in_flight`` dict. A detector whose previous
    run is still going is not submitted again; it is reported as busy and
    the other detectors keep the pool to themselves.
    """
    detectors = detectors if detectors is not None else DETECTORS
    result = DetectionResult()

    if executor is None:
        for signal_type, detector in detectors.items():
            try:
                signal = detector(events, context, config)
            except Exception as exc:
                logger.warning("Detector {} failed: {}", signal_type.value, exc)
                result.failed.append(signal_type)
                continue
            if signal is not None:
                result.signals.append(signal)
        result.signals = _order(result.signals)
        return result

    futures: dict[Future, SignalType] = {}
    for signal_type, detector in detectors.items():
        previous = in_flight.get(signal_type) if in_flight is not None else None
        if previous is not None and not previous.done():
            logger.debug("Detector {} still running, skipped", signal_type.value)
            result.busy.append(signal_type)
            continue
        future = executor.submit(detector, events, context, config)
        futures[future] = signal_type
        if in_flight is not None:
            in_flight[signal_type] = future

    done, pending = wait(futures, timeout=timeout)

    for future in pending:
        signal_type = futures[future]
        future.cancel()
        logger.warning("Detector {} timed out after {}s", signal_type.value, timeout)
        result.timed_out.append(signal_type)

    for future in done:
        signal_type = futures[future]
        try:
            signal = future.result()
        except Exception as exc:
            logger.warning("Detector {} failed: {}", signal_type.value, exc)
            result.failed.append(signal_type)
            continue
        if signal is not None:
            result.signals.append(signal)

    result.signals = _order(result.signals)
    return result
