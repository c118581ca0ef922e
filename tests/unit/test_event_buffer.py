"""
Unit tests for the bounded EventBuffer.
"""

import threading

import pytest

from src.delivery.event_buffer import EventBuffer


class TestEventBuffer:
    def test_put_and_drain_in_order(self, make_event):
        buffer = EventBuffer(capacity=10)
        events = [make_event("edit", f"n{i}", seconds=i) for i in range(3)]
        for event in events:
            assert buffer.put(event) is True

        assert buffer.drain() == events
        assert len(buffer) == 0

    def test_overflow_drops_oldest(self, make_event):
        buffer = EventBuffer(capacity=2)
        events = [make_event("edit", f"n{i}", seconds=i) for i in range(4)]

        results = [buffer.put(event) for event in events]

        assert results == [True, True, False, False]
        assert buffer.dropped == 2
        assert buffer.drain() == events[2:]

    def test_drain_respects_max_items(self, make_event):
        buffer = EventBuffer(capacity=10)
        for i in range(5):
            buffer.put(make_event("edit", "a", seconds=i))

        assert len(buffer.drain(max_items=2)) == 2
        assert len(buffer) == 3

    def test_stats(self, make_event):
        buffer = EventBuffer(capacity=1)
        buffer.put(make_event("edit", "a"))
        buffer.put(make_event("edit", "b"))
        buffer.drain()

        stats = buffer.stats
        assert (stats.received, stats.dropped, stats.drained) == (2, 1, 1)

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            EventBuffer(capacity=0)

    def test_concurrent_producers(self, make_event):
        buffer = EventBuffer(capacity=100)
        event = make_event("keystroke", "a")

        def produce():
            for _ in range(250):
                buffer.put(event)

        threads = [threading.Thread(target=produce) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = buffer.stats
        assert stats.received == 1000
        assert stats.dropped == 900
        assert len(buffer) == 100
