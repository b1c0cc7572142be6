"""Tests for EventStream — push-based event stream with operator chaining."""

import logging

from cellflow import EventStream


class TestEmitSubscribe:
    def test_subscribe_receives_emitted_values(self):
        stream = EventStream()
        received = []
        stream.subscribe(received.append)
        stream.emit(1)
        stream.emit(2)
        assert received == [1, 2]

    def test_unsubscribe_idempotent(self):
        stream = EventStream()
        received = []
        unsub = stream.subscribe(received.append)
        stream.emit(1)
        unsub()
        unsub()
        stream.emit(2)
        assert received == [1]

    def test_failing_subscriber_is_logged(self, caplog):
        stream = EventStream()
        received = []

        def _boom(value):
            raise RuntimeError("boom")

        stream.subscribe(_boom)
        stream.subscribe(received.append)
        with caplog.at_level(logging.ERROR, logger="cellflow.stream"):
            stream.emit("x")
        assert received == ["x"]
        assert "Event subscriber failed" in caplog.text


class TestOperators:
    def test_map_and_filter_chain(self):
        stream = EventStream()
        received = []
        stream.filter(lambda v: v % 2 == 0).map(lambda v: v * 10).subscribe(received.append)
        for value in range(5):
            stream.emit(value)
        assert received == [0, 20, 40]


class TestDispose:
    def test_dispose_stops_emission(self):
        stream = EventStream()
        received = []
        stream.subscribe(received.append)
        stream.dispose()
        stream.emit(1)
        assert received == []
        assert stream.disposed

    def test_dispose_tears_down_children(self):
        stream = EventStream()
        received = []
        child = stream.map(lambda v: v + 1)
        child.subscribe(received.append)
        stream.dispose()
        assert child.disposed
        child.emit(1)
        assert received == []

    def test_disposing_child_detaches_from_parent(self):
        stream = EventStream()
        received = []
        child = stream.map(lambda v: v)
        child.subscribe(received.append)
        child.dispose()
        stream.emit(1)
        assert received == []
        assert stream._children == []
