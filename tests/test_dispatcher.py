"""Tests for notification dispatch."""

import asyncio
import gc
import logging
import warnings

import pytest

from merlin_bridge.dispatcher import EventDispatcher
from merlin_bridge.types import Connected, Disconnected, Endpoint, Frame, FrameReceived

EP = Endpoint("10.0.0.5")


def _frame_event(frame_id: int = 1) -> FrameReceived:
    return FrameReceived(frame=Frame(0, frame_id, 256), fps=30.0)


class TestSubscribe:
    def test_delivers_to_matching_kind_only(self):
        d = EventDispatcher()
        frames, connects = [], []
        d.subscribe(FrameReceived, frames.append)
        d.subscribe(Connected, connects.append)
        d.publish(_frame_event())
        assert len(frames) == 1
        assert connects == []

    def test_subscription_order(self):
        d = EventDispatcher()
        calls = []
        d.subscribe(Connected, lambda e: calls.append("a"))
        d.subscribe(Connected, lambda e: calls.append("b"))
        d.publish(Connected(EP, 1))
        assert calls == ["a", "b"]

    def test_decorator(self):
        d = EventDispatcher()
        seen = []

        @d.on(Disconnected)
        def handler(event):
            seen.append(event.reason)

        d.publish(Disconnected(EP, "bye"))
        assert seen == ["bye"]
        assert handler is not None

    def test_unsubscribe(self):
        d = EventDispatcher()
        seen = []
        d.subscribe(Connected, seen.append)
        d.unsubscribe(Connected, seen.append)
        d.unsubscribe(Connected, seen.append)  # no-op when absent
        d.publish(Connected(EP, 1))
        assert seen == []

    def test_unknown_kind_rejected(self):
        d = EventDispatcher()
        with pytest.raises(TypeError):
            d.subscribe(str, print)
        with pytest.raises(TypeError):
            d.publish("not an event")

    def test_subscriber_count(self):
        d = EventDispatcher()
        d.subscribe(Connected, print)
        d.subscribe(FrameReceived, print)
        d.subscribe(FrameReceived, repr)
        assert d.subscriber_count(FrameReceived) == 2
        assert d.subscriber_count() == 3


class TestDelivery:
    def test_no_events_without_publish(self):
        d = EventDispatcher()
        seen = []
        d.subscribe(FrameReceived, seen.append)
        assert seen == []
        assert d.get_stats()["published"] == 0

    def test_failing_handler_does_not_stop_others(self, caplog):
        d = EventDispatcher()
        seen = []

        def boom(event):
            raise RuntimeError("handler failed")

        d.subscribe(FrameReceived, boom)
        d.subscribe(FrameReceived, seen.append)
        with caplog.at_level(logging.ERROR, logger="merlin_bridge"):
            d.publish(_frame_event())
        assert len(seen) == 1
        assert d.get_stats()["handler_errors"] == 1
        assert "handler failed" in caplog.text

    def test_subscribe_during_delivery_applies_next_time(self):
        d = EventDispatcher()
        late = []

        def first(event):
            d.subscribe(Connected, late.append)

        d.subscribe(Connected, first)
        d.publish(Connected(EP, 1))
        assert late == []
        d.publish(Connected(EP, 2))
        assert [e.attempt for e in late] == [2]

    def test_unsubscribe_self_during_delivery(self):
        d = EventDispatcher()
        calls = []

        def once(event):
            calls.append(event)
            d.unsubscribe(Connected, once)

        d.subscribe(Connected, once)
        d.subscribe(Connected, calls.append)
        d.publish(Connected(EP, 1))
        d.publish(Connected(EP, 2))
        assert len(calls) == 3

    def test_reentrant_publish_is_queued(self):
        d = EventDispatcher()
        order = []

        def on_connected(event):
            order.append("connected:start")
            d.publish(_frame_event())
            order.append("connected:end")

        d.subscribe(Connected, on_connected)
        d.subscribe(FrameReceived, lambda e: order.append("frame"))
        d.publish(Connected(EP, 1))
        assert order == ["connected:start", "connected:end", "frame"]

    @pytest.mark.asyncio
    async def test_coroutine_handler_scheduled(self):
        d = EventDispatcher()
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event.frame.frame_id)

        d.subscribe(FrameReceived, handler)
        d.publish(_frame_event(42))
        assert seen == []
        await d.drain()
        assert seen == [42]

    def test_coroutine_handler_without_loop_is_closed(self, caplog):
        d = EventDispatcher()
        seen, others = [], []

        async def handler(event):
            seen.append(event.frame.frame_id)

        d.subscribe(FrameReceived, handler)
        d.subscribe(FrameReceived, others.append)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            with caplog.at_level(logging.ERROR, logger="merlin_bridge"):
                d.publish(_frame_event(7))
            gc.collect()

        assert seen == []
        assert len(others) == 1
        assert d.get_stats()["handler_errors"] == 1
        assert "running event loop" in caplog.text
        assert not [w for w in caught if "never awaited" in str(w.message)]

    def test_stats(self):
        d = EventDispatcher()
        d.subscribe(Connected, print)
        d.publish(Disconnected(EP))
        stats = d.get_stats()
        assert stats["published"] == 1
        assert stats["subscribers"] == {
            "Connected": 1,
            "Disconnected": 0,
            "FrameReceived": 0,
        }
