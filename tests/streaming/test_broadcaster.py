"""
Tests for the pitwall.streaming package.

This module tests:
- Filter matching with wildcard dimensions
- Exactly-once delivery to matching connections
- Eviction of connections whose delivery fails or times out
- Connection capacity
- Heartbeats and stale-connection eviction
- Queue-backed subscriptions and typed publish helpers
- Connection statistics
"""

import asyncio
import json

import pytest

from pitwall.config import StreamingConfig
from pitwall.exceptions import CapacityError
from pitwall.streaming import EventBroadcaster, StreamEvent, StreamFilter


# =============================================================================
# Helpers
# =============================================================================

class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class Recorder:
    """Transport that records every delivered event."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.events = []
        self.fail = fail
        self.delay = delay
        self.closed = 0

    async def send(self, event: StreamEvent) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionResetError("client went away")
        self.events.append(event)

    async def on_close(self) -> None:
        self.closed += 1

    @property
    def names(self):
        return [e.event for e in self.events]


async def subscribe(broadcaster: EventBroadcaster, filter=None, **kwargs) -> Recorder:
    recorder = Recorder(**kwargs)
    await broadcaster.subscribe(filter, send=recorder.send, on_close=recorder.on_close)
    return recorder


# =============================================================================
# Filter Tests
# =============================================================================

class TestStreamFilter:
    """Tests for topic matching."""

    def test_wildcards_match_everything(self):
        assert StreamFilter().matches(StreamFilter(stream_type="query", thread_id="t1"))
        assert StreamFilter(stream_type="query").matches(StreamFilter())

    def test_set_dimensions_must_agree(self):
        subscription = StreamFilter(stream_type="handler", thread_id="t1")

        assert subscription.matches(StreamFilter(stream_type="handler", thread_id="t1", handler_type="race"))
        assert not subscription.matches(StreamFilter(stream_type="handler", thread_id="t2"))
        assert not subscription.matches(StreamFilter(stream_type="query", thread_id="t1"))

    def test_event_serialization(self):
        event = StreamEvent("query_start", {"thread_id": "t1"}, timestamp=5)

        assert json.loads(event.to_json()) == {"event": "query_start", "payload": {"thread_id": "t1"}, "timestamp": 5}
        assert event.to_sse() == 'event: query_start\ndata: {"thread_id": "t1"}\n\n'


# =============================================================================
# Delivery Tests
# =============================================================================

class TestDelivery:
    """Tests for publish fan-out."""

    @pytest.mark.asyncio
    async def test_delivered_once_to_each_match(self):
        broadcaster = EventBroadcaster()
        everything = await subscribe(broadcaster)
        thread_one = await subscribe(broadcaster, StreamFilter(thread_id="t1"))
        thread_two = await subscribe(broadcaster, StreamFilter(thread_id="t2"))

        delivered = await broadcaster.stream_query_processing("t1", "query_start", {"query": "q"})

        assert delivered == 2
        assert everything.names == ["query_start"]
        assert thread_one.names == ["query_start"]
        assert thread_two.events == []
        assert thread_one.events[0].payload == {"thread_id": "t1", "query": "q"}

    @pytest.mark.asyncio
    async def test_payload_is_json_safe(self):
        broadcaster = EventBroadcaster()
        recorder = await subscribe(broadcaster)
        payload = {"values": (1, 2), "when": object()}

        await broadcaster.publish("custom", payload)

        delivered = recorder.events[0].payload
        assert delivered["values"] == [1, 2]
        assert isinstance(delivered["when"], str)

    @pytest.mark.asyncio
    async def test_order_preserved_per_connection(self):
        broadcaster = EventBroadcaster()
        recorder = await subscribe(broadcaster)

        for i in range(5):
            await broadcaster.publish(f"e{i}")

        assert recorder.names == ["e0", "e1", "e2", "e3", "e4"]

    @pytest.mark.asyncio
    async def test_failing_connection_is_evicted(self):
        broadcaster = EventBroadcaster()
        healthy = await subscribe(broadcaster)
        broken = await subscribe(broadcaster, fail=True)

        first = await broadcaster.publish("e1")
        second = await broadcaster.publish("e2")

        assert first == 1 and second == 1
        assert healthy.names == ["e1", "e2"]
        assert broken.closed == 1
        assert broadcaster.connection_count == 1
        assert broadcaster.evictions == 1

    @pytest.mark.asyncio
    async def test_slow_connection_is_evicted(self):
        broadcaster = EventBroadcaster(StreamingConfig(send_timeout=0.05))
        healthy = await subscribe(broadcaster)
        slow = await subscribe(broadcaster, delay=1.0)

        delivered = await broadcaster.publish("e1")

        assert delivered == 1
        assert healthy.names == ["e1"]
        assert slow.closed == 1
        assert broadcaster.connection_count == 1

    @pytest.mark.asyncio
    async def test_typed_helpers_use_stream_types(self):
        broadcaster = EventBroadcaster()
        handlers = await subscribe(broadcaster, StreamFilter(stream_type="handler", handler_type="race"))
        workflow = await subscribe(broadcaster, StreamFilter(stream_type="workflow"))
        health = await subscribe(broadcaster, StreamFilter(stream_type="health"))

        await broadcaster.stream_handler_event("t1", "race", "handler_start")
        await broadcaster.stream_handler_event("t1", "driver", "handler_start")
        await broadcaster.stream_workflow_state("t1", "route", {"status": "started"})
        await broadcaster.stream_health_event({"status": "healthy"})

        assert handlers.names == ["handler_start"]
        assert handlers.events[0].payload["handler_type"] == "race"
        assert workflow.events[0].payload == {"thread_id": "t1", "step": "route", "status": "started"}
        assert health.events[0].payload == {"status": "healthy"}


# =============================================================================
# Subscription Tests
# =============================================================================

class TestSubscriptions:
    """Tests for connection registration."""

    @pytest.mark.asyncio
    async def test_capacity(self):
        broadcaster = EventBroadcaster(StreamingConfig(max_connections=2))
        await subscribe(broadcaster)
        await subscribe(broadcaster)

        with pytest.raises(CapacityError):
            await subscribe(broadcaster)

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        broadcaster = EventBroadcaster()
        recorder = Recorder()
        connection = await broadcaster.subscribe(send=recorder.send, on_close=recorder.on_close)

        assert await broadcaster.unsubscribe(connection) is True
        assert await broadcaster.unsubscribe(connection) is False
        assert recorder.closed == 1
        assert await broadcaster.publish("e1") == 0

    @pytest.mark.asyncio
    async def test_queue_subscription(self):
        broadcaster = EventBroadcaster()
        connection = await broadcaster.subscribe(StreamFilter(thread_id="t1"))

        await broadcaster.stream_query_processing("t1", "query_start")

        event = connection.queue.get_nowait()
        assert event.event == "query_start"
        assert connection.delivered == 1

    @pytest.mark.asyncio
    async def test_full_queue_evicts(self):
        broadcaster = EventBroadcaster(StreamingConfig(queue_size=1))
        connection = await broadcaster.subscribe()

        await broadcaster.publish("e1")
        await broadcaster.publish("e2")

        assert connection.closed
        assert broadcaster.connection_count == 0

    @pytest.mark.asyncio
    async def test_stop_closes_everything(self):
        broadcaster = EventBroadcaster()
        recorder = await subscribe(broadcaster)
        await broadcaster.start()

        await broadcaster.stop()

        assert recorder.closed == 1
        assert broadcaster.connection_count == 0


# =============================================================================
# Heartbeat Tests
# =============================================================================

class TestHeartbeat:
    """Tests for heartbeats and stale eviction."""

    @pytest.mark.asyncio
    async def test_heartbeat_reports_active_connections(self):
        broadcaster = EventBroadcaster()
        recorder = await subscribe(broadcaster, StreamFilter(thread_id="t1"))

        pinged = await broadcaster.heartbeat()

        assert pinged == 1
        assert recorder.names == ["heartbeat"]
        assert recorder.events[0].payload == {"active_connections": 1}

    @pytest.mark.asyncio
    async def test_stale_connections_evicted(self):
        clock = FakeClock()
        config = StreamingConfig(heartbeat_interval=10, stale_factor=3)
        broadcaster = EventBroadcaster(config, clock=clock)
        idle = await subscribe(broadcaster)
        clock.now += 20
        active = Recorder()
        connection = await broadcaster.subscribe(send=active.send, on_close=active.on_close)

        clock.now += 15
        await broadcaster.heartbeat()

        assert idle.closed == 1
        assert idle.events == []
        assert active.names == ["heartbeat"]
        assert connection.last_activity == clock.now
        assert broadcaster.evictions == 1

    @pytest.mark.asyncio
    async def test_touch_keeps_connection_alive(self):
        clock = FakeClock()
        broadcaster = EventBroadcaster(StreamingConfig(heartbeat_interval=10, stale_factor=1), clock=clock)
        recorder = Recorder()
        connection = await broadcaster.subscribe(send=recorder.send, on_close=recorder.on_close)

        clock.now += 8
        broadcaster.touch(connection)
        clock.now += 8
        await broadcaster.heartbeat()

        assert recorder.closed == 0
        assert recorder.names == ["heartbeat"]


# =============================================================================
# Statistics Tests
# =============================================================================

class TestConnectionStats:
    """Tests for connection statistics."""

    @pytest.mark.asyncio
    async def test_stats(self):
        clock = FakeClock()
        broadcaster = EventBroadcaster(StreamingConfig(max_connections=10), clock=clock)
        await subscribe(broadcaster)
        await subscribe(broadcaster, StreamFilter(stream_type="query", thread_id="t1"))
        await subscribe(broadcaster, StreamFilter(stream_type="query", thread_id="t2"))
        clock.now += 4

        stats = broadcaster.get_connection_stats()

        assert stats["total"] == 3
        assert stats["max_connections"] == 10
        assert stats["by_stream_type"] == {"all": 1, "query": 2}
        assert stats["by_thread"] == {"t1": 1, "t2": 1}
        assert stats["average_idle_seconds"] == 4.0
        assert stats["events_published"] == 0
