"""
Event broadcaster for streaming workflow progress to subscribers.

The broadcaster owns the registry of live connections. Each connection has a
topic filter and an async ``send`` transport. Publishing fans an event out to
every matching connection concurrently; a connection whose delivery raises or
times out is evicted on the spot, without holding up the others. A heartbeat
task pings every connection on a fixed interval and evicts connections that
have been inactive for too long.

The registry is the only structure mutated from many request contexts at once,
so every add/remove/iterate happens under an asyncio.Lock.
"""

import asyncio
import json
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import StreamingConfig
from ..exceptions import CapacityError
from .events import (
    ANY,
    HEALTH,
    HEARTBEAT,
    STREAM_HANDLER,
    STREAM_HEALTH,
    STREAM_QUERY,
    STREAM_WORKFLOW,
    WORKFLOW_STEP,
    StreamEvent,
    StreamFilter,
)

logger = logging.getLogger(__name__)

Transport = Callable[[StreamEvent], Awaitable[Any]]


@dataclass(eq=False)
class Connection:
    """A live subscription."""

    id: str
    filter: StreamFilter
    send: Transport
    on_close: Optional[Callable[[], Awaitable[Any]]] = None
    queue: Optional[asyncio.Queue] = None
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    closed: bool = False
    delivered: int = 0
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


def _json_safe(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Detach the payload from caller objects and force JSON-compatible values."""
    return json.loads(json.dumps(payload or {}, default=str))


class EventBroadcaster:
    """
    Registry of subscriber connections with filtered, best-effort delivery.

    Args:
        config: Connection limit, heartbeat interval, staleness and send timeout
        clock: Time source for activity checks, injectable for tests
    """

    def __init__(self, config: Optional[StreamingConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or StreamingConfig()
        self._clock = clock
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self.events_published = 0
        self.evictions = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the heartbeat loop."""
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.info(f"Event broadcaster started (heartbeat every {self.config.heartbeat_interval}s)")

    async def stop(self) -> None:
        """Stop the heartbeat loop and close every connection."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            await self._close(connection, "broadcaster stopped")
        logger.info("Event broadcaster stopped")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                await self.heartbeat()
            except Exception as e:
                logger.error(f"Heartbeat failed: {e}")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        filter: Optional[StreamFilter] = None,
        send: Optional[Transport] = None,
        on_close: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> Connection:
        """
        Register a connection.

        Args:
            filter: Topics to receive; None receives everything
            send: Async transport called once per delivered event. When
                omitted, events are buffered in ``connection.queue``; a full
                queue counts as a failed delivery.
            on_close: Called once when the connection is removed

        Returns:
            The connection handle

        Raises:
            CapacityError: If the connection limit is reached
        """
        queue = None
        if send is None:
            queue = asyncio.Queue(maxsize=self.config.queue_size)

            async def send(event: StreamEvent) -> None:
                queue.put_nowait(event)

        now = self._clock()
        connection = Connection(
            id=uuid.uuid4().hex,
            filter=filter or ANY,
            send=send,
            on_close=on_close,
            queue=queue,
            connected_at=now,
            last_activity=now,
        )
        async with self._lock:
            if len(self._connections) >= self.config.max_connections:
                raise CapacityError(self.config.max_connections)
            self._connections[connection.id] = connection
            total = len(self._connections)
        logger.info(f"Connection {connection.id} subscribed ({connection.filter.to_dict()}); total {total}")
        return connection

    async def unsubscribe(self, connection: Connection) -> bool:
        """Remove a connection. Returns False if it was already gone."""
        return await self._evict(connection, "unsubscribed")

    def touch(self, connection: Connection) -> None:
        """Record client-side activity (e.g. a ping) on a connection."""
        connection.last_activity = self._clock()

    async def _evict(self, connection: Connection, reason: str) -> bool:
        async with self._lock:
            removed = self._connections.pop(connection.id, None) is not None
        if removed:
            await self._close(connection, reason)
        return removed

    async def _close(self, connection: Connection, reason: str) -> None:
        connection.closed = True
        if connection.on_close is not None:
            try:
                await connection.on_close()
            except Exception as e:
                logger.debug(f"Error closing connection {connection.id}: {e}")
        logger.info(f"Connection {connection.id} closed: {reason}")

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(
        self,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
        filter: Optional[StreamFilter] = None,
    ) -> int:
        """
        Deliver an event to every connection matching ``filter``.

        Returns:
            Number of connections the event was delivered to
        """
        filter = filter or ANY
        stream_event = StreamEvent(event=event, payload=_json_safe(payload))
        async with self._lock:
            targets = [c for c in self._connections.values() if c.filter.matches(filter)]
        self.events_published += 1
        if not targets:
            return 0

        results = await asyncio.gather(*(self._deliver(c, stream_event) for c in targets))
        delivered = sum(1 for ok in results if ok)
        logger.debug(f"Event {event} delivered to {delivered}/{len(targets)} connections")
        return delivered

    async def _deliver(self, connection: Connection, event: StreamEvent) -> bool:
        # Per-connection lock keeps publish order on each connection
        async with connection._send_lock:
            if connection.closed:
                return False
            try:
                await asyncio.wait_for(connection.send(event), timeout=self.config.send_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Delivery to connection {connection.id} failed ({type(e).__name__}: {e}); evicting")
                self.evictions += 1
                await self._evict(connection, "delivery failed")
                return False
            connection.last_activity = self._clock()
            connection.delivered += 1
            return True

    async def heartbeat(self) -> int:
        """Evict stale connections, then ping the rest. Returns the ping count."""
        cutoff = self._clock() - self.config.stale_after
        async with self._lock:
            stale = [c for c in self._connections.values() if c.last_activity < cutoff]
        for connection in stale:
            self.evictions += 1
            await self._evict(connection, "stale")
        if stale:
            logger.info(f"Cleaned up {len(stale)} stale connections")
        return await self.publish(HEARTBEAT, {"active_connections": self.connection_count})

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def stream_query_processing(self, thread_id: str, event: str, data: Optional[Dict[str, Any]] = None) -> int:
        return await self.publish(
            event,
            {"thread_id": thread_id, **(data or {})},
            StreamFilter(stream_type=STREAM_QUERY, thread_id=thread_id),
        )

    async def stream_handler_event(
        self, thread_id: str, handler_type: str, event: str, data: Optional[Dict[str, Any]] = None
    ) -> int:
        return await self.publish(
            event,
            {"thread_id": thread_id, "handler_type": handler_type, **(data or {})},
            StreamFilter(stream_type=STREAM_HANDLER, thread_id=thread_id, handler_type=handler_type),
        )

    async def stream_workflow_state(
        self, thread_id: str, step: str, data: Optional[Dict[str, Any]] = None, event: str = WORKFLOW_STEP
    ) -> int:
        return await self.publish(
            event,
            {"thread_id": thread_id, "step": step, **(data or {})},
            StreamFilter(stream_type=STREAM_WORKFLOW, thread_id=thread_id),
        )

    async def stream_health_event(self, health: Dict[str, Any]) -> int:
        return await self.publish(HEALTH, health, StreamFilter(stream_type=STREAM_HEALTH))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get_connection_stats(self) -> Dict[str, Any]:
        connections: List[Connection] = list(self._connections.values())
        now = self._clock()
        by_stream = Counter(c.filter.stream_type or "all" for c in connections)
        by_thread = Counter(c.filter.thread_id for c in connections if c.filter.thread_id)
        idle = [now - c.last_activity for c in connections]
        return {
            "total": len(connections),
            "max_connections": self.config.max_connections,
            "by_stream_type": dict(by_stream),
            "by_thread": dict(by_thread),
            "average_idle_seconds": sum(idle) / len(idle) if idle else 0.0,
            "events_published": self.events_published,
            "evictions": self.evictions,
        }
