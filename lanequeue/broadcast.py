"""Real-time fan-out to display and reservation clients.

Each connected client gets a ``Channel``: a bounded FIFO that the
Server-Sent Events stream drains.  ``BroadcastHub.broadcast`` pushes an event
into every channel without ever blocking; a channel that is closed or whose
buffer is full is dropped on that failed write.

When ``REDIS_URL`` is configured, events go through Redis pub/sub instead so
every process serving displays sees the same feed.  Each process runs a
``RedisRelay`` listener that hands messages from Redis to its local hub.
"""

from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional

import redis

logger = logging.getLogger(__name__)

Event = Dict[str, Any]


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def connected_event() -> Event:
    return {"type": "connected", "timestamp": timestamp()}


def lanes_update_event(lanes: List[Dict[str, Any]]) -> Event:
    return {"type": "lanes_update", "lanes": lanes, "timestamp": timestamp()}


def operation_event(action: str, lane_id: int, result: Dict[str, Any]) -> Event:
    return {
        "type": "operation",
        "action": action,
        "laneId": lane_id,
        "result": result,
        "timestamp": timestamp(),
    }


def format_sse(event: Event) -> str:
    return f"data: {json.dumps(event, separators=(',', ':'))}\n\n"


class ChannelClosed(Exception):
    pass


class Channel:
    """One observer's outbound event buffer."""

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, event: Event) -> None:
        if self.closed:
            raise ChannelClosed()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            # Slow reader: give up on it rather than block the writer.
            self.close()
            raise ChannelClosed()

    def poll(self) -> Optional[Event]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def close(self) -> None:
        self._closed.set()


class BroadcastHub:
    """Registry of open channels.  Created once per process and shared by all requests."""

    def __init__(self, buffer_size: int = 256) -> None:
        self.buffer_size = buffer_size
        self._channels: set[Channel] = set()
        self._lock = threading.Lock()
        self.relay: Optional["RedisRelay"] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)

    def connect(self, initial_events: Iterable[Event] = ()) -> Channel:
        """Register a new channel, pre-loaded with ``initial_events``."""
        channel = Channel(self.buffer_size)
        with self._lock:
            for event in initial_events:
                channel.send(event)
            self._channels.add(channel)
        logger.debug("Channel connected (%s open)", len(self._channels))
        return channel

    def disconnect(self, channel: Channel) -> None:
        channel.close()
        with self._lock:
            self._channels.discard(channel)

    def broadcast(self, event: Event) -> None:
        """Fire-and-forget delivery to every observer, across processes if a relay is set."""
        relay = self.relay
        if relay is not None:
            try:
                relay.publish(event)
                return
            except redis.RedisError as exc:
                logger.error("Redis publish failed, delivering locally: %s", exc)
        self.deliver(event)

    def deliver(self, event: Event) -> None:
        """Push ``event`` to the channels of this process."""
        dead: List[Channel] = []
        with self._lock:
            for channel in self._channels:
                try:
                    channel.send(event)
                except ChannelClosed:
                    dead.append(channel)
            for channel in dead:
                self._channels.discard(channel)
        if dead:
            logger.info("Dropped %s dead channel(s)", len(dead))

    def close_all(self) -> None:
        with self._lock:
            for channel in self._channels:
                channel.close()
            self._channels.clear()


async def event_stream(
    hub: BroadcastHub,
    channel: Channel,
    is_disconnected: Callable[[], Awaitable[bool]],
    *,
    poll_interval: float = 0.1,
    heartbeat_seconds: float = 15.0,
) -> AsyncIterator[str]:
    """Drain ``channel`` as SSE frames until the client goes away."""
    idle = 0.0
    try:
        while not channel.closed:
            event = channel.poll()
            if event is not None:
                idle = 0.0
                yield format_sse(event)
                continue
            if await is_disconnected():
                break
            if idle >= heartbeat_seconds:
                idle = 0.0
                yield ": keep-alive\n\n"
            await asyncio.sleep(poll_interval)
            idle += poll_interval
    finally:
        hub.disconnect(channel)


class RedisRelay:
    """Share broadcast events between processes over Redis pub/sub."""

    def __init__(self, client: redis.Redis, hub: BroadcastHub, channel_name: str = "lanequeue:updates") -> None:
        self.client = client
        self.hub = hub
        self.channel_name = channel_name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_url(cls, url: str, hub: BroadcastHub, channel_name: str = "lanequeue:updates") -> "RedisRelay":
        return cls(redis.from_url(url, decode_responses=True), hub, channel_name)

    def publish(self, event: Event) -> None:
        self.client.publish(self.channel_name, json.dumps(event))

    def handle_message(self, message: Optional[Dict[str, Any]]) -> None:
        if not message or message.get("type") != "message":
            return
        try:
            event = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed relay message: %r", message.get("data"))
            return
        self.hub.deliver(event)

    def start(self) -> None:
        self.hub.relay = self
        self._thread = threading.Thread(target=self._listen, name="redis-relay", daemon=True)
        self._thread.start()
        logger.info("⚡ Redis relay listening on %s", self.channel_name)

    def stop(self) -> None:
        self._stop_event.set()
        if self.hub.relay is self:
            self.hub.relay = None
        t = self._thread
        if t and t.is_alive():
            t.join(timeout=2.0)

    def _listen(self) -> None:
        pubsub = self.client.pubsub()
        pubsub.subscribe(self.channel_name)
        try:
            while not self._stop_event.is_set():
                try:
                    self.handle_message(pubsub.get_message(timeout=1.0))
                except redis.RedisError as exc:
                    logger.error("Redis relay error: %s", exc)
                    self._stop_event.wait(1.0)
        finally:
            pubsub.close()
