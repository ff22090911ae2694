"""
Connections — registry of open SSE streams.

One entry per key: a single-operation "progress" stream is keyed by the id
the caller chose (usually a customer or record id), a panel "processes"
stream by ``<subscriber>_processes``. Registering a key that is already in
use replaces the old entry. Delivery is best-effort: sending to a key nobody
is listening on is silently dropped.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable

from events import KEEPALIVE, ServerEvent, send_event
from models import utcnow
from timers import Timer, running_loop
from transport import Transport

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    PROGRESS = "progress"
    PROCESSES = "processes"


def connection_key(subscriber_id: str, channel: Channel) -> str:
    """Keys end with the channel name, e.g. ``cust-1_progress`` or ``u1_processes``."""
    return f"{subscriber_id}_{channel.value}"


@dataclass(eq=False)
class Connection:
    """Handle for one registered stream. Keep it to unregister later."""

    key: str
    channel: Channel
    transport: Transport
    keepalive: Timer | None = None
    opened_at: datetime = field(default_factory=utcnow)

    def release(self) -> None:
        if self.keepalive is not None:
            self.keepalive.cancel()


class ConnectionRegistry:
    def __init__(self, keepalive_interval: float = 30.0):
        self.keepalive_interval = keepalive_interval
        self._connections: dict[str, Connection] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._connections

    def register(
        self,
        key: str,
        transport: Transport,
        channel: Channel,
        greeting: Iterable[ServerEvent] = (),
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> Connection:
        """Greet the new stream, start its keepalive and start addressing it by ``key``."""
        connection = Connection(key=key, channel=channel, transport=transport)
        for event in greeting:
            send_event(transport, event)

        loop = loop or running_loop()
        if loop is not None:
            connection.keepalive = Timer(
                loop, self.keepalive_interval, lambda: self._ping(connection), repeat=True
            )
        else:
            logger.warning("[SSE] No event loop, %s registered without keepalive", key)

        with self._lock:
            previous = self._connections.get(key)
            self._connections[key] = connection
            total = len(self._connections)

        if previous is not None:
            previous.release()
            logger.info("[SSE] Replaced stream for %s", key)
        logger.info("[SSE] Registered %s stream %s (%d open)", channel.value, key, total)
        return connection

    def remove(self, key: str, connection: Connection | None = None) -> bool:
        """Stop addressing ``key``. Passing the handle protects a newer stream on the same key."""
        if connection is not None:
            connection.release()
        with self._lock:
            current = self._connections.get(key)
            if current is None or (connection is not None and current is not connection):
                return False
            del self._connections[key]
            total = len(self._connections)
        current.release()
        logger.info("[SSE] Removed stream %s (%d open)", key, total)
        return True

    def get(self, key: str) -> Connection | None:
        with self._lock:
            return self._connections.get(key)

    def keys(self, channel: Channel | None = None) -> list[str]:
        with self._lock:
            return [
                key for key, conn in self._connections.items()
                if channel is None or conn.channel is channel
            ]

    def send(self, key: str, event: ServerEvent) -> bool:
        """Deliver to whoever is listening on ``key`` right now, if anyone."""
        connection = self.get(key)
        if connection is None:
            logger.debug("[SSE] Nobody listening on %s, dropping %s", key, event.event)
            return False
        return send_event(connection.transport, event)

    def broadcast(self, channel: Channel, event: ServerEvent) -> int:
        """Deliver to every stream on a channel. Returns how many writes succeeded."""
        with self._lock:
            targets = [conn for conn in self._connections.values() if conn.channel is channel]
        return sum(1 for conn in targets if send_event(conn.transport, event))

    def close_all(self) -> None:
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.release()

    def _ping(self, connection: Connection) -> None:
        if connection.transport.closed:
            logger.info("[SSE] Stream %s went away, cleaning up", connection.key)
            self.remove(connection.key, connection)
            return
        try:
            connection.transport.write(KEEPALIVE)
        except Exception as e:
            logger.warning("[SSE] Keepalive failed for %s: %s", connection.key, e)
            self.remove(connection.key, connection)
