"""Fan-out of decoded readings to connected socket clients.

The hub owns the set of live client connections. Readings are pushed in with
``broadcast()``, which is synchronous and never waits on a client: each
connection has its own bounded outgoing queue drained by its own writer task.
A client whose queue overflows, whose drain exceeds the write timeout or whose
socket errors is dropped without affecting anybody else. A peer that only
shuts down its sending side keeps receiving lines; one that closes fully is
noticed by the next write that fails.

Ordering: each client receives lines in broadcast order, exactly once. A
client only receives lines broadcast after it was registered; there is no
replay of earlier readings.

Concurrency: the hub is owned by one asyncio event loop. Registration (from
the listener's connection callback), broadcast (from the ingestion task) and
removal (from client tasks) all run on that loop, and none of them awaits
while mutating the connection set, so the set is never observed in a torn
state.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Optional

from .decoder import SensorReading

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256
DEFAULT_WRITE_TIMEOUT = 5.0

@dataclass
class HubStats:
    """Counters describing hub activity since startup."""

    clients: int = 0
    accepted: int = 0
    dropped: int = 0
    lines: int = 0


class ClientConnection:
    """One registered output client.

    Created by ``BroadcastHub.register()`` and owned by the hub for its whole
    connected lifetime. Two tasks run per connection: a writer that drains
    the outgoing queue to the socket, and a watcher that reads (and discards)
    inbound bytes until the peer stops sending.
    """

    def __init__(
        self,
        hub: "BroadcastHub",
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        conn_id: int,
        queue_size: int,
        write_timeout: float,
    ) -> None:
        self._hub = hub
        self._reader = reader
        self._writer = writer
        self._write_timeout = write_timeout
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=queue_size)
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False
        self.id = conn_id
        self.peer = _describe_peer(writer, self.id)

    def __repr__(self) -> str:
        return f"ClientConnection(id={self.id}, peer={self.peer!r})"

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._write_loop(), name=f"client-{self.id}-writer"),
            asyncio.create_task(self._watch_peer(), name=f"client-{self.id}-watcher"),
        ]

    def offer(self, line: bytes) -> bool:
        """Queue a line for delivery. Returns False if the queue is full."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(line)
        except asyncio.QueueFull:
            return False
        return True

    async def _write_loop(self) -> None:
        try:
            while True:
                line = await self._queue.get()
                self._writer.write(line)
                await asyncio.wait_for(self._writer.drain(), timeout=self._write_timeout)
        except asyncio.TimeoutError:
            self._hub._drop(self, f"write stalled for {self._write_timeout:.1f}s")
        except (ConnectionError, OSError) as e:
            self._hub._drop(self, f"write failed: {e}")

    async def _watch_peer(self) -> None:
        try:
            while await self._reader.read(4096):
                pass
        except (ConnectionError, OSError) as e:
            self._hub._drop(self, f"read failed: {e}")
        else:
            # Half-close only ends what the peer sends; it may still be reading.
            # A fully closed peer surfaces as a write error or stall instead.
            logger.debug("Client %s finished sending", self.peer)

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()

    def abort(self) -> None:
        """Tear the connection down immediately, discarding unsent data."""
        self._closed = True
        self._cancel_tasks()
        self._writer.transport.abort()

    async def close(self) -> None:
        """Close the connection gracefully, flushing lines still queued."""
        self._closed = True
        self._cancel_tasks()
        while not self._queue.empty():
            self._writer.write(self._queue.get_nowait())
        self._writer.close()
        try:
            await asyncio.wait_for(self._writer.wait_closed(), timeout=self._write_timeout)
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            logger.debug("Client %s did not close cleanly: %s", self.peer, e)
            self._writer.transport.abort()


def _describe_peer(writer: asyncio.StreamWriter, conn_id: int) -> str:
    peer = writer.get_extra_info("peername")
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    if peer:
        return str(peer)
    return f"local#{conn_id}"


class BroadcastHub:
    """Deliver JSON lines to every connected client, independently.

    Args:
        queue_size: Maximum number of undelivered lines buffered per client.
            A client that falls further behind is treated as failed.
        write_timeout: Maximum seconds a single socket drain may take before
            the client is treated as failed.
    """

    def __init__(
        self,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
    ) -> None:
        self._queue_size = queue_size
        self._write_timeout = write_timeout
        self._clients: set[ClientConnection] = set()
        self._ids = itertools.count(1)
        self._closing = False
        self.stats = HubStats()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def register(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> Optional[ClientConnection]:
        """Take ownership of a freshly accepted connection.

        Returns:
            The new connection, or None if the hub is shutting down (in which
            case the socket is closed right away).
        """
        if self._closing:
            writer.transport.abort()
            return None

        conn = ClientConnection(
            self,
            reader,
            writer,
            conn_id=next(self._ids),
            queue_size=self._queue_size,
            write_timeout=self._write_timeout,
        )
        self._clients.add(conn)
        conn.start()
        self.stats.accepted += 1
        self.stats.clients = len(self._clients)
        logger.info("Client connected: %s (%d connected)", conn.peer, len(self._clients))
        return conn

    def broadcast(self, reading: SensorReading) -> int:
        """Serialize a reading and queue it for every connected client."""
        return self.broadcast_line(reading.to_json_line())

    def broadcast_line(self, line: bytes) -> int:
        """Queue an already serialized line for every connected client.

        Returns:
            Number of clients the line was queued for.
        """
        delivered = 0
        for conn in list(self._clients):
            if conn.offer(line):
                delivered += 1
            else:
                self._drop(conn, "slow consumer, outgoing queue full")
        self.stats.lines += 1
        return delivered

    def _drop(self, conn: ClientConnection, reason: str) -> None:
        if conn not in self._clients:
            return
        self._clients.discard(conn)
        conn.abort()
        self.stats.dropped += 1
        self.stats.clients = len(self._clients)
        logger.info(
            "Client disconnected: %s (%s, %d connected)",
            conn.peer,
            reason,
            len(self._clients),
        )

    async def close(self) -> None:
        """Close all client connections and refuse new ones."""
        self._closing = True
        clients = list(self._clients)
        self._clients.clear()
        self.stats.clients = 0
        if clients:
            logger.info("Closing %d client connection(s)", len(clients))
        await asyncio.gather(*(conn.close() for conn in clients))
