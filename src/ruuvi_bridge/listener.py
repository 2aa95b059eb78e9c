"""Socket listener registering accepted clients with the broadcast hub."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import stat
from dataclasses import dataclass
from typing import Optional

from .hub import BroadcastHub

logger = logging.getLogger(__name__)

UNIX_PREFIX = "unix:"


class ListenerState(enum.Enum):
    STARTING = "starting"
    LISTENING = "listening"
    CLOSED = "closed"


class ListenerBindError(RuntimeError):
    """The listening socket could not be created."""


@dataclass(frozen=True)
class ListenAddress:
    """Parsed listen address: either TCP host/port or a unix socket path."""

    host: Optional[str] = None
    port: Optional[int] = None
    path: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "ListenAddress":
        """Parse ``HOST:PORT``, ``[IPv6]:PORT`` or ``unix:/path``.

        Raises:
            ValueError: If the address is not in one of those forms.
        """
        text = text.strip()
        if text.startswith(UNIX_PREFIX):
            path = text[len(UNIX_PREFIX) :]
            if not path:
                raise ValueError("unix socket address needs a path")
            return cls(path=path)

        host, sep, port_text = text.rpartition(":")
        if not sep or not port_text.isdigit():
            raise ValueError(f"expected HOST:PORT or unix:/path, got {text!r}")
        port = int(port_text)
        if not 0 <= port <= 65535:
            raise ValueError(f"port out of range: {port}")
        host = host.strip("[]") or "0.0.0.0"
        return cls(host=host, port=port)

    @property
    def is_unix(self) -> bool:
        return self.path is not None

    def __str__(self) -> str:
        if self.is_unix:
            return f"{UNIX_PREFIX}{self.path}"
        return f"{self.host}:{self.port}"


class SocketListener:
    """Accepts client connections for the lifetime of the process.

    Accept-loop errors such as file descriptor exhaustion are handled by the
    asyncio server itself, which logs them and retries after a short pause;
    the listener stays in LISTENING throughout.
    """

    def __init__(self, address: ListenAddress, hub: BroadcastHub) -> None:
        self._address = address
        self._hub = hub
        self._server: Optional[asyncio.AbstractServer] = None
        self.state = ListenerState.STARTING

    @property
    def address(self) -> ListenAddress:
        return self._address

    def bound_addresses(self) -> list[str]:
        """Return the actual socket names, useful when binding port 0."""
        if self._server is None:
            return []
        names = []
        for sock in self._server.sockets:
            name = sock.getsockname()
            if isinstance(name, tuple):
                names.append(f"{name[0]}:{name[1]}")
            else:
                names.append(f"{UNIX_PREFIX}{name}")
        return names

    def bound_port(self) -> Optional[int]:
        if self._server is None or self._address.is_unix:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """Bind and begin accepting connections.

        Raises:
            ListenerBindError: If the address cannot be bound.
        """
        if self._server is not None:
            return

        path = self._address.path
        try:
            if path is not None:
                _remove_stale_socket(path)
                self._server = await asyncio.start_unix_server(self._on_connect, path=path)
            else:
                self._server = await asyncio.start_server(
                    self._on_connect, host=self._address.host, port=self._address.port
                )
        except OSError as e:
            raise ListenerBindError(f"Cannot listen on {self._address}: {e}") from e

        self.state = ListenerState.LISTENING
        logger.info("Listening on %s", ", ".join(self.bound_addresses()))

    async def _on_connect(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._hub.register(reader, writer)

    async def close(self) -> None:
        """Stop accepting, close the hub's clients, then wait for the server."""
        server, self._server = self._server, None
        self.state = ListenerState.CLOSED
        if server is None:
            return
        server.close()
        # wait_closed() also waits for accepted connections on newer Pythons
        await self._hub.close()
        await server.wait_closed()
        if self._address.is_unix and self._address.path:
            _remove_stale_socket(self._address.path)
        logger.info("Listener on %s closed", self._address)


def _remove_stale_socket(path: str) -> None:
    try:
        mode = os.stat(path).st_mode
    except FileNotFoundError:
        return
    if not stat.S_ISSOCK(mode):
        raise OSError(f"{path} exists and is not a socket")
    os.unlink(path)
