"""Transport base — pluggable interface for the persistent channel.

Learn: The connection manager never touches sockets directly. It asks a
factory for a fresh Transport on every attempt and drives it through:

1. open(url, headers)   — establish the channel
2. send(text) / receive() — exchange text frames
3. close()              — tear down (idempotent)

Every network-level failure surfaces as TransportError, and a 401/403
during the handshake as AuthenticationError, so the state machine only
has to reason about two kinds of failure.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from relaycore.errors import AuthenticationError, TransportError

logger = structlog.get_logger()


class Transport(ABC):
    """Abstract bidirectional text channel."""

    @abstractmethod
    async def open(self, url: str, headers: dict[str, str]) -> None:
        """Establish the channel. Raises TransportError / AuthenticationError."""

    @abstractmethod
    async def send(self, text: str) -> None:
        """Send one text frame. Raises TransportError."""

    @abstractmethod
    async def receive(self) -> str:
        """Wait for the next text frame.

        Raises TransportError once the channel is closed — normally or not.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...


class WebSocketTransport(Transport):
    """Transport over a WebSocket, using the ``websockets`` library."""

    def __init__(self, open_timeout: float = 10.0, ping_interval: Optional[float] = 20.0):
        self.open_timeout = open_timeout
        self.ping_interval = ping_interval
        self._ws: Optional[ClientConnection] = None

    async def open(self, url: str, headers: dict[str, str]) -> None:
        try:
            self._ws = await connect(
                url,
                additional_headers=headers,
                open_timeout=self.open_timeout,
                ping_interval=self.ping_interval,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthenticationError(f"Hub rejected credentials (HTTP {status})")
            raise TransportError(f"Handshake failed with HTTP {status}")
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"Could not connect to {url}: {e}")

    async def send(self, text: str) -> None:
        if self._ws is None:
            raise TransportError("Transport is not open")
        try:
            await self._ws.send(text)
        except (ConnectionClosed, OSError) as e:
            raise TransportError(f"Send failed: {e}")

    async def receive(self) -> str:
        if self._ws is None:
            raise TransportError("Transport is not open")
        try:
            message = await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportError(f"Connection closed: {e}")
        except OSError as e:
            raise TransportError(f"Receive failed: {e}")
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        return message

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except (OSError, WebSocketException):
            logger.debug("relaycore.transport.close_failed", exc_info=True)

    @property
    def is_open(self) -> bool:
        return self._ws is not None
