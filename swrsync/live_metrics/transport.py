"""
Transports carrying push-channel frames.

The channel only depends on the ChannelTransport protocol.
WebSocketTransport talks to a gateway over the network; LoopbackTransport
connects straight to an in-process MetricsHub, which is how the admin
dashboard runs inside the same process as the gateway.
"""
import asyncio
import json
import logging
from typing import Any, Optional, Protocol, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from config.settings import settings
from swrsync.errors import ChannelError

from .models import encode_frame

logger = logging.getLogger("live_metrics.transport")


class ChannelClosed(ChannelError):
    """The remote end closed the connection."""


class ChannelTransport(Protocol):
    """
    Interface for a duplex event connection.

    Implementations:
    - WebSocketTransport: JSON frames over a websocket connection
    - LoopbackTransport: in-process connection to a MetricsHub
    """

    async def connect(self) -> None:
        """Open the connection. Raises ChannelError on failure."""
        ...

    async def send(self, event: str, payload: Any = None) -> None:
        """Send a client event."""
        ...

    async def receive(self) -> Tuple[str, Any]:
        """Wait for the next server event. Raises ChannelClosed."""
        ...

    async def close(self) -> None:
        """Close the connection; safe to call more than once."""
        ...


class WebSocketTransport:
    """
    Connects a PushChannel to a gateway's websocket endpoint.

    Frames travel as JSON text {"event": name, "data": payload} in both
    directions, the shape encode_frame builds.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        open_timeout: float = 10.0,
        close_timeout: float = 5.0,
    ):
        """
        Args:
            url: ws:// or wss:// endpoint, settings.metrics_socket_url by default
            open_timeout: Seconds allowed for the opening handshake
            close_timeout: Seconds allowed for the closing handshake
        """
        self.url = url or settings.metrics_socket_url
        self._open_timeout = open_timeout
        self._close_timeout = close_timeout
        self._connection: Any = None

    async def connect(self) -> None:
        try:
            self._connection = await websockets.connect(
                self.url,
                open_timeout=self._open_timeout,
                close_timeout=self._close_timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise ChannelError(f"Could not connect to {self.url}: {e}") from e
        logger.debug(f"Websocket connected: {self.url}")

    async def send(self, event: str, payload: Any = None) -> None:
        if self._connection is None:
            raise ChannelClosed("Not connected")
        try:
            await self._connection.send(json.dumps(encode_frame(event, payload)))
        except ConnectionClosed as e:
            raise ChannelClosed(f"Server closed connection: {e}") from e

    async def receive(self) -> Tuple[str, Any]:
        if self._connection is None:
            raise ChannelClosed("Not connected")
        while True:
            try:
                message = await self._connection.recv()
            except ConnectionClosed as e:
                raise ChannelClosed(f"Server closed connection: {e}") from e
            try:
                frame = json.loads(message)
            except ValueError:
                logger.debug(f"Ignoring non-JSON frame: {message!r}")
                continue
            if not isinstance(frame, dict) or "event" not in frame:
                logger.debug(f"Ignoring malformed frame: {frame!r}")
                continue
            return frame["event"], frame.get("data")

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        await connection.close()


_CLOSE = object()


class QueueSink:
    """Server-side end of a loopback connection."""

    def __init__(self):
        self.inbox: "asyncio.Queue[Any]" = asyncio.Queue()
        self.closed = False

    async def send(self, event: str, payload: Any = None) -> None:
        if self.closed:
            return
        await self.inbox.put((event, payload))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.inbox.put(_CLOSE)


class LoopbackTransport:
    """
    Connects a PushChannel to a MetricsHub in the same event loop.
    """

    def __init__(self, hub: Any):
        """
        Args:
            hub: Object with async join(sink), leave(sink) and
                handle_client_event(sink, event, payload)
        """
        self._hub = hub
        self._sink: Optional[QueueSink] = None

    async def connect(self) -> None:
        sink = QueueSink()
        await self._hub.join(sink)
        self._sink = sink

    async def send(self, event: str, payload: Any = None) -> None:
        if self._sink is None or self._sink.closed:
            raise ChannelClosed("Not connected")
        await self._hub.handle_client_event(self._sink, event, payload)

    async def receive(self) -> Tuple[str, Any]:
        if self._sink is None:
            raise ChannelClosed("Not connected")
        item = await self._sink.inbox.get()
        if item is _CLOSE:
            raise ChannelClosed("Server closed connection")
        return item

    async def close(self) -> None:
        sink, self._sink = self._sink, None
        if sink is None:
            return
        await self._hub.leave(sink)
        await sink.close()
