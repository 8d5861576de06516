"""
Reference-counted push channel with reconnection and heartbeat.

State machine:

    disconnected -> connecting -> connected -> (error | disconnected)

A failed connect moves to error and retries with bounded exponential
backoff until socket_reconnect_attempts is reached. A dropped connection
moves to disconnected and reconnects. Consumers share one channel through
acquire()/release(); the connection closes when the last one releases.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from config.settings import settings

from .models import HeartbeatAck, PushEvent, PushEventName, parse_event
from .transport import ChannelClosed, ChannelTransport

logger = logging.getLogger("live_metrics.channel")

EventHandler = Callable[[Any], None]
StateListener = Callable[["ChannelState"], None]
TransportFactory = Callable[[], ChannelTransport]


class ChannelState(str, Enum):
    """Connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class PushChannel:
    """
    Duplex event channel shared by every consumer of server-pushed data.

    Handlers receive the typed event model for known events and the raw
    payload for anything else. Frames are dispatched one at a time, in
    arrival order.

    Usage:
        channel = PushChannel(lambda: LoopbackTransport(hub))
        off = channel.on("quickMetrics", handle_quick_metrics)
        channel.acquire()
        ...
        off()
        await channel.release()
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        reconnect_attempts: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
        reconnect_delay_max: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the channel. Nothing connects until acquire() or connect().

        Args:
            transport_factory: Builds a fresh transport per connection attempt
            reconnect_attempts: Consecutive failed connects before giving up
            reconnect_delay: First backoff delay in seconds
            reconnect_delay_max: Backoff ceiling in seconds
            heartbeat_interval: Seconds between heartbeats, 0 disables
        """
        self._factory = transport_factory
        self._reconnect_attempts = (
            reconnect_attempts if reconnect_attempts is not None
            else settings.socket_reconnect_attempts
        )
        self._reconnect_delay = (
            reconnect_delay if reconnect_delay is not None
            else settings.socket_reconnect_delay
        )
        self._reconnect_delay_max = (
            reconnect_delay_max if reconnect_delay_max is not None
            else settings.socket_reconnect_delay_max
        )
        self._heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None
            else settings.heartbeat_interval
        )
        self._clock = clock

        self._state = ChannelState.DISCONNECTED
        self.connection_error: Optional[str] = None
        self._transport: Optional[ChannelTransport] = None
        self._ref_count = 0
        self._closing = False
        self._connect_task: Optional["asyncio.Task[None]"] = None
        self._heartbeat_task: Optional["asyncio.Task[None]"] = None

        self._handlers: Dict[str, List[EventHandler]] = {}
        self._state_listeners: List[StateListener] = []

        # Connection quality
        self._latency: Optional[float] = None
        self._last_heartbeat: Optional[float] = None
        self._missed_heartbeats = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ChannelState.CONNECTED

    @property
    def ref_count(self) -> int:
        return self._ref_count

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener for state transitions. Returns an unsubscribe function."""
        self._state_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: ChannelState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.info(f"Channel {previous.value} -> {state.value}")
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"State listener raised: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def acquire(self, connect: bool = True) -> int:
        """
        Take a reference on the channel, connecting if needed.

        Returns:
            The new reference count
        """
        self._ref_count += 1
        if connect:
            self.connect()
        return self._ref_count

    async def release(self) -> int:
        """
        Drop a reference; closes the connection when none remain.

        Returns:
            The new reference count
        """
        self._ref_count = max(0, self._ref_count - 1)
        if self._ref_count == 0:
            await self.close()
        return self._ref_count

    def connect(self) -> "asyncio.Task[None]":
        """Start (or return) the connection loop."""
        if self._connect_task is not None and not self._connect_task.done():
            return self._connect_task
        self._closing = False
        self._connect_task = asyncio.ensure_future(self._connection_loop())
        return self._connect_task

    async def reconnect(self) -> None:
        """Force a fresh connection."""
        await self.close()
        self.connect()

    async def close(self) -> None:
        """Close the connection and stop reconnecting."""
        self._closing = True
        task, self._connect_task = self._connect_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._teardown_transport()
        self._set_state(ChannelState.DISCONNECTED)

    async def _teardown_transport(self) -> None:
        self._stop_heartbeat()
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport: {e}")

    def _backoff(self, attempt: int) -> float:
        delay = self._reconnect_delay * (2 ** max(0, attempt - 1))
        return min(delay, self._reconnect_delay_max)

    async def _connection_loop(self) -> None:
        failures = 0
        while not self._closing:
            self._set_state(ChannelState.CONNECTING)
            transport = self._factory()
            try:
                await transport.connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures += 1
                self.connection_error = str(e) or type(e).__name__
                logger.warning(
                    f"Connection error (attempt {failures}/{self._reconnect_attempts}): "
                    f"{self.connection_error}"
                )
                self._set_state(ChannelState.ERROR)
                if failures >= self._reconnect_attempts:
                    self.connection_error = "Failed to reconnect after multiple attempts"
                    logger.error(self.connection_error)
                    return
                await asyncio.sleep(self._backoff(failures))
                continue

            failures = 0
            self._transport = transport
            self.connection_error = None
            self._reset_quality()
            self._set_state(ChannelState.CONNECTED)
            self._start_heartbeat()

            reason = await self._read_loop(transport)
            await self._teardown_transport()
            if self._closing:
                return
            logger.info(f"Disconnected: {reason}")
            self._set_state(ChannelState.DISCONNECTED)
            await asyncio.sleep(self._backoff(1))

    async def _read_loop(self, transport: ChannelTransport) -> str:
        while True:
            try:
                name, payload = await transport.receive()
            except asyncio.CancelledError:
                raise
            except ChannelClosed as e:
                return str(e) or "closed"
            except Exception as e:
                logger.warning(f"Receive failed: {e}")
                return str(e)
            self._dispatch(name, payload)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to an event. Returns an unsubscribe function."""
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            self.off(event, handler)

        return unsubscribe

    def off(self, event: str, handler: EventHandler) -> None:
        """Unsubscribe a handler from an event."""
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event]

    def handler_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._handlers.get(event, []))
        return sum(len(h) for h in self._handlers.values())

    def _dispatch(self, name: str, payload: Any) -> None:
        try:
            event = parse_event(name, payload)
        except ValidationError as e:
            logger.warning(f"Dropping malformed {name} event: {e.error_count()} errors")
            return

        if isinstance(event, HeartbeatAck):
            self._record_heartbeat_ack(event)

        message = event if event is not None else payload
        for handler in list(self._handlers.get(name, [])):
            try:
                handler(message)
            except Exception as e:
                logger.error(f"Error in listener for {name}: {e}")

    async def emit(self, event: str, payload: Any = None) -> bool:
        """
        Send a client event.

        Returns:
            True if the channel was connected and the event was sent
        """
        transport = self._transport
        if not self.is_connected or transport is None:
            logger.warning(f"Cannot emit '{event}': not connected")
            return False
        try:
            await transport.send(event, payload)
        except Exception as e:
            logger.warning(f"Emit '{event}' failed: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        if self._heartbeat_interval > 0:
            self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self) -> None:
        while self.is_connected:
            await asyncio.sleep(self._heartbeat_interval)
            now = self._clock()
            if self._last_heartbeat is not None and now - self._last_heartbeat > self._heartbeat_interval * 2:
                self._missed_heartbeats += 1
            await self.emit(PushEventName.HEARTBEAT.value, {"timestamp": time.time() * 1000})

    def _record_heartbeat_ack(self, event: HeartbeatAck) -> None:
        now_ms = time.time() * 1000
        self._latency = now_ms - (event.timestamp or now_ms)
        self._last_heartbeat = self._clock()
        self._missed_heartbeats = 0

    def _reset_quality(self) -> None:
        self._latency = None
        self._last_heartbeat = None
        self._missed_heartbeats = 0

    def connection_quality(self) -> Dict[str, Any]:
        """Latency in ms, missed heartbeats and an overall health flag."""
        return {
            "latency": self._latency,
            "last_heartbeat": self._last_heartbeat,
            "missed_heartbeats": self._missed_heartbeats,
            "is_healthy": (
                self._missed_heartbeats < 3
                and self._latency is not None
                and self._latency < 1000
            ),
        }
