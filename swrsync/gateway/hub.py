"""
Server side of the admin metrics channel.

Every connected admin is a sink. The hub greets new sinks with a snapshot,
answers client requests and broadcasts pushed events.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Set

from swrsync.errors import ChannelError
from swrsync.live_metrics.models import PushEventName

from .metrics_source import HostMetricsSource

logger = logging.getLogger("gateway.hub")


class Sink(Protocol):
    """A connected client as seen by the hub."""

    async def send(self, event: str, payload: Any = None) -> None:
        ...

    async def close(self) -> None:
        ...


def _now() -> str:
    return datetime.utcnow().isoformat() + "Z"


class MetricsHub:
    """
    Fan-out point for admin metrics events.

    Usage:
        hub = MetricsHub()
        await hub.join(sink)          # sends connected + initialData
        await hub.publish_quick_metrics()
        await hub.leave(sink)
    """

    def __init__(self, source: Optional[HostMetricsSource] = None, accepting: bool = True):
        self.source = source or HostMetricsSource()
        self.accepting = accepting
        self._sinks: Set[Any] = set()

    @property
    def client_count(self) -> int:
        return len(self._sinks)

    async def join(self, sink: Sink) -> None:
        """
        Admit a client and send it the current snapshot.

        Raises:
            ChannelError: If the hub is not accepting connections
        """
        if not self.accepting:
            raise ChannelError("Metrics hub is not accepting connections")
        self._sinks.add(sink)
        self.source.active_sessions = len(self._sinks)
        logger.info(f"Admin connected ({len(self._sinks)} clients)")

        await sink.send(PushEventName.CONNECTED.value, {"message": "Connected to admin metrics"})
        await sink.send(PushEventName.INITIAL_DATA.value, self.snapshot())

    async def leave(self, sink: Sink) -> None:
        if sink in self._sinks:
            self._sinks.discard(sink)
            self.source.active_sessions = len(self._sinks)
            logger.info(f"Admin disconnected ({len(self._sinks)} clients)")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "health": self.source.detailed_health(),
            "metrics": self.source.realtime_metrics(),
        }

    async def handle_client_event(self, sink: Sink, event: str, payload: Any = None) -> None:
        """Answer a client-emitted event on the sink that sent it."""
        if event == PushEventName.REFRESH_METRICS.value:
            await sink.send(
                PushEventName.METRICS_UPDATE.value,
                {**self.snapshot(), "timestamp": _now()},
            )
        elif event == PushEventName.REFRESH_SESSIONS.value:
            await sink.send(
                PushEventName.SESSION_UPDATE.value,
                {"stats": self.source.session_stats(), "timestamp": _now()},
            )
        elif event == PushEventName.HEARTBEAT.value:
            timestamp = payload.get("timestamp") if isinstance(payload, dict) else None
            await sink.send(PushEventName.HEARTBEAT_ACK.value, {"timestamp": timestamp})
        else:
            logger.debug(f"Ignoring unknown client event: {event}")

    async def broadcast(self, event: str, payload: Any = None) -> int:
        """
        Send an event to every client.

        Clients whose send fails are dropped.

        Returns:
            Number of clients reached
        """
        delivered = 0
        for sink in list(self._sinks):
            try:
                await sink.send(event, payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping client after failed send: {e}")
                await self.leave(sink)
        return delivered

    async def publish_metrics(self) -> int:
        return await self.broadcast(
            PushEventName.METRICS_UPDATE.value,
            {**self.snapshot(), "timestamp": _now()},
        )

    async def publish_quick_metrics(self) -> int:
        return await self.broadcast(PushEventName.QUICK_METRICS.value, self.source.quick_metrics())

    async def set_service_status(self, service: str, status: str) -> int:
        """Record a service status change and alert every client."""
        if not self.source.set_service_status(service, status):
            return 0
        logger.warning(f"Service {service} is {status.upper()}")
        return await self.broadcast(
            PushEventName.SERVICE_ALERT.value,
            {"service": service, "status": status, "timestamp": _now()},
        )

    async def publish_backup_progress(self, status: str, message: Optional[str] = None, **extra: Any) -> int:
        payload = {"status": status, **extra}
        if message is not None:
            payload["message"] = message
        return await self.broadcast(PushEventName.BACKUP_PROGRESS.value, payload)

    async def publish_bulk_progress(self, operation_type: str, completed: int, total: int) -> int:
        return await self.broadcast(
            PushEventName.BULK_OPERATION_PROGRESS.value,
            {"type": operation_type, "completed": completed, "total": total},
        )

    async def disconnect_all(self) -> int:
        """Close every client connection."""
        sinks = list(self._sinks)
        self._sinks.clear()
        self.source.active_sessions = 0
        for sink in sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.debug(f"Error closing client: {e}")
        return len(sinks)
