"""
Wire models for the admin metrics push channel.

Each server-pushed event has its own schema; parse_event() is the single
place where a raw (name, payload) frame becomes a typed event. Merges into
cached state are plain functions per event kind.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field

from swrsync.utils.helpers import safe_lower


class PushEventName(str, Enum):
    """Event names on the wire."""
    # Server to client
    CONNECTED = "connected"
    METRICS_UPDATE = "metricsUpdate"
    QUICK_METRICS = "quickMetrics"
    SERVICE_ALERT = "serviceAlert"
    SESSION_UPDATE = "sessionUpdate"
    BACKUP_PROGRESS = "backupProgress"
    BULK_OPERATION_PROGRESS = "bulkOperationProgress"
    INITIAL_DATA = "initialData"
    HEARTBEAT_ACK = "heartbeat_ack"
    ERROR = "error"

    # Client to server
    REFRESH_METRICS = "refreshMetrics"
    REFRESH_SESSIONS = "refreshSessions"
    HEARTBEAT = "heartbeat"


class PushEvent(BaseModel):
    """Base push event; unknown fields are kept."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class MetricsUpdate(PushEvent):
    """Full health and metrics snapshot."""
    health: Optional[Dict[str, Any]] = None
    metrics: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None


class InitialData(PushEvent):
    """Snapshot sent once when an admin connects."""
    health: Optional[Dict[str, Any]] = None
    metrics: Optional[Dict[str, Any]] = None


class QuickMetrics(PushEvent):
    """Lightweight, frequent CPU / memory / uptime sample."""
    cpu: float
    memory: float
    uptime: float
    timestamp: Optional[datetime] = None


class ServiceAlert(PushEvent):
    """A monitored service changed status."""
    service: str
    status: Literal["up", "down"]
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None

    @property
    def service_key(self) -> str:
        return safe_lower(self.service)


class SessionUpdate(PushEvent):
    """Session statistics changed."""
    stats: Any = None
    action: Optional[Literal["terminated", "created", "updated"]] = None
    timestamp: Optional[datetime] = None


class BackupProgress(PushEvent):
    """Progress of a running backup."""
    status: Literal["running", "in_progress", "completed", "failed"]
    message: Optional[str] = None
    backup_id: Optional[str] = Field(default=None, alias="backupId")
    progress: Optional[float] = None
    timestamp: Optional[datetime] = None


class BulkOperationProgress(PushEvent):
    """Progress of a bulk import / update."""
    type: str
    completed: int
    total: int
    operation_id: Optional[str] = Field(default=None, alias="operationId")
    progress: Optional[float] = None
    timestamp: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.completed == self.total


class ErrorEvent(PushEvent):
    """Server-reported error."""
    message: str = "WebSocket error"
    code: Optional[str] = None


class Connected(PushEvent):
    """Handshake acknowledgement."""
    message: Optional[str] = None


class HeartbeatAck(PushEvent):
    """Reply to a client heartbeat, echoing its send time in ms."""
    timestamp: Optional[float] = None


EVENT_MODELS: Dict[str, Type[PushEvent]] = {
    PushEventName.CONNECTED.value: Connected,
    PushEventName.METRICS_UPDATE.value: MetricsUpdate,
    PushEventName.QUICK_METRICS.value: QuickMetrics,
    PushEventName.SERVICE_ALERT.value: ServiceAlert,
    PushEventName.SESSION_UPDATE.value: SessionUpdate,
    PushEventName.BACKUP_PROGRESS.value: BackupProgress,
    PushEventName.BULK_OPERATION_PROGRESS.value: BulkOperationProgress,
    PushEventName.INITIAL_DATA.value: InitialData,
    PushEventName.HEARTBEAT_ACK.value: HeartbeatAck,
    PushEventName.ERROR.value: ErrorEvent,
}

AnyPushEvent = Union[
    Connected,
    MetricsUpdate,
    QuickMetrics,
    ServiceAlert,
    SessionUpdate,
    BackupProgress,
    BulkOperationProgress,
    InitialData,
    HeartbeatAck,
    ErrorEvent,
]


def parse_event(name: str, payload: Any) -> Optional[PushEvent]:
    """
    Validate a raw frame against its event schema.

    Args:
        name: Event name from the frame
        payload: Decoded JSON payload (dict or None)

    Returns:
        Typed event, or None for events with no schema

    Raises:
        ValidationError: If the payload does not match the schema
    """
    model = EVENT_MODELS.get(name)
    if model is None:
        return None
    if payload is None:
        payload = {}
    if model is ErrorEvent and not isinstance(payload, dict):
        # Error events are sometimes sent as a bare string
        return ErrorEvent(message=str(payload))
    return model.model_validate(payload)


def encode_frame(event: str, payload: Any = None) -> Dict[str, Any]:
    """Build the JSON frame sent over the socket."""
    return {"event": event, "data": payload}


# =============================================================================
# Merges into cached state
# =============================================================================

def merge_quick_metrics(current: Optional[Dict[str, Any]], event: QuickMetrics) -> Dict[str, Any]:
    """
    Fold a quick sample into the cached metrics object.

    Only cpu.usage, memory.usagePercent and application.uptime change;
    every other field is carried over.
    """
    current = current or {}
    return {
        **current,
        "cpu": {**(current.get("cpu") or {}), "usage": event.cpu},
        "memory": {**(current.get("memory") or {}), "usagePercent": event.memory},
        "application": {**(current.get("application") or {}), "uptime": event.uptime},
    }


def apply_service_alert(health: Optional[Dict[str, Any]], event: ServiceAlert) -> Optional[Dict[str, Any]]:
    """
    Flip services[<service>].status in the cached health object.

    Returns the health object unchanged when there is no health data or
    the service is not listed.
    """
    if not health:
        return health
    services = health.get("services") or {}
    key = event.service_key
    if key not in services or not services[key]:
        return health
    return {
        **health,
        "services": {
            **services,
            key: {**services[key], "status": event.status},
        },
    }
