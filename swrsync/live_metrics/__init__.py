"""
Push channel for admin metrics: wire models, transports, the shared
channel and the feed binding it to the cache.
"""
from .models import (
    EVENT_MODELS,
    PushEvent,
    PushEventName,
    encode_frame,
    parse_event,
)
from .transport import (
    ChannelClosed,
    ChannelTransport,
    LoopbackTransport,
    QueueSink,
    WebSocketTransport,
)
from .channel import ChannelState, PushChannel
from .feed import (
    BACKUP_KEY,
    BULK_KEY,
    HEALTH_KEY,
    METRICS_KEY,
    SESSIONS_KEY,
    MetricsFeed,
)

__all__ = [
    # Models
    "EVENT_MODELS",
    "PushEvent",
    "PushEventName",
    "encode_frame",
    "parse_event",
    # Transport
    "ChannelClosed",
    "ChannelTransport",
    "LoopbackTransport",
    "QueueSink",
    "WebSocketTransport",
    # Channel
    "ChannelState",
    "PushChannel",
    # Feed
    "MetricsFeed",
    "HEALTH_KEY",
    "METRICS_KEY",
    "SESSIONS_KEY",
    "BACKUP_KEY",
    "BULK_KEY",
]
