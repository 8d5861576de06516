"""
Server side of the admin metrics channel. The FastAPI application lives in
swrsync.gateway.app.
"""
from .hub import MetricsHub, Sink
from .metrics_source import HostMetricsSource

__all__ = [
    "HostMetricsSource",
    "MetricsHub",
    "Sink",
]
