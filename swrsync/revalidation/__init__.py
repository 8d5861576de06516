"""
Revalidation triggers: focus, reconnect and interval polling.
"""
from .triggers import FocusTrigger, IntervalTrigger, ReconnectTrigger

__all__ = [
    "FocusTrigger",
    "IntervalTrigger",
    "ReconnectTrigger",
]
