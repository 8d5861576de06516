"""
Client-side cache with stale-while-revalidate, request coalescing and
out-of-order completion guards.
"""
from .core import CacheEntry, CacheSnapshot, CacheSource, SWRState
from .options import SWROptions
from .store import CacheStore, Subscription
from .coalescer import FetchTask, RequestCoalescer
from .manager import FetchCoordinator, Registration

__all__ = [
    # Core types
    "CacheEntry",
    "CacheSnapshot",
    "CacheSource",
    "SWRState",
    # Options
    "SWROptions",
    # Store
    "CacheStore",
    "Subscription",
    # Coalescing
    "FetchTask",
    "RequestCoalescer",
    # Coordinator
    "FetchCoordinator",
    "Registration",
]
