"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
from enum import Enum


Subscriber = Callable[["CacheSnapshot"], None]


class CacheSource(Enum):
    """How a read was served."""
    FRESH = "fresh"       # Within the deduping interval, no network call
    STALE = "stale"       # Served cached data, revalidating in background
    UPSTREAM = "upstream" # First load, waited on the producer


@dataclass
class CacheEntry:
    """
    Mutable per-key record owned by the CacheStore.

    Subscribers are kept in registration order; the token is the key
    used to remove them again.
    """
    key: str
    data: Any = None
    error: Optional[BaseException] = None
    fetched_at: Optional[float] = None
    is_loading: bool = False
    is_revalidating: bool = False
    subscribers: Dict[int, Subscriber] = field(default_factory=dict)
    orphaned_at: Optional[float] = None

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None

    def snapshot(self) -> "CacheSnapshot":
        return CacheSnapshot(
            key=self.key,
            data=self.data,
            error=self.error,
            fetched_at=self.fetched_at,
            is_loading=self.is_loading,
            is_revalidating=self.is_revalidating,
        )


@dataclass(frozen=True)
class CacheSnapshot:
    """
    Immutable view of an entry, handed to subscribers and readers.
    """
    key: str
    data: Any
    error: Optional[BaseException]
    fetched_at: Optional[float]
    is_loading: bool
    is_revalidating: bool

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None

    def age(self, now: float) -> Optional[float]:
        """Seconds since data was stored, None if never stored."""
        if self.fetched_at is None:
            return None
        return now - self.fetched_at

    def is_fresh(self, now: float, interval: float) -> bool:
        """Check if data is younger than the deduping interval."""
        age = self.age(now)
        return age is not None and age < interval


@dataclass(frozen=True)
class SWRState:
    """
    Result of a coordinator read: the values a consumer renders.
    """
    key: str
    data: Any = None
    error: Optional[BaseException] = None
    is_loading: bool = False
    is_revalidating: bool = False
    source: CacheSource = CacheSource.UPSTREAM

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON responses."""
        return {
            "key": self.key,
            "data": self.data,
            "error": str(self.error) if self.error else None,
            "isLoading": self.is_loading,
            "isRevalidating": self.is_revalidating,
            "cacheSource": self.source.value,
        }
