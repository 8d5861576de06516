"""
Keyed cache store with synchronous subscriber notification.

One instance is created per application (or per test) and handed to the
components that need it. Writes to a key are atomic with respect to its
subscribers: every subscriber sees the finished entry, and a write issued
from inside a subscriber callback for the same key is queued until the
current notification round completes.
"""
import asyncio
import itertools
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from .core import CacheEntry, CacheSnapshot, Subscriber

logger = logging.getLogger("cache.store")


class Subscription:
    """
    Handle returned by CacheStore.subscribe.

    Release it on teardown, either by calling unsubscribe() or by using
    it as a context manager. Releasing twice is a no-op.
    """

    def __init__(self, store: "CacheStore", key: str, token: int):
        self._store = store
        self.key = key
        self._token = token
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._store._remove_subscriber(self.key, self._token)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class CacheStore:
    """
    Process-wide map from cache key to CacheEntry.

    Usage:
        store = CacheStore()
        sub = store.subscribe("students", lambda snap: render(snap.data))
        store.set("students", [...])
        sub.unsubscribe()
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        retain_seconds: float = 300.0,
    ):
        """
        Initialize the store.

        Args:
            clock: Monotonic time source in seconds
            retain_seconds: Grace period before an entry with no
                subscribers is collected
        """
        self._entries: Dict[str, CacheEntry] = {}
        self._clock = clock
        self._retain_seconds = retain_seconds
        self._tokens = itertools.count(1)
        self._notifying: set = set()
        self._deferred: Dict[str, Deque[Callable[[], None]]] = {}
        self._drop_listeners: List[Callable[[str], None]] = []

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, key: str, callback: Subscriber) -> Subscription:
        """
        Register callback for key, creating a loading entry if needed.

        Returns:
            Subscription to release on teardown
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, is_loading=True)
            self._entries[key] = entry
            logger.debug(f"Created entry for {key}")

        token = next(self._tokens)
        entry.subscribers[token] = callback
        entry.orphaned_at = None
        return Subscription(self, key, token)

    def _remove_subscriber(self, key: str, token: int) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.subscribers.pop(token, None)
        if entry.subscribers:
            return

        entry.orphaned_at = self._clock()
        if self._retain_seconds <= 0:
            self._drop(key)
            return
        self._schedule_collect()

    def _schedule_collect(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(self._retain_seconds, self.collect_garbage)

    def on_drop(self, listener: Callable[[str], None]) -> Callable[[], None]:
        """Call listener with the key of every entry removed. Returns an unsubscribe function."""
        self._drop_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._drop_listeners:
                self._drop_listeners.remove(listener)

        return unsubscribe

    def subscriber_count(self, key: str) -> int:
        entry = self._entries.get(key)
        return len(entry.subscribers) if entry else 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[CacheSnapshot]:
        """Get an immutable view of the entry, or None."""
        entry = self._entries.get(key)
        return entry.snapshot() if entry else None

    def peek_data(self, key: str) -> Any:
        """Get cached data for a key, None if nothing was stored."""
        entry = self._entries.get(key)
        return entry.data if entry else None

    def keys(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: str, data: Any) -> None:
        """Store data, clear the error and loading flags, notify."""
        def apply(entry: CacheEntry) -> None:
            entry.data = data
            entry.error = None
            entry.fetched_at = self._clock()
            entry.is_loading = False
            entry.is_revalidating = False

        self._write(key, apply)

    def set_error(self, key: str, error: BaseException) -> None:
        """Record an error while keeping previously cached data."""
        def apply(entry: CacheEntry) -> None:
            entry.error = error
            entry.is_loading = False
            entry.is_revalidating = False

        self._write(key, apply)

    def mark_validating(self, key: str) -> None:
        """
        Flag a fetch in progress.

        Entries that already hold data become revalidating; entries that
        never did stay loading.
        """
        def apply(entry: CacheEntry) -> None:
            if entry.has_data:
                entry.is_revalidating = True
            else:
                entry.is_loading = True

        self._write(key, apply)

    def update(self, key: str, fn: Callable[[Any], Any]) -> None:
        """Read-modify-write against the value current at apply time."""
        def apply(entry: CacheEntry) -> None:
            entry.data = fn(entry.data)
            entry.error = None
            entry.fetched_at = self._clock()
            entry.is_loading = False
            entry.is_revalidating = False

        self._write(key, apply)

    def _write(self, key: str, apply: Callable[[CacheEntry], None]) -> None:
        if key in self._notifying:
            logger.debug(f"Deferring reentrant write to {key}")
            self._deferred.setdefault(key, deque()).append(
                lambda: self._write(key, apply)
            )
            return

        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, orphaned_at=self._clock())
            self._entries[key] = entry
        apply(entry)
        self._notify(key, entry)

    def _notify(self, key: str, entry: CacheEntry) -> None:
        snapshot = entry.snapshot()
        self._notifying.add(key)
        try:
            for callback in list(entry.subscribers.values()):
                try:
                    callback(snapshot)
                except Exception as e:
                    logger.warning(f"Subscriber for {key} raised: {e}")
        finally:
            self._notifying.discard(key)

        pending = self._deferred.pop(key, None)
        while pending:
            pending.popleft()()

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def delete(self, key: str) -> bool:
        """
        Drop an entry regardless of subscribers.

        Returns:
            True if entry was found and removed
        """
        if key in self._entries:
            self._drop(key)
            logger.info(f"Invalidated cache: {key}")
            return True
        return False

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        count = len(self._entries)
        for key in list(self._entries):
            self._drop(key)
        logger.info(f"Cleared {count} cache entries")
        return count

    def collect_garbage(self) -> int:
        """Remove orphaned entries whose grace period has passed."""
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if not entry.subscribers
            and entry.orphaned_at is not None
            and now - entry.orphaned_at >= self._retain_seconds
        ]
        for key in expired:
            self._drop(key)
        if expired:
            logger.debug(f"Collected {len(expired)} orphaned entries")
        return len(expired)

    def _drop(self, key: str) -> None:
        if self._entries.pop(key, None) is None:
            return
        self._deferred.pop(key, None)
        for listener in list(self._drop_listeners):
            try:
                listener(key)
            except Exception as e:
                logger.warning(f"Drop listener for {key} raised: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        return {
            "entries": len(self._entries),
            "subscribers": sum(len(e.subscribers) for e in self._entries.values()),
            "orphaned": sum(1 for e in self._entries.values() if not e.subscribers),
        }
