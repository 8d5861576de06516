"""
Request coalescing to prevent duplicate producer calls.

When several consumers ask for the same key while a fetch is running,
only one producer call is made and every caller awaits the same task.
Each started fetch is stamped with a per-key sequence number; only the
latest number may write its result. Numbers come from one counter shared
by every key, so forgetting a key never reissues a number that a
superseded fetch still holds.
"""
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger("cache.coalescer")


@dataclass
class FetchTask:
    """Tracks an in-progress producer call."""
    key: str
    sequence: int
    task: "asyncio.Future[Any]"
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one producer call.

    Pattern:
    - First request for a key starts the task
    - Later requests for the same key await that task
    - A superseding request starts a new task and takes over the key;
      the older task keeps running but its sequence is no longer current
    - Waiters are shielded, so a cancelled waiter never cancels the
      shared task

    Usage:
        coalescer = RequestCoalescer()
        fetch = coalescer.get_or_start(
            "students",
            lambda seq: load_students(seq),
        )
        await coalescer.wait(fetch)
    """

    def __init__(self):
        self._in_flight: Dict[str, FetchTask] = {}
        self._sequences: Dict[str, int] = {}
        self._counter = itertools.count(1)

    def get_or_start(
        self,
        key: str,
        factory: Callable[[int], Awaitable[Any]],
        supersede: bool = False,
    ) -> FetchTask:
        """
        Join the in-flight fetch for key or start a new one.

        Args:
            key: Cache key
            factory: Called with the new sequence number, returns the
                awaitable to run. It must not touch the store; the
                fetch is only registered once it returns
            supersede: Start a new fetch even if one is in flight

        Returns:
            The FetchTask now owning the key
        """
        existing = self._in_flight.get(key)
        if existing is not None and not supersede:
            existing.waiter_count += 1
            logger.debug(
                f"Coalescing request for {key} (waiters: {existing.waiter_count})"
            )
            return existing

        sequence = self.bump(key)
        task = asyncio.ensure_future(factory(sequence))
        fetch = FetchTask(key=key, sequence=sequence, task=task)
        self._in_flight[key] = fetch
        task.add_done_callback(lambda _t, f=fetch: self._finish(f))
        if existing is not None:
            logger.debug(f"Superseding fetch #{existing.sequence} for {key} with #{sequence}")
        else:
            logger.debug(f"Initiating fetch #{sequence} for {key}")
        return fetch

    def _finish(self, fetch: FetchTask) -> None:
        if self._in_flight.get(fetch.key) is fetch:
            del self._in_flight[fetch.key]

    async def wait(self, fetch: FetchTask) -> Any:
        """Await a fetch without letting cancellation reach the shared task."""
        return await asyncio.shield(fetch.task)

    def bump(self, key: str) -> int:
        """
        Issue the next sequence number for key.

        Direct cache writes call this too, so that any fetch started
        before the write can no longer overwrite it.
        """
        sequence = next(self._counter)
        self._sequences[key] = sequence
        return sequence

    def is_current(self, key: str, sequence: int) -> bool:
        return self._sequences.get(key) == sequence

    def forget(self, key: str) -> None:
        """Drop the sequence for key. Results of older fetches stay stale."""
        self._sequences.pop(key, None)

    def in_flight(self, key: str) -> Optional[FetchTask]:
        return self._in_flight.get(key)

    def cancel_all(self) -> int:
        """Cancel every in-flight task. Returns how many were cancelled."""
        fetches = list(self._in_flight.values())
        for fetch in fetches:
            fetch.task.cancel()
        self._in_flight.clear()
        return len(fetches)

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
            "tracked_keys": len(self._sequences),
        }
