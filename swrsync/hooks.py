"""
Consumer-facing accessors binding a consumer's lifetime to cache keys.

    handle = use_swr(coordinator, "students", load_students, on_change=render)
    ...
    handle.close()

A handle holds one registration for as long as it is open. Closing it
releases the subscription; any fetch other handles are waiting on keeps
running.
"""
import logging
from typing import Any, Callable, Optional

from swrsync.cache.core import CacheSnapshot, CacheSource, SWRState
from swrsync.cache.manager import Fetcher, FetchCoordinator, Registration
from swrsync.live_metrics.channel import PushChannel
from swrsync.live_metrics.feed import MetricsFeed

logger = logging.getLogger("hooks")


class SWRHandle:
    """
    One consumer's view of a cache key.

    A handle created with key=None is disabled: it never fetches and
    reports no data, which lets a consumer wait for a dependency.
    """

    def __init__(
        self,
        coordinator: FetchCoordinator,
        key: Optional[str],
        fetcher: Fetcher,
        on_change: Optional[Callable[[SWRState], None]] = None,
        **options: Any,
    ):
        self._coordinator = coordinator
        self.key = key
        self._on_change = on_change
        self._snapshot: Optional[CacheSnapshot] = None
        self._shown_data = False
        self._registration: Optional[Registration] = None

        if key is None:
            logger.debug("Conditional fetch disabled (no key)")
            return

        self._registration = coordinator.mount(key, fetcher, self._receive, **options)
        if self._snapshot is None:
            self._receive(coordinator.store.get(key), notify=False)

    def _receive(self, snapshot: Optional[CacheSnapshot], notify: bool = True) -> None:
        self._snapshot = snapshot
        if snapshot is not None and snapshot.has_data:
            self._shown_data = True
        if notify and self._on_change is not None:
            self._on_change(self.state)

    @property
    def data(self) -> Any:
        return self._snapshot.data if self._snapshot else None

    @property
    def error(self) -> Optional[BaseException]:
        return self._snapshot.error if self._snapshot else None

    @property
    def is_loading(self) -> bool:
        """True until this handle has seen data for the first time."""
        if self._shown_data or self._snapshot is None:
            return False
        return self._snapshot.is_loading

    @property
    def is_revalidating(self) -> bool:
        return bool(self._snapshot and self._snapshot.is_revalidating)

    @property
    def state(self) -> SWRState:
        return SWRState(
            key=self.key or "",
            data=self.data,
            error=self.error,
            is_loading=self.is_loading,
            is_revalidating=self.is_revalidating,
            source=CacheSource.FRESH,
        )

    @property
    def active(self) -> bool:
        return self._registration is not None and self._registration.active

    async def revalidate(self) -> SWRState:
        """Force a producer run, bypassing the deduping interval."""
        if self.key is None:
            return self.state
        await self._coordinator.revalidate(self.key, force=True)
        return self.state

    async def mutate(self, data: Any, revalidate: bool = True) -> SWRState:
        """Replace cached data (or apply a function to it), then optionally revalidate."""
        if self.key is None:
            return self.state
        await self._coordinator.mutate(self.key, data, revalidate=revalidate)
        return self.state

    def close(self) -> None:
        if self._registration is not None:
            self._registration.close()

    def __enter__(self) -> "SWRHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def use_swr(
    coordinator: FetchCoordinator,
    key: Optional[str],
    fetcher: Fetcher,
    on_change: Optional[Callable[[SWRState], None]] = None,
    **options: Any,
) -> SWRHandle:
    """
    Bind a consumer to key.

    Args:
        coordinator: Shared fetch coordinator
        key: Cache key, or None to disable fetching
        fetcher: Zero-argument coroutine function producing the data
        on_change: Called with the handle's state after every store write
        **options: SWROptions overrides for this consumer

    Returns:
        An open SWRHandle; close it when the consumer goes away
    """
    return SWRHandle(coordinator, key, fetcher, on_change=on_change, **options)


def use_metrics_socket(
    coordinator: FetchCoordinator,
    channel: PushChannel,
    **options: Any,
) -> MetricsFeed:
    """
    Start an admin metrics feed on a shared channel.

    The returned feed is already started; stop it with `await feed.stop()`
    or use it as an async context manager.
    """
    feed = MetricsFeed(coordinator, channel, **options)
    feed.start()
    return feed
