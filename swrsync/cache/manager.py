"""
Fetch orchestration with stale-while-revalidate, deduplication and retry.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .core import CacheSource, SWRState, Subscriber
from .coalescer import FetchTask, RequestCoalescer
from .options import SWROptions
from .store import CacheStore, Subscription

logger = logging.getLogger("cache.manager")

Fetcher = Callable[[], Awaitable[Any]]


@dataclass
class Registration:
    """
    A mounted consumer of a key.

    Revalidation triggers look registrations up by their options; closing
    the registration releases its store subscription.
    """
    key: str
    fetcher: Fetcher
    options: SWROptions
    subscription: Subscription
    coordinator: "FetchCoordinator" = field(repr=False)
    last_focus_revalidate: Optional[float] = None

    @property
    def active(self) -> bool:
        return self.subscription.active

    def close(self) -> None:
        self.coordinator._unregister(self)

    def __enter__(self) -> "Registration":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class FetchCoordinator:
    """
    Decides when producers run and keeps the store's flags in step:
    - First load waits on the producer (isLoading)
    - Fresh hits skip the network entirely
    - Stale hits return cached data and revalidate in the background
    - Concurrent requests for a key share one producer call
    - Late results from superseded fetches are discarded
    - Failed fetches keep stale data and retry while the key is mounted

    Producer errors never propagate out of the coordinator; they are
    recorded on the entry and surfaced through SWRState.error.
    """

    def __init__(
        self,
        store: CacheStore,
        options: Optional[SWROptions] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Cache store shared with push channels and consumers
            options: Default options, settings-derived when omitted
            clock: Monotonic time source, must match the store's
        """
        self._store = store
        self._options = options or SWROptions.from_settings()
        self._clock = clock
        self._coalescer = RequestCoalescer()
        self._fetchers: Dict[str, Fetcher] = {}
        self._registrations: Dict[str, List[Registration]] = {}
        self._retry_counts: Dict[str, int] = {}
        self._retry_tasks: Dict[str, "asyncio.Task[None]"] = {}
        self._background: Set["asyncio.Task[Any]"] = set()
        self._stop_forgetting = store.on_drop(self._forget)

        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "revalidations": 0,
            "discarded": 0,
            "errors": 0,
        }

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def options(self) -> SWROptions:
        return self._options

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, key: str, fetcher: Fetcher, **overrides: Any) -> SWRState:
        """
        Read key through the cache.

        Args:
            key: Cache key
            fetcher: Zero-argument coroutine function producing the data
            **overrides: SWROptions fields for this call

        Returns:
            SWRState describing what the consumer should render
        """
        options = self._options.merged(**overrides)
        self._fetchers[key] = fetcher
        snapshot = self._store.get(key)

        if snapshot is None or not snapshot.has_data:
            logger.info(f"CACHE MISS: {key}")
            self._stats["misses"] += 1
            self._start(key, fetcher)
            await self._settle(key)
            return self._state(key, CacheSource.UPSTREAM)

        if snapshot.is_fresh(self._clock(), options.deduping_interval):
            logger.debug(f"CACHE HIT (fresh): {key}")
            self._stats["hits_fresh"] += 1
            return self._state(key, CacheSource.FRESH)

        logger.info(f"CACHE HIT (stale, revalidating): {key}")
        self._stats["hits_stale"] += 1
        self._start(key, fetcher)
        return self._state(key, CacheSource.STALE)

    def mount(
        self,
        key: str,
        fetcher: Fetcher,
        callback: Subscriber,
        **overrides: Any,
    ) -> Registration:
        """
        Subscribe a consumer and kick off whatever fetch the entry needs.

        Must be called with a running event loop; the fetch is scheduled,
        not awaited.
        """
        options = self._options.merged(**overrides)
        subscription = self._store.subscribe(key, callback)
        registration = Registration(
            key=key,
            fetcher=fetcher,
            options=options,
            subscription=subscription,
            coordinator=self,
        )
        self._registrations.setdefault(key, []).append(registration)
        self._fetchers[key] = fetcher

        snapshot = self._store.get(key)
        if snapshot is None or not snapshot.has_data:
            self._stats["misses"] += 1
            self._start(key, fetcher)
        elif snapshot.is_fresh(self._clock(), options.deduping_interval):
            self._stats["hits_fresh"] += 1
        else:
            self._stats["hits_stale"] += 1
            self._start(key, fetcher)
        return registration

    def _unregister(self, registration: Registration) -> None:
        remaining = [
            r for r in self._registrations.get(registration.key, [])
            if r is not registration
        ]
        if remaining:
            self._registrations[registration.key] = remaining
        else:
            self._registrations.pop(registration.key, None)
            self._retry_counts.pop(registration.key, None)
            retry = self._retry_tasks.pop(registration.key, None)
            if retry is not None:
                retry.cancel()
        # Last, so a store that drops the entry right away sees no registrations.
        registration.subscription.unsubscribe()

    def _forget(self, key: str) -> None:
        """Release per-key bookkeeping once the store has dropped key."""
        if self._registrations.get(key) or self._coalescer.in_flight(key) is not None:
            return
        self._fetchers.pop(key, None)
        self._coalescer.forget(key)
        logger.debug(f"Forgot fetcher and sequence for {key}")

    def state(self, key: str) -> SWRState:
        """Current state of key without triggering any fetch."""
        return self._state(key, CacheSource.FRESH)

    # ------------------------------------------------------------------
    # Revalidation
    # ------------------------------------------------------------------

    async def revalidate(
        self,
        key: str,
        force: bool = False,
        fetcher: Optional[Fetcher] = None,
    ) -> SWRState:
        """
        Re-run the producer for key.

        Args:
            key: Cache key with a known fetcher
            force: Manual refresh; ignores the deduping interval and
                supersedes any fetch already in flight
            fetcher: Producer to use from now on for key

        Returns:
            State after the fetch settles
        """
        if fetcher is not None:
            self._fetchers[key] = fetcher
        fetcher = self._fetchers.get(key)
        if fetcher is None:
            logger.debug(f"No fetcher known for {key}, skipping revalidation")
            return self._state(key, CacheSource.FRESH)

        if not force:
            if self._coalescer.in_flight(key) is not None:
                await self._settle(key)
                return self._state(key, CacheSource.UPSTREAM)
            snapshot = self._store.get(key)
            interval = self._options_for(key).deduping_interval
            if snapshot is not None and snapshot.is_fresh(self._clock(), interval):
                logger.debug(f"Skipping revalidation of fresh key {key}")
                return self._state(key, CacheSource.FRESH)

        self._stats["revalidations"] += 1
        self._start(key, fetcher, supersede=force)
        await self._settle(key)
        return self._state(key, CacheSource.UPSTREAM)

    def schedule_revalidate(self, key: str, force: bool = False) -> "asyncio.Task[SWRState]":
        """Run revalidate() as a background task."""
        return self._spawn(self.revalidate(key, force=force))

    # ------------------------------------------------------------------
    # Direct writes
    # ------------------------------------------------------------------

    def write(self, key: str, data: Any) -> None:
        """
        Store data pushed from outside the fetch path.

        Any fetch for key started before this write is superseded.
        """
        self._coalescer.bump(key)
        self._store.set(key, data)

    def update(self, key: str, fn: Callable[[Any], Any]) -> None:
        """Read-modify-write against the current cached value."""
        self._coalescer.bump(key)
        self._store.update(key, fn)

    def supersede(self, key: str) -> None:
        """Discard the result of any fetch for key still in flight."""
        if self._coalescer.in_flight(key) is not None:
            logger.debug(f"Superseding in-flight fetch for {key}")
        self._coalescer.bump(key)

    async def mutate(self, key: str, data: Any, revalidate: bool = True) -> SWRState:
        """
        Replace cached data locally, optionally re-fetching afterwards.

        Args:
            data: New value, or a function of the current value
            revalidate: Force a producer run after the local write
        """
        if callable(data):
            self.update(key, data)
        else:
            self.write(key, data)
        if revalidate:
            return await self.revalidate(key, force=True)
        return self._state(key, CacheSource.FRESH)

    # ------------------------------------------------------------------
    # Fetch execution
    # ------------------------------------------------------------------

    def _start(self, key: str, fetcher: Fetcher, supersede: bool = False) -> FetchTask:
        existing = self._coalescer.in_flight(key)
        fetch = self._coalescer.get_or_start(
            key,
            lambda sequence: self._execute(key, fetcher, sequence),
            supersede=supersede,
        )
        # Subscribers notified here may mount the same key; the new fetch
        # is already registered, so they join it.
        if fetch is not existing:
            self._store.mark_validating(key)
        return fetch

    async def _execute(self, key: str, fetcher: Fetcher, sequence: int) -> Any:
        try:
            data = await fetcher()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats["errors"] += 1
            if not self._coalescer.is_current(key, sequence):
                logger.debug(f"Discarding late error from fetch #{sequence} for {key}: {e}")
                self._stats["discarded"] += 1
                return None
            logger.warning(f"Fetch failed for {key}: {e}")
            self._store.set_error(key, e)
            self._schedule_retry(key)
            return None

        if not self._coalescer.is_current(key, sequence):
            logger.debug(f"Discarding late result from fetch #{sequence} for {key}")
            self._stats["discarded"] += 1
            return data

        self._store.set(key, data)
        self._retry_counts.pop(key, None)
        return data

    async def _settle(self, key: str) -> None:
        """Wait until no fetch for key is in flight, following supersedes."""
        while True:
            fetch = self._coalescer.in_flight(key)
            if fetch is None or fetch.task.done():
                return
            await self._coalescer.wait(fetch)

    def _schedule_retry(self, key: str) -> None:
        options = self._options_for(key)
        if not options.should_retry_on_error or not self._registrations.get(key):
            return

        count = self._retry_counts.get(key, 0)
        if count >= options.error_retry_count:
            logger.warning(f"Giving up on {key} after {count} retries")
            return

        pending = self._retry_tasks.get(key)
        if pending is not None and not pending.done():
            return

        self._retry_counts[key] = count + 1
        logger.info(
            f"Retrying {key} in {options.error_retry_interval}s "
            f"(attempt {count + 1}/{options.error_retry_count})"
        )
        self._retry_tasks[key] = self._spawn(
            self._retry_later(key, options.error_retry_interval)
        )

    async def _retry_later(self, key: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_tasks.pop(key, None)
        if self._registrations.get(key):
            await self.revalidate(key, force=True)

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _options_for(self, key: str) -> SWROptions:
        registrations = self._registrations.get(key)
        if registrations:
            return registrations[0].options
        return self._options

    def _state(self, key: str, source: CacheSource) -> SWRState:
        snapshot = self._store.get(key)
        if snapshot is None:
            return SWRState(key=key, source=source)
        return SWRState(
            key=key,
            data=snapshot.data,
            error=snapshot.error,
            is_loading=snapshot.is_loading,
            is_revalidating=snapshot.is_revalidating,
            source=source,
        )

    def registrations(
        self,
        predicate: Optional[Callable[[Registration], bool]] = None,
    ) -> List[Registration]:
        """All active registrations, optionally filtered."""
        result = []
        for registrations in self._registrations.values():
            for registration in registrations:
                if predicate is None or predicate(registration):
                    result.append(registration)
        return result

    def is_in_flight(self, key: str) -> bool:
        return self._coalescer.in_flight(key) is not None

    def get_stats(self) -> Dict[str, Any]:
        """Get coordinator statistics."""
        total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
        total_requests = total_hits + self._stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

        return {
            **self._stats,
            "hit_rate_percent": round(hit_rate, 1),
            "registered_keys": len(self._registrations),
            "known_fetchers": len(self._fetchers),
            "store": self._store.get_stats(),
            "coalescer": self._coalescer.get_stats(),
            "retrying": len(self._retry_tasks),
        }

    async def aclose(self) -> None:
        """Cancel retries, background work and in-flight fetches."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        self._retry_tasks.clear()
        self._stop_forgetting()
        cancelled = self._coalescer.cancel_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug(f"Coordinator closed ({len(tasks)} background, {cancelled} fetches)")
