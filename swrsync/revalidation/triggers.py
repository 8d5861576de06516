"""
Event sources that mark keys stale and re-run their producers.

The embedding application forwards its own events (window focus, network
status) into these triggers; the triggers decide which registered keys
to revalidate.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

from swrsync.cache.manager import FetchCoordinator

logger = logging.getLogger("revalidation.triggers")


class FocusTrigger:
    """
    Revalidates keys registered with revalidate_on_focus.

    Each registration is throttled by its own focus_throttle_interval.
    """

    def __init__(
        self,
        coordinator: FetchCoordinator,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._coordinator = coordinator
        self._clock = clock

    def fire(self) -> List[str]:
        """
        Handle a focus event.

        Returns:
            Keys whose revalidation was scheduled
        """
        now = self._clock()
        scheduled = []
        for registration in self._coordinator.registrations(
            lambda r: r.options.revalidate_on_focus
        ):
            last = registration.last_focus_revalidate
            if last is not None and now - last <= registration.options.focus_throttle_interval:
                continue
            registration.last_focus_revalidate = now
            if registration.key not in scheduled:
                scheduled.append(registration.key)

        for key in scheduled:
            self._coordinator.schedule_revalidate(key)
        if scheduled:
            logger.debug(f"Focus revalidating {len(scheduled)} keys")
        return scheduled


class ReconnectTrigger:
    """
    Revalidates keys registered with revalidate_on_reconnect when the
    network comes back.
    """

    def __init__(self, coordinator: FetchCoordinator, online: bool = True):
        self._coordinator = coordinator
        self._online = online

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> List[str]:
        """
        Record network status; fires on an offline to online transition.

        Returns:
            Keys whose revalidation was scheduled
        """
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Network reconnected")
            return self.fire()
        if not online and was_online:
            logger.info("Network went offline")
        return []

    def fire(self) -> List[str]:
        keys = []
        for registration in self._coordinator.registrations(
            lambda r: r.options.revalidate_on_reconnect
        ):
            if registration.key not in keys:
                keys.append(registration.key)
        for key in keys:
            self._coordinator.schedule_revalidate(key)
        return keys


class IntervalTrigger:
    """
    Runs a tick function now and then on a fixed interval until stopped.

    Used as the polling fallback while a push channel is unavailable.
    """

    def __init__(
        self,
        tick: Callable[[], Awaitable[Any]],
        interval: float,
        name: str = "interval",
    ):
        """
        Args:
            tick: Coroutine function run on every tick
            interval: Seconds between ticks
            name: Label used in log messages
        """
        self._tick = tick
        self._interval = interval
        self._name = name
        self._task: Optional["asyncio.Task[None]"] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start polling. Returns False if already running."""
        if self.running:
            return False
        logger.info(f"Starting {self._name} polling every {self._interval}s")
        self._task = asyncio.ensure_future(self._run())
        return True

    def stop(self) -> bool:
        """Stop polling. Returns False if it was not running."""
        if not self.running:
            self._task = None
            return False
        logger.info(f"Stopping {self._name} polling")
        self._task.cancel()
        self._task = None
        return True

    async def _run(self) -> None:
        while True:
            self.ticks += 1
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"{self._name} tick failed: {e}")
            await asyncio.sleep(self._interval)
