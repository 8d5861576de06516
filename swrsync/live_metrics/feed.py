"""
Admin metrics feed: binds the push channel to cache keys.

While the channel is connected it owns the admin keys and writes pushed
events straight into the cache. While it is not, and polling fallback is
enabled, the REST endpoints are polled on an interval through the fetch
coordinator. A push write supersedes any poll still in flight, so the two
never race for a key.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config.settings import settings
from swrsync import api_client
from swrsync.cache.manager import FetchCoordinator
from swrsync.cache.store import Subscription
from swrsync.notifications import LoggingNotifier, Notifier
from swrsync.revalidation.triggers import IntervalTrigger

from .channel import ChannelState, PushChannel
from .models import (
    BackupProgress,
    BulkOperationProgress,
    ErrorEvent,
    InitialData,
    MetricsUpdate,
    PushEventName,
    QuickMetrics,
    ServiceAlert,
    SessionUpdate,
    apply_service_alert,
    merge_quick_metrics,
)

logger = logging.getLogger("live_metrics.feed")

HEALTH_KEY = "admin:health"
METRICS_KEY = "admin:metrics"
SESSIONS_KEY = "admin:sessions"
BACKUP_KEY = "admin:backup"
BULK_KEY = "admin:bulk"

FEED_KEYS = (HEALTH_KEY, METRICS_KEY, SESSIONS_KEY, BACKUP_KEY, BULK_KEY)
POLLED_KEYS = (HEALTH_KEY, METRICS_KEY)


class MetricsFeed:
    """
    Real-time system metrics with HTTP polling fallback.

    Usage:
        async with MetricsFeed(coordinator, channel) as feed:
            feed.metrics      # latest cached metrics
            await feed.refresh()
    """

    def __init__(
        self,
        coordinator: FetchCoordinator,
        channel: PushChannel,
        health_fetcher: Optional[Callable[[], Awaitable[Any]]] = None,
        metrics_fetcher: Optional[Callable[[], Awaitable[Any]]] = None,
        notifier: Optional[Notifier] = None,
        auto_connect: Optional[bool] = None,
        fallback_to_polling: Optional[bool] = None,
        polling_interval: Optional[float] = None,
    ):
        """
        Args:
            coordinator: Coordinator owning the cache the feed writes to
            channel: Shared push channel
            health_fetcher: Producer for the polling fallback's health data
            metrics_fetcher: Producer for the polling fallback's metrics data
            notifier: Where user-facing messages go
            auto_connect: Connect (and poll) as soon as the feed starts
            fallback_to_polling: Poll while the channel is unavailable
            polling_interval: Seconds between polls
        """
        self._coordinator = coordinator
        self._channel = channel
        self._health_fetcher = health_fetcher or api_client.json_producer(api_client.HEALTH_ENDPOINT)
        self._metrics_fetcher = metrics_fetcher or api_client.json_producer(api_client.METRICS_ENDPOINT)
        self._notifier = notifier or LoggingNotifier()
        self.auto_connect = settings.auto_connect if auto_connect is None else auto_connect
        self.fallback_to_polling = (
            settings.fallback_to_polling if fallback_to_polling is None else fallback_to_polling
        )
        interval = settings.metrics_polling_interval if polling_interval is None else polling_interval
        self._polling = IntervalTrigger(self.poll_once, interval, name="metrics")

        self.error: Optional[str] = None
        self.last_update: Optional[datetime] = None
        self.loading = True
        self._started = False
        self._fallback_notified = False
        self._subscriptions: List[Subscription] = []
        self._unsubscribers: List[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._channel.is_connected

    @property
    def polling(self) -> bool:
        return self._polling.running

    @property
    def poll_count(self) -> int:
        return self._polling.ticks

    @property
    def health(self) -> Optional[Dict[str, Any]]:
        return self._coordinator.store.peek_data(HEALTH_KEY)

    @property
    def metrics(self) -> Optional[Dict[str, Any]]:
        return self._coordinator.store.peek_data(METRICS_KEY)

    @property
    def session_stats(self) -> Any:
        return self._coordinator.store.peek_data(SESSIONS_KEY)

    @property
    def backup_progress(self) -> Optional[Dict[str, Any]]:
        return self._coordinator.store.peek_data(BACKUP_KEY)

    @property
    def bulk_operation_progress(self) -> Optional[Dict[str, Any]]:
        return self._coordinator.store.peek_data(BULK_KEY)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Attach handlers, take a channel reference and begin syncing."""
        if self._started:
            return
        self._started = True

        store = self._coordinator.store
        for key in FEED_KEYS:
            self._subscriptions.append(store.subscribe(key, self._on_entry))

        handlers = {
            PushEventName.METRICS_UPDATE: self._on_metrics_update,
            PushEventName.QUICK_METRICS: self._on_quick_metrics,
            PushEventName.SERVICE_ALERT: self._on_service_alert,
            PushEventName.SESSION_UPDATE: self._on_session_update,
            PushEventName.BACKUP_PROGRESS: self._on_backup_progress,
            PushEventName.BULK_OPERATION_PROGRESS: self._on_bulk_operation_progress,
            PushEventName.INITIAL_DATA: self._on_initial_data,
            PushEventName.ERROR: self._on_error,
        }
        for name, handler in handlers.items():
            self._unsubscribers.append(self._channel.on(name.value, handler))
        self._unsubscribers.append(self._channel.on_state_change(self._on_state_change))

        self._channel.acquire(connect=self.auto_connect)
        if self.auto_connect and self.fallback_to_polling and not self._channel.is_connected:
            self._polling.start()

    async def stop(self) -> None:
        """Detach handlers, stop polling and release the channel."""
        if not self._started:
            return
        self._started = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        self._polling.stop()
        await self._channel.release()

    async def __aenter__(self) -> "MetricsFeed":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def refresh(self) -> None:
        """Ask the server for fresh metrics, or poll once if disconnected."""
        if self.connected:
            await self._channel.emit(PushEventName.REFRESH_METRICS.value)
        else:
            await self.poll_once()

    async def refresh_sessions(self) -> bool:
        """Ask the server for fresh session stats; needs a connection."""
        if self.connected:
            return await self._channel.emit(PushEventName.REFRESH_SESSIONS.value)
        return False

    async def poll_once(self) -> None:
        """Fetch health and metrics over HTTP through the coordinator."""
        health, metrics = await asyncio.gather(
            self._coordinator.revalidate(HEALTH_KEY, force=True, fetcher=self._health_fetcher),
            self._coordinator.revalidate(METRICS_KEY, force=True, fetcher=self._metrics_fetcher),
        )
        failed = health.error or metrics.error
        if failed is not None:
            self.error = str(failed)
            self.loading = False
            return
        self.error = None
        self.last_update = datetime.utcnow()

    # ------------------------------------------------------------------
    # Connection state
    # ------------------------------------------------------------------

    def _on_state_change(self, state: ChannelState) -> None:
        if state == ChannelState.CONNECTED:
            self._fallback_notified = False
            if self._polling.stop():
                logger.info("Channel connected, HTTP polling stopped")
            for key in POLLED_KEYS:
                self._coordinator.supersede(key)
            return

        if state not in (ChannelState.ERROR, ChannelState.DISCONNECTED):
            return
        if state == ChannelState.ERROR:
            self.error = self._channel.connection_error
        if not (self._started and self.fallback_to_polling and self.auto_connect):
            return

        self._polling.start()
        if state == ChannelState.ERROR and not self._fallback_notified:
            self._fallback_notified = True
            self._notifier.info("Using HTTP polling for metrics updates")

    def _on_entry(self, snapshot: Any) -> None:
        if snapshot.key in POLLED_KEYS and snapshot.has_data:
            self.loading = False

    # ------------------------------------------------------------------
    # Push handlers
    # ------------------------------------------------------------------

    def _on_metrics_update(self, event: MetricsUpdate) -> None:
        self._coordinator.write(HEALTH_KEY, event.health)
        self._coordinator.write(METRICS_KEY, event.metrics)
        self.last_update = event.timestamp or datetime.utcnow()
        self.error = None

    def _on_initial_data(self, event: InitialData) -> None:
        logger.debug("Received initial data")
        self._coordinator.write(HEALTH_KEY, event.health)
        self._coordinator.write(METRICS_KEY, event.metrics)
        self.last_update = datetime.utcnow()

    def _on_quick_metrics(self, event: QuickMetrics) -> None:
        current = self._coordinator.store.get(METRICS_KEY)
        if current is None or not current.has_data:
            return
        self._coordinator.update(METRICS_KEY, lambda metrics: merge_quick_metrics(metrics, event))
        self.last_update = event.timestamp or datetime.utcnow()

    def _on_service_alert(self, event: ServiceAlert) -> None:
        message = f"{event.service} is {event.status.upper()}"
        if event.status == "down":
            self._notifier.error(message)
        else:
            self._notifier.success(message)

        current = self._coordinator.store.get(HEALTH_KEY)
        if current is None or not current.has_data:
            return
        updated = apply_service_alert(current.data, event)
        if updated is not current.data:
            self._coordinator.write(HEALTH_KEY, updated)

    def _on_session_update(self, event: SessionUpdate) -> None:
        self._coordinator.write(SESSIONS_KEY, event.stats)
        if event.action == "terminated":
            self._notifier.info("Session activity updated")

    def _on_backup_progress(self, event: BackupProgress) -> None:
        self._coordinator.write(BACKUP_KEY, event.model_dump(by_alias=True, exclude_none=True))
        if event.status == "completed":
            self._notifier.success("Backup completed successfully")
        elif event.status == "failed":
            self._notifier.error(f"Backup failed: {event.message or 'Unknown error'}")

    def _on_bulk_operation_progress(self, event: BulkOperationProgress) -> None:
        self._coordinator.write(BULK_KEY, event.model_dump(by_alias=True, exclude_none=True))
        if event.is_finished:
            self._notifier.success(
                f"Bulk {event.type} operation completed: {event.completed}/{event.total}"
            )

    def _on_error(self, event: ErrorEvent) -> None:
        self.error = event.message
