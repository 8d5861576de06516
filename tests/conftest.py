"""
Shared fixtures: a controllable clock, an isolated store and coordinator
per test, and an in-process metrics hub.
"""
import asyncio

import pytest

from swrsync.cache.manager import FetchCoordinator
from swrsync.cache.options import SWROptions
from swrsync.cache.store import CacheStore
from swrsync.gateway.hub import MetricsHub
from swrsync.gateway.metrics_source import HostMetricsSource
from swrsync.notifications import RecordingNotifier


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticMetricsSource(HostMetricsSource):
    """Host source with fixed numbers so assertions are stable."""

    def detailed_health(self):
        return {
            "status": "healthy",
            "uptime": 100.0,
            "services": {
                name: {"status": status} for name, status in self._services.items()
            },
        }

    def realtime_metrics(self):
        return {
            "cpu": {"usage": 10.0, "cores": 4},
            "memory": {"usagePercent": 50.0, "total": 1024},
            "application": {"uptime": 100.0, "pid": 1},
        }

    def quick_metrics(self):
        return {"cpu": 20.0, "memory": 60.0, "uptime": 110.0}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return CacheStore(clock=clock, retain_seconds=300.0)


@pytest.fixture
def options():
    return SWROptions(
        deduping_interval=2.0,
        focus_throttle_interval=5.0,
        error_retry_count=3,
        error_retry_interval=0.01,
    )


@pytest.fixture
async def coordinator(store, options, clock):
    coordinator = FetchCoordinator(store, options=options, clock=clock)
    yield coordinator
    await coordinator.aclose()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def hub():
    return MetricsHub(source=StaticMetricsSource(started_at=0.0))


@pytest.fixture
def wait_until():
    """Poll a predicate while letting the event loop run."""

    async def wait(predicate, timeout: float = 1.0, step: float = 0.002) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(step)

    return wait


@pytest.fixture
def flush():
    """Let already-scheduled tasks run a few steps."""

    async def run(steps: int = 10) -> None:
        for _ in range(steps):
            await asyncio.sleep(0)

    return run
