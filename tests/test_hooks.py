"""
Tests for the consumer handles returned by use_swr and use_metrics_socket.
"""
import asyncio

from swrsync.hooks import use_metrics_socket, use_swr
from swrsync.live_metrics.channel import PushChannel
from swrsync.live_metrics.transport import LoopbackTransport


def producer_returning(*values):
    calls = []

    async def produce():
        calls.append(1)
        await asyncio.sleep(0)
        return values[min(len(calls), len(values)) - 1]

    produce.calls = calls
    return produce


class TestUseSWR:
    """Per-consumer view of a key."""

    async def test_first_mount_loads_then_shows_data(self, coordinator, wait_until):
        states = []
        handle = use_swr(coordinator, "students", producer_returning(["a"]), on_change=states.append)
        assert handle.is_loading is True

        await wait_until(lambda: handle.data is not None)
        assert handle.data == ["a"]
        assert handle.is_loading is False
        assert states[-1].data == ["a"]
        handle.close()

    async def test_null_key_disables_fetching(self, coordinator, flush):
        produce = producer_returning("never")
        handle = use_swr(coordinator, None, produce)
        await flush()

        assert produce.calls == []
        assert handle.data is None
        assert handle.is_loading is False
        assert handle.active is False
        assert (await handle.revalidate()).data is None

    async def test_second_handle_on_stale_data_never_loads(self, coordinator, clock, wait_until):
        produce = producer_returning("old", "new")
        first = use_swr(coordinator, "k", produce)
        await wait_until(lambda: first.data == "old")
        clock.advance(10.0)

        states = []
        second = use_swr(coordinator, "k", produce, on_change=states.append)
        assert second.data == "old"
        assert second.is_loading is False

        await wait_until(lambda: second.data == "new")
        assert all(state.is_loading is False for state in states)
        assert first.data == "new"
        first.close()
        second.close()

    async def test_close_releases_subscription(self, coordinator, wait_until):
        handle = use_swr(coordinator, "k", producer_returning(1))
        await wait_until(lambda: handle.data == 1)
        assert coordinator.store.subscriber_count("k") == 1

        with handle:
            pass
        assert coordinator.store.subscriber_count("k") == 0
        assert handle.active is False

    async def test_revalidate_forces_producer(self, coordinator, wait_until):
        produce = producer_returning(1, 2)
        handle = use_swr(coordinator, "k", produce)
        await wait_until(lambda: handle.data == 1)

        state = await handle.revalidate()
        assert state.data == 2
        assert len(produce.calls) == 2
        handle.close()

    async def test_mutate_updates_every_handle(self, coordinator, wait_until):
        produce = producer_returning([1, 2])
        first = use_swr(coordinator, "k", produce)
        second = use_swr(coordinator, "k", produce)
        await wait_until(lambda: first.data == [1, 2])

        await first.mutate(lambda items: items + [3], revalidate=False)
        assert second.data == [1, 2, 3]
        first.close()
        second.close()


class TestUseMetricsSocket:
    """Feed helper."""

    async def test_returns_started_feed(self, coordinator, hub, notifier, wait_until):
        channel = PushChannel(lambda: LoopbackTransport(hub), heartbeat_interval=0)

        async def unused():
            return None

        async with use_metrics_socket(
            coordinator,
            channel,
            health_fetcher=unused,
            metrics_fetcher=unused,
            notifier=notifier,
        ) as feed:
            await wait_until(lambda: feed.connected and feed.metrics is not None)
            assert channel.ref_count == 1

        assert channel.ref_count == 0
        assert hub.client_count == 0
