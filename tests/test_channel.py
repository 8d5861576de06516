"""
Tests for the push channel over a loopback transport to the metrics hub.
"""
import asyncio

import pytest

from swrsync.live_metrics.channel import ChannelState, PushChannel
from swrsync.live_metrics.models import InitialData, MetricsUpdate, QuickMetrics
from swrsync.live_metrics.transport import LoopbackTransport


@pytest.fixture
async def channel(hub):
    channel = PushChannel(
        lambda: LoopbackTransport(hub),
        reconnect_attempts=3,
        reconnect_delay=0.005,
        reconnect_delay_max=0.01,
        heartbeat_interval=0,
    )
    yield channel
    await channel.close()


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:
    """Connection state machine and reference counting."""

    async def test_acquire_connects_and_receives_initial_data(self, channel, hub, wait_until):
        received = []
        channel.on("initialData", received.append)
        states = []
        channel.on_state_change(states.append)

        assert channel.acquire() == 1
        await wait_until(lambda: received)

        assert channel.is_connected
        assert states[:2] == [ChannelState.CONNECTING, ChannelState.CONNECTED]
        assert isinstance(received[0], InitialData)
        assert received[0].metrics["cpu"]["usage"] == 10.0
        assert hub.client_count == 1

    async def test_release_closes_on_last_reference(self, channel, hub, wait_until):
        channel.acquire()
        channel.acquire()
        await wait_until(lambda: channel.is_connected)

        assert await channel.release() == 1
        assert channel.is_connected

        assert await channel.release() == 0
        assert channel.state == ChannelState.DISCONNECTED
        await wait_until(lambda: hub.client_count == 0)

    async def test_acquire_without_connect(self, channel, flush):
        channel.acquire(connect=False)
        await flush()
        assert channel.state == ChannelState.DISCONNECTED
        assert channel.ref_count == 1

    async def test_failed_connect_gives_up_in_error(self, channel, hub):
        hub.accepting = False
        states = []
        channel.on_state_change(states.append)

        await asyncio.wait_for(channel.connect(), timeout=1.0)

        assert channel.state == ChannelState.ERROR
        assert channel.connection_error == "Failed to reconnect after multiple attempts"
        assert states.count(ChannelState.ERROR) == 3

    async def test_recovers_after_server_rejects(self, channel, hub, wait_until):
        hub.accepting = False
        channel.acquire()
        await wait_until(lambda: channel.state == ChannelState.ERROR)

        hub.accepting = True
        await wait_until(lambda: channel.is_connected)
        assert channel.connection_error is None

    async def test_reconnects_after_server_drop(self, channel, hub, wait_until):
        states = []
        channel.on_state_change(states.append)
        channel.acquire()
        await wait_until(lambda: channel.is_connected)

        await hub.disconnect_all()
        await wait_until(lambda: ChannelState.DISCONNECTED in states)
        await wait_until(lambda: channel.is_connected)
        assert states.count(ChannelState.CONNECTED) == 2


# =============================================================================
# Events
# =============================================================================

class TestEvents:
    """Typed dispatch, emit and handler management."""

    async def test_emit_refresh_gets_metrics_update(self, channel, wait_until):
        updates = []
        channel.on("metricsUpdate", updates.append)
        channel.acquire()
        await wait_until(lambda: channel.is_connected)

        assert await channel.emit("refreshMetrics") is True
        await wait_until(lambda: updates)
        assert isinstance(updates[0], MetricsUpdate)
        assert updates[0].health["status"] == "healthy"

    async def test_emit_when_disconnected_returns_false(self, channel):
        assert await channel.emit("refreshMetrics") is False

    async def test_malformed_frame_is_dropped(self, channel, hub, wait_until):
        samples = []
        channel.on("quickMetrics", samples.append)
        channel.acquire()
        await wait_until(lambda: channel.is_connected)

        await hub.broadcast("quickMetrics", {"cpu": "not-a-number"})
        await hub.broadcast("quickMetrics", {"cpu": 1, "memory": 2, "uptime": 3})
        await wait_until(lambda: samples)

        assert len(samples) == 1
        assert isinstance(samples[0], QuickMetrics)
        assert samples[0].cpu == 1

    async def test_unknown_event_passes_raw_payload(self, channel, hub, wait_until):
        custom = []
        channel.on("custom", custom.append)
        channel.acquire()
        await wait_until(lambda: channel.is_connected)

        await hub.broadcast("custom", {"anything": True})
        await wait_until(lambda: custom)
        assert custom == [{"anything": True}]

    async def test_unsubscribed_handler_not_called(self, channel, hub, wait_until):
        seen = []
        off = channel.on("custom", seen.append)
        channel.acquire()
        await wait_until(lambda: channel.is_connected)

        off()
        assert channel.handler_count("custom") == 0
        await hub.broadcast("custom", 1)
        await asyncio.sleep(0.01)
        assert seen == []

    async def test_failing_handler_does_not_stop_dispatch(self, channel, hub, wait_until):
        seen = []

        def broken(event):
            raise RuntimeError("handler bug")

        channel.on("custom", broken)
        channel.on("custom", seen.append)
        channel.acquire()
        await wait_until(lambda: channel.is_connected)

        await hub.broadcast("custom", "x")
        await wait_until(lambda: seen)
        assert seen == ["x"]


# =============================================================================
# Heartbeat
# =============================================================================

class TestHeartbeat:
    """Heartbeat round trips feed connection quality."""

    async def test_heartbeat_measures_latency(self, hub, wait_until):
        channel = PushChannel(lambda: LoopbackTransport(hub), heartbeat_interval=0.01)
        try:
            channel.acquire()
            await wait_until(lambda: channel.connection_quality()["latency"] is not None)
            quality = channel.connection_quality()
            assert quality["missed_heartbeats"] == 0
            assert quality["is_healthy"] is True
        finally:
            await channel.close()

    def test_quality_before_connect(self, hub):
        channel = PushChannel(lambda: LoopbackTransport(hub), heartbeat_interval=0)
        quality = channel.connection_quality()
        assert quality["latency"] is None
        assert quality["is_healthy"] is False
