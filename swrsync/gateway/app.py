"""
Admin metrics gateway - FastAPI application.

REST endpoints back the dashboard's polling fallback; the /ws websocket
carries the push channel as JSON frames {"event": name, "data": payload}.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from config.settings import settings
from swrsync.cache.manager import FetchCoordinator
from swrsync.cache.store import CacheStore
from swrsync.errors import ChannelError
from swrsync.live_metrics.models import encode_frame
from swrsync.revalidation.triggers import IntervalTrigger

from .hub import MetricsHub

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("gateway.app")

APP_VERSION = "v0.1.0"
APP_NAME = "swrsync metrics gateway"

HEALTH_CACHE_KEY = "gateway:health"
METRICS_CACHE_KEY = "gateway:metrics"


class WebSocketSink:
    """Hub sink writing JSON frames to a websocket."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self.closed = False

    async def send(self, event: str, payload: Any = None) -> None:
        if self.closed:
            return
        await self._websocket.send_json(encode_frame(event, payload))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._websocket.close()


def create_app(hub: Optional[MetricsHub] = None, push_interval: Optional[float] = None) -> FastAPI:
    """
    Build the gateway application.

    Args:
        hub: Hub to serve, a fresh one by default
        push_interval: Seconds between quickMetrics broadcasts, 0 disables
    """
    hub = hub or MetricsHub(accepting=settings.gateway_accept_connections)
    interval = settings.gateway_push_interval if push_interval is None else push_interval

    # Health checks are expensive; concurrent polls share one run.
    coordinator = FetchCoordinator(CacheStore(retain_seconds=settings.cache_retain_seconds))
    pusher = IntervalTrigger(hub.publish_quick_metrics, interval, name="quickMetrics")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if interval > 0:
            pusher.start()
        yield
        pusher.stop()
        await hub.disconnect_all()
        await coordinator.aclose()

    app = FastAPI(
        title=APP_NAME,
        description="Admin health and metrics, polled or pushed",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.hub = hub
    app.state.coordinator = coordinator

    async def produce_health() -> Any:
        return await asyncio.to_thread(hub.source.detailed_health)

    async def produce_metrics() -> Any:
        return await asyncio.to_thread(hub.source.realtime_metrics)

    async def read_through(key: str, producer) -> Any:
        result = await coordinator.get(key, producer, should_retry_on_error=False)
        if result.data is None and result.error is not None:
            raise HTTPException(status_code=503, detail=str(result.error))
        return result.data

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "clients": hub.client_count}

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "full": f"{APP_NAME} {APP_VERSION}",
        }

    @app.get("/api/admin/health/detailed")
    async def detailed_health():
        """Overall and per-service health."""
        return await read_through(HEALTH_CACHE_KEY, produce_health)

    @app.get("/api/admin/metrics/realtime")
    async def realtime_metrics():
        """CPU, memory, disk, session and application metrics."""
        return await read_through(METRICS_CACHE_KEY, produce_metrics)

    @app.get("/api/cache/stats")
    def cache_stats():
        """Get cache statistics."""
        return coordinator.get_stats()

    @app.websocket("/ws")
    async def metrics_socket(websocket: WebSocket):
        await websocket.accept()
        sink = WebSocketSink(websocket)
        try:
            await hub.join(sink)
        except ChannelError as e:
            logger.warning(f"Rejected websocket client: {e}")
            await sink.send("error", {"message": str(e)})
            await sink.close()
            return

        try:
            while not sink.closed:
                frame = await websocket.receive_json()
                if not isinstance(frame, dict) or "event" not in frame:
                    logger.debug(f"Ignoring malformed frame: {frame!r}")
                    continue
                await hub.handle_client_event(sink, frame["event"], frame.get("data"))
        except WebSocketDisconnect:
            pass
        finally:
            sink.closed = True
            await hub.leave(sink)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "swrsync.gateway.app:app",
        host=settings.gateway_host,
        port=settings.gateway_port,
    )
