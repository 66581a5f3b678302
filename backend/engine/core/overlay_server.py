"""HTTP server for the overlay browser source, webhooks and test triggers"""

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any

import pydantic
from aiohttp import web
from pydantic import BaseModel, Field

from shared.errors import NotFoundError, ValidationError

if TYPE_CHECKING:
    from engine.pipeline import AlertPipeline

logger = logging.getLogger("Engine.Server")


# ============================================
# Request Models
# ============================================


class WebhookAlert(BaseModel):
    type: str = Field(min_length=1)
    template_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = None


class UpstreamEvent(BaseModel):
    platform: str = "webhook"
    data: dict[str, Any] = Field(default_factory=dict)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map engine errors onto HTTP status codes"""
    try:
        return await handler(request)
    except (ValidationError, pydantic.ValidationError) as e:
        return web.json_response({"error": str(e)}, status=400)
    except NotFoundError as e:
        return web.json_response({"error": str(e)}, status=404)


async def _read_json(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON body: {e.msg}") from None
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


class OverlayServer:
    """Overlay/webhook HTTP server"""

    def __init__(self, pipeline: "AlertPipeline", host: str = "0.0.0.0", port: int = 4344):
        self.pipeline = pipeline
        self.host = host
        self.port = port
        self.app = web.Application(middlewares=[error_middleware])
        self.runner: web.AppRunner | None = None
        self._start_time: float = time.time()
        self._heartbeat_task: asyncio.Task | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Configure HTTP routes"""
        self.app.router.add_get("/", self.handle_root)
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_get("/status", self.handle_status)
        self.app.router.add_get("/overlay/current", self.handle_current)
        self.app.router.add_get("/history", self.handle_history)
        self.app.router.add_get("/history/export", self.handle_history_export)
        self.app.router.add_post("/events/{event_type}", self.handle_event)
        self.app.router.add_post("/webhook", self.handle_webhook)
        self.app.router.add_post("/test/{event_type}", self.handle_test)

    async def handle_root(self, request: web.Request) -> web.Response:
        return web.json_response({"service": "cuebot-engine", "status": "running"})

    async def handle_health(self, request: web.Request) -> web.Response:
        """Liveness: always 200, ``ready`` once the pipeline has started"""
        ready = self.pipeline.started
        return web.json_response({"status": "healthy" if ready else "starting", "ready": ready})

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "service": "cuebot-engine",
                "uptime_seconds": int(time.time() - self._start_time),
                "queue": self.pipeline.get_queue_status(),
                "control_surface_connected": self.pipeline.surface.is_connected(),
                "rules": len(self.pipeline.get_automation_rules()),
                "presented_total": self.pipeline.presenter.presented_total,
            }
        )

    async def handle_current(self, request: web.Request) -> web.Response:
        """Polled by the overlay browser source"""
        return web.json_response(self.pipeline.presenter.current_payload())

    async def handle_history(self, request: web.Request) -> web.Response:
        try:
            limit = int(request.query.get("limit", "50"))
        except ValueError:
            raise ValidationError("limit must be an integer") from None
        history = await self.pipeline.get_alert_history(max(limit, 0))
        return web.json_response([alert.to_dict() for alert in history])

    async def handle_history_export(self, request: web.Request) -> web.Response:
        body = await self.pipeline.export_history_csv()
        return web.Response(
            text=body,
            content_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="alert-history.csv"'},
        )

    async def handle_event(self, request: web.Request) -> web.Response:
        """Upstream event inlet: forwards the event onto the bridge"""
        event_type = request.match_info["event_type"]
        body = UpstreamEvent.model_validate(await _read_json(request))
        tasks = await self.pipeline.bridge.emit(
            event_type, {"platform": body.platform, **body.data}
        )
        logger.debug(f"[{event_type}] Event received from {body.platform}")
        return web.json_response(
            {"success": True, "event_type": event_type, "handlers": len(tasks)}, status=202
        )

    async def handle_webhook(self, request: web.Request) -> web.Response:
        body = WebhookAlert.model_validate(await _read_json(request))
        alert_id = await self.pipeline.enqueue_alert(body.model_dump())
        return web.json_response({"success": True, "alert_id": alert_id})

    async def handle_test(self, request: web.Request) -> web.Response:
        event_type = request.match_info["event_type"]
        result = await self.pipeline.test_trigger(event_type, await _read_json(request))
        return web.json_response(
            {"success": True, "message": f"Test {event_type} event triggered", **result}
        )

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(300)
            uptime = int(time.time() - self._start_time)
            status = self.pipeline.get_queue_status()
            logger.info(
                f"Heartbeat: uptime={uptime}s, queue={status['queue_length']}, "
                f"paused={status['paused']}"
            )

    async def start(self) -> None:
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            site = web.TCPSite(self.runner, self.host, self.port)
            await site.start()

            self._heartbeat_task = asyncio.create_task(self._heartbeat())

            logger.info(f"Overlay server started on {self.host}:{self.port}")
            logger.info(f"  GET  http://{self.host}:{self.port}/overlay/current - Overlay feed")
            logger.info(f"  POST http://{self.host}:{self.port}/webhook - Queue an alert")
        except Exception as e:
            logger.exception(f"Failed to start overlay server: {e}")
            raise

    async def stop(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
        if self.runner:
            try:
                await self.runner.cleanup()
                logger.info("Overlay server stopped")
            except Exception as e:
                logger.exception(f"Error stopping overlay server: {e}")
