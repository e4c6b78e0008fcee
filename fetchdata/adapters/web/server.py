"""UI notification interface: REST accessors + SSE push for the desktop shell.

The window process asks for the current endpoint and network info, and
listens on ``/api/events`` for endpoint commits and tunnel diagnostics.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from typing import TYPE_CHECKING

from aiohttp import web

from fetchdata.core.events import (
    EndpointCommittedEvent,
    EventBus,
    TunnelLogEvent,
    TunnelUrlFoundEvent,
)

if TYPE_CHECKING:
    from fetchdata.core.orchestrator import OrchestratorController

logger = logging.getLogger(__name__)

# SSE event names understood by the UI, keyed by event type.
_SSE_EVENT_NAMES: dict[type, str] = {
    EndpointCommittedEvent: "tunnel-url-updated",
    TunnelLogEvent: "tunnel-log",
    TunnelUrlFoundEvent: "tunnel-url-found",
}


def _serialize_event(ev: object) -> str:
    """Render one SSE frame for *ev*."""
    name = _SSE_EVENT_NAMES.get(type(ev), type(ev).__name__)
    data = json.dumps(asdict(ev), ensure_ascii=False)
    return f"event: {name}\ndata: {data}\n\n"


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

async def _handle_endpoint(request: web.Request) -> web.Response:
    """GET /api/endpoint: the currently published endpoint."""
    controller: OrchestratorController = request.app["controller"]
    publisher = controller.publisher
    data = publisher.current().to_dict()
    data["committed"] = publisher.has_committed
    return web.json_response(data)


async def _handle_tunnel_url(request: web.Request) -> web.Response:
    """GET /api/tunnel-url: public URL, or null while none is known."""
    controller: OrchestratorController = request.app["controller"]
    current = controller.publisher.current()
    return web.json_response({"url": current.url if current.is_public else None})


async def _handle_network_info(request: web.Request) -> web.Response:
    """GET /api/network-info"""
    controller: OrchestratorController = request.app["controller"]
    return web.json_response(controller.network_info())


async def _handle_sse(request: web.Request) -> web.StreamResponse:
    """GET /api/events: endpoint commits and tunnel output as SSE."""
    event_bus: EventBus = request.app["event_bus"]

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    await response.prepare(request)

    merged: asyncio.Queue = asyncio.Queue()
    subscriptions = [(et, event_bus.subscribe(et)) for et in _SSE_EVENT_NAMES]

    async def _forward(q: asyncio.Queue) -> None:
        while True:
            await merged.put(await q.get())

    tasks = [asyncio.create_task(_forward(q)) for _, q in subscriptions]

    try:
        while True:
            ev = await merged.get()
            await response.write(_serialize_event(ev).encode("utf-8"))
    except (asyncio.CancelledError, ConnectionResetError):
        pass
    finally:
        for t in tasks:
            t.cancel()
        for event_type, q in subscriptions:
            event_bus.unsubscribe(event_type, q)

    return response


# ---------------------------------------------------------------------------
# App factory & server class
# ---------------------------------------------------------------------------

def build_app(controller: OrchestratorController, event_bus: EventBus) -> web.Application:
    app = web.Application()
    app["controller"] = controller
    app["event_bus"] = event_bus

    app.router.add_get("/api/endpoint", _handle_endpoint)
    app.router.add_get("/api/tunnel-url", _handle_tunnel_url)
    app.router.add_get("/api/network-info", _handle_network_info)
    app.router.add_get("/api/events", _handle_sse)

    return app


class WebControlPlane:
    """aiohttp server exposing the endpoint to the UI process."""

    def __init__(
        self,
        controller: OrchestratorController,
        event_bus: EventBus,
        port: int = 7777,
        host: str = "127.0.0.1",
    ) -> None:
        self._app = build_app(controller, event_bus)
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("UI interface running at http://%s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("UI interface stopped")
