from __future__ import annotations

import asyncio
import json

import aiohttp
import pytest

from fetchdata.capabilities.tunnel.base import PublishedEndpoint
from fetchdata.capabilities.tunnel.cloudflared import TunnelSupervisor
from fetchdata.capabilities.tunnel.network import NetworkInfoProvider
from fetchdata.capabilities.tunnel.services import ServiceSupervisor
from fetchdata.capabilities.tunnel.verifier import AccessibilityVerifier
from fetchdata.adapters.web.server import build_app
from fetchdata.config import LaunchConfig, ServiceConfig
from fetchdata.core.events import EndpointCommittedEvent, EventBus, TunnelLogEvent
from fetchdata.core.orchestrator import OrchestratorController


class FixedNetwork(NetworkInfoProvider):
    def local_address(self) -> str:
        return "10.0.0.5"


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def controller(publisher, event_bus) -> OrchestratorController:
    config = LaunchConfig(
        services=[ServiceConfig("api", "node server/index.js", port=3001, tunnel=True)],
        use_tunnel=True,
    )
    return OrchestratorController(
        config,
        publisher=publisher,
        services=ServiceSupervisor(),
        tunnel=TunnelSupervisor(event_bus=event_bus),
        verifier=AccessibilityVerifier(),
        network=FixedNetwork(),
    )


@pytest.fixture
async def base_url(http_server, controller, event_bus) -> str:
    port = await http_server(build_app(controller, event_bus))
    return f"http://127.0.0.1:{port}"


async def _get_json(url: str) -> dict:
    async with aiohttp.ClientSession() as session:
        async with session.get(url) as resp:
            assert resp.status == 200
            return await resp.json()


class TestRestAccessors:
    async def test_endpoint_before_commit(self, base_url):
        data = await _get_json(f"{base_url}/api/endpoint")
        assert data == {
            "url": "http://localhost:3001",
            "is_public": False,
            "source": "local",
            "committed": False,
        }

    async def test_endpoint_after_tunnel_commit(self, base_url, publisher):
        publisher.commit(PublishedEndpoint.tunnel("https://abcd-1234.trycloudflare.com"))
        data = await _get_json(f"{base_url}/api/endpoint")
        assert data["url"] == "https://abcd-1234.trycloudflare.com"
        assert data["is_public"] is True
        assert data["committed"] is True

    async def test_tunnel_url_null_until_public(self, base_url, publisher):
        assert await _get_json(f"{base_url}/api/tunnel-url") == {"url": None}
        publisher.commit(PublishedEndpoint.tunnel("https://abcd-1234.trycloudflare.com"))
        assert await _get_json(f"{base_url}/api/tunnel-url") == {
            "url": "https://abcd-1234.trycloudflare.com",
        }

    async def test_network_info(self, base_url):
        data = await _get_json(f"{base_url}/api/network-info")
        assert data["network_ip"] == "10.0.0.5"
        assert data["network_api_url"] == "http://10.0.0.5:3001"
        assert data["local_api_url"] == "http://localhost:3001"
        assert data["ports"] == {"api": 3001}
        assert data["has_tunnel"] is False
        assert data["state"] == "idle"


class TestEventStream:
    async def test_forwards_commits_and_logs(self, base_url, event_bus):
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{base_url}/api/events") as resp:
                assert resp.status == 200
                assert resp.headers["Content-Type"].startswith("text/event-stream")

                for _ in range(100):
                    if event_bus._subscribers.get(EndpointCommittedEvent):
                        break
                    await asyncio.sleep(0.01)

                event_bus.publish(TunnelLogEvent(stream="stderr", message="INF Registered"))
                event_bus.publish(EndpointCommittedEvent(
                    url="https://abcd-1234.trycloudflare.com", is_public=True, source="tunnel",
                ))

                frames: list[tuple[str, dict]] = []
                name = None
                while len(frames) < 2:
                    line = (await asyncio.wait_for(resp.content.readline(), timeout=5)).decode().strip()
                    if line.startswith("event: "):
                        name = line[len("event: "):]
                    elif line.startswith("data: "):
                        frames.append((name, json.loads(line[len("data: "):])))

        by_name = dict(frames)
        assert set(by_name) == {"tunnel-log", "tunnel-url-updated"}
        assert by_name["tunnel-log"]["message"] == "INF Registered"
        assert by_name["tunnel-url-updated"]["url"] == "https://abcd-1234.trycloudflare.com"
        assert by_name["tunnel-url-updated"]["is_public"] is True
