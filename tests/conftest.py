from __future__ import annotations

import socket
import sys
from pathlib import Path
from typing import Callable

import pytest
from aiohttp import web

from fetchdata.capabilities.tunnel.base import PublishedEndpoint
from fetchdata.core.publisher import EndpointPublisher
from fetchdata.storage.recovery_record import RecoveryRecord


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def unused_port() -> int:
    """A TCP port nothing is listening on."""
    return _free_port()


@pytest.fixture
def fake_tunnel() -> Callable[[str], list[str]]:
    """Build a tunnel command from a Python script.

    The target URL arrives in the script as ``sys.argv[1]``, the same way
    cloudflared receives it after ``tunnel --url``.
    """
    def _make(script: str) -> list[str]:
        return [sys.executable, "-c", script]
    return _make


@pytest.fixture
async def http_server():
    """Start aiohttp apps on free loopback ports. Yields a starter coroutine."""
    runners: list[web.AppRunner] = []

    async def _start(app: web.Application) -> int:
        port = _free_port()
        runner = web.AppRunner(app)
        await runner.setup()
        await web.TCPSite(runner, "127.0.0.1", port).start()
        runners.append(runner)
        return port

    yield _start
    for runner in runners:
        await runner.cleanup()


@pytest.fixture
def record_path(tmp_path: Path) -> Path:
    return tmp_path / ".tunnel-info"


@pytest.fixture
def publisher(record_path: Path) -> EndpointPublisher:
    return EndpointPublisher(
        RecoveryRecord(record_path),
        PublishedEndpoint.local("http://localhost:3001"),
    )
