"""Local service processes (API server, static preview) and readiness probes."""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field

from fetchdata.core.errors import ServiceStartError
from fetchdata.core.subprocess_tracker import SubprocessTracker

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ServiceHandle:
    """A service process started by ``ServiceSupervisor``."""

    name: str
    command: list[str]
    process: asyncio.subprocess.Process
    env_overrides: dict[str, str] = field(default_factory=dict)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None


async def terminate_process(
    proc: asyncio.subprocess.Process | None, label: str, timeout: float = 5.0,
) -> None:
    """SIGTERM *proc*, escalate to SIGKILL after *timeout*. Never raises."""
    if proc is None or proc.returncode is not None:
        return
    try:
        proc.terminate()
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except (asyncio.TimeoutError, ProcessLookupError):
        try:
            proc.kill()
            await asyncio.wait_for(proc.wait(), timeout=1.0)
        except (asyncio.TimeoutError, ProcessLookupError):
            pass
        except OSError as e:
            logger.warning("Failed to kill %s (pid %d): %s", label, proc.pid, e)
    except OSError as e:
        logger.warning("Failed to terminate %s (pid %d): %s", label, proc.pid, e)
    logger.info("Stopped %s process", label)


class ServiceSupervisor:
    """Starts and stops local service processes."""

    def __init__(
        self,
        tracker: SubprocessTracker | None = None,
        stop_timeout: float = 5.0,
    ) -> None:
        self._tracker = tracker
        self._stop_timeout = stop_timeout
        self._handles: list[ServiceHandle] = []

    @property
    def handles(self) -> list[ServiceHandle]:
        return list(self._handles)

    async def start(
        self,
        name: str,
        command: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> ServiceHandle:
        """Spawn *command* with inherited stdio and *env* layered over ours.

        Raises ServiceStartError when the executable cannot be launched.
        """
        overrides = dict(env or {})
        full_env = {**os.environ, **overrides}
        logger.info("Starting service %s: %s (env %s)", name, command, overrides)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command, cwd=cwd, env=full_env,
            )
        except OSError as e:
            raise ServiceStartError(
                f"Could not start service {name} ({command[0] if command else '?'}): {e}"
            ) from e

        handle = ServiceHandle(
            name=name, command=list(command), process=proc, env_overrides=overrides,
        )
        self._handles.append(handle)
        if self._tracker:
            self._tracker.track(proc.pid)
        return handle

    async def is_ready(self, host: str, port: int, timeout: float = 1.0) -> bool:
        """Return True if a TCP connection to host:port succeeds in time."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def wait_ready(
        self,
        host: str,
        port: int,
        max_wait: float = 15.0,
        poll_interval: float = 1.0,
    ) -> bool:
        """Poll ``is_ready`` until it succeeds or *max_wait* elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait
        logger.info("Waiting for service at %s:%d...", host, port)
        while True:
            remaining = deadline - loop.time()
            if await self.is_ready(host, port, timeout=max(min(remaining, 2.0), 0.1)):
                logger.info("Service ready at %s:%d", host, port)
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval, remaining))
        logger.warning("Service at %s:%d not ready after %.1fs", host, port, max_wait)
        return False

    async def stop(self, handle: ServiceHandle | None) -> None:
        """Terminate *handle*. Unknown or already-stopped handles are ignored."""
        if handle is None or handle not in self._handles:
            return
        self._handles.remove(handle)
        await terminate_process(
            handle.process, f"service({handle.name})", timeout=self._stop_timeout,
        )
        if self._tracker:
            self._tracker.untrack(handle.pid)

    async def stop_all(self) -> None:
        """Stop every service this supervisor started, newest first."""
        for handle in reversed(self.handles):
            await self.stop(handle)
