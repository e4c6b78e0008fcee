"""cloudflared quick tunnel process and its URL detection state machine.

The client prints its public URL somewhere in a banner on either stdout or
stderr depending on version. Both streams are drained for the whole life of
the process. The first of {stdout match, stderr match, detection deadline,
process exit} to resolve the session's detection future wins; every later
attempt is discarded.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from enum import Enum

from fetchdata.capabilities.tunnel.base import (
    DetectionState,
    ServiceEndpoint,
    TunnelSession,
)
from fetchdata.capabilities.tunnel.patterns import DEFAULT_MATCHER, PatternMatcher
from fetchdata.capabilities.tunnel.services import terminate_process
from fetchdata.core.events import (
    DetectionStateEvent,
    EventBus,
    TunnelLogEvent,
    TunnelUrlFoundEvent,
)
from fetchdata.core.subprocess_tracker import SubprocessTracker

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = ("cloudflared", "tunnel", "--url")
DEFAULT_DETECTION_TIMEOUT = 15.0

INSTALL_HINT = (
    "Make sure cloudflared is installed: https://developers.cloudflare.com/"
    "cloudflare-one/connections/connect-apps/install-and-setup/installation/"
)


class DetectionReason(Enum):
    MATCHED = "matched"
    TIMED_OUT = "timed_out"
    EXITED = "exited"
    SPAWN_FAILED = "spawn_failed"


@dataclass(frozen=True)
class Detection:
    """How a session's wait for a URL ended."""
    reason: DetectionReason
    candidate: str | None = None


class TunnelSupervisor:
    """Runs one tunnel client process at a time and detects its URL."""

    def __init__(
        self,
        matcher: PatternMatcher = DEFAULT_MATCHER,
        command: list[str] | tuple[str, ...] = DEFAULT_COMMAND,
        detection_timeout: float = DEFAULT_DETECTION_TIMEOUT,
        event_bus: EventBus | None = None,
        tracker: SubprocessTracker | None = None,
        stop_timeout: float = 5.0,
    ) -> None:
        if not command:
            raise ValueError("Tunnel command must not be empty")
        self._matcher = matcher
        self._command = list(command)
        self._detection_timeout = detection_timeout
        self._event_bus = event_bus
        self._tracker = tracker
        self._stop_timeout = stop_timeout

        self._session: TunnelSession | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._detection: asyncio.Future[Detection] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._readers: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None

    @property
    def session(self) -> TunnelSession | None:
        return self._session

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def tunnel_type(self) -> str:
        return "cloudflared"

    async def start(self, target: ServiceEndpoint) -> TunnelSession:
        """Spawn the client against *target* and begin detection.

        Never raises for spawn problems: the session goes straight to
        FALLEN_BACK and ``wait_for_candidate`` reports SPAWN_FAILED.
        """
        if self._session is not None:
            await self.stop()

        loop = asyncio.get_running_loop()
        session = TunnelSession(target=target, detection_timeout=self._detection_timeout)
        detection: asyncio.Future[Detection] = loop.create_future()
        self._session = session
        self._detection = detection
        self.advance(DetectionState.STARTING)

        executable = shutil.which(self._command[0])
        if not executable:
            logger.error("Tunnel client %r not found in PATH. %s", self._command[0], INSTALL_HINT)
            self._fall_back(session, detection, DetectionReason.SPAWN_FAILED)
            return session

        logger.info("Starting tunnel: %s -> %s", self._command[0], target.url)
        try:
            self._process = await asyncio.create_subprocess_exec(
                executable, *self._command[1:], target.url,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Tunnel process error: %s. %s", e, INSTALL_HINT)
            self._fall_back(session, detection, DetectionReason.SPAWN_FAILED)
            return session

        if self._tracker:
            self._tracker.track(self._process.pid)

        self.advance(DetectionState.AWAITING_URL)
        self._readers = [
            asyncio.create_task(
                self._read_stream(self._process.stdout, "stdout", session, detection),
            ),
            asyncio.create_task(
                self._read_stream(self._process.stderr, "stderr", session, detection),
            ),
        ]
        self._watcher = asyncio.create_task(
            self._watch_exit(self._process, session, detection),
        )
        self._timer = loop.call_later(
            self._detection_timeout, self._on_deadline, session, detection,
        )
        return session

    async def wait_for_candidate(self) -> Detection:
        """Wait until the current session's detection race is decided."""
        if self._detection is None:
            raise RuntimeError("Tunnel session not started")
        return await asyncio.shield(self._detection)

    async def wait_exited(self) -> int | None:
        """Wait for the tunnel process to exit. Returns immediately if none."""
        if self._process is None:
            return None
        return await self._process.wait()

    def advance(self, state: DetectionState) -> None:
        """Move the current session to *state* and announce it."""
        if self._session is None:
            raise RuntimeError("Tunnel session not started")
        self._session.advance(state)
        logger.info("Tunnel session %s (target %s)", state.value, self._session.target.url)
        if self._event_bus:
            self._event_bus.publish(DetectionStateEvent(
                state=state.value, target=self._session.target.url,
            ))

    async def stop(self) -> None:
        """Cancel readers and timer, terminate the client process."""
        self._cancel_timer()
        tasks = [*self._readers, *([self._watcher] if self._watcher else [])]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._readers = []
        self._watcher = None

        proc = self._process
        self._process = None
        if proc is not None:
            await terminate_process(proc, "cloudflared", timeout=self._stop_timeout)
            if self._tracker:
                self._tracker.untrack(proc.pid)

        session, detection = self._session, self._detection
        if session is not None and detection is not None and not detection.done():
            self._fall_back(session, detection, DetectionReason.EXITED)

    # ------------------------------------------------------------------
    # Detection race
    # ------------------------------------------------------------------

    async def _read_stream(
        self,
        stream: asyncio.StreamReader | None,
        label: str,
        session: TunnelSession,
        detection: asyncio.Future[Detection],
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Oversized line; the reader has already discarded it
                logger.debug("cloudflared(%s): skipped oversized line", label)
                continue
            if not line:
                return

            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            logger.debug("cloudflared(%s): %s", label, text)
            if self._event_bus:
                self._event_bus.publish(TunnelLogEvent(stream=label, message=text))

            url = self._matcher.extract(text)
            if url:
                if self._event_bus:
                    self._event_bus.publish(
                        TunnelUrlFoundEvent(url=url, stream=label, full_log=text),
                    )
                self._claim(session, detection, url, label)

    def _claim(
        self,
        session: TunnelSession,
        detection: asyncio.Future[Detection],
        url: str,
        label: str,
    ) -> None:
        if detection.done() or session is not self._session:
            logger.debug("Ignoring tunnel URL from %s, detection already decided: %s", label, url)
            return
        session.offer_candidate(url)
        self._cancel_timer()
        self.advance(DetectionState.VERIFYING)
        logger.info("Tunnel URL detected from %s: %s", label, url)
        detection.set_result(Detection(DetectionReason.MATCHED, url))

    def _on_deadline(self, session: TunnelSession, detection: asyncio.Future[Detection]) -> None:
        self._timer = None
        if detection.done() or session is not self._session:
            return
        logger.warning(
            "Tunnel URL not detected from output after %.0f seconds",
            self._detection_timeout,
        )
        self.advance(DetectionState.TIMED_OUT)
        detection.set_result(Detection(DetectionReason.TIMED_OUT))

    async def _watch_exit(
        self,
        proc: asyncio.subprocess.Process,
        session: TunnelSession,
        detection: asyncio.Future[Detection],
    ) -> None:
        code = await proc.wait()
        # Let the readers drain what the process wrote before it died
        readers = [t for t in self._readers if not t.done()]
        if readers:
            await asyncio.wait(readers, timeout=1.0)
        if detection.done() or session is not self._session:
            logger.info("Tunnel process exited with code %s", code)
            return
        logger.warning("Tunnel process exited with code %s before a URL was found", code)
        self._fall_back(session, detection, DetectionReason.EXITED)

    def _fall_back(
        self,
        session: TunnelSession,
        detection: asyncio.Future[Detection],
        reason: DetectionReason,
    ) -> None:
        self._cancel_timer()
        if not session.is_terminal and session is self._session:
            self.advance(DetectionState.FALLEN_BACK)
        if not detection.done():
            detection.set_result(Detection(reason))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
