"""Child process tracker: makes sure services and tunnels die with us.

Every long-running child (API server, preview server, cloudflared) is
registered here. ``install_atexit()`` sends SIGTERM to whatever is still
tracked when the interpreter exits, including exits by unhandled exception.
PIDs are mirrored to a file so that orphans of a crashed run (SIGKILL cannot
be caught) are reaped by ``cleanup_stale()`` on the next start.
"""
from __future__ import annotations

import atexit
import logging
import os
import signal
from pathlib import Path

logger = logging.getLogger(__name__)


class SubprocessTracker:
    """Set of child PIDs owned by this orchestrator run."""

    def __init__(self, pid_file: str | Path | None = None) -> None:
        self._pids: set[int] = set()
        self._pid_file = Path(pid_file) if pid_file else None
        self._atexit_installed = False

    @property
    def pids(self) -> frozenset[int]:
        return frozenset(self._pids)

    def install_atexit(self) -> None:
        if not self._atexit_installed:
            atexit.register(self.kill_all)
            self._atexit_installed = True

    def track(self, pid: int) -> None:
        self._pids.add(pid)
        self._save()

    def untrack(self, pid: int) -> None:
        self._pids.discard(pid)
        self._save()

    def kill_all(self) -> None:
        """SIGTERM every tracked PID."""
        for pid in list(self._pids):
            try:
                os.kill(pid, signal.SIGTERM)
                logger.debug("Sent SIGTERM to tracked PID %d", pid)
            except ProcessLookupError:
                pass
            except OSError as e:
                logger.debug("Failed to signal PID %d: %s", pid, e)
        self._pids.clear()
        self._save()

    def cleanup_stale(self) -> int:
        """Kill children left behind by a previous run. Returns the count."""
        if not self._pid_file or not self._pid_file.exists():
            return 0
        killed = 0
        try:
            lines = self._pid_file.read_text().splitlines()
        except OSError as e:
            logger.debug("Could not read PID file %s: %s", self._pid_file, e)
            lines = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                pid = int(line)
                os.kill(pid, signal.SIGTERM)
                killed += 1
                logger.info("Killed stale child process PID %d", pid)
            except ValueError:
                pass
            except ProcessLookupError:
                pass  # already gone
            except OSError as e:
                logger.debug("Could not kill stale PID %s: %s", line, e)
        if killed:
            logger.info("Cleaned up %d stale child process(es)", killed)
        try:
            self._pid_file.unlink(missing_ok=True)
        except OSError as e:
            logger.debug("Could not remove PID file %s: %s", self._pid_file, e)
        return killed

    def _save(self) -> None:
        if not self._pid_file:
            return
        try:
            self._pid_file.parent.mkdir(parents=True, exist_ok=True)
            self._pid_file.write_text(
                "\n".join(str(pid) for pid in sorted(self._pids)) + "\n"
                if self._pids else ""
            )
        except OSError as e:
            logger.debug("Could not persist PID file %s: %s", self._pid_file, e)
