from __future__ import annotations

import logging
from pathlib import Path

from fetchdata.capabilities.tunnel.patterns import DEFAULT_MATCHER, PatternMatcher

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = ".tunnel-info"


class RecoveryRecord:
    """Plain-text mirror of the last committed public URL.

    A separately launched UI process reads this file when it cannot reach
    the orchestrator's notification interface.
    """

    def __init__(self, path: str | Path, matcher: PatternMatcher = DEFAULT_MATCHER) -> None:
        self._path = Path(path)
        self._matcher = matcher

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> str | None:
        """Return the recorded URL, or None if absent or unusable."""
        try:
            if not self._path.exists():
                return None
            text = self._path.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.warning("Could not read recovery record %s: %s", self._path, e)
            return None
        if not text:
            return None
        if text.startswith(("http://", "https://")) and not any(c.isspace() for c in text):
            return text
        # Older launchers wrote a banner line rather than the bare URL
        return self._matcher.extract(text)

    def write(self, url: str) -> bool:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(url, encoding="utf-8")
        except OSError as e:
            logger.warning("Could not save tunnel URL to %s: %s", self._path, e)
            return False
        logger.info("Saved tunnel URL to %s", self._path)
        return True

    def clear(self) -> bool:
        try:
            existed = self._path.exists()
            self._path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove recovery record %s: %s", self._path, e)
            return False
        if existed:
            logger.info("Cleaned up recovery record %s", self._path)
        return True
