"""Shared types for the tunnel capability."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlparse

from fetchdata.core.errors import InvalidTransition


@dataclass(frozen=True)
class ServiceEndpoint:
    """Address of a local service or a tunnel target."""

    scheme: str
    host: str
    port: int

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    @classmethod
    def parse(cls, url: str) -> ServiceEndpoint:
        """Build an endpoint from ``scheme://host[:port]``."""
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.hostname:
            raise ValueError(f"Not an absolute URL: {url!r}")
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        return cls(scheme=parsed.scheme, host=parsed.hostname, port=port)


class DetectionState(Enum):
    """Lifecycle of a single tunnel session."""
    IDLE = "idle"
    STARTING = "starting"
    AWAITING_URL = "awaiting_url"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    TIMED_OUT = "timed_out"
    FALLEN_BACK = "fallen_back"


_TRANSITIONS: dict[DetectionState, frozenset[DetectionState]] = {
    DetectionState.IDLE: frozenset({DetectionState.STARTING}),
    DetectionState.STARTING: frozenset({
        DetectionState.AWAITING_URL, DetectionState.FALLEN_BACK,
    }),
    DetectionState.AWAITING_URL: frozenset({
        DetectionState.VERIFYING, DetectionState.TIMED_OUT, DetectionState.FALLEN_BACK,
    }),
    # A candidate recovered from the on-disk record is verified like a fresh match
    DetectionState.TIMED_OUT: frozenset({
        DetectionState.VERIFYING, DetectionState.FALLEN_BACK,
    }),
    DetectionState.VERIFYING: frozenset({
        DetectionState.COMMITTED, DetectionState.FALLEN_BACK,
    }),
    DetectionState.COMMITTED: frozenset(),
    DetectionState.FALLEN_BACK: frozenset(),
}

TERMINAL_STATES = frozenset({DetectionState.COMMITTED, DetectionState.FALLEN_BACK})


@dataclass
class TunnelSession:
    """One attempt at exposing *target* through a tunnel."""

    target: ServiceEndpoint
    detection_timeout: float
    candidate_url: str | None = None
    state: DetectionState = DetectionState.IDLE
    started_at: float = field(default_factory=time.time)

    @property
    def detection_deadline(self) -> float:
        return self.started_at + self.detection_timeout

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, new_state: DetectionState) -> None:
        """Move to *new_state*; only forward transitions are accepted."""
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Tunnel session cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def offer_candidate(self, url: str) -> bool:
        """Record *url* as the candidate. Returns False if one is already set."""
        if self.candidate_url is not None:
            return False
        self.candidate_url = url
        return True


class EndpointSource(Enum):
    TUNNEL = "tunnel"
    LOCAL = "local"


@dataclass(frozen=True)
class PublishedEndpoint:
    """The application endpoint currently handed to the UI."""

    url: str
    is_public: bool
    source: EndpointSource

    @classmethod
    def tunnel(cls, url: str) -> PublishedEndpoint:
        return cls(url=url, is_public=True, source=EndpointSource.TUNNEL)

    @classmethod
    def local(cls, url: str) -> PublishedEndpoint:
        return cls(url=url, is_public=False, source=EndpointSource.LOCAL)

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "is_public": self.is_public,
            "source": self.source.value,
        }
