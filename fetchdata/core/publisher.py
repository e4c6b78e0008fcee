"""Single source of truth for the current application endpoint."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from itertools import count
from typing import Callable

from fetchdata.capabilities.tunnel.base import PublishedEndpoint
from fetchdata.core.events import EndpointCommittedEvent, EventBus
from fetchdata.storage.recovery_record import RecoveryRecord

logger = logging.getLogger(__name__)

EndpointCallback = Callable[[PublishedEndpoint], None]

_subscription_ids = count(1)


@dataclass(frozen=True)
class Subscription:
    """Token returned by ``EndpointPublisher.subscribe``."""
    id: int = field(default_factory=lambda: next(_subscription_ids))


class EndpointPublisher:
    """Holds the published endpoint and mirrors it to the recovery record.

    Owned by one event loop. ``commit`` has no suspension point, so it is
    atomic with respect to every coroutine on that loop. Callbacks run in
    commit order and never nest: a commit made from inside a callback is
    queued and delivered after the current round.
    """

    def __init__(
        self,
        record: RecoveryRecord,
        default: PublishedEndpoint,
        event_bus: EventBus | None = None,
    ) -> None:
        self._record = record
        self._current = default
        self._committed = False
        self._event_bus = event_bus
        self._callbacks: dict[Subscription, EndpointCallback] = {}
        self._pending: deque[PublishedEndpoint] = deque()
        self._dispatching = False

    @property
    def has_committed(self) -> bool:
        return self._committed

    @property
    def record(self) -> RecoveryRecord:
        return self._record

    def current(self) -> PublishedEndpoint:
        """Latest committed endpoint, or the local default before any commit."""
        return self._current

    def subscribe(self, callback: EndpointCallback) -> Subscription:
        token = Subscription()
        self._callbacks[token] = callback
        return token

    def unsubscribe(self, token: Subscription) -> bool:
        return self._callbacks.pop(token, None) is not None

    def commit(self, endpoint: PublishedEndpoint) -> None:
        """Publish *endpoint*: swap value, persist, notify."""
        self._current = endpoint
        self._committed = True
        logger.info(
            "Published endpoint %s (source=%s)", endpoint.url, endpoint.source.value,
        )

        if endpoint.is_public:
            self._record.write(endpoint.url)
        else:
            self._record.clear()

        if self._event_bus:
            self._event_bus.publish(EndpointCommittedEvent(
                url=endpoint.url,
                is_public=endpoint.is_public,
                source=endpoint.source.value,
            ))

        self._pending.append(endpoint)
        if not self._dispatching:
            self._dispatch()

    def clear_recovery(self) -> bool:
        return self._record.clear()

    def read_recovery(self) -> str | None:
        return self._record.read()

    def _dispatch(self) -> None:
        self._dispatching = True
        try:
            while self._pending:
                endpoint = self._pending.popleft()
                for token, callback in list(self._callbacks.items()):
                    if token not in self._callbacks:
                        continue  # unsubscribed by an earlier callback
                    try:
                        callback(endpoint)
                    except Exception:
                        logger.exception("Endpoint subscriber %d failed", token.id)
        finally:
            self._dispatching = False
