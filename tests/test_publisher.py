"""Tests for EndpointPublisher."""
from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

from fetchdata.capabilities.tunnel.base import EndpointSource, PublishedEndpoint
from fetchdata.core.events import EndpointCommittedEvent, EventBus
from fetchdata.core.publisher import EndpointPublisher
from fetchdata.storage.recovery_record import RecoveryRecord

TUNNEL_URL = "https://abcd-1234.trycloudflare.com"


class TestCommit:
    def test_sentinel_before_commit(self, publisher: EndpointPublisher):
        assert publisher.has_committed is False
        current = publisher.current()
        assert current.url == "http://localhost:3001"
        assert current.source is EndpointSource.LOCAL

    def test_commit_public_writes_record(self, publisher: EndpointPublisher, record_path: Path):
        publisher.commit(PublishedEndpoint.tunnel(TUNNEL_URL))
        assert publisher.has_committed
        assert publisher.current().url == TUNNEL_URL
        assert publisher.read_recovery() == TUNNEL_URL
        assert record_path.read_text() == TUNNEL_URL

    def test_commit_local_removes_record(self, publisher: EndpointPublisher, record_path: Path):
        publisher.commit(PublishedEndpoint.tunnel(TUNNEL_URL))
        publisher.commit(PublishedEndpoint.local("http://localhost:3001"))
        assert not record_path.exists()
        assert publisher.read_recovery() is None

    def test_clear_recovery(self, publisher: EndpointPublisher):
        publisher.commit(PublishedEndpoint.tunnel(TUNNEL_URL))
        assert publisher.clear_recovery() is True
        assert publisher.read_recovery() is None
        # in-memory value is unaffected
        assert publisher.current().url == TUNNEL_URL

    def test_persistence_failure_keeps_memory_value(self, publisher: EndpointPublisher):
        with patch.object(Path, "write_text", side_effect=OSError("disk full")):
            publisher.commit(PublishedEndpoint.tunnel(TUNNEL_URL))
        assert publisher.current().url == TUNNEL_URL

    async def test_publishes_event(self, record_path: Path):
        bus = EventBus()
        queue = bus.subscribe(EndpointCommittedEvent)
        pub = EndpointPublisher(
            RecoveryRecord(record_path),
            PublishedEndpoint.local("http://localhost:3001"),
            event_bus=bus,
        )
        pub.commit(PublishedEndpoint.tunnel(TUNNEL_URL))
        ev = queue.get_nowait()
        assert ev.url == TUNNEL_URL
        assert ev.is_public is True
        assert ev.source == "tunnel"


class TestSubscribers:
    def test_callback_receives_value(self, publisher: EndpointPublisher):
        seen: list[PublishedEndpoint] = []
        publisher.subscribe(seen.append)
        publisher.commit(PublishedEndpoint.tunnel(TUNNEL_URL))
        assert seen == [PublishedEndpoint.tunnel(TUNNEL_URL)]

    def test_unsubscribe(self, publisher: EndpointPublisher):
        seen: list[PublishedEndpoint] = []
        token = publisher.subscribe(seen.append)
        assert publisher.unsubscribe(token) is True
        assert publisher.unsubscribe(token) is False
        publisher.commit(PublishedEndpoint.tunnel(TUNNEL_URL))
        assert seen == []

    def test_commit_order_with_reentrant_commit(self, publisher: EndpointPublisher):
        order: list[tuple[str, str]] = []
        first = PublishedEndpoint.tunnel(TUNNEL_URL)
        second = PublishedEndpoint.local("http://localhost:3001")

        def a(ep: PublishedEndpoint) -> None:
            order.append(("a", ep.url))
            if ep == first:
                publisher.commit(second)

        def b(ep: PublishedEndpoint) -> None:
            order.append(("b", ep.url))

        publisher.subscribe(a)
        publisher.subscribe(b)
        publisher.commit(first)

        # b sees the first value before anyone sees the second
        assert order == [
            ("a", TUNNEL_URL),
            ("b", TUNNEL_URL),
            ("a", "http://localhost:3001"),
            ("b", "http://localhost:3001"),
        ]
        assert publisher.current() == second

    def test_failing_callback_does_not_block_others(self, publisher: EndpointPublisher, caplog):
        seen: list[str] = []

        def broken(ep: PublishedEndpoint) -> None:
            raise RuntimeError("boom")

        publisher.subscribe(broken)
        publisher.subscribe(lambda ep: seen.append(ep.url))
        publisher.commit(PublishedEndpoint.tunnel(TUNNEL_URL))
        assert seen == [TUNNEL_URL]
        assert "subscriber" in caplog.text

    def test_unsubscribe_during_dispatch(self, publisher: EndpointPublisher):
        seen: list[str] = []
        tokens = {}

        def first(ep: PublishedEndpoint) -> None:
            publisher.unsubscribe(tokens["second"])

        tokens["first"] = publisher.subscribe(first)
        tokens["second"] = publisher.subscribe(lambda ep: seen.append(ep.url))
        publisher.commit(PublishedEndpoint.tunnel(TUNNEL_URL))
        assert seen == []
