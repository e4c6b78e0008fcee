"""Orchestrator: brings up services, the tunnel, and publishes the endpoint.

Stages run sequentially: services → readiness → tunnel → detection →
verification → commit. Whatever happens along the way, ``start()`` ends with
exactly one commit, public if the tunnel URL was found and reachable, the
local service address otherwise.
"""
from __future__ import annotations

import asyncio
import logging

from fetchdata.capabilities.tunnel.base import (
    DetectionState,
    PublishedEndpoint,
    ServiceEndpoint,
)
from fetchdata.capabilities.tunnel.cloudflared import DetectionReason, TunnelSupervisor
from fetchdata.capabilities.tunnel.network import NetworkInfoProvider
from fetchdata.capabilities.tunnel.services import ServiceSupervisor
from fetchdata.capabilities.tunnel.verifier import AccessibilityVerifier
from fetchdata.config import LaunchConfig, ServiceConfig
from fetchdata.core.errors import InvalidTransition, ServiceStartError
from fetchdata.core.events import EventBus
from fetchdata.core.publisher import EndpointPublisher
from fetchdata.core.subprocess_tracker import SubprocessTracker
from fetchdata.storage.recovery_record import RecoveryRecord

logger = logging.getLogger(__name__)

# Readiness probes go to the loopback address; services bind 0.0.0.0
PROBE_HOST = "127.0.0.1"


class OrchestratorController:
    """Owns the services, the tunnel session and the published endpoint."""

    def __init__(
        self,
        config: LaunchConfig,
        publisher: EndpointPublisher,
        services: ServiceSupervisor,
        tunnel: TunnelSupervisor,
        verifier: AccessibilityVerifier,
        network: NetworkInfoProvider | None = None,
    ) -> None:
        self._config = config
        self._publisher = publisher
        self._services = services
        self._tunnel = tunnel
        self._verifier = verifier
        self._network = network or NetworkInfoProvider()
        self._discovered: set[str] = set()
        self._committed = False
        self._started = False

    @property
    def publisher(self) -> EndpointPublisher:
        return self._publisher

    @property
    def tunnel(self) -> TunnelSupervisor:
        return self._tunnel

    @property
    def discovered_services(self) -> set[str]:
        """Services that were already listening and are left untouched."""
        return set(self._discovered)

    def local_endpoint(self) -> PublishedEndpoint:
        svc = self._config.tunnel_service
        port = svc.port if svc else 0
        return PublishedEndpoint.local(ServiceEndpoint("http", "localhost", port).url)

    # ------------------------------------------------------------------

    async def start(self) -> PublishedEndpoint:
        """Run every stage and return the committed endpoint. Never raises.

        Only the first call launches anything; later calls return the
        endpoint already published.
        """
        if self._started:
            logger.warning("Launch already ran, keeping %s", self._publisher.current().url)
            return self._publisher.current()
        self._started = True
        try:
            return await self._run()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Launch failed, falling back to local URL")
            self._abandon_session()
            return self._commit(self.local_endpoint())

    def _abandon_session(self) -> None:
        session = self._tunnel.session
        if session is None or session.is_terminal:
            return
        try:
            self._tunnel.advance(DetectionState.FALLEN_BACK)
        except InvalidTransition as e:
            logger.warning("Could not mark tunnel session as fallen back: %s", e)

    async def stop(self) -> None:
        """Best-effort teardown of the tunnel, started services and the record."""
        logger.info("Shutting down services...")
        try:
            await self._tunnel.stop()
        except Exception as e:
            logger.warning("Failed to stop tunnel: %s", e)
        try:
            await self._services.stop_all()
        except Exception as e:
            logger.warning("Failed to stop services: %s", e)
        self._publisher.clear_recovery()
        logger.info("All services stopped")

    def network_info(self) -> dict:
        """Snapshot for the UI: endpoint, addresses and ports."""
        ip = self._network.local_address()
        svc = self._config.tunnel_service
        port = svc.port if svc else 0
        current = self._publisher.current()
        tunnel_url = current.url if current.is_public else None
        session = self._tunnel.session
        return {
            "tunnel_url": tunnel_url,
            "network_ip": ip,
            "local_api_url": f"http://localhost:{port}",
            "network_api_url": f"http://{ip}:{port}",
            "ports": self._config.ports,
            "has_tunnel": tunnel_url is not None,
            "source": current.source.value,
            "state": session.state.value if session else DetectionState.IDLE.value,
        }

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run(self) -> PublishedEndpoint:
        self._publisher.clear_recovery()
        await self._bring_up_services()

        local = self.local_endpoint()
        svc = self._config.tunnel_service
        if not self._config.use_tunnel or svc is None:
            logger.info("Local mode, using %s", local.url)
            return self._commit(local)

        target = self._network.network_endpoint(svc.port)
        logger.info("Tunnel target: %s", target.url)
        session = await self._tunnel.start(target)
        detection = await self._tunnel.wait_for_candidate()

        candidate: str | None = None
        if detection.reason is DetectionReason.MATCHED:
            candidate = detection.candidate
        elif detection.reason is DetectionReason.TIMED_OUT:
            recovered = self._publisher.read_recovery()
            if recovered:
                logger.info("Found tunnel URL in recovery record: %s", recovered)
                session.offer_candidate(recovered)
                self._tunnel.advance(DetectionState.VERIFYING)
                candidate = recovered
            else:
                logger.warning("No tunnel URL found, falling back to %s", local.url)
                self._tunnel.advance(DetectionState.FALLEN_BACK)
        else:
            logger.warning(
                "Tunnel unavailable (%s, target %s), falling back to %s",
                detection.reason.value, target.url, local.url,
            )

        if candidate is None:
            return self._commit(local)

        if await self._verify(candidate):
            self._tunnel.advance(DetectionState.COMMITTED)
            return self._commit(PublishedEndpoint.tunnel(candidate))

        logger.warning("Tunnel URL is not accessible, falling back to %s", local.url)
        self._tunnel.advance(DetectionState.FALLEN_BACK)
        return self._commit(local)

    async def _bring_up_services(self) -> None:
        for svc in self._config.services:
            if await self._services.is_ready(PROBE_HOST, svc.port):
                logger.info("Using existing %s server on port %d", svc.name, svc.port)
                self._discovered.add(svc.name)
                continue
            await self._start_service(svc)

    async def _start_service(self, svc: ServiceConfig) -> None:
        try:
            await self._services.start(
                svc.name, svc.resolve_command(), env=svc.env_overrides(),
            )
        except (ServiceStartError, ValueError) as e:
            logger.error("%s", e)
            return

        ready = await self._services.wait_ready(
            PROBE_HOST, svc.port, max_wait=self._config.ready_timeout,
        )
        if ready:
            return
        if svc.required:
            logger.error("%s server failed to start on port %d", svc.name, svc.port)
        else:
            logger.warning("%s server not ready, but continuing", svc.name)

    async def _verify(self, candidate: str) -> bool:
        """Confirm *candidate*, giving up early if the tunnel process dies."""
        verify = asyncio.create_task(self._verifier.confirm(
            candidate,
            max_attempts=self._config.probe_attempts,
            backoff=self._config.probe_interval,
        ))
        exited = asyncio.create_task(self._tunnel.wait_exited())
        try:
            done, _ = await asyncio.wait(
                {verify, exited}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (verify, exited):
                if not task.done():
                    task.cancel()
            await asyncio.gather(verify, exited, return_exceptions=True)

        if verify in done and not verify.cancelled():
            return verify.result()
        logger.warning("Tunnel process exited while verifying %s", candidate)
        return False

    def _commit(self, endpoint: PublishedEndpoint) -> PublishedEndpoint:
        if self._committed:
            logger.warning("Endpoint already committed this run, ignoring %s", endpoint.url)
            return self._publisher.current()
        self._committed = True
        self._publisher.commit(endpoint)
        return endpoint


def build_controller(
    config: LaunchConfig,
    event_bus: EventBus | None = None,
    tracker: SubprocessTracker | None = None,
) -> OrchestratorController:
    """Wire the default collaborators for *config*."""
    svc = config.tunnel_service
    default = PublishedEndpoint.local(f"http://localhost:{svc.port if svc else 0}")
    publisher = EndpointPublisher(
        RecoveryRecord(config.recovery_file), default, event_bus=event_bus,
    )
    return OrchestratorController(
        config,
        publisher=publisher,
        services=ServiceSupervisor(tracker=tracker),
        tunnel=TunnelSupervisor(
            command=config.tunnel_command,
            detection_timeout=config.detection_timeout,
            event_bus=event_bus,
            tracker=tracker,
        ),
        verifier=AccessibilityVerifier(
            max_attempts=config.probe_attempts, backoff=config.probe_interval,
        ),
    )
