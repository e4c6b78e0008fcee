"""Host network discovery for building tunnel targets."""
from __future__ import annotations

import ipaddress
import logging
import socket

import psutil

from fetchdata.capabilities.tunnel.base import ServiceEndpoint

logger = logging.getLogger(__name__)

LOCALHOST = "localhost"


class NetworkInfoProvider:
    """Finds an IPv4 address other hosts on the LAN can reach."""

    def local_address(self) -> str:
        """Return the first non-loopback, non-link-local IPv4 address.

        Falls back to ``"localhost"`` when no such address exists or the
        interfaces cannot be enumerated.
        """
        try:
            if_addrs = psutil.net_if_addrs()
            if_stats = psutil.net_if_stats()
        except (OSError, RuntimeError) as e:
            logger.debug("Could not enumerate network interfaces: %s", e)
            return LOCALHOST

        for iface, addrs in if_addrs.items():
            stats = if_stats.get(iface)
            if stats is not None and not stats.isup:
                continue
            for addr in addrs:
                if addr.family != socket.AF_INET or not addr.address:
                    continue
                try:
                    ip = ipaddress.IPv4Address(addr.address)
                except ValueError:
                    continue
                if ip.is_loopback or ip.is_link_local:
                    continue
                return str(ip)
        return LOCALHOST

    def network_endpoint(self, port: int, scheme: str = "http") -> ServiceEndpoint:
        """Endpoint for *port* on this host as seen from the network."""
        return ServiceEndpoint(scheme=scheme, host=self.local_address(), port=port)
