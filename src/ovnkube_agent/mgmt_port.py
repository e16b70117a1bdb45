"""Host side of the per-node management port."""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Callable, Iterable, Optional

import pyroute2

from ovnkube.util import (
    mac_from_ip,
    mgmt_address,
    mgmt_port,
    router_address,
)

from .ovs import OvsVsctl

LOG = logging.getLogger(__name__)

IFNAMSIZ = 15
NUD_PERMANENT = 0x80


def interface_name(node: str) -> str:
    """Kernel interface names are limited to 15 characters."""

    return mgmt_port(node)[:IFNAMSIZ]


class ManagementPort:
    """Plug the management port into ``br-int`` and route cluster traffic to it.

    The port gives the host itself an address (HostSubnet[1]) on the node
    switch so host processes can reach pods and services.  Every step is
    idempotent so the agent can run it on each start.
    """

    def __init__(
        self,
        node: str,
        subnet: ipaddress.IPv4Network,
        *,
        vsctl: Optional[OvsVsctl] = None,
        iproute: Callable[[], pyroute2.IPRoute] = pyroute2.IPRoute,
        mtu: int = 1400,
    ) -> None:
        self.node = node
        self.subnet = subnet
        self.name = interface_name(node)
        self.address = mgmt_address(subnet)
        self.mac = mac_from_ip(self.address)
        self.router_ip = router_address(subnet)
        self.router_mac = mac_from_ip(self.router_ip)
        self._vsctl = vsctl or OvsVsctl()
        self._iproute = iproute
        self._mtu = mtu

    def create(self, routed: Iterable[ipaddress.IPv4Network]) -> None:
        """Create the port and route ``routed`` prefixes through the router."""

        self._vsctl.add_internal_port(
            self.name, mgmt_port(self.node), mac=self.mac, mtu=self._mtu
        )
        with self._iproute() as ipr:
            links = ipr.link_lookup(ifname=self.name)
            if not links:
                raise RuntimeError(f"management interface {self.name} did not appear")
            index = links[0]
            ipr.link("set", index=index, address=self.mac, mtu=self._mtu, state="up")

            ipr.flush_addr(index=index, family=socket.AF_INET)
            ipr.addr(
                "add",
                index=index,
                address=str(self.address),
                prefixlen=self.subnet.prefixlen,
            )

            for prefix in routed:
                ipr.route(
                    "replace",
                    dst=str(prefix),
                    gateway=str(self.router_ip),
                    oif=index,
                )
                LOG.debug("Routing %s via %s on %s", prefix, self.router_ip, self.name)

            ipr.neigh(
                "replace",
                dst=str(self.router_ip),
                lladdr=self.router_mac,
                ifindex=index,
                state=NUD_PERMANENT,
            )
        LOG.info(
            "Management port %s configured with %s/%d",
            self.name,
            self.address,
            self.subnet.prefixlen,
        )
