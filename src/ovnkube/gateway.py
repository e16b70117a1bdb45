"""Gateway router reconciler for nodes that advertise an uplink."""

from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from .allocator import AddressSpace, TransitAllocator, TransitLink
from .config import TopologyConfig
from .exceptions import NotReadyError
from .model import Node
from .nbdb import Kind, NorthboundClient, nat_key, route_key
from .store import ObjectStore
from .util import (
    CLUSTER_ROUTER,
    GATEWAY_ANNOTATION,
    GatewayInfo,
    external_router_port,
    external_switch,
    gateway_from_annotations,
    gateway_router,
    gateway_uplink_port,
    localnet_port,
    mac_from_ip,
    owned_key,
    owner,
    transit_cluster_port,
    transit_gateway_port,
)

LOG = logging.getLogger(__name__)

OWNER_KIND = "gateway"
DEFAULT_ROUTE = "0.0.0.0/0"
PHYSICAL_NETWORK = "physnet"


@dataclass(frozen=True)
class GatewayState:
    info: GatewayInfo
    link: TransitLink
    host_subnet: ipaddress.IPv4Network


def _gateway_info(node: Node) -> Optional[GatewayInfo]:
    try:
        return gateway_from_annotations(node.annotations)
    except ValueError as exc:
        LOG.error("Malformed %s annotation on node %s: %s", GATEWAY_ANNOTATION, node.name, exc)
        return None


class GatewayManager:
    """Create and remove the per-node gateway routers.

    A node is a gateway while it carries the gateway annotation written by
    its node agent.  The router is joined to the cluster router over a /30
    transit link, has a default route to the external next hop and SNATs
    traffic leaving the cluster to its uplink address.
    """

    def __init__(
        self,
        config: TopologyConfig,
        space: AddressSpace,
        nb: NorthboundClient,
        nodes: ObjectStore[Node],
        *,
        services=None,
        transit: Optional[TransitAllocator] = None,
    ) -> None:
        self._config = config
        self._space = space
        self._nb = nb
        self._nodes = nodes
        self._services = services
        self._transit = transit or TransitAllocator(config.transit_range)
        self._lock = threading.Lock()
        self._active: Dict[str, GatewayState] = {}

    def active(self) -> Dict[str, GatewayState]:
        with self._lock:
            return dict(self._active)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def hydrate(self) -> int:
        """Re-reserve transit links recorded on existing transit ports."""

        count = 0
        for entity in self._nb.list(Kind.ROUTER_PORT):
            node = owned_key(entity.fields.get("external_ids", {}), OWNER_KIND)
            if node is None or entity.key != transit_cluster_port(node):
                continue
            networks = entity.fields.get("networks") or []
            if not networks:
                continue
            prefix = ipaddress.IPv4Interface(networks[0]).network
            self._transit.reserve(node, prefix)
            count += 1
        LOG.info("Reserved %d gateway transit link(s)", count)
        return count

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------
    def reconcile(self, name: str) -> None:
        node = self._nodes.get(name)
        info = _gateway_info(node) if node is not None else None
        if info is None:
            if self._transit.lookup(name) is not None:
                self.teardown(name)
            return
        self.sync(node, info)

    def sync(self, node: Node, info: GatewayInfo) -> GatewayState:
        subnet = self._space.host_subnet(node.name)
        if subnet is None:
            raise NotReadyError(f"node {node.name} has no host subnet yet")

        router = gateway_router(node.name)
        tag = owner(OWNER_KIND, node.name)
        link = self._transit.allocate(node.name)
        gateway_ip = link.gateway_side.ip
        cluster_ip = link.cluster_side.ip

        options = {"lb_force_snat_ip": str(gateway_ip)}
        if info.chassis:
            options["chassis"] = info.chassis
        self._nb.ensure(
            Kind.ROUTER,
            router,
            {
                "options": options,
                "external_ids": tag,
            },
        )

        self._nb.ensure(
            Kind.ROUTER_PORT,
            transit_gateway_port(node.name),
            {
                "router": router,
                "mac": mac_from_ip(gateway_ip),
                "networks": [str(link.gateway_side)],
                "peer": transit_cluster_port(node.name),
                "external_ids": tag,
            },
        )
        self._nb.ensure(
            Kind.ROUTER_PORT,
            transit_cluster_port(node.name),
            {
                "router": CLUSTER_ROUTER,
                "mac": mac_from_ip(cluster_ip),
                "networks": [str(link.cluster_side)],
                "peer": transit_gateway_port(node.name),
                "external_ids": tag,
            },
        )

        self._ensure_uplink(node.name, router, info, tag)

        self._nb.ensure(
            Kind.STATIC_ROUTE,
            route_key(router, DEFAULT_ROUTE),
            {
                "router": router,
                "ip_prefix": DEFAULT_ROUTE,
                "nexthop": str(info.nexthop),
                "policy": "dst-ip",
                "external_ids": tag,
            },
        )
        for cidr in self._config.cluster_cidrs():
            self._nb.ensure(
                Kind.STATIC_ROUTE,
                route_key(router, str(cidr)),
                {
                    "router": router,
                    "ip_prefix": str(cidr),
                    "nexthop": str(cluster_ip),
                    "policy": "dst-ip",
                    "external_ids": tag,
                },
            )
        self._nb.ensure(
            Kind.STATIC_ROUTE,
            route_key(CLUSTER_ROUTER, str(subnet), "src-ip"),
            {
                "router": CLUSTER_ROUTER,
                "ip_prefix": str(subnet),
                "nexthop": str(gateway_ip),
                "policy": "src-ip",
                "external_ids": tag,
            },
        )

        for cidr in self._config.cluster_cidrs():
            self._nb.ensure(
                Kind.NAT,
                nat_key(router, "snat", str(cidr)),
                {
                    "router": router,
                    "type": "snat",
                    "logical_ip": str(cidr),
                    "external_ip": str(info.address.ip),
                    "external_ids": tag,
                },
            )

        if self._services is not None:
            self._services.gateway_added(node.name, router, info.address.ip)

        state = GatewayState(info=info, link=link, host_subnet=subnet)
        with self._lock:
            previous = self._active.get(node.name)
            self._active[node.name] = state
        if previous != state:
            LOG.info(
                "Gateway router %s ready (%s mode, uplink %s via %s, transit %s)",
                router,
                info.mode.value,
                info.address,
                info.nexthop,
                link.prefix,
            )
        return state

    def teardown(self, name: str) -> None:
        """Remove the gateway of ``name`` in reverse creation order."""

        router = gateway_router(name)
        if self._services is not None:
            self._services.gateway_removed(name)

        def owned(entity) -> bool:
            return owned_key(entity.fields.get("external_ids", {}), OWNER_KIND) == name

        for entity in self._nb.list(Kind.NAT, owned):
            self._nb.delete(Kind.NAT, entity.key)
        for entity in self._nb.list(Kind.STATIC_ROUTE, owned):
            self._nb.delete(Kind.STATIC_ROUTE, entity.key)

        self._nb.delete(Kind.SWITCH, external_switch(name))
        self._nb.delete(Kind.ROUTER_PORT, gateway_uplink_port(name))
        self._nb.delete(Kind.ROUTER_PORT, transit_cluster_port(name))
        self._nb.delete(Kind.ROUTER_PORT, transit_gateway_port(name))
        self._nb.delete(Kind.ROUTER, router)

        self._transit.release(name)
        with self._lock:
            self._active.pop(name, None)
        LOG.info("Gateway router %s removed", router)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _ensure_uplink(self, name: str, router: str, info: GatewayInfo, tag) -> None:
        switch = external_switch(name)
        uplink = gateway_uplink_port(name)
        self._nb.ensure(Kind.SWITCH, switch, {"other_config": {}, "external_ids": tag})
        self._nb.ensure(
            Kind.ROUTER_PORT,
            uplink,
            {
                "router": router,
                "mac": info.mac,
                "networks": [str(info.address)],
                "peer": None,
                "external_ids": tag,
            },
        )
        self._nb.ensure(
            Kind.SWITCH_PORT,
            external_router_port(name),
            {
                "switch": switch,
                "type": "router",
                "addresses": [info.mac],
                "port_security": [],
                "options": {"router-port": uplink},
                "external_ids": tag,
            },
        )
        self._nb.ensure(
            Kind.SWITCH_PORT,
            localnet_port(info.interface, name),
            {
                "switch": switch,
                "type": "localnet",
                "addresses": ["unknown"],
                "port_security": [],
                "options": {"network_name": PHYSICAL_NETWORK},
                "external_ids": tag,
            },
        )
