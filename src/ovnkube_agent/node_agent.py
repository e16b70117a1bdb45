"""Node-side setup: OVS wiring, management port, CNI config and gateway."""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import socket
import threading
from typing import Callable, List, Optional, Tuple

import pyroute2

from ovnkube.backoff import sleep
from ovnkube.config import GatewayMode, GatewayOptions
from ovnkube.exceptions import NotReadyError
from ovnkube.model import Node
from ovnkube.util import (
    GATEWAY_ANNOTATION,
    LOCAL_GATEWAY_ADDRESS,
    LOCAL_GATEWAY_NEXTHOP,
    GatewayInfo,
    host_subnet_from_annotations,
    patch_with_retry,
)

from .config import AgentSettings
from .mgmt_port import ManagementPort
from .ovs import OvsVsctl

LOG = logging.getLogger(__name__)

LOCAL_BRIDGE = "br-local"
CNI_CONF_FILE = "10-ovn-kubernetes.conf"
CNI_VERSION = "0.3.1"
CNI_NETWORK = "ovn-kubernetes"


def write_cni_config(conf_dir: str, plugin: str) -> str:
    """Write the CNI network config; return the file path."""

    os.makedirs(conf_dir, exist_ok=True)
    path = os.path.join(conf_dir, CNI_CONF_FILE)
    content = json.dumps(
        {"cniVersion": CNI_VERSION, "name": CNI_NETWORK, "type": plugin},
        indent=2,
        sort_keys=True,
    )
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(content + "\n")
    return path


class NodeAgent:
    """Prepare one host for pods once the cluster gave it a host subnet.

    Attributes
    ----------
    node:
        Name of the node this agent prepares.
    gateway:
        Whether to discover and publish the gateway annotation.
    """

    def __init__(
        self,
        settings: AgentSettings,
        kube,
        stop_event: threading.Event,
        *,
        node: Optional[str] = None,
        gateway: bool = True,
        vsctl: Optional[OvsVsctl] = None,
        iproute: Callable[[], pyroute2.IPRoute] = pyroute2.IPRoute,
        poll_interval: float = 1.0,
    ) -> None:
        self._settings = settings
        self._kube = kube
        self._stop = stop_event
        self.node = node or settings.init_node
        self.gateway = gateway and settings.gateway.enabled
        self._vsctl = vsctl or OvsVsctl()
        self._iproute = iproute
        self._poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def setup(self) -> ipaddress.IPv4Network:
        subnet = self.wait_for_subnet()
        self.configure_ovs()
        port = ManagementPort(
            self.node,
            subnet,
            vsctl=self._vsctl,
            iproute=self._iproute,
            mtu=self._settings.mtu,
        )
        routed: List[ipaddress.IPv4Network] = list(self._settings.topology.cluster_cidrs())
        if self._settings.topology.services_subnet is not None:
            routed.append(self._settings.topology.services_subnet)
        port.create(routed)
        if self.gateway:
            self.publish_gateway(self.discover_gateway(self._settings.gateway))
        path = write_cni_config(self._settings.cni.conf_dir, self._settings.cni.plugin)
        LOG.info("Node %s ready, CNI config written to %s", self.node, path)
        return subnet

    def start(self) -> threading.Thread:
        """Run :meth:`setup` in a background thread."""

        def target() -> None:
            try:
                self.setup()
            except Exception:  # noqa: BLE001
                if not self._stop.is_set():
                    LOG.exception("Setting up node %s failed", self.node)

        thread = threading.Thread(target=target, name=f"node-agent-{self.node}", daemon=True)
        thread.start()
        return thread

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def wait_for_subnet(self) -> ipaddress.IPv4Network:
        """Poll the node until the master annotated its host subnet."""

        LOG.info("Waiting for the host subnet of node %s", self.node)
        while True:
            node = self._kube.get_node(self.node)
            if node is not None:
                try:
                    subnet = host_subnet_from_annotations(node.annotations)
                except ValueError as exc:
                    LOG.warning("Malformed host subnet on node %s: %s", self.node, exc)
                    subnet = None
                if subnet is not None:
                    LOG.info("Node %s has host subnet %s", self.node, subnet)
                    return subnet
            sleep(self._stop, self._poll_interval)

    def configure_ovs(self) -> None:
        settings = self._settings
        values = {
            "ovn-encap-type": settings.encap_type,
            "ovn-remote-probe-interval": str(settings.inactivity_probe),
        }
        encap_ip = settings.encap_ip or self._default_address()
        if encap_ip:
            values["ovn-encap-ip"] = encap_ip
        else:
            LOG.warning("No encapsulation address found for node %s", self.node)
        self._vsctl.set_external_ids(values)

    def discover_gateway(self, options: GatewayOptions) -> GatewayInfo:
        chassis = self._vsctl.get_external_id("system-id") or ""
        if options.mode is GatewayMode.LOCAL:
            self._vsctl.add_bridge(LOCAL_BRIDGE)
            return GatewayInfo(
                mode=GatewayMode.LOCAL,
                interface=LOCAL_BRIDGE,
                address=ipaddress.IPv4Interface(LOCAL_GATEWAY_ADDRESS),
                mac=self._link_mac(LOCAL_BRIDGE),
                nexthop=ipaddress.IPv4Address(LOCAL_GATEWAY_NEXTHOP),
                chassis=chassis,
            )

        interface = options.interface
        nexthop = options.nexthop
        if not interface or not nexthop:
            default_interface, default_nexthop = self._default_route()
            interface = interface or default_interface
            nexthop = nexthop or default_nexthop
        if not interface or not nexthop:
            raise NotReadyError("no default route to derive the gateway interface from")
        return GatewayInfo(
            mode=options.mode,
            interface=interface,
            address=self._link_address(interface),
            mac=self._link_mac(interface),
            nexthop=ipaddress.IPv4Address(nexthop),
            chassis=chassis,
            vlan_id=options.vlan_id,
        )

    def publish_gateway(self, info: GatewayInfo) -> None:
        value = info.to_annotation()

        def publish(current: Node) -> None:
            if current.annotations.get(GATEWAY_ANNOTATION) == value:
                return
            self._kube.annotate_node(current, {GATEWAY_ANNOTATION: value})

        current = self._kube.get_node(self.node)
        if current is None:
            raise NotReadyError(f"node {self.node} disappeared")
        patch_with_retry(publish, lambda: self._kube.get_node(self.node), current)
        LOG.info("Node %s advertises gateway %s", self.node, value)

    # ------------------------------------------------------------------
    # Host lookups
    # ------------------------------------------------------------------
    def _default_route(self) -> Tuple[Optional[str], Optional[str]]:
        with self._iproute() as ipr:
            for route in ipr.get_routes(family=socket.AF_INET, table=254):
                if route.get("dst_len") != 0:
                    continue
                index = route.get_attr("RTA_OIF")
                gateway = route.get_attr("RTA_GATEWAY")
                if index is None:
                    continue
                links = ipr.get_links(index)
                if not links:
                    continue
                return links[0].get_attr("IFLA_IFNAME"), gateway
        return None, None

    def _default_address(self) -> Optional[str]:
        interface, _ = self._default_route()
        if interface is None:
            return None
        return str(self._link_address(interface).ip)

    def _link_index(self, ipr, interface: str) -> int:
        links = ipr.link_lookup(ifname=interface)
        if not links:
            raise NotReadyError(f"interface {interface} not found")
        return links[0]

    def _link_address(self, interface: str) -> ipaddress.IPv4Interface:
        with self._iproute() as ipr:
            index = self._link_index(ipr, interface)
            for addr in ipr.get_addr(family=socket.AF_INET, index=index):
                return ipaddress.IPv4Interface(
                    f"{addr.get_attr('IFA_ADDRESS')}/{addr['prefixlen']}"
                )
        raise NotReadyError(f"interface {interface} has no IPv4 address")

    def _link_mac(self, interface: str) -> str:
        with self._iproute() as ipr:
            index = self._link_index(ipr, interface)
            return ipr.get_links(index)[0].get_attr("IFLA_ADDRESS").lower()
