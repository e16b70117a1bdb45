"""Naming, addressing and annotation helpers shared by the reconcilers."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, TypeVar

from .config import GatewayMode
from .exceptions import NotReadyError, UpdateConflict

LOG = logging.getLogger(__name__)

T = TypeVar("T")

CLUSTER_ROUTER = "ovn_cluster_router"
OWNER_KEY = "k8s-owner"

HOST_SUBNET_ANNOTATION = "k8s.ovn.org/host-subnet"
POD_NETWORK_ANNOTATION = "k8s.ovn.org/pod-network"
GATEWAY_ANNOTATION = "k8s.ovn.org/gateway"

LOCAL_GATEWAY_ADDRESS = "169.254.33.2/24"
LOCAL_GATEWAY_NEXTHOP = "169.254.33.1"

ANNOTATION_RETRIES = 3


def owner(kind: str, key: str) -> Dict[str, str]:
    """``external_ids`` tag marking an object as created for ``kind/key``."""

    return {OWNER_KEY: f"{kind}/{key}"}


def owned_key(external_ids: Mapping[str, str], kind: str) -> Optional[str]:
    """Return the key ``external_ids`` was tagged with for ``kind``, if any."""

    tag = external_ids.get(OWNER_KEY, "")
    prefix = f"{kind}/"
    if not tag.startswith(prefix):
        return None
    return tag[len(prefix):]


def switch_name(node: str) -> str:
    # The API reports lowercase hostnames even when the kubelet was started
    # with mixed case.
    return node.lower()


def stor_port(node: str) -> str:
    return f"stor-{switch_name(node)}"


def rtos_port(node: str) -> str:
    return f"rtos-{switch_name(node)}"


def mgmt_port(node: str) -> str:
    return f"k8s-{switch_name(node)}"


def endpoint_port(namespace: str, name: str) -> str:
    return f"{namespace}_{name}"


def gateway_router(node: str) -> str:
    return f"GR_{switch_name(node)}"


def gateway_uplink_port(node: str) -> str:
    return f"rtoe-{gateway_router(node)}"


def transit_cluster_port(node: str) -> str:
    return f"dtoj-{switch_name(node)}"


def transit_gateway_port(node: str) -> str:
    return f"jtod-{switch_name(node)}"


def external_switch(node: str) -> str:
    return f"ext_{switch_name(node)}"


def external_router_port(node: str) -> str:
    return f"etor-{gateway_router(node)}"


def localnet_port(interface: str, node: str) -> str:
    return f"{interface}_{switch_name(node)}"


def cluster_lb(protocol: str) -> str:
    return f"cluster-lb-{protocol.lower()}"


def nodeport_lb(protocol: str, node: str) -> str:
    return f"nodeport-lb-{protocol.lower()}-{switch_name(node)}"


def mac_from_ip(address: ipaddress.IPv4Address) -> str:
    """Derive a locally administered MAC from ``address``.

    Pure function of the address so a restarted process, the attach agent and
    the node agent all compute the same value.
    """

    return "0a:58:" + ":".join(f"{octet:02x}" for octet in address.packed)


def subnet_address(subnet: ipaddress.IPv4Network, index: int) -> ipaddress.IPv4Address:
    return subnet.network_address + index


def router_address(subnet: ipaddress.IPv4Network) -> ipaddress.IPv4Address:
    return subnet_address(subnet, 0)


def mgmt_address(subnet: ipaddress.IPv4Network) -> ipaddress.IPv4Address:
    return subnet_address(subnet, 1)


def parse_kv(value: str) -> Dict[str, str]:
    """Parse ``a=1,b=2`` annotation values."""

    result: Dict[str, str] = {}
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        key, sep, val = part.partition("=")
        if not sep:
            raise ValueError(f"malformed element {part!r}")
        result[key.strip()] = val.strip()
    return result


def format_kv(values: Dict[str, str]) -> str:
    return ",".join(f"{key}={val}" for key, val in values.items())


@dataclass(frozen=True)
class PodNetwork:
    """Network parameters handed to the attach agent."""

    address: ipaddress.IPv4Interface
    gateway: ipaddress.IPv4Address
    mac: str

    def to_annotation(self) -> str:
        return format_kv(
            {
                "address": str(self.address),
                "gateway": str(self.gateway),
                "mac": self.mac,
            }
        )

    @classmethod
    def from_annotation(cls, value: str) -> "PodNetwork":
        fields = parse_kv(value)
        try:
            return cls(
                address=ipaddress.IPv4Interface(fields["address"]),
                gateway=ipaddress.IPv4Address(fields["gateway"]),
                mac=fields["mac"].lower(),
            )
        except KeyError as exc:
            raise ValueError(f"pod network annotation missing {exc}") from None


@dataclass(frozen=True)
class GatewayInfo:
    """What a gateway node advertises about its uplink."""

    mode: GatewayMode
    interface: str
    address: ipaddress.IPv4Interface
    mac: str
    nexthop: ipaddress.IPv4Address
    chassis: str = ""
    vlan_id: int = 0

    def to_annotation(self) -> str:
        values = {
            "mode": self.mode.value,
            "interface": self.interface,
            "address": str(self.address),
            "mac": self.mac,
            "nexthop": str(self.nexthop),
        }
        if self.chassis:
            values["chassis"] = self.chassis
        if self.vlan_id:
            values["vlan"] = str(self.vlan_id)
        return format_kv(values)

    @classmethod
    def from_annotation(cls, value: str) -> "GatewayInfo":
        fields = parse_kv(value)
        try:
            return cls(
                mode=GatewayMode(fields["mode"]),
                interface=fields["interface"],
                address=ipaddress.IPv4Interface(fields["address"]),
                mac=fields["mac"].lower(),
                nexthop=ipaddress.IPv4Address(fields["nexthop"]),
                chassis=fields.get("chassis", ""),
                vlan_id=int(fields.get("vlan", 0)),
            )
        except KeyError as exc:
            raise ValueError(f"gateway annotation missing {exc}") from None


def host_subnet_from_annotations(
    annotations: Mapping[str, str],
) -> Optional[ipaddress.IPv4Network]:
    value = annotations.get(HOST_SUBNET_ANNOTATION)
    if not value:
        return None
    return ipaddress.IPv4Network(value)


def gateway_from_annotations(annotations: Mapping[str, str]) -> Optional[GatewayInfo]:
    value = annotations.get(GATEWAY_ANNOTATION)
    if not value:
        return None
    return GatewayInfo.from_annotation(value)


def patch_with_retry(
    patch: Callable[[T], object],
    fetch: Callable[[], Optional[T]],
    current: T,
    retries: int = ANNOTATION_RETRIES,
):
    """Apply ``patch`` to ``current``, re-reading the object on conflicts.

    ``patch`` receives the freshest copy of the object each time.  The last
    conflict is re-raised once ``retries`` attempts have failed.
    """

    for attempt in range(1, retries + 1):
        try:
            return patch(current)
        except UpdateConflict:
            if attempt == retries:
                raise
            LOG.debug("conflict writing %r (attempt %d), re-reading", current, attempt)
            fresh = fetch()
            if fresh is None:
                raise NotReadyError(f"{current!r} disappeared while being updated") from None
            current = fresh
