"""Configuration data structures for the topology reconcilers.

These light-weight dataclasses describe the cluster address plan and the
gateway settings the reconcilers need.  They are built by the agent's
oslo.config loader but carry no dependency on it so unit tests can construct
them directly.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from .exceptions import ConfigError

DEFAULT_HOST_SUBNET_LENGTH = 24
MAX_HOST_SUBNET_LENGTH = 30


@dataclass(frozen=True)
class ClusterSubnetEntry:
    """One ``CIDR/hostlen`` element of the cluster network.

    Attributes
    ----------
    cidr:
        The address range host subnets are carved from.
    host_subnet_length:
        Prefix length of every host subnet drawn from ``cidr``.
    """

    cidr: ipaddress.IPv4Network
    host_subnet_length: int = DEFAULT_HOST_SUBNET_LENGTH

    @property
    def slot_count(self) -> int:
        return 1 << (self.host_subnet_length - self.cidr.prefixlen)

    def __str__(self) -> str:
        return f"{self.cidr}/{self.host_subnet_length}"


def _parse_cluster_entry(raw: str) -> ClusterSubnetEntry:
    parts = raw.strip().split("/")
    if len(parts) == 3:
        try:
            host_len = int(parts[2])
        except ValueError:
            raise ConfigError(
                "cluster-subnet", f"invalid host subnet length in {raw!r}"
            ) from None
    elif len(parts) == 2:
        host_len = DEFAULT_HOST_SUBNET_LENGTH
    else:
        raise ConfigError("cluster-subnet", f"entry {raw!r} not formatted properly")

    try:
        cidr = ipaddress.IPv4Network(f"{parts[0]}/{parts[1]}", strict=False)
    except ValueError as exc:
        raise ConfigError("cluster-subnet", f"invalid CIDR in {raw!r}: {exc}") from None

    if host_len < cidr.prefixlen or host_len > MAX_HOST_SUBNET_LENGTH:
        raise ConfigError(
            "cluster-subnet",
            f"host subnet length {host_len} of {raw!r} must be between "
            f"{cidr.prefixlen} and {MAX_HOST_SUBNET_LENGTH}",
        )
    return ClusterSubnetEntry(cidr=cidr, host_subnet_length=host_len)


def parse_cluster_subnets(value: str) -> List[ClusterSubnetEntry]:
    """Parse ``10.128.0.0/14/23,10.0.0.0/16`` into ordered entries.

    Entries must not overlap one another.
    """

    if not value or not value.strip():
        raise ConfigError("cluster-subnet", "at least one entry is required")

    entries: List[ClusterSubnetEntry] = []
    for raw in value.split(","):
        entry = _parse_cluster_entry(raw)
        for existing in entries:
            if entry.cidr.overlaps(existing.cidr):
                raise ConfigError(
                    "cluster-subnet",
                    f"CIDR {entry.cidr} overlaps with another cluster network CIDR",
                )
        entries.append(entry)
    return entries


def parse_services_subnet(
    value: Optional[str], cluster_subnets: Sequence[ClusterSubnetEntry]
) -> Optional[ipaddress.IPv4Network]:
    if not value:
        return None
    try:
        subnet = ipaddress.IPv4Network(value, strict=False)
    except ValueError as exc:
        raise ConfigError("service-cluster-ip-range", str(exc)) from None
    for entry in cluster_subnets:
        if subnet.overlaps(entry.cidr):
            raise ConfigError(
                "service-cluster-ip-range",
                f"{subnet} overlaps cluster subnet {entry.cidr}",
            )
    return subnet


class GatewayMode(Enum):
    """How the node reaches the external network."""

    SHARED = "shared"
    SPARE = "spare"
    LOCAL = "local"


@dataclass(frozen=True)
class GatewayOptions:
    """Node-side gateway flags as given on the command line."""

    enabled: bool = False
    interface: Optional[str] = None
    nexthop: Optional[str] = None
    spare_interface: bool = False
    local: bool = False
    vlan_id: int = 0

    @property
    def mode(self) -> GatewayMode:
        if self.local:
            return GatewayMode.LOCAL
        if self.spare_interface:
            return GatewayMode.SPARE
        return GatewayMode.SHARED

    def validate(self, node_name: Optional[str]) -> None:
        """Reject every flag combination that has no documented meaning."""

        others_set = (
            self.interface is not None
            or self.nexthop is not None
            or self.spare_interface
            or self.local
            or self.vlan_id != 0
        )
        if others_set and not self.enabled:
            raise ConfigError("init-gateways", "gateway options require --init-gateways")
        if not self.enabled:
            return
        if not node_name:
            raise ConfigError("init-gateways", "only useful together with --init-node")
        if self.local and (self.interface or self.spare_interface or self.vlan_id):
            raise ConfigError(
                "gateway-local",
                "cannot be combined with gateway-interface, "
                "gateway-spare-interface or gateway-vlanid",
            )
        if self.spare_interface and not self.interface:
            raise ConfigError("gateway-spare-interface", "requires --gateway-interface")
        if not 0 <= self.vlan_id <= 4094:
            raise ConfigError("gateway-vlanid", f"{self.vlan_id} is not a valid VLAN id")
        if self.nexthop is not None:
            try:
                ipaddress.ip_address(self.nexthop)
            except ValueError:
                raise ConfigError(
                    "gateway-nexthop", f"{self.nexthop!r} is not an IP address"
                ) from None


@dataclass(frozen=True)
class TopologyConfig:
    """Cluster-wide settings consumed by the reconcilers."""

    cluster_subnets: Sequence[ClusterSubnetEntry]
    services_subnet: Optional[ipaddress.IPv4Network] = None
    nodeport: bool = False
    transit_range: ipaddress.IPv4Network = field(
        default_factory=lambda: ipaddress.IPv4Network("100.64.0.0/16")
    )

    def cluster_cidrs(self) -> List[ipaddress.IPv4Network]:
        return [entry.cidr for entry in self.cluster_subnets]
