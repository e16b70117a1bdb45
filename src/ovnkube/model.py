"""Orchestrator objects as seen by the reconcilers.

The watcher converts Kubernetes API objects into these dataclasses at the
boundary so the reconcilers never touch the client library types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union


def _version(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class Node:
    name: str
    annotations: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    resource_version: str = ""

    @property
    def key(self) -> str:
        return self.name

    @property
    def version(self) -> int:
        return _version(self.resource_version)


@dataclass(frozen=True)
class Pod:
    """A workload endpoint."""

    namespace: str
    name: str
    node_name: Optional[str] = None
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)
    ready: bool = False
    host_network: bool = False
    phase: str = "Pending"
    container_ports: Mapping[str, int] = field(default_factory=dict)
    resource_version: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def version(self) -> int:
        return _version(self.resource_version)

    @property
    def completed(self) -> bool:
        return self.phase in ("Succeeded", "Failed")


@dataclass(frozen=True)
class ServicePort:
    protocol: str
    port: int
    target_port: Union[int, str]
    name: str = ""
    node_port: Optional[int] = None


@dataclass(frozen=True)
class Service:
    namespace: str
    name: str
    cluster_ip: Optional[str] = None
    type: str = "ClusterIP"
    selector: Optional[Mapping[str, str]] = None
    ports: Sequence[ServicePort] = ()
    resource_version: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def version(self) -> int:
        return _version(self.resource_version)

    @property
    def has_virtual_ip(self) -> bool:
        return bool(self.cluster_ip) and self.cluster_ip != "None"

    @property
    def exposes_node_ports(self) -> bool:
        return self.type in ("NodePort", "LoadBalancer")

    def selects(self, pod: Pod) -> bool:
        if not self.selector or pod.namespace != self.namespace:
            return False
        return all(pod.labels.get(k) == v for k, v in self.selector.items())


@dataclass(frozen=True)
class NetworkPolicy:
    namespace: str
    name: str
    pod_selector: Mapping[str, str] = field(default_factory=dict)
    resource_version: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def version(self) -> int:
        return _version(self.resource_version)
