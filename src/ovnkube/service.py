"""Service virtual IP to backend reconciler."""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import Callable, Dict, List, Optional, Set, Tuple

from .model import Pod, Service, ServicePort
from .nbdb import Entity, Kind, NorthboundClient, binding_key, vip_key
from .store import ObjectStore
from .util import CLUSTER_ROUTER, cluster_lb, nodeport_lb, owner

LOG = logging.getLogger(__name__)

PROTOCOLS = ("tcp", "udp")

AddressLookup = Callable[[str], Optional[ipaddress.IPv4Address]]


class ServiceReconciler:
    """Keep load balancer VIP entries equal to the ready selected pods.

    Cluster scope load balancers (one per protocol) are bound to the cluster
    router and every node switch.  When node ports are enabled every gateway
    router gets its own load balancer per protocol carrying the node port
    entries of the services that expose them.
    """

    def __init__(
        self,
        nb: NorthboundClient,
        services: ObjectStore[Service],
        pods: ObjectStore[Pod],
        address_of: AddressLookup,
        *,
        nodeport: bool = False,
        requeue: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._nb = nb
        self._services = services
        self._pods = pods
        self._address_of = address_of
        self._nodeport = nodeport
        self.requeue = requeue or self.reconcile
        self._lock = threading.RLock()
        self._switches: Set[str] = set()
        self._gateways: Dict[str, Tuple[str, ipaddress.IPv4Address]] = {}
        self._cluster_lbs: Set[str] = set()
        self._vips: Dict[str, Set[str]] = {}
        self._members: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Topology notifications
    # ------------------------------------------------------------------
    def switch_added(self, switch: str) -> None:
        with self._lock:
            self._switches.add(switch)
            protocols = sorted(self._cluster_lbs)
        for protocol in protocols:
            self._bind(cluster_lb(protocol), "switch", switch)

    def switch_removed(self, switch: str) -> None:
        # Bindings live in the switch row and disappear with it.
        with self._lock:
            self._switches.discard(switch)

    def gateway_added(self, node: str, router: str, address: ipaddress.IPv4Address) -> None:
        if not self._nodeport:
            return
        with self._lock:
            known = self._gateways.get(node)
            self._gateways[node] = (router, address)
        for protocol in PROTOCOLS:
            name = nodeport_lb(protocol, node)
            self._nb.ensure(
                Kind.LOAD_BALANCER,
                name,
                {"protocol": protocol, "external_ids": owner("gateway", node)},
            )
            self._bind(name, "router", router)
        if known != (router, address):
            for service in self._services.list(lambda s: s.exposes_node_ports):
                self.requeue(service.key)

    def gateway_removed(self, node: str) -> None:
        with self._lock:
            self._gateways.pop(node, None)
            doomed = {nodeport_lb(protocol, node) for protocol in PROTOCOLS}
            for keys in self._vips.values():
                keys.difference_update(
                    {k for k in keys if k.split("|", 1)[0] in doomed}
                )
        for name in sorted(doomed):
            self._nb.delete(Kind.LOAD_BALANCER, name)

    def endpoint_changed(self, pod_key: str) -> None:
        """Queue every service whose backends may include ``pod_key``."""

        pod = self._pods.get(pod_key)
        with self._lock:
            affected = {key for key, members in self._members.items() if pod_key in members}
        if pod is not None:
            affected.update(s.key for s in self._services.list(lambda s: s.selects(pod)))
        for key in sorted(affected):
            self.requeue(key)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def hydrate(self) -> int:
        """Attribute existing VIP entries to services and drop orphans."""

        services = self._services.list()
        orphans: List[Entity] = []
        for entity in self._nb.list(Kind.LOAD_BALANCER_VIP):
            balancer = entity.fields["load_balancer"]
            if not balancer.startswith(("cluster-lb-", "nodeport-lb-")):
                continue
            vip = entity.fields["vip"]
            ip, _, port = vip.rpartition(":")
            nodeport = balancer.startswith("nodeport-lb-")
            owner_key = None
            for service in services:
                if self._claims(service, ip, port, nodeport):
                    owner_key = service.key
                    break
            if owner_key is None:
                orphans.append(entity)
                continue
            with self._lock:
                self._vips.setdefault(owner_key, set()).add(entity.key)
        for entity in orphans:
            LOG.info("Removing VIP %s without a service", entity.key)
            self._nb.delete(Kind.LOAD_BALANCER_VIP, entity.key)
        return len(orphans)

    @staticmethod
    def _claims(service: Service, ip: str, port: str, nodeport: bool) -> bool:
        if nodeport:
            return any(str(p.node_port) == port for p in service.ports if p.node_port)
        return service.cluster_ip == ip and any(str(p.port) == port for p in service.ports)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------
    def reconcile(self, key: str) -> None:
        service = self._services.get(key)
        desired: Dict[str, Dict[str, str]] = {}
        members: Set[str] = set()
        if service is not None and service.has_virtual_ip:
            desired, members = self._desired(service)

        for vkey in sorted(desired):
            self._nb.ensure(Kind.LOAD_BALANCER_VIP, vkey, desired[vkey])
        with self._lock:
            previous = self._vips.get(key, set())
        for vkey in sorted(previous - set(desired)):
            self._nb.delete(Kind.LOAD_BALANCER_VIP, vkey)

        with self._lock:
            if desired:
                self._vips[key] = set(desired)
            else:
                self._vips.pop(key, None)
            if members:
                self._members[key] = members
            else:
                self._members.pop(key, None)

    def _desired(self, service: Service) -> Tuple[Dict[str, Dict[str, str]], Set[str]]:
        desired: Dict[str, Dict[str, str]] = {}
        members: Set[str] = set()
        with self._lock:
            gateways = dict(self._gateways)

        for port in service.ports:
            protocol = port.protocol.lower()
            if protocol not in PROTOCOLS:
                LOG.warning(
                    "Service %s port %s uses unsupported protocol %s",
                    service.key,
                    port.port,
                    port.protocol,
                )
                continue
            backends, used = self._backends(service, port)
            members |= used
            if not backends:
                continue
            joined = ",".join(backends)

            self._ensure_cluster_lb(protocol)
            balancer = cluster_lb(protocol)
            vip = f"{service.cluster_ip}:{port.port}"
            desired[vip_key(balancer, vip)] = {
                "load_balancer": balancer,
                "vip": vip,
                "backends": joined,
            }

            if not (self._nodeport and service.exposes_node_ports and port.node_port):
                continue
            for node, (_, address) in sorted(gateways.items()):
                balancer = nodeport_lb(protocol, node)
                vip = f"{address}:{port.node_port}"
                desired[vip_key(balancer, vip)] = {
                    "load_balancer": balancer,
                    "vip": vip,
                    "backends": joined,
                }
        return desired, members

    def _backends(self, service: Service, port: ServicePort) -> Tuple[List[str], Set[str]]:
        backends = set()
        used = set()
        for pod in self._pods.list(service.selects):
            if not pod.ready:
                continue
            address = self._address_of(pod.key)
            if address is None:
                continue
            target = self._target_port(pod, port)
            if target is None:
                continue
            backends.add(f"{address}:{target}")
            used.add(pod.key)
        return sorted(backends), used

    @staticmethod
    def _target_port(pod: Pod, port: ServicePort) -> Optional[int]:
        target = port.target_port
        if isinstance(target, str):
            if target.isdigit():
                return int(target)
            return pod.container_ports.get(target)
        return target or port.port

    def _ensure_cluster_lb(self, protocol: str) -> None:
        with self._lock:
            if protocol in self._cluster_lbs:
                return
            switches = sorted(self._switches)
        name = cluster_lb(protocol)
        self._nb.ensure(
            Kind.LOAD_BALANCER,
            name,
            {"protocol": protocol, "external_ids": owner("cluster", name)},
        )
        self._bind(name, "router", CLUSTER_ROUTER)
        for switch in switches:
            self._bind(name, "switch", switch)
        with self._lock:
            self._cluster_lbs.add(protocol)
            missed = sorted(self._switches.difference(switches))
        for switch in missed:
            self._bind(name, "switch", switch)

    def _bind(self, balancer: str, target_type: str, target: str) -> None:
        self._nb.ensure(
            Kind.LOAD_BALANCER_BINDING,
            binding_key(balancer, target_type, target),
            {"load_balancer": balancer, "target_type": target_type, "target": target},
        )
