"""Per-pod address assignment and logical switch port reconciler."""

from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from .allocator import AddressSpace
from .exceptions import ConflictError, NotReadyError
from .model import Pod
from .nbdb import Kind, NorthboundClient
from .store import ObjectStore
from .util import (
    POD_NETWORK_ANNOTATION,
    PodNetwork,
    endpoint_port,
    mac_from_ip,
    owned_key,
    owner,
    patch_with_retry,
    router_address,
    switch_name,
)

LOG = logging.getLogger(__name__)

OWNER_KIND = "pod"


@dataclass(frozen=True)
class EndpointRecord:
    """Where a pod's port lives and what it was given."""

    node: str
    address: ipaddress.IPv4Address
    mac: str


def attached(pod: Optional[Pod]) -> bool:
    """Whether ``pod`` should have a logical switch port at all."""

    return (
        pod is not None
        and bool(pod.node_name)
        and not pod.host_network
        and not pod.completed
    )


def _annotated_network(pod: Pod) -> Optional[PodNetwork]:
    value = pod.annotations.get(POD_NETWORK_ANNOTATION)
    if not value:
        return None
    try:
        return PodNetwork.from_annotation(value)
    except ValueError:
        LOG.warning("Ignoring malformed %s annotation on pod %s", POD_NETWORK_ANNOTATION, pod.key)
        return None


def _split_addresses(entry: str):
    mac, _, address = entry.partition(" ")
    return mac, ipaddress.IPv4Address(address.split()[0])


class EndpointReconciler:
    """Hand out pod addresses and keep their switch ports programmed.

    The annotation read by the attach agent is only written after the port
    exists in the northbound database.  ``on_change`` is called with the pod
    key whenever the set of addressable pods may have changed, so services
    selecting the pod can be recomputed.
    """

    def __init__(
        self,
        space: AddressSpace,
        nb: NorthboundClient,
        kube,
        pods: ObjectStore[Pod],
        *,
        on_change: Optional[Callable[[str], None]] = None,
        requeue: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._space = space
        self._nb = nb
        self._kube = kube
        self._pods = pods
        self.on_change = on_change
        self.requeue = requeue
        self._lock = threading.Lock()
        self._records: Dict[str, EndpointRecord] = {}

    def address_of(self, key: str) -> Optional[ipaddress.IPv4Address]:
        with self._lock:
            record = self._records.get(key)
        return record.address if record else None

    def record_of(self, key: str) -> Optional[EndpointRecord]:
        with self._lock:
            return self._records.get(key)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def hydrate(self, pods: Iterable[Pod]) -> int:
        """Rebuild address ownership from annotations and existing ports.

        Ports in the database cover pods whose annotation was never written
        because the process stopped between the two steps.
        """

        count = 0
        for pod in pods:
            if not attached(pod):
                continue
            network = _annotated_network(pod)
            if network is None:
                continue
            subnet = self._space.host_subnet(pod.node_name)
            if subnet is None or network.address.ip not in subnet:
                LOG.warning(
                    "Pod %s carries %s outside the subnet of node %s, skipping",
                    pod.key,
                    network.address,
                    pod.node_name,
                )
                continue
            self._adopt(pod.key, pod.node_name, network.address.ip, network.mac)
            count += 1

        for entity in self._nb.list(Kind.SWITCH_PORT):
            key = owned_key(entity.fields.get("external_ids", {}), OWNER_KIND)
            if key is None or self.record_of(key) is not None:
                continue
            pod = self._pods.get(key)
            if not attached(pod) or switch_name(pod.node_name) != entity.fields["switch"]:
                continue
            addresses = entity.fields.get("addresses") or []
            if not addresses:
                continue
            mac, address = _split_addresses(addresses[0])
            subnet = self._space.host_subnet(pod.node_name)
            if subnet is None or address not in subnet:
                continue
            self._adopt(key, pod.node_name, address, mac)
            count += 1
        LOG.info("Reserved %d endpoint address(es) at startup", count)
        return count

    def _adopt(self, key: str, node: str, address: ipaddress.IPv4Address, mac: str) -> None:
        self._space.reserve_address(node, address, key)
        with self._lock:
            self._records[key] = EndpointRecord(node, address, mac)

    def sweep(self) -> int:
        """Delete endpoint ports that no adopted pod accounts for.

        Run after :meth:`hydrate`: a port whose pod is gone, moved to another
        node, or could not be adopted holds an address the allocator treats
        as free, so it has to go before new addresses are handed out.
        """

        removed = 0
        for entity in self._nb.list(Kind.SWITCH_PORT):
            key = owned_key(entity.fields.get("external_ids", {}), OWNER_KIND)
            if key is None:
                continue
            record = self.record_of(key)
            if record is not None and switch_name(record.node) == entity.fields.get("switch"):
                continue
            LOG.info("Removing stale port %s of pod %s", entity.key, key)
            self._nb.delete(Kind.SWITCH_PORT, entity.key)
            removed += 1
        return removed

    def node_removed(self, node: str) -> List[str]:
        """Forget the pods of a node whose host subnet is going away.

        Their addresses belong to the node's endpoint allocator, which is
        dropped with the subnet.  The pods are requeued so they are
        readdressed once the node has a subnet again.
        """

        with self._lock:
            keys = sorted(key for key, record in self._records.items() if record.node == node)
            for key in keys:
                del self._records[key]
        for key in keys:
            namespace, _, name = key.partition("/")
            self._nb.delete(Kind.SWITCH_PORT, endpoint_port(namespace, name))
            if self.on_change is not None:
                self.on_change(key)
            if self.requeue is not None:
                self.requeue(key)
        if keys:
            LOG.info("Dropped %d endpoint(s) of removed node %s", len(keys), node)
        return keys

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------
    def reconcile(self, key: str) -> None:
        pod = self._pods.get(key)
        if not attached(pod):
            self.teardown(key)
            return
        record = self.record_of(key)
        if record is not None and record.node != pod.node_name:
            self.teardown(key)
        self.sync(pod)

    def sync(self, pod: Pod) -> PodNetwork:
        node = pod.node_name
        subnet = self._space.host_subnet(node)
        if subnet is None:
            raise NotReadyError(f"node {node} of pod {pod.key} has no host subnet yet")
        if self._nb.get(Kind.SWITCH, switch_name(node)) is None:
            raise NotReadyError(f"switch of node {node} is not programmed yet")

        record = self.record_of(pod.key)
        if record is not None and not self._still_owned(pod.key, record, subnet):
            LOG.warning(
                "Address %s of pod %s is no longer held in %s, reassigning",
                record.address,
                pod.key,
                subnet,
            )
            with self._lock:
                self._records.pop(pod.key, None)
            record = None
        if record is None:
            record = self._assign(pod, subnet)

        network = PodNetwork(
            address=ipaddress.IPv4Interface((record.address, subnet.prefixlen)),
            gateway=router_address(subnet),
            mac=record.mac,
        )
        entry = f"{record.mac} {record.address}"
        self._nb.ensure(
            Kind.SWITCH_PORT,
            endpoint_port(pod.namespace, pod.name),
            {
                "switch": switch_name(node),
                "type": "",
                "addresses": [entry],
                "port_security": [entry],
                "options": {},
                "external_ids": owner(OWNER_KIND, pod.key),
            },
        )

        value = network.to_annotation()
        if pod.annotations.get(POD_NETWORK_ANNOTATION) != value:

            def publish(current: Pod) -> None:
                self._kube.annotate_pod(current, {POD_NETWORK_ANNOTATION: value})

            patch_with_retry(
                publish, lambda: self._kube.get_pod(pod.namespace, pod.name), pod
            )
            LOG.info("Pod %s attached with %s", pod.key, value)

        if self.on_change is not None:
            self.on_change(pod.key)
        return network

    def teardown(self, key: str) -> None:
        namespace, _, name = key.partition("/")
        self._nb.delete(Kind.SWITCH_PORT, endpoint_port(namespace, name))
        record = self.record_of(key)
        if record is None:
            return
        if self._space.address_owner(record.node, record.address) == key:
            self._space.release_address(record.node, record.address)
        with self._lock:
            self._records.pop(key, None)
        LOG.info("Released address %s of pod %s", record.address, key)
        if self.on_change is not None:
            self.on_change(key)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _still_owned(
        self, key: str, record: EndpointRecord, subnet: ipaddress.IPv4Network
    ) -> bool:
        return (
            record.address in subnet
            and self._space.address_owner(record.node, record.address) == key
        )

    def _assign(self, pod: Pod, subnet: ipaddress.IPv4Network) -> EndpointRecord:
        preset = _annotated_network(pod)
        if preset is not None and preset.address.ip in subnet:
            try:
                self._space.reserve_address(pod.node_name, preset.address.ip, pod.key)
            except ConflictError:
                LOG.warning(
                    "Address %s annotated on pod %s is taken, allocating a new one",
                    preset.address.ip,
                    pod.key,
                )
            else:
                record = EndpointRecord(pod.node_name, preset.address.ip, preset.mac)
                with self._lock:
                    self._records[pod.key] = record
                return record

        address = self._space.allocate_address(pod.node_name, pod.key)
        record = EndpointRecord(pod.node_name, address, mac_from_ip(address))
        with self._lock:
            self._records[pod.key] = record
        LOG.debug("Allocated %s to pod %s", address, pod.key)
        return record
