"""Per-node host subnet and logical switch reconciler."""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import Callable, Iterable, Optional, Set

from .allocator import AddressSpace
from .exceptions import ExhaustedError
from .model import Node
from .nbdb import Kind, NorthboundClient
from .store import ObjectStore
from .util import (
    CLUSTER_ROUTER,
    HOST_SUBNET_ANNOTATION,
    host_subnet_from_annotations,
    mac_from_ip,
    mgmt_address,
    mgmt_port,
    owned_key,
    owner,
    patch_with_retry,
    router_address,
    rtos_port,
    stor_port,
    switch_name,
)

LOG = logging.getLogger(__name__)

OWNER_KIND = "node"


def _annotated_subnet(node: Node) -> Optional[ipaddress.IPv4Network]:
    try:
        return host_subnet_from_annotations(node.annotations)
    except ValueError:
        LOG.warning(
            "Ignoring malformed %s annotation on node %s: %r",
            HOST_SUBNET_ANNOTATION,
            node.name,
            node.annotations.get(HOST_SUBNET_ANNOTATION),
        )
        return None


class NodeReconciler:
    """Keep a node's host subnet, switch and router link in line with the API.

    ``reconcile`` is level-triggered: it looks the node up in the cache and
    either programs everything the node needs or tears it down when the node
    is gone.  ``requeue`` is called with the names of nodes that previously
    failed on an exhausted cluster network once a subnet is released.
    ``on_removed`` is called with a node name right before its host subnet
    and the endpoint addresses inside it are released.
    """

    def __init__(
        self,
        space: AddressSpace,
        nb: NorthboundClient,
        kube,
        nodes: ObjectStore[Node],
        *,
        services=None,
        requeue: Optional[Callable[[str], None]] = None,
        on_removed: Optional[Callable[[str], object]] = None,
    ) -> None:
        self._space = space
        self._nb = nb
        self._kube = kube
        self._nodes = nodes
        self._services = services
        self.requeue = requeue
        self.on_removed = on_removed
        self._lock = threading.Lock()
        self._pending: Set[str] = set()
        self._router_ready = False

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def hydrate(self, nodes: Iterable[Node]) -> int:
        """Reserve every annotated subnet; conflicts propagate to the caller."""

        count = 0
        for node in nodes:
            subnet = _annotated_subnet(node)
            if subnet is None:
                continue
            self._space.reserve_host_subnet(node.name, subnet)
            count += 1
        LOG.info("Reserved %d host subnet(s) from node annotations", count)
        return count

    def ensure_cluster_router(self) -> None:
        if self._router_ready:
            return
        self._nb.ensure(
            Kind.ROUTER,
            CLUSTER_ROUTER,
            {"options": {}, "external_ids": owner("cluster", CLUSTER_ROUTER)},
        )
        self._router_ready = True

    def sweep(self) -> int:
        """Tear down switches left behind by nodes that no longer exist."""

        known = set(self._nodes.keys())
        stale = set()
        for entity in self._nb.list(Kind.SWITCH):
            name = owned_key(entity.fields.get("external_ids", {}), OWNER_KIND)
            if name is not None and name not in known:
                stale.add(name)
        for name in sorted(stale):
            LOG.info("Removing logical topology of vanished node %s", name)
            self.teardown(name)
        return len(stale)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------
    def reconcile(self, name: str) -> None:
        node = self._nodes.get(name)
        if node is None:
            self.teardown(name)
            return
        self.sync(node)

    def sync(self, node: Node) -> ipaddress.IPv4Network:
        subnet = self._acquire_subnet(node)
        self.ensure_cluster_router()

        switch = switch_name(node.name)
        tag = owner(OWNER_KIND, node.name)
        router_ip = router_address(subnet)
        router_mac = mac_from_ip(router_ip)
        mgmt_ip = mgmt_address(subnet)
        mgmt_mac = mac_from_ip(mgmt_ip)

        self._nb.ensure(
            Kind.SWITCH,
            switch,
            {"other_config": {"subnet": str(subnet)}, "external_ids": tag},
        )
        self._nb.ensure(
            Kind.ROUTER_PORT,
            rtos_port(node.name),
            {
                "router": CLUSTER_ROUTER,
                "mac": router_mac,
                "networks": [f"{router_ip}/{subnet.prefixlen}"],
                "peer": None,
                "external_ids": tag,
            },
        )
        self._nb.ensure(
            Kind.SWITCH_PORT,
            stor_port(node.name),
            {
                "switch": switch,
                "type": "router",
                "addresses": [f"{router_mac} {router_ip}"],
                "port_security": [],
                "options": {"router-port": rtos_port(node.name)},
                "external_ids": tag,
            },
        )
        self._nb.ensure(
            Kind.SWITCH_PORT,
            mgmt_port(node.name),
            {
                "switch": switch,
                "type": "",
                "addresses": [f"{mgmt_mac} {mgmt_ip}"],
                "port_security": [f"{mgmt_mac} {mgmt_ip}"],
                "options": {},
                "external_ids": tag,
            },
        )
        if self._services is not None:
            self._services.switch_added(switch)
        LOG.debug("Node %s programmed with host subnet %s", node.name, subnet)
        return subnet

    def teardown(self, name: str) -> None:
        switch = switch_name(name)
        with self._lock:
            self._pending.discard(name)
        if self._services is not None:
            self._services.switch_removed(switch)
        self._nb.delete(Kind.SWITCH_PORT, mgmt_port(name))
        self._nb.delete(Kind.SWITCH_PORT, stor_port(name))
        self._nb.delete(Kind.ROUTER_PORT, rtos_port(name))
        self._nb.delete(Kind.SWITCH, switch)

        if self.on_removed is not None:
            self.on_removed(name)
        released = self._space.release_host_subnet(name)
        if released is None:
            return
        LOG.info("Released host subnet %s of deleted node %s", released, name)
        with self._lock:
            waiting = sorted(self._pending)
        if waiting and self.requeue is not None:
            LOG.info("Retrying nodes waiting for a host subnet: %s", ", ".join(waiting))
            for other in waiting:
                self.requeue(other)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _acquire_subnet(self, node: Node) -> ipaddress.IPv4Network:
        annotated = _annotated_subnet(node)
        if annotated is not None:
            self._space.reserve_host_subnet(node.name, annotated)
            with self._lock:
                self._pending.discard(node.name)
            return annotated

        try:
            subnet = self._space.allocate_host_subnet(node.name)
        except ExhaustedError:
            with self._lock:
                self._pending.add(node.name)
            raise
        with self._lock:
            self._pending.discard(node.name)

        def publish(current: Node) -> ipaddress.IPv4Network:
            # Somebody else may have annotated the node in the meantime.
            existing = _annotated_subnet(current)
            if existing is not None:
                return existing
            self._kube.annotate_node(current, {HOST_SUBNET_ANNOTATION: str(subnet)})
            return subnet

        published = patch_with_retry(
            publish, lambda: self._kube.get_node(node.name), node
        )
        if published != subnet:
            LOG.info(
                "Node %s was annotated with %s concurrently, adopting it",
                node.name,
                published,
            )
            self._space.release_host_subnet(node.name)
            self._space.reserve_host_subnet(node.name, published)
        else:
            LOG.info("Allocated host subnet %s to node %s", subnet, node.name)
        return published
