import copy
import dataclasses
import itertools
import threading
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from ovnkube.backoff import Backoff
from ovnkube.exceptions import NotReadyError, PermanentDBError, UpdateConflict
from ovnkube.model import NetworkPolicy, Node, Pod, Service
from ovnkube.nbdb import Fields, Kind, NorthboundBackend, NorthboundClient

FAST_BACKOFF = Backoff(base=0.001, cap=0.01, jitter=False)


class MemoryBackend(NorthboundBackend):
    """Northbound database kept in dictionaries.

    Mirrors the referential behaviour of the real database: children need
    their parent row, and removing a parent removes what hangs off it.
    """

    PARENTS = {
        Kind.SWITCH_PORT: ("switch", Kind.SWITCH),
        Kind.ROUTER_PORT: ("router", Kind.ROUTER),
        Kind.STATIC_ROUTE: ("router", Kind.ROUTER),
        Kind.NAT: ("router", Kind.ROUTER),
    }

    def __init__(self):
        self.tables: Dict[Kind, Dict[str, Fields]] = {kind: {} for kind in Kind}
        self.writes: List[tuple] = []
        self.failures: List[Exception] = []

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    def _check_parent(self, kind, fields):
        if kind in self.PARENTS:
            column, parent = self.PARENTS[kind]
            if fields[column] not in self.tables[parent]:
                raise PermanentDBError(f"{parent.value} {fields[column]} does not exist")
        elif kind is Kind.LOAD_BALANCER_VIP:
            if fields["load_balancer"] not in self.tables[Kind.LOAD_BALANCER]:
                raise NotReadyError(f"load balancer {fields['load_balancer']} missing")
        elif kind is Kind.LOAD_BALANCER_BINDING:
            target = Kind.SWITCH if fields["target_type"] == "switch" else Kind.ROUTER
            if fields["load_balancer"] not in self.tables[Kind.LOAD_BALANCER]:
                raise PermanentDBError(f"load balancer {fields['load_balancer']} missing")
            if fields["target"] not in self.tables[target]:
                raise PermanentDBError(f"{target.value} {fields['target']} missing")

    def read(self, kind, key):
        self._maybe_fail()
        return copy.deepcopy(self.tables[kind].get(key))

    def write(self, kind, key, fields, current):
        self._maybe_fail()
        self._check_parent(kind, fields)
        self.tables[kind][key] = copy.deepcopy(fields)
        self.writes.append(("write", kind, key))

    def remove(self, kind, key, current):
        self._maybe_fail()
        self._drop(kind, key)
        self.writes.append(("remove", kind, key))

    def list(self, kind):
        self._maybe_fail()
        return copy.deepcopy(self.tables[kind])

    def _drop(self, kind, key):
        self.tables[kind].pop(key, None)
        if kind is Kind.SWITCH:
            self._drop_where(Kind.SWITCH_PORT, "switch", key)
            self._drop_bindings("switch", key)
        elif kind is Kind.ROUTER:
            for child in (Kind.ROUTER_PORT, Kind.STATIC_ROUTE, Kind.NAT):
                self._drop_where(child, "router", key)
            self._drop_bindings("router", key)
        elif kind is Kind.LOAD_BALANCER:
            self._drop_where(Kind.LOAD_BALANCER_VIP, "load_balancer", key)
            self._drop_where(Kind.LOAD_BALANCER_BINDING, "load_balancer", key)

    def _drop_where(self, kind, column, value):
        table = self.tables[kind]
        for key in [k for k, fields in table.items() if fields[column] == value]:
            del table[key]

    def _drop_bindings(self, target_type, target):
        table = self.tables[Kind.LOAD_BALANCER_BINDING]
        for key in [
            k for k, f in table.items()
            if f["target_type"] == target_type and f["target"] == target
        ]:
            del table[key]

    # helpers for assertions
    def keys(self, kind):
        return sorted(self.tables[kind])

    def write_count(self, kind=None):
        return sum(
            1 for op, k, _ in self.writes if op == "write" and (kind is None or k is kind)
        )

    def snapshot(self):
        return {kind.value: copy.deepcopy(self.tables[kind]) for kind in Kind}


class FakeKube:
    """In-memory stand-in for :class:`ovnkube_agent.kube.KubeClient`."""

    def __init__(self):
        self._versions = itertools.count(1)
        self._lock = threading.Lock()
        self.nodes: Dict[str, Node] = {}
        self.pods: Dict[str, Pod] = {}
        self.services: Dict[str, Service] = {}
        self.policies: Dict[str, NetworkPolicy] = {}
        self.patches: List[tuple] = []
        self.conflicts = 0

    def _version(self):
        return str(next(self._versions))

    def add_node(self, name, annotations=None):
        node = Node(name=name, annotations=dict(annotations or {}), resource_version=self._version())
        self.nodes[name] = node
        return node

    def add_pod(self, namespace, name, node_name="n1", labels=None, **kwargs):
        pod = Pod(
            namespace=namespace,
            name=name,
            node_name=node_name,
            labels=dict(labels or {}),
            resource_version=self._version(),
            **kwargs,
        )
        self.pods[pod.key] = pod
        return pod

    def add_service(self, service):
        self.services[service.key] = service
        return service

    def list(self, kind):
        items = {
            "node": self.nodes,
            "pod": self.pods,
            "service": self.services,
            "networkpolicy": self.policies,
        }[kind]
        return list(items.values()), self._version()

    def list_function(self, kind):
        def list_objects(**kwargs):
            objects, version = self.list(kind)
            return SimpleNamespace(
                items=objects, metadata=SimpleNamespace(resource_version=version)
            )

        return list_objects

    def get_node(self, name) -> Optional[Node]:
        return self.nodes.get(name)

    def get_pod(self, namespace, name) -> Optional[Pod]:
        return self.pods.get(f"{namespace}/{name}")

    def _patch(self, items, key, obj, annotations):
        with self._lock:
            stored = items.get(key)
            if stored is None:
                raise NotReadyError(f"{key} not found")
            if self.conflicts:
                self.conflicts -= 1
                raise UpdateConflict(f"{key} changed")
            if obj.resource_version and obj.resource_version != stored.resource_version:
                raise UpdateConflict(f"{key} changed")
            merged = dict(stored.annotations)
            for name, value in annotations.items():
                if value is None:
                    merged.pop(name, None)
                else:
                    merged[name] = value
            updated = dataclasses.replace(
                stored, annotations=merged, resource_version=self._version()
            )
            items[key] = updated
            self.patches.append((key, dict(annotations)))
            return updated

    def annotate_node(self, node, annotations):
        return self._patch(self.nodes, node.name, node, annotations)

    def annotate_pod(self, pod, annotations):
        return self._patch(self.pods, pod.key, pod, annotations)


@pytest.fixture
def stop_event():
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def make_backend():
    return MemoryBackend


@pytest.fixture
def nb(backend, stop_event):
    return NorthboundClient(backend, stop_event, backoff=FAST_BACKOFF)


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def fast_backoff():
    return FAST_BACKOFF
