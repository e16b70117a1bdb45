"""Startup state machine wiring caches, reconcilers, queues and watchers."""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException

from ovnkube.allocator import AddressSpace
from ovnkube.backoff import Backoff, sleep
from ovnkube.config import TopologyConfig
from ovnkube.endpoint import EndpointReconciler
from ovnkube.exceptions import (
    Cancelled,
    ConflictError,
    DBRetryExhausted,
    PermanentDBError,
)
from ovnkube.gateway import GatewayManager
from ovnkube.model import NetworkPolicy, Node, Pod, Service
from ovnkube.nbdb import NorthboundBackend, NorthboundClient
from ovnkube.node import NodeReconciler
from ovnkube.service import ServiceReconciler
from ovnkube.store import ObjectStore

from .handlers import LoggingHandler, QueueHandler, node_changed, pod_changed
from .kube import CONVERTERS, NODE, POD, POLICY, SERVICE
from .registry import HandlerRegistry
from .watchers import ResourceWatcher
from .workqueue import WorkQueue

LOG = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_DB_UNAVAILABLE = 2

DEFAULT_WORKERS = 4
DEFAULT_DRAIN_DEADLINE = 10.0


class State(enum.Enum):
    INIT = "init"
    HYDRATE = "hydrate"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class Supervisor:
    """Run the cluster-wide reconcilers.

    ``Init -> Hydrate -> Running -> Draining -> Stopped``.  Hydrate lists the
    cluster and rebuilds the address space from annotations and existing
    database rows before any watcher is started, so an allocation can never
    hand out something that is already in use.  A northbound database that
    stays unreachable beyond the retry bound stops the process.
    """

    def __init__(
        self,
        topology: TopologyConfig,
        kube,
        backend: NorthboundBackend,
        stop_event: threading.Event,
        *,
        workers: int = DEFAULT_WORKERS,
        drain_deadline: float = DEFAULT_DRAIN_DEADLINE,
        backoff: Optional[Backoff] = None,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self.state = State.INIT
        self._topology = topology
        self._kube = kube
        self._stop = stop_event
        self._drain_deadline = drain_deadline
        self._backoff = backoff or Backoff()
        self._watch_factory = watch_factory
        self._exit_code = EXIT_OK

        self.stores: Dict[str, ObjectStore] = {
            NODE: ObjectStore[Node](NODE),
            POD: ObjectStore[Pod](POD),
            SERVICE: ObjectStore[Service](SERVICE),
            POLICY: ObjectStore[NetworkPolicy](POLICY),
        }
        self.space = AddressSpace(topology.cluster_subnets)
        self.nb = NorthboundClient(backend, stop_event, backoff=self._backoff)

        self.services = ServiceReconciler(
            self.nb,
            self.stores[SERVICE],
            self.stores[POD],
            self._address_of,
            nodeport=topology.nodeport,
        )
        self.nodes = NodeReconciler(
            self.space, self.nb, kube, self.stores[NODE], services=self.services
        )
        self.endpoints = EndpointReconciler(
            self.space,
            self.nb,
            kube,
            self.stores[POD],
            on_change=self.services.endpoint_changed,
        )
        self.gateways = GatewayManager(
            topology, self.space, self.nb, self.stores[NODE], services=self.services
        )

        self.queues: Dict[str, WorkQueue] = {
            name: WorkQueue(
                name,
                handler,
                stop_event,
                workers=workers,
                backoff=self._backoff,
                on_fatal=self._fatal,
            )
            for name, handler in (
                ("node", self.nodes.reconcile),
                ("gateway", self.gateways.reconcile),
                ("endpoint", self.endpoints.reconcile),
                ("service", self.services.reconcile),
            )
        }
        self.nodes.requeue = self.queues["node"].add
        self.nodes.on_removed = self.endpoints.node_removed
        self.endpoints.requeue = self.queues["endpoint"].add
        self.services.requeue = self.queues["service"].add

        self.registry = HandlerRegistry()
        self.registry.register(
            "node", QueueHandler([NODE], self.queues["node"].add, node_changed)
        )
        self.registry.register(
            "gateway", QueueHandler([NODE], self.queues["gateway"].add, node_changed)
        )
        self.registry.register(
            "endpoint", QueueHandler([POD], self.queues["endpoint"].add, pod_changed)
        )
        self.registry.register(
            "service", QueueHandler([SERVICE], self.queues["service"].add)
        )
        self.registry.register("policy", LoggingHandler([POLICY]))
        self.watchers: List[ResourceWatcher] = []

    def _address_of(self, key: str):
        return self.endpoints.address_of(key)

    def _transition(self, state: State) -> None:
        LOG.info("Supervisor state %s -> %s", self.state.value, state.value)
        self.state = state

    def _fatal(self, exc: BaseException) -> None:
        LOG.error("Stopping: %s", exc)
        self._exit_code = EXIT_DB_UNAVAILABLE
        self._stop.set()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    def hydrate(self) -> None:
        """Rebuild in-memory allocations before any event is processed."""

        self._transition(State.HYDRATE)
        for kind in (NODE, POD, SERVICE):
            objects = self._list(kind)
            self.stores[kind].replace(objects)
            LOG.info("Listed %d %s object(s)", len(objects), kind)

        self.nodes.hydrate(self.stores[NODE].list())
        self.nodes.ensure_cluster_router()
        self.endpoints.hydrate(self.stores[POD].list())
        self.gateways.hydrate()
        self.services.hydrate()
        removed = self.nodes.sweep() + self.endpoints.sweep()
        LOG.info("Stale sweep removed %d object group(s)", removed)

    def _list(self, kind: str) -> List[Any]:
        attempt = 0
        while True:
            try:
                objects, _ = self._kube.list(kind)
                return objects
            except ApiException as exc:
                delay = self._backoff.delay(attempt)
                LOG.warning(
                    "Listing %s failed with status %s, retrying in %.2fs",
                    kind,
                    exc.status,
                    delay,
                )
                sleep(self._stop, delay)
                attempt += 1

    def start(self) -> None:
        """Start the queues, then the watchers feeding them."""

        self._transition(State.RUNNING)
        for queue in self.queues.values():
            queue.start()
        for kind, store in self.stores.items():
            watcher = ResourceWatcher(
                kind,
                self._kube.list_function(kind),
                CONVERTERS[kind],
                store,
                self.registry,
                self._stop,
                watch_factory=self._watch_factory,
            )
            watcher.start()
            self.watchers.append(watcher)

    def drain(self) -> None:
        """Stop watching, let running reconciles finish, close the database."""

        self._transition(State.DRAINING)
        self._stop.set()
        end = time.monotonic() + self._drain_deadline
        for watcher in self.watchers:
            watcher.stop()
        for watcher in self.watchers:
            watcher.join(max(0.0, end - time.monotonic()))
        for queue in self.queues.values():
            queue.shutdown(max(0.0, end - time.monotonic()))
        self.nb.close(max(0.0, end - time.monotonic()))
        self._transition(State.STOPPED)

    def run(self) -> int:
        """Run until the stop event fires; return the process exit code."""

        try:
            self.hydrate()
        except Cancelled:
            LOG.info("Stopped during hydrate")
            self._transition(State.STOPPED)
            return EXIT_OK
        except DBRetryExhausted as exc:
            LOG.error("Northbound database unavailable during hydrate: %s", exc)
            self._transition(State.STOPPED)
            return EXIT_DB_UNAVAILABLE
        except (ConflictError, PermanentDBError) as exc:
            LOG.error("Hydrate failed, refusing to start: %s", exc)
            self._transition(State.STOPPED)
            return EXIT_FATAL

        self.start()
        while not self._stop.is_set():
            self._stop.wait(1.0)
        self.drain()
        return self._exit_code
