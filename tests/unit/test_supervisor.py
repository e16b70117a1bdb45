import ipaddress
import threading
import time

from kubernetes.client.rest import ApiException

from ovnkube.config import TopologyConfig, parse_cluster_subnets
from ovnkube.exceptions import TransientDBError
from ovnkube.model import Service, ServicePort
from ovnkube.nbdb import Kind, vip_key
from ovnkube.util import HOST_SUBNET_ANNOTATION, POD_NETWORK_ANNOTATION
from ovnkube_agent import supervisor as supervisor_module
from ovnkube_agent.supervisor import (
    EXIT_DB_UNAVAILABLE,
    EXIT_FATAL,
    EXIT_OK,
    State,
    Supervisor,
)

TOPOLOGY = TopologyConfig(cluster_subnets=parse_cluster_subnets("10.0.0.0/16/24"))
VIP = vip_key("cluster-lb-tcp", "172.16.1.10:80")


class IdleWatch:
    """Watch stream that produces nothing until it is stopped."""

    def __init__(self):
        self.stopped = threading.Event()

    def stream(self, func, **kwargs):
        self.stopped.wait(10)
        return
        yield  # pragma: no cover

    def stop(self):
        self.stopped.set()


class FailingKube:
    def list(self, kind):
        raise ApiException(status=503, reason="unavailable")


def populate(kube):
    kube.add_node("n1")
    kube.add_pod("default", "web-1", labels={"app": "web"}, ready=True, phase="Running")
    kube.add_service(
        Service(
            namespace="default",
            name="web",
            cluster_ip="172.16.1.10",
            selector={"app": "web"},
            ports=(ServicePort(protocol="TCP", port=80, target_port=8080),),
            resource_version="1",
        )
    )


def make_supervisor(kube, backend, stop_event, fast_backoff, topology=TOPOLOGY):
    return Supervisor(
        topology,
        kube,
        backend,
        stop_event,
        workers=2,
        drain_deadline=2.0,
        backoff=fast_backoff,
        watch_factory=IdleWatch,
    )


def reconcile_all(supervisor):
    supervisor.nodes.reconcile("n1")
    supervisor.gateways.reconcile("n1")
    supervisor.endpoints.reconcile("default/web-1")
    supervisor.services.reconcile("default/web")


def test_hydrate_rebuilds_allocations_from_annotations(kube, backend, stop_event, fast_backoff):
    kube.add_node("n1", {HOST_SUBNET_ANNOTATION: "10.0.7.0/24"})
    kube.add_node("n2")
    supervisor = make_supervisor(kube, backend, stop_event, fast_backoff)

    supervisor.hydrate()

    assert supervisor.state is State.HYDRATE
    assert supervisor.space.host_subnets() == {"n1": ipaddress.IPv4Network("10.0.7.0/24")}
    assert sorted(supervisor.stores["node"].keys()) == ["n1", "n2"]
    assert backend.keys(Kind.ROUTER) == ["ovn_cluster_router"]
    assert kube.patches == []


def test_restart_reproduces_the_same_database_without_writes(
    kube, backend, stop_event, fast_backoff
):
    populate(kube)
    first = make_supervisor(kube, backend, stop_event, fast_backoff)
    first.hydrate()
    reconcile_all(first)

    assert kube.nodes["n1"].annotations[HOST_SUBNET_ANNOTATION] == "10.0.0.0/24"
    assert POD_NETWORK_ANNOTATION in kube.pods["default/web-1"].annotations
    assert backend.tables[Kind.LOAD_BALANCER_VIP][VIP]["backends"] == "10.0.0.2:8080"
    snapshot, writes, patches = backend.snapshot(), backend.write_count(), len(kube.patches)

    restarted = make_supervisor(kube, backend, threading.Event(), fast_backoff)
    restarted.hydrate()
    reconcile_all(restarted)

    assert backend.snapshot() == snapshot
    assert backend.write_count() == writes
    assert len(kube.patches) == patches


def test_duplicate_subnet_annotations_refuse_to_start(kube, backend, stop_event, fast_backoff):
    kube.add_node("n1", {HOST_SUBNET_ANNOTATION: "10.0.0.0/24"})
    kube.add_node("n2", {HOST_SUBNET_ANNOTATION: "10.0.0.0/24"})
    supervisor = make_supervisor(kube, backend, stop_event, fast_backoff)

    assert supervisor.run() == EXIT_FATAL
    assert supervisor.state is State.STOPPED
    assert backend.writes == []


def test_unreachable_database_exits_with_db_code(kube, backend, stop_event, fast_backoff):
    backend.failures = [TransientDBError("connection refused")] * 50
    supervisor = make_supervisor(kube, backend, stop_event, fast_backoff)

    assert supervisor.run() == EXIT_DB_UNAVAILABLE
    assert supervisor.state is State.STOPPED


def test_stop_while_listing_ends_cleanly(backend, stop_event, fast_backoff):
    supervisor = make_supervisor(FailingKube(), backend, stop_event, fast_backoff)
    stop_event.set()

    assert supervisor.run() == EXIT_OK
    assert supervisor.state is State.STOPPED


def test_run_programs_the_cluster_and_drains_on_stop(
    kube, backend, stop_event, fast_backoff, monkeypatch
):
    monkeypatch.setattr(
        supervisor_module,
        "CONVERTERS",
        {kind: (lambda obj: obj) for kind in supervisor_module.CONVERTERS},
    )
    populate(kube)
    supervisor = make_supervisor(kube, backend, stop_event, fast_backoff)
    result = []
    thread = threading.Thread(target=lambda: result.append(supervisor.run()))
    thread.start()

    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        vip = backend.tables[Kind.LOAD_BALANCER_VIP].get(VIP)
        if vip is not None and vip["backends"] == "10.0.0.2:8080":
            break
        time.sleep(0.02)
    stop_event.set()
    thread.join(10)

    assert not thread.is_alive()
    assert result == [EXIT_OK]
    assert supervisor.state is State.STOPPED
    assert backend.tables[Kind.LOAD_BALANCER_VIP][VIP]["backends"] == "10.0.0.2:8080"
    assert "n1" in backend.keys(Kind.SWITCH)
    assert all(not watcher.is_alive() for watcher in supervisor.watchers)


def test_restart_sweeps_ports_of_pods_deleted_while_down(kube, backend, stop_event, fast_backoff):
    populate(kube)
    first = make_supervisor(kube, backend, stop_event, fast_backoff)
    first.hydrate()
    reconcile_all(first)
    assert "default_web-1" in backend.keys(Kind.SWITCH_PORT)

    del kube.pods["default/web-1"]
    restarted = make_supervisor(kube, backend, threading.Event(), fast_backoff)
    restarted.hydrate()

    assert "default_web-1" not in backend.keys(Kind.SWITCH_PORT)
    kube.add_pod("default", "web-2", labels={"app": "web"}, ready=True, phase="Running")
    restarted.stores["pod"].upsert(kube.pods["default/web-2"])
    restarted.endpoints.reconcile("default/web-2")

    holders = [
        key
        for key, port in backend.tables[Kind.SWITCH_PORT].items()
        if any(entry.endswith(" 10.0.0.2") for entry in port.get("addresses") or [])
    ]
    assert holders == ["default_web-2"]


def test_deleted_node_requeues_the_pods_it_hosted(kube, backend, stop_event, fast_backoff):
    populate(kube)
    supervisor = make_supervisor(kube, backend, stop_event, fast_backoff)
    supervisor.hydrate()
    reconcile_all(supervisor)

    supervisor.stores["node"].delete("n1")
    supervisor.nodes.reconcile("n1")

    assert supervisor.endpoints.address_of("default/web-1") is None
    assert "default_web-1" not in backend.keys(Kind.SWITCH_PORT)
    assert len(supervisor.queues["endpoint"]) == 1
