import ipaddress

import pytest

from ovnkube.allocator import AddressSpace, TransitAllocator
from ovnkube.config import GatewayMode, TopologyConfig, parse_cluster_subnets
from ovnkube.exceptions import NotReadyError
from ovnkube.gateway import GatewayManager
from ovnkube.model import Node
from ovnkube.nbdb import Kind, nat_key, route_key
from ovnkube.store import ObjectStore
from ovnkube.util import GATEWAY_ANNOTATION, GatewayInfo, owner

INFO = GatewayInfo(
    mode=GatewayMode.SHARED,
    interface="eth0",
    address=ipaddress.IPv4Interface("192.0.2.10/24"),
    mac="52:54:00:12:34:56",
    nexthop=ipaddress.IPv4Address("192.0.2.1"),
    chassis="6f1c7a0e-chassis",
)


class RecordingServices:
    def __init__(self):
        self.calls = []

    def gateway_added(self, node, router, address):
        self.calls.append(("added", node, router, address))

    def gateway_removed(self, node):
        self.calls.append(("removed", node))


@pytest.fixture
def config():
    return TopologyConfig(cluster_subnets=parse_cluster_subnets("10.0.0.0/16/24"))


@pytest.fixture
def space(config):
    space = AddressSpace(config.cluster_subnets)
    space.reserve_host_subnet("n1", ipaddress.IPv4Network("10.0.0.0/24"))
    return space


@pytest.fixture
def nodes():
    store = ObjectStore("node")
    store.upsert(Node(name="n1", annotations={GATEWAY_ANNOTATION: INFO.to_annotation()}, resource_version="1"))
    return store


@pytest.fixture
def services():
    return RecordingServices()


@pytest.fixture
def manager(config, space, nb, nodes, services):
    nb.ensure(Kind.ROUTER, "ovn_cluster_router", {"options": {}, "external_ids": owner("cluster", "ovn_cluster_router")})
    return GatewayManager(config, space, nb, nodes, services=services)


def test_gateway_router_is_programmed(manager, backend, services):
    manager.reconcile("n1")

    state = manager.active()["n1"]
    link = state.link
    assert link.prefix.subnet_of(ipaddress.IPv4Network("100.64.0.0/16"))

    router = backend.tables[Kind.ROUTER]["GR_n1"]
    assert router["options"] == {
        "chassis": "6f1c7a0e-chassis",
        "lb_force_snat_ip": str(link.gateway_side.ip),
    }
    assert router["external_ids"] == owner("gateway", "n1")

    ports = backend.tables[Kind.ROUTER_PORT]
    assert ports["jtod-n1"]["router"] == "GR_n1"
    assert ports["jtod-n1"]["networks"] == [str(link.gateway_side)]
    assert ports["jtod-n1"]["peer"] == "dtoj-n1"
    assert ports["dtoj-n1"]["router"] == "ovn_cluster_router"
    assert ports["dtoj-n1"]["networks"] == [str(link.cluster_side)]
    assert ports["dtoj-n1"]["peer"] == "jtod-n1"
    assert ports["rtoe-GR_n1"]["networks"] == ["192.0.2.10/24"]
    assert ports["rtoe-GR_n1"]["mac"] == "52:54:00:12:34:56"

    assert backend.keys(Kind.SWITCH) == ["ext_n1"]
    localnet = backend.tables[Kind.SWITCH_PORT]["eth0_n1"]
    assert localnet["type"] == "localnet"
    assert localnet["options"] == {"network_name": "physnet"}
    assert backend.tables[Kind.SWITCH_PORT]["etor-GR_n1"]["options"] == {"router-port": "rtoe-GR_n1"}

    routes = backend.tables[Kind.STATIC_ROUTE]
    assert routes[route_key("GR_n1", "0.0.0.0/0")]["nexthop"] == "192.0.2.1"
    assert routes[route_key("GR_n1", "10.0.0.0/16")]["nexthop"] == str(link.cluster_side.ip)
    source = routes[route_key("ovn_cluster_router", "10.0.0.0/24", "src-ip")]
    assert source["policy"] == "src-ip"
    assert source["nexthop"] == str(link.gateway_side.ip)

    snat = backend.tables[Kind.NAT][nat_key("GR_n1", "snat", "10.0.0.0/16")]
    assert snat["external_ip"] == "192.0.2.10"

    assert services.calls == [("added", "n1", "GR_n1", ipaddress.IPv4Address("192.0.2.10"))]


def test_gateway_waits_for_host_subnet(config, nb, nodes):
    manager = GatewayManager(config, AddressSpace(config.cluster_subnets), nb, nodes)

    with pytest.raises(NotReadyError):
        manager.reconcile("n1")


def test_second_reconcile_is_write_free(manager, backend):
    manager.reconcile("n1")
    writes = backend.write_count()

    manager.reconcile("n1")

    assert backend.write_count() == writes


def test_removing_the_annotation_tears_the_gateway_down(manager, backend, nodes, services):
    manager.reconcile("n1")

    nodes.upsert(Node(name="n1", annotations={}, resource_version="2"))
    manager.reconcile("n1")

    assert backend.keys(Kind.ROUTER) == ["ovn_cluster_router"]
    assert backend.keys(Kind.ROUTER_PORT) == []
    assert backend.keys(Kind.SWITCH) == []
    assert backend.keys(Kind.STATIC_ROUTE) == []
    assert backend.keys(Kind.NAT) == []
    assert manager.active() == {}
    assert services.calls[-1] == ("removed", "n1")


def test_node_without_gateway_is_left_alone(manager, backend, nodes):
    nodes.upsert(Node(name="n2", resource_version="1"))

    manager.reconcile("n2")
    manager.reconcile("n3")

    assert backend.write_count() == 1


def test_malformed_annotation_is_ignored(manager, backend, nodes):
    nodes.upsert(Node(name="n2", annotations={GATEWAY_ANNOTATION: "mode=shared"}, resource_version="1"))

    manager.reconcile("n2")

    assert "GR_n2" not in backend.keys(Kind.ROUTER)


def test_hydrate_reserves_existing_transit_links(config, space, nb, nodes, manager):
    manager.reconcile("n1")
    original = manager.active()["n1"].link

    transit = TransitAllocator(config.transit_range)
    restarted = GatewayManager(config, space, nb, nodes, transit=transit)
    assert restarted.hydrate() == 1
    assert transit.lookup("n1").prefix == original.prefix

    restarted.reconcile("n1")
    assert restarted.active()["n1"].link == original


def test_annotation_round_trip_keeps_optional_fields():
    info = GatewayInfo.from_annotation(INFO.to_annotation())
    assert info == INFO

    local = GatewayInfo(
        mode=GatewayMode.LOCAL,
        interface="br-local",
        address=ipaddress.IPv4Interface("169.254.33.2/24"),
        mac="0a:58:a9:fe:21:02",
        nexthop=ipaddress.IPv4Address("169.254.33.1"),
        vlan_id=0,
    )
    assert "chassis" not in local.to_annotation()
    assert "vlan" not in local.to_annotation()
