import ipaddress

import pytest

from ovnkube.allocator import (
    AddressSpace,
    Bitmap,
    HostSubnetAllocator,
    TransitAllocator,
)
from ovnkube.config import parse_cluster_subnets
from ovnkube.exceptions import ConflictError, ExhaustedError, NotReadyError


def net(value):
    return ipaddress.IPv4Network(value)


def addr(value):
    return ipaddress.IPv4Address(value)


def test_bitmap_first_clear():
    bitmap = Bitmap(4)
    assert bitmap.first_clear() == 0
    bitmap.set(0)
    bitmap.set(1)
    bitmap.set(3)
    assert bitmap.first_clear() == 2
    bitmap.set(2)
    assert bitmap.first_clear() is None
    bitmap.clear(1)
    assert bitmap.first_clear() == 1
    assert bitmap.count() == 3


def test_host_subnets_allocated_in_order_and_reused():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/16/24"))

    assert space.allocate_host_subnet("n1") == net("10.0.0.0/24")
    assert space.allocate_host_subnet("n2") == net("10.0.1.0/24")
    assert space.allocate_host_subnet("n3") == net("10.0.2.0/24")

    assert space.release_host_subnet("n2") == net("10.0.1.0/24")
    assert space.allocate_host_subnet("n4") == net("10.0.1.0/24")


def test_allocate_is_stable_for_the_same_node():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/16/24"))
    first = space.allocate_host_subnet("n1")
    assert space.allocate_host_subnet("n1") == first


def test_host_subnets_never_overlap():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/22/24,10.1.0.0/23/25"))
    subnets = [space.allocate_host_subnet(f"n{i}") for i in range(8)]

    for i, first in enumerate(subnets):
        for second in subnets[i + 1:]:
            assert not first.overlaps(second)
    # First entry fills up before the second one is used.
    assert subnets[3] == net("10.0.3.0/24")
    assert subnets[4] == net("10.1.0.0/25")


def test_endpoint_addresses_skip_router_and_management():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/16/24"))
    space.reserve_host_subnet("n1", net("10.0.0.0/24"))

    p1 = space.allocate_address("n1", "default/p1")
    p2 = space.allocate_address("n1", "default/p2")
    assert (p1, p2) == (addr("10.0.0.2"), addr("10.0.0.3"))

    space.release_address("n1", p1)
    assert space.allocate_address("n1", "default/p3") == addr("10.0.0.2")


def test_restart_hydration_keeps_reserved_subnets():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/16/24"))
    space.reserve_host_subnet("n1", net("10.0.5.0/24"))
    space.reserve_host_subnet("n2", net("10.0.9.0/24"))

    assert space.allocate_host_subnet("n3") == net("10.0.0.0/24")
    allocated = {space.allocate_host_subnet(f"x{i}") for i in range(10)}
    assert net("10.0.5.0/24") not in allocated
    assert net("10.0.9.0/24") not in allocated


def test_cidr_overflow_then_release():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/30/30"))

    assert space.allocate_host_subnet("n1") == net("10.0.0.0/30")
    with pytest.raises(ExhaustedError):
        space.allocate_host_subnet("n2")

    space.release_host_subnet("n1")
    assert space.allocate_host_subnet("n2") == net("10.0.0.0/30")
    # A /30 has exactly one endpoint address left after .0 and .1.
    assert space.allocate_address("n2", "default/p") == addr("10.0.0.2")
    with pytest.raises(ExhaustedError):
        space.allocate_address("n2", "default/q")


def test_reserving_a_taken_subnet_conflicts():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/16/24"))
    space.reserve_host_subnet("n1", net("10.0.5.0/24"))

    with pytest.raises(ConflictError):
        space.reserve_host_subnet("n2", net("10.0.5.0/24"))
    with pytest.raises(ConflictError):
        space.reserve_host_subnet("n2", net("10.0.4.0/23"))
    # Reserving the same thing twice is fine.
    space.reserve_host_subnet("n1", net("10.0.5.0/24"))


def test_reserving_a_taken_address_conflicts():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/16/24"))
    space.reserve_host_subnet("n1", net("10.0.0.0/24"))
    space.reserve_address("n1", addr("10.0.0.7"), "default/a")

    with pytest.raises(ConflictError):
        space.reserve_address("n1", addr("10.0.0.7"), "default/b")
    with pytest.raises(ConflictError):
        space.reserve_address("n1", addr("10.0.0.1"), "default/b")
    with pytest.raises(ConflictError):
        space.reserve_address("n1", addr("10.0.1.7"), "default/b")
    assert space.allocate_address("n1", "default/b") == addr("10.0.0.2")


def test_address_without_host_subnet():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/16/24"))

    with pytest.raises(NotReadyError):
        space.allocate_address("n1", "default/p")
    with pytest.raises(ConflictError):
        space.reserve_address("n1", addr("10.0.0.2"), "default/p")


def test_releasing_a_host_subnet_drops_its_addresses():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/16/24"))
    space.reserve_host_subnet("n1", net("10.0.0.0/24"))
    space.allocate_address("n1", "default/p1")

    space.release_host_subnet("n1")
    space.reserve_host_subnet("n1", net("10.0.0.0/24"))
    assert space.allocate_address("n1", "default/p2") == addr("10.0.0.2")


def test_subnet_outside_cluster_network_is_tracked():
    allocator = HostSubnetAllocator(parse_cluster_subnets("10.0.0.0/16/24"))
    allocator.reserve("n1", net("192.168.0.0/24"))

    assert allocator.lookup("n1") == net("192.168.0.0/24")
    with pytest.raises(ConflictError):
        allocator.reserve("n2", net("192.168.0.0/25"))


def test_supernet_reservation_blocks_the_slots_it_covers():
    allocator = HostSubnetAllocator(parse_cluster_subnets("10.0.0.0/24/26,10.1.0.0/24/26"))
    allocator.reserve("wide", net("10.0.0.0/23"))

    assert allocator.allocate("n1") == net("10.1.0.0/26")
    with pytest.raises(ConflictError):
        allocator.reserve("n2", net("10.0.0.64/26"))

    allocator.release("wide")
    assert allocator.allocate("n2") == net("10.0.0.0/26")


def test_address_owner_follows_the_endpoint_allocator():
    space = AddressSpace(parse_cluster_subnets("10.0.0.0/16/24"))
    space.reserve_host_subnet("n1", net("10.0.0.0/24"))
    address = space.allocate_address("n1", "default/p1")

    assert space.address_owner("n1", address) == "default/p1"
    assert space.address_owner("n2", address) is None

    space.release_host_subnet("n1")
    space.reserve_host_subnet("n1", net("10.0.0.0/24"))
    assert space.address_owner("n1", address) is None


def test_transit_links_are_deterministic():
    first = TransitAllocator(net("100.64.0.0/16"))
    second = TransitAllocator(net("100.64.0.0/16"))

    link = first.allocate("node-a")
    assert link == second.allocate("node-a")
    assert link.prefix.prefixlen == 30
    assert link.prefix.subnet_of(net("100.64.0.0/16"))
    assert link.cluster_side.ip == link.prefix.network_address + 1
    assert link.gateway_side.ip == link.prefix.network_address + 2


def test_transit_collisions_probe_linearly():
    allocator = TransitAllocator(net("100.64.0.0/29"))

    a = allocator.allocate("node-a")
    b = allocator.allocate("node-b")
    assert a.prefix != b.prefix
    with pytest.raises(ExhaustedError):
        allocator.allocate("node-c")

    allocator.release("node-a")
    assert allocator.allocate("node-c").prefix == a.prefix


def test_transit_reserve_rejects_taken_prefix():
    allocator = TransitAllocator(net("100.64.0.0/16"))
    link = allocator.allocate("node-a")

    with pytest.raises(ConflictError):
        allocator.reserve("node-b", link.prefix)
    with pytest.raises(ConflictError):
        allocator.reserve("node-b", net("10.0.0.0/30"))

    free = net("100.64.1.0/30") if link.prefix != net("100.64.1.0/30") else net("100.64.2.0/30")
    allocator.reserve("node-b", free)
    assert allocator.lookup("node-b").prefix == free
