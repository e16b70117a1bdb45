"""Address space allocators for host subnets, endpoint addresses and transit links."""

from __future__ import annotations

import hashlib
import ipaddress
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .config import ClusterSubnetEntry
from .exceptions import ConflictError, ExhaustedError, NotReadyError

LOG = logging.getLogger(__name__)

# Indices 0 and 1 of every host subnet belong to the router port and the
# management port.
FIRST_ENDPOINT_INDEX = 2


class Bitmap:
    """Fixed size bit set backed by a Python integer."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._bits = 0

    @property
    def size(self) -> int:
        return self._size

    def is_set(self, index: int) -> bool:
        return bool(self._bits >> index & 1)

    def set(self, index: int) -> None:
        self._bits |= 1 << index

    def clear(self, index: int) -> None:
        self._bits &= ~(1 << index)

    def first_clear(self) -> Optional[int]:
        # Lowest zero bit of ``bits`` is the lowest set bit of ``bits + 1``
        # masked by the complement.
        lowest = ~self._bits & (self._bits + 1)
        index = lowest.bit_length() - 1
        if index >= self._size:
            return None
        return index

    def count(self) -> int:
        return bin(self._bits).count("1")


class HostSubnetAllocator:
    """Carve cluster subnet entries into fixed-length host subnets.

    Entries are scanned in configuration order and the numerically smallest
    free slot of the first entry with room wins.
    """

    def __init__(self, entries: Sequence[ClusterSubnetEntry]) -> None:
        self._entries = list(entries)
        self._bitmaps = [Bitmap(entry.slot_count) for entry in self._entries]
        self._slot_owner: Dict[Tuple[int, int], str] = {}
        self._assigned: Dict[str, ipaddress.IPv4Network] = {}

    def _slots_for(
        self, prefix: ipaddress.IPv4Network
    ) -> List[Tuple[int, range]]:
        """Slots of every entry ``prefix`` overlaps, one range per entry."""

        located = []
        for index, entry in enumerate(self._entries):
            if prefix.subnet_of(entry.cidr):
                shift = 32 - entry.host_subnet_length
                offset = int(prefix.network_address) - int(entry.cidr.network_address)
                start = offset >> shift
                count = 1 << max(0, entry.host_subnet_length - prefix.prefixlen)
                located.append((index, range(start, start + count)))
            elif entry.cidr.subnet_of(prefix):
                located.append((index, range(entry.slot_count)))
        return located

    def _slot_prefix(self, index: int, slot: int) -> ipaddress.IPv4Network:
        entry = self._entries[index]
        shift = 32 - entry.host_subnet_length
        base = int(entry.cidr.network_address) + (slot << shift)
        return ipaddress.IPv4Network((base, entry.host_subnet_length))

    def lookup(self, node: str) -> Optional[ipaddress.IPv4Network]:
        return self._assigned.get(node)

    def assignments(self) -> Dict[str, ipaddress.IPv4Network]:
        return dict(self._assigned)

    def allocate(self, node: str) -> ipaddress.IPv4Network:
        existing = self._assigned.get(node)
        if existing is not None:
            return existing

        for index, bitmap in enumerate(self._bitmaps):
            slot = bitmap.first_clear()
            if slot is None:
                continue
            bitmap.set(slot)
            self._slot_owner[(index, slot)] = node
            prefix = self._slot_prefix(index, slot)
            self._assigned[node] = prefix
            return prefix

        raise ExhaustedError(f"no free host subnet left for node {node}")

    def reserve(self, node: str, prefix: ipaddress.IPv4Network) -> None:
        existing = self._assigned.get(node)
        if existing == prefix:
            return

        located = self._slots_for(prefix)
        for index, slots in located:
            for slot in slots:
                owner = self._slot_owner.get((index, slot))
                if owner is not None and owner != node:
                    raise ConflictError(
                        f"host subnet {prefix} for node {node} overlaps the "
                        f"subnet of node {owner}"
                    )
        for other, other_prefix in self._assigned.items():
            if other != node and other_prefix.overlaps(prefix):
                raise ConflictError(
                    f"host subnet {prefix} for node {node} overlaps the "
                    f"subnet of node {other}"
                )
        if not located:
            LOG.warning(
                "host subnet %s of node %s is outside every cluster subnet",
                prefix,
                node,
            )

        if existing is not None:
            self.release(node)
        for index, slots in located:
            for slot in slots:
                self._bitmaps[index].set(slot)
                self._slot_owner[(index, slot)] = node
        self._assigned[node] = prefix

    def release(self, node: str) -> Optional[ipaddress.IPv4Network]:
        prefix = self._assigned.pop(node, None)
        if prefix is None:
            return None
        for index, slots in self._slots_for(prefix):
            for slot in slots:
                if self._slot_owner.get((index, slot)) == node:
                    del self._slot_owner[(index, slot)]
                    self._bitmaps[index].clear(slot)
        return prefix


class EndpointAllocator:
    """Single addresses inside one host subnet.

    Usable indices are ``[2, N-2]``: the network address and the next one
    are reserved for the router and management ports, the last one is the
    broadcast address.
    """

    def __init__(self, subnet: ipaddress.IPv4Network) -> None:
        self._subnet = subnet
        size = max(0, subnet.num_addresses - 1 - FIRST_ENDPOINT_INDEX)
        self._bitmap = Bitmap(size)
        self._owners: Dict[int, str] = {}
        self._by_owner: Dict[str, int] = {}

    @property
    def subnet(self) -> ipaddress.IPv4Network:
        return self._subnet

    def _address(self, slot: int) -> ipaddress.IPv4Address:
        return self._subnet.network_address + FIRST_ENDPOINT_INDEX + slot

    def _slot(self, address: ipaddress.IPv4Address) -> int:
        if address not in self._subnet:
            raise ConflictError(f"{address} is outside host subnet {self._subnet}")
        slot = int(address) - int(self._subnet.network_address) - FIRST_ENDPOINT_INDEX
        if slot < 0 or slot >= self._bitmap.size:
            raise ConflictError(
                f"{address} is a reserved address of host subnet {self._subnet}"
            )
        return slot

    def allocate(self, owner: str) -> ipaddress.IPv4Address:
        if owner in self._by_owner:
            return self._address(self._by_owner[owner])
        slot = self._bitmap.first_clear()
        if slot is None:
            raise ExhaustedError(f"host subnet {self._subnet} has no free address")
        self._bitmap.set(slot)
        self._owners[slot] = owner
        self._by_owner[owner] = slot
        return self._address(slot)

    def reserve(self, owner: str, address: ipaddress.IPv4Address) -> None:
        slot = self._slot(address)
        current = self._owners.get(slot)
        if current == owner:
            return
        if current is not None:
            raise ConflictError(f"{address} is already assigned to {current}")
        previous = self._by_owner.get(owner)
        if previous is not None:
            self.release(self._address(previous))
        self._bitmap.set(slot)
        self._owners[slot] = owner
        self._by_owner[owner] = slot

    def release(self, address: ipaddress.IPv4Address) -> None:
        try:
            slot = self._slot(address)
        except ConflictError:
            return
        owner = self._owners.pop(slot, None)
        if owner is not None:
            del self._by_owner[owner]
        self._bitmap.clear(slot)

    def owner_of(self, address: ipaddress.IPv4Address) -> Optional[str]:
        try:
            return self._owners.get(self._slot(address))
        except ConflictError:
            return None

    def in_use(self) -> int:
        return self._bitmap.count()


class AddressSpace:
    """The single shared allocation state of the control plane.

    Guards both allocator levels with one lock; every operation is a few bit
    manipulations so the lock is never held for long.  The in-memory state is
    a cache of the annotations on the orchestrator objects and is rebuilt at
    startup through the ``reserve_*`` calls.
    """

    def __init__(self, entries: Sequence[ClusterSubnetEntry]) -> None:
        self._lock = threading.Lock()
        self._hosts = HostSubnetAllocator(entries)
        self._endpoints: Dict[str, EndpointAllocator] = {}

    # ------------------------------------------------------------------
    # Host subnets
    # ------------------------------------------------------------------
    def allocate_host_subnet(self, node: str) -> ipaddress.IPv4Network:
        with self._lock:
            subnet = self._hosts.allocate(node)
            self._ensure_endpoint_allocator(node, subnet)
            LOG.debug("allocated host subnet %s for node %s", subnet, node)
            return subnet

    def reserve_host_subnet(self, node: str, subnet: ipaddress.IPv4Network) -> None:
        with self._lock:
            self._hosts.reserve(node, subnet)
            self._ensure_endpoint_allocator(node, subnet)

    def release_host_subnet(self, node: str) -> Optional[ipaddress.IPv4Network]:
        with self._lock:
            self._endpoints.pop(node, None)
            subnet = self._hosts.release(node)
            if subnet is not None:
                LOG.debug("released host subnet %s of node %s", subnet, node)
            return subnet

    def host_subnet(self, node: str) -> Optional[ipaddress.IPv4Network]:
        with self._lock:
            return self._hosts.lookup(node)

    def host_subnets(self) -> Dict[str, ipaddress.IPv4Network]:
        with self._lock:
            return self._hosts.assignments()

    def _ensure_endpoint_allocator(
        self, node: str, subnet: ipaddress.IPv4Network
    ) -> None:
        current = self._endpoints.get(node)
        if current is None or current.subnet != subnet:
            self._endpoints[node] = EndpointAllocator(subnet)

    # ------------------------------------------------------------------
    # Endpoint addresses
    # ------------------------------------------------------------------
    def _endpoint_allocator(self, node: str) -> EndpointAllocator:
        allocator = self._endpoints.get(node)
        if allocator is None:
            raise NotReadyError(f"node {node} has no host subnet yet")
        return allocator

    def allocate_address(self, node: str, owner: str) -> ipaddress.IPv4Address:
        with self._lock:
            return self._endpoint_allocator(node).allocate(owner)

    def reserve_address(
        self, node: str, address: ipaddress.IPv4Address, owner: str
    ) -> None:
        with self._lock:
            allocator = self._endpoints.get(node)
            if allocator is None:
                raise ConflictError(f"node {node} has no host subnet to hold {address}")
            allocator.reserve(owner, address)

    def release_address(self, node: str, address: ipaddress.IPv4Address) -> None:
        with self._lock:
            allocator = self._endpoints.get(node)
            if allocator is not None:
                allocator.release(address)

    def address_owner(self, node: str, address: ipaddress.IPv4Address) -> Optional[str]:
        with self._lock:
            allocator = self._endpoints.get(node)
            if allocator is None:
                return None
            return allocator.owner_of(address)


@dataclass(frozen=True)
class TransitLink:
    """Point-to-point prefix joining a gateway router to the cluster router."""

    prefix: ipaddress.IPv4Network

    @property
    def cluster_side(self) -> ipaddress.IPv4Interface:
        return ipaddress.IPv4Interface((self.prefix.network_address + 1, self.prefix.prefixlen))

    @property
    def gateway_side(self) -> ipaddress.IPv4Interface:
        return ipaddress.IPv4Interface((self.prefix.network_address + 2, self.prefix.prefixlen))


class TransitAllocator:
    """Deterministically assign transit prefixes based on node name.

    The allocator hashes the node name into the slot space of the transit
    range so a node keeps its link across restarts.  Collisions are resolved
    by linear probing; existing links are re-reserved from the database at
    startup so probing order does not matter after a restart.
    """

    def __init__(self, transit_range: ipaddress.IPv4Network, link_length: int = 30) -> None:
        self._range = transit_range
        self._link_length = link_length
        self._max_id = 1 << (link_length - transit_range.prefixlen)
        self._lock = threading.Lock()
        self._registry: Dict[str, TransitLink] = {}
        self._reverse: Dict[int, str] = {}

    def _hash_node(self, node: str) -> int:
        digest = hashlib.sha256(node.encode("utf-8")).digest()
        return int.from_bytes(digest[:4], "big") % self._max_id

    def _link(self, identifier: int) -> TransitLink:
        base = int(self._range.network_address) + (identifier << (32 - self._link_length))
        return TransitLink(ipaddress.IPv4Network((base, self._link_length)))

    def _identifier(self, prefix: ipaddress.IPv4Network) -> int:
        offset = int(prefix.network_address) - int(self._range.network_address)
        return offset >> (32 - self._link_length)

    def allocate(self, node: str) -> TransitLink:
        with self._lock:
            if node in self._registry:
                return self._registry[node]

            candidate = self._hash_node(node)
            start = candidate
            while candidate in self._reverse and self._reverse[candidate] != node:
                candidate = (candidate + 1) % self._max_id
                if candidate == start:
                    raise ExhaustedError("transit range exhausted")

            link = self._link(candidate)
            self._registry[node] = link
            self._reverse[candidate] = node
            return link

    def reserve(self, node: str, prefix: ipaddress.IPv4Network) -> None:
        if not prefix.subnet_of(self._range) or prefix.prefixlen != self._link_length:
            raise ConflictError(f"{prefix} is not a transit link of {self._range}")
        identifier = self._identifier(prefix)
        with self._lock:
            owner = self._reverse.get(identifier)
            if owner is not None and owner != node:
                raise ConflictError(f"transit link {prefix} already belongs to {owner}")
            previous = self._registry.get(node)
            if previous is not None:
                self._reverse.pop(self._identifier(previous.prefix), None)
            self._registry[node] = TransitLink(prefix)
            self._reverse[identifier] = node

    def release(self, node: str) -> None:
        with self._lock:
            link = self._registry.pop(node, None)
            if link is not None:
                self._reverse.pop(self._identifier(link.prefix), None)

    def lookup(self, node: str) -> Optional[TransitLink]:
        with self._lock:
            return self._registry.get(node)
