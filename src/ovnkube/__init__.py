"""Cluster IPAM and logical topology reconcilers for OVN on Kubernetes.

This package holds the parts of the control plane that do not talk to the
Kubernetes API directly:

* the address space allocators that carve the cluster network into host
  subnets and hand out pod addresses (:mod:`ovnkube.allocator`);
* an idempotent client for the OVN northbound database built on
  ``ovn-nbctl`` (:mod:`ovnkube.nbdb`); and
* the node, endpoint, service and gateway reconcilers that turn cached
  orchestrator objects into logical switches, routers and load balancers.

The runtime in :mod:`ovnkube_agent` feeds these reconcilers from watches and
persists their allocations as annotations.
"""

from .allocator import AddressSpace  # noqa: F401
from .nbdb import Kind, NorthboundClient  # noqa: F401

__all__ = ["AddressSpace", "Kind", "NorthboundClient"]
