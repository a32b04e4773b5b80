"""
Host-affinity partitioning of work across fetcher nodes.
"""

import bisect
import hashlib
import logging
from typing import Dict, List, Optional, Set


class HashRing:
    """Consistent hash ring with virtual nodes."""

    def __init__(self, virtual_nodes: int = 64):
        self.virtual_nodes = virtual_nodes
        self._ring: List[int] = []
        self._owners: Dict[int, str] = {}
        self._nodes: Set[str] = set()

    @staticmethod
    def _hash(key: str) -> int:
        return int(hashlib.md5(key.encode('utf-8')).hexdigest()[:16], 16)

    def add(self, node_id: str):
        if node_id in self._nodes:
            return
        self._nodes.add(node_id)
        for replica in range(self.virtual_nodes):
            point = self._hash(f"{node_id}#{replica}")
            if point in self._owners:
                continue
            self._owners[point] = node_id
            bisect.insort(self._ring, point)

    def remove(self, node_id: str):
        if node_id not in self._nodes:
            return
        self._nodes.discard(node_id)
        self._ring = [point for point in self._ring if self._owners[point] != node_id]
        self._owners = {point: owner for point, owner in self._owners.items()
                        if owner != node_id}

    def get(self, key: str) -> Optional[str]:
        """Node owning a key, or None if the ring is empty."""
        if not self._ring:
            return None
        index = bisect.bisect(self._ring, self._hash(key)) % len(self._ring)
        return self._owners[self._ring[index]]

    @property
    def nodes(self) -> Set[str]:
        return set(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)


class HostAffinityPartitioner:
    """
    Maps hosts to fetcher nodes.

    A host is placed on the ring the first time it is routed and then stays
    on that node until the node dies; nodes joining later only receive hosts
    that have not been placed yet. Suspended (SUSPECT) nodes keep the hosts
    they already own but receive no new ones.
    """

    def __init__(self, virtual_nodes: int = 64):
        self.ring = HashRing(virtual_nodes)
        self._affinity: Dict[str, str] = {}
        self._suspended: Set[str] = set()
        self.logger = logging.getLogger(__name__)

    def add_node(self, node_id: str):
        self._suspended.discard(node_id)
        self.ring.add(node_id)

    def suspend_node(self, node_id: str):
        if node_id in self.ring:
            self.ring.remove(node_id)
            self._suspended.add(node_id)

    def remove_node(self, node_id: str) -> List[str]:
        """Forget a dead node; returns the hosts it owned."""
        self.ring.remove(node_id)
        self._suspended.discard(node_id)
        orphaned = self.hosts_of(node_id)
        for host in orphaned:
            del self._affinity[host]
        if orphaned:
            self.logger.info(f"Node {node_id} left, {len(orphaned)} hosts will be reassigned")
        return orphaned

    def node_for(self, host: str) -> Optional[str]:
        """Owning node of a host, placing it on an active node if unowned."""
        owner = self._affinity.get(host)
        if owner is not None:
            return owner
        owner = self.ring.get(host)
        if owner is not None:
            self._affinity[host] = owner
        return owner

    def hosts_of(self, node_id: str) -> List[str]:
        """Hosts currently placed on a node."""
        return [host for host, owner in self._affinity.items() if owner == node_id]

    @property
    def active_nodes(self) -> Set[str]:
        return self.ring.nodes
