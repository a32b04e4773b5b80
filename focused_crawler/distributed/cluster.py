"""
Cluster membership and messaging.

ClusterCoordinator is the interface the router and the fetcher nodes depend
on. LocalCluster implements it in-process over asyncio queues; the Redis
implementation lives in redis_cluster.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional


ROLE_COORDINATOR = "coordinator"
ROLE_FETCHER = "fetcher"


class CoordinatorError(Exception):
    """Cluster transport or message format failure."""
    pass


class NodeStatus(Enum):
    ACTIVE = "ACTIVE"
    SUSPECT = "SUSPECT"
    DEAD = "DEAD"


class MembershipChange(Enum):
    JOIN = "JOIN"
    SUSPECT = "SUSPECT"
    ALIVE = "ALIVE"
    LEAVE = "LEAVE"


@dataclass
class ClusterNode:
    """A process taking part in a distributed crawl."""
    node_id: str
    address: str
    role: str
    status: NodeStatus = NodeStatus.ACTIVE
    last_heartbeat: float = 0.0


@dataclass
class MembershipEvent:
    kind: MembershipChange
    node: ClusterNode


class ClusterCoordinator(ABC):
    """
    Membership and best-effort messaging for one node of the cluster.

    Messages are JSON-compatible dictionaries. Membership iterators are
    infinite; calling membership_changes() again starts a fresh sequence
    that first reports every live member as a JOIN.
    """

    def __init__(self, node_id: str):
        self.node_id = node_id
        self.logger = logging.getLogger(__name__)

    @abstractmethod
    async def join(self, address: str, role: str):
        """Register this node and start announcing it."""

    @abstractmethod
    async def leave(self):
        """Deregister this node."""

    @abstractmethod
    async def members(self) -> List[ClusterNode]:
        """Current view of every known node, including DEAD ones."""

    @abstractmethod
    def membership_changes(self) -> AsyncIterator[MembershipEvent]:
        """Lazy, infinite sequence of membership changes."""

    async def join_notifications(self) -> AsyncIterator[ClusterNode]:
        async for event in self.membership_changes():
            if event.kind == MembershipChange.JOIN:
                yield event.node

    async def departure_notifications(self) -> AsyncIterator[ClusterNode]:
        async for event in self.membership_changes():
            if event.kind == MembershipChange.LEAVE:
                yield event.node

    @abstractmethod
    async def send(self, node_id: str, message: Dict[str, Any]) -> bool:
        """Deliver a message to one node. Returns False if it was dropped."""

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Send a message to every other live node; returns the number delivered."""
        delivered = 0
        for node in await self.members():
            if node.node_id != self.node_id and node.status != NodeStatus.DEAD:
                if await self.send(node.node_id, message):
                    delivered += 1
        return delivered

    @abstractmethod
    async def receive_many(self, max_messages: int, timeout: float) -> List[Dict[str, Any]]:
        """
        Wait up to timeout for the first message addressed to this node, then
        take whatever else is already waiting, up to max_messages.
        """

    async def receive(self, timeout: float) -> Optional[Dict[str, Any]]:
        messages = await self.receive_many(1, timeout)
        return messages[0] if messages else None


class LocalCluster:
    """In-process hub shared by LocalClusterCoordinator instances."""

    def __init__(self, inbox_capacity: int = 1000):
        self.inbox_capacity = inbox_capacity
        self.nodes: Dict[str, ClusterNode] = {}
        self.inboxes: Dict[str, asyncio.Queue] = {}
        self._subscribers: List[asyncio.Queue] = []
        self.logger = logging.getLogger(__name__)

    def coordinator(self, node_id: str) -> 'LocalClusterCoordinator':
        return LocalClusterCoordinator(self, node_id)

    def register(self, node: ClusterNode):
        self.nodes[node.node_id] = node
        self.inboxes.setdefault(node.node_id, asyncio.Queue(maxsize=self.inbox_capacity))
        self._publish(MembershipChange.JOIN, node)

    def deregister(self, node_id: str):
        node = self.nodes.get(node_id)
        if node is None or node.status == NodeStatus.DEAD:
            return
        node.status = NodeStatus.DEAD
        self._publish(MembershipChange.LEAVE, node)

    def mark_suspect(self, node_id: str):
        """Report missed heartbeats for a node."""
        node = self.nodes[node_id]
        if node.status == NodeStatus.ACTIVE:
            node.status = NodeStatus.SUSPECT
            self._publish(MembershipChange.SUSPECT, node)

    def mark_alive(self, node_id: str):
        node = self.nodes[node_id]
        if node.status == NodeStatus.SUSPECT:
            node.status = NodeStatus.ACTIVE
            self._publish(MembershipChange.ALIVE, node)

    def kill(self, node_id: str):
        """Declare a node dead without its cooperation, as a missed-heartbeat timeout would."""
        self.deregister(node_id)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, kind: MembershipChange, node: ClusterNode):
        event = MembershipEvent(kind, replace(node))
        for queue in self._subscribers:
            queue.put_nowait(event)
        self.logger.debug(f"Membership {kind.value}: {node.node_id}")


class LocalClusterCoordinator(ClusterCoordinator):
    """ClusterCoordinator backed by a LocalCluster hub."""

    def __init__(self, cluster: LocalCluster, node_id: str):
        super().__init__(node_id)
        self.cluster = cluster

    async def join(self, address: str, role: str):
        self.cluster.register(ClusterNode(
            node_id=self.node_id,
            address=address,
            role=role,
            last_heartbeat=time.time(),
        ))

    async def leave(self):
        self.cluster.deregister(self.node_id)

    async def members(self) -> List[ClusterNode]:
        return [replace(node) for node in self.cluster.nodes.values()]

    async def membership_changes(self) -> AsyncIterator[MembershipEvent]:
        queue = self.cluster.subscribe()
        try:
            for node in await self.members():
                if node.status != NodeStatus.DEAD:
                    yield MembershipEvent(MembershipChange.JOIN, node)
                if node.status == NodeStatus.SUSPECT:
                    yield MembershipEvent(MembershipChange.SUSPECT, node)
            while True:
                yield await queue.get()
        finally:
            self.cluster.unsubscribe(queue)

    async def send(self, node_id: str, message: Dict[str, Any]) -> bool:
        node = self.cluster.nodes.get(node_id)
        inbox = self.cluster.inboxes.get(node_id)
        if node is None or inbox is None or node.status == NodeStatus.DEAD:
            self.logger.debug(f"Dropping message for unavailable node {node_id}")
            return False
        try:
            inbox.put_nowait(message)
        except asyncio.QueueFull:
            self.logger.warning(f"Inbox of {node_id} is full, dropping message")
            return False
        return True

    async def receive_many(self, max_messages: int, timeout: float) -> List[Dict[str, Any]]:
        inbox = self.cluster.inboxes.setdefault(
            self.node_id, asyncio.Queue(maxsize=self.cluster.inbox_capacity)
        )
        try:
            first = await asyncio.wait_for(inbox.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return []

        messages = [first]
        while len(messages) < max_messages and not inbox.empty():
            messages.append(inbox.get_nowait())
        return messages
