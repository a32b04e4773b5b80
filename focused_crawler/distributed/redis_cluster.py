"""
Redis-backed cluster coordinator.

Layout under the configured key prefix:
    <prefix>:nodes            hash node_id -> JSON {address, role, heartbeat}
    <prefix>:inbox:<node_id>  list of JSON messages for a node

Nodes refresh their heartbeat every heartbeat_interval. A node whose
heartbeat is older than suspect_timeout is SUSPECT, older than dead_timeout
DEAD. Membership changes are detected by polling the registry.
"""

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..utils.config import ClusterConfig
from .cluster import (
    ClusterCoordinator,
    ClusterNode,
    CoordinatorError,
    MembershipChange,
    MembershipEvent,
    NodeStatus,
)


class RedisClusterCoordinator(ClusterCoordinator):
    """ClusterCoordinator sharing membership and inboxes through Redis."""

    def __init__(self, redis_client: redis.Redis, node_id: str,
                 config: Optional[ClusterConfig] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__(node_id)
        self.redis = redis_client
        self.config = config or ClusterConfig()
        self.clock = clock

        prefix = self.config.key_prefix
        self.nodes_key = f"{prefix}:nodes"
        self.inbox_prefix = f"{prefix}:inbox:"

        self.address: Optional[str] = None
        self.role: Optional[str] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    def _inbox(self, node_id: str) -> str:
        return f"{self.inbox_prefix}{node_id}"

    async def join(self, address: str, role: str):
        self.address = address
        self.role = role
        try:
            await self.heartbeat()
        except RedisError as e:
            raise CoordinatorError(f"Could not join cluster: {e}") from e

        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.logger.info(f"Node {self.node_id} joined as {role} at {address}")

    async def heartbeat(self):
        """Publish this node's registry entry with the current time."""
        entry = json.dumps({
            'address': self.address,
            'role': self.role,
            'heartbeat': self.clock(),
        })
        await self.redis.hset(self.nodes_key, self.node_id, entry)

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                await self.heartbeat()
            except RedisError as e:
                self.logger.warning(f"Heartbeat failed, retrying: {e}")

    async def leave(self):
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None
        try:
            await self.redis.hdel(self.nodes_key, self.node_id)
        except RedisError as e:
            raise CoordinatorError(f"Could not leave cluster: {e}") from e
        self.logger.info(f"Node {self.node_id} left the cluster")

    async def members(self) -> List[ClusterNode]:
        try:
            entries = await self.redis.hgetall(self.nodes_key)
        except RedisError as e:
            raise CoordinatorError(f"Could not read cluster members: {e}") from e

        now = self.clock()
        nodes = []
        for node_id, raw in entries.items():
            try:
                entry = json.loads(raw)
                heartbeat = float(entry['heartbeat'])
                nodes.append(ClusterNode(
                    node_id=node_id,
                    address=entry.get('address') or '',
                    role=entry.get('role') or '',
                    status=self._status_for(now - heartbeat),
                    last_heartbeat=heartbeat,
                ))
            except (ValueError, KeyError, TypeError) as e:
                self.logger.warning(f"Ignoring malformed registry entry for {node_id}: {e}")
        return nodes

    def _status_for(self, age: float) -> NodeStatus:
        if age < self.config.suspect_timeout:
            return NodeStatus.ACTIVE
        if age < self.config.dead_timeout:
            return NodeStatus.SUSPECT
        return NodeStatus.DEAD

    async def membership_changes(self) -> AsyncIterator[MembershipEvent]:
        known: Dict[str, ClusterNode] = {}
        while True:
            try:
                current = {node.node_id: node for node in await self.members()}
            except CoordinatorError as e:
                # keep the last known view until Redis is reachable again
                self.logger.warning(f"Membership poll failed: {e}")
                await asyncio.sleep(self.config.heartbeat_interval)
                continue

            for event in self.diff_membership(known, current):
                yield event
            known = current
            await asyncio.sleep(self.config.heartbeat_interval)

    @staticmethod
    def diff_membership(known: Dict[str, ClusterNode],
                        current: Dict[str, ClusterNode]) -> List[MembershipEvent]:
        """Membership events that turn the known view into the current one."""
        events = []
        for node_id, node in current.items():
            previous = known.get(node_id)
            was_alive = previous is not None and previous.status != NodeStatus.DEAD
            if node.status == NodeStatus.DEAD:
                if was_alive:
                    events.append(MembershipEvent(MembershipChange.LEAVE, node))
            elif not was_alive:
                events.append(MembershipEvent(MembershipChange.JOIN, node))
                if node.status == NodeStatus.SUSPECT:
                    events.append(MembershipEvent(MembershipChange.SUSPECT, node))
            elif node.status != previous.status:
                kind = MembershipChange.SUSPECT if node.status == NodeStatus.SUSPECT \
                    else MembershipChange.ALIVE
                events.append(MembershipEvent(kind, node))

        for node_id, previous in known.items():
            if node_id not in current and previous.status != NodeStatus.DEAD:
                previous.status = NodeStatus.DEAD
                events.append(MembershipEvent(MembershipChange.LEAVE, previous))
        return events

    async def send(self, node_id: str, message: Dict[str, Any]) -> bool:
        try:
            await self.redis.rpush(self._inbox(node_id), json.dumps(message))
        except RedisError as e:
            self.logger.warning(f"Could not send message to {node_id}: {e}")
            return False
        except (TypeError, ValueError) as e:
            raise CoordinatorError(f"Message is not serializable: {e}") from e
        return True

    async def receive_many(self, max_messages: int, timeout: float) -> List[Dict[str, Any]]:
        inbox = self._inbox(self.node_id)
        try:
            raw_messages = await self.redis.lpop(inbox, max_messages) or []
            if not raw_messages:
                popped = await self.redis.blpop([inbox], timeout=timeout)
                if popped is None:
                    return []
                raw_messages = [popped[1]]
                if max_messages > 1:
                    raw_messages.extend(await self.redis.lpop(inbox, max_messages - 1) or [])
        except RedisError as e:
            raise CoordinatorError(f"Could not read inbox: {e}") from e

        messages = []
        for raw in raw_messages:
            try:
                messages.append(json.loads(raw))
            except ValueError as e:
                self.logger.warning(f"Dropping undecodable message: {e}")
        return messages

    async def clear_inbox(self):
        """Drop messages left over from a previous run of this node."""
        try:
            await self.redis.delete(self._inbox(self.node_id))
        except RedisError as e:
            raise CoordinatorError(f"Could not clear inbox: {e}") from e
