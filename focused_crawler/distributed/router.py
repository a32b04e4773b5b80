"""
Distributed work router: a Downloader that ships links to fetcher nodes.

Each link is assigned to the fetcher node owning its host, under a lease. A
result is accepted only if it matches the current assignment of its link
(same node and lease); anything else is a late or duplicate result and is
discarded. Assignments whose node dies or whose lease runs out come back to
the crawl loop as retryable failures.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from ..crawler.downloader import Downloader
from ..crawler.models import FetchResult, Link
from ..utils.config import ClusterConfig
from ..utils.monitoring import CrawlMetrics
from .cluster import (
    ROLE_COORDINATOR,
    ROLE_FETCHER,
    ClusterCoordinator,
    ClusterNode,
    CoordinatorError,
    MembershipChange,
    MembershipEvent,
    NodeStatus,
)
from .messages import RESULT, Assignment, assign_message, parse_result
from .partitioner import HostAffinityPartitioner


class _RoutedBatch:
    """Result channel of one fetch() call."""

    def __init__(self, size: int):
        self.results: asyncio.Queue = asyncio.Queue(maxsize=max(size, 1))

    def deliver(self, result: FetchResult):
        self.results.put_nowait(result)


class DistributedWorkRouter(Downloader):
    """Routes batches to fetcher nodes and correlates their results."""

    def __init__(self, coordinator: ClusterCoordinator,
                 config: Optional[ClusterConfig] = None,
                 metrics: Optional[CrawlMetrics] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.coordinator = coordinator
        self.config = config or ClusterConfig()
        self.metrics = metrics
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.nodes: Dict[str, ClusterNode] = {}
        self.partitioner = HostAffinityPartitioner(self.config.virtual_nodes)
        self._assignments: Dict[str, Tuple[Assignment, _RoutedBatch]] = {}
        self._tasks: List[asyncio.Task] = []
        self._started = False

        self.stats = {
            'assigned': 0,
            'completed': 0,
            'deferred': 0,
            'lost': 0,
            'stale_results': 0,
        }

    async def start(self):
        """Join the cluster and start tracking membership and results."""
        if self._started:
            return
        await self.coordinator.join(self.config.address, ROLE_COORDINATOR)
        for node in await self.coordinator.members():
            if node.status != NodeStatus.DEAD:
                self._apply_membership(MembershipEvent(MembershipChange.JOIN, node))

        self._tasks = [
            asyncio.create_task(self._membership_watcher()),
            asyncio.create_task(self._result_receiver()),
            asyncio.create_task(self._lease_reaper()),
        ]
        self._started = True
        self.logger.info(f"Router {self.coordinator.node_id} started with "
                         f"{len(self.partitioner.active_nodes)} active fetcher nodes")

    async def close(self):
        """Stop background tasks, give back outstanding work and leave the cluster."""
        if not self._started:
            return
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        for fingerprint in list(self._assignments):
            assignment, batch = self._assignments.pop(fingerprint)
            batch.deliver(FetchResult.deferred(assignment.link, "Router shutting down"))

        try:
            await self.coordinator.leave()
        except CoordinatorError as e:
            self.logger.warning(f"Error leaving cluster: {e}")
        self._started = False
        self.logger.info("Router closed")

    async def fetch(self, batch: Sequence[Link]) -> AsyncIterator[FetchResult]:
        if not batch:
            return
        if not self._started:
            raise RuntimeError("DistributedWorkRouter.start() must be called before fetch()")

        routed = _RoutedBatch(len(batch))
        try:
            for link in batch:
                immediate = await self._assign(link, routed)
                if immediate is not None:
                    routed.deliver(immediate)

            for _ in range(len(batch)):
                yield await routed.results.get()
        finally:
            # drop assignments of a batch nobody is listening to anymore
            for fingerprint, (_, owner) in list(self._assignments.items()):
                if owner is routed:
                    del self._assignments[fingerprint]

    async def _assign(self, link: Link, routed: _RoutedBatch) -> Optional[FetchResult]:
        """Send one assignment. Returns a result right away if the link cannot be routed."""
        if link.fingerprint in self._assignments:
            self.logger.warning(f"{link.url} is already assigned, deferring")
            return self._defer(link, "Already assigned")

        node_id = self.partitioner.node_for(link.host)
        if node_id is None:
            return self._defer(link, "No active fetcher nodes")

        now = self.clock()
        assignment = Assignment(
            link=link,
            assigned_node=node_id,
            assigned_at=now,
            lease_expires_at=now + self.config.lease_timeout,
        )
        self._assignments[link.fingerprint] = (assignment, routed)

        try:
            sent = await self.coordinator.send(
                node_id, assign_message(assignment, self.coordinator.node_id)
            )
        except CoordinatorError as e:
            self.logger.warning(f"Could not send assignment to {node_id}: {e}")
            sent = False

        if not sent:
            self._assignments.pop(link.fingerprint, None)
            return self._defer(link, f"Could not reach node {node_id}")

        self.stats['assigned'] += 1
        self.logger.debug(f"Assigned {link.url} to {node_id} (lease {assignment.lease_id})")
        return None

    def _defer(self, link: Link, reason: str) -> FetchResult:
        self.stats['deferred'] += 1
        return FetchResult.deferred(link, reason)

    async def _result_receiver(self):
        while True:
            try:
                messages = await self.coordinator.receive_many(
                    self.config.node_batch_size, timeout=self.config.lease_check_interval
                )
            except CoordinatorError as e:
                self.logger.warning(f"Error receiving results: {e}")
                await asyncio.sleep(self.config.lease_check_interval)
                continue

            for message in messages:
                self.handle_message(message)

    def handle_message(self, message: Dict):
        """Correlate an inbound result with its assignment."""
        if message.get('type') != RESULT:
            self.logger.debug(f"Ignoring message of type {message.get('type')!r}")
            return
        try:
            result, lease_id, sender = parse_result(message)
        except CoordinatorError as e:
            self.logger.warning(f"Dropping malformed result: {e}")
            return

        entry = self._assignments.get(result.fingerprint)
        if (entry is None or entry[0].assigned_node != sender
                or entry[0].lease_id != lease_id):
            self.stats['stale_results'] += 1
            if self.metrics:
                self.metrics.record_stale_result()
            self.logger.debug(f"Discarding stale result for {result.url} from {sender}")
            return

        assignment, routed = self._assignments.pop(result.fingerprint)
        result.node_id = sender
        self.stats['completed'] += 1
        routed.deliver(result)

    async def _lease_reaper(self):
        while True:
            await asyncio.sleep(self.config.lease_check_interval)
            self.expire_leases()

    def expire_leases(self) -> int:
        """Fail every assignment whose lease has run out."""
        now = self.clock()
        expired = [fingerprint for fingerprint, (assignment, _) in self._assignments.items()
                   if assignment.expired(now)]
        for fingerprint in expired:
            self._lose(fingerprint, "lease_expired")
        return len(expired)

    def _lose(self, fingerprint: str, reason: str):
        assignment, routed = self._assignments.pop(fingerprint)
        self.stats['lost'] += 1
        if self.metrics:
            self.metrics.record_assignment_lost(reason)
        self.logger.info(f"Assignment of {assignment.link.url} to {assignment.assigned_node} "
                         f"lost ({reason})")
        routed.deliver(FetchResult.failed(
            assignment.link, f"Assignment lost: {reason}", retryable=True
        ))

    async def _membership_watcher(self):
        while True:
            try:
                async for event in self.coordinator.membership_changes():
                    self._apply_membership(event)
            except CoordinatorError as e:
                self.logger.warning(f"Membership stream failed, resubscribing: {e}")
                await asyncio.sleep(self.config.heartbeat_interval)

    def _apply_membership(self, event: MembershipEvent):
        node = event.node
        if node.node_id == self.coordinator.node_id or node.role != ROLE_FETCHER:
            return

        if event.kind in (MembershipChange.JOIN, MembershipChange.ALIVE):
            node.status = NodeStatus.ACTIVE
            self.nodes[node.node_id] = node
            self.partitioner.add_node(node.node_id)
            if event.kind == MembershipChange.JOIN:
                self.logger.info(f"Fetcher node joined: {node.node_id} ({node.address})")

        elif event.kind == MembershipChange.SUSPECT:
            node.status = NodeStatus.SUSPECT
            self.nodes[node.node_id] = node
            self.partitioner.suspend_node(node.node_id)
            kept = self.partitioner.hosts_of(node.node_id)
            self.logger.warning(f"Fetcher node suspect: {node.node_id}, keeping {len(kept)} hosts "
                                f"but receiving no new ones")

        elif event.kind == MembershipChange.LEAVE:
            node.status = NodeStatus.DEAD
            self.nodes[node.node_id] = node
            orphaned = self.partitioner.remove_node(node.node_id)
            lost = [fingerprint for fingerprint, (assignment, _) in self._assignments.items()
                    if assignment.assigned_node == node.node_id]
            for fingerprint in lost:
                self._lose(fingerprint, "node_dead")
            self.logger.warning(f"Fetcher node dead: {node.node_id}, {len(lost)} assignments "
                                f"returned, {len(orphaned)} hosts unplaced")

        if self.metrics:
            self.metrics.active_nodes.set(len(self.partitioner.active_nodes))

    @property
    def active_nodes(self) -> List[str]:
        return sorted(self.partitioner.active_nodes)

    def outstanding(self) -> int:
        return len(self._assignments)

    def get_stats(self) -> Dict:
        stats = self.stats.copy()
        stats['outstanding'] = len(self._assignments)
        stats['active_nodes'] = len(self.partitioner.active_nodes)
        return stats
