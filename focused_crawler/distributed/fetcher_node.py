"""
Fetcher node: receives assignments from the router, fetches them with a
local FetchExecutor and sends every result back to the assigning node.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

from ..crawler.fetcher import FetchExecutor
from ..crawler.models import FetchResult, Link
from ..utils.config import ClusterConfig
from ..utils.logger import get_crawler_logger
from .cluster import ROLE_FETCHER, ClusterCoordinator, CoordinatorError
from .messages import ASSIGN, parse_assign, result_message


class FetcherNode:
    """A worker process of a distributed crawl."""

    def __init__(self, coordinator: ClusterCoordinator, executor: FetchExecutor,
                 config: Optional[ClusterConfig] = None):
        self.coordinator = coordinator
        self.executor = executor
        self.config = config or ClusterConfig()
        self.logger = get_crawler_logger(__name__, node_id=coordinator.node_id, role=ROLE_FETCHER)

        self.is_running = False
        self._loop_running = False
        self._loop_exited = asyncio.Event()
        self._batches: Set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(self.config.max_node_batches)

        self.stats = {
            'assignments_received': 0,
            'results_sent': 0,
            'results_dropped': 0,
            'malformed_messages': 0,
        }

    async def start(self):
        await self.executor.start()
        await self.coordinator.join(self.config.address, ROLE_FETCHER)
        self.is_running = True
        self.logger.info(f"Fetcher node {self.coordinator.node_id} joined the cluster")

    async def run(self):
        """Process assignments until stop() is called."""
        if not self.is_running:
            await self.start()

        self._loop_running = True
        self._loop_exited.clear()
        try:
            while self.is_running:
                batch = await self._collect_batch()
                if not batch:
                    continue

                await self._slots.acquire()
                task = asyncio.create_task(self._process_batch(batch))
                self._batches.add(task)
                task.add_done_callback(self._batch_done)
        finally:
            self._loop_running = False
            self._loop_exited.set()

    def _batch_done(self, task: asyncio.Task):
        self._batches.discard(task)
        self._slots.release()

    async def _collect_batch(self) -> List[Tuple[Link, str, str]]:
        try:
            messages = await self.coordinator.receive_many(
                self.config.node_batch_size, timeout=self.config.lease_check_interval
            )
        except CoordinatorError as e:
            self.logger.warning(f"Error receiving assignments: {e}")
            await asyncio.sleep(self.config.lease_check_interval)
            return []

        batch = []
        for message in messages:
            if message.get('type') != ASSIGN:
                self.logger.debug(f"Ignoring message of type {message.get('type')!r}")
                continue
            try:
                batch.append(parse_assign(message))
            except CoordinatorError as e:
                self.stats['malformed_messages'] += 1
                self.logger.warning(f"Dropping malformed assignment: {e}")
        self.stats['assignments_received'] += len(batch)
        return batch

    async def _process_batch(self, batch: List[Tuple[Link, str, str]]):
        routes: Dict[str, Tuple[str, str]] = {
            link.fingerprint: (lease_id, sender) for link, lease_id, sender in batch
        }
        links = [link for link, _, _ in batch]

        try:
            async for result in self.executor.fetch(links):
                lease_id, sender = routes[result.fingerprint]
                result.node_id = self.coordinator.node_id
                await self._reply(sender, result, lease_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # unreported links come back to the router through lease expiry
            self.logger.error(f"Error processing batch of {len(links)} links: {e}", exc_info=True)

    async def _reply(self, node_id: str, result: FetchResult, lease_id: str):
        message = result_message(result, lease_id, self.coordinator.node_id)
        try:
            sent = await self.coordinator.send(node_id, message)
        except CoordinatorError as e:
            self.logger.warning(f"Error sending result to {node_id}: {e}")
            sent = False
        if sent:
            self.stats['results_sent'] += 1
        else:
            self.stats['results_dropped'] += 1
            self.logger.log_link_event(logging.DEBUG, result.fingerprint, result.url,
                                       f"Result dropped, {node_id} unreachable")

    async def stop(self):
        """Finish in-flight batches, then leave the cluster."""
        self.is_running = False
        if self._loop_running:
            await self._loop_exited.wait()
        if self._batches:
            self.logger.info(f"Waiting for {len(self._batches)} in-flight batches")
            await asyncio.gather(*list(self._batches), return_exceptions=True)

        try:
            await self.coordinator.leave()
        except CoordinatorError as e:
            self.logger.warning(f"Error leaving cluster: {e}")
        await self.executor.close()
        self.logger.info(f"Fetcher node {self.coordinator.node_id} stopped")

    def get_stats(self) -> Dict:
        stats = self.stats.copy()
        stats['inflight_batches'] = len(self._batches)
        stats['fetcher'] = self.executor.get_stats()
        return stats
