"""
Crawl loop: drains the frontier through a downloader, scores what comes back
and feeds newly discovered links into the frontier.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Set

from .downloader import Downloader
from .frontier import FrontierPersistenceError, FrontierStore
from .models import FetchResult, FetchStatus, InsertResult, Link, MAX_SCORE
from .relevance import LinkContext, PageContext, RelevanceOracle
from ..storage.target_storage import TargetPage, TargetStorage
from ..utils.config import CrawlerConfig
from ..utils.monitoring import CrawlMetrics


class CrawlState(Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


@dataclass
class CrawlStats:
    """Statistics for crawl operations."""
    start_time: float
    pages_fetched: int = 0
    pages_stored: int = 0
    links_inserted: int = 0
    errors: int = 0
    batches_dispatched: int = 0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    @property
    def pages_per_minute(self) -> float:
        elapsed_minutes = self.elapsed_time / 60
        return self.pages_fetched / elapsed_minutes if elapsed_minutes > 0 else 0


class CrawlLoop:
    """
    Pulls batches from the frontier and hands them to a Downloader.

    The loop does not care whether the downloader fetches locally or
    routes work to fetcher nodes. Several batches may be in flight at once,
    bounded by max_inflight_batches; each is harvested by its own task.
    """

    def __init__(self, frontier: FrontierStore, downloader: Downloader,
                 oracle: RelevanceOracle, target_storage: Optional[TargetStorage] = None,
                 config: Optional[CrawlerConfig] = None,
                 metrics: Optional[CrawlMetrics] = None):
        self.frontier = frontier
        self.downloader = downloader
        self.oracle = oracle
        self.target_storage = target_storage
        self.config = config or CrawlerConfig()
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

        self.state = CrawlState.IDLE
        self.stats = CrawlStats(start_time=time.time())

        self._slots = asyncio.Semaphore(self.config.max_inflight_batches)
        self._harvests: Set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()
        self._stopped = asyncio.Event()
        self._fatal_error: Optional[BaseException] = None

    async def add_seeds(self, urls: Iterable[str]) -> Dict[InsertResult, int]:
        """Insert seed URLs with maximum priority."""
        counts = await self.frontier.insert_many(urls, score=MAX_SCORE, depth=0)
        self.logger.info(f"Added {counts[InsertResult.INSERTED]} seed URLs to frontier "
                         f"({counts[InsertResult.UPDATED]} updated, "
                         f"{counts[InsertResult.REJECTED]} rejected)")
        return counts

    async def run(self):
        """
        Run until the frontier is exhausted, a limit is reached or stop() is
        called. In-flight batches are always drained before returning.

        Raises:
            FrontierPersistenceError: the frontier could not be persisted
        """
        if self.state != CrawlState.IDLE:
            raise RuntimeError(f"Crawl loop cannot run from state {self.state.value}")

        self.state = CrawlState.RUNNING
        self.stats = CrawlStats(start_time=time.time())
        reporter = asyncio.create_task(self._stats_reporter())
        self.logger.info("Crawl loop started")

        try:
            await self._dispatch_loop()
        finally:
            self.state = CrawlState.STOPPING
            await self._drain()
            reporter.cancel()
            await asyncio.gather(reporter, return_exceptions=True)
            self.state = CrawlState.STOPPED
            self._stopped.set()
            await self._log_final_stats()

        if self._fatal_error is not None:
            raise self._fatal_error

    async def _dispatch_loop(self):
        while self.state == CrawlState.RUNNING:
            await self._slots.acquire()
            # finished harvests have counted their pages by now
            if self.state != CrawlState.RUNNING or self._limits_reached():
                self._slots.release()
                break

            try:
                batch = await self.frontier.next_batch(self.config.batch_size)
            except BaseException:
                self._slots.release()
                raise

            if not batch:
                self._slots.release()
                if (not self._harvests and not self.config.idle_wait
                        and not await self.frontier.has_pending()):
                    self.logger.info("Frontier exhausted, stopping")
                    break
                await self._wait_for_work()
                continue

            self.stats.batches_dispatched += 1
            task = asyncio.create_task(self._harvest(batch))
            self._harvests.add(task)
            task.add_done_callback(self._harvest_done)
            if self.metrics:
                self.metrics.inflight_batches.set(len(self._harvests))

    def _limits_reached(self) -> bool:
        if self.config.max_pages and self.stats.pages_fetched >= self.config.max_pages:
            self.logger.info(f"Reached max pages limit: {self.config.max_pages}")
            return True
        if self.config.max_duration and self.stats.elapsed_time >= self.config.max_duration:
            self.logger.info(f"Reached max duration: {self.config.max_duration} seconds")
            return True
        return False

    async def _wait_for_work(self):
        """Idle until a harvest finishes, stop() is called or the poll interval passes."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.poll_interval)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    def _harvest_done(self, task: asyncio.Task):
        self._harvests.discard(task)
        self._slots.release()
        self._wakeup.set()
        if self.metrics:
            self.metrics.inflight_batches.set(len(self._harvests))

    async def _harvest(self, batch: Iterable[Link]):
        pending = {link.fingerprint: link for link in batch}
        try:
            for link in pending.values():
                await self.frontier.mark_fetching(link.fingerprint)

            try:
                async for result in self.downloader.fetch(list(pending.values())):
                    link = pending.pop(result.fingerprint, None)
                    if link is None:
                        self.logger.debug(f"Ignoring result for unknown link {result.url}")
                        continue
                    await self._process_result(link, result)
            except FrontierPersistenceError:
                raise
            except Exception as e:
                self.logger.error(f"Downloader failed on a batch of {len(pending)} links: {e}",
                                  exc_info=True)

            # anything the downloader did not report on goes back to the frontier
            for fingerprint in pending:
                await self.frontier.release(fingerprint)

        except FrontierPersistenceError as e:
            self._fail(e)

    async def _process_result(self, link: Link, result: FetchResult):
        if result.status != FetchStatus.DEFERRED:
            self.stats.pages_fetched += 1

        try:
            if result.status == FetchStatus.SUCCESS:
                await self._handle_page(link, result)
            elif result.status == FetchStatus.DEFERRED:
                self.logger.debug(f"Deferred {link.url}: {result.error}")
                await self.frontier.release(link.fingerprint, delay=self.config.poll_interval)
            else:
                self.stats.errors += 1
                self.logger.info(f"Failed to fetch {link.url}: {result.error}")
                await self.frontier.mark_failed(link.fingerprint, retryable=result.retryable)
        except FrontierPersistenceError:
            raise
        except Exception as e:
            self.stats.errors += 1
            self.logger.error(f"Error processing {link.url}: {e}", exc_info=True)
            await self.frontier.mark_failed(link.fingerprint, retryable=True)

    async def _handle_page(self, link: Link, result: FetchResult):
        page_score = self.oracle.score(link.url, PageContext(
            url=link.url,
            content=result.content,
            content_type=result.content_type,
            depth=link.depth,
        ))
        relevant = page_score >= self.config.relevance_threshold

        if relevant and self.target_storage is not None:
            stored = await self.target_storage.store(TargetPage(
                url=link.url,
                fingerprint=link.fingerprint,
                relevance=page_score,
                depth=link.depth,
                content=result.content,
                content_type=result.content_type,
                outbound_links=[outbound.url for outbound in result.outbound_links],
            ))
            if stored:
                self.stats.pages_stored += 1
                if self.metrics:
                    self.metrics.record_page_stored()

        child_depth = link.depth + 1
        if child_depth <= self.config.max_depth:
            for outbound in result.outbound_links:
                link_score = self.oracle.score(outbound.url, LinkContext(
                    url=outbound.url,
                    anchor_text=outbound.anchor_text,
                    parent_url=link.url,
                    parent_score=page_score,
                    depth=child_depth,
                ))
                inserted = await self.frontier.insert(outbound.url, link_score, child_depth)
                if inserted == InsertResult.INSERTED:
                    self.stats.links_inserted += 1
                if self.metrics:
                    self.metrics.record_insert(inserted.value)

        # children are persisted before the parent is acknowledged
        await self.frontier.mark_done(link.fingerprint,
                                      outcome="relevant" if relevant else "irrelevant")
        self.logger.debug(f"Processed {link.url} (score={page_score:.3f}, "
                          f"{len(result.outbound_links)} links)")

    def _fail(self, error: BaseException):
        if self._fatal_error is None:
            self.logger.error(f"Fatal frontier error, halting crawl: {error}")
            self._fatal_error = error
        self.state = CrawlState.STOPPING
        self._wakeup.set()

    async def _drain(self):
        if self._harvests:
            self.logger.info(f"Waiting for {len(self._harvests)} in-flight batches")
            await asyncio.gather(*list(self._harvests), return_exceptions=True)

    def request_stop(self):
        """Begin a graceful stop; safe to call from a signal handler."""
        if self.state == CrawlState.RUNNING:
            self.logger.info("Stopping crawl loop...")
            self.state = CrawlState.STOPPING
            self._wakeup.set()

    async def stop(self):
        """Stop dispatching and wait until in-flight batches are harvested."""
        if self.state == CrawlState.IDLE:
            self.state = CrawlState.STOPPED
            self._stopped.set()
            return
        self.request_stop()
        await self._stopped.wait()

    async def _stats_reporter(self):
        """Periodically log crawl statistics."""
        while True:
            await asyncio.sleep(self.config.stats_interval)
            try:
                await self._log_current_stats()
            except FrontierPersistenceError as e:
                self.logger.warning(f"Could not read frontier stats: {e}")

    async def _log_current_stats(self):
        frontier_stats = await self.frontier.get_stats()
        if self.metrics:
            self.metrics.frontier_pending.set(frontier_stats['ready'] + frontier_stats['delayed'])
        self.logger.info(
            f"Crawl Progress: "
            f"Fetched={self.stats.pages_fetched}, "
            f"Stored={self.stats.pages_stored}, "
            f"Ready={frontier_stats['ready']}, "
            f"Delayed={frontier_stats['delayed']}, "
            f"InFlight={frontier_stats['in_flight']}, "
            f"Errors={self.stats.errors}, "
            f"Rate={self.stats.pages_per_minute:.1f} pages/min"
        )

    async def _log_final_stats(self):
        self.logger.info("=== CRAWL COMPLETED ===")
        self.logger.info(f"Pages fetched: {self.stats.pages_fetched}")
        self.logger.info(f"Pages stored: {self.stats.pages_stored}")
        self.logger.info(f"Links inserted: {self.stats.links_inserted}")
        self.logger.info(f"Errors: {self.stats.errors}")
        self.logger.info(f"Total time: {self.stats.elapsed_time:.2f} seconds")
        if self._fatal_error is None:
            try:
                self.logger.info(f"Frontier: {await self.frontier.get_stats()}")
            except FrontierPersistenceError as e:
                self.logger.warning(f"Could not read frontier stats: {e}")

    def get_stats(self) -> Dict:
        """Get current crawl statistics."""
        return {
            'state': self.state.value,
            'pages_fetched': self.stats.pages_fetched,
            'pages_stored': self.stats.pages_stored,
            'links_inserted': self.stats.links_inserted,
            'errors': self.stats.errors,
            'batches_dispatched': self.stats.batches_dispatched,
            'inflight_batches': len(self._harvests),
            'elapsed_time': self.stats.elapsed_time,
            'pages_per_minute': self.stats.pages_per_minute,
        }
