"""
Local fetch executor: a bounded pool of aiohttp workers with per-host
politeness, robots.txt support and fetch-outcome classification.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Sequence
from urllib.parse import urljoin, urlparse
from urllib.robotparser import RobotFileParser

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from .downloader import Downloader
from .models import FetchResult, FetchStatus, Link
from .parser import LinkExtractor
from ..utils.config import FetcherConfig, FrontierConfig
from ..utils.monitoring import CrawlMetrics


TEXT_CONTENT_TYPES = (
    'text/html',
    'text/plain',
    'text/xml',
    'application/xml',
    'application/xhtml+xml',
)
HTML_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')


class RobotsChecker:
    """Manages robots.txt checking for origins."""

    def __init__(self, user_agent: str, cache_ttl: float = 3600):
        self.user_agent = user_agent
        self.robots_cache: Dict[str, RobotFileParser] = {}
        self.robots_check_time: Dict[str, float] = {}
        self.cache_ttl = cache_ttl
        self.logger = logging.getLogger(__name__)

    def _get_origin(self, url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}"

    async def can_fetch(self, url: str, session: ClientSession) -> bool:
        """Check if URL can be fetched according to robots.txt."""
        origin = self._get_origin(url)
        current_time = time.monotonic()

        if (origin in self.robots_cache and
                current_time - self.robots_check_time[origin] < self.cache_ttl):
            return self.robots_cache[origin].can_fetch(self.user_agent, url)

        robots_url = urljoin(origin, '/robots.txt')
        rp = RobotFileParser()
        rp.set_url(robots_url)
        try:
            async with session.get(robots_url, timeout=ClientTimeout(total=10)) as response:
                if response.status == 200:
                    rp.parse((await response.text()).splitlines())
                else:
                    # A missing robots.txt allows everything
                    rp.parse([])
        except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError) as e:
            self.logger.warning(f"Could not fetch robots.txt for {origin}: {e}")
            return True

        self.robots_cache[origin] = rp
        self.robots_check_time[origin] = current_time
        return rp.can_fetch(self.user_agent, url)


class HostThrottle:
    """
    Per-host concurrency cap and politeness delay, local to one process.

    In distributed mode every host is owned by exactly one fetcher node, so
    this is the only place politeness has to be enforced on that node.
    """

    def __init__(self, per_host_concurrency: int, politeness_delay: float):
        self.per_host_concurrency = per_host_concurrency
        self.politeness_delay = politeness_delay
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._next_allowed: Dict[str, float] = {}

    @asynccontextmanager
    async def slot(self, host: str):
        semaphore = self._semaphores.setdefault(
            host, asyncio.Semaphore(self.per_host_concurrency)
        )
        async with semaphore:
            wait = self._next_allowed.get(host, 0.0) - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            try:
                yield
            finally:
                self._next_allowed[host] = time.monotonic() + self.politeness_delay

    def next_allowed(self, host: str) -> float:
        return self._next_allowed.get(host, 0.0)


class _FetchJob:
    """Result channel of one fetch() call."""

    def __init__(self, size: int):
        # One result per link, so put_nowait never overflows
        self.results: asyncio.Queue = asyncio.Queue(maxsize=max(size, 1))
        self.abandoned = False

    def deliver(self, result: FetchResult):
        if not self.abandoned:
            self.results.put_nowait(result)


class FetchExecutor(Downloader):
    """
    Fetches links with a fixed pool of workers fed through a bounded queue.

    Per-host concurrency and politeness come from the frontier configuration
    so that local throttling matches the host schedule kept by the frontier.
    """

    def __init__(self, config: Optional[FetcherConfig] = None,
                 host_limits: Optional[FrontierConfig] = None,
                 link_extractor: Optional[LinkExtractor] = None,
                 metrics: Optional[CrawlMetrics] = None,
                 node_id: Optional[str] = None):
        self.config = config or FetcherConfig()
        self.host_limits = host_limits or FrontierConfig()
        self.link_extractor = link_extractor or LinkExtractor(
            allowed_domains=self.config.allowed_domains,
            blocked_domains=self.config.blocked_domains,
        )
        self.metrics = metrics
        self.node_id = node_id
        self.logger = logging.getLogger(__name__)

        self.robots_checker = RobotsChecker(self.config.user_agent) \
            if self.config.respect_robots_txt else None
        self.throttle = HostThrottle(self.host_limits.per_host_concurrency,
                                     self.host_limits.politeness_delay)

        self.session: Optional[ClientSession] = None
        self._work_queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'robots_blocked': 0,
            'total_bytes_downloaded': 0
        }

    async def start(self):
        """Open the HTTP session and start the worker pool."""
        if self.session is not None:
            return

        self.session = aiohttp.ClientSession(
            timeout=ClientTimeout(total=self.config.request_timeout),
            headers={'User-Agent': self.config.user_agent},
            connector=aiohttp.TCPConnector(
                limit=self.config.max_concurrent_requests * 2,
                limit_per_host=self.host_limits.per_host_concurrency,
                ttl_dns_cache=300,
            )
        )
        self._work_queue = asyncio.Queue(maxsize=self.config.queue_capacity)
        self._workers = [
            asyncio.create_task(self._worker(f"fetch-worker-{i}"))
            for i in range(self.config.max_concurrent_requests)
        ]
        self.logger.info(f"FetchExecutor started with {len(self._workers)} workers")

    async def close(self):
        """Stop the workers and close the HTTP session."""
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("FetchExecutor closed")

    async def fetch(self, batch: Sequence[Link]) -> AsyncIterator[FetchResult]:
        if not batch:
            return
        if self.session is None:
            raise RuntimeError("FetchExecutor.start() must be called before fetch()")

        job = _FetchJob(len(batch))
        feeder = asyncio.create_task(self._feed(job, batch))
        try:
            for _ in range(len(batch)):
                yield await job.results.get()
        finally:
            job.abandoned = True
            if not feeder.done():
                feeder.cancel()
            await asyncio.gather(feeder, return_exceptions=True)

    async def _feed(self, job: _FetchJob, batch: Sequence[Link]):
        # put() blocks while the work queue is full
        for link in batch:
            await self._work_queue.put((job, link))

    async def _worker(self, worker_id: str):
        self.logger.debug(f"{worker_id} started")
        while True:
            job, link = await self._work_queue.get()
            try:
                if job.abandoned:
                    continue
                result = await self.fetch_link(link)
                job.deliver(result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"{worker_id} unexpected error fetching {link.url}: {e}",
                                  exc_info=True)
                job.deliver(FetchResult.failed(link, f"Unexpected error: {e}", retryable=True))
            finally:
                self._work_queue.task_done()

    async def fetch_link(self, link: Link) -> FetchResult:
        """Fetch a single link, honoring host politeness, and classify the outcome."""
        start_time = time.monotonic()

        async with self.throttle.slot(link.host):
            if self.robots_checker and not await self.robots_checker.can_fetch(link.url, self.session):
                self.stats['robots_blocked'] += 1
                self.logger.info(f"Robots.txt blocks access to: {link.url}")
                result = FetchResult.failed(link, "Blocked by robots.txt", retryable=False)
            else:
                result = await self._attempt(link, start_time)

        result.fetch_time = time.monotonic() - start_time
        result.node_id = self.node_id
        if result.status == FetchStatus.SUCCESS:
            self.stats['successful_requests'] += 1
        else:
            self.stats['failed_requests'] += 1
        if self.metrics:
            self.metrics.record_fetch(result.status.value, result.fetch_time)
        return result

    async def _attempt(self, link: Link, start_time: float) -> FetchResult:
        self.stats['total_requests'] += 1
        try:
            return await asyncio.wait_for(self._request(link),
                                          timeout=self.config.request_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Timeout fetching {link.url}")
            return FetchResult.failed(link, "Request timeout", retryable=True)
        except aiohttp.InvalidURL as e:
            return FetchResult.failed(link, f"Malformed URL: {e}", retryable=False)
        except aiohttp.ClientConnectorDNSError as e:
            self.logger.info(f"DNS resolution failed for {link.url}: {e}")
            return FetchResult.failed(link, f"DNS resolution failed: {e}", retryable=False)
        except aiohttp.ClientError as e:
            self.logger.warning(f"Client error fetching {link.url}: {e}")
            return FetchResult.failed(link, f"Client error: {e}", retryable=True)

    async def _request(self, link: Link) -> FetchResult:
        async with self.session.get(link.url) as response:
            status = response.status

            if status >= 500 or status == 429:
                return FetchResult.failed(link, f"HTTP {status}", retryable=True,
                                          status_code=status)
            if status >= 400:
                return FetchResult.failed(link, f"HTTP {status}", retryable=False,
                                          status_code=status)

            content_type = response.headers.get('content-type', '').lower()
            result = FetchResult(
                fingerprint=link.fingerprint,
                url=link.url,
                status=FetchStatus.SUCCESS,
                status_code=status,
                content_type=content_type,
            )

            if not self._is_text_content(content_type):
                self.logger.debug(f"Skipping non-text content: {link.url} ({content_type})")
                return result

            content = await self._read_content_safely(response)
            if content is None:
                return FetchResult.failed(link, "Content too large", retryable=False,
                                          status_code=status)

            result.content = content
            if any(html_type in content_type for html_type in HTML_CONTENT_TYPES):
                result.outbound_links = self.link_extractor.extract_links(str(response.url), content)

            self.logger.debug(f"Fetched {link.url}: {status} ({len(content)} chars, "
                              f"{len(result.outbound_links)} links)")
            return result

    def _is_text_content(self, content_type: str) -> bool:
        return any(text_type in content_type for text_type in TEXT_CONTENT_TYPES)

    async def _read_content_safely(self, response) -> Optional[str]:
        """
        Read the response body with a size limit.

        Returns:
            Decoded content, or None if the body exceeds max_content_size
        """
        max_size = self.config.max_content_size
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > max_size:
            self.logger.warning(f"Content too large ({content_length} bytes): {response.url}")
            return None

        content_bytes = b''
        async for chunk in response.content.iter_chunked(8192):
            content_bytes += chunk
            if len(content_bytes) > max_size:
                self.logger.warning(f"Content exceeded size limit during reading: {response.url}")
                return None

        self.stats['total_bytes_downloaded'] += len(content_bytes)

        encoding = response.charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            return content_bytes.decode('utf-8', errors='replace')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
