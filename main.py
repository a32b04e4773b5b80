#!/usr/bin/env python3
"""
Main entry point for the focused crawler.
"""

import asyncio
import argparse
import logging
import signal
import sys
import uuid
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from focused_crawler import __version__
from focused_crawler.crawler.fetcher import FetchExecutor
from focused_crawler.crawler.frontier import FrontierPersistenceError, FrontierStore
from focused_crawler.crawler.models import Link, MAX_SCORE
from focused_crawler.crawler.relevance import KeywordRelevanceOracle
from focused_crawler.crawler.scheduler import CrawlLoop
from focused_crawler.crawler.urls import InvalidURLError, canonicalize_url, host_of, url_fingerprint
from focused_crawler.distributed.fetcher_node import FetcherNode
from focused_crawler.distributed.redis_cluster import RedisClusterCoordinator
from focused_crawler.distributed.router import DistributedWorkRouter
from focused_crawler.storage.target_storage import FileTargetStorage
from focused_crawler.utils.config import Config, ConfigError, load_config
from focused_crawler.utils.logger import get_crawler_logger, log_system_info, setup_logging
from focused_crawler.utils.monitoring import CrawlMetrics


def read_seed_file(path: str) -> List[str]:
    """Read seed URLs, one per line; blank lines and # comments are skipped."""
    seeds = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#'):
                seeds.append(line)
    return seeds


class CrawlerApp:
    """Main application class for the focused crawler."""

    def __init__(self, config: Config):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.metrics: Optional[CrawlMetrics] = None
        self.redis_client: Optional[redis.Redis] = None
        self._shutdown_event = asyncio.Event()

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    def setup_metrics(self):
        if self.config.monitoring.metrics_enabled:
            self.metrics = CrawlMetrics()
            self.metrics.start_prometheus_server(self.config.monitoring.prometheus_port)

    async def connect_redis(self) -> redis.Redis:
        self.redis_client = redis.Redis(
            host=self.config.redis.host,
            port=self.config.redis.port,
            db=self.config.redis.db,
            password=self.config.redis.password,
            decode_responses=True,
        )
        await self.redis_client.ping()
        self.logger.info(f"Connected to Redis at {self.config.redis.host}:{self.config.redis.port}")
        return self.redis_client

    def node_id(self, role: str) -> str:
        return self.config.cluster.node_id or f"{role}-{uuid.uuid4().hex[:8]}"

    def build_executor(self, node_id: Optional[str] = None) -> FetchExecutor:
        return FetchExecutor(self.config.fetcher, host_limits=self.config.frontier,
                             metrics=self.metrics, node_id=node_id)

    def build_crawl_loop(self, frontier: FrontierStore, downloader) -> CrawlLoop:
        oracle = KeywordRelevanceOracle(
            self.config.relevance.keywords,
            default_score=self.config.relevance.default_score,
        )
        target_storage = FileTargetStorage(self.config.target_storage.data_directory)
        return CrawlLoop(frontier, downloader, oracle,
                         target_storage=target_storage,
                         config=self.config.crawler,
                         metrics=self.metrics)

    async def run_until_shutdown(self, main_coro, on_shutdown):
        """Run main_coro; on a shutdown signal, call on_shutdown and let it finish."""
        main_task = asyncio.create_task(main_coro)
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())

        done, _ = await asyncio.wait([main_task, shutdown_task],
                                     return_when=asyncio.FIRST_COMPLETED)
        if shutdown_task in done:
            self.logger.info("Shutdown requested, stopping...")
            on_shutdown()
        else:
            shutdown_task.cancel()
        await main_task

    async def crawl(self, downloader, seeds: List[str]):
        frontier = FrontierStore(self.redis_client, self.config.frontier)
        await frontier.initialize()

        loop = self.build_crawl_loop(frontier, downloader)
        if loop.target_storage:
            await loop.target_storage.initialize()

        try:
            async with downloader:
                if seeds:
                    await loop.add_seeds(seeds)
                await self.run_until_shutdown(loop.run(), loop.request_stop)
            if self.metrics:
                self.logger.info(f"Metrics: {self.metrics.summary()}")
        finally:
            if loop.target_storage:
                await loop.target_storage.close()
            await frontier.close()

    async def start_crawl(self, seeds: List[str]):
        """Single-process crawl with a local fetch executor."""
        await self.crawl(self.build_executor(), seeds)

    async def start_distributed_crawl(self, seeds: List[str]):
        """Crawl loop whose batches are routed to fetcher nodes."""
        node_id = self.node_id("coordinator")
        self.logger = get_crawler_logger(__name__, node_id=node_id, role="coordinator")
        coordinator = RedisClusterCoordinator(self.redis_client, node_id, self.config.cluster)
        await coordinator.clear_inbox()
        router = DistributedWorkRouter(coordinator, self.config.cluster, metrics=self.metrics)
        await self.crawl(router, seeds)

    async def start_crawler_node(self):
        """Fetcher node serving assignments until a shutdown signal."""
        node_id = self.node_id("fetcher")
        self.logger = get_crawler_logger(__name__, node_id=node_id, role="fetcher")
        coordinator = RedisClusterCoordinator(self.redis_client, node_id, self.config.cluster)
        await coordinator.clear_inbox()
        node = FetcherNode(coordinator, self.build_executor(node_id), self.config.cluster)
        await node.start()

        run_task = asyncio.create_task(node.run())
        await self._shutdown_event.wait()
        await node.stop()
        await run_task
        self.logger.info(f"Node stats: {node.get_stats()}")

    async def add_seeds(self, seeds: List[str]):
        frontier = FrontierStore(self.redis_client, self.config.frontier)
        counts = await frontier.insert_many(seeds)
        for result, count in counts.items():
            self.logger.info(f"{result.value}: {count}")

    async def dry_run(self, seeds: List[str]):
        """Check configuration and connections without crawling."""
        self.logger.info("DRY RUN MODE: No actual crawling will be performed")
        self.logger.info(f"Seed URLs: {len(seeds)}")
        self.logger.info(f"Relevance keywords: {self.config.relevance.keywords}")

        frontier = FrontierStore(self.redis_client, self.config.frontier)
        self.logger.info(f"Frontier: {await frontier.get_stats()}")

        if seeds:
            async with self.build_executor() as executor:
                try:
                    result = await executor.fetch_link(self._probe_link(seeds[0]))
                except InvalidURLError as e:
                    self.logger.error(f"Invalid seed URL {seeds[0]}: {e}")
                    return
                self.logger.info(f"Test fetch of {seeds[0]}: {result.status.value} "
                                 f"{result.status_code} {result.error or ''}")
        self.logger.info("Dry run completed")

    def _probe_link(self, url: str) -> Link:
        canonical = canonicalize_url(url)
        return Link(url=canonical, fingerprint=url_fingerprint(canonical),
                    host=host_of(canonical), score=MAX_SCORE, depth=0)

    async def run(self, command: str, seeds: List[str], dry_run: bool = False) -> int:
        self.setup_signal_handlers()
        self.setup_metrics()
        log_system_info()
        self.logger.info(f"=== FOCUSED CRAWLER {__version__}: {command} ===")

        try:
            await self.connect_redis()
            if dry_run:
                await self.dry_run(seeds)
            elif command == 'start-crawl':
                await self.start_crawl(seeds)
            elif command == 'start-distributed-crawl':
                await self.start_distributed_crawl(seeds)
            elif command == 'start-crawler-node':
                await self.start_crawler_node()
            elif command == 'add-seeds':
                await self.add_seeds(seeds)
        except (RedisError, FrontierPersistenceError) as e:
            self.logger.error(f"Fatal storage error: {e}")
            return 1
        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1
        finally:
            if self.redis_client:
                await self.redis_client.aclose()
            self.logger.info("=== FOCUSED CRAWLER FINISHED ===")

        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Focused Web Crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py start-crawl --seeds seeds.txt          # Single-process crawl
  python main.py start-crawler-node                     # Run a fetcher node
  python main.py start-distributed-crawl                # Route work to fetcher nodes
  python main.py add-seeds --seeds seeds.txt            # Only add seeds to the frontier
  python main.py start-crawl --dry-run                  # Test configuration only
        """
    )
    parser.add_argument(
        'command',
        choices=['start-crawl', 'start-crawler-node', 'start-distributed-crawl', 'add-seeds'],
        help='What to run'
    )
    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '--seeds',
        help='File with seed URLs, one per line (added to crawler.seed_urls)'
    )
    parser.add_argument(
        '--node-id',
        help='Cluster node id (default: cluster.node_id or a random id)'
    )
    parser.add_argument(
        '--max-pages',
        type=int,
        help='Maximum number of pages to crawl'
    )
    parser.add_argument(
        '--max-duration',
        type=int,
        help='Maximum crawl duration in seconds'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Test configuration without actually crawling'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'Focused Crawler {__version__}'
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        seeds = list(config.crawler.seed_urls)
        if args.seeds:
            seeds.extend(read_seed_file(args.seeds))
    except (ConfigError, OSError) as e:
        print(f"Error: {e}")
        return 1

    if args.max_pages is not None:
        config.crawler.max_pages = args.max_pages
    if args.max_duration is not None:
        config.crawler.max_duration = args.max_duration
    if args.node_id:
        config.cluster.node_id = args.node_id

    if args.command == 'add-seeds' and not seeds:
        print("Error: no seed URLs given (use --seeds or crawler.seed_urls)")
        return 1

    setup_logging(config.logging)

    app = CrawlerApp(config)
    try:
        return asyncio.run(app.run(args.command, seeds, dry_run=args.dry_run))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
