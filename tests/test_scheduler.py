import asyncio

import pytest

from conftest import B, C, D, SEED, SITE, StubOracle, fp
from focused_crawler.crawler.downloader import Downloader
from focused_crawler.crawler.frontier import FrontierPersistenceError, FrontierStore
from focused_crawler.crawler.models import FetchResult, FetchStatus, LinkState, OutboundLink
from focused_crawler.crawler.scheduler import CrawlLoop, CrawlState
from focused_crawler.storage.target_storage import FileTargetStorage
from focused_crawler.utils.config import CrawlerConfig, FrontierConfig
from focused_crawler.utils.monitoring import CrawlMetrics


class StubDownloader(Downloader):
    """Serves SITE; scripted failures are consumed before a link succeeds."""

    def __init__(self, site=None, failures=None, gate=None):
        self.site = site if site is not None else SITE
        self.failures = failures or {}
        self.gate = gate
        self.batches = []
        self.started = False

    async def start(self):
        self.started = True

    async def close(self):
        self.started = False

    async def fetch(self, batch):
        self.batches.append([link.url for link in batch])
        if self.gate is not None:
            await self.gate.wait()

        for link in batch:
            scripted = self.failures.get(link.url)
            if scripted:
                outcome = scripted.pop(0)
                if outcome == 'raise':
                    raise RuntimeError("downloader crashed")
                if outcome == FetchStatus.DEFERRED:
                    yield FetchResult.deferred(link, "busy")
                else:
                    yield FetchResult.failed(
                        link, "scripted failure",
                        retryable=outcome == FetchStatus.FAILED_RETRYABLE,
                    )
                continue

            yield FetchResult(
                fingerprint=link.fingerprint,
                url=link.url,
                status=FetchStatus.SUCCESS,
                status_code=200,
                content=f"<html>{link.url}</html>",
                content_type="text/html",
                outbound_links=[OutboundLink(url, "anchor") for url in self.site.get(link.url, [])],
            )


@pytest.fixture
async def store(redis_client):
    # real clock so retry backoffs elapse
    frontier = FrontierStore(redis_client, FrontierConfig(
        politeness_delay=0.0, backoff_base=0.01, backoff_max=0.05, max_retries=3,
    ))
    await frontier.initialize()
    return frontier


def crawler_config(**overrides):
    values = dict(batch_size=4, max_inflight_batches=2, poll_interval=0.01,
                  stats_interval=60.0, relevance_threshold=0.5, max_depth=5)
    values.update(overrides)
    return CrawlerConfig(**values)


async def test_highest_scored_discovery_is_scheduled_first(store):
    oracle = StubOracle(link_scores={B: 0.9, C: 0.2})
    loop = CrawlLoop(store, StubDownloader(), oracle,
                     config=crawler_config(batch_size=1, max_inflight_batches=1, max_pages=1))
    await loop.add_seeds([SEED])
    await loop.run()

    assert (await store.get_link(fp(SEED))).state == LinkState.DONE
    [first] = await store.next_batch(1)
    assert first.url == B
    assert first.score == 0.9
    assert first.depth == 1

    second = await store.get_link(fp(C))
    assert second.state == LinkState.DISCOVERED
    assert second.score == 0.2
    assert second.depth == 1


async def test_crawl_runs_to_exhaustion(store, tmp_path):
    storage = FileTargetStorage(str(tmp_path))
    await storage.initialize()
    metrics = CrawlMetrics()
    oracle = StubOracle(page_scores={SEED: 0.9, B: 0.8, C: 0.1, D: 0.6})
    downloader = StubDownloader()
    loop = CrawlLoop(store, downloader, oracle, target_storage=storage,
                     config=crawler_config(), metrics=metrics)

    counts = await loop.add_seeds([SEED])
    await loop.run()

    assert loop.state == CrawlState.STOPPED
    for url in (SEED, B, C, D):
        assert (await store.get_link(fp(url))).state == LinkState.DONE
    assert (await store.get_link(fp(C))).outcome == "irrelevant"
    assert (await store.get_link(fp(B))).outcome == "relevant"

    stats = loop.get_stats()
    assert stats['pages_fetched'] == 4
    assert stats['pages_stored'] == 3
    assert stats['links_inserted'] == 3
    assert storage.load(fp(C)) is None
    assert storage.load(fp(D)).relevance == 0.6
    assert (await store.get_stats())['done'] == 4
    assert metrics.value('focused_crawler_pages_stored_total') == 3
    assert sum(len(batch) for batch in downloader.batches) == 4
    assert sum(counts.values()) == 1


async def test_children_beyond_max_depth_are_not_inserted(store):
    loop = CrawlLoop(store, StubDownloader(), StubOracle(), config=crawler_config(max_depth=1))
    await loop.add_seeds([SEED])
    await loop.run()

    assert (await store.get_link(fp(B))).state == LinkState.DONE
    assert await store.get_link(fp(D)) is None


async def test_retryable_failures_exhaust_retry_budget(store):
    downloader = StubDownloader(failures={B: [FetchStatus.FAILED_RETRYABLE] * 5})
    loop = CrawlLoop(store, downloader, StubOracle(), config=crawler_config())
    await loop.add_seeds([SEED])
    await loop.run()

    link = await store.get_link(fp(B))
    assert link.state == LinkState.FAILED
    assert link.attempts == 3
    assert downloader.failures[B] == [FetchStatus.FAILED_RETRYABLE] * 2
    assert await store.get_link(fp(D)) is None
    assert loop.get_stats()['errors'] == 3


async def test_permanent_failure_is_not_retried(store):
    downloader = StubDownloader(failures={C: [FetchStatus.FAILED_PERMANENT, FetchStatus.FAILED_PERMANENT]})
    loop = CrawlLoop(store, downloader, StubOracle(), config=crawler_config())
    await loop.add_seeds([SEED])
    await loop.run()

    assert (await store.get_link(fp(C))).state == LinkState.FAILED
    assert len(downloader.failures[C]) == 1


async def test_deferred_link_is_retried_without_using_an_attempt(store):
    downloader = StubDownloader(failures={B: [FetchStatus.DEFERRED]})
    loop = CrawlLoop(store, downloader, StubOracle(), config=crawler_config())
    await loop.add_seeds([SEED])
    await loop.run()

    link = await store.get_link(fp(B))
    assert link.state == LinkState.DONE
    assert link.attempts == 0
    assert loop.get_stats()['pages_fetched'] == 4


async def test_links_of_a_crashed_batch_are_released(store):
    downloader = StubDownloader(failures={SEED: ['raise']})
    loop = CrawlLoop(store, downloader, StubOracle(), config=crawler_config())
    await loop.add_seeds([SEED])
    await loop.run()

    link = await store.get_link(fp(SEED))
    assert link.state == LinkState.DONE
    assert link.attempts == 0
    assert downloader.batches[0] == [SEED]
    assert downloader.batches[1] == [SEED]


async def test_stop_drains_in_flight_batches(store):
    gate = asyncio.Event()
    downloader = StubDownloader(gate=gate)
    loop = CrawlLoop(store, downloader, StubOracle(), config=crawler_config())
    await loop.add_seeds([SEED])

    task = asyncio.create_task(loop.run())
    while not downloader.batches:
        await asyncio.sleep(0.01)

    loop.request_stop()
    assert loop.state == CrawlState.STOPPING
    gate.set()
    await asyncio.wait_for(task, timeout=5)

    assert loop.state == CrawlState.STOPPED
    assert (await store.get_link(fp(SEED))).state == LinkState.DONE
    # children were discovered but never dispatched
    assert (await store.get_link(fp(B))).state == LinkState.DISCOVERED
    assert len(downloader.batches) == 1


async def test_stop_before_run(store):
    loop = CrawlLoop(store, StubDownloader(), StubOracle(), config=crawler_config())
    await loop.stop()
    assert loop.state == CrawlState.STOPPED


async def test_run_twice_is_rejected(store):
    loop = CrawlLoop(store, StubDownloader(), StubOracle(), config=crawler_config())
    await loop.run()
    with pytest.raises(RuntimeError):
        await loop.run()


async def test_persistence_failure_halts_the_crawl(store, redis_server):
    loop = CrawlLoop(store, StubDownloader(), StubOracle(), config=crawler_config())
    await loop.add_seeds([SEED])
    redis_server.connected = False

    with pytest.raises(FrontierPersistenceError):
        await loop.run()
    assert loop.state == CrawlState.STOPPED
