import asyncio

import fakeredis
import pytest

from focused_crawler.crawler.frontier import FrontierStore
from focused_crawler.crawler.models import Link, MAX_SCORE
from focused_crawler.crawler.relevance import LinkContext, RelevanceOracle
from focused_crawler.crawler.urls import canonicalize_url, host_of, url_fingerprint
from focused_crawler.utils.config import FrontierConfig


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_link(url: str, score: float = MAX_SCORE, depth: int = 0) -> Link:
    canonical = canonicalize_url(url)
    return Link(url=canonical, fingerprint=url_fingerprint(canonical),
                host=host_of(canonical), score=score, depth=depth)


def fp(url: str) -> str:
    return url_fingerprint(canonicalize_url(url))


SEED = "http://seed.example/"
B = "http://b.example/"
C = "http://c.example/"
D = "http://d.example/"

# seed -> b, c; b -> d; d links back to the seed
SITE = {
    SEED: [B, C],
    B: [D],
    C: [],
    D: [SEED],
}


class StubOracle(RelevanceOracle):
    """Fixed scores per URL."""

    def __init__(self, link_scores=None, page_scores=None):
        self.link_scores = link_scores or {}
        self.page_scores = page_scores or {}

    def score(self, url, context):
        if isinstance(context, LinkContext):
            return self.link_scores.get(url, 0.5)
        return self.page_scores.get(url, 0.0)


async def eventually(predicate, timeout=2.0):
    """Poll until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def frontier_config():
    return FrontierConfig(politeness_delay=0.0, per_host_concurrency=1,
                          max_retries=3, backoff_base=5.0)


@pytest.fixture
async def frontier(redis_client, frontier_config, clock):
    store = FrontierStore(redis_client, frontier_config, clock=clock)
    await store.initialize()
    return store
