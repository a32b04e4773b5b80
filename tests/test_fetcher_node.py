import asyncio

from conftest import SITE, StubOracle, eventually, fp, make_link
from focused_crawler.crawler.frontier import FrontierStore
from focused_crawler.crawler.models import FetchResult, FetchStatus, LinkState, OutboundLink
from focused_crawler.crawler.scheduler import CrawlLoop
from focused_crawler.distributed.cluster import ROLE_COORDINATOR, LocalCluster, NodeStatus
from focused_crawler.distributed.fetcher_node import FetcherNode
from focused_crawler.distributed.messages import Assignment, assign_message, parse_result
from focused_crawler.distributed.router import DistributedWorkRouter
from focused_crawler.utils.config import ClusterConfig, CrawlerConfig, FrontierConfig


class FakeExecutor:
    """Answers every link from a site map without touching the network."""

    def __init__(self, site=None):
        self.site = site or {}
        self.started = False
        self.closed = False
        self.batches = []

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def fetch(self, batch):
        self.batches.append([link.url for link in batch])
        for link in batch:
            await asyncio.sleep(0)
            yield FetchResult(
                fingerprint=link.fingerprint,
                url=link.url,
                status=FetchStatus.SUCCESS,
                status_code=200,
                content="<html></html>",
                content_type="text/html",
                outbound_links=[OutboundLink(url) for url in self.site.get(link.url, [])],
            )

    def get_stats(self):
        return {'batches': len(self.batches)}


def cluster_config(**overrides):
    values = dict(lease_check_interval=0.01, heartbeat_interval=0.01, node_batch_size=8)
    values.update(overrides)
    return ClusterConfig(**values)


async def test_node_fetches_assignments_and_replies_to_sender():
    cluster = LocalCluster()
    executor = FakeExecutor()
    node = FetcherNode(cluster.coordinator("node-1"), executor, cluster_config())
    router = cluster.coordinator("router")
    await router.join("localhost", ROLE_COORDINATOR)

    run_task = asyncio.create_task(node.run())
    await eventually(lambda: "node-1" in cluster.nodes)
    assert executor.started

    assignments = [
        Assignment(link=make_link(f"http://example.com/{i}"), assigned_node="node-1",
                   assigned_at=0.0, lease_expires_at=60.0)
        for i in range(3)
    ]
    for assignment in assignments:
        await router.send("node-1", assign_message(assignment, "router"))

    replies = []
    while len(replies) < 3:
        replies.extend(await router.receive_many(10, timeout=1.0))

    parsed = [parse_result(message) for message in replies]
    assert {lease_id for _, lease_id, _ in parsed} == {a.lease_id for a in assignments}
    assert all(sender == "node-1" for _, _, sender in parsed)
    assert all(result.node_id == "node-1" for result, _, _ in parsed)

    await node.stop()
    await run_task
    assert executor.closed
    assert cluster.nodes["node-1"].status == NodeStatus.DEAD
    assert node.get_stats()['results_sent'] == 3


async def test_malformed_assignments_are_dropped():
    cluster = LocalCluster()
    node = FetcherNode(cluster.coordinator("node-1"), FakeExecutor(), cluster_config())
    router = cluster.coordinator("router")
    await router.join("localhost", ROLE_COORDINATOR)

    run_task = asyncio.create_task(node.run())
    await eventually(lambda: "node-1" in cluster.nodes)
    await router.send("node-1", {'type': 'assign', 'link': {}})
    await router.send("node-1", {'type': 'hello'})

    await eventually(lambda: node.get_stats()['malformed_messages'] == 1)
    await node.stop()
    await run_task
    assert node.get_stats()['assignments_received'] == 0


async def test_distributed_crawl_end_to_end(redis_client):
    cluster = LocalCluster()
    config = cluster_config()
    nodes = [FetcherNode(cluster.coordinator(f"node-{i}"), FakeExecutor(SITE), config)
             for i in range(2)]
    for node in nodes:
        await node.start()
    node_tasks = [asyncio.create_task(node.run()) for node in nodes]

    frontier = FrontierStore(redis_client, FrontierConfig(politeness_delay=0.0))
    await frontier.initialize()
    router = DistributedWorkRouter(cluster.coordinator("router"), config)
    loop = CrawlLoop(frontier, router, StubOracle(),
                     config=CrawlerConfig(poll_interval=0.01, stats_interval=60.0))

    async with router:
        await loop.add_seeds(["http://seed.example/"])
        await asyncio.wait_for(loop.run(), timeout=10)

    for url in SITE:
        link = await frontier.get_link(fp(url))
        assert link.state == LinkState.DONE
    assert loop.get_stats()['pages_fetched'] == len(SITE)
    assert router.get_stats()['completed'] == len(SITE)

    for node in nodes:
        await node.stop()
    await asyncio.gather(*node_tasks)
    assert sum(node.get_stats()['results_sent'] for node in nodes) == len(SITE)

