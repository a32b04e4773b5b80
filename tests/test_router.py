import asyncio

import pytest

from conftest import eventually, make_link
from focused_crawler.crawler.models import FetchResult, FetchStatus
from focused_crawler.distributed.cluster import ROLE_FETCHER, LocalCluster
from focused_crawler.distributed.messages import parse_assign, result_message
from focused_crawler.distributed.router import DistributedWorkRouter
from focused_crawler.utils.config import ClusterConfig
from focused_crawler.utils.monitoring import CrawlMetrics


async def collect(router, batch):
    return [result async for result in router.fetch(batch)]


def success_for(link):
    return FetchResult(fingerprint=link.fingerprint, url=link.url,
                       status=FetchStatus.SUCCESS, status_code=200, content="ok")


@pytest.fixture
def cluster():
    return LocalCluster()


@pytest.fixture
def metrics():
    return CrawlMetrics()


def router_config(**overrides):
    values = dict(lease_timeout=60.0, lease_check_interval=0.01, heartbeat_interval=0.01)
    values.update(overrides)
    return ClusterConfig(**values)


async def start_worker(cluster, node_id):
    worker = cluster.coordinator(node_id)
    await worker.join("localhost", ROLE_FETCHER)
    return worker


async def make_router(cluster, metrics, **overrides):
    router = DistributedWorkRouter(cluster.coordinator("router"), router_config(**overrides),
                                   metrics=metrics)
    await router.start()
    return router


async def test_without_fetcher_nodes_links_are_deferred(cluster, metrics):
    router = await make_router(cluster, metrics)
    link = make_link("http://example.com/")

    [result] = await collect(router, [link])
    assert result.status == FetchStatus.DEFERRED
    assert router.outstanding() == 0
    await router.close()


async def test_result_is_correlated_with_assignment(cluster, metrics):
    worker = await start_worker(cluster, "node-1")
    router = await make_router(cluster, metrics)
    link = make_link("http://example.com/")

    task = asyncio.create_task(collect(router, [link]))
    [message] = await worker.receive_many(10, timeout=1.0)
    assigned, lease_id, sender = parse_assign(message)
    assert assigned.fingerprint == link.fingerprint
    assert sender == "router"

    await worker.send(sender, result_message(success_for(assigned), lease_id, "node-1"))
    [result] = await asyncio.wait_for(task, timeout=2.0)

    assert result.status == FetchStatus.SUCCESS
    assert result.node_id == "node-1"
    assert router.get_stats()['completed'] == 1
    assert router.outstanding() == 0
    await router.close()


async def test_links_of_one_host_go_to_one_node(cluster, metrics):
    workers = [await start_worker(cluster, f"node-{i}") for i in range(3)]
    router = await make_router(cluster, metrics)
    batch = [make_link(f"http://example.com/{i}") for i in range(5)]

    task = asyncio.create_task(collect(router, batch))
    await eventually(lambda: router.outstanding() == 5)

    received = {}
    for worker in workers:
        received[worker.node_id] = await worker.receive_many(10, timeout=0.05)
    assert sorted(len(messages) for messages in received.values()) == [0, 0, 5]

    for worker in workers:
        for message in received[worker.node_id]:
            assigned, lease_id, sender = parse_assign(message)
            await worker.send(sender, result_message(success_for(assigned), lease_id,
                                                     worker.node_id))
    results = await asyncio.wait_for(task, timeout=2.0)
    assert len(results) == 5
    await router.close()


async def test_expired_lease_fails_retryably_and_late_result_is_discarded(cluster, metrics):
    worker = await start_worker(cluster, "node-1")
    router = await make_router(cluster, metrics, lease_timeout=0.05)
    link = make_link("http://example.com/")

    [result] = await asyncio.wait_for(collect(router, [link]), timeout=2.0)
    assert result.status == FetchStatus.FAILED_RETRYABLE
    assert "lease_expired" in result.error
    assert metrics.value('focused_crawler_assignments_lost_total',
                         {'reason': 'lease_expired'}) == 1

    [message] = await worker.receive_many(10, timeout=1.0)
    assigned, lease_id, sender = parse_assign(message)
    await worker.send(sender, result_message(success_for(assigned), lease_id, "node-1"))

    await eventually(lambda: router.get_stats()['stale_results'] == 1)
    assert metrics.value('focused_crawler_stale_results_total') == 1
    await router.close()


async def test_dead_node_returns_its_assignments_and_loses_its_hosts(cluster, metrics):
    await start_worker(cluster, "node-1")
    router = await make_router(cluster, metrics)
    link = make_link("http://example.com/")

    task = asyncio.create_task(collect(router, [link]))
    await eventually(lambda: router.outstanding() == 1)
    cluster.kill("node-1")

    [result] = await asyncio.wait_for(task, timeout=2.0)
    assert result.status == FetchStatus.FAILED_RETRYABLE
    assert "node_dead" in result.error
    assert router.active_nodes == []
    assert router.partitioner.hosts_of("node-1") == []

    second = await start_worker(cluster, "node-2")
    await eventually(lambda: router.active_nodes == ["node-2"])
    task = asyncio.create_task(collect(router, [link]))
    [message] = await second.receive_many(10, timeout=1.0)
    assigned, lease_id, sender = parse_assign(message)
    await second.send(sender, result_message(success_for(assigned), lease_id, "node-2"))
    [result] = await asyncio.wait_for(task, timeout=2.0)
    assert result.node_id == "node-2"
    await router.close()


async def test_suspect_node_keeps_hosts_and_gets_no_new_ones(cluster, metrics):
    await start_worker(cluster, "node-1")
    router = await make_router(cluster, metrics)
    assert router.partitioner.node_for("example.com") == "node-1"

    await start_worker(cluster, "node-2")
    cluster.mark_suspect("node-1")
    await eventually(lambda: router.active_nodes == ["node-2"])

    assert router.partitioner.node_for("example.com") == "node-1"
    assert router.partitioner.node_for("new-host.example") == "node-2"
    assert router.partitioner.hosts_of("node-1") == ["example.com"]
    assert router.nodes["node-1"].status.value == "SUSPECT"

    cluster.mark_alive("node-1")
    await eventually(lambda: router.active_nodes == ["node-1", "node-2"])
    await router.close()


async def test_result_with_wrong_lease_or_sender_is_discarded(cluster, metrics):
    worker = await start_worker(cluster, "node-1")
    router = await make_router(cluster, metrics)
    link = make_link("http://example.com/")

    task = asyncio.create_task(collect(router, [link]))
    [message] = await worker.receive_many(10, timeout=1.0)
    assigned, lease_id, sender = parse_assign(message)

    router.handle_message(result_message(success_for(assigned), "other-lease", "node-1"))
    router.handle_message(result_message(success_for(assigned), lease_id, "node-9"))
    router.handle_message({'type': 'result', 'lease_id': lease_id})
    assert router.get_stats()['stale_results'] == 2
    assert router.outstanding() == 1

    router.handle_message(result_message(success_for(assigned), lease_id, "node-1"))
    [result] = await asyncio.wait_for(task, timeout=2.0)
    assert result.status == FetchStatus.SUCCESS
    await router.close()


async def test_close_defers_outstanding_assignments(cluster, metrics):
    await start_worker(cluster, "node-1")
    router = await make_router(cluster, metrics)
    link = make_link("http://example.com/")

    task = asyncio.create_task(collect(router, [link]))
    await eventually(lambda: router.outstanding() == 1)
    await router.close()

    [result] = await asyncio.wait_for(task, timeout=2.0)
    assert result.status == FetchStatus.DEFERRED
    assert cluster.nodes["router"].status.value == "DEAD"


async def test_fetch_requires_start(cluster, metrics):
    router = DistributedWorkRouter(cluster.coordinator("router"), router_config())
    with pytest.raises(RuntimeError):
        await collect(router, [make_link("http://example.com/")])
