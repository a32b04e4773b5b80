from collections import Counter

from focused_crawler.distributed.partitioner import HashRing, HostAffinityPartitioner


HOSTS = [f"host{i}.example" for i in range(300)]


def test_empty_ring_has_no_owner():
    assert HashRing().get("example.com") is None


def test_ring_is_deterministic_and_spreads_keys():
    ring = HashRing(virtual_nodes=64)
    for node in ("a", "b", "c"):
        ring.add(node)

    owners = Counter(ring.get(host) for host in HOSTS)
    assert set(owners) == {"a", "b", "c"}
    assert all(ring.get(host) == ring.get(host) for host in HOSTS[:10])


def test_removing_a_node_only_moves_its_keys():
    ring = HashRing()
    for node in ("a", "b", "c"):
        ring.add(node)
    before = {host: ring.get(host) for host in HOSTS}

    ring.remove("b")
    for host, owner in before.items():
        if owner != "b":
            assert ring.get(host) == owner
        else:
            assert ring.get(host) in ("a", "c")
    assert len(ring) == 2
    assert "b" not in ring


def test_host_stays_on_its_node_when_nodes_join():
    partitioner = HostAffinityPartitioner()
    partitioner.add_node("a")
    partitioner.add_node("b")
    placed = {host: partitioner.node_for(host) for host in HOSTS}

    partitioner.add_node("c")
    partitioner.add_node("d")
    assert {host: partitioner.node_for(host) for host in HOSTS} == placed


def test_new_hosts_use_new_nodes():
    partitioner = HostAffinityPartitioner()
    partitioner.add_node("a")
    partitioner.add_node("b")
    owners = {partitioner.node_for(host) for host in HOSTS}
    assert owners == {"a", "b"}


def test_suspended_node_keeps_hosts_but_gets_no_new_ones():
    partitioner = HostAffinityPartitioner()
    partitioner.add_node("a")
    partitioner.add_node("b")
    owned_by_a = [host for host in HOSTS[:100] if partitioner.node_for(host) == "a"]
    assert owned_by_a

    partitioner.suspend_node("a")
    assert all(partitioner.node_for(host) == "a" for host in owned_by_a)
    assert all(partitioner.node_for(host) == "b" for host in HOSTS[100:])
    assert partitioner.active_nodes == {"b"}

    partitioner.add_node("a")
    assert partitioner.active_nodes == {"a", "b"}


def test_dead_node_hosts_are_reassigned():
    partitioner = HostAffinityPartitioner()
    partitioner.add_node("a")
    partitioner.add_node("b")
    placed = {host: partitioner.node_for(host) for host in HOSTS}

    orphaned = partitioner.remove_node("a")
    assert sorted(orphaned) == sorted(host for host, owner in placed.items() if owner == "a")
    assert partitioner.hosts_of("a") == []
    assert all(partitioner.node_for(host) == "b" for host in HOSTS)


def test_no_active_node():
    partitioner = HostAffinityPartitioner()
    assert partitioner.node_for("example.com") is None
    partitioner.add_node("a")
    partitioner.suspend_node("a")
    assert partitioner.node_for("example.com") is None
