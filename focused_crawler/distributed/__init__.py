"""Distributed crawling: cluster membership, work routing and fetcher nodes."""

from .cluster import (
    ClusterCoordinator,
    ClusterNode,
    CoordinatorError,
    LocalCluster,
    LocalClusterCoordinator,
    MembershipChange,
    MembershipEvent,
    NodeStatus,
)
from .fetcher_node import FetcherNode
from .partitioner import HashRing, HostAffinityPartitioner
from .redis_cluster import RedisClusterCoordinator
from .router import DistributedWorkRouter

__all__ = [
    'ClusterCoordinator',
    'ClusterNode',
    'CoordinatorError',
    'DistributedWorkRouter',
    'FetcherNode',
    'HashRing',
    'HostAffinityPartitioner',
    'LocalCluster',
    'LocalClusterCoordinator',
    'MembershipChange',
    'MembershipEvent',
    'NodeStatus',
    'RedisClusterCoordinator',
]
