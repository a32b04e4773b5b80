"""
Monitoring and metrics collection for the focused crawler.
"""

import logging
import time
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class CrawlMetrics:
    """
    Prometheus metrics for the crawl engine.

    Every instance owns its registry so several engines (or tests) can live
    in one process without colliding on metric names.
    """

    def __init__(self, namespace: str = "focused_crawler",
                 registry: Optional[CollectorRegistry] = None):
        self.logger = logging.getLogger(__name__)
        self.namespace = namespace
        self.registry = registry or CollectorRegistry()
        self.start_time = time.time()
        self._server_started = False

        self.links_inserted = Counter(
            'links_inserted_total',
            'Frontier insert calls by result',
            ['result'],
            namespace=namespace,
            registry=self.registry
        )
        self.pages_fetched = Counter(
            'pages_fetched_total',
            'Fetch results by status',
            ['status'],
            namespace=namespace,
            registry=self.registry
        )
        self.pages_stored = Counter(
            'pages_stored_total',
            'Relevant pages handed to target storage',
            namespace=namespace,
            registry=self.registry
        )
        self.fetch_time = Histogram(
            'fetch_time_seconds',
            'Time spent fetching a single page',
            namespace=namespace,
            registry=self.registry
        )
        self.frontier_pending = Gauge(
            'frontier_pending',
            'Links waiting in the frontier',
            namespace=namespace,
            registry=self.registry
        )
        self.inflight_batches = Gauge(
            'inflight_batches',
            'Batches dispatched and not yet harvested',
            namespace=namespace,
            registry=self.registry
        )
        self.assignments_lost = Counter(
            'assignments_lost_total',
            'Assignments discarded before a result arrived',
            ['reason'],
            namespace=namespace,
            registry=self.registry
        )
        self.stale_results = Counter(
            'stale_results_total',
            'Late or duplicate results discarded by the router',
            namespace=namespace,
            registry=self.registry
        )
        self.active_nodes = Gauge(
            'active_fetcher_nodes',
            'Fetcher nodes currently ACTIVE',
            namespace=namespace,
            registry=self.registry
        )

    def start_prometheus_server(self, port: int):
        """Start Prometheus metrics HTTP server."""
        if self._server_started:
            return
        start_http_server(port, registry=self.registry)
        self._server_started = True
        self.logger.info(f"Prometheus metrics server started on port {port}")

    def record_insert(self, result: str):
        self.links_inserted.labels(result=result).inc()

    def record_fetch(self, status: str, fetch_time: float):
        self.pages_fetched.labels(status=status).inc()
        self.fetch_time.observe(fetch_time)

    def record_page_stored(self):
        self.pages_stored.inc()

    def record_assignment_lost(self, reason: str):
        self.assignments_lost.labels(reason=reason).inc()

    def record_stale_result(self):
        self.stale_results.inc()

    def value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Read a sample from the registry (0.0 when it was never recorded)."""
        result = self.registry.get_sample_value(name, labels or {})
        return result if result is not None else 0.0

    def summary(self) -> Dict[str, Any]:
        """Get a summary of the crawl counters."""
        runtime = time.time() - self.start_time
        fetched = sum(
            self.value(f'{self.namespace}_pages_fetched_total', {'status': status})
            for status in ('SUCCESS', 'FAILED_RETRYABLE', 'FAILED_PERMANENT')
        )
        return {
            'runtime_seconds': runtime,
            'pages_fetched': fetched,
            'pages_succeeded': self.value(f'{self.namespace}_pages_fetched_total',
                                          {'status': 'SUCCESS'}),
            'pages_stored': self.value(f'{self.namespace}_pages_stored_total'),
            'links_inserted': self.value(f'{self.namespace}_links_inserted_total',
                                         {'result': 'INSERTED'}),
            'pages_per_minute': fetched / (runtime / 60) if runtime > 0 else 0.0,
        }
