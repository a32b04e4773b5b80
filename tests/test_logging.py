import json
import logging

import pytest

from focused_crawler.utils.config import LoggingConfig
from focused_crawler.utils.logger import (
    JSONFormatter,
    PerformanceFilter,
    get_crawler_logger,
    setup_logging,
)
from focused_crawler.utils.monitoring import CrawlMetrics


def make_record(name="focused_crawler.test", level=logging.INFO, msg="hello", **extra):
    record = logging.LogRecord(name, level, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_link_context():
    record = make_record(node_id="node-1", fingerprint="abc", url="http://example.com/")
    entry = json.loads(JSONFormatter().format(record))

    assert entry['message'] == "hello"
    assert entry['level'] == "INFO"
    assert entry['node_id'] == "node-1"
    assert entry['fingerprint'] == "abc"
    assert entry['url'] == "http://example.com/"
    assert 'role' not in entry


def test_log_adapter_adds_node_and_link_context(caplog):
    logger = get_crawler_logger("focused_crawler.test", node_id="node-1", role="fetcher")
    with caplog.at_level(logging.INFO, logger="focused_crawler.test"):
        logger.log_link_event(logging.INFO, "abc", "http://example.com/", "fetched")

    [record] = caplog.records
    assert record.node_id == "node-1"
    assert record.role == "fetcher"
    assert record.fingerprint == "abc"
    assert record.getMessage() == "fetched"


def test_performance_filter_drops_noisy_loggers():
    noisy = PerformanceFilter()
    assert noisy.filter(make_record(name="aiohttp.access")) is False
    assert noisy.filter(make_record(level=logging.DEBUG, msg="Connection pool is full")) is False
    assert noisy.filter(make_record()) is True


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_writes_files(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "crawler.log"
    root = setup_logging(LoggingConfig(level="DEBUG", file=str(log_file), json=True))

    root.error("persistence failure")
    for handler in root.handlers:
        handler.flush()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])['message'] == "persistence failure"
    assert "persistence failure" in (tmp_path / "logs" / "errors.log").read_text(encoding="utf-8")
    assert logging.getLogger("aiohttp").level == logging.WARNING


def test_metrics_summary():
    metrics = CrawlMetrics()
    metrics.record_insert("INSERTED")
    metrics.record_insert("REJECTED")
    metrics.record_fetch("SUCCESS", 0.2)
    metrics.record_fetch("FAILED_RETRYABLE", 0.1)
    metrics.record_fetch("DEFERRED", 0.0)
    metrics.record_page_stored()

    summary = metrics.summary()
    assert summary['pages_fetched'] == 2
    assert summary['pages_succeeded'] == 1
    assert summary['pages_stored'] == 1
    assert summary['links_inserted'] == 1


def test_metrics_instances_do_not_share_registries():
    first, second = CrawlMetrics(), CrawlMetrics()
    first.record_stale_result()
    assert first.value('focused_crawler_stale_results_total') == 1
    assert second.value('focused_crawler_stale_results_total') == 0
