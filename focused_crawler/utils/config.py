"""
Configuration management for the focused crawler.
"""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


class ConfigError(ValueError):
    """Raised when the configuration file is missing or invalid."""
    pass


@dataclass
class CrawlerConfig:
    """Configuration for the crawl loop."""
    seed_urls: List[str] = field(default_factory=list)
    max_depth: int = 5
    batch_size: int = 32
    max_inflight_batches: int = 4
    relevance_threshold: float = 0.5
    idle_wait: bool = False
    poll_interval: float = 1.0
    stats_interval: float = 30.0
    max_pages: Optional[int] = None
    max_duration: Optional[int] = None


@dataclass
class FrontierConfig:
    """Configuration for the persistent frontier store."""
    key_prefix: str = "focused_crawler"
    per_host_concurrency: int = 1
    politeness_delay: float = 1.0
    max_retries: int = 3
    backoff_base: float = 5.0
    backoff_max: float = 600.0
    scan_page_size: int = 256


@dataclass
class FetcherConfig:
    """Configuration for the local fetch executor."""
    user_agent: str = "FocusedCrawler/1.0"
    request_timeout: float = 30.0
    max_concurrent_requests: int = 10
    queue_capacity: int = 100
    max_content_size: int = 10 * 1024 * 1024
    respect_robots_txt: bool = True
    allowed_domains: List[str] = field(default_factory=list)
    blocked_domains: List[str] = field(default_factory=list)


@dataclass
class RedisConfig:
    """Configuration for Redis."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


@dataclass
class ClusterConfig:
    """Configuration for distributed mode."""
    node_id: Optional[str] = None
    address: str = "localhost"
    key_prefix: str = "focused_crawler:cluster"
    heartbeat_interval: float = 2.0
    suspect_timeout: float = 6.0
    dead_timeout: float = 15.0
    lease_timeout: float = 120.0
    lease_check_interval: float = 1.0
    virtual_nodes: int = 64
    node_batch_size: int = 16
    max_node_batches: int = 4


@dataclass
class RelevanceConfig:
    """Configuration for the default keyword relevance oracle."""
    keywords: List[str] = field(default_factory=list)
    default_score: float = 0.1


@dataclass
class TargetStorageConfig:
    """Configuration for storing relevant pages."""
    data_directory: str = "data/targets"


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawler.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    frontier: FrontierConfig = field(default_factory=FrontierConfig)
    fetcher: FetcherConfig = field(default_factory=FetcherConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    relevance: RelevanceConfig = field(default_factory=RelevanceConfig)
    target_storage: TargetStorageConfig = field(default_factory=TargetStorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Config':
        """Build a validated Config from a (possibly partial) dictionary."""
        data = data or {}
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise ConfigError(f"Unknown configuration sections: {sorted(unknown)}")

        sections = {}
        for section in fields(cls):
            section_type = section.default_factory
            sections[section.name] = _build_section(
                section.name, section_type, data.get(section.name) or {}
            )

        config = cls(**sections)
        validate_config(config)
        return config


def _build_section(name: str, section_type, values: Dict[str, Any]):
    if not isinstance(values, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    allowed = {f.name for f in fields(section_type)}
    unknown = set(values) - allowed
    if unknown:
        raise ConfigError(f"Unknown keys in section '{name}': {sorted(unknown)}")
    return section_type(**values)


def validate_config(config: Config):
    """Validate configuration values."""
    if config.crawler.max_depth < 0:
        raise ConfigError("crawler.max_depth must be non-negative")

    if config.crawler.batch_size < 1:
        raise ConfigError("crawler.batch_size must be at least 1")

    if config.crawler.max_inflight_batches < 1:
        raise ConfigError("crawler.max_inflight_batches must be at least 1")

    if not 0.0 <= config.crawler.relevance_threshold <= 1.0:
        raise ConfigError("crawler.relevance_threshold must be within [0, 1]")

    if config.frontier.politeness_delay < 0:
        raise ConfigError("frontier.politeness_delay must be non-negative")

    if config.frontier.per_host_concurrency < 1:
        raise ConfigError("frontier.per_host_concurrency must be at least 1")

    if config.frontier.scan_page_size < 1:
        raise ConfigError("frontier.scan_page_size must be at least 1")

    if config.frontier.max_retries < 1:
        raise ConfigError("frontier.max_retries must be at least 1")

    if config.fetcher.max_concurrent_requests < 1:
        raise ConfigError("fetcher.max_concurrent_requests must be at least 1")

    if config.fetcher.queue_capacity < 1:
        raise ConfigError("fetcher.queue_capacity must be at least 1")

    cluster = config.cluster
    if not cluster.heartbeat_interval < cluster.suspect_timeout < cluster.dead_timeout:
        raise ConfigError(
            "cluster timeouts must satisfy heartbeat_interval < suspect_timeout < dead_timeout"
        )

    if cluster.lease_timeout <= 0:
        raise ConfigError("cluster.lease_timeout must be positive")

    logging.getLogger(__name__).debug("Configuration validation passed")


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            try:
                config_data = yaml.safe_load(file)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        self._config = Config.from_dict(config_data)
        return self._config

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigError("Configuration not loaded. Call load_config() first.")
        return self._config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    return ConfigManager(config_path).load_config()
