"""
Logging setup for crawler processes.

Every process logs to the console, to a rotating main log file and to a
separate error log next to it. Records may carry node context (node_id,
role) and link context (fingerprint, url), which the JSON formatter emits
as top-level fields.
"""

import json
import logging
import logging.handlers
import os
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import psutil

from .config import LoggingConfig

CONTEXT_FIELDS = ('node_id', 'role', 'fingerprint', 'url')

MAIN_LOG_BYTES = 50 * 1024 * 1024
ERROR_LOG_BYTES = 10 * 1024 * 1024

# Libraries that log per request or per command
QUIET_LOGGERS = {
    'aiohttp': logging.WARNING,
    'redis': logging.WARNING,
    'asyncio': logging.WARNING,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with crawler context fields lifted out."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """Attaches the node context it was created with to every record."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(self.extra)
        extra.update(kwargs.get('extra') or {})
        kwargs['extra'] = extra
        return msg, kwargs

    def log_link_event(self, level: int, fingerprint: str, url: str, message: str, **kwargs):
        """Log something that happened to one frontier link."""
        extra = dict(kwargs.pop('extra', None) or {})
        extra.update(fingerprint=fingerprint, url=url)
        self.log(level, message, extra=extra, **kwargs)


class PerformanceFilter(logging.Filter):
    """Drops access logs and connection pool chatter."""

    def __init__(self, suppress_modules: Optional[list] = None):
        super().__init__()
        self.suppress_modules = tuple(suppress_modules or ['aiohttp.access', 'urllib3.connectionpool'])

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith(self.suppress_modules):
            return False
        return not (record.levelno == logging.DEBUG
                    and 'connection pool' in record.getMessage().lower())


def _rotating_handler(path: Path, level: int, max_bytes: int, backup_count: int,
                      formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(config: LoggingConfig,
                  enable_performance_filtering: bool = True) -> logging.Logger:
    """
    Configure the root logger for a crawler process.

    Args:
        config: Logging configuration section
        enable_performance_filtering: Drop noisy third-party records from the
            console and the main log file

    Returns:
        The configured root logger
    """
    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    formatter = JSONFormatter() if config.json else logging.Formatter(config.format)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)
    main_log = _rotating_handler(log_file, logging.DEBUG, MAIN_LOG_BYTES, 5, formatter)
    error_log = _rotating_handler(log_file.parent / 'errors.log', logging.ERROR,
                                  ERROR_LOG_BYTES, 3, formatter)
    if enable_performance_filtering:
        console.addFilter(PerformanceFilter())
        main_log.addFilter(PerformanceFilter())

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.level.upper()))
    root.handlers.clear()
    for handler in (console, main_log, error_log):
        root.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    root.info(f"Logging to {log_file} at level {config.level}")
    return root


def get_crawler_logger(name: str, **extra_context) -> CrawlerLogAdapter:
    """
    Get a module logger that tags records with node context.

    Args:
        name: Logger name
        **extra_context: Fields added to every record, usually node_id and role
    """
    return CrawlerLogAdapter(logging.getLogger(name), extra_context)


def log_system_info():
    """Log the host this crawler process runs on."""
    logger = logging.getLogger(__name__)
    memory = psutil.virtual_memory()

    logger.info(f"Host: {platform.node()} ({platform.platform()})")
    logger.info(f"Python {platform.python_version()} at {sys.executable}, PID {os.getpid()}")
    logger.info(f"CPU cores: {psutil.cpu_count()}, "
                f"memory: {memory.available / 1024**3:.1f} of {memory.total / 1024**3:.1f} GB free")
