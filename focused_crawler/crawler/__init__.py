"""
Focused crawler core components.
"""

from .downloader import Downloader
from .fetcher import FetchExecutor
from .frontier import FrontierPersistenceError, FrontierStore
from .models import FetchResult, FetchStatus, InsertResult, Link, LinkState
from .parser import LinkExtractor
from .relevance import KeywordRelevanceOracle, RelevanceOracle
from .scheduler import CrawlLoop, CrawlState

__all__ = [
    'Downloader', 'FetchExecutor',
    'FrontierStore', 'FrontierPersistenceError',
    'FetchResult', 'FetchStatus', 'InsertResult', 'Link', 'LinkState',
    'LinkExtractor',
    'RelevanceOracle', 'KeywordRelevanceOracle',
    'CrawlLoop', 'CrawlState'
]
