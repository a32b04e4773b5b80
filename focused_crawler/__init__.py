"""
Focused Web Crawler

A relevance-driven crawler with a durable Redis frontier that runs in a
single process or spreads fetching over a cluster of fetcher nodes.
"""

__version__ = "1.0.0"
__description__ = "A focused web crawler with a durable frontier and distributed fetching"
