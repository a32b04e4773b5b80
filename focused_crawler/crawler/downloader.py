"""
Downloader abstraction shared by the local fetch executor and the
distributed work router.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Sequence

from .models import FetchResult, Link


class Downloader(ABC):
    """Fetches a batch of links and yields results as they complete."""

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @abstractmethod
    async def start(self):
        """Acquire sessions, connections and worker tasks."""

    @abstractmethod
    async def close(self):
        """Release everything acquired by start()."""

    @abstractmethod
    def fetch(self, batch: Sequence[Link]) -> AsyncIterator[FetchResult]:
        """
        Yield exactly one FetchResult per link in the batch, in completion
        order. The returned iterator is finite and not restartable.
        """
