"""
Storage for relevant ("target") pages found by the crawl.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


class TargetStorageError(Exception):
    """Custom exception for target storage operations."""
    pass


@dataclass
class TargetPage:
    """A fetched page judged relevant by the oracle."""
    url: str
    fingerprint: str
    relevance: float
    depth: int
    content: Optional[str] = None
    content_type: Optional[str] = None
    outbound_links: List[str] = field(default_factory=list)


class TargetStorage(ABC):
    """Abstract base class for target page stores."""

    async def initialize(self):
        """Initialize the storage backend."""

    @abstractmethod
    async def store(self, page: TargetPage) -> bool:
        """Store a relevant page. Returns False if it could not be stored."""

    async def get_stats(self) -> Dict[str, Any]:
        return {}

    async def close(self):
        """Close storage connections."""


class FileTargetStorage(TargetStorage):
    """Stores target pages as JSON documents under a data directory."""

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'storage_errors': 0,
        }

    async def initialize(self):
        """Create data directory structure."""
        try:
            (self.data_directory / 'content').mkdir(parents=True, exist_ok=True)
            (self.data_directory / 'index').mkdir(exist_ok=True)

            stats_file = self.data_directory / 'stats.json'
            if stats_file.exists():
                with open(stats_file, 'r') as f:
                    self.stats.update(json.load(f))
        except (OSError, ValueError) as e:
            raise TargetStorageError(f"Failed to initialize target storage: {e}") from e

        self.logger.info(f"Target storage initialized at {self.data_directory}")

    def _get_file_path(self, fingerprint: str) -> Path:
        # First 2 chars of the fingerprint shard the content directory
        return self.data_directory / 'content' / fingerprint[:2] / f"{fingerprint}.json"

    async def store(self, page: TargetPage) -> bool:
        try:
            file_path = self._get_file_path(page.fingerprint)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            data = asdict(page)
            data['stored_at'] = datetime.now(timezone.utc).isoformat()

            with open(file_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)

            self._append_index(page)
            self.stats['total_stored'] += 1
            self.logger.debug(f"Stored target page {page.url} ({page.relevance:.3f})")
            return True

        except OSError as e:
            self.stats['storage_errors'] += 1
            self.logger.error(f"Error storing target page {page.url}: {e}")
            return False

    def _append_index(self, page: TargetPage):
        index_file = self.data_directory / 'index' / 'targets.jsonl'
        entry = {
            'url': page.url,
            'fingerprint': page.fingerprint,
            'relevance': page.relevance,
            'file_path': str(self._get_file_path(page.fingerprint).relative_to(self.data_directory)),
        }
        with open(index_file, 'a', encoding='utf-8') as f:
            f.write(json.dumps(entry, ensure_ascii=False) + '\n')

    def load(self, fingerprint: str) -> Optional[TargetPage]:
        """Read a stored page back."""
        file_path = self._get_file_path(fingerprint)
        if not file_path.exists():
            return None
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        data.pop('stored_at', None)
        return TargetPage(**data)

    async def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

    async def close(self):
        """Save statistics."""
        try:
            with open(self.data_directory / 'stats.json', 'w') as f:
                json.dump(self.stats, f, indent=2)
        except OSError as e:
            self.logger.error(f"Error saving statistics: {e}")
