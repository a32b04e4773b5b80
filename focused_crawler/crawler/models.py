"""
Data model shared by the frontier, the fetchers and the crawl loop.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


MIN_SCORE = 0.0
MAX_SCORE = 1.0


def clamp_score(score: float) -> float:
    """Clamp a relevance score into the oracle range."""
    return max(MIN_SCORE, min(MAX_SCORE, float(score)))


class LinkState(Enum):
    """Lifecycle of a frontier link."""
    DISCOVERED = "DISCOVERED"
    SCHEDULED = "SCHEDULED"
    FETCHING = "FETCHING"
    DONE = "DONE"
    FAILED = "FAILED"


class InsertResult(Enum):
    """Outcome of a frontier insert."""
    INSERTED = "INSERTED"
    UPDATED = "UPDATED"
    REJECTED = "REJECTED"


class FetchStatus(Enum):
    """Outcome of a single fetch attempt."""
    SUCCESS = "SUCCESS"
    FAILED_RETRYABLE = "FAILED_RETRYABLE"
    FAILED_PERMANENT = "FAILED_PERMANENT"
    DEFERRED = "DEFERRED"


@dataclass
class Link:
    """A discovered URL and its scheduling state."""
    url: str
    fingerprint: str
    host: str
    score: float
    depth: int
    state: LinkState = LinkState.DISCOVERED
    attempts: int = 0
    discovered_at: float = field(default_factory=time.time)
    last_attempt_at: Optional[float] = None
    eligible_at: float = 0.0
    outcome: Optional[str] = None

    def to_redis(self) -> Dict[str, str]:
        """Flatten to a Redis hash mapping."""
        data = {
            'url': self.url,
            'fingerprint': self.fingerprint,
            'host': self.host,
            'score': repr(self.score),
            'depth': str(self.depth),
            'state': self.state.value,
            'attempts': str(self.attempts),
            'discovered_at': repr(self.discovered_at),
            'eligible_at': repr(self.eligible_at),
        }
        if self.last_attempt_at is not None:
            data['last_attempt_at'] = repr(self.last_attempt_at)
        if self.outcome is not None:
            data['outcome'] = self.outcome
        return data

    @classmethod
    def from_redis(cls, data: Dict[str, str]) -> 'Link':
        """Create a Link from a decoded Redis hash."""
        last_attempt = data.get('last_attempt_at')
        return cls(
            url=data['url'],
            fingerprint=data['fingerprint'],
            host=data['host'],
            score=float(data['score']),
            depth=int(data['depth']),
            state=LinkState(data['state']),
            attempts=int(data.get('attempts', 0)),
            discovered_at=float(data.get('discovered_at', 0.0)),
            last_attempt_at=float(last_attempt) if last_attempt else None,
            eligible_at=float(data.get('eligible_at', 0.0)),
            outcome=data.get('outcome'),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire form used in assignment messages."""
        return {
            'url': self.url,
            'fingerprint': self.fingerprint,
            'host': self.host,
            'score': self.score,
            'depth': self.depth,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Link':
        return cls(
            url=data['url'],
            fingerprint=data['fingerprint'],
            host=data['host'],
            score=float(data.get('score', MIN_SCORE)),
            depth=int(data.get('depth', 0)),
            state=LinkState.SCHEDULED,
        )


@dataclass
class HostSchedule:
    """Per-host politeness state owned by the frontier."""
    host: str
    next_allowed_fetch_time: float = 0.0
    in_flight_count: int = 0

    @classmethod
    def from_redis(cls, host: str, data: Dict[str, str]) -> 'HostSchedule':
        return cls(
            host=host,
            next_allowed_fetch_time=float(data.get('next_allowed', 0.0)),
            in_flight_count=int(data.get('in_flight', 0)),
        )


@dataclass
class OutboundLink:
    """A link found on a fetched page."""
    url: str
    anchor_text: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {'url': self.url, 'anchor_text': self.anchor_text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OutboundLink':
        return cls(url=data['url'], anchor_text=data.get('anchor_text', ''))


@dataclass
class FetchResult:
    """Result of fetching one link."""
    fingerprint: str
    url: str
    status: FetchStatus
    status_code: int = 0
    content: Optional[str] = None
    content_type: Optional[str] = None
    outbound_links: List[OutboundLink] = field(default_factory=list)
    error: Optional[str] = None
    fetch_time: float = 0.0
    node_id: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.status == FetchStatus.FAILED_RETRYABLE

    @classmethod
    def failed(cls, link: Link, error: str, retryable: bool,
               status_code: int = 0, fetch_time: float = 0.0) -> 'FetchResult':
        status = FetchStatus.FAILED_RETRYABLE if retryable else FetchStatus.FAILED_PERMANENT
        return cls(
            fingerprint=link.fingerprint,
            url=link.url,
            status=status,
            status_code=status_code,
            error=error,
            fetch_time=fetch_time,
        )

    @classmethod
    def deferred(cls, link: Link, reason: str) -> 'FetchResult':
        return cls(
            fingerprint=link.fingerprint,
            url=link.url,
            status=FetchStatus.DEFERRED,
            error=reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'fingerprint': self.fingerprint,
            'url': self.url,
            'status': self.status.value,
            'status_code': self.status_code,
            'content': self.content,
            'content_type': self.content_type,
            'outbound_links': [link.to_dict() for link in self.outbound_links],
            'error': self.error,
            'fetch_time': self.fetch_time,
            'node_id': self.node_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FetchResult':
        """Create FetchResult from dictionary."""
        return cls(
            fingerprint=data['fingerprint'],
            url=data['url'],
            status=FetchStatus(data['status']),
            status_code=data.get('status_code', 0),
            content=data.get('content'),
            content_type=data.get('content_type'),
            outbound_links=[OutboundLink.from_dict(item)
                            for item in data.get('outbound_links', [])],
            error=data.get('error'),
            fetch_time=data.get('fetch_time', 0.0),
            node_id=data.get('node_id'),
        )
