"""
Assignments and the messages exchanged between the router and fetcher nodes.

Messages are plain dictionaries so any coordinator transport can carry them:

    {"type": "assign", "lease_id": ..., "sender": ..., "link": {...}}
    {"type": "result", "lease_id": ..., "sender": ..., "result": {...}}
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from ..crawler.models import FetchResult, Link
from .cluster import CoordinatorError


ASSIGN = "assign"
RESULT = "result"


@dataclass
class Assignment:
    """A link handed to a fetcher node under a lease."""
    link: Link
    assigned_node: str
    assigned_at: float
    lease_expires_at: float
    lease_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def fingerprint(self) -> str:
        return self.link.fingerprint

    def expired(self, now: float) -> bool:
        return now >= self.lease_expires_at


def assign_message(assignment: Assignment, sender: str) -> Dict[str, Any]:
    return {
        'type': ASSIGN,
        'lease_id': assignment.lease_id,
        'sender': sender,
        'link': assignment.link.to_dict(),
    }


def result_message(result: FetchResult, lease_id: str, sender: str) -> Dict[str, Any]:
    return {
        'type': RESULT,
        'lease_id': lease_id,
        'sender': sender,
        'result': result.to_dict(),
    }


def parse_assign(message: Dict[str, Any]) -> Tuple[Link, str, str]:
    """
    Returns:
        (link, lease_id, sender)

    Raises:
        CoordinatorError: message is not a well-formed assignment
    """
    try:
        if message['type'] != ASSIGN:
            raise CoordinatorError(f"Expected an assign message, got {message['type']!r}")
        return Link.from_dict(message['link']), str(message['lease_id']), str(message['sender'])
    except (KeyError, TypeError, ValueError) as e:
        raise CoordinatorError(f"Malformed assign message: {e}") from e


def parse_result(message: Dict[str, Any]) -> Tuple[FetchResult, str, str]:
    """
    Returns:
        (result, lease_id, sender)

    Raises:
        CoordinatorError: message is not a well-formed result
    """
    try:
        if message['type'] != RESULT:
            raise CoordinatorError(f"Expected a result message, got {message['type']!r}")
        return (FetchResult.from_dict(message['result']), str(message['lease_id']),
                str(message['sender']))
    except (KeyError, TypeError, ValueError) as e:
        raise CoordinatorError(f"Malformed result message: {e}") from e
