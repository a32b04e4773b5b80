"""
Relevance oracle interface and a keyword-based default implementation.

The crawl loop only depends on RelevanceOracle.score(); trained page and
link classifiers plug in by implementing it.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Union

from .models import MAX_SCORE, clamp_score


@dataclass
class PageContext:
    """A fetched page being judged for relevance."""
    url: str
    content: Optional[str]
    content_type: Optional[str] = None
    depth: int = 0


@dataclass
class LinkContext:
    """An outbound link being judged before it enters the frontier."""
    url: str
    anchor_text: str
    parent_url: str
    parent_score: float
    depth: int


Context = Union[PageContext, LinkContext]


class RelevanceOracle(ABC):
    """Estimates topical relevance; scores are within [0, 1]."""

    @abstractmethod
    def score(self, url: str, context: Context) -> float:
        """Score a page (PageContext) or an outbound link (LinkContext)."""


class KeywordRelevanceOracle(RelevanceOracle):
    """
    Scores by the fraction of configured keywords that occur in the page text,
    or in the anchor text and URL of a link. A link also inherits part of the
    relevance of the page it was found on.

    Without keywords every page is relevant and every link gets MAX_SCORE,
    which degrades to an unfocused crawl.
    """

    TOKEN_PATTERN = re.compile(r'[a-z0-9]+')

    def __init__(self, keywords: List[str], default_score: float = 0.1,
                 parent_weight: float = 0.3):
        self.keywords = [keyword.lower() for keyword in keywords if keyword.strip()]
        self.default_score = clamp_score(default_score)
        self.parent_weight = parent_weight

    def score(self, url: str, context: Context) -> float:
        if not self.keywords:
            return MAX_SCORE

        if isinstance(context, LinkContext):
            text = f"{context.anchor_text} {' '.join(self.TOKEN_PATTERN.findall(url.lower()))}"
            own = self._keyword_fraction(text)
            blended = (1 - self.parent_weight) * own + self.parent_weight * context.parent_score
            return clamp_score(max(self.default_score, blended))

        return clamp_score(self._keyword_fraction(context.content or ""))

    def _keyword_fraction(self, text: str) -> float:
        text = text.lower()
        hits = sum(1 for keyword in self.keywords if keyword in text)
        return hits / len(self.keywords)
