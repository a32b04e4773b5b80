"""
Link extraction from fetched HTML pages.
"""

import logging
import re
from typing import List, Optional
from urllib.parse import urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

from .models import OutboundLink


SKIP_EXTENSIONS = (
    '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.zip', '.rar', '.tar', '.gz', '.exe', '.dmg', '.iso',
    '.mp3', '.mp4', '.avi', '.mov', '.wmv', '.flv',
    '.css', '.js', '.ico', '.woff', '.woff2', '.ttf', '.eot'
)


class LinkExtractor:
    """
    Extracts outbound links with their anchor text from HTML.
    """

    def __init__(self, allowed_domains: Optional[List[str]] = None,
                 blocked_domains: Optional[List[str]] = None):
        self.allowed_domains = set(allowed_domains) if allowed_domains else set()
        self.blocked_domains = set(blocked_domains) if blocked_domains else set()
        self.logger = logging.getLogger(__name__)
        self.whitespace_pattern = re.compile(r'\s+')

    def extract_links(self, base_url: str, html_content: str) -> List[OutboundLink]:
        """
        Extract and normalize the links of a page.

        Args:
            base_url: URL the page was fetched from, used to resolve relative links
            html_content: Raw HTML content

        Returns:
            Unique outbound links in document order
        """
        try:
            soup = BeautifulSoup(html_content, 'lxml')
        except Exception as e:
            self.logger.warning(f"Could not parse {base_url}: {e}")
            return []

        base_tag = soup.find('base', href=True)
        if base_tag:
            base_url = urljoin(base_url, base_tag['href'].strip())

        links = []
        seen = set()
        for anchor in soup.find_all('a', href=True):
            href = anchor['href'].strip()
            if not href or href.startswith(('#', 'javascript:', 'mailto:')):
                continue

            if anchor.get('rel') and 'nofollow' in anchor.get('rel'):
                continue

            normalized_url = self._normalize_url(urljoin(base_url, href))
            if normalized_url in seen or not self._is_valid_url(normalized_url):
                continue

            seen.add(normalized_url)
            links.append(OutboundLink(
                url=normalized_url,
                anchor_text=self._clean_text(anchor.get_text(separator=' ', strip=True)),
            ))

        self.logger.debug(f"Extracted {len(links)} links from {base_url}")
        return links

    def _normalize_url(self, url: str) -> str:
        """Lowercase the host and remove the fragment."""
        try:
            parsed = urlparse(url)
            return urlunparse((
                parsed.scheme,
                parsed.netloc.lower(),
                parsed.path,
                parsed.params,
                parsed.query,
                ''
            ))
        except ValueError:
            return url

    def _is_valid_url(self, url: str) -> bool:
        """Check if URL is worth handing to the frontier."""
        try:
            parsed = urlparse(url)
        except ValueError:
            return False

        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            return False

        domain = parsed.netloc.lower()

        if any(blocked in domain for blocked in self.blocked_domains):
            return False

        if self.allowed_domains and not any(allowed in domain for allowed in self.allowed_domains):
            return False

        return not parsed.path.lower().endswith(SKIP_EXTENSIONS)

    def _clean_text(self, text: str) -> str:
        if not text:
            return ""
        return self.whitespace_pattern.sub(' ', text.strip())
