"""
URL canonicalization and fingerprinting.

The canonical form is the deduplication key of the frontier: two URLs that
canonicalize to the same string are the same link.
"""

import hashlib
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

ALLOWED_SCHEMES = ('http', 'https')
DEFAULT_PORTS = {'http': 80, 'https': 443}
MAX_URL_LENGTH = 2048


class InvalidURLError(ValueError):
    """Raised when a URL cannot be canonicalized."""
    pass


def _remove_dot_segments(path: str) -> str:
    output = []
    for segment in path.split('/'):
        if segment == '..':
            if len(output) > 1:
                output.pop()
        elif segment != '.':
            output.append(segment)
    if path.endswith(('/.', '/..')):
        output.append('')
    result = '/'.join(output)
    return result if result.startswith('/') else '/' + result


def canonicalize_url(url: str) -> str:
    """
    Normalize a URL: lowercase scheme and host, drop default port, userinfo
    and fragment, resolve dot segments and sort the query parameters.

    Raises:
        InvalidURLError: if the URL is not an absolute http(s) URL
    """
    if not url or len(url) > MAX_URL_LENGTH:
        raise InvalidURLError(f"Invalid URL length: {url!r}")

    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError as e:
        raise InvalidURLError(f"Malformed URL {url!r}: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidURLError(f"Unsupported scheme in {url!r}")

    host = (parts.hostname or '').rstrip('.')
    if not host:
        raise InvalidURLError(f"Missing host in {url!r}")
    if ':' in host:
        host = f'[{host}]'

    netloc = host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f'{host}:{port}'

    path = _remove_dot_segments(parts.path) if parts.path else '/'
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))

    return urlunsplit((scheme, netloc, path, query, ''))


def url_fingerprint(canonical_url: str) -> str:
    """Stable hash of a canonical URL."""
    return hashlib.sha256(canonical_url.encode('utf-8')).hexdigest()


def host_of(url: str) -> str:
    """Host (with non-default port) of a canonical URL."""
    return urlsplit(url).netloc
