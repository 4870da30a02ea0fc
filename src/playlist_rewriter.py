"""
HLS playlist rewriting.

Every media reference in a playlist (segment lines, variant playlists and
#EXT-X-KEY URIs) is resolved against the playlist's own URL and wrapped in
the forwarding proxy URL, so that a browser loading the rewritten playlist
keeps fetching everything through the proxy.

The rewrite is line oriented and lossless: lines that are not rewritten are
returned byte for byte, and a line that cannot be resolved is left alone
instead of failing the whole playlist.
"""

import logging
import re
from typing import List, Optional
from urllib.parse import urljoin, urlparse, quote

logger = logging.getLogger(__name__)

# Only key URIs are rewritten inside tags; every other directive is kept verbatim
KEY_TAG = "#EXT-X-KEY:"

URI_ATTRIBUTE_RE = re.compile(r'URI="([^"]+)"')

HTTP_SCHEMES = ("http", "https")


def build_proxy_url(target_url: str, proxy_endpoint: str) -> str:
    """Wrap an absolute URL in the proxy endpoint, e.g. /api/proxy?url=<encoded>"""
    return f"{proxy_endpoint}?url={quote(target_url, safe='')}"


def resolve_reference(reference: str, base_url: str) -> Optional[str]:
    """
    Resolve a playlist reference the way a browser resolves an <a href>
    against the page URL. Returns None unless the result is an http(s) URL.
    """
    try:
        resolved = urljoin(base_url, reference)
        parsed = urlparse(resolved)
    except ValueError:
        return None
    if parsed.scheme.lower() not in HTTP_SCHEMES or not parsed.netloc:
        return None
    return resolved


class PlaylistRewriter:
    def __init__(self, base_url: str, proxy_endpoint: str):
        self.base_url = base_url
        self.proxy_endpoint = proxy_endpoint
        self.rewritten_count = 0

    def rewrite(self, content: str) -> str:
        """Rewrite all media references in an M3U8 playlist to go through the proxy."""
        parsed_base = urlparse(self.base_url)
        if parsed_base.scheme.lower() not in HTTP_SCHEMES or not parsed_base.netloc:
            logger.error(
                f"Invalid base URL provided for playlist rewrite: {self.base_url}")
            return content

        self.rewritten_count = 0
        lines: List[str] = []
        for line in content.split('\n'):
            lines.append(self._rewrite_line(line))

        logger.debug(
            f"Rewrote {self.rewritten_count} references in playlist from {self.base_url}")
        return '\n'.join(lines)

    def _rewrite_line(self, line: str) -> str:
        stripped = line.strip()
        if not stripped:
            return line

        if not stripped.startswith('#'):
            return self._rewrite_uri_line(line, stripped)

        if stripped.startswith(KEY_TAG):
            return self._rewrite_key_uri(line)

        return line

    def _rewrite_uri_line(self, line: str, reference: str) -> str:
        resolved = resolve_reference(reference, self.base_url)
        if resolved is None:
            logger.debug(f"Leaving unresolvable playlist line as is: {reference}")
            return line

        self.rewritten_count += 1
        proxied = build_proxy_url(resolved, self.proxy_endpoint)
        # Keep CRLF playlists consistent
        if line.endswith('\r'):
            proxied += '\r'
        return proxied

    def _rewrite_key_uri(self, line: str) -> str:
        match = URI_ATTRIBUTE_RE.search(line)
        if not match:
            return line

        resolved = resolve_reference(match.group(1), self.base_url)
        if resolved is None:
            logger.debug(
                f"Leaving unresolvable URI attribute as is: {match.group(1)}")
            return line

        self.rewritten_count += 1
        proxied = build_proxy_url(resolved, self.proxy_endpoint)
        return f'{line[:match.start()]}URI="{proxied}"{line[match.end():]}'


def rewrite_playlist(content: str, base_url: str, proxy_endpoint: str) -> str:
    """Rewrite ``content`` fetched from ``base_url`` so every reference goes through ``proxy_endpoint``."""
    return PlaylistRewriter(base_url, proxy_endpoint).rewrite(content)
