"""
HLS manifest rewriting.

Every media reference in a playlist (segment lines, variant playlist lines
and ``URI="..."`` attributes on tags such as EXT-X-MAP, EXT-X-KEY and
EXT-X-MEDIA) is resolved against the manifest's own URL and replaced with a
same-origin proxy URL. Everything else is left byte for byte as it was.
"""

import logging
import re
from typing import Optional
from urllib.parse import quote_plus, urljoin, urlparse

from config import settings

logger = logging.getLogger(__name__)

HLS_MIME_TYPE = "application/vnd.apple.mpegurl"
MANIFEST_EXTENSION = ".m3u8"

_URI_ATTRIBUTE = re.compile(r'URI="([^"]*)"')
# Capturing, so each line keeps its own terminator
_LINE_BREAK = re.compile(r"(\r\n|\r|\n)")


def is_absolute_url(url: str) -> bool:
    lower = url.lower()
    return lower.startswith("http://") or lower.startswith("https://")


class ManifestRewriter:
    """Rewrites playlist references into ``<proxy_path>?url=<escaped absolute URL>``"""

    def __init__(self, proxy_path: Optional[str] = None):
        self.proxy_path = proxy_path or settings.STREAM_PROXY_PATH

    def proxy_url(self, absolute_url: str) -> str:
        return f"{self.proxy_path}?url={quote_plus(absolute_url, safe='')}"

    def resolve(self, reference: str, base_url: str) -> str:
        """Resolve a possibly relative reference against the manifest URL"""
        if is_absolute_url(reference):
            return reference
        try:
            return urljoin(base_url, reference)
        except ValueError:
            return reference

    def rewrite(self, body: bytes, source_url: str) -> bytes:
        """
        Rewrite all references in ``body`` fetched from ``source_url``.

        If ``source_url`` cannot serve as a base the body is returned
        untouched; the player can still fetch absolute references directly.
        """
        if not self._usable_base(source_url):
            logger.warning("Manifest base URL is not usable, serving manifest unmodified")
            return body

        # surrogateescape keeps undecodable bytes intact through the round trip
        text = body.decode("utf-8", errors="surrogateescape")
        return self.rewrite_text(text, source_url).encode("utf-8", errors="surrogateescape")

    def rewrite_text(self, text: str, source_url: str) -> str:
        # Even indices are line contents, odd ones the terminators between them
        parts = _LINE_BREAK.split(text)
        for i in range(0, len(parts), 2):
            parts[i] = self._rewrite_line(parts[i], source_url)
        return "".join(parts)

    def _rewrite_line(self, line: str, source_url: str) -> str:
        stripped = line.strip()
        if not stripped:
            return line
        if stripped.startswith("#"):
            if 'URI="' in stripped:
                return self._rewrite_uri_attributes(line, source_url)
            return line
        # Segment or variant playlist reference
        return self.proxy_url(self.resolve(stripped, source_url))

    def _rewrite_uri_attributes(self, line: str, source_url: str) -> str:
        def _replace(match: re.Match) -> str:
            proxied = self.proxy_url(self.resolve(match.group(1), source_url))
            return f'URI="{proxied}"'
        return _URI_ATTRIBUTE.sub(_replace, line)

    @staticmethod
    def _usable_base(source_url: str) -> bool:
        try:
            parsed = urlparse(source_url)
        except (ValueError, TypeError):
            return False
        return parsed.scheme.lower() in ("http", "https") and bool(parsed.netloc)
