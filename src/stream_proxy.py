"""
Same-origin proxy for HLS manifests and segments.

Fetches an absolute upstream URL with bounded time, redirects and body
size, rewrites manifests so that every reference loops back through the
proxy, and returns segments untouched. CORS headers are always permissive
so browser players can consume upstreams that send none.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

from config import settings
from errors import GatewayError, UpstreamStatusError, ValidationError
from manifest_rewriter import HLS_MIME_TYPE, MANIFEST_EXTENSION, ManifestRewriter

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Range",
}


def validate_proxy_url(url: Optional[str]) -> str:
    """Accept only absolute http/https URLs"""
    if not url:
        raise ValidationError("missing url parameter")
    try:
        parsed = urlparse(url)
    except ValueError:
        raise ValidationError("invalid url, only http/https allowed")
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        raise ValidationError("invalid url, only http/https allowed")
    return url


def is_manifest(url: str, content_type: str) -> bool:
    return MANIFEST_EXTENSION in url.lower() or "mpegurl" in (content_type or "").lower()


@dataclass
class ProxiedResponse:
    body: bytes
    content_type: Optional[str]
    cache_control: str
    is_manifest: bool
    truncated: bool = False
    headers: Dict[str, str] = field(default_factory=dict)


class StreamProxy:
    def __init__(
        self,
        rewriter: Optional[ManifestRewriter] = None,
        timeout: Optional[float] = None,
        max_redirects: Optional[int] = None,
        max_body_bytes: Optional[int] = None,
        segment_max_age: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.rewriter = rewriter or ManifestRewriter()
        self.max_body_bytes = max_body_bytes if max_body_bytes is not None else settings.PROXY_MAX_BODY_BYTES
        self.segment_max_age = segment_max_age if segment_max_age is not None else settings.SEGMENT_CACHE_MAX_AGE
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout if timeout is not None else settings.PROXY_TIMEOUT),
            follow_redirects=True,
            max_redirects=max_redirects if max_redirects is not None else settings.PROXY_MAX_REDIRECTS,
        )

    async def close(self):
        await self.http_client.aclose()

    async def fetch(self, url: str, user_agent: Optional[str] = None) -> ProxiedResponse:
        """Fetch ``url`` and prepare it for relaying to a browser player."""
        url = validate_proxy_url(url)

        headers = {}
        if user_agent:
            headers["User-Agent"] = user_agent

        try:
            async with self.http_client.stream("GET", url, headers=headers) as response:
                if not 200 <= response.status_code < 400:
                    logger.warning(f"Upstream returned {response.status_code} for proxied URL")
                    raise UpstreamStatusError(response.status_code)
                body, truncated = await self._read_capped(response)
                content_type = response.headers.get("content-type")
                final_url = str(response.url)
        except httpx.HTTPError as e:
            logger.warning(f"Upstream fetch failed: {type(e).__name__}: {e}")
            raise GatewayError("upstream request failed") from e

        manifest = is_manifest(url, content_type or "")
        if manifest:
            # Relative references resolve against where the manifest actually came from
            body = self.rewriter.rewrite(body, final_url)
            cache_control = "no-cache"
        else:
            cache_control = f"public, max-age={self.segment_max_age}"

        if not content_type and manifest:
            content_type = HLS_MIME_TYPE

        response_headers = dict(CORS_HEADERS)
        response_headers["Cache-Control"] = cache_control

        return ProxiedResponse(
            body=body,
            content_type=content_type,
            cache_control=cache_control,
            is_manifest=manifest,
            truncated=truncated,
            headers=response_headers,
        )

    async def _read_capped(self, response: httpx.Response):
        """Read at most ``max_body_bytes``; anything beyond is dropped."""
        chunks = []
        total = 0
        truncated = False
        async for chunk in response.aiter_bytes():
            remaining = self.max_body_bytes - total
            if len(chunk) > remaining:
                chunks.append(chunk[:remaining])
                total += remaining
                truncated = True
                break
            chunks.append(chunk)
            total += len(chunk)

        if truncated:
            logger.warning(f"Upstream body exceeded {self.max_body_bytes} bytes, truncated")
        return b"".join(chunks), truncated
