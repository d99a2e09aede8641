"""
Image downloader with three acquisition tiers.

1. Bytes already pulled out of the browser into the session's image cache
2. The protocol-captured response body of an earlier 200 response
3. A direct HTTP GET with the post's referrer and a browser user agent

A tier that fails falls through to the next one. When all three fail,
only that URL is lost.
"""

from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urljoin, urlparse
import logging

import httpx

from .crawlers.browser import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

REDIRECT_CODES = (301, 302, 303, 307, 308)


class ImageDownloader:
    """
    Fetches image bytes for one job.

    Usage:
        downloader = ImageDownloader(session, referer=seed_url)
        if await downloader.download(image_url, path):
            ...
        await downloader.close()
    """

    def __init__(
        self,
        session=None,
        referer: Optional[str] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 15.0,
        max_redirects: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the downloader.

        Args:
            session: BrowserSession whose cache and captures are consulted first
            referer: Referer header for direct downloads (defaults to the image origin)
            user_agent: User agent for direct downloads
            timeout: Direct download timeout in seconds
            max_redirects: Redirect hops followed before giving up
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.session = session
        self.referer = referer
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the reusable HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                follow_redirects=False,
                timeout=self.timeout,
                transport=self._transport,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
        return self._client

    async def close(self):
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _headers(self, url: str) -> Dict[str, str]:
        parsed = urlparse(url)
        return {
            'Referer': self.referer or f"{parsed.scheme}://{parsed.netloc}",
            'User-Agent': self.user_agent,
        }

    async def fetch_direct(self, url: str) -> bytes:
        """
        Plain HTTP(S) GET, following redirects by hand.

        Raises:
            httpx.HTTPError: On transport errors or a non-200 final status
        """
        client = await self._get_client()
        current = url
        for _ in range(self.max_redirects + 1):
            response = await client.get(current, headers=self._headers(url))
            if response.status_code in REDIRECT_CODES:
                location = response.headers.get('location')
                if not location:
                    raise httpx.HTTPStatusError(
                        "Redirect without location", request=response.request, response=response
                    )
                current = urljoin(current, location)
                continue
            if response.status_code != 200:
                raise httpx.HTTPStatusError(
                    f"HTTP {response.status_code}", request=response.request, response=response
                )
            return response.content
        raise httpx.TooManyRedirects(f"Too many redirects for {url}")

    async def fetch(self, url: str) -> Optional[bytes]:
        """
        Image bytes from the first tier that has them.

        Returns:
            The bytes, or None when every tier failed
        """
        session = self.session
        if session is not None:
            cached = session.image_cache.pop(url, None)
            if cached:
                return cached
            try:
                body = await session.get_response_body(url)
            except Exception as e:
                logger.debug(f"Captured body unavailable for {url}: {e}")
                body = None
            if body:
                return body

        try:
            return await self.fetch_direct(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug(f"Direct download failed for {url}: {e}")
        return None

    async def download(self, url: str, path: Path) -> bool:
        """Fetch an image and write it to path. Returns False if nothing was written."""
        data = await self.fetch(url)
        if not data:
            return False
        try:
            path.write_bytes(data)
        except OSError as e:
            logger.warning(f"Could not write {path}: {e}")
            return False
        return True
