"""Plain HTTP page fetcher."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class PageResponse:
    """Response of a plain HTTP GET after redirects."""

    status: int
    final_url: str
    body_text: str


class StaticPageFetcher:
    """Fetches product pages with a shared httpx client (redirects followed)."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._client

    async def fetch_page(
        self,
        url: str,
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> PageResponse:
        """
        GET a page with a bounded timeout.

        Raises:
            httpx.TimeoutException: request exceeded timeout_seconds
            httpx.TransportError: connection-level failure
        """
        client = self._get_client()
        response = await client.get(url, headers=headers, timeout=timeout_seconds)
        logger.debug(f"GET {url} -> {response.status_code} ({len(response.content)} bytes)")
        return PageResponse(
            status=response.status_code,
            final_url=str(response.url),
            body_text=response.text,
        )

    async def close(self):
        """Close the HTTP client if this fetcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
