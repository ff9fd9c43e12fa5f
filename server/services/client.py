"""
BGGClient - async HTTP client for the BoardGameGeek XML API 2.

Returns response bodies as opaque strings and maps every failure to a
typed service error so the rate limiter can decide what to retry.
"""

from typing import Any

import httpx
from loguru import logger

from server.services.errors import (
    RateLimitError,
    RequestTimeoutError,
    ServiceUnavailableError,
    UpstreamError,
)
from server.settings import global_settings

SERVICE_ID = "bgg"


class BGGClient:
    """
    Thin upstream client; no caching, no retries.

    Usage:
        async with BGGClient() as client:
            xml = await client.fetch_xml("search", {"query": "catan"})
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or global_settings.bgg_base_url).rstrip("/")
        self._timeout = timeout or global_settings.bgg_request_timeout
        self._transport = transport

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                headers={"Accept": "application/xml"},
                transport=self._transport,
            )
        return self._http_client

    async def fetch_xml(self, endpoint: str, params: dict[str, Any] | None = None) -> str:
        """
        GET ``{base_url}/{endpoint}`` and return the body text.

        Raises:
            RateLimitError: On HTTP 429
            ServiceUnavailableError: On HTTP 5xx
            UpstreamError: On other error statuses, transport errors, empty bodies
            RequestTimeoutError: If the request times out
        """
        client = await self._get_http_client()
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        query = {k: v for k, v in (params or {}).items() if v is not None}

        try:
            response = await client.get(url, params=query)
            response.raise_for_status()

        except httpx.TimeoutException as e:
            raise RequestTimeoutError(SERVICE_ID, self._timeout) from e

        except httpx.HTTPStatusError as e:
            raise _status_error(e.response) from e

        except httpx.RequestError as e:
            raise UpstreamError(str(e) or type(e).__name__, service_id=SERVICE_ID) from e

        text = response.text
        if not text.strip():
            raise UpstreamError(
                "Empty response received",
                service_id=SERVICE_ID,
                status_code=response.status_code,
            )
        return text

    async def search(
        self, query: str, type: str = "boardgame", exact: Any = None
    ) -> str:
        return await self.fetch_xml(
            "search", {"query": query, "type": type, "exact": exact}
        )

    async def thing(self, id: str, stats: int = 1, versions: int = 0) -> str:
        return await self.fetch_xml(
            "thing", {"id": id, "stats": stats, "versions": versions}
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
            logger.debug("BGGClient closed")

    async def __aenter__(self) -> "BGGClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _status_error(response: httpx.Response) -> UpstreamError | RateLimitError:
    status = response.status_code
    if status == 429:
        return RateLimitError(SERVICE_ID, retry_after=_retry_after(response))
    message = f"HTTP {status}: {response.text[:200]}"
    if status >= 500:
        return ServiceUnavailableError(message, service_id=SERVICE_ID, status_code=status)
    return UpstreamError(message, service_id=SERVICE_ID, status_code=status)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None

