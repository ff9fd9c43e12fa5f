"""Tests for the BGG HTTP client error mapping."""

import httpx
import pytest

from conftest import SEARCH_XML
from server.services.client import BGGClient
from server.services.errors import (
    RateLimitError,
    RequestTimeoutError,
    ServiceUnavailableError,
    UpstreamError,
)

BASE_URL = "https://bgg.test/xmlapi2"


def make_client(handler) -> BGGClient:
    return BGGClient(base_url=BASE_URL, timeout=5, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_returns_body_and_drops_empty_params():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        return httpx.Response(200, text=SEARCH_XML)

    async with make_client(handler) as client:
        body = await client.search("catan")

    assert body == SEARCH_XML
    assert seen["url"].path == "/xmlapi2/search"
    assert dict(seen["url"].params) == {"query": "catan", "type": "boardgame"}


@pytest.mark.asyncio
async def test_thing_requests_stats():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, text="<items/>")

    async with make_client(handler) as client:
        await client.thing("13")

    assert seen["params"] == {"id": "13", "stats": "1", "versions": "0"}


@pytest.mark.asyncio
async def test_429_maps_to_rate_limit_with_retry_after():
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "5"}, text="slow down")

    async with make_client(handler) as client:
        with pytest.raises(RateLimitError) as exc_info:
            await client.fetch_xml("search", {"query": "catan"})

    assert exc_info.value.retry_after == 5.0


@pytest.mark.asyncio
async def test_5xx_maps_to_service_unavailable():
    async with make_client(lambda request: httpx.Response(503, text="down")) as client:
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await client.fetch_xml("thing", {"id": "13"})

    assert exc_info.value.status_code == 503
    assert not exc_info.value.is_client_error


@pytest.mark.asyncio
async def test_4xx_maps_to_client_error():
    async with make_client(lambda request: httpx.Response(404, text="nope")) as client:
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch_xml("thing", {"id": "0"})

    assert exc_info.value.is_client_error
    assert not isinstance(exc_info.value, ServiceUnavailableError)


@pytest.mark.asyncio
async def test_empty_body_is_an_error():
    async with make_client(lambda request: httpx.Response(200, text="  ")) as client:
        with pytest.raises(UpstreamError, match="Empty response received"):
            await client.fetch_xml("search", {"query": "catan"})


@pytest.mark.asyncio
async def test_timeout_maps_to_request_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with make_client(handler) as client:
        with pytest.raises(RequestTimeoutError):
            await client.fetch_xml("search", {"query": "catan"})


@pytest.mark.asyncio
async def test_transport_failure_has_no_status():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with make_client(handler) as client:
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch_xml("search", {"query": "catan"})

    assert exc_info.value.status_code is None
