"""
Tests for the Graph API client.

This test suite verifies:
- Versioned paths and bearer authentication
- Retry on 429 / 5xx / transport errors with Retry-After support
- Error classification (token_expired, rate_limited, api_error, network_error)
- Post-request throttling delay
"""

import httpx
import pytest

from dm_pilot.graph_client import GraphAPIError, classify_status, parse_retry_after
from dm_pilot.models import ErrorKind


class _Sequence:
    """Handler that answers with a scripted list of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class TestPaths:
    """Tests for URL building."""

    def test_versioned_prefixes_api_version(self, make_graph_client):
        client = make_graph_client(_Sequence(httpx.Response(200, json={})))
        assert client.versioned("/me/conversations") == "/v23.0/me/conversations"
        assert client.versioned("me") == "/v23.0/me"

    def test_custom_version(self, make_graph_client):
        client = make_graph_client(_Sequence(httpx.Response(200, json={})), api_version="v21.0")
        assert client.versioned("/me") == "/v21.0/me"

    @pytest.mark.asyncio
    async def test_request_hits_base_url_with_bearer_token(self, make_graph_client):
        handler = _Sequence(httpx.Response(200, json={"id": "1"}))
        client = make_graph_client(handler)

        response = await client.request("GET", client.versioned("/me"), access_token="tok")

        assert response.ok
        assert response.data == {"id": "1"}
        request = handler.requests[0]
        assert str(request.url) == "https://graph.instagram.com/v23.0/me"
        assert request.headers["Authorization"] == "Bearer tok"


class TestRetry:
    """Tests for the retry policy."""

    @pytest.mark.asyncio
    async def test_server_error_then_success(self, make_graph_client, no_sleep):
        handler = _Sequence(
            httpx.Response(500, json={"error": "boom"}),
            httpx.Response(200, json={"ok": True}),
        )
        client = make_graph_client(handler)

        response = await client.request("GET", "/me")

        assert response.data == {"ok": True}
        assert len(handler.requests) == 2
        assert no_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_exponential_backoff_between_attempts(self, make_graph_client, no_sleep):
        handler = _Sequence(
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json={}),
        )
        client = make_graph_client(handler)

        await client.request("GET", "/me")

        assert no_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_after_header_is_honoured(self, make_graph_client, no_sleep):
        handler = _Sequence(
            httpx.Response(429, headers={"Retry-After": "7"}, json={}),
            httpx.Response(200, json={}),
        )
        client = make_graph_client(handler)

        await client.request("GET", "/me")

        assert no_sleep.delays == [7.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self, make_graph_client):
        handler = _Sequence(httpx.Response(500, json={"error": "down"}))
        client = make_graph_client(handler)

        with pytest.raises(GraphAPIError) as exc_info:
            await client.request("GET", "/me")

        assert exc_info.value.kind == ErrorKind.API_ERROR
        assert exc_info.value.status == 500
        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_max_retries_override(self, make_graph_client):
        handler = _Sequence(httpx.Response(500))
        client = make_graph_client(handler)

        with pytest.raises(GraphAPIError):
            await client.request("GET", "/me", max_retries=1)

        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_unauthorized_is_not_retried(self, make_graph_client):
        handler = _Sequence(httpx.Response(401, json={"error": {"code": 190}}))
        client = make_graph_client(handler)

        with pytest.raises(GraphAPIError) as exc_info:
            await client.request("GET", "/me")

        assert exc_info.value.kind == ErrorKind.TOKEN_EXPIRED
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, make_graph_client):
        handler = _Sequence(httpx.Response(400, json={"error": "bad"}))
        client = make_graph_client(handler)

        with pytest.raises(GraphAPIError) as exc_info:
            await client.request("POST", "/x", json={})

        assert exc_info.value.kind == ErrorKind.API_ERROR
        assert exc_info.value.data == {"error": "bad"}
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self, make_graph_client):
        handler = _Sequence(httpx.Response(429, json={"retry_after": 2}))
        client = make_graph_client(handler)

        with pytest.raises(GraphAPIError) as exc_info:
            await client.request("GET", "/me")

        assert exc_info.value.kind == ErrorKind.RATE_LIMITED
        assert exc_info.value.retry_after == 2.0

    @pytest.mark.asyncio
    async def test_transport_error_becomes_network_error(self, make_graph_client):
        handler = _Sequence(httpx.ConnectError("connection refused"))
        client = make_graph_client(handler)

        with pytest.raises(GraphAPIError) as exc_info:
            await client.request("GET", "/me")

        assert exc_info.value.kind == ErrorKind.NETWORK_ERROR
        assert exc_info.value.status is None
        assert len(handler.requests) == 3


class TestThrottling:
    """Tests for the post-request delay used by batch callers."""

    @pytest.mark.asyncio
    async def test_post_request_delay(self, make_graph_client, no_sleep):
        client = make_graph_client(_Sequence(httpx.Response(200, json={})))

        await client.request("GET", "/me", post_request_delay=0.2)

        assert no_sleep.delays == [0.2]


class TestHelpers:
    """Tests for retry-after parsing and status classification."""

    def test_retry_after_from_header(self):
        assert parse_retry_after({"retry-after": "12"}, None) == 12.0

    def test_retry_after_from_body(self):
        assert parse_retry_after({}, {"retry_after": 3}) == 3.0

    def test_retry_after_missing_or_invalid(self):
        assert parse_retry_after({"retry-after": "soon"}, {"retry_after": "x"}) is None
        assert parse_retry_after({}, None) is None

    @pytest.mark.parametrize("status,kind", [
        (401, ErrorKind.TOKEN_EXPIRED),
        (429, ErrorKind.RATE_LIMITED),
        (400, ErrorKind.API_ERROR),
        (503, ErrorKind.API_ERROR),
    ])
    def test_classify_status(self, status, kind):
        assert classify_status(status) == kind

    def test_retryable_flag(self):
        assert GraphAPIError("x", ErrorKind.NETWORK_ERROR).retryable
        assert GraphAPIError("x", ErrorKind.API_ERROR, status=502).retryable
        assert not GraphAPIError("x", ErrorKind.TOKEN_EXPIRED, status=401).retryable
