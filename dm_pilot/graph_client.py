"""
Graph Client - HTTP wrapper around the Instagram Graph API.

Owns timeouts, retry/backoff and error classification for every call the
core makes to the platform. Callers never parse error messages: they branch
on `GraphAPIError.kind`.

Retry Policy:
    - Retries on HTTP 429, HTTP >= 500 and transport failures
    - Waits `Retry-After` (header or body `retry_after`) when present,
      otherwise 1s * 2^attempt
    - At most `max_retries` attempts in total (default 3)

Error Classification (raised after the last attempt):
    401          -> token_expired
    429          -> rate_limited
    other non-2xx -> api_error
    no response  -> network_error

Usage:
    client = GraphClient(timeout=10.0, max_retries=3)
    response = await client.request(
        "GET", client.versioned("/me/conversations"),
        access_token=token, params={"fields": "participants,updated_time"},
    )
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

from dm_pilot.models import ErrorKind

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.instagram.com"
IG_API_VERSION = "v23.0"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 3
BASE_DELAY_SECONDS = 1.0


class GraphAPIError(Exception):
    """Final failure of a Graph API call."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.retry_after = retry_after
        self.data = data

    @property
    def retryable(self) -> bool:
        if self.kind == ErrorKind.NETWORK_ERROR:
            return True
        return self.status is not None and (self.status == 429 or self.status >= 500)


@dataclass
class GraphResponse:
    status: int
    data: Any
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def parse_retry_after(headers: Any, data: Any) -> Optional[float]:
    """Read a retry delay in seconds from the `Retry-After` header or a body `retry_after`."""
    raw_header = headers.get("retry-after") if headers is not None else None
    if isinstance(raw_header, str):
        try:
            return float(int(raw_header.strip()))
        except ValueError:
            pass

    if isinstance(data, dict):
        value = data.get("retry_after")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)

    return None


def classify_status(status: int) -> ErrorKind:
    if status == 401:
        return ErrorKind.TOKEN_EXPIRED
    if status == 429:
        return ErrorKind.RATE_LIMITED
    return ErrorKind.API_ERROR


def error_from_response(status: int, data: Any, headers: Any) -> GraphAPIError:
    kind = classify_status(status)
    if kind == ErrorKind.TOKEN_EXPIRED:
        message = "Instagram token expired. Please reconnect your Instagram account."
    elif kind == ErrorKind.RATE_LIMITED:
        message = "Instagram API rate limit hit."
    else:
        message = f"Instagram API request failed ({status})."
    return GraphAPIError(
        message,
        kind=kind,
        status=status,
        retry_after=parse_retry_after(headers, data),
        data=data,
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, GraphAPIError) and exc.retryable


class GraphClient:
    """
    Async Graph API client with retry and typed errors.

    A shared `httpx.AsyncClient` may be injected (tests pass one backed by
    `httpx.MockTransport`); otherwise the client owns its own.
    """

    def __init__(
        self,
        base_url: str = GRAPH_BASE_URL,
        api_version: str = IG_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = BASE_DELAY_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

        logger.info(
            f"Graph client initialized: {self.base_url}/{api_version} "
            f"(timeout={timeout}s, max_retries={max_retries})"
        )

    def versioned(self, path: str) -> str:
        """Prefix a path with the API version: `/me` -> `/v23.0/me`."""
        normalized = path if path.startswith("/") else f"/{path}"
        return f"/{self.api_version}{normalized}"

    def url(self, path: str) -> str:
        normalized = path if path.startswith("/") else f"/{path}"
        return f"{self.base_url}{normalized}"

    def _wait(self, retry_state) -> float:
        exc = retry_state.outcome.exception()
        if isinstance(exc, GraphAPIError) and exc.retry_after is not None:
            return exc.retry_after
        return self.base_delay * (2 ** (retry_state.attempt_number - 1))

    async def request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        post_request_delay: float = 0.0,
    ) -> GraphResponse:
        """
        Perform a request with retry.

        Args:
            method: HTTP method.
            path: Path below the base URL (use `versioned()` for versioned endpoints).
            access_token: Sent as a bearer token when given.
            params: Query parameters.
            json: JSON body.
            max_retries: Total attempts for this call. Defaults to the client value.
            timeout: Per-attempt timeout in seconds.
            post_request_delay: Seconds to pause after a successful call,
                used by batch callers to self-throttle.

        Returns:
            GraphResponse for a 2xx answer.

        Raises:
            GraphAPIError: After retries are exhausted, on a non-retryable
                status, or on transport failure.
        """
        attempts = max(1, max_retries or self.max_retries)
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )

        response = await retrying(
            self._send,
            method,
            self.url(path),
            headers=headers,
            params=params,
            json=json,
            timeout=timeout or self.timeout,
        )

        if post_request_delay > 0:
            await self._sleep(post_request_delay)

        return response

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        params: Optional[dict[str, Any]],
        json: Any,
        timeout: float,
    ) -> GraphResponse:
        """One attempt. Converts every non-2xx answer into a GraphAPIError."""
        try:
            response = await self._http.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                timeout=timeout,
            )
        except httpx.TransportError as e:
            raise GraphAPIError(
                "Instagram network request failed.",
                kind=ErrorKind.NETWORK_ERROR,
                data=str(e),
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = response.text or None

        if not 200 <= response.status_code < 300:
            logger.debug(f"{method} {url} -> {response.status_code}")
            raise error_from_response(response.status_code, data, response.headers)

        return GraphResponse(
            status=response.status_code,
            data=data,
            headers=dict(response.headers),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
