"""
HTTP infrastructure layer shared by the source clients.

Provides:
- HTTPClientError: status code, body and headers of a failed request
- HTTPClient: long-lived async HTTP client with a per-request timeout

Unlike a fire-and-forget fetcher, a failed request is never retried here.
A poll that fails is simply attempted again on the next scheduler tick, so
retrying inside the cycle would only stretch the cycle and burn rate-limit
budget.
"""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class HTTPClientError(Exception):
    """Base exception for HTTP client errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        headers: httpx.Headers | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.headers = headers if headers is not None else httpx.Headers()


class HTTPClient:
    """
    Async HTTP client wrapping one ``httpx.AsyncClient``.

    The underlying connection pool lives as long as this object, so a client
    kept in the client pool reuses its connections across poll cycles.

    Example:
        async with HTTPClient(timeout=10.0) as client:
            response = await client.get(
                "https://api.github.com/notifications",
                auth=("octocat", "token"),
            )
    """

    def __init__(
        self,
        timeout: float = 10.0,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize HTTP client.

        Args:
            timeout: Request timeout in seconds; the only timeout the engine uses.
            user_agent: Value for the User-Agent header on every request.
            transport: Optional httpx transport (tests, proxies).
        """
        self.timeout = timeout
        headers = {"User-Agent": user_agent} if user_agent else None
        self._client: httpx.AsyncClient | None = httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
            transport=transport,
            follow_redirects=True,
        )

    async def __aenter__(self) -> "HTTPClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool (idempotent)."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def closed(self) -> bool:
        return self._client is None

    async def get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> httpx.Response:
        """Perform a GET request. See ``request`` for error semantics."""
        return await self.request("GET", url, params=params, headers=headers, auth=auth)

    async def head(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> httpx.Response:
        """Perform a HEAD request. See ``request`` for error semantics."""
        return await self.request("HEAD", url, headers=headers, auth=auth)

    async def put(
        self,
        url: str,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Perform a PUT request with a JSON body."""
        return await self.request("PUT", url, headers=headers, json_body=json_body)

    async def request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Execute one HTTP request.

        Returns:
            httpx.Response for any status below 400 (including 304).

        Raises:
            HTTPClientError: On status >= 400, timeouts and transport errors.
        """
        if self._client is None:
            raise RuntimeError("HTTPClient is closed")

        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                headers=headers,
                auth=auth,
                json=json_body,
            )
        except httpx.TimeoutException as e:
            raise HTTPClientError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise HTTPClientError(f"{method} {url} failed: {type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            logger.debug(
                "%s %s returned %d", method, url, response.status_code
            )
            raise HTTPClientError(
                f"{method} {url} failed with status {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
                headers=response.headers,
            )

        return response
