"""
ApiClient - Thin httpx client for the upstream API.

Reads go through ResilientFetcher (cache, single-flight, retry).
Writes run under the retry engine and invalidate cached data only after
the upstream accepted them.
"""

from typing import TYPE_CHECKING, Any, Iterable

import httpx
from loguru import logger

from fetchguard.services.client import ResilientFetcher
from fetchguard.services.errors import (
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    UpstreamError,
)
from fetchguard.services.retry import parse_retry_after

if TYPE_CHECKING:
    from fetchguard.settings import Settings

# (resource_type, key); key None drops every entry of the type
InvalidationTarget = tuple[str, str | None]


class ApiClient:
    """
    HTTP access to the upstream API with resilience patterns.

    Usage:
        async with ApiClient(fetcher, "https://api.notion.com/v1", token) as api:
            page = await api.get("page", page_id, f"/pages/{page_id}")

            await api.write(
                "PATCH",
                f"/pages/{page_id}",
                json_data={"archived": True},
                invalidates=[("page", page_id), ("block", page_id)],
            )
    """

    def __init__(
        self,
        fetcher: ResilientFetcher,
        base_url: str,
        token: str = "",
        api_version: str | None = None,
        timeout: float = 30.0,
        service_id: str = "upstream",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.fetcher = fetcher
        self.service_id = service_id
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

        self._headers = {"Accept": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        if api_version:
            self._headers["Notion-Version"] = api_version

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        fetcher: ResilientFetcher | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ApiClient":
        return cls(
            fetcher if fetcher is not None else ResilientFetcher.from_settings(settings),
            base_url=settings.api_base_url,
            token=settings.api_token,
            api_version=settings.api_version,
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._http_client

    async def get(
        self,
        resource_type: str,
        key: str,
        path: str,
        params: dict[str, Any] | None = None,
        **fetch_options: Any,
    ) -> Any:
        """
        GET a resource through the cache.

        Extra keyword arguments are passed to ResilientFetcher.fetch
        (skip_cache, skip_dedup, retry_config, cache_ttl).
        """
        return await self.fetcher.fetch(
            resource_type,
            key,
            lambda: self.request("GET", path, params=params),
            **fetch_options,
        )

    async def write(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None = None,
        invalidates: Iterable[InvalidationTarget] = (),
        retry_config: Any = None,
    ) -> Any:
        """
        Send a write request, then invalidate the affected cache entries.

        Nothing is invalidated if the write fails.
        """
        result = await self.fetcher.execute(
            lambda: self.request(method, path, json_data=json_data),
            retry_config=retry_config,
            context=f"{method} {path}",
        )

        for resource_type, key in invalidates:
            self.fetcher.invalidate(resource_type, key)

        return result

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        """
        Execute a single HTTP request, without retries.

        Raises:
            RateLimitError: On 429
            UpstreamError: On any other HTTP error status
            RequestTimeoutError: If the request times out
            NetworkError: If no response was received
        """
        client = await self._get_http_client()

        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                json=json_data,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self.service_id, self._timeout) from e
        except httpx.TransportError as e:
            raise NetworkError(
                str(e) or type(e).__name__, service_id=self.service_id
            ) from e

        if response.is_error:
            raise self._error_from_response(response)

        # e.g. 204 No Content from a DELETE
        if not response.content:
            return None
        return response.json()

    def _error_from_response(self, response: httpx.Response) -> UpstreamError:
        status = response.status_code
        code = None
        message = response.text[:200]

        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code") if isinstance(body.get("code"), str) else None
            message = body.get("message") or message

        headers = dict(response.headers)
        retry_after = parse_retry_after(response.headers.get("retry-after"))

        if status == 429:
            return RateLimitError(
                self.service_id, retry_after=retry_after, code=code or "rate_limited"
            )

        logger.debug(f"{self.service_id} responded HTTP {status} ({code})")
        return UpstreamError(
            f"HTTP {status}: {message}",
            status=status,
            code=code,
            retry_after=retry_after,
            headers=headers,
            service_id=self.service_id,
        )

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

        await self.fetcher.close()
        logger.debug("ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
