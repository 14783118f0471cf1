"""GitHub GraphQL transport with a small concurrency gate"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import httpx

from trailer_sync.core.errors import ProtocolError, TransportError

if TYPE_CHECKING:
    from trailer_sync.core.config import Settings

logger = logging.getLogger(__name__)

GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"


class GraphQLClient:
    """
    Posts query text and returns the decoded JSON body.

    Requests beyond the concurrency limit wait on the semaphore instead of
    failing. HTTP error statuses are not raised here; GitHub explains them
    in the body, which the query layer reports.
    """

    TIMEOUT_SECONDS: float = 60.0
    DEFAULT_CONCURRENCY: int = 2

    def __init__(
        self,
        token: str,
        url: str = GITHUB_GRAPHQL_URL,
        concurrency: int = DEFAULT_CONCURRENCY,
        timeout_seconds: float = TIMEOUT_SECONDS,
    ):
        if not token:
            raise ValueError("GitHub token is required")

        self._token = token
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._gate = asyncio.Semaphore(max(1, concurrency))
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> GraphQLClient:
        return cls(
            token=settings.github_token,
            url=settings.graphql_url,
            concurrency=settings.request_concurrency,
            timeout_seconds=settings.request_timeout_seconds,
        )

    async def __aenter__(self) -> GraphQLClient:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout_seconds),
            follow_redirects=False,
            headers={
                "Authorization": f"bearer {self._token}",
                "Content-Type": "application/json",
                "User-Agent": "trailer-sync",
            },
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def post_query(self, text: str) -> dict[str, Any]:
        if not self._client:
            raise RuntimeError("Client not initialized; use async context manager")

        async with self._gate:
            try:
                response = await self._client.post(self._url, json={"query": text})
            except httpx.TimeoutException as e:
                raise TransportError(f"Request timeout: {e}") from e
            except httpx.RequestError as e:
                raise TransportError(f"Network error: {e}") from e

        if response.status_code >= 400:
            logger.debug(f"GraphQL endpoint returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise ProtocolError("No JSON in response") from e

        if not isinstance(body, dict):
            raise ProtocolError("No JSON in response")
        return body
