"""Async HTTP client for reading records from the remote store.

Handles paging and retries with exponential backoff. Filter and sort
arguments are the compiled strings from ``pbsync.query``; when they are
None the parameter is omitted from the request entirely.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import RemoteConfig

logger = logging.getLogger(__name__)

FULL_LIST_BATCH_SIZE = 500


class RemoteError(Exception):
    """A remote request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class RecordPage:
    """One page of a list response."""

    page: int
    per_page: int
    total_items: int
    total_pages: int
    items: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordPage":
        return cls(
            page=data.get("page", 1),
            per_page=data.get("perPage", 0),
            total_items=data.get("totalItems", -1),
            total_pages=data.get("totalPages", -1),
            items=data.get("items", []),
        )


class RemoteClient:
    """Client for the remote store's record read API."""

    def __init__(
        self,
        config: RemoteConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the remote client.

        Args:
            config: Remote connection settings.
            transport: Optional httpx transport, mainly for tests.
        """
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _make_client(self) -> httpx.AsyncClient:
        headers = {}
        if self.config.token:
            headers["Authorization"] = self.config.token
        return httpx.AsyncClient(
            base_url=self.config.url.rstrip("/"),
            timeout=self.config.timeout,
            headers=headers,
            transport=self._transport,
        )

    async def __aenter__(self) -> "RemoteClient":
        self._client = self._make_client()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request_with_retry(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """GET a path with exponential backoff retry.

        Server errors, connection failures and timeouts are retried; client
        errors fail immediately.

        Raises:
            RemoteError: If the request fails or retries are exhausted.
        """
        client = self._client or self._make_client()
        owns_client = self._client is None
        backoff = 1.0
        max_retries = max(1, self.config.max_retries)

        try:
            for attempt in range(max_retries):
                try:
                    response = await client.get(path, params=params)

                    if response.status_code == 200:
                        return response.json()

                    elif response.status_code >= 500:
                        # Server error, retry
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        raise RemoteError(
                            f"HTTP {response.status_code}: {response.text}",
                            status_code=response.status_code,
                        )

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{max_retries}"
                    )
                except httpx.HTTPError as e:
                    raise RemoteError(f"Request error: {e}") from e

                # Exponential backoff
                if attempt < max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2
        finally:
            if owns_client:
                await client.aclose()

        raise RemoteError(f"Max retries ({max_retries}) exceeded for {path}")

    async def get_list(
        self,
        collection: str,
        page: int = 1,
        per_page: int = 30,
        filter: str | None = None,
        sort: str | None = None,
        expand: str | None = None,
        skip_total: bool = False,
    ) -> RecordPage:
        """Fetch one page of records.

        Args:
            collection: Remote collection name.
            page: 1-based page number.
            per_page: Page size.
            filter: Compiled filter string, or None for no filtering.
            sort: Compiled sort string, or None for the default order.
            expand: Comma-separated relation fields to expand.
            skip_total: Ask the server not to count total items.
        """
        params: dict[str, Any] = {"page": page, "perPage": per_page}
        if filter:
            params["filter"] = filter
        if sort:
            params["sort"] = sort
        if expand:
            params["expand"] = expand
        if skip_total:
            params["skipTotal"] = 1

        data = await self._request_with_retry(
            f"/api/collections/{collection}/records", params
        )
        return RecordPage.from_dict(data)

    async def get_full_list(
        self,
        collection: str,
        filter: str | None = None,
        sort: str | None = None,
        expand: str | None = None,
        batch_size: int = FULL_LIST_BATCH_SIZE,
    ) -> list[dict[str, Any]]:
        """Fetch every record, page by page."""
        items: list[dict[str, Any]] = []
        page = 1

        while True:
            result = await self.get_list(
                collection,
                page=page,
                per_page=batch_size,
                filter=filter,
                sort=sort,
                expand=expand,
                skip_total=True,
            )
            items.extend(result.items)
            if len(result.items) < batch_size:
                break
            page += 1

        logger.debug(f"Fetched {len(items)} record(s) from {collection}")
        return items

    async def check_connection(self) -> bool:
        """Check if the remote store is reachable and healthy."""
        try:
            await self._request_with_retry("/api/health")
            return True
        except RemoteError:
            return False
