"""Tests for the RemoteClient read API."""

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from pbsync.config import RemoteConfig
from pbsync.remote_client import RecordPage, RemoteClient, RemoteError


def make_client(handler, **config_kwargs) -> RemoteClient:
    config = RemoteConfig(url="http://remote.test/", **config_kwargs)
    return RemoteClient(config, transport=httpx.MockTransport(handler))


def page_response(items, page=1, per_page=30):
    return httpx.Response(200, json={
        "page": page,
        "perPage": per_page,
        "totalItems": -1,
        "totalPages": -1,
        "items": items,
    })


class TestRecordPage:
    """Tests for RecordPage parsing."""

    def test_from_dict(self):
        page = RecordPage.from_dict({
            "page": 2,
            "perPage": 10,
            "totalItems": 15,
            "totalPages": 2,
            "items": [{"id": "a"}],
        })

        assert page.page == 2
        assert page.per_page == 10
        assert page.total_items == 15
        assert page.items == [{"id": "a"}]


class TestGetList:
    """Tests for get_list()."""

    @pytest.mark.asyncio
    async def test_sends_query_params(self):
        """Test filter, sort and expand are passed through as params."""
        seen = []

        def handler(request):
            seen.append(request)
            return page_response([{"id": "b1"}])

        async with make_client(handler) as client:
            page = await client.get_list(
                "books",
                page=1,
                per_page=50,
                filter='genre = "Fantasy"',
                sort="-created",
                expand="author",
            )

        assert page.items == [{"id": "b1"}]
        request = seen[0]
        assert request.url.path == "/api/collections/books/records"
        assert request.url.params["filter"] == 'genre = "Fantasy"'
        assert request.url.params["sort"] == "-created"
        assert request.url.params["expand"] == "author"
        assert request.url.params["perPage"] == "50"

    @pytest.mark.asyncio
    async def test_omits_empty_params(self):
        """Test None filter/sort are left out of the request."""
        seen = []

        def handler(request):
            seen.append(request)
            return page_response([])

        async with make_client(handler) as client:
            await client.get_list("books")

        params = seen[0].url.params
        assert "filter" not in params
        assert "sort" not in params
        assert "expand" not in params

    @pytest.mark.asyncio
    async def test_auth_header(self):
        seen = []

        def handler(request):
            seen.append(request)
            return page_response([])

        async with make_client(handler, token="secret-token") as client:
            await client.get_list("books")

        assert seen[0].headers["Authorization"] == "secret-token"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """Test a 4xx fails immediately."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"message": "Invalid filter"})

        client = make_client(handler)
        with pytest.raises(RemoteError) as exc_info:
            await client.get_list("books", filter="bad")

        assert exc_info.value.status_code == 400
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self):
        """Test 5xx responses are retried with backoff."""
        responses = [httpx.Response(503), page_response([{"id": "b1"}])]

        def handler(request):
            return responses.pop(0)

        with patch("pbsync.remote_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            client = make_client(handler, max_retries=3)
            page = await client.get_list("books")

        assert page.items == [{"id": "b1"}]
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with patch("pbsync.remote_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            client = make_client(handler, max_retries=3)
            with pytest.raises(RemoteError, match="Max retries"):
                await client.get_list("books")

        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]


class TestGetFullList:
    """Tests for get_full_list()."""

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self):
        """Test pages are fetched until one comes back short."""
        pages = {
            "1": [{"id": "a"}, {"id": "b"}],
            "2": [{"id": "c"}],
        }
        requested = []

        def handler(request):
            page = request.url.params["page"]
            requested.append(page)
            return page_response(pages[page], page=int(page), per_page=2)

        async with make_client(handler) as client:
            items = await client.get_full_list("books", batch_size=2)

        assert [i["id"] for i in items] == ["a", "b", "c"]
        assert requested == ["1", "2"]


class TestCheckConnection:
    """Tests for check_connection()."""

    @pytest.mark.asyncio
    async def test_healthy(self):
        def handler(request):
            assert request.url.path == "/api/health"
            return httpx.Response(200, json={"code": 200})

        async with make_client(handler) as client:
            assert await client.check_connection() is True

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with patch("pbsync.remote_client.asyncio.sleep", new_callable=AsyncMock):
            client = make_client(handler, max_retries=2)
            assert await client.check_connection() is False
