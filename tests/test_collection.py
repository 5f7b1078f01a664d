"""Tests for SyncedCollection."""

import asyncio
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from pbsync.collection import SyncedCollection
from pbsync.config import RemoteConfig, SubscriptionConfig
from pbsync.query import and_, desc, eq, gt
from pbsync.remote_client import RemoteClient
from pbsync.store import LocalStore
from pbsync.sync import SubscriptionManager


BOOKS = [
    {
        "id": "b1",
        "title": "The Hobbit",
        "genre": "Fantasy",
        "author": "a1",
        "expand": {"author": {"id": "a1", "name": "Tolkien"}},
    },
    {
        "id": "b2",
        "title": "Dune",
        "genre": "Science Fiction",
        "author": "a2",
        "expand": {"author": {"id": "a2", "name": "Herbert"}},
    },
]


@pytest.fixture
def requests():
    return []


@pytest.fixture
def client(requests):
    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={
            "page": 1,
            "perPage": 500,
            "totalItems": len(BOOKS),
            "totalPages": 1,
            "items": BOOKS,
        })

    return RemoteClient(
        RemoteConfig(url="http://remote.test"),
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def local_store():
    store = LocalStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def remote():
    """Mock realtime source whose subscriptions always succeed."""
    remote = MagicMock()
    remote.subscribe = AsyncMock(return_value=AsyncMock())
    return remote


@pytest.fixture
def manager(remote):
    return SubscriptionManager(remote, SubscriptionConfig(cleanup_delay=0.05))


@pytest.fixture
def authors(client, local_store, manager):
    return SyncedCollection("authors", client, local_store.collection("authors"), manager)


@pytest.fixture
def books(client, local_store, manager):
    return SyncedCollection("books", client, local_store.collection("books"), manager)


class TestFetch:
    """Tests for fetch()."""

    @pytest.mark.asyncio
    async def test_fetch_all_uses_full_list(self, books, requests):
        """Test an unfiltered fetch pages through the whole collection."""
        items = await books.fetch()

        assert len(items) == 2
        params = requests[0].url.params
        assert params["skipTotal"] == "1"
        assert "filter" not in params
        assert books.store.count() == 2

    @pytest.mark.asyncio
    async def test_fetch_compiles_query(self, books, requests):
        """Test where/order_by are compiled into filter and sort params."""
        await books.fetch(
            where=and_(eq(["genre"], "Fantasy"), gt(["page_count"], 100)),
            order_by=[desc("created")],
            limit=10,
        )

        params = requests[0].url.params
        assert params["filter"] == '(genre = "Fantasy" && page_count > 100)'
        assert params["sort"] == "-created"
        assert params["perPage"] == "10"

    @pytest.mark.asyncio
    async def test_fetch_default_limit(self, books, requests):
        await books.fetch(where=eq(["genre"], "Fantasy"))
        assert requests[0].url.params["perPage"] == "500"

    @pytest.mark.asyncio
    async def test_expand_writes_related_records(self, client, local_store, manager, authors, requests):
        """Test expanded relations are requested and stored in their collection."""
        books = SyncedCollection(
            "books",
            client,
            local_store.collection("books"),
            manager,
            expand={"author": authors},
        )

        await books.fetch()

        assert requests[0].url.params["expand"] == "author"
        assert authors.store.get("a1") == {"id": "a1", "name": "Tolkien"}
        assert authors.store.count() == 2

    def test_expand_string_sorted(self, client, local_store, manager, authors):
        books = SyncedCollection(
            "books",
            client,
            local_store.collection("books"),
            manager,
            expand={"publisher": authors, "author": authors},
        )
        assert books.expand_string == "author,publisher"


class TestRealtime:
    """Tests for the subscription helpers."""

    @pytest.mark.asyncio
    async def test_subscribe_delegates(self, books, remote):
        await books.subscribe()

        assert books.is_subscribed()
        await books.wait_for_subscription()
        assert remote.subscribe.await_args.args[:2] == ("books", "*")

        books.unsubscribe()
        assert not books.is_subscribed()

    @pytest.mark.asyncio
    async def test_record_subscription(self, books, remote):
        await books.subscribe("b1")

        assert books.is_subscribed("b1")
        books.unsubscribe_all()
        assert not books.is_subscribed("b1")

    @pytest.mark.asyncio
    async def test_watch_reference_counts(self, books, manager):
        """Test watch() keeps the subscription only while consumers remain."""
        async with books.watch():
            async with books.watch():
                assert manager.get_subscriber_count("books") == 2
            assert books.is_subscribed()

        assert manager.get_subscriber_count("books") == 0
        assert books.is_subscribed()

        await asyncio.sleep(0.1)
        assert not books.is_subscribed()

    @pytest.mark.asyncio
    async def test_watch_survives_connection_failure(self, books, remote, manager):
        """Test a failed first connection does not break the consumer."""
        remote.subscribe.side_effect = ConnectionError("refused")

        async with books.watch() as store:
            assert store is books.store

        assert manager.get_subscriber_count("books") == 0
        await manager.close()
