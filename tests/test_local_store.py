"""Tests for the LocalStore record cache."""

import pytest

from pbsync.store import LocalStore


@pytest.fixture
def store():
    """Create an in-memory LocalStore for testing."""
    store = LocalStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def books(store):
    return store.collection("books")


class TestLocalStoreSchema:
    """Tests for database schema initialization."""

    def test_connect_creates_table(self):
        """Test that connect() creates the records table."""
        store = LocalStore(":memory:")
        store.connect()

        tables = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        table_names = [t[0] for t in tables]

        assert "records" in table_names
        store.close()

    def test_connect_is_idempotent(self, store):
        """Test calling connect() twice keeps the same connection."""
        conn = store._conn
        store.connect()
        assert store._conn is conn

    def test_file_database_creates_parent(self, tmp_path):
        """Test a file path gets its parent directory created."""
        db_path = tmp_path / "nested" / "cache.db"
        store = LocalStore(db_path)
        store.connect()

        store.collection("books")
        assert db_path.exists()
        store.close()

    def test_collection_requires_connection(self):
        with pytest.raises(RuntimeError):
            LocalStore(":memory:").collection("books")

    def test_collection_is_cached(self, store):
        assert store.collection("books") is store.collection("books")


class TestWriteBatch:
    """Tests for atomic batch writes."""

    def test_insert_and_get(self, books):
        with books.write_batch() as batch:
            batch.insert({"id": "b1", "title": "Dune", "rating": 4.5})

        assert books.get("b1") == {"id": "b1", "title": "Dune", "rating": 4.5}
        assert "b1" in books
        assert books.count() == 1

    def test_upsert_merges(self, books):
        """Test upsert keeps fields that the update does not carry."""
        with books.write_batch() as batch:
            batch.insert({"id": "b1", "title": "Dune", "genre": "SF"})
        with books.write_batch() as batch:
            batch.upsert({"id": "b1", "title": "Dune Messiah"})

        assert books.get("b1") == {"id": "b1", "title": "Dune Messiah", "genre": "SF"}

    def test_upsert_inserts_missing(self, books):
        with books.write_batch() as batch:
            batch.upsert({"id": "b1"})
        assert books.count() == 1

    def test_insert_replaces_existing(self, books):
        with books.write_batch() as batch:
            batch.insert({"id": "b1", "title": "Old", "genre": "SF"})
            batch.insert({"id": "b1", "title": "New"})

        assert books.get("b1") == {"id": "b1", "title": "New"}

    def test_delete(self, books):
        with books.write_batch() as batch:
            batch.insert({"id": "b1"})
        with books.write_batch() as batch:
            batch.delete("b1")

        assert books.get("b1") is None
        assert books.count() == 0

    def test_record_without_id_rejected(self, books):
        with pytest.raises(ValueError):
            with books.write_batch() as batch:
                batch.insert({"title": "No id"})

    def test_nothing_written_until_exit(self, books):
        """Test writes are invisible until the batch commits."""
        with books.write_batch() as batch:
            batch.insert({"id": "b1"})
            assert books.count() == 0

        assert books.count() == 1

    def test_failed_batch_writes_nothing(self, books):
        """Test an exception inside the batch discards all of its writes."""
        with pytest.raises(RuntimeError):
            with books.write_batch() as batch:
                batch.insert({"id": "b1"})
                batch.insert({"id": "b2"})
                raise RuntimeError("boom")

        assert books.count() == 0

    def test_nested_batches_join(self, books):
        """Test a nested scope commits with the outer one."""
        notifications = []
        books.add_listener(notifications.append)

        with books.write_batch() as outer:
            outer.insert({"id": "b1"})
            with books.write_batch() as inner:
                inner.insert({"id": "b2"})
            assert books.count() == 0

        assert books.count() == 2
        assert len(notifications) == 1

    def test_collections_are_isolated(self, store):
        books = store.collection("books")
        authors = store.collection("authors")
        with books.write_batch() as batch:
            batch.insert({"id": "x"})

        assert authors.count() == 0
        assert store.list_collections() == ["books"]

    def test_all_ordered_by_id(self, books):
        with books.write_batch() as batch:
            batch.insert({"id": "b2"})
            batch.insert({"id": "b1"})

        assert [r["id"] for r in books.all()] == ["b1", "b2"]

    def test_clear(self, books):
        with books.write_batch() as batch:
            batch.insert({"id": "b1"})
            batch.insert({"id": "b2"})

        books.clear()
        assert books.count() == 0


class TestListeners:
    """Tests for change notification."""

    def test_listener_receives_changes(self, books):
        notifications = []
        books.add_listener(notifications.append)

        with books.write_batch() as batch:
            batch.insert({"id": "b1"})
            batch.upsert({"id": "b1", "title": "Dune"})
            batch.delete("b1")

        assert len(notifications) == 1
        assert [(c.type, c.id) for c in notifications[0]] == [
            ("insert", "b1"),
            ("update", "b1"),
            ("delete", "b1"),
        ]

    def test_delete_of_missing_record_is_not_a_change(self, books):
        notifications = []
        books.add_listener(notifications.append)

        with books.write_batch() as batch:
            batch.delete("missing")

        assert notifications == []

    def test_remove_listener(self, books):
        notifications = []
        remove = books.add_listener(notifications.append)
        remove()

        with books.write_batch() as batch:
            batch.insert({"id": "b1"})

        assert notifications == []

    def test_failing_listener_does_not_break_commit(self, books):
        def broken(changes):
            raise RuntimeError("listener failed")

        seen = []
        books.add_listener(broken)
        books.add_listener(seen.append)

        with books.write_batch() as batch:
            batch.insert({"id": "b1"})

        assert books.count() == 1
        assert len(seen) == 1
