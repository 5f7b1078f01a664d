"""Local SQLite cache for records mirrored from the remote store."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)

# SQL schema for the record cache
SCHEMA = """
-- One row per cached record, keyed by collection and record id
CREATE TABLE IF NOT EXISTS records (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (collection, id)
);

CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection);
"""


@dataclass
class Change:
    """A committed change to one record."""

    type: str  # "insert", "update", "delete"
    id: str
    record: dict[str, Any] | None = None


ChangeListener = Callable[[list[Change]], None]


def _record_id(record: dict[str, Any]) -> str:
    record_id = record.get("id") if isinstance(record, dict) else None
    if not isinstance(record_id, str) or not record_id:
        raise ValueError(f"Record is missing required 'id' field: {record!r}")
    return record_id


class WriteBatch:
    """Writes collected inside one ``RecordStore.write_batch()`` scope.

    Nothing touches the database until the scope exits cleanly.
    """

    def __init__(self, store: "RecordStore"):
        self._store = store
        self._ops: list[tuple[str, str, dict[str, Any] | None]] = []

    def insert(self, record: dict[str, Any]) -> None:
        self._ops.append(("insert", _record_id(record), dict(record)))

    def upsert(self, record: dict[str, Any]) -> None:
        self._ops.append(("update", _record_id(record), dict(record)))

    def delete(self, record_id: str) -> None:
        self._ops.append(("delete", record_id, None))

    def __len__(self) -> int:
        return len(self._ops)


class RecordStore:
    """Id-keyed records of one collection, with atomic batches and listeners."""

    def __init__(self, conn: sqlite3.Connection, collection: str):
        self._conn = conn
        self.collection = collection
        self._listeners: list[ChangeListener] = []
        self._batch: WriteBatch | None = None

    @contextmanager
    def write_batch(self) -> Iterator[WriteBatch]:
        """Open an atomic write scope.

        All writes made through the yielded batch are committed in a single
        transaction when the block exits, and listeners are notified once.
        If the block raises, nothing is written. Nested scopes join the
        outermost one.
        """
        if self._batch is not None:
            yield self._batch
            return

        batch = WriteBatch(self)
        self._batch = batch
        try:
            yield batch
        finally:
            self._batch = None

        # Only reached when the block did not raise
        changes = self._commit(batch)
        if changes:
            self._notify(changes)

    def _commit(self, batch: WriteBatch) -> list[Change]:
        changes: list[Change] = []
        with self._conn:
            for op, record_id, record in batch._ops:
                if op == "delete":
                    cursor = self._conn.execute(
                        "DELETE FROM records WHERE collection = ? AND id = ?",
                        (self.collection, record_id),
                    )
                    if cursor.rowcount:
                        changes.append(Change("delete", record_id))
                    continue

                existing = self._load(record_id)
                if op == "update" and existing is not None:
                    record = {**existing, **record}

                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO records (collection, id, data, updated_at)
                    VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                    """,
                    (self.collection, record_id, json.dumps(record, default=str)),
                )
                change_type = "insert" if existing is None else "update"
                changes.append(Change(change_type, record_id, record))

        logger.debug(f"Committed {len(changes)} change(s) to {self.collection}")
        return changes

    def _notify(self, changes: list[Change]) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception as e:
                logger.error(f"Change listener failed for {self.collection}: {e}")

    def _load(self, record_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT data FROM records WHERE collection = ? AND id = ?",
            (self.collection, record_id),
        ).fetchone()
        return json.loads(row[0]) if row else None

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener called after every committed batch.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def get(self, record_id: str) -> dict[str, Any] | None:
        """Get a record by id."""
        return self._load(record_id)

    def all(self) -> list[dict[str, Any]]:
        """Get every cached record, ordered by id."""
        rows = self._conn.execute(
            "SELECT data FROM records WHERE collection = ? ORDER BY id",
            (self.collection,),
        ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def count(self) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM records WHERE collection = ?",
            (self.collection,),
        ).fetchone()
        return row[0]

    def __contains__(self, record_id: object) -> bool:
        return isinstance(record_id, str) and self._load(record_id) is not None

    def clear(self) -> None:
        """Drop every record of this collection."""
        with self.write_batch() as batch:
            for record in self.all():
                batch.delete(record["id"])


class LocalStore:
    """SQLite database holding one ``RecordStore`` per collection."""

    def __init__(self, db_path: str | Path):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._collections: dict[str, RecordStore] = {}

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            # Ensure parent directory exists
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"LocalStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            self._collections.clear()

    def collection(self, name: str) -> RecordStore:
        """Get the record store for a collection, creating it on first use."""
        if self._conn is None:
            raise RuntimeError("LocalStore is not connected")

        store = self._collections.get(name)
        if store is None:
            store = RecordStore(self._conn, name)
            self._collections[name] = store
        return store

    def list_collections(self) -> list[str]:
        """Names of collections that have cached records."""
        if self._conn is None:
            raise RuntimeError("LocalStore is not connected")

        rows = self._conn.execute(
            "SELECT DISTINCT collection FROM records ORDER BY collection"
        ).fetchall()
        return [row[0] for row in rows]
