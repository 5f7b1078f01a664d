"""Local record cache.

Records mirrored from the remote store live in SQLite, one logical table
per collection, written through atomic batches.
"""

from .local_store import Change, LocalStore, RecordStore, WriteBatch

__all__ = ["Change", "LocalStore", "RecordStore", "WriteBatch"]
