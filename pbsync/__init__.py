"""pbsync: mirror remote collections into a local cache and keep it live."""

from .collection import SyncedCollection
from .config import Config, load_config
from .remote_client import RemoteClient, RemoteError
from .store import LocalStore, RecordStore
from .sync import SubscriptionManager

__all__ = [
    "Config",
    "LocalStore",
    "RecordStore",
    "RemoteClient",
    "RemoteError",
    "SubscriptionManager",
    "SyncedCollection",
    "load_config",
]
