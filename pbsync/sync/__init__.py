"""Realtime synchronization between a remote store and local record caches.

Provides reference-counted, deduplicated subscriptions with exponential
backoff reconnection.
"""

from .events import (
    RealtimeEvent,
    RealtimeSource,
    SubscriptionHandle,
    SubscriptionKey,
    WILDCARD,
)
from .subscription_manager import (
    MalformedEventError,
    ReconnectionExhaustedError,
    SubscriptionError,
    SubscriptionManager,
    SubscriptionNotFoundError,
    SubscriptionState,
    SubscriptionTimeoutError,
)

__all__ = [
    "MalformedEventError",
    "RealtimeEvent",
    "RealtimeSource",
    "ReconnectionExhaustedError",
    "SubscriptionError",
    "SubscriptionHandle",
    "SubscriptionKey",
    "SubscriptionManager",
    "SubscriptionNotFoundError",
    "SubscriptionState",
    "SubscriptionTimeoutError",
    "WILDCARD",
]
