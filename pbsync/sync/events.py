"""Realtime event types and the capabilities the subscription manager consumes."""

import inspect
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, NamedTuple, Protocol, Sequence, Union

WILDCARD = "*"

ACTIONS = ("create", "update", "delete")


class SubscriptionKey(NamedTuple):
    """One logical subscription: a collection and a selector."""

    entity: str
    selector: str = WILDCARD

    def __str__(self) -> str:
        return f"{self.entity}:{self.selector}"


def make_key(entity: str, selector: str | None = None) -> SubscriptionKey:
    """Build a key; a missing selector means the whole collection."""
    if not entity:
        raise ValueError("entity must be a non-empty string")
    return SubscriptionKey(entity, selector or WILDCARD)


@dataclass
class RealtimeEvent:
    """A change pushed by the remote store."""

    action: str  # "create", "update", "delete"
    record: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RealtimeEvent":
        return cls(action=data.get("action", ""), record=data.get("record") or {})


RawEvent = Union[RealtimeEvent, dict[str, Any]]
EventHandler = Callable[[Union[RawEvent, Sequence[RawEvent]]], None]
ErrorHandler = Callable[[BaseException], None]
Unsubscribe = Callable[[], Union[Awaitable[None], None]]


class RealtimeSource(Protocol):
    """Remote capability: open a live subscription.

    ``on_event`` receives one event or a batch of events; ``on_error`` is
    called when the stream breaks. The returned callable tears the remote
    subscription down.
    """

    async def subscribe(
        self,
        entity: str,
        selector: str,
        on_event: EventHandler,
        on_error: ErrorHandler,
    ) -> Unsubscribe:
        ...


class BatchWriter(Protocol):
    def insert(self, record: dict[str, Any]) -> None:
        ...

    def upsert(self, record: dict[str, Any]) -> None:
        ...

    def delete(self, record_id: str) -> None:
        ...


class BatchWritable(Protocol):
    """Local capability: an atomic write scope over id-keyed records."""

    def write_batch(self) -> AbstractContextManager[BatchWriter]:
        ...


class SubscriptionHandle:
    """Cancellable wrapper around a remote unsubscribe callable.

    Closing is idempotent; the underlying callable runs at most once.
    """

    def __init__(self, key: SubscriptionKey, unsubscribe: Unsubscribe):
        self.key = key
        self._unsubscribe = unsubscribe
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        result = self._unsubscribe()
        if inspect.isawaitable(result):
            await result

    def __repr__(self) -> str:
        return f"SubscriptionHandle({self.key}, closed={self._closed})"
