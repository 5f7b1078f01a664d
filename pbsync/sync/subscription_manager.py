"""Realtime subscription lifecycle for mirrored collections.

The manager owns one subscription state per (collection, selector) key and:

- deduplicates concurrent ``subscribe`` calls for the same key
- applies incoming events to the local store inside one atomic batch
- reconnects with exponential backoff when the remote stream breaks
- reference-counts consumers per collection and unsubscribes only after a
  cleanup delay, so short-lived remounts don't churn the remote connection

Everything runs on a single asyncio event loop. Shared maps are mutated
without awaiting in between, so no key is ever observed half-updated.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Sequence

from ..config import SubscriptionConfig
from .events import (
    BatchWritable,
    BatchWriter,
    RawEvent,
    RealtimeEvent,
    RealtimeSource,
    SubscriptionHandle,
    SubscriptionKey,
    make_key,
)

logger = logging.getLogger(__name__)


class SubscriptionError(Exception):
    """Base class for subscription manager errors."""


class SubscriptionTimeoutError(SubscriptionError, TimeoutError):
    """A subscription was not established within the wait budget."""


class SubscriptionNotFoundError(SubscriptionError, LookupError):
    """No subscription exists for the requested key."""


class ReconnectionExhaustedError(SubscriptionError):
    """Every reconnection attempt failed. Logged, never raised."""


class MalformedEventError(SubscriptionError, ValueError):
    """An event could not be applied. Logged and dropped, never raised."""


@dataclass
class SubscriptionState:
    """Live state for one subscription key."""

    key: SubscriptionKey
    store: BatchWritable
    handle: SubscriptionHandle | None = None
    reconnect_attempts: int = 0
    reconnect_task: asyncio.Task | None = None
    ready: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_reconnecting(self) -> bool:
        return self.reconnect_task is not None and not self.reconnect_task.done()

    @property
    def is_established(self) -> bool:
        return self.ready.is_set()


class SubscriptionManager:
    """Manages realtime subscriptions from a remote source into local stores."""

    def __init__(
        self,
        remote: RealtimeSource,
        config: SubscriptionConfig | None = None,
        log: logging.Logger | None = None,
    ):
        """Initialize the subscription manager.

        Args:
            remote: Source used to open remote subscriptions.
            config: Retry and timing budget. Defaults to SubscriptionConfig().
            log: Logger to report through. Defaults to this module's logger.
        """
        self._remote = remote
        self.config = config or SubscriptionConfig()
        self._log = log or logger

        self._states: dict[SubscriptionKey, SubscriptionState] = {}
        self._pending: dict[SubscriptionKey, asyncio.Task] = {}
        self._subscriber_counts: dict[str, int] = {}
        self._cleanup_timers: dict[str, asyncio.TimerHandle] = {}
        self._teardowns: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _is_current(self, state: SubscriptionState) -> bool:
        return self._states.get(state.key) is state

    async def _open(self, state: SubscriptionState) -> SubscriptionHandle:
        """Open the remote subscription for a state."""
        key = state.key

        def on_event(payload: RawEvent | Sequence[RawEvent]) -> None:
            self._handle_events(state, payload)

        def on_error(error: BaseException) -> None:
            self._handle_stream_error(state, error)

        unsubscribe = await self._remote.subscribe(
            key.entity, key.selector, on_event, on_error
        )
        self._log.debug(f"Subscription established: {key}")
        return SubscriptionHandle(key, unsubscribe)

    def _handle_events(
        self, state: SubscriptionState, payload: RawEvent | Sequence[RawEvent]
    ) -> None:
        """Apply one delivery of events inside a single batch."""
        if not self._is_current(state):
            self._log.debug(f"Dropping events for inactive subscription {state.key}")
            return

        if isinstance(payload, (list, tuple)):
            events = list(payload)
        else:
            events = [payload]

        try:
            with state.store.write_batch() as batch:
                for raw in events:
                    try:
                        self._apply_event(state.key, batch, raw)
                    except MalformedEventError as e:
                        self._log.error(f"Dropping event for {state.key}: {e}")
        except Exception as e:
            self._log.error(f"Failed to apply events for {state.key}: {e}")

    def _apply_event(self, key: SubscriptionKey, batch: BatchWriter, raw: Any) -> None:
        """Queue one event on the batch.

        Raises:
            MalformedEventError: If the event has no usable shape or record id.
        """
        if isinstance(raw, RealtimeEvent):
            event = raw
        elif isinstance(raw, dict):
            event = RealtimeEvent.from_dict(raw)
        else:
            raise MalformedEventError(f"Event is not an object: {raw!r}")

        if event.action not in ("create", "update", "delete"):
            self._log.warning(f"Ignoring unknown action '{event.action}' for {key}")
            return

        record: Any = event.record
        if not isinstance(record, dict):
            raise MalformedEventError(
                f"{event.action.capitalize()} event record is not an object: {record!r}"
            )

        record_id = record.get("id")
        if not isinstance(record_id, str) or not record_id:
            raise MalformedEventError(
                f"{event.action.capitalize()} event record missing id field: {record!r}"
            )

        if event.action == "create":
            batch.insert(record)
        elif event.action == "update":
            batch.upsert(record)
        else:
            batch.delete(record_id)

    def _handle_stream_error(self, state: SubscriptionState, error: BaseException) -> None:
        if not self._is_current(state):
            return

        self._log.warning(f"Subscription stream error for {state.key}: {error}")
        state.ready.clear()
        if state.handle is not None:
            self._teardown(state.handle)
            state.handle = None
        self._start_reconnection(state)

    def _start_reconnection(self, state: SubscriptionState) -> None:
        # Single flight: the in-flight task itself is the guard
        if state.is_reconnecting:
            self._log.debug(f"Reconnection already in progress for {state.key}")
            return

        state.reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect(state)
        )

    async def _reconnect(self, state: SubscriptionState) -> None:
        """Retry opening the subscription with exponential backoff."""
        key = state.key
        max_attempts = self.config.max_reconnect_attempts
        self._log.warning(f"Starting reconnection attempts for {key}")

        try:
            while True:
                delay = self.config.base_reconnect_delay * (2 ** state.reconnect_attempts)
                self._log.debug(
                    f"Reconnection attempt {state.reconnect_attempts + 1} for {key}, "
                    f"waiting {delay:.3f}s"
                )
                await asyncio.sleep(delay)

                if not self._is_current(state):
                    return

                try:
                    handle = await self._open(state)
                except Exception as e:
                    state.reconnect_attempts += 1
                    self._log.warning(
                        f"Reconnection attempt {state.reconnect_attempts} for {key} failed: {e}"
                    )
                    if state.reconnect_attempts >= max_attempts:
                        error = ReconnectionExhaustedError(
                            f"Max reconnection attempts ({max_attempts}) reached for {key}"
                        )
                        self._log.error(str(error))
                        if self._is_current(state):
                            del self._states[key]
                        return
                    continue

                if not self._is_current(state):
                    self._teardown(handle)
                    return

                state.handle = handle
                state.reconnect_attempts = 0
                state.ready.set()
                self._log.info(f"Reconnected {key}")
                return
        finally:
            if state.reconnect_task is asyncio.current_task():
                state.reconnect_task = None

    async def _establish(self, state: SubscriptionState) -> None:
        try:
            handle = await self._open(state)
        except Exception as e:
            self._log.error(f"Subscription failed for {state.key}: {e}")
            if self._is_current(state):
                self._start_reconnection(state)
            raise

        # Stale, or the stream already broke and a reconnection owns the key
        if not self._is_current(state) or state.is_reconnecting:
            self._teardown(handle)
            return

        state.handle = handle
        state.reconnect_attempts = 0
        state.ready.set()

    def _on_establish_done(self, key: SubscriptionKey, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            # Callers see the error through subscribe(); mark it retrieved
            task.exception()

    def _teardown(self, handle: SubscriptionHandle) -> None:
        """Close a remote handle in the background."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._log.warning(
                f"No running event loop, remote teardown skipped for {handle.key}"
            )
            return

        task = loop.create_task(handle.close())
        self._teardowns.add(task)
        task.add_done_callback(partial(self._on_teardown_done, handle.key))

    def _on_teardown_done(self, key: SubscriptionKey, task: asyncio.Task) -> None:
        self._teardowns.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._log.debug(f"Unsubscribe failed for {key} (expected if connection closed): {error}")

    def _release(self, state: SubscriptionState) -> None:
        if state.is_reconnecting:
            state.reconnect_task.cancel()
        state.ready.clear()
        if state.handle is not None:
            self._teardown(state.handle)
            state.handle = None

    # ------------------------------------------------------------------
    # Core subscription methods
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        entity: str,
        store: BatchWritable,
        selector: str | None = None,
    ) -> None:
        """Subscribe to realtime updates for a collection or one record.

        Returns once the remote subscription is established. Concurrent calls
        for the same key share one remote subscription.

        Args:
            entity: Remote collection name.
            store: Local store that incoming events are written to.
            selector: Record id, or None for the whole collection.

        Raises:
            Exception: The connection error, if the first attempt
                fails. Reconnection continues in the background regardless.
        """
        key = make_key(entity, selector)

        task = self._pending.get(key)
        if task is not None and task.done():
            task = None

        if task is not None:
            self._log.debug(f"Pending subscription found for {key}, waiting")
        elif key in self._states:
            self._log.debug(f"Already subscribed to {key}, skipping")
            return
        else:
            state = SubscriptionState(key, store)
            # Placeholder so is_subscribed() is true before the handshake
            self._states[key] = state
            task = asyncio.get_running_loop().create_task(self._establish(state))
            self._pending[key] = task
            task.add_done_callback(partial(self._on_establish_done, key))

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                # Torn down by unsubscribe() before the handshake finished
                return
            raise

    def unsubscribe(self, entity: str, selector: str | None = None) -> None:
        """Stop realtime updates for a collection or one record.

        Takes effect immediately; the remote teardown finishes in the
        background and its failures are only logged. Called off the event
        loop, the local state is still dropped but the remote teardown is
        skipped.
        """
        key = make_key(entity, selector)

        task = self._pending.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

        state = self._states.pop(key, None)
        if state is None:
            return

        self._release(state)
        self._log.debug(f"Unsubscribed from {key}")

    def unsubscribe_all(self, entity: str) -> None:
        """Stop every subscription for a collection."""
        keys = {k for k in self._states if k.entity == entity}
        keys.update(k for k in self._pending if k.entity == entity)
        if not keys:
            return

        self._log.debug(f"Unsubscribing from all subscriptions for {entity} ({len(keys)})")
        for key in keys:
            self.unsubscribe(key.entity, key.selector)

    async def close(self) -> None:
        """Cancel timers, drop every subscription and wait for teardowns."""
        for timer in self._cleanup_timers.values():
            timer.cancel()
        self._cleanup_timers.clear()
        self._subscriber_counts.clear()

        for key in set(self._states) | set(self._pending):
            self.unsubscribe(key.entity, key.selector)

        if self._teardowns:
            await asyncio.gather(*list(self._teardowns), return_exceptions=True)

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def is_subscribed(self, entity: str, selector: str | None = None) -> bool:
        """Whether a subscription exists for the key, including while pending."""
        return make_key(entity, selector) in self._states

    def get_state(
        self, entity: str, selector: str | None = None
    ) -> SubscriptionState | None:
        return self._states.get(make_key(entity, selector))

    async def wait_for_subscription(
        self,
        entity: str,
        selector: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Wait until a subscription is established.

        Args:
            entity: Remote collection name.
            selector: Record id, or None for the whole collection.
            timeout: Seconds to wait. Defaults to config.wait_timeout.

        Raises:
            SubscriptionNotFoundError: If there is no subscription for the key.
            SubscriptionTimeoutError: If it is not established in time.
            Exception: The connection error, if the pending attempt fails.
        """
        key = make_key(entity, selector)
        if timeout is None:
            timeout = self.config.wait_timeout

        state = self._states.get(key)
        if state is None:
            raise SubscriptionNotFoundError(f"No subscription found for {key}")

        task = self._pending.get(key)
        try:
            if task is not None and not task.done():
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            elif not state.ready.is_set():
                await asyncio.wait_for(state.ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise SubscriptionTimeoutError(
                f"Subscription timeout after {timeout}s for {key}"
            ) from None
        except asyncio.CancelledError:
            if task is not None and task.cancelled():
                raise SubscriptionNotFoundError(
                    f"Subscription for {key} was cancelled"
                ) from None
            raise

    # ------------------------------------------------------------------
    # Lifecycle management
    # ------------------------------------------------------------------

    async def add_subscriber(self, entity: str, store: BatchWritable) -> None:
        """Track a new consumer; the first one starts the subscription."""
        count = self._subscriber_counts.get(entity, 0) + 1
        self._subscriber_counts[entity] = count
        self._log.debug(f"Subscriber added for {entity} (count={count})")

        timer = self._cleanup_timers.pop(entity, None)
        if timer is not None:
            timer.cancel()
            self._log.debug(f"Cleanup timer cancelled for {entity}")

        if count == 1 and not self.is_subscribed(entity):
            self._log.debug(f"First subscriber for {entity}, starting subscription")
            await self.subscribe(entity, store)

    def remove_subscriber(self, entity: str) -> None:
        """Track a consumer leaving; the last one arms the cleanup timer."""
        count = self._subscriber_counts.get(entity, 0)
        if count == 0:
            self._log.warning(f"remove_subscriber called for {entity} with no subscribers")
            return

        count -= 1
        self._subscriber_counts[entity] = count
        self._log.debug(f"Subscriber removed for {entity} (count={count})")

        if count == 0:
            existing = self._cleanup_timers.pop(entity, None)
            if existing is not None:
                existing.cancel()

            delay = self.config.cleanup_delay
            self._cleanup_timers[entity] = asyncio.get_running_loop().call_later(
                delay, self._run_cleanup, entity
            )
            self._log.debug(f"Cleanup timer scheduled for {entity} ({delay}s)")

    def _run_cleanup(self, entity: str) -> None:
        self._cleanup_timers.pop(entity, None)
        if self._subscriber_counts.get(entity, 0) == 0:
            self._log.debug(f"Cleanup timer fired for {entity}, unsubscribing")
            self.unsubscribe_all(entity)
            self._subscriber_counts.pop(entity, None)

    def get_subscriber_count(self, entity: str) -> int:
        """Current number of consumers for a collection."""
        return self._subscriber_counts.get(entity, 0)
