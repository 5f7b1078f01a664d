"""A remote collection mirrored into a local record store."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

from .query import Expression, OrderBy, compile_filter, compile_sort
from .remote_client import RemoteClient
from .store import RecordStore
from .sync import SubscriptionManager

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 500


class SyncedCollection:
    """Remote reads, local cache and realtime updates for one collection.

    Relations listed in ``expand`` are requested with every query, and the
    expanded records are written into the related collections' stores.
    """

    def __init__(
        self,
        name: str,
        client: RemoteClient,
        store: RecordStore,
        manager: SubscriptionManager,
        expand: dict[str, "SyncedCollection"] | None = None,
    ):
        self.name = name
        self.client = client
        self.store = store
        self.manager = manager
        self.expand = expand or {}

    @property
    def expand_string(self) -> str | None:
        if not self.expand:
            return None
        return ",".join(sorted(self.expand))

    async def fetch(
        self,
        where: Expression | None = None,
        order_by: Iterable[OrderBy] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Load matching records from the remote store into the local store.

        Args:
            where: Predicate tree, compiled to the remote filter syntax.
            order_by: Sort keys, compiled to the remote sort syntax.
            limit: Maximum number of records.

        Returns:
            The fetched records.
        """
        filter_string = compile_filter(where)
        sort_string = compile_sort(order_by)
        expand = self.expand_string

        if not filter_string and not sort_string and not limit and not expand:
            items = await self.client.get_full_list(self.name)
        else:
            page = await self.client.get_list(
                self.name,
                page=1,
                per_page=limit or DEFAULT_PAGE_LIMIT,
                filter=filter_string,
                sort=sort_string,
                expand=expand,
            )
            items = page.items

        with self.store.write_batch() as batch:
            for record in items:
                batch.upsert(record)

        if self.expand:
            self._write_expanded(items)

        return items

    def _write_expanded(self, items: list[dict[str, Any]]) -> None:
        for field_name, target in self.expand.items():
            related: list[dict[str, Any]] = []
            for record in items:
                value = (record.get("expand") or {}).get(field_name)
                if value is None:
                    continue
                related.extend(value if isinstance(value, list) else [value])

            if not related:
                continue

            with target.store.write_batch() as batch:
                for record in related:
                    batch.upsert(record)
            logger.debug(
                f"Wrote {len(related)} expanded '{field_name}' record(s) "
                f"from {self.name} into {target.name}"
            )

    # Realtime

    async def subscribe(self, record_id: str | None = None) -> None:
        await self.manager.subscribe(self.name, self.store, record_id)

    def unsubscribe(self, record_id: str | None = None) -> None:
        self.manager.unsubscribe(self.name, record_id)

    def unsubscribe_all(self) -> None:
        self.manager.unsubscribe_all(self.name)

    def is_subscribed(self, record_id: str | None = None) -> bool:
        return self.manager.is_subscribed(self.name, record_id)

    async def wait_for_subscription(
        self, record_id: str | None = None, timeout: float | None = None
    ) -> None:
        await self.manager.wait_for_subscription(self.name, record_id, timeout)

    @asynccontextmanager
    async def watch(self) -> AsyncIterator[RecordStore]:
        """Keep the collection subscribed while the block runs.

        A failed first connection is logged, not raised; reconnection keeps
        going in the background and the cached records stay readable.
        """
        try:
            try:
                await self.manager.add_subscriber(self.name, self.store)
            except Exception as e:
                logger.error(f"Failed to start subscription for {self.name}: {e}")
            yield self.store
        finally:
            self.manager.remove_subscriber(self.name)
