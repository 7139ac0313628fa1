"""
In-process RemoteStore.

Used when no remote database is configured and as the store behind the test
suite. Every operation can be given an artificial round-trip latency so that
concurrent writers genuinely interleave; transactions are optimistic
(read, compute, compare-and-set, retry) like the real database.
"""

import asyncio
import copy
import logging
from typing import Any, Callable

from config import TRANSACTION_MAX_RETRIES
from store.base import RemoteStore, Snapshot, SnapshotCallback, Subscription
from store.errors import TransactionConflict
from store.tree import is_related, join_path, read_in, split_path, write_in

logger = logging.getLogger(__name__)


class InMemoryStore(RemoteStore):
    """Versionless JSON tree with change fan-out."""

    def __init__(
        self,
        latency: Callable[[], float] | None = None,
        max_retries: int = TRANSACTION_MAX_RETRIES,
    ) -> None:
        self._root: Any = None
        self._latency = latency
        self._max_retries = max_retries
        self._subscriptions: list[Subscription] = []
        self.transaction_retries = 0

    async def _round_trip(self) -> None:
        await asyncio.sleep(self._latency() if self._latency else 0)

    def _before(self, op: str, path: str) -> None:
        """Hook run before every operation; subclasses may raise StoreError here."""

    def peek(self, path: str) -> Any:
        """Synchronous read of the current value, without latency."""
        return read_in(self._root, split_path(path))

    async def get(self, path: str) -> Snapshot:
        self._before("get", path)
        await self._round_trip()
        return Snapshot(path=path, value=self.peek(path))

    async def set(self, path: str, value: Any) -> None:
        self._before("set", path)
        await self._round_trip()
        self._apply({path: value})

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        self._before("update", path)
        await self._round_trip()
        self._apply({join_path(path, key): value for key, value in fields.items()})

    async def delete(self, path: str) -> None:
        self._before("delete", path)
        await self._round_trip()
        self._apply({path: None})

    async def transact(self, path: str, fn: Callable[[Any], Any]) -> Any:
        self._before("transact", path)
        for attempt in range(self._max_retries):
            await self._round_trip()
            seen = self.peek(path)
            proposed = fn(copy.deepcopy(seen))
            await self._round_trip()
            # Compare-and-set with no suspension point in between.
            if self.peek(path) == seen:
                self._apply({path: proposed})
                return self.peek(path)
            self.transaction_retries += 1
            logger.debug(f"Transaction on {path} lost a race (attempt {attempt + 1})")
        raise TransactionConflict(f"Transaction on {path} exhausted {self._max_retries} retries")

    async def subscribe(self, path: str, callback: SnapshotCallback) -> Subscription:
        self._before("subscribe", path)
        subscription = Subscription(path, callback)
        subscription.start()
        self._subscriptions.append(subscription)
        subscription.push(Snapshot(path=path, value=self.peek(path)))
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await self.unsubscribe(subscription)

    async def settle(self) -> None:
        """Wait until every pending change notification has been delivered."""
        for _ in range(3):
            for subscription in list(self._subscriptions):
                await subscription.join()
            await asyncio.sleep(0)

    def _apply(self, writes: dict[str, Any]) -> None:
        """Apply a batch of writes atomically and notify affected subscribers."""
        affected = [
            s for s in self._subscriptions
            if any(is_related(s.path, p) for p in writes)
        ]
        before = {id(s): self.peek(s.path) for s in affected}

        for path, value in writes.items():
            self._root = write_in(self._root, split_path(path), value)

        for subscription in affected:
            current = self.peek(subscription.path)
            if current != before[id(subscription)]:
                subscription.push(Snapshot(path=subscription.path, value=current))
