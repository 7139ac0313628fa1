"""
RemoteStore contract shared by every backend.

Paths are slash-separated keys ("Userdata/abc/AppStatus"). Values are plain
JSON-compatible data; writing ``None`` removes a key, and empty objects are
never stored.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Snapshot(BaseModel):
    """The value at a path at one point in time."""
    path: str
    value: Any = None

    @property
    def exists(self) -> bool:
        return self.value is not None


SnapshotCallback = Callable[[Snapshot], Awaitable[None]]


class Subscription:
    """Handle for a live subscription.

    Snapshots are queued and handed to the callback one at a time, so a
    single path is always observed in the order the store applied it.
    """

    def __init__(self, path: str, callback: SnapshotCallback) -> None:
        self.path = path
        self._callback = callback
        self._queue: asyncio.Queue[Snapshot | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self.active = True

    def start(self) -> None:
        self._task = asyncio.create_task(self._deliver_loop())

    def push(self, snapshot: Snapshot) -> None:
        if self.active:
            self._queue.put_nowait(snapshot)

    def close(self) -> None:
        """Stop delivering. Safe to call from inside the callback."""
        if not self.active:
            return
        self.active = False
        self._queue.put_nowait(None)

    async def join(self) -> None:
        """Wait until every queued snapshot has been delivered."""
        await self._queue.join()

    async def _deliver_loop(self) -> None:
        while True:
            snapshot = await self._queue.get()
            try:
                if snapshot is None or not self.active:
                    return
                await self._callback(snapshot)
            except Exception as e:
                logger.error(f"Subscription callback error on {self.path}: {e}", exc_info=True)
            finally:
                self._queue.task_done()


class RemoteStore(ABC):
    """Key-path document store with subscriptions and atomic transactions."""

    @abstractmethod
    async def get(self, path: str) -> Snapshot:
        """One-shot read."""

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Replace the value at path (None deletes)."""

    @abstractmethod
    async def update(self, path: str, fields: dict[str, Any]) -> None:
        """Merge fields into the value at path. Keys may be nested paths."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove the value at path."""

    @abstractmethod
    async def transact(self, path: str, fn: Callable[[Any], Any]) -> Any:
        """
        Atomically apply fn to the latest committed value and store the result.

        fn may run several times when other writers race us; it must be pure.
        Raising TransactionAborted from fn leaves the value as it is.
        Returns the committed value.
        """

    @abstractmethod
    async def subscribe(self, path: str, callback: SnapshotCallback) -> Subscription:
        """Deliver the current value now and again on every change."""

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Stop a subscription. Idempotent."""

    async def close(self) -> None:
        """Release backend resources."""
