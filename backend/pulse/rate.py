"""
Heart rate sources that live in the shared store.

RemoteRateFeed follows another user's published rate; HeartRatePublisher
uploads ours so partners and viewers can follow it.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from pydantic import ValidationError

from config import PUBLISH_INTERVAL, PUBLISH_REFRESH_AFTER
from pulse.models import HeartRateSample
from store import paths
from store.base import RemoteStore, Snapshot, Subscription
from store.errors import StoreError

logger = logging.getLogger(__name__)


class RemoteRateFeed:
    """Subscribes to one user's Heartbeat record at a time."""

    def __init__(self, store: RemoteStore, on_rate: Callable[[int], Awaitable[None]]) -> None:
        self._store = store
        self._on_rate = on_rate
        self._user_id: str | None = None
        self._subscription: Subscription | None = None
        self.last_rate = 0

    @property
    def user_id(self) -> str | None:
        return self._user_id

    async def follow(self, user_id: str) -> None:
        if user_id == self._user_id:
            return
        await self.stop()
        self._user_id = user_id
        try:
            self._subscription = await self._store.subscribe(
                paths.heartbeat(user_id), self._on_snapshot
            )
            logger.info(f"Following heart rate of {user_id}")
        except StoreError as e:
            logger.warning(f"Could not follow heart rate of {user_id}: {e}")

    async def stop(self) -> None:
        if self._subscription:
            await self._store.unsubscribe(self._subscription)
            self._subscription = None
        self._user_id = None
        self.last_rate = 0

    async def _on_snapshot(self, snapshot: Snapshot) -> None:
        if self._user_id is None or snapshot.path != paths.heartbeat(self._user_id):
            return
        if snapshot.value is None:
            # No published rate: the source is silent, not the previous value.
            self.last_rate = 0
            await self._on_rate(0)
            return
        if not isinstance(snapshot.value, dict):
            return
        try:
            sample = HeartRateSample.model_validate(snapshot.value)
        except ValidationError as e:
            logger.debug(f"Ignoring malformed heart rate from {self._user_id}: {e}")
            return
        self.last_rate = sample.heart_rate
        await self._on_rate(sample.heart_rate)


class HeartRatePublisher:
    """Uploads the local rate every few seconds when it is worth uploading."""

    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        rate_source: Callable[[], int],
        should_publish: Callable[[], bool],
        interval: float = PUBLISH_INTERVAL,
        refresh_after: float = PUBLISH_REFRESH_AFTER,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._user_id = user_id
        self._rate_source = rate_source
        self._should_publish = should_publish
        self._interval = interval
        self._refresh_after = refresh_after
        self._clock = clock
        self._last_published: int | None = None
        self._last_published_at = 0.0
        self._task: asyncio.Task | None = None

    async def publish_once(self) -> bool:
        """Upload the current rate if it changed or has gone stale remotely."""
        if not self._should_publish():
            return False
        rate = self._rate_source()
        if rate <= 0:
            return False
        now = self._clock()
        if rate == self._last_published and now - self._last_published_at < self._refresh_after:
            return False

        sample = HeartRateSample(heart_rate=rate, timestamp=int(now * 1000))
        try:
            await self._store.set(paths.heartbeat(self._user_id), sample.model_dump(by_alias=True))
        except StoreError as e:
            logger.warning(f"Error uploading heart rate: {e}")
            return False

        logger.debug(f"Heart rate uploaded [{rate} BPM]")
        self._last_published = rate
        self._last_published_at = now
        return True

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._publish_loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None

    async def _publish_loop(self) -> None:
        while True:
            try:
                await self.publish_once()
            except Exception as e:
                logger.warning(f"Heart rate publish failed: {e}")
            await asyncio.sleep(self._interval)
