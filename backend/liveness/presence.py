"""Publishes this device's own AppStatus so other peers can monitor it."""

import asyncio
import logging
import time
from typing import Callable

from config import HEARTBEAT_REFRESH_INTERVAL
from liveness.models import PeerStatus, StatusReason
from store import paths
from store.base import RemoteStore
from store.errors import StoreError

logger = logging.getLogger(__name__)


class PresenceReporter:
    """Writes lifecycle changes and keeps the heartbeat fresh while active."""

    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        refresh_interval: float = HEARTBEAT_REFRESH_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._user_id = user_id
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._is_active = False
        self._refresh_task: asyncio.Task | None = None

    @property
    def is_active(self) -> bool:
        return self._is_active

    async def start(self) -> None:
        await self.report(True, StatusReason.APP_LAUNCHED)
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self, reason: StatusReason = StatusReason.TERMINATED) -> None:
        if self._refresh_task:
            self._refresh_task.cancel()
            self._refresh_task = None
        await self.report(False, reason)

    async def report(self, is_active: bool, reason: StatusReason) -> None:
        """Write our status. Failures are logged; the next refresh tries again."""
        self._is_active = is_active
        status = PeerStatus(
            peer_id=self._user_id,
            is_active=is_active,
            last_heartbeat_at=int(self._clock() * 1000),
            reason=reason,
        )
        try:
            await self._store.set(
                paths.app_status(self._user_id),
                status.model_dump(by_alias=True, mode="json", exclude={"peer_id"}),
            )
            if reason != StatusReason.HEARTBEAT:
                logger.info(
                    f"Reported status: {'active' if is_active else 'inactive'} ({reason.value})"
                )
        except StoreError as e:
            logger.warning(f"Failed to report status: {e}")

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            if not self._is_active:
                continue
            try:
                await self.report(True, StatusReason.HEARTBEAT)
            except Exception as e:
                logger.warning(f"Heartbeat refresh failed: {e}")
