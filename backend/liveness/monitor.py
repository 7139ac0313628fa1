"""
Polling liveness monitor.

Peers never hold a connection open to each other. Each peer writes its own
AppStatus record; the monitor polls that record and, independently, checks
how long it has been since the last heartbeat it saw. A peer that stops
writing is declared terminated once a full timeout window passes.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from pydantic import ValidationError

from config import HEARTBEAT_TIMEOUT, POLL_INTERVAL
from liveness.models import PeerState, PeerStatus
from store import paths
from store.base import RemoteStore
from store.errors import StoreError

logger = logging.getLogger(__name__)

StateCallback = Callable[[PeerState], Awaitable[None]]


class LivenessMonitor:
    """Tracks one peer at a time. Instantiate one per watched peer."""

    def __init__(self, store: RemoteStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock
        self._peer_id: str | None = None
        self._poll_interval: float = POLL_INTERVAL
        self._heartbeat_timeout: float = HEARTBEAT_TIMEOUT
        self._on_change: StateCallback | None = None
        self._last_state: PeerState | None = None
        self._last_heartbeat_at: float | None = None  # epoch seconds
        # Heartbeat that was already declared dead; seeing it again is not news.
        self._expired_heartbeat_at: float | None = None
        self._latest_reading_at: float | None = None  # newest lastUpdated of any state
        self._timed_out = False
        self._generation = 0
        self._poll_task: asyncio.Task | None = None
        self._timeout_task: asyncio.Task | None = None

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def state(self) -> PeerState | None:
        return self._last_state

    @property
    def last_heartbeat_at(self) -> float | None:
        return self._last_heartbeat_at

    async def start_monitoring(
        self,
        peer_id: str,
        poll_interval: float = POLL_INTERVAL,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT,
        on_change: StateCallback | None = None,
    ) -> None:
        """Start polling a peer, replacing any peer already being watched."""
        await self.stop_monitoring()

        self._generation += 1
        self._peer_id = peer_id
        self._poll_interval = poll_interval
        self._heartbeat_timeout = heartbeat_timeout
        self._on_change = on_change
        logger.info(
            f"Monitoring peer {peer_id} "
            f"(poll {poll_interval}s, timeout {heartbeat_timeout}s)"
        )

        await self._seed()
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._timeout_task = asyncio.create_task(self._timeout_loop())

    async def stop_monitoring(self) -> None:
        """Cancel both loops and forget the peer. Idempotent."""
        self._generation += 1
        for task in (self._poll_task, self._timeout_task):
            if task and not task.done():
                task.cancel()
        self._poll_task = None
        self._timeout_task = None

        if self._peer_id is not None:
            logger.info(f"Stopped monitoring peer {self._peer_id}")
        self._peer_id = None
        self._on_change = None
        self._last_state = None
        self._last_heartbeat_at = None
        self._expired_heartbeat_at = None
        self._latest_reading_at = None
        self._timed_out = False

    async def _seed(self) -> None:
        """Take the first reading so the timeout has a baseline."""
        generation = self._generation
        try:
            status = await self._fetch_status(self._peer_id)
        except StoreError as e:
            logger.debug(f"Initial status fetch for {self._peer_id} failed: {e}")
            status = None
        if generation != self._generation:
            return

        self._last_heartbeat_at = self._clock()
        if status is not None:
            await self._observe(status)

    async def _fetch_status(self, peer_id: str) -> PeerStatus | None:
        snapshot = await self._store.get(paths.app_status(peer_id))
        if not isinstance(snapshot.value, dict):
            return None
        try:
            return PeerStatus.model_validate({**snapshot.value, "peer_id": peer_id})
        except ValidationError as e:
            logger.debug(f"Ignoring malformed status for {peer_id}: {e}")
            return None

    async def poll_once(self) -> None:
        """Fetch the peer's status and report a change of inferred state."""
        peer_id = self._peer_id
        if peer_id is None:
            return
        generation = self._generation
        try:
            status = await self._fetch_status(peer_id)
        except StoreError as e:
            logger.debug(f"Status poll for {peer_id} failed, retrying next tick: {e}")
            return
        if generation != self._generation or status is None:
            return
        await self._observe(status)

    async def _observe(self, status: PeerStatus) -> None:
        new_state = status.inferred_state()
        heartbeat = status.last_heartbeat_seconds

        # After a timeout only a newer write of any kind is news, so a peer
        # parked in the background stays terminated across windows.
        if self._timed_out and (
            heartbeat is None
            or (self._expired_heartbeat_at is not None and heartbeat <= self._expired_heartbeat_at)
        ):
            return
        if heartbeat is not None and (
            self._latest_reading_at is None or heartbeat > self._latest_reading_at
        ):
            self._latest_reading_at = heartbeat

        if new_state != self._last_state:
            self._last_state = new_state
            self._timed_out = False
            if new_state == PeerState.ACTIVE:
                self._last_heartbeat_at = heartbeat if heartbeat is not None else self._clock()
            logger.info(f"Peer {self._peer_id} is now {new_state.value} ({status.reason.value})")
            await self._notify(new_state)
        elif (
            new_state == PeerState.ACTIVE
            and heartbeat is not None
            and (self._last_heartbeat_at is None or heartbeat > self._last_heartbeat_at)
        ):
            self._last_heartbeat_at = heartbeat

    async def check_timeout(self) -> None:
        """Declare the peer terminated once its heartbeat is a full window old."""
        if self._peer_id is None or self._last_heartbeat_at is None:
            return
        now = self._clock()
        elapsed = now - self._last_heartbeat_at
        if elapsed < self._heartbeat_timeout:
            return

        expired = self._last_heartbeat_at
        self._last_heartbeat_at = now
        if self._last_state == PeerState.TERMINATED:
            return

        logger.info(f"Peer {self._peer_id} heartbeat timed out after {elapsed:.0f}s")
        self._expired_heartbeat_at = max(expired, self._latest_reading_at or expired)
        self._timed_out = True
        self._last_state = PeerState.TERMINATED
        await self._notify(PeerState.TERMINATED)

    async def _notify(self, state: PeerState) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change(state)
        except Exception as e:
            logger.error(f"Peer state callback error: {e}")

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.poll_once()
            except Exception as e:
                logger.warning(f"Liveness poll failed: {e}")

    async def _timeout_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.check_timeout()
            except Exception as e:
                logger.warning(f"Liveness timeout check failed: {e}")
