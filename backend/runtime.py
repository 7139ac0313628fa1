"""
Device runtime — wires the four core components together for one user.

The resolved mode decides three things: whether the pulse scheduler is
required at all, which rate feeds it (the local sensor or a remote user's
published rate), and whether our own rate is published for others.
"""

import logging
from typing import Awaitable, Callable

from config import HEARTBEAT_TIMEOUT, POLL_INTERVAL
from liveness.models import PeerState
from liveness.monitor import LivenessMonitor
from liveness.presence import PresenceReporter
from mode.arbiter import ModeArbiter
from mode.models import Mode, ModeKind
from pulse.models import BeatEvent
from pulse.rate import HeartRatePublisher, RemoteRateFeed
from pulse.scheduler import PulseScheduler
from session.coordinator import SessionCoordinator
from store.base import RemoteStore
from store.errors import StoreError

logger = logging.getLogger(__name__)

PeerStateCallback = Callable[[PeerState], Awaitable[None]]


class DeviceRuntime:
    """Everything one signed-in device runs. Instantiate once per process."""

    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        user_name: str = "",
        poll_interval: float = POLL_INTERVAL,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.user_name = user_name
        self._poll_interval = poll_interval
        self._heartbeat_timeout = heartbeat_timeout

        self.arbiter = ModeArbiter(store, user_id)
        self.scheduler = PulseScheduler()
        self.monitor = LivenessMonitor(store)
        self.sessions = SessionCoordinator(store)
        self.presence = PresenceReporter(store, user_id)
        self.rate_feed = RemoteRateFeed(store, self._on_remote_rate)
        self.publisher = HeartRatePublisher(
            store,
            user_id,
            rate_source=lambda: self._local_rate,
            should_publish=self._is_producer,
        )

        self._local_rate = 0
        self._peer_state: PeerState | None = None
        self._peer_callbacks: list[PeerStateCallback] = []
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._running = False

        self.arbiter.on_mode_change(self._on_mode)
        self.scheduler.on_beat(self._on_beat)

    @property
    def mode(self) -> Mode:
        return self.arbiter.mode

    @property
    def local_rate(self) -> int:
        return self._local_rate

    @property
    def peer_state(self) -> PeerState | None:
        return self._peer_state

    def describe(self) -> dict:
        """Current mode, peer state and pulse scheduler state as plain JSON."""
        return {
            "user_id": self.user_id,
            "mode": self.mode.model_dump(mode="json"),
            "peer_state": self._peer_state.value if self._peer_state else None,
            "local_rate": self._local_rate,
            "scheduler": {
                "state": self.scheduler.state.value,
                "rate": self.scheduler.rate,
                "interval": self.scheduler.interval,
            },
        }

    # --- Listener registration ---

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)
        self.sessions.on_event(callback)

    def on_mode_change(self, callback: Callable[[Mode], Awaitable[None]]) -> None:
        self.arbiter.on_mode_change(callback)

    def on_peer_state_change(self, callback: PeerStateCallback) -> None:
        self._peer_callbacks.append(callback)

    def on_beat(self, callback: Callable[[BeatEvent], Awaitable[None]]) -> None:
        self.scheduler.on_beat(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.presence.start()
        try:
            await self.sessions.load_sessions(self.user_id)
        except StoreError as e:
            logger.warning(f"Could not load rooms: {e}")
        await self.arbiter.start()
        await self._apply_mode(self.arbiter.mode)
        await self.scheduler.start()
        await self.publisher.start()
        logger.info(f"Device runtime started for {self.user_id}")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await self.publisher.stop()
        await self.scheduler.stop()
        await self.rate_feed.stop()
        await self.monitor.stop_monitoring()
        await self.arbiter.stop()
        await self.presence.stop()
        logger.info(f"Device runtime stopped for {self.user_id}")

    # --- Rates ---

    async def update_local_rate(self, rate: int) -> None:
        """Feed a reading from the local sensor."""
        self._local_rate = max(0, int(rate))
        kind = self.mode.kind
        if kind in (ModeKind.SOLO, ModeKind.GROUP_HOST):
            self.scheduler.set_rate(self._local_rate)
        elif kind == ModeKind.PAIRED and self.rate_feed.last_rate <= 0:
            self.scheduler.set_rate(self._local_rate)
        await self._emit("heart_rate", {"rate": self._local_rate, "source": "local"})

    async def _on_remote_rate(self, rate: int) -> None:
        mode = self.mode
        followed = self.rate_feed.user_id
        if mode.kind == ModeKind.PAIRED and followed == mode.partner_id:
            self.scheduler.set_rate(rate if rate > 0 else self._local_rate)
        elif mode.kind == ModeKind.GROUP_VIEWER and followed == mode.host_id:
            self.scheduler.set_rate(rate)
        else:
            return
        await self._emit("heart_rate", {"rate": rate, "source": followed})

    def _is_producer(self) -> bool:
        mode = self.mode
        if mode.kind == ModeKind.PAIRED:
            return mode.partner_id is not None
        return mode.kind in (ModeKind.SOLO, ModeKind.GROUP_HOST)

    # --- Mode and peer handling ---

    async def _on_mode(self, mode: Mode) -> None:
        await self._apply_mode(mode)
        await self._emit("mode_changed", mode.model_dump(mode="json"))

    async def _apply_mode(self, mode: Mode) -> None:
        if mode.kind == ModeKind.PAIRED:
            if self.monitor.peer_id != mode.partner_id:
                self._peer_state = None
                await self.monitor.start_monitoring(
                    mode.partner_id,
                    poll_interval=self._poll_interval,
                    heartbeat_timeout=self._heartbeat_timeout,
                    on_change=self._on_peer_state,
                )
            await self.rate_feed.follow(mode.partner_id)
            self.scheduler.set_required(self._peer_state == PeerState.ACTIVE)
            if self.rate_feed.last_rate <= 0:
                self.scheduler.set_rate(self._local_rate)
            return

        await self.monitor.stop_monitoring()
        self._peer_state = None

        if mode.kind == ModeKind.GROUP_VIEWER:
            await self.rate_feed.follow(mode.host_id)
        else:
            await self.rate_feed.stop()
            # A zero local rate pauses rather than keep a remote rate running.
            self.scheduler.set_rate(self._local_rate)
        self.scheduler.set_required(True)

    async def _on_peer_state(self, state: PeerState) -> None:
        mode = self.mode
        if mode.kind != ModeKind.PAIRED or self.monitor.peer_id != mode.partner_id:
            return
        self._peer_state = state
        self.scheduler.set_required(state == PeerState.ACTIVE)
        await self._emit("peer_state_changed", {"peer_id": mode.partner_id, "state": state.value})
        for cb in self._peer_callbacks:
            try:
                await cb(state)
            except Exception as e:
                logger.error(f"Peer state callback error: {e}")

    async def _on_beat(self, event: BeatEvent) -> None:
        await self._emit("beat", event.model_dump(mode="json"))
