"""
Mode Arbiter — reduces the local role and the remote mode selection into one
current Mode.

The remote AppState record is the authoritative selection. Whether a group
mode actually takes effect depends on a broadcast flag: the host's own room
flag when hosting, or the existence of the watched room's discovery record
when viewing. The arbiter follows whichever flag is relevant and notifies
listeners once per distinct resulting mode.
"""

import logging
import time
from typing import Awaitable, Callable

from pydantic import ValidationError

from mode.models import (
    CURRENT_MODE_GROUP,
    CURRENT_MODE_PAIRED,
    CURRENT_MODE_SOLO,
    BroadcastFlags,
    Mode,
    ModeKind,
    RemoteModeState,
)
from store import paths
from store.base import RemoteStore, Snapshot, Subscription
from store.errors import StoreError
from store.tree import join_path

logger = logging.getLogger(__name__)

ModeCallback = Callable[[Mode], Awaitable[None]]


def resolve_mode(
    local_role: ModeKind,
    remote_mode: ModeKind | None,
    partner_id: str | None,
    flags: BroadcastFlags,
) -> Mode:
    """Pure: the same inputs always give the same Mode."""
    requested = remote_mode if remote_mode is not None else local_role
    if requested == ModeKind.GROUP_HOST and flags.host_broadcasting:
        return Mode.group_host()
    if (
        requested == ModeKind.GROUP_VIEWER
        and flags.watched_broadcasting
        and flags.watched_host_id
    ):
        return Mode.group_viewer(flags.watched_host_id)
    if requested == ModeKind.PAIRED and partner_id:
        return Mode.paired(partner_id)
    return Mode.solo()


class ModeArbiter:
    """Follows one user's mode selection. Instantiate one per device."""

    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        local_role: ModeKind = ModeKind.SOLO,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._user_id = user_id
        self._local_role = local_role
        self._clock = clock
        self._remote: RemoteModeState | None = None
        self._flags = BroadcastFlags()
        self._flag_path: str | None = None
        self._flag_subscription: Subscription | None = None
        self._state_subscription: Subscription | None = None
        self._mode = Mode.solo()
        self._callbacks: list[ModeCallback] = []

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def flags(self) -> BroadcastFlags:
        return self._flags.model_copy()

    @property
    def remote_state(self) -> RemoteModeState | None:
        return self._remote

    def on_mode_change(self, callback: ModeCallback) -> None:
        """Register callback: async fn(mode: Mode)."""
        self._callbacks.append(callback)

    async def start(self) -> None:
        if self._state_subscription is not None:
            return
        await self._recompute()
        self._state_subscription = await self._store.subscribe(
            paths.app_state(self._user_id), self._on_app_state
        )
        logger.info(f"Mode arbiter following {self._user_id}")

    async def stop(self) -> None:
        if self._state_subscription:
            await self._store.unsubscribe(self._state_subscription)
            self._state_subscription = None
        await self._follow_flag(None)

    async def select_mode(
        self,
        kind: ModeKind,
        partner_id: str | None = None,
        session_id: str | None = None,
        host_id: str | None = None,
    ) -> None:
        """Record the local choice remotely. The resolved mode follows the echo."""
        self._local_role = kind
        fields: dict = {"LastUpdated": int(self._clock() * 1000)}
        if kind == ModeKind.PAIRED:
            fields.update(CurrentMode=CURRENT_MODE_PAIRED, SelectUser=partner_id or "None")
        elif kind == ModeKind.GROUP_HOST:
            fields.update(
                CurrentMode=CURRENT_MODE_GROUP,
                CurrentGroup=session_id or "None",
                currentlyViewing=False,
            )
        elif kind == ModeKind.GROUP_VIEWER:
            fields.update(
                CurrentMode=CURRENT_MODE_GROUP,
                currentlyViewing=True,
                roomID=session_id or "None",
                hostID=host_id or "None",
            )
        else:
            fields.update(CurrentMode=CURRENT_MODE_SOLO)

        try:
            await self._store.update(paths.app_state(self._user_id), fields)
            logger.info(f"Selected mode {kind.value}")
        except StoreError as e:
            logger.warning(f"Could not save mode selection: {e}")

    async def _on_app_state(self, snapshot: Snapshot) -> None:
        if snapshot.value is None:
            state = None
        elif isinstance(snapshot.value, dict):
            try:
                state = RemoteModeState.model_validate(snapshot.value)
            except ValidationError as e:
                logger.debug(f"Ignoring malformed AppState: {e}")
                return
        else:
            return

        self._remote = state
        await self._follow_flag(self._flag_target(state))
        await self._recompute()

    def _flag_target(self, state: RemoteModeState | None) -> str | None:
        kind = state.requested_kind if state else self._local_role
        if kind == ModeKind.GROUP_HOST and state and state.current_group:
            return join_path(paths.group(self._user_id, state.current_group), "broadcasting")
        if kind == ModeKind.GROUP_VIEWER and state and state.room_id:
            return paths.broadcast_room(state.room_id)
        return None

    async def _follow_flag(self, path: str | None) -> None:
        if path == self._flag_path:
            return
        if self._flag_subscription:
            await self._store.unsubscribe(self._flag_subscription)
            self._flag_subscription = None
        self._flag_path = path
        self._flags = BroadcastFlags()
        if path is None:
            return
        try:
            self._flag_subscription = await self._store.subscribe(path, self._on_flag)
        except StoreError as e:
            logger.warning(f"Could not follow broadcast state at {path}: {e}")

    async def _on_flag(self, snapshot: Snapshot) -> None:
        # A late snapshot from a flag we have since stopped following.
        if snapshot.path != self._flag_path:
            return
        if snapshot.path.startswith(paths.BROADCASTING_ROOMS):
            record = snapshot.value if isinstance(snapshot.value, dict) else None
            host_id = (record or {}).get("hostID") or (self._remote.host_id if self._remote else None)
            self._flags = BroadcastFlags(
                watched_broadcasting=record is not None,
                watched_host_id=host_id,
            )
        else:
            self._flags = BroadcastFlags(host_broadcasting=snapshot.value is True)
        await self._recompute()

    async def _recompute(self) -> None:
        mode = resolve_mode(
            self._local_role,
            self._remote.requested_kind if self._remote else None,
            self._remote.selected_user if self._remote else None,
            self._flags,
        )
        if mode == self._mode:
            return
        previous, self._mode = self._mode, mode
        logger.info(f"Mode {previous.kind.value} -> {mode.kind.value}")
        for cb in self._callbacks:
            try:
                await cb(mode)
            except Exception as e:
                logger.error(f"Mode callback error: {e}")
