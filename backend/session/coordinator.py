"""
Session Coordinator — broadcast room lifecycle and viewer accounting.

A room lives in two places: the host's own copy (with the broadcasting flag
and the viewer registrations) and, while live, a public discovery record
carrying the aggregate viewer count. The two are written independently, so
they are only eventually consistent; ``check_consistency`` reports drift
without repairing it.

The viewer count is only ever changed through store transactions, one
increment per join and one clamped decrement per leave. Failed writes are
logged and not retried.
"""

import logging
import time
import uuid
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from session.models import BroadcastConsistency, DiscoveryRecord, Session, ViewerRegistration
from store import paths
from store.base import RemoteStore, Snapshot, Subscription
from store.errors import StoreError, TransactionAborted
from store.tree import join_path

logger = logging.getLogger(__name__)


class NotSessionHost(PermissionError):
    """A host-only operation was attempted by someone else."""


def _increment_viewers(record: Any) -> Any:
    if not isinstance(record, dict):
        raise TransactionAborted("broadcast is not live")
    count = record.get("viewerCount")
    record["viewerCount"] = (count if isinstance(count, int) else 0) + 1
    return record


def _decrement_viewers(record: Any) -> Any:
    if not isinstance(record, dict):
        raise TransactionAborted("broadcast is not live")
    count = record.get("viewerCount")
    record["viewerCount"] = max(0, (count if isinstance(count, int) else 0) - 1)
    return record


class SessionCoordinator:
    """Owns room lifecycle for one device. Instantiate one per device."""

    def __init__(self, store: RemoteStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._broadcast_generation: dict[str, int] = {}
        self._event_callbacks: list = []  # async fn(event_type, data)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _write(self, description: str, operation: Awaitable[None]) -> bool:
        """Await one store write; a failure is logged and reported, never raised."""
        try:
            await operation
            return True
        except StoreError as e:
            logger.warning(f"{description} failed: {e}")
            return False

    @staticmethod
    def _require_host(session: Session, host_id: str) -> None:
        if session.host_id != host_id:
            raise NotSessionHost(f"{host_id} is not the host of room {session.session_id}")

    # --- Rooms ---

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    async def create_session(
        self, host_id: str, name: str, member_ids: set[str] | None = None
    ) -> Session:
        """Create a room owned by host_id. Raises StoreError if it cannot be saved."""
        session = Session(
            session_id=str(uuid.uuid4()),
            host_id=host_id,
            name=name,
            member_ids=set(member_ids or ()) | {host_id},
            created_at=self._now_ms(),
        )
        await self._store.set(paths.group(host_id, session.session_id), session.to_payload())
        self._sessions[session.session_id] = session
        logger.info(f"Created room '{name}' ({session.session_id})")
        await self._emit("session_created", session.model_dump(mode="json"))
        return session

    async def load_sessions(self, host_id: str) -> list[Session]:
        """Read every room the host owns into the local cache."""
        snapshot = await self._store.get(paths.groups(host_id))
        loaded = []
        for session_id, payload in (snapshot.value or {}).items():
            session = self._parse_session(host_id, session_id, payload)
            if session is not None:
                await self._read_viewer_count(session)
                self._sessions[session_id] = session
                loaded.append(session)
        return loaded

    async def fetch_session(self, host_id: str, session_id: str) -> Session | None:
        snapshot = await self._store.get(paths.group(host_id, session_id))
        session = self._parse_session(host_id, session_id, snapshot.value)
        if session is not None:
            await self._read_viewer_count(session)
        return session

    async def _read_viewer_count(self, session: Session) -> None:
        # The discovery record holds the only authoritative count.
        session.viewer_count = 0
        if not session.is_broadcasting:
            return
        record = await self.find_broadcast(session.session_id)
        if record is not None:
            session.viewer_count = record.viewer_count

    @staticmethod
    def _parse_session(host_id: str, session_id: str, payload: Any) -> Session | None:
        if not isinstance(payload, dict):
            return None
        try:
            session = Session.model_validate(
                {**payload, "session_id": session_id, "host_id": host_id}
            )
        except ValidationError as e:
            logger.debug(f"Ignoring malformed room {session_id}: {e}")
            return None
        return session

    async def delete_session(self, session: Session, host_id: str) -> None:
        """Stop any broadcast and remove the room."""
        self._require_host(session, host_id)
        if session.is_broadcasting:
            await self.stop_broadcast(session, host_id)
        await self._write(
            "Discovery record removal", self._store.delete(paths.broadcast_room(session.session_id))
        )
        await self._write(
            "Room removal", self._store.delete(paths.group(host_id, session.session_id))
        )
        self._sessions.pop(session.session_id, None)
        self._broadcast_generation.pop(session.session_id, None)
        logger.info(f"Deleted room {session.session_id}")
        await self._emit("session_deleted", {"session_id": session.session_id})

    async def add_member(self, session: Session, host_id: str, member_id: str) -> None:
        self._require_host(session, host_id)
        session.member_ids.add(member_id)
        await self._write_members(session)

    async def remove_member(self, session: Session, host_id: str, member_id: str) -> None:
        self._require_host(session, host_id)
        if member_id == session.host_id:
            raise ValueError("The host cannot be removed from their own room")
        session.member_ids.discard(member_id)
        await self._write_members(session)

    async def _write_members(self, session: Session) -> None:
        await self._write(
            "Member list update",
            self._store.set(
                join_path(paths.group(session.host_id, session.session_id), "members"),
                sorted(session.member_ids),
            ),
        )

    async def set_room_active(self, session: Session, host_id: str, active: bool) -> None:
        """Enter or leave the room as host. Leaving also ends the broadcast."""
        self._require_host(session, host_id)
        session.is_active = active
        await self._write(
            "Room active flag",
            self._store.update(paths.group(host_id, session.session_id), {"active": active}),
        )
        if not active and session.is_broadcasting:
            await self.stop_broadcast(session, host_id)

    # --- Broadcast ---

    def _bump_generation(self, session_id: str) -> int:
        generation = self._broadcast_generation.get(session_id, 0) + 1
        self._broadcast_generation[session_id] = generation
        return generation

    def _is_current(self, session_id: str, generation: int) -> bool:
        return self._broadcast_generation.get(session_id) == generation

    async def start_broadcast(self, session: Session, host_id: str, host_name: str = "") -> Session:
        """
        Go live: set the host's flag, publish the discovery record with a
        zero viewer count, and mark the host's current room active.

        The writes are independent. If a stop for the same room is issued
        while they are in flight, the remaining writes are skipped.
        """
        self._require_host(session, host_id)
        session_id = session.session_id
        generation = self._bump_generation(session_id)
        session.is_broadcasting = True
        session.viewer_count = 0

        await self._write(
            "Broadcast flag",
            self._store.update(paths.group(host_id, session_id), {"broadcasting": True}),
        )
        if not self._is_current(session_id, generation):
            logger.info(f"Broadcast start for {session_id} superseded")
            return session

        record = DiscoveryRecord(
            session_id=session_id,
            host_id=host_id,
            host_name=host_name,
            session_name=session.name,
            started_at=self._now_ms(),
            member_count=len(session.member_ids),
            viewer_count=0,
        )
        await self._write(
            "Discovery record", self._store.set(paths.broadcast_room(session_id), record.to_payload())
        )
        if not self._is_current(session_id, generation):
            logger.info(f"Broadcast start for {session_id} superseded")
            return session

        await self._write(
            "Current room",
            self._store.set(
                paths.current_group(host_id),
                {"groupID": session_id, "hostID": host_id, "isActive": True},
            ),
        )
        logger.info(f"Broadcast started for room {session_id}")
        await self._emit("broadcast_started", record.model_dump())
        return session

    async def stop_broadcast(self, session: Session, host_id: str) -> Session:
        """Clear the flag and delete the discovery record (resetting the count)."""
        self._require_host(session, host_id)
        session_id = session.session_id
        self._bump_generation(session_id)
        session.is_broadcasting = False
        session.viewer_count = 0

        await self._write(
            "Broadcast flag",
            self._store.update(paths.group(host_id, session_id), {"broadcasting": False}),
        )
        await self._write(
            "Discovery record removal", self._store.delete(paths.broadcast_room(session_id))
        )
        await self._write(
            "Current room",
            self._store.update(paths.current_group(host_id), {"isActive": False}),
        )
        logger.info(f"Broadcast stopped for room {session_id}")
        await self._emit("broadcast_stopped", {"session_id": session_id})
        return session

    # --- Viewers ---

    async def join_as_viewer(self, session: Session, viewer_id: str) -> int | None:
        """
        Count ourselves in, then register as a viewer. Returns the committed
        viewer count, or None if the room is not live or the count could not
        be changed; nothing else is written in that case.
        """
        session_id = session.session_id
        count = await self._transact_count(session, _increment_viewers, "increment")
        if count is None:
            return None

        now_ms = self._now_ms()
        registration = ViewerRegistration(
            session_id=session_id, viewer_id=viewer_id, registered_at=now_ms
        )
        await self._write(
            "Viewer registration",
            self._store.set(
                paths.group_viewer(session.host_id, session_id, viewer_id),
                registration.to_payload(),
            ),
        )
        await self._write(
            "Viewing state",
            self._store.update(
                paths.app_state(viewer_id),
                {
                    "currentlyViewing": True,
                    "roomID": session_id,
                    "hostID": session.host_id,
                    "roomName": session.name,
                    "startedViewingAt": now_ms,
                },
            ),
        )
        logger.info(f"{viewer_id} joined room {session_id} (viewers: {count})")
        await self._emit(
            "viewer_joined",
            {"session_id": session_id, "viewer_id": viewer_id, "viewer_count": count},
        )
        return count

    async def leave_as_viewer(self, session: Session, viewer_id: str) -> int | None:
        """Unregister and count ourselves out, never below zero."""
        session_id = session.session_id
        await self._write(
            "Viewer deregistration",
            self._store.delete(paths.group_viewer(session.host_id, session_id, viewer_id)),
        )

        count = await self._transact_count(session, _decrement_viewers, "decrement")

        await self._write(
            "Viewing state",
            self._store.update(
                paths.app_state(viewer_id),
                {
                    "currentlyViewing": False,
                    "roomID": "None",
                    "hostID": "None",
                    "roomName": "None",
                    "startedViewingAt": "None",
                },
            ),
        )
        logger.info(f"{viewer_id} left room {session_id} (viewers: {count})")
        await self._emit(
            "viewer_left",
            {"session_id": session_id, "viewer_id": viewer_id, "viewer_count": count},
        )
        return count

    async def _transact_count(self, session: Session, fn, label: str) -> int | None:
        try:
            record = await self._store.transact(paths.broadcast_room(session.session_id), fn)
        except TransactionAborted:
            logger.info(f"Viewer {label} skipped: room {session.session_id} is not live")
            return None
        except StoreError as e:
            logger.warning(f"Viewer {label} for room {session.session_id} failed: {e}")
            return None
        count = record.get("viewerCount", 0) if isinstance(record, dict) else 0
        session.viewer_count = count
        return count

    # --- Discovery ---

    async def find_broadcast(self, session_id: str) -> DiscoveryRecord | None:
        snapshot = await self._store.get(paths.broadcast_room(session_id))
        return self._parse_record(session_id, snapshot.value)

    async def list_broadcasts(self) -> list[DiscoveryRecord]:
        """Every live broadcast in the public listing."""
        snapshot = await self._store.get(paths.BROADCASTING_ROOMS)
        records = []
        for session_id, payload in (snapshot.value or {}).items():
            record = self._parse_record(session_id, payload)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.started_at)
        return records

    @staticmethod
    def _parse_record(session_id: str, payload: Any) -> DiscoveryRecord | None:
        if not isinstance(payload, dict):
            return None
        try:
            return DiscoveryRecord.model_validate({**payload, "session_id": session_id})
        except ValidationError as e:
            logger.debug(f"Ignoring malformed discovery record {session_id}: {e}")
            return None

    async def watch_viewer_count(
        self, session: Session, callback: Callable[[int], Awaitable[None]]
    ) -> Subscription:
        """Follow the aggregate count. A removed record reads as zero."""
        path = paths.broadcast_room(session.session_id)

        async def on_snapshot(snapshot: Snapshot) -> None:
            if snapshot.value is None:
                count = 0
            elif isinstance(snapshot.value, dict) and isinstance(
                snapshot.value.get("viewerCount"), int
            ):
                count = snapshot.value["viewerCount"]
            else:
                return
            session.viewer_count = count
            await callback(count)

        return await self._store.subscribe(path, on_snapshot)

    async def unwatch_viewer_count(self, subscription: Subscription) -> None:
        await self._store.unsubscribe(subscription)

    async def check_consistency(self, session: Session) -> BroadcastConsistency:
        """Read both copies and the registrations and report what disagrees."""
        group = await self._store.get(paths.group(session.host_id, session.session_id))
        record = await self._store.get(paths.broadcast_room(session.session_id))

        group_value = group.value if isinstance(group.value, dict) else {}
        viewers = group_value.get("viewers")
        record_value = record.value if isinstance(record.value, dict) else None
        report = BroadcastConsistency(
            session_id=session.session_id,
            host_flag=bool(group_value.get("broadcasting", False)),
            has_discovery_record=record_value is not None,
            registered_viewers=len(viewers) if isinstance(viewers, dict) else 0,
            viewer_count=record_value.get("viewerCount") if record_value else None,
        )
        if not report.is_consistent:
            logger.warning(f"Room {session.session_id} is inconsistent: {report.model_dump()}")
        return report
