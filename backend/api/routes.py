"""REST API routes for HeartLink."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from config import MAX_HEART_RATE, MIN_HEART_RATE
from mode.models import ModeKind, ModeSelection
from session.coordinator import NotSessionHost
from session.models import Session
from store.errors import StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_runtime = None


def init_routes(runtime) -> None:
    """Inject the device runtime into the routes module."""
    global _runtime
    _runtime = runtime


def _own_session(session_id: str) -> Session:
    session = _runtime.sessions.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Room not found")
    return session


# --- Device state ---

@router.get("/state")
async def get_state():
    """Current mode, peer state and pulse scheduler state."""
    return _runtime.describe()


class HeartRateBody(BaseModel):
    rate: int = Field(ge=MIN_HEART_RATE, le=MAX_HEART_RATE)


@router.post("/heart-rate")
async def post_heart_rate(body: HeartRateBody):
    await _runtime.update_local_rate(body.rate)
    return {"rate": _runtime.local_rate}


@router.post("/mode")
async def select_mode(body: ModeSelection):
    if body.kind == ModeKind.PAIRED and not body.partner_id:
        raise HTTPException(status_code=400, detail="partner_id is required")
    await _runtime.arbiter.select_mode(
        body.kind,
        partner_id=body.partner_id,
        session_id=body.session_id,
        host_id=body.host_id,
    )
    return {"status": "selected", "kind": body.kind.value}


# --- Rooms ---

class CreateSessionBody(BaseModel):
    name: str
    member_ids: list[str] = []


@router.get("/sessions")
async def list_sessions():
    sessions = _runtime.sessions.get_sessions()
    return {"sessions": [s.model_dump(mode="json") for s in sessions]}


@router.post("/sessions")
async def create_session(body: CreateSessionBody):
    try:
        session = await _runtime.sessions.create_session(
            _runtime.user_id, body.name, set(body.member_ids)
        )
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Store unavailable: {e}")
    return session.model_dump(mode="json")


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    session = _own_session(session_id)
    try:
        await _runtime.sessions.delete_session(session, _runtime.user_id)
    except NotSessionHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    return {"status": "deleted"}


class MemberBody(BaseModel):
    member_id: str


@router.post("/sessions/{session_id}/members")
async def add_member(session_id: str, body: MemberBody):
    session = _own_session(session_id)
    try:
        await _runtime.sessions.add_member(session, _runtime.user_id, body.member_id)
    except NotSessionHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    return session.model_dump(mode="json")


@router.delete("/sessions/{session_id}/members/{member_id}")
async def remove_member(session_id: str, member_id: str):
    session = _own_session(session_id)
    try:
        await _runtime.sessions.remove_member(session, _runtime.user_id, member_id)
    except NotSessionHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return session.model_dump(mode="json")


class ActiveBody(BaseModel):
    active: bool


@router.post("/sessions/{session_id}/active")
async def set_room_active(session_id: str, body: ActiveBody):
    session = _own_session(session_id)
    try:
        await _runtime.sessions.set_room_active(session, _runtime.user_id, body.active)
    except NotSessionHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    return session.model_dump(mode="json")


@router.post("/sessions/{session_id}/broadcast/start")
async def start_broadcast(session_id: str):
    session = _own_session(session_id)
    try:
        await _runtime.sessions.start_broadcast(session, _runtime.user_id, _runtime.user_name)
    except NotSessionHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    return session.model_dump(mode="json")


@router.post("/sessions/{session_id}/broadcast/stop")
async def stop_broadcast(session_id: str):
    session = _own_session(session_id)
    try:
        await _runtime.sessions.stop_broadcast(session, _runtime.user_id)
    except NotSessionHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    return session.model_dump(mode="json")


@router.get("/sessions/{session_id}/consistency")
async def check_consistency(session_id: str):
    session = _own_session(session_id)
    try:
        report = await _runtime.sessions.check_consistency(session)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Store unavailable: {e}")
    return {**report.model_dump(), "is_consistent": report.is_consistent}


# --- Discovery and viewing ---

@router.get("/broadcasts")
async def list_broadcasts():
    try:
        records = await _runtime.sessions.list_broadcasts()
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Store unavailable: {e}")
    return {"broadcasts": [r.model_dump() for r in records]}


class LeaveBody(BaseModel):
    host_id: str | None = None


@router.post("/broadcasts/{session_id}/join")
async def join_broadcast(session_id: str):
    try:
        record = await _runtime.sessions.find_broadcast(session_id)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Store unavailable: {e}")
    if record is None:
        raise HTTPException(status_code=404, detail="Broadcast not found")

    session = Session(session_id=session_id, host_id=record.host_id, name=record.session_name)
    count = await _runtime.sessions.join_as_viewer(session, _runtime.user_id)
    if count is None:
        raise HTTPException(status_code=409, detail="Broadcast is not live")
    await _runtime.arbiter.select_mode(
        ModeKind.GROUP_VIEWER, session_id=session_id, host_id=record.host_id
    )
    return {"session_id": session_id, "host_id": record.host_id, "viewer_count": count}


@router.post("/broadcasts/{session_id}/leave")
async def leave_broadcast(session_id: str, body: LeaveBody | None = None):
    host_id = body.host_id if body else None
    if host_id is None:
        remote = _runtime.arbiter.remote_state
        if remote and remote.room_id == session_id:
            host_id = remote.host_id
    if host_id is None:
        try:
            record = await _runtime.sessions.find_broadcast(session_id)
        except StoreError as e:
            raise HTTPException(status_code=503, detail=f"Store unavailable: {e}")
        host_id = record.host_id if record else None
    if host_id is None:
        raise HTTPException(status_code=404, detail="Host of this room is unknown")

    session = Session(session_id=session_id, host_id=host_id)
    count = await _runtime.sessions.leave_as_viewer(session, _runtime.user_id)
    await _runtime.arbiter.select_mode(ModeKind.SOLO)
    return {"session_id": session_id, "viewer_count": count}
