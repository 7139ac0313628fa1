"""Tests for the session coordinator."""

import asyncio
import logging
import random

import pytest

from session.coordinator import NotSessionHost, SessionCoordinator
from session.models import Session
from store import paths
from store.memory import InMemoryStore

HOST = "host-1"


async def live_session(store, name="Evening run"):
    coordinator = SessionCoordinator(store)
    session = await coordinator.create_session(HOST, name, {"member-a"})
    await coordinator.start_broadcast(session, HOST, "Hannah")
    return coordinator, session


def viewer_count(store, session):
    record = store.peek(paths.broadcast_room(session.session_id))
    return None if record is None else record["viewerCount"]


@pytest.mark.asyncio
async def test_create_session_writes_host_copy(store):
    coordinator = SessionCoordinator(store)
    session = await coordinator.create_session(HOST, "Morning", {"member-a"})

    stored = store.peek(paths.group(HOST, session.session_id))
    assert stored["groupName"] == "Morning"
    assert stored["members"] == sorted({HOST, "member-a"})
    assert stored["broadcasting"] is False
    assert coordinator.get_session(session.session_id) is session


@pytest.mark.asyncio
async def test_start_broadcast_publishes_record_with_zero_viewers(store):
    """Going live sets the flag, the discovery record and the current room."""
    coordinator, session = await live_session(store)

    group = store.peek(paths.group(HOST, session.session_id))
    record = store.peek(paths.broadcast_room(session.session_id))
    assert group["broadcasting"] is True
    assert record["viewerCount"] == 0
    assert record["hostID"] == HOST
    assert record["hostName"] == "Hannah"
    assert record["memberCount"] == 2
    assert store.peek(paths.current_group(HOST)) == {
        "groupID": session.session_id,
        "hostID": HOST,
        "isActive": True,
    }
    report = await coordinator.check_consistency(session)
    assert report.is_consistent


@pytest.mark.asyncio
async def test_only_host_can_manage_room(store):
    coordinator = SessionCoordinator(store)
    session = await coordinator.create_session(HOST, "Mine")

    with pytest.raises(NotSessionHost):
        await coordinator.start_broadcast(session, "someone-else")
    with pytest.raises(NotSessionHost):
        await coordinator.add_member(session, "someone-else", "x")
    with pytest.raises(ValueError):
        await coordinator.remove_member(session, HOST, HOST)
    assert store.peek(paths.BROADCASTING_ROOMS) is None


@pytest.mark.asyncio
async def test_membership_changes_are_saved(store):
    coordinator = SessionCoordinator(store)
    session = await coordinator.create_session(HOST, "Mine")
    await coordinator.add_member(session, HOST, "member-b")
    await coordinator.remove_member(session, HOST, "member-b")
    await coordinator.add_member(session, HOST, "member-c")

    stored = store.peek(paths.group(HOST, session.session_id))
    assert stored["members"] == sorted({HOST, "member-c"})

    reloaded = await coordinator.fetch_session(HOST, session.session_id)
    assert reloaded.member_ids == {HOST, "member-c"}


@pytest.mark.asyncio
async def test_two_concurrent_joins_count_two(slow_store):
    """Two viewers joining at once end up at exactly two."""
    coordinator, session = await live_session(slow_store)

    counts = await asyncio.gather(
        coordinator.join_as_viewer(session, "viewer-1"),
        coordinator.join_as_viewer(session, "viewer-2"),
    )

    assert viewer_count(slow_store, session) == 2
    assert sorted(counts) == [1, 2]
    viewers = slow_store.peek(paths.group_viewers(HOST, session.session_id))
    assert set(viewers) == {"viewer-1", "viewer-2"}


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(12))
async def test_interleaved_joins_and_leaves_count_exactly(seed):
    """K joins and J leaves in any interleaving leave max(0, K - J) viewers."""
    rng = random.Random(seed)
    store = InMemoryStore(latency=lambda: rng.uniform(0, 0.003))
    coordinator, session = await live_session(store)

    k = rng.randint(0, 8)
    j = rng.randint(0, k)
    leavers = set(rng.sample(range(k), j))

    async def viewer(i):
        await asyncio.sleep(rng.uniform(0, 0.005))
        await coordinator.join_as_viewer(session, f"viewer-{i}")
        if i in leavers:
            await asyncio.sleep(rng.uniform(0, 0.005))
            await coordinator.leave_as_viewer(session, f"viewer-{i}")

    await asyncio.gather(*(viewer(i) for i in range(k)))

    assert viewer_count(store, session) == max(0, k - j)


@pytest.mark.asyncio
async def test_leave_never_goes_negative(store):
    coordinator, session = await live_session(store)
    count = await coordinator.leave_as_viewer(session, "never-joined")
    assert count == 0
    assert viewer_count(store, session) == 0


@pytest.mark.asyncio
async def test_join_when_not_live_leaves_no_stray_record(store):
    """Joining a room that is not broadcasting writes nothing at all."""
    coordinator = SessionCoordinator(store)
    session = await coordinator.create_session(HOST, "Quiet")

    count = await coordinator.join_as_viewer(session, "viewer-1")

    assert count is None
    assert store.peek(paths.broadcast_room(session.session_id)) is None
    assert store.peek(paths.group_viewers(HOST, session.session_id)) is None
    assert store.peek(paths.app_state("viewer-1")) is None


@pytest.mark.asyncio
async def test_leave_clears_viewing_state(store):
    coordinator, session = await live_session(store)
    await coordinator.join_as_viewer(session, "viewer-1")
    await coordinator.leave_as_viewer(session, "viewer-1")

    state = store.peek(paths.app_state("viewer-1"))
    assert state["currentlyViewing"] is False
    assert state["roomID"] == "None"
    assert store.peek(paths.group_viewers(HOST, session.session_id)) is None


@pytest.mark.asyncio
async def test_stop_removes_record_and_restart_resets_count(store):
    coordinator, session = await live_session(store)
    await coordinator.join_as_viewer(session, "viewer-1")
    await coordinator.join_as_viewer(session, "viewer-2")

    await coordinator.stop_broadcast(session, HOST)
    assert store.peek(paths.broadcast_room(session.session_id)) is None
    assert store.peek(paths.group(HOST, session.session_id))["broadcasting"] is False
    assert store.peek(paths.current_group(HOST))["isActive"] is False

    await coordinator.start_broadcast(session, HOST)
    assert viewer_count(store, session) == 0


@pytest.mark.asyncio
async def test_stop_during_start_skips_remaining_writes():
    """A stop issued while a start is in flight wins."""
    store = InMemoryStore(latency=lambda: 0.01)
    coordinator = SessionCoordinator(store)
    session = await coordinator.create_session(HOST, "Flicker")

    starting = asyncio.create_task(coordinator.start_broadcast(session, HOST))
    await asyncio.sleep(0.001)
    await coordinator.stop_broadcast(session, HOST)
    await starting

    assert store.peek(paths.broadcast_room(session.session_id)) is None
    assert store.peek(paths.group(HOST, session.session_id))["broadcasting"] is False
    assert session.is_broadcasting is False


@pytest.mark.asyncio
async def test_failed_writes_are_logged_not_raised(flaky_store, caplog):
    """A failed discovery write leaves the pair inconsistent, and says so."""
    coordinator = SessionCoordinator(flaky_store)
    session = await coordinator.create_session(HOST, "Patchy")
    flaky_store.failures.add(("set", paths.broadcast_room(session.session_id)))

    with caplog.at_level(logging.WARNING):
        await coordinator.start_broadcast(session, HOST)

    assert "Discovery record failed" in caplog.text
    assert flaky_store.peek(paths.group(HOST, session.session_id))["broadcasting"] is True
    report = await coordinator.check_consistency(session)
    assert report.host_flag is True
    assert report.has_discovery_record is False
    assert not report.is_consistent


@pytest.mark.asyncio
async def test_failed_decrement_drifts_and_is_reported(flaky_store):
    """A lost decrement is tolerated; the reconciliation read shows the drift."""
    coordinator, session = await live_session(flaky_store)
    await coordinator.join_as_viewer(session, "viewer-1")

    flaky_store.failures.add(("transact", paths.broadcast_room(session.session_id)))
    assert await coordinator.leave_as_viewer(session, "viewer-1") is None

    assert viewer_count(flaky_store, session) == 1
    report = await coordinator.check_consistency(session)
    assert report.registered_viewers == 0
    assert report.viewer_count == 1
    assert not report.is_consistent


@pytest.mark.asyncio
async def test_list_broadcasts_skips_malformed_records(store):
    coordinator, session = await live_session(store)
    await store.set(paths.broadcast_room("junk"), {"hostID": "x"})

    records = await coordinator.list_broadcasts()

    assert [r.session_id for r in records] == [session.session_id]
    found = await coordinator.find_broadcast(session.session_id)
    assert found.session_name == "Evening run"
    assert await coordinator.find_broadcast("missing") is None


@pytest.mark.asyncio
async def test_watch_viewer_count(store):
    """The watcher sees the live count and zero once the record is gone."""
    coordinator, session = await live_session(store)
    seen = []

    async def on_count(count):
        seen.append(count)

    subscription = await coordinator.watch_viewer_count(session, on_count)
    await store.settle()
    await coordinator.join_as_viewer(session, "viewer-1")
    await store.settle()
    await coordinator.stop_broadcast(session, HOST)
    await store.settle()
    await coordinator.unwatch_viewer_count(subscription)

    assert seen == [0, 1, 0]


@pytest.mark.asyncio
async def test_delete_session_removes_everything(store):
    coordinator, session = await live_session(store)
    events = []

    async def on_event(event_type, data):
        events.append(event_type)

    coordinator.on_event(on_event)
    await coordinator.delete_session(session, HOST)

    assert store.peek(paths.group(HOST, session.session_id)) is None
    assert store.peek(paths.broadcast_room(session.session_id)) is None
    assert coordinator.get_session(session.session_id) is None
    assert events == ["broadcast_stopped", "session_deleted"]


@pytest.mark.asyncio
async def test_leaving_room_as_host_ends_broadcast(store):
    coordinator, session = await live_session(store)
    await coordinator.set_room_active(session, HOST, True)
    await coordinator.set_room_active(session, HOST, False)

    assert store.peek(paths.broadcast_room(session.session_id)) is None
    assert store.peek(paths.group(HOST, session.session_id))["active"] is False


@pytest.mark.asyncio
async def test_load_sessions_reads_host_rooms(store):
    coordinator, session = await live_session(store)
    await coordinator.join_as_viewer(session, "viewer-1")

    fresh = SessionCoordinator(store)
    loaded = await fresh.load_sessions(HOST)

    assert [s.session_id for s in loaded] == [session.session_id]
    assert isinstance(loaded[0], Session)
    assert loaded[0].is_broadcasting is True
    assert loaded[0].viewer_count == 1


@pytest.mark.asyncio
async def test_loaded_viewer_count_comes_from_discovery_record(store):
    """Registrations left over from an earlier broadcast are not counted."""
    coordinator, session = await live_session(store)
    await coordinator.join_as_viewer(session, "viewer-1")
    await coordinator.join_as_viewer(session, "viewer-2")
    await coordinator.stop_broadcast(session, HOST)
    await coordinator.start_broadcast(session, HOST)

    fresh = SessionCoordinator(store)
    loaded = await fresh.load_sessions(HOST)
    assert loaded[0].viewer_count == 0
    fetched = await fresh.fetch_session(HOST, session.session_id)
    assert fetched.viewer_count == 0

    await coordinator.stop_broadcast(session, HOST)
    loaded = await SessionCoordinator(store).load_sessions(HOST)
    assert loaded[0].is_broadcasting is False
    assert loaded[0].viewer_count == 0
