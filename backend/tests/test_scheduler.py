"""Tests for the pulse scheduler."""

import asyncio

import pytest

from pulse.models import PulsePhase, SchedulerState, beat_interval
from pulse.scheduler import PulseScheduler


def make_scheduler(rate=0, required=True, now=0.0) -> PulseScheduler:
    scheduler = PulseScheduler(clock=lambda: now)
    scheduler.set_required(required, now=now)
    if rate:
        scheduler.set_rate(rate, now=now)
    return scheduler


async def run(scheduler, start, end, step, on_tick=None):
    """Tick from start to end at a fixed step; return every event fired."""
    events = []
    steps = int(round((end - start) / step))
    for i in range(steps + 1):
        now = start + i * step
        if on_tick:
            on_tick(scheduler, now)
        events.extend(await scheduler.tick(now=now))
    return events


def primaries(events):
    return [e.fired_at for e in events if e.phase == PulsePhase.PRIMARY]


def test_beat_interval():
    assert beat_interval(60) == 1.0
    assert beat_interval(72) == pytest.approx(0.8333, abs=1e-3)
    assert beat_interval(0) == 60.0


@pytest.mark.asyncio
async def test_constant_rate_spacing():
    """At a steady rate, beats are 60/R apart to within one check tick."""
    scheduler = make_scheduler(rate=72)
    interval = 60 / 72
    step = interval / 10
    events = await run(scheduler, 0.0, 30.0, step)

    fired = primaries(events)
    assert len(fired) >= 34
    gaps = [b - a for a, b in zip(fired, fired[1:])]
    for gap in gaps:
        assert abs(gap - interval) <= step + 1e-9
    # Anchor advance keeps the long-run period exact.
    assert (fired[-1] - fired[0]) / len(gaps) == pytest.approx(interval, abs=step / 10)


@pytest.mark.asyncio
@pytest.mark.parametrize("old_rate,new_rate", [(60, 150), (150, 40), (72, 200), (45, 46)])
async def test_rate_change_never_double_fires(old_rate, new_rate):
    """After a rate change no two beats are closer than half the new interval."""
    scheduler = make_scheduler(rate=old_rate)

    def change(s, now):
        if abs(now - 5.05) < 1e-9:
            s.set_rate(new_rate, now=now)

    events = await run(scheduler, 0.0, 15.0, 0.01, on_tick=change)
    fired = primaries(events)
    new_interval = 60 / new_rate
    around_change = [t for t in fired if t >= 5.05 - 60 / old_rate]
    for a, b in zip(around_change, around_change[1:]):
        assert b - a >= 0.5 * new_interval - 1e-9
    late = [t for t in fired if t > 8.0]
    for a, b in zip(late, late[1:]):
        assert b - a == pytest.approx(new_interval, abs=0.011)


@pytest.mark.asyncio
async def test_secondary_pulse_follows_primary():
    """Each primary is followed by a secondary 15% of an interval later."""
    scheduler = make_scheduler(rate=60)
    events = await run(scheduler, 0.0, 1.3, 0.05)

    assert [e.phase for e in events] == [PulsePhase.PRIMARY, PulsePhase.SECONDARY]
    primary, secondary = events
    assert primary.fired_at == pytest.approx(1.0)
    assert secondary.fired_at == pytest.approx(1.15)
    assert secondary.sequence == primary.sequence


@pytest.mark.asyncio
async def test_idle_until_positive_rate():
    """Required with no rate stays idle; the first positive rate starts it."""
    scheduler = make_scheduler(rate=0)
    assert scheduler.state == SchedulerState.IDLE
    assert await scheduler.tick(now=5.0) == []

    scheduler.set_rate(72, now=6.0)
    assert scheduler.state == SchedulerState.RUNNING
    assert scheduler.interval == pytest.approx(0.833, abs=1e-3)
    assert scheduler.schedule.anchor_time == 6.0


@pytest.mark.asyncio
async def test_not_required_never_runs():
    """A rate alone does not start a scheduler the mode does not need."""
    scheduler = make_scheduler(rate=80, required=False)
    assert scheduler.state == SchedulerState.IDLE
    assert await scheduler.tick(now=10.0) == []


@pytest.mark.asyncio
async def test_pauses_on_mode_exit_and_zero_rate():
    scheduler = make_scheduler(rate=60)
    scheduler.set_required(False, now=1.0)
    assert scheduler.state == SchedulerState.PAUSED

    scheduler.set_required(True, now=2.0)
    assert scheduler.state == SchedulerState.RUNNING

    scheduler.set_rate(0, now=3.0)
    assert scheduler.state == SchedulerState.PAUSED
    assert await scheduler.tick(now=4.0) == []


@pytest.mark.asyncio
async def test_pauses_when_rate_goes_stale():
    """No rate update for 300s pauses; a fresh reading resumes."""
    scheduler = make_scheduler(rate=60)
    await scheduler.tick(now=299.0)
    assert scheduler.state == SchedulerState.RUNNING

    assert await scheduler.tick(now=301.0) == []
    assert scheduler.state == SchedulerState.PAUSED

    scheduler.set_rate(60, now=302.0)
    assert scheduler.state == SchedulerState.RUNNING


@pytest.mark.asyncio
async def test_stalled_loop_does_not_replay_missed_beats():
    """After a long stall one beat fires and the anchor snaps to now."""
    scheduler = make_scheduler(rate=60)
    assert len(primaries(await scheduler.tick(now=1.0))) == 1

    fired = primaries(await scheduler.tick(now=10.0))
    assert fired == [10.0]
    assert scheduler.schedule.anchor_time == 10.0
    assert primaries(await scheduler.tick(now=10.5)) == []
    assert primaries(await scheduler.tick(now=11.0)) == [11.0]


@pytest.mark.asyncio
async def test_beat_callbacks_receive_events_and_errors_are_contained():
    scheduler = make_scheduler(rate=60)
    seen = []

    async def broken(event):
        raise RuntimeError("renderer gone")

    async def record(event):
        seen.append(event.phase)

    scheduler.on_beat(broken)
    scheduler.on_beat(record)
    await run(scheduler, 0.0, 1.2, 0.1)

    assert seen == [PulsePhase.PRIMARY, PulsePhase.SECONDARY]


@pytest.mark.asyncio
async def test_background_loop_fires_and_stop_returns_to_idle():
    """With the real clock the loop fires beats until stopped."""
    scheduler = PulseScheduler()
    beats = []

    async def on_beat(event):
        if event.phase == PulsePhase.PRIMARY:
            beats.append(event)

    scheduler.on_beat(on_beat)
    scheduler.set_required(True)
    scheduler.set_rate(600)  # 0.1s interval
    await scheduler.start()
    await asyncio.sleep(0.45)
    await scheduler.stop()
    await scheduler.stop()  # idempotent

    assert 2 <= len(beats) <= 5
    assert scheduler.state == SchedulerState.IDLE


@pytest.mark.asyncio
async def test_stop_returns_right_after_a_rate_change():
    """A wake signalled just before stop must not keep the loop alive."""
    scheduler = PulseScheduler()
    scheduler.set_required(True)
    scheduler.set_rate(60)
    await scheduler.start()
    await asyncio.sleep(0.05)

    scheduler.set_rate(61)
    await asyncio.wait_for(scheduler.stop(), timeout=2)
    assert scheduler.state == SchedulerState.IDLE

    # Restartable after a stop.
    scheduler.set_required(True)
    scheduler.set_rate(600)
    await scheduler.start()
    await asyncio.sleep(0.05)
    scheduler.set_required(True)
    await asyncio.wait_for(scheduler.stop(), timeout=2)
    assert scheduler.state == SchedulerState.IDLE
