"""
Drift-corrected pulse scheduler.

Beats are spaced at 60 / rate seconds while the rate changes underneath us.
A fine-grained check tick compares the clock against an anchor; the anchor
advances by exact intervals so timer latency never accumulates, and snaps to
"now" only when it has fallen more than a whole interval behind (so a stalled
loop does not replay a burst of missed beats).

Each beat is a two-phase pulse: a primary emphasis and a softer secondary
pulse a fraction of an interval later. While a pulse is animating, a newly
due beat waits rather than overlapping it.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from config import (
    PULSE_LATCH_FRACTION,
    RATE_STALE_AFTER,
    SECONDARY_PULSE_FRACTION,
    TICK_DIVISOR,
)
from pulse.models import BeatEvent, BeatSchedule, PulsePhase, SchedulerState, beat_interval

logger = logging.getLogger(__name__)

BeatCallback = Callable[[BeatEvent], Awaitable[None]]

IDLE_WAIT = 1.0  # seconds between checks while not running


class PulseScheduler:
    """Fires beat events whose spacing follows a live rate."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        stale_after: float = RATE_STALE_AFTER,
        tick_divisor: int = TICK_DIVISOR,
        secondary_fraction: float = SECONDARY_PULSE_FRACTION,
        latch_fraction: float = PULSE_LATCH_FRACTION,
    ) -> None:
        self._clock = clock
        self._stale_after = stale_after
        self._tick_divisor = tick_divisor
        self._secondary_fraction = secondary_fraction
        self._latch_fraction = latch_fraction

        self._state = SchedulerState.IDLE
        self._required = False
        self._rate = 0
        self._rate_updated_at: float | None = None
        self._schedule: BeatSchedule | None = None
        self._last_fired_at: float | None = None
        self._pending_secondary: BeatEvent | None = None
        self._secondary_due: float = 0.0
        self._sequence = 0

        self._beat_callbacks: list[BeatCallback] = []
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._stopping = False

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def rate(self) -> int:
        return self._rate

    @property
    def interval(self) -> float:
        return beat_interval(self._rate)

    @property
    def schedule(self) -> BeatSchedule | None:
        return self._schedule.model_copy() if self._schedule else None

    def on_beat(self, callback: BeatCallback) -> None:
        """Register a callback: async fn(event: BeatEvent).

        Fires twice per beat, PRIMARY then SECONDARY; filter on ``event.phase``
        when only one pulse per beat is wanted.
        """
        self._beat_callbacks.append(callback)

    # --- Inputs ---

    def set_rate(self, rate: int, now: float | None = None) -> None:
        """Feed the latest rate. Every call counts as a fresh reading."""
        now = self._clock() if now is None else now
        self._rate = max(0, int(rate))
        self._rate_updated_at = now
        if self._schedule is not None:
            # Keep the anchor: the new interval applies from the last beat's phase.
            self._schedule.period_seconds = beat_interval(self._rate)
        self._evaluate(now)
        self._wake.set()

    def set_required(self, required: bool, now: float | None = None) -> None:
        """Whether the current mode wants pulses at all."""
        now = self._clock() if now is None else now
        self._required = required
        self._evaluate(now)
        self._wake.set()

    # --- State machine ---

    def _is_stale(self, now: float) -> bool:
        return self._rate_updated_at is None or now - self._rate_updated_at > self._stale_after

    def _evaluate(self, now: float) -> None:
        runnable = self._required and self._rate > 0 and not self._is_stale(now)
        if self._state == SchedulerState.RUNNING and not runnable:
            if not self._required:
                reason = "not required by mode"
            elif self._rate <= 0:
                reason = "rate is zero"
            else:
                reason = f"no rate update for {now - self._rate_updated_at:.0f}s"
            self._enter_paused(reason)
        elif self._state != SchedulerState.RUNNING and runnable:
            self._enter_running(now)

    def _enter_running(self, now: float) -> None:
        previous = self._state
        self._state = SchedulerState.RUNNING
        self._schedule = BeatSchedule(period_seconds=beat_interval(self._rate), anchor_time=now)
        self._last_fired_at = None
        self._pending_secondary = None
        logger.info(
            f"Pulse {previous.value} -> running at {self._rate} bpm "
            f"(interval {self._schedule.period_seconds:.3f}s)"
        )

    def _enter_paused(self, reason: str) -> None:
        self._state = SchedulerState.PAUSED
        if self._schedule is not None:
            self._schedule.is_animating = False
        self._pending_secondary = None
        logger.info(f"Pulse paused: {reason}")

    # --- Ticking ---

    async def tick(self, now: float | None = None) -> list[BeatEvent]:
        """Run one check. Returns the events fired (already dispatched)."""
        now = self._clock() if now is None else now
        self._evaluate(now)
        if self._state != SchedulerState.RUNNING or self._schedule is None:
            return []

        schedule = self._schedule
        events: list[BeatEvent] = []

        if self._pending_secondary is not None and now >= self._secondary_due:
            events.append(self._pending_secondary)
            self._pending_secondary = None

        # The latch scales with the interval in force now, so a rate change
        # can never let the next beat crowd the one still animating.
        schedule.is_animating = (
            self._last_fired_at is not None
            and now < self._last_fired_at + schedule.period_seconds * self._latch_fraction
        )

        if now - schedule.anchor_time >= schedule.period_seconds and not schedule.is_animating:
            next_anchor = schedule.anchor_time + schedule.period_seconds
            if now - next_anchor > schedule.period_seconds:
                next_anchor = now
            schedule.anchor_time = next_anchor
            schedule.is_animating = True
            self._last_fired_at = now

            self._sequence += 1
            primary = BeatEvent(
                sequence=self._sequence,
                phase=PulsePhase.PRIMARY,
                rate=self._rate,
                interval=schedule.period_seconds,
                fired_at=now,
            )
            events.append(primary)
            self._pending_secondary = primary.model_copy(
                update={
                    "phase": PulsePhase.SECONDARY,
                    "fired_at": now + schedule.period_seconds * self._secondary_fraction,
                }
            )
            self._secondary_due = self._pending_secondary.fired_at

        for event in events:
            await self._emit(event)
        return events

    async def _emit(self, event: BeatEvent) -> None:
        for cb in self._beat_callbacks:
            try:
                await cb(event)
            except Exception as e:
                logger.error(f"Beat callback error: {e}")

    def _next_wait(self) -> float:
        if self._state != SchedulerState.RUNNING or self._schedule is None:
            return IDLE_WAIT
        wait = self._schedule.period_seconds / self._tick_divisor
        if self._pending_secondary is not None:
            wait = min(wait, max(0.0, self._secondary_due - self._clock()))
        return wait

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._task is None:
            self._stopping = False
            self._task = asyncio.create_task(self._run_loop())
            logger.info("Pulse scheduler started")

    async def stop(self) -> None:
        """Stop the tick loop and return to idle. Idempotent."""
        if self._task:
            # The loop checks the flag after every wake.
            self._stopping = True
            self._wake.set()
            await self._task
            self._task = None
            logger.info("Pulse scheduler stopped")
        self._required = False
        self._state = SchedulerState.IDLE
        self._schedule = None
        self._pending_secondary = None

    async def _run_loop(self) -> None:
        while not self._stopping:
            try:
                await self.tick()
            except Exception as e:
                logger.warning(f"Pulse tick failed: {e}")
            if self._stopping:
                break
            self._wake.clear()
            waiter = asyncio.ensure_future(self._wake.wait())
            try:
                await asyncio.wait({waiter}, timeout=self._next_wait())
            finally:
                waiter.cancel()
