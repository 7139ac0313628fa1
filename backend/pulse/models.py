"""Pydantic models for the pulse scheduler and heart rate samples."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from config import MAX_HEART_RATE, MIN_HEART_RATE


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class PulsePhase(str, Enum):
    """The two halves of one heartbeat pulse."""
    PRIMARY = "primary"
    SECONDARY = "secondary"


class BeatSchedule(BaseModel):
    """Timing state of a running scheduler. Never persisted."""
    period_seconds: float
    anchor_time: float
    is_animating: bool = False


class BeatEvent(BaseModel):
    """One pulse phase handed to beat consumers (haptics, rendering, audio)."""
    sequence: int
    phase: PulsePhase
    rate: int
    interval: float
    fired_at: float


class HeartRateSample(BaseModel):
    """A published heart rate reading, as stored under Heartbeat/Watch1."""
    model_config = ConfigDict(populate_by_name=True)

    heart_rate: int = Field(alias="HeartRate", ge=MIN_HEART_RATE, le=MAX_HEART_RATE)
    timestamp: int | None = Field(default=None, alias="Timestamp")  # epoch ms


def beat_interval(rate: int) -> float:
    """Seconds between beats for a rate in beats per minute."""
    return 60.0 / max(rate, 1)
