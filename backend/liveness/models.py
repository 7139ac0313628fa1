"""Pydantic models for peer liveness."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PeerState(str, Enum):
    """Liveness state inferred for a peer."""
    ACTIVE = "active"
    BACKGROUND = "background"
    TERMINATED = "terminated"


class StatusReason(str, Enum):
    """Why a peer last wrote its status."""
    APP_LAUNCHED = "appLaunched"
    BECAME_ACTIVE = "becameActive"
    RESIGNED_ACTIVE = "resignedActive"
    ENTERED_BACKGROUND = "enteredBackground"
    TERMINATED = "terminated"
    LOGOUT = "isLogout"
    HEARTBEAT = "heartbeat"
    OTHER = "other"

    @classmethod
    def _missing_(cls, value):
        return cls.OTHER


TERMINATING_REASONS = {StatusReason.TERMINATED, StatusReason.LOGOUT}


class PeerStatus(BaseModel):
    """The status record a peer keeps under its AppStatus path."""
    model_config = ConfigDict(populate_by_name=True)

    peer_id: str = ""
    is_active: bool = Field(alias="isActive")
    last_heartbeat_at: float | None = Field(default=None, alias="lastUpdated")  # epoch ms
    reason: StatusReason = Field(default=StatusReason.OTHER, alias="stateChangeReason")

    def inferred_state(self) -> PeerState:
        if self.is_active:
            return PeerState.ACTIVE
        if self.reason in TERMINATING_REASONS:
            return PeerState.TERMINATED
        return PeerState.BACKGROUND

    @property
    def last_heartbeat_seconds(self) -> float | None:
        if self.last_heartbeat_at is None:
            return None
        return self.last_heartbeat_at / 1000.0
