"""Pydantic models for the device's current mode."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ModeKind(str, Enum):
    SOLO = "solo"
    PAIRED = "paired"
    GROUP_HOST = "group_host"
    GROUP_VIEWER = "group_viewer"


class Mode(BaseModel):
    """The resolved mode. Two modes are the same transition iff they compare equal."""
    model_config = ConfigDict(frozen=True)

    kind: ModeKind = ModeKind.SOLO
    partner_id: str | None = None  # Paired only
    host_id: str | None = None     # GroupViewer only

    @classmethod
    def solo(cls) -> "Mode":
        return cls(kind=ModeKind.SOLO)

    @classmethod
    def paired(cls, partner_id: str) -> "Mode":
        return cls(kind=ModeKind.PAIRED, partner_id=partner_id)

    @classmethod
    def group_host(cls) -> "Mode":
        return cls(kind=ModeKind.GROUP_HOST)

    @classmethod
    def group_viewer(cls, host_id: str) -> "Mode":
        return cls(kind=ModeKind.GROUP_VIEWER, host_id=host_id)


# AppState.CurrentMode values. 3 is the settings screen and counts as solo.
CURRENT_MODE_SOLO = 0
CURRENT_MODE_PAIRED = 1
CURRENT_MODE_GROUP = 2


class RemoteModeState(BaseModel):
    """The authoritative mode selection, as stored in Userdata/{uid}/AppState."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    current_mode: int = Field(default=CURRENT_MODE_SOLO, alias="CurrentMode")
    selected_user: str | None = Field(default=None, alias="SelectUser")
    current_group: str | None = Field(default=None, alias="CurrentGroup")
    host_id: str | None = Field(default=None, alias="hostID")
    room_id: str | None = Field(default=None, alias="roomID")
    currently_viewing: bool = Field(default=False, alias="currentlyViewing")

    @field_validator("selected_user", "current_group", "host_id", "room_id", mode="before")
    @classmethod
    def _none_string(cls, v):
        # Cleared selections are stored as the literal string "None".
        if v in ("None", ""):
            return None
        return v

    @property
    def requested_kind(self) -> ModeKind:
        if self.current_mode == CURRENT_MODE_PAIRED:
            return ModeKind.PAIRED
        if self.current_mode == CURRENT_MODE_GROUP:
            return ModeKind.GROUP_VIEWER if self.currently_viewing else ModeKind.GROUP_HOST
        return ModeKind.SOLO


class BroadcastFlags(BaseModel):
    """Broadcast state observed for the room that the mode depends on."""
    host_broadcasting: bool = False
    watched_broadcasting: bool = False
    watched_host_id: str | None = None


class ModeSelection(BaseModel):
    """Request body for choosing a mode."""
    kind: ModeKind
    partner_id: str | None = None
    session_id: str | None = None
    host_id: str | None = None
