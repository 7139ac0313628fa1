"""Pydantic models for broadcast rooms."""

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Session(BaseModel):
    """A room owned by one host. Stored under Userdata/{host}/Groups/{id}."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str
    host_id: str
    name: str = Field(default="", alias="groupName")
    member_ids: set[str] = Field(default_factory=set, alias="members")
    is_active: bool = Field(default=False, alias="active")
    is_broadcasting: bool = Field(default=False, alias="broadcasting")
    viewer_count: int = Field(default=0, ge=0)
    created_at: int | None = Field(default=None, alias="createdAt")  # epoch ms

    @field_validator("member_ids", mode="before")
    @classmethod
    def _members_from_store(cls, v):
        # Arrays come back from the database as objects keyed by index when sparse.
        if isinstance(v, dict):
            return set(v.values())
        return v

    def to_payload(self) -> dict:
        return {
            "groupName": self.name,
            "members": sorted(self.member_ids),
            "active": self.is_active,
            "broadcasting": self.is_broadcasting,
            "createdAt": self.created_at,
        }


class DiscoveryRecord(BaseModel):
    """Public copy of a live broadcast, stored under BroadcastingRooms/{id}."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = ""
    host_id: str = Field(alias="hostID")
    host_name: str = Field(default="", alias="hostName")
    session_name: str = Field(default="", alias="groupName")
    started_at: int = Field(alias="startedAt")
    member_count: int = Field(default=0, alias="memberCount")
    viewer_count: int = Field(default=0, ge=0, alias="viewerCount")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"session_id"})


class ViewerRegistration(BaseModel):
    """A viewer's entry in the host's room."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str
    viewer_id: str
    registered_at: int | None = Field(default=None, alias="registeredAt")

    def to_payload(self) -> dict:
        return {"registeredAt": self.registered_at}


class BroadcastConsistency(BaseModel):
    """What a reconciliation read found. Nothing is repaired."""
    session_id: str
    host_flag: bool
    has_discovery_record: bool
    registered_viewers: int
    viewer_count: int | None = None

    @property
    def is_consistent(self) -> bool:
        if self.host_flag != self.has_discovery_record:
            return False
        return not self.has_discovery_record or self.viewer_count == self.registered_viewers
