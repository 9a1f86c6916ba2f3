from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

from livemap.schemas.base import BaseSchema
from livemap.schemas.enums import ChangeOperation, LocationVisibility
from livemap.services.freshness import parse_timestamp


class LiveLocation(BaseSchema):
    user_id: str
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    updated_at: Optional[datetime] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _user_id_as_str(cls, v):
        return str(v) if v is not None else v

    @field_validator("updated_at", mode="before")
    @classmethod
    def _lenient_timestamp(cls, v):
        # unparsable timestamps degrade to "unknown age" instead of rejecting the row
        return parse_timestamp(v)


class Profile(BaseSchema):
    id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    location_visibility: LocationVisibility = LocationVisibility.everyone

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v):
        return str(v) if v is not None else v

    @field_validator("location_visibility", mode="before")
    @classmethod
    def _default_visibility(cls, v):
        if isinstance(v, LocationVisibility):
            return v
        if v not in {m.value for m in LocationVisibility}:
            return LocationVisibility.everyone
        return v


class ChangeEvent(BaseModel):
    operation: ChangeOperation
    new_row: Optional[Dict[str, Any]] = None

    @classmethod
    def from_realtime(cls, payload: Dict[str, Any]) -> "ChangeEvent":
        """
        Normalise a realtime postgres_changes payload.

        Newer realtime clients wrap the change as
        {"data": {"type": ..., "record": {...}}}, older ones send
        {"eventType": ..., "new": {...}}. Both end up as {operation, new_row}.
        """
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

        op = data.get("type") or data.get("eventType") or payload.get("eventType")
        row = data.get("record")
        if row is None:
            row = data.get("new")

        return cls(
            operation=ChangeOperation(str(op).upper()),
            new_row=row or None,
        )


class SpreadMarker(BaseModel):
    user_id: str
    lat: float
    lng: float
    location: LiveLocation


class MapMarker(BaseModel):
    user_id: str
    lat: float
    lng: float
    true_lat: float
    true_lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    updated_at: Optional[datetime] = None
    is_fresh: bool
    age: str
    is_self: bool
    label: str
    initials: str
    photo_url: Optional[str] = None


class MapSnapshot(BaseModel):
    viewer_id: Optional[str] = None
    loading: bool = False
    error: Optional[str] = None
    ids: List[str] = []
    profiles: Dict[str, Profile] = {}
    locations: Dict[str, LiveLocation] = {}
