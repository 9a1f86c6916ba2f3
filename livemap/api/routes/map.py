from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, Field

from livemap.core.auth import get_current_user_id
from livemap.core.errors import BackendError
from livemap.schemas.map_data import LiveLocation, MapMarker, MapSnapshot, Profile
from livemap.services.freshness import is_fresh, relative_age
from livemap.services.map_session import SessionRegistry

router = APIRouter()


# ------------------------------------------------------------------
# Schemas
# ------------------------------------------------------------------

class RefreshRequest(BaseModel):
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    force: bool = False


class MyLocationRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    heading: Optional[float] = None
    speed: Optional[float] = None


class MyLocationResponse(BaseModel):
    status: str
    updated_at: datetime


class MarkersResponse(BaseModel):
    markers: List[MapMarker]


class UserEntryResponse(BaseModel):
    user_id: str
    profile: Optional[Profile] = None
    location: Optional[LiveLocation] = None
    is_fresh: bool
    age: str


# ------------------------------------------------------------------
# Dependencies
# ------------------------------------------------------------------

def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


# Every handler is async so cache mutations stay on the event loop.

# ------------------------------------------------------------------
# REFRESH / STATE
# ------------------------------------------------------------------

@router.post("/refresh", response_model=MapSnapshot)
async def map_refresh(
    payload: RefreshRequest,
    registry: SessionRegistry = Depends(get_registry),
    user_id: str = Depends(get_current_user_id),
):
    if (payload.lat is None) != (payload.lng is None):
        raise HTTPException(status_code=400, detail="lat and lng must be sent together")

    position = (payload.lat, payload.lng) if payload.lat is not None else None

    session = registry.get(user_id)
    return await session.refresh(viewer_id=user_id, position=position, force=payload.force)


@router.get("/state", response_model=MapSnapshot)
async def map_state(
    registry: SessionRegistry = Depends(get_registry),
    user_id: str = Depends(get_current_user_id),
):
    session = registry.peek(user_id)
    if session is None:
        return MapSnapshot()
    return session.snapshot()


@router.get("/markers", response_model=MarkersResponse)
async def map_markers(
    registry: SessionRegistry = Depends(get_registry),
    user_id: str = Depends(get_current_user_id),
):
    session = registry.peek(user_id)
    if session is None:
        return {"markers": []}
    return {"markers": session.markers()}


# ------------------------------------------------------------------
# OWN LOCATION
# ------------------------------------------------------------------

@router.post("/me/location", response_model=MyLocationResponse)
async def map_share_location(
    payload: MyLocationRequest,
    registry: SessionRegistry = Depends(get_registry),
    user_id: str = Depends(get_current_user_id),
):
    session = registry.get(user_id)
    if session.viewer_id != user_id:
        # first fix before any refresh
        await session.refresh(viewer_id=user_id)

    try:
        loc = await session.share_my_location(
            payload.lat,
            payload.lng,
            heading=payload.heading,
            speed=payload.speed,
        )
    except BackendError as exc:
        logger.warning(f"Location upsert for {user_id} failed: {exc}")
        raise HTTPException(status_code=502, detail="Could not store location")

    return {"status": "ok", "updated_at": loc.updated_at}


# ------------------------------------------------------------------
# SINGLE USER
# ------------------------------------------------------------------

@router.get("/users/{target_id}", response_model=UserEntryResponse)
async def map_user(
    target_id: str,
    refresh: bool = False,
    registry: SessionRegistry = Depends(get_registry),
    user_id: str = Depends(get_current_user_id),
):
    session = registry.get(user_id)

    profile = await session.lookup_profile(target_id, refresh=refresh)
    cached_profile, location = session.get(target_id)
    profile = profile or cached_profile

    if profile is None and location is None:
        raise HTTPException(status_code=404, detail="No profile found for this user.")

    updated_at = location.updated_at if location else None
    return UserEntryResponse(
        user_id=target_id,
        profile=profile,
        location=location,
        is_fresh=is_fresh(updated_at),
        age=relative_age(updated_at),
    )


# ------------------------------------------------------------------
# SIGN OUT
# ------------------------------------------------------------------

@router.post("/sign-out")
async def map_sign_out(
    registry: SessionRegistry = Depends(get_registry),
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, object]:
    closed = await registry.close(user_id)
    return {"status": "ok", "closed": closed}
