import logging
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field as PydanticField
from sqlmodel import Session

from core.deps import get_current_user, require_admin_role, require_gym_admin
from db.session import get_session
from models.geofence_config import GeofenceConfig
from services.fence_config_service import FenceConfigService

logger = logging.getLogger(__name__)

# --- Router Definition ---
router = APIRouter()


# --- Pydantic Data Models ---


class PolygonPoint(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None


# All fields optional: the body is merged over the stored config
class GeofenceConfigUpdate(BaseModel):
    shape: Optional[str] = PydanticField(default=None, description="circular or polygon")
    center_lat: Optional[float] = None
    center_lng: Optional[float] = None
    radius_meters: Optional[float] = None
    polygon: Optional[List[PolygonPoint]] = None
    enabled: Optional[bool] = None
    auto_mark_entry: Optional[bool] = None
    auto_mark_exit: Optional[bool] = None
    allow_mock_location: Optional[bool] = None
    min_accuracy_meters: Optional[float] = None
    minimum_stay_minutes: Optional[int] = None
    operating_hours_start: Optional[str] = None
    operating_hours_end: Optional[str] = None


class CoordinateCheck(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius: Optional[float] = None


class LocationCheck(BaseModel):
    latitude: float
    longitude: float


# --- API Endpoints ---


# Endpoint: Get (or lazily create) a gym's fence
@router.get("/{gym_id}/config", response_model=GeofenceConfig)
def get_geofence_config(
    gym_id: str,
    session: Annotated[Session, Depends(get_session)],
    admin_user: Annotated[dict, Depends(require_gym_admin)],
):
    return FenceConfigService(session).get_or_create(gym_id)


# Endpoint: Create or update a gym's fence
@router.post("/{gym_id}/config", response_model=GeofenceConfig)
def save_geofence_config(
    gym_id: str,
    config_in: GeofenceConfigUpdate,
    session: Annotated[Session, Depends(get_session)],
    admin_user: Annotated[dict, Depends(require_gym_admin)],
):
    patch = config_in.model_dump(exclude_unset=True)

    try:
        config = FenceConfigService(session).save(gym_id, patch)
    except HTTPException:
        raise
    except Exception:
        session.rollback()
        logger.exception("[FENCE CONFIG] Error saving fence for gym %s", gym_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not save geofence configuration.",
        )

    logger.info("Admin %s saved geofence config for gym %s", admin_user.get("email"), gym_id)
    return config


# Endpoint: Remove a gym's fence
@router.delete("/{gym_id}/config", status_code=status.HTTP_200_OK)
def delete_geofence_config(
    gym_id: str,
    session: Annotated[Session, Depends(get_session)],
    admin_user: Annotated[dict, Depends(require_gym_admin)],
):
    try:
        FenceConfigService(session).delete(gym_id)
    except HTTPException:
        raise
    except Exception:
        session.rollback()
        logger.exception("[FENCE CONFIG] Error deleting fence for gym %s", gym_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not delete geofence configuration.",
        )

    logger.info("Admin %s deleted geofence config for gym %s", admin_user.get("email"), gym_id)
    return {"message": "Geofence configuration deleted", "gym_id": gym_id}


# Endpoint: Check a candidate center/radius before saving
@router.post("/validate-coordinates")
def validate_coordinates(
    check: CoordinateCheck,
    admin_user: Annotated[dict, Depends(require_admin_role)],
):
    return FenceConfigService.validate_coordinates(check.latitude, check.longitude, check.radius)


# Endpoint: Would a location pass the fence and hours checks right now?
@router.post("/{gym_id}/verify")
def verify_location(
    gym_id: str,
    check: LocationCheck,
    session: Annotated[Session, Depends(get_session)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return FenceConfigService(session).verify_location(gym_id, check.latitude, check.longitude)
