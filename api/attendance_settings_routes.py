import logging
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field as PydanticField
from sqlmodel import Session

from core.deps import require_gym_admin
from db.session import get_session
from models.attendance_settings import AttendanceMode, AttendanceSettings
from services.gym_registry import GymRegistry
from services.legacy_settings_service import LegacySettingsService

logger = logging.getLogger(__name__)

router = APIRouter()


# Update model: everything optional, only sent fields are applied
class AttendanceSettingsUpdate(BaseModel):
    mode: Optional[AttendanceMode] = None
    auto_mark_enabled: Optional[bool] = None
    require_check_out: Optional[bool] = None
    allow_late_check_in: Optional[bool] = None
    late_threshold_minutes: Optional[int] = PydanticField(default=None, ge=0, le=120)
    send_notifications: Optional[bool] = None
    track_duration: Optional[bool] = None
    require_approval: Optional[bool] = None
    allow_bulk_mark: Optional[bool] = None
    enable_notes: Optional[bool] = None
    allowed_statuses: Optional[List[str]] = None

    # Snapshot fields; rejected once a gym has a canonical geofence config
    geofence_enabled: Optional[bool] = None
    geofence_latitude: Optional[float] = None
    geofence_longitude: Optional[float] = None
    geofence_radius: Optional[float] = PydanticField(default=None, ge=50, le=500)
    geofence_auto_mark_entry: Optional[bool] = None
    geofence_auto_mark_exit: Optional[bool] = None
    geofence_allow_mock_location: Optional[bool] = None
    geofence_min_accuracy_meters: Optional[float] = PydanticField(default=None, ge=10, le=50)


# Endpoint: Member-facing settings for a gym (public)
@router.get("/gym/{gym_id}")
def get_member_settings(
    gym_id: str,
    session: Annotated[Session, Depends(get_session)],
):
    return LegacySettingsService(session).member_settings(gym_id)


@router.get("/{gym_id}", response_model=AttendanceSettings)
def get_attendance_settings(
    gym_id: str,
    session: Annotated[Session, Depends(get_session)],
    admin_user: Annotated[dict, Depends(require_gym_admin)],
):
    GymRegistry(session).get_gym(gym_id)
    return LegacySettingsService(session).get_or_create_settings(gym_id)


@router.put("/{gym_id}", response_model=AttendanceSettings)
def update_attendance_settings(
    gym_id: str,
    settings_in: AttendanceSettingsUpdate,
    session: Annotated[Session, Depends(get_session)],
    admin_user: Annotated[dict, Depends(require_gym_admin)],
):
    GymRegistry(session).get_gym(gym_id)
    try:
        settings = LegacySettingsService(session).update_settings(
            gym_id, settings_in.model_dump(exclude_unset=True)
        )
    except HTTPException:
        raise
    except Exception:
        session.rollback()
        logger.exception("[LEGACY SYNC] Error updating attendance settings for gym %s", gym_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not update attendance settings.",
        )

    logger.info("Admin %s updated attendance settings for gym %s", admin_user.get("email"), gym_id)
    return settings


@router.post("/{gym_id}/reset", response_model=AttendanceSettings)
def reset_attendance_settings(
    gym_id: str,
    session: Annotated[Session, Depends(get_session)],
    admin_user: Annotated[dict, Depends(require_gym_admin)],
):
    GymRegistry(session).get_gym(gym_id)
    try:
        settings = LegacySettingsService(session).reset_settings(gym_id)
    except HTTPException:
        raise
    except Exception:
        session.rollback()
        logger.exception("[LEGACY SYNC] Error resetting attendance settings for gym %s", gym_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not reset attendance settings.",
        )

    logger.info("Admin %s reset attendance settings for gym %s", admin_user.get("email"), gym_id)
    return settings


@router.get("/{gym_id}/status")
def get_attendance_settings_status(
    gym_id: str,
    session: Annotated[Session, Depends(get_session)],
    admin_user: Annotated[dict, Depends(require_gym_admin)],
):
    GymRegistry(session).get_gym(gym_id)
    return LegacySettingsService(session).settings_status(gym_id)
