from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field as PydanticField
from sqlmodel import Session

from core.deps import get_current_user, require_gym_admin
from db.session import get_session
from models.member_location_status import LocationTelemetry
from services.location_status_service import LocationStatusService

# Member-facing telemetry endpoints
router = APIRouter()

# Admin diagnostics, mounted under /admin/location-status
admin_router = APIRouter()


class WarningAcknowledgement(BaseModel):
    gym_id: str
    warning_index: int = PydanticField(ge=0)


@router.post("/location-status")
def update_location_status(
    payload: LocationTelemetry,
    session: Annotated[Session, Depends(get_session)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return LocationStatusService(session).record_telemetry(user["uid"], payload.gym_id, payload)


@router.get("/location-status/{gym_id}")
def get_location_status(
    gym_id: str,
    session: Annotated[Session, Depends(get_session)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return LocationStatusService(session).get_status(user["uid"], gym_id)


@router.post("/acknowledge-warning")
def acknowledge_warning(
    body: WarningAcknowledgement,
    session: Annotated[Session, Depends(get_session)],
    user: Annotated[dict, Depends(get_current_user)],
):
    status = LocationStatusService(session).acknowledge_warning(
        user["uid"], body.gym_id, body.warning_index
    )
    return {"message": "Warning acknowledged", "warnings": status.warnings}


@router.get("/geofence-requirements/{gym_id}")
def get_geofence_requirements(
    gym_id: str,
    session: Annotated[Session, Depends(get_session)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return LocationStatusService(session).geofence_requirements(gym_id)


@admin_router.get("/{gym_id}/members")
def get_gym_members_location_status(
    gym_id: str,
    session: Annotated[Session, Depends(get_session)],
    admin_user: Annotated[dict, Depends(require_gym_admin)],
):
    return LocationStatusService(session).categorize_gym_members(gym_id)


@admin_router.get("/{gym_id}/issues")
def get_members_with_location_issues(
    gym_id: str,
    session: Annotated[Session, Depends(get_session)],
    admin_user: Annotated[dict, Depends(require_gym_admin)],
):
    members = LocationStatusService(session).members_with_issues(gym_id)
    return {"count": len(members), "members": members}
