from datetime import date
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from core.deps import get_current_user, get_notifier
from db.session import get_session
from models.attendance import (
    AttendanceRecordRead,
    GeofenceEntryRequest,
    GeofenceExitRequest,
)
from services.attendance_service import DEFAULT_HISTORY_LIMIT, GeofenceAttendanceService
from services.notification_service import NotificationService

# Defines API Endpoints
router = APIRouter()


def get_attendance_service(
    session: Annotated[Session, Depends(get_session)],
    notifier: Annotated[NotificationService, Depends(get_notifier)],
) -> GeofenceAttendanceService:
    return GeofenceAttendanceService(session, notifier=notifier)


# Geofence entry reported by the member app
@router.post("/auto-mark/entry")
def auto_mark_entry(
    data: GeofenceEntryRequest,
    service: Annotated[GeofenceAttendanceService, Depends(get_attendance_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    result = service.handle_entry(
        member_id=user["uid"],
        gym_id=data.gym_id,
        latitude=data.latitude,
        longitude=data.longitude,
        accuracy=data.accuracy,
        is_mock_location=data.is_mock_location,
    )
    return {
        "message": "Attendance already marked for today"
        if result.already_marked
        else "Attendance marked successfully",
        "alreadyMarked": result.already_marked,
        "attendance": AttendanceRecordRead.from_record(result.record),
        "distance": result.distance_meters,
        "sessionsRemaining": result.sessions_remaining,
    }


# Geofence exit reported by the member app
@router.post("/auto-mark/exit")
def auto_mark_exit(
    data: GeofenceExitRequest,
    service: Annotated[GeofenceAttendanceService, Depends(get_attendance_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    result = service.handle_exit(
        member_id=user["uid"],
        gym_id=data.gym_id,
        latitude=data.latitude,
        longitude=data.longitude,
        accuracy=data.accuracy,
    )
    return {
        "message": "Exit already recorded for today"
        if result.already_recorded
        else "Exit recorded successfully",
        "alreadyRecorded": result.already_recorded,
        "attendance": AttendanceRecordRead.from_record(result.record),
        "durationInMinutes": result.dwell_minutes,
    }


@router.get("/today/{gym_id}")
def get_today_attendance(
    gym_id: str,
    service: Annotated[GeofenceAttendanceService, Depends(get_attendance_service)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return service.today_status(user["uid"], gym_id)


@router.get("/history/{gym_id}", response_model=List[AttendanceRecordRead])
def get_attendance_history(
    gym_id: str,
    service: Annotated[GeofenceAttendanceService, Depends(get_attendance_service)],
    user: Annotated[dict, Depends(get_current_user)],
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = DEFAULT_HISTORY_LIMIT,
):
    records = service.history(user["uid"], gym_id, start_date, end_date, limit)
    return [AttendanceRecordRead.from_record(record) for record in records]


@router.get("/stats/{gym_id}")
def get_attendance_stats(
    gym_id: str,
    service: Annotated[GeofenceAttendanceService, Depends(get_attendance_service)],
    user: Annotated[dict, Depends(get_current_user)],
    month: Annotated[Optional[int], Query()] = None,
    year: Annotated[Optional[int], Query()] = None,
):
    return service.monthly_stats(user["uid"], gym_id, month=month, year=year)
