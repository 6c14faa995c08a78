from datetime import date as Date
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_serializer
from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Index, SQLModel

from utils.timezone_helpers import format_utc_datetime


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    PENDING = "pending"


class AuthenticationMethod(str, Enum):
    MANUAL = "manual"
    GEOFENCE = "geofence"
    FINGERPRINT = "fingerprint"
    FACE_RECOGNITION = "face_recognition"
    QR_CODE = "qr_code"
    CARD = "card"


# Request bodies for geofence events sent by the member app
class GeofenceEntryRequest(BaseModel):
    gym_id: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None
    is_mock_location: bool = False


class GeofenceExitRequest(BaseModel):
    gym_id: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None


# One row per member, per gym, per gym-local calendar day
class AttendanceRecord(SQLModel, table=True):
    __tablename__ = "attendance_records"

    __table_args__ = (
        # Concurrent entry events converge on this constraint
        UniqueConstraint("gym_id", "member_id", "date", name="uq_attendance_gym_member_date"),
        Index("ix_attendance_gym_date", "gym_id", "date"),
        Index("ix_attendance_member_date", "member_id", "date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    member_id: str
    gym_id: str = Field(foreign_key="gyms.id")
    date: Date
    status: AttendanceStatus = Field(default=AttendanceStatus.PENDING)
    authentication_method: AuthenticationMethod = Field(default=AuthenticationMethod.MANUAL)
    is_geofence_attendance: bool = Field(default=False)

    # Gym-local HH:MM, for display
    check_in_time: Optional[str] = None
    check_out_time: Optional[str] = None

    entry_at: Optional[datetime] = None
    entry_lat: Optional[float] = None
    entry_lng: Optional[float] = None
    entry_accuracy: Optional[float] = None
    entry_is_mock_location: bool = Field(default=False)
    entry_distance_meters: Optional[float] = None

    exit_at: Optional[datetime] = None
    exit_lat: Optional[float] = None
    exit_lng: Optional[float] = None
    exit_accuracy: Optional[float] = None
    dwell_minutes: Optional[int] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    @property
    def has_entry(self) -> bool:
        return self.entry_at is not None

    @property
    def has_exit(self) -> bool:
        return self.exit_at is not None

    @field_serializer("entry_at", "exit_at", "created_at", "updated_at")
    def serialize_timestamps(self, dt: Optional[datetime]) -> Optional[str]:
        return format_utc_datetime(dt)


class GeofenceEntryInfo(BaseModel):
    timestamp: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    is_mock_location: bool = False
    distance_from_fence_center: Optional[float] = None

    @field_serializer("timestamp")
    def serialize_timestamp(self, dt: datetime) -> Optional[str]:
        return format_utc_datetime(dt)


class GeofenceExitInfo(BaseModel):
    timestamp: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    dwell_minutes: Optional[int] = None

    @field_serializer("timestamp")
    def serialize_timestamp(self, dt: datetime) -> Optional[str]:
        return format_utc_datetime(dt)


class AttendanceRecordRead(BaseModel):
    id: int
    member_id: str
    gym_id: str
    date: Date
    status: AttendanceStatus
    authentication_method: AuthenticationMethod
    check_in_time: Optional[str] = None
    check_out_time: Optional[str] = None
    entry: Optional[GeofenceEntryInfo] = None
    exit: Optional[GeofenceExitInfo] = None

    @classmethod
    def from_record(cls, record: AttendanceRecord) -> "AttendanceRecordRead":
        entry = None
        if record.has_entry:
            entry = GeofenceEntryInfo(
                timestamp=record.entry_at,
                latitude=record.entry_lat,
                longitude=record.entry_lng,
                accuracy=record.entry_accuracy,
                is_mock_location=record.entry_is_mock_location,
                distance_from_fence_center=record.entry_distance_meters,
            )
        exit_info = None
        if record.has_exit:
            exit_info = GeofenceExitInfo(
                timestamp=record.exit_at,
                latitude=record.exit_lat,
                longitude=record.exit_lng,
                accuracy=record.exit_accuracy,
                dwell_minutes=record.dwell_minutes,
            )
        return cls(
            id=record.id,
            member_id=record.member_id,
            gym_id=record.gym_id,
            date=record.date,
            status=record.status,
            authentication_method=record.authentication_method,
            check_in_time=record.check_in_time,
            check_out_time=record.check_out_time,
            entry=entry,
            exit=exit_info,
        )
