from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import field_serializer
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from utils.timezone_helpers import format_utc_datetime

DEFAULT_ALLOWED_STATUSES = ["present", "absent", "late", "leave"]


class AttendanceMode(str, Enum):
    MANUAL = "manual"
    GEOFENCE = "geofence"
    BIOMETRIC = "biometric"
    QR = "qr"
    HYBRID = "hybrid"

    @property
    def is_geofence_capable(self) -> bool:
        return self in (AttendanceMode.GEOFENCE, AttendanceMode.HYBRID)


# Denormalized settings read by older member-app builds.
# The geofence_* columns are a flattened snapshot of GeofenceConfig.
class AttendanceSettings(SQLModel, table=True):
    __tablename__ = "attendance_settings"

    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: str = Field(foreign_key="gyms.id", unique=True, index=True)
    mode: AttendanceMode = Field(default=AttendanceMode.MANUAL)

    # Manual-mode settings
    auto_mark_enabled: bool = Field(default=False)
    require_check_out: bool = Field(default=False)
    allow_late_check_in: bool = Field(default=True)
    late_threshold_minutes: int = Field(default=15, ge=0, le=120)
    send_notifications: bool = Field(default=False)
    track_duration: bool = Field(default=True)
    require_approval: bool = Field(default=False)
    allow_bulk_mark: bool = Field(default=True)
    enable_notes: bool = Field(default=True)
    allowed_statuses: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_STATUSES), sa_column=Column(JSON)
    )

    # Geofence snapshot
    geofence_enabled: bool = Field(default=False)
    geofence_latitude: Optional[float] = None
    geofence_longitude: Optional[float] = None
    geofence_radius: float = Field(default=100.0)
    geofence_auto_mark_entry: bool = Field(default=True)
    geofence_auto_mark_exit: bool = Field(default=True)
    geofence_allow_mock_location: bool = Field(default=False)
    geofence_min_accuracy_meters: float = Field(default=20.0)

    snapshot_version: Optional[int] = None
    synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    @field_serializer("synced_at", "created_at", "updated_at")
    def serialize_timestamps(self, dt: Optional[datetime]) -> Optional[str]:
        return format_utc_datetime(dt)
