from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_serializer
from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, Index, SQLModel

from utils.timezone_helpers import ensure_timezone_aware, format_utc_datetime

STALE_AFTER = timedelta(minutes=30)


class PermissionState(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    RESTRICTED = "restricted"
    NOT_DETERMINED = "notDetermined"
    DENIED_FOREVER = "deniedForever"


BLOCKING_PERMISSIONS = (
    PermissionState.DENIED,
    PermissionState.DENIED_FOREVER,
    PermissionState.RESTRICTED,
)


class AccuracyClass(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


class DevicePlatform(str, Enum):
    ANDROID = "android"
    IOS = "ios"
    WEB = "web"
    UNKNOWN = "unknown"


class WarningType(str, Enum):
    LOCATION_DISABLED = "location_disabled"
    PERMISSION_DENIED = "permission_denied"
    BACKGROUND_PERMISSION_DENIED = "background_permission_denied"
    LOW_ACCURACY = "low_accuracy"
    GEOFENCE_FAILED = "geofence_failed"


# --- Telemetry payload pushed by the member app ---


class DeviceInfo(BaseModel):
    platform: DevicePlatform = DevicePlatform.UNKNOWN
    device_model: Optional[str] = None
    os_version: Optional[str] = None
    app_version: Optional[str] = None


class GeofenceSetupInfo(BaseModel):
    is_setup: bool = False
    last_setup_date: Optional[datetime] = None
    geofence_id: Optional[str] = None


class CurrentLocation(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: Optional[datetime] = None


class LocationTelemetry(BaseModel):
    gym_id: str
    location_enabled: bool = False
    location_permission: PermissionState = PermissionState.NOT_DETERMINED
    background_location_enabled: bool = False
    background_location_permission: PermissionState = PermissionState.NOT_DETERMINED
    location_accuracy: AccuracyClass = AccuracyClass.UNKNOWN
    device_info: Optional[DeviceInfo] = None
    current_location: Optional[CurrentLocation] = None
    geofence_setup: Optional[GeofenceSetupInfo] = None
    app_active: Optional[bool] = None


class MemberLocationStatus(SQLModel, table=True):
    __tablename__ = "member_location_status"

    __table_args__ = (
        UniqueConstraint("member_id", "gym_id", name="uq_location_status_member_gym"),
        Index("ix_location_status_gym_location_enabled", "gym_id", "location_enabled"),
        Index("ix_location_status_last_update", "last_status_update"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    member_id: str = Field(index=True)
    gym_id: str = Field(index=True)

    location_enabled: bool = Field(default=False)
    location_permission: PermissionState = Field(default=PermissionState.NOT_DETERMINED)
    background_location_enabled: bool = Field(default=False)
    background_location_permission: PermissionState = Field(default=PermissionState.NOT_DETERMINED)
    location_accuracy: AccuracyClass = Field(default=AccuracyClass.UNKNOWN)

    platform: DevicePlatform = Field(default=DevicePlatform.UNKNOWN)
    device_model: Optional[str] = None
    os_version: Optional[str] = None
    app_version: Optional[str] = None

    geofence_setup: bool = Field(default=False)
    geofence_setup_at: Optional[datetime] = None
    geofence_id: Optional[str] = None

    last_status_update: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_location_update: Optional[datetime] = None
    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None
    current_accuracy: Optional[float] = None
    current_location_at: Optional[datetime] = None

    # [{"type", "message", "timestamp", "acknowledged"}], append-only
    warnings: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))

    app_active: bool = Field(default=False)
    last_app_open: Optional[datetime] = None
    last_app_close: Optional[datetime] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return ensure_timezone_aware(self.last_status_update) < now - STALE_AFTER

    def failing_checks(self) -> List[WarningType]:
        """Gating checks that currently fail, in priority order."""
        failures = []
        if not self.location_enabled:
            failures.append(WarningType.LOCATION_DISABLED)
        if self.location_permission != PermissionState.GRANTED:
            failures.append(WarningType.PERMISSION_DENIED)
        if (
            not self.background_location_enabled
            or self.background_location_permission != PermissionState.GRANTED
        ):
            failures.append(WarningType.BACKGROUND_PERMISSION_DENIED)
        if self.location_accuracy == AccuracyClass.LOW:
            failures.append(WarningType.LOW_ACCURACY)
        if not self.geofence_setup:
            failures.append(WarningType.GEOFENCE_FAILED)
        return failures

    def meets_geofence_requirements(self, now: Optional[datetime] = None) -> bool:
        return not self.failing_checks() and not self.is_stale(now)

    @field_serializer(
        "geofence_setup_at",
        "last_status_update",
        "last_location_update",
        "current_location_at",
        "last_app_open",
        "last_app_close",
        "created_at",
        "updated_at",
    )
    def serialize_timestamps(self, dt: Optional[datetime]) -> Optional[str]:
        return format_utc_datetime(dt)
