"""
Legacy attendance settings, kept in step with the canonical geofence config.

Older member-app builds only understand a single circle, so the canonical
GeofenceConfig is flattened by ``project_geofence_snapshot``. The projection
is a pure function: it is written to the ``attendance_settings`` row on every
config save (a materialized view) and re-applied on read whenever a canonical
config exists, so readers never see a stale snapshot.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlmodel import Session, select

from models.attendance_settings import (
    DEFAULT_ALLOWED_STATUSES,
    AttendanceMode,
    AttendanceSettings,
)
from models.geofence_config import GeofenceConfig
from services.errors import ValidationError
from utils.geofence import Circle, PolygonRing

logger = logging.getLogger(__name__)

# Bump whenever the projection below changes shape or meaning
SNAPSHOT_VERSION = 1

MANUAL_FIELDS = {
    "mode",
    "auto_mark_enabled",
    "require_check_out",
    "allow_late_check_in",
    "late_threshold_minutes",
    "send_notifications",
    "track_duration",
    "require_approval",
    "allow_bulk_mark",
    "enable_notes",
    "allowed_statuses",
}

SNAPSHOT_FIELDS = {
    "geofence_enabled",
    "geofence_latitude",
    "geofence_longitude",
    "geofence_radius",
    "geofence_auto_mark_entry",
    "geofence_auto_mark_exit",
    "geofence_allow_mock_location",
    "geofence_min_accuracy_meters",
}

# Only the snapshot center may be cleared by an admin patch
NULLABLE_FIELDS = {"geofence_latitude", "geofence_longitude"}


@dataclass(frozen=True)
class GeofenceSnapshot:
    enabled: bool
    latitude: Optional[float]
    longitude: Optional[float]
    radius: Optional[float]
    auto_mark_entry: bool
    auto_mark_exit: bool
    allow_mock_location: bool
    min_accuracy_meters: float
    version: Optional[int] = SNAPSHOT_VERSION

    def as_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "radius": self.radius,
            "autoMarkEntry": self.auto_mark_entry,
            "autoMarkExit": self.auto_mark_exit,
            "allowMockLocation": self.allow_mock_location,
            "minAccuracyMeters": self.min_accuracy_meters,
        }


@dataclass(frozen=True)
class LegacyView:
    mode: AttendanceMode
    snapshot: Optional[GeofenceSnapshot]
    auto_mark_enabled: bool
    # "canonical", "legacy" or "default"
    source: str


def project_geofence_snapshot(config: GeofenceConfig) -> GeofenceSnapshot:
    """Flatten a canonical config into the single-circle legacy shape."""
    geometry = config.geometry()
    if isinstance(geometry, Circle):
        circle = geometry
    elif isinstance(geometry, PolygonRing):
        circle = geometry.bounding_circle()
    elif geometry is None:
        circle = None
    else:
        raise TypeError(f"Unsupported fence geometry: {type(geometry).__name__}")

    return GeofenceSnapshot(
        enabled=bool(config.enabled and circle is not None),
        latitude=circle.center_lat if circle else None,
        longitude=circle.center_lng if circle else None,
        radius=round(circle.radius_meters, 2) if circle else None,
        auto_mark_entry=config.auto_mark_entry,
        auto_mark_exit=config.auto_mark_exit,
        allow_mock_location=config.allow_mock_location,
        min_accuracy_meters=config.min_accuracy_meters,
    )


def snapshot_from_settings(settings: AttendanceSettings) -> GeofenceSnapshot:
    return GeofenceSnapshot(
        enabled=settings.geofence_enabled,
        latitude=settings.geofence_latitude,
        longitude=settings.geofence_longitude,
        radius=settings.geofence_radius,
        auto_mark_entry=settings.geofence_auto_mark_entry,
        auto_mark_exit=settings.geofence_auto_mark_exit,
        allow_mock_location=settings.geofence_allow_mock_location,
        min_accuracy_meters=settings.geofence_min_accuracy_meters,
        version=settings.snapshot_version,
    )


def derive_mode(current: AttendanceMode, snapshot: GeofenceSnapshot) -> AttendanceMode:
    # An enabled fence forces a geofence-capable mode; hybrid is left alone
    if snapshot.enabled and not current.is_geofence_capable:
        return AttendanceMode.GEOFENCE
    return current


class LegacySettingsService:
    def __init__(self, session: Session):
        self.session = session

    def find(self, gym_id: str) -> Optional[AttendanceSettings]:
        return self.session.exec(
            select(AttendanceSettings).where(AttendanceSettings.gym_id == gym_id)
        ).first()

    def _find_canonical(self, gym_id: str) -> Optional[GeofenceConfig]:
        return self.session.exec(
            select(GeofenceConfig).where(GeofenceConfig.gym_id == gym_id)
        ).first()

    def get_or_create_settings(self, gym_id: str) -> AttendanceSettings:
        settings = self.find(gym_id)
        if settings is None:
            settings = AttendanceSettings(gym_id=gym_id)
            self.session.add(settings)
            self.session.commit()
            self.session.refresh(settings)
            logger.info("[LEGACY SYNC] Created default attendance settings for gym %s", gym_id)
        return settings

    def sync_from_fence(
        self, config: GeofenceConfig, now: Optional[datetime] = None
    ) -> AttendanceSettings:
        """Write the projection of ``config`` into the legacy row."""
        now = now or datetime.now(timezone.utc)
        snapshot = project_geofence_snapshot(config)

        settings = self.find(config.gym_id)
        if settings is None:
            settings = AttendanceSettings(gym_id=config.gym_id)

        settings.geofence_enabled = snapshot.enabled
        settings.geofence_latitude = snapshot.latitude
        settings.geofence_longitude = snapshot.longitude
        if snapshot.radius is not None:
            settings.geofence_radius = snapshot.radius
        settings.geofence_auto_mark_entry = snapshot.auto_mark_entry
        settings.geofence_auto_mark_exit = snapshot.auto_mark_exit
        settings.geofence_allow_mock_location = snapshot.allow_mock_location
        settings.geofence_min_accuracy_meters = snapshot.min_accuracy_meters
        settings.mode = derive_mode(settings.mode, snapshot)
        settings.snapshot_version = SNAPSHOT_VERSION
        settings.synced_at = now
        settings.updated_at = now

        self.session.add(settings)
        self.session.commit()
        self.session.refresh(settings)
        logger.info(
            "[LEGACY SYNC] Gym %s snapshot v%s written (enabled=%s, mode=%s)",
            config.gym_id,
            SNAPSHOT_VERSION,
            snapshot.enabled,
            settings.mode.value,
        )
        return settings

    def disable_snapshot(self, gym_id: str) -> Optional[AttendanceSettings]:
        settings = self.find(gym_id)
        if settings is None:
            return None
        settings.geofence_enabled = False
        settings.synced_at = datetime.now(timezone.utc)
        settings.updated_at = settings.synced_at
        self.session.add(settings)
        self.session.commit()
        self.session.refresh(settings)
        return settings

    def read_through(
        self, gym_id: str, config: Optional[GeofenceConfig] = None
    ) -> LegacyView:
        """
        Legacy view of a gym's settings.

        A canonical config, when present, is authoritative and is projected on
        the fly; the stored snapshot is only used before one exists.
        """
        settings = self.find(gym_id)
        if config is None:
            config = self._find_canonical(gym_id)

        if config is not None:
            snapshot = project_geofence_snapshot(config)
            current = settings.mode if settings else AttendanceMode.MANUAL
            return LegacyView(
                mode=derive_mode(current, snapshot),
                snapshot=snapshot,
                auto_mark_enabled=snapshot.enabled
                and (config.auto_mark_entry or config.auto_mark_exit),
                source="canonical",
            )

        if settings is not None:
            return LegacyView(
                mode=settings.mode,
                snapshot=snapshot_from_settings(settings),
                auto_mark_enabled=settings.auto_mark_enabled,
                source="legacy",
            )

        return LegacyView(
            mode=AttendanceMode.MANUAL,
            snapshot=None,
            auto_mark_enabled=False,
            source="default",
        )

    def update_settings(self, gym_id: str, patch: Dict[str, Any]) -> AttendanceSettings:
        unknown = set(patch) - MANUAL_FIELDS - SNAPSHOT_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown attendance settings: {', '.join(sorted(unknown))}",
                fields=sorted(unknown),
            )

        snapshot_changes = set(patch) & SNAPSHOT_FIELDS
        if snapshot_changes and self._find_canonical(gym_id) is not None:
            raise ValidationError(
                "Geofence settings are managed by the gym's geofence configuration.",
                fields=sorted(snapshot_changes),
            )

        cleared = sorted(k for k, v in patch.items() if v is None and k not in NULLABLE_FIELDS)
        if cleared:
            raise ValidationError(
                f"Attendance settings cannot be null: {', '.join(cleared)}",
                fields=cleared,
            )

        threshold = patch.get("late_threshold_minutes")
        if threshold is not None and not 0 <= threshold <= 120:
            raise ValidationError(
                "Late threshold must be between 0 and 120 minutes",
                late_threshold_minutes=threshold,
            )

        settings = self.get_or_create_settings(gym_id)
        for key, value in patch.items():
            if key == "mode" and value is not None:
                value = AttendanceMode(value)
            setattr(settings, key, value)
        settings.updated_at = datetime.now(timezone.utc)

        self.session.add(settings)
        self.session.commit()
        self.session.refresh(settings)
        logger.info("[LEGACY SYNC] Attendance settings updated for gym %s: %s", gym_id, sorted(patch))
        return settings

    def reset_settings(self, gym_id: str) -> AttendanceSettings:
        existing = self.find(gym_id)
        if existing is not None:
            self.session.delete(existing)
            self.session.commit()

        settings = AttendanceSettings(
            gym_id=gym_id, allowed_statuses=list(DEFAULT_ALLOWED_STATUSES)
        )
        self.session.add(settings)
        self.session.commit()
        self.session.refresh(settings)

        # Keep the snapshot consistent with a canonical fence that survives the reset
        config = self._find_canonical(gym_id)
        if config is not None:
            settings = self.sync_from_fence(config)
        return settings

    def settings_status(self, gym_id: str) -> Dict[str, Any]:
        settings = self.find(gym_id)
        view = self.read_through(gym_id)
        snapshot = view.snapshot
        geofence_configured = bool(
            snapshot
            and snapshot.enabled
            and snapshot.latitude is not None
            and snapshot.longitude is not None
            and snapshot.radius
        )
        return {
            "configured": settings is not None or view.source == "canonical",
            "mode": view.mode.value,
            "geofenceConfigured": geofence_configured,
            "requiresSetup": view.mode == AttendanceMode.GEOFENCE and not geofence_configured,
            "autoMarkEnabled": view.auto_mark_enabled,
            "source": view.source,
        }

    def member_settings(self, gym_id: str) -> Dict[str, Any]:
        """Member-facing settings; the fence store owns the precedence rules."""
        from services.fence_config_service import FenceConfigService

        return FenceConfigService(self.session, legacy=self).resolve_for_member(gym_id)
