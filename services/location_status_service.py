import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified
from sqlmodel import Session, or_, select

from models.attendance_settings import AttendanceMode
from models.member_location_status import (
    BLOCKING_PERMISSIONS,
    LocationTelemetry,
    MemberLocationStatus,
    PermissionState,
    WarningType,
)
from services.errors import InvalidInput, LocationStatusNotFound
from services.fence_config_service import FenceConfigService
from services.membership_service import MembershipLookup
from utils.timezone_helpers import format_utc_datetime, utc_now

logger = logging.getLogger(__name__)

WARNING_MESSAGES = {
    WarningType.LOCATION_DISABLED: "Location services are disabled. Please enable location to use geofence attendance.",
    WarningType.PERMISSION_DENIED: "Location permission not granted. Please allow location access.",
    WarningType.BACKGROUND_PERMISSION_DENIED: "Background location permission required for automatic attendance.",
    WarningType.LOW_ACCURACY: "Location accuracy is low. Please enable high accuracy mode.",
    WarningType.GEOFENCE_FAILED: "Geofence setup is incomplete. Please reopen the app to finish setup.",
}

# First failing check decides the bucket
BUCKET_BY_CHECK = {
    WarningType.LOCATION_DISABLED: "locationDisabled",
    WarningType.PERMISSION_DENIED: "permissionDenied",
    WarningType.BACKGROUND_PERMISSION_DENIED: "backgroundPermissionIssue",
    WarningType.LOW_ACCURACY: "lowAccuracy",
    WarningType.GEOFENCE_FAILED: "geofenceNotSetup",
}

BUCKETS = ("stale", "fullyConfigured", *BUCKET_BY_CHECK.values())


def categorize_status(status: MemberLocationStatus, now: Optional[datetime] = None) -> str:
    if status.is_stale(now):
        return "stale"
    failures = status.failing_checks()
    if not failures:
        return "fullyConfigured"
    return BUCKET_BY_CHECK[failures[0]]


class LocationStatusService:
    def __init__(
        self,
        session: Session,
        fences: Optional[FenceConfigService] = None,
        memberships: Optional[MembershipLookup] = None,
    ):
        self.session = session
        self.fences = fences or FenceConfigService(session)
        self.memberships = memberships or MembershipLookup(session)

    def find(self, member_id: str, gym_id: str) -> Optional[MemberLocationStatus]:
        return self.session.exec(
            select(MemberLocationStatus)
            .where(MemberLocationStatus.member_id == member_id)
            .where(MemberLocationStatus.gym_id == gym_id)
        ).first()

    def _resolved_mode(self, gym_id: str) -> AttendanceMode:
        return AttendanceMode(self.fences.resolve_for_member(gym_id)["mode"])

    def record_telemetry(
        self,
        member_id: str,
        gym_id: str,
        payload: LocationTelemetry,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Upsert the member's status and append a warning per failing gating check."""
        now = now or utc_now()
        geofence_enabled = self._resolved_mode(gym_id).is_geofence_capable

        status = self.find(member_id, gym_id)
        if status is None:
            status = MemberLocationStatus(member_id=member_id, gym_id=gym_id)
        self._apply_telemetry(status, payload, now)

        new_warnings = []
        if geofence_enabled:
            for check in status.failing_checks():
                new_warnings.append(
                    {
                        "type": check.value,
                        "message": WARNING_MESSAGES[check],
                        "timestamp": format_utc_datetime(now),
                        "acknowledged": False,
                    }
                )
            if new_warnings:
                status.warnings = [*(status.warnings or []), *new_warnings]
                flag_modified(status, "warnings")

        self.session.add(status)
        try:
            self.session.commit()
        except IntegrityError:
            # Two pushes raced to create the row; apply this one to the winner
            self.session.rollback()
            existing = self.find(member_id, gym_id)
            if existing is None:
                raise
            self._apply_telemetry(existing, payload, now)
            if new_warnings:
                existing.warnings = [*(existing.warnings or []), *new_warnings]
                flag_modified(existing, "warnings")
            status = existing
            self.session.add(status)
            self.session.commit()
        self.session.refresh(status)

        if new_warnings:
            logger.info(
                "[LOCATION STATUS] %s warning(s) for member %s at gym %s: %s",
                len(new_warnings),
                member_id,
                gym_id,
                [w["type"] for w in new_warnings],
            )

        return {
            "status": status,
            "geofenceEnabled": geofence_enabled,
            "hasWarnings": bool(new_warnings),
            "newWarnings": new_warnings,
        }

    @staticmethod
    def _apply_telemetry(
        status: MemberLocationStatus, payload: LocationTelemetry, now: datetime
    ) -> None:
        reported = payload.model_fields_set
        for name in (
            "location_enabled",
            "location_permission",
            "background_location_enabled",
            "background_location_permission",
            "location_accuracy",
        ):
            if name in reported:
                setattr(status, name, getattr(payload, name))

        if payload.device_info is not None:
            status.platform = payload.device_info.platform
            status.device_model = payload.device_info.device_model
            status.os_version = payload.device_info.os_version
            status.app_version = payload.device_info.app_version

        if payload.current_location is not None:
            location = payload.current_location
            status.current_latitude = location.latitude
            status.current_longitude = location.longitude
            status.current_accuracy = location.accuracy
            status.current_location_at = location.timestamp or now
            status.last_location_update = now

        if payload.geofence_setup is not None:
            status.geofence_setup = payload.geofence_setup.is_setup
            status.geofence_setup_at = payload.geofence_setup.last_setup_date
            status.geofence_id = payload.geofence_setup.geofence_id

        if payload.app_active is not None:
            status.app_active = payload.app_active
            if payload.app_active:
                status.last_app_open = now
            else:
                status.last_app_close = now

        status.last_status_update = now
        status.updated_at = now

    def get_status(
        self, member_id: str, gym_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        status = self.find(member_id, gym_id)
        if status is None:
            return {
                "status": None,
                "meetsRequirements": False,
                "isStale": True,
                "message": "No location status found",
            }
        now = now or utc_now()
        return {
            "status": status,
            "meetsRequirements": status.meets_geofence_requirements(now),
            "isStale": status.is_stale(now),
            "failingChecks": [check.value for check in status.failing_checks()],
        }

    def acknowledge_warning(self, member_id: str, gym_id: str, index: int) -> MemberLocationStatus:
        status = self.find(member_id, gym_id)
        if status is None:
            raise LocationStatusNotFound(
                "Location status not found", member_id=member_id, gym_id=gym_id
            )

        warnings = [dict(w) for w in (status.warnings or [])]
        if not 0 <= index < len(warnings):
            raise InvalidInput(
                "Warning index out of range", index=index, warning_count=len(warnings)
            )

        warnings[index]["acknowledged"] = True
        status.warnings = warnings
        flag_modified(status, "warnings")
        self.session.add(status)
        self.session.commit()
        self.session.refresh(status)
        return status

    def categorize_gym_members(
        self, gym_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Partition a gym's members into diagnostic buckets.

        Every member with a status row lands in exactly one bucket, decided in
        the order of ``BUCKETS``; members without one are listed under noData.
        """
        now = now or utc_now()
        statuses = self.session.exec(
            select(MemberLocationStatus)
            .where(MemberLocationStatus.gym_id == gym_id)
            .order_by(MemberLocationStatus.last_status_update.desc())
        ).all()

        buckets: Dict[str, List[MemberLocationStatus]] = {name: [] for name in BUCKETS}
        for status in statuses:
            buckets[categorize_status(status, now)].append(status)

        reporting = {status.member_id for status in statuses}
        no_data = [m for m in self.memberships.gym_member_ids(gym_id) if m not in reporting]

        summary = {name: len(items) for name, items in buckets.items()}
        summary["noData"] = len(no_data)
        summary["totalMembers"] = len(reporting) + len(no_data)

        return {**buckets, "noData": no_data, "summary": summary}

    def members_with_issues(self, gym_id: str) -> List[MemberLocationStatus]:
        blocking = list(BLOCKING_PERMISSIONS)
        return list(
            self.session.exec(
                select(MemberLocationStatus)
                .where(MemberLocationStatus.gym_id == gym_id)
                .where(
                    or_(
                        MemberLocationStatus.location_enabled == False,  # noqa: E712
                        MemberLocationStatus.location_permission.in_(blocking),
                        MemberLocationStatus.background_location_enabled == False,  # noqa: E712
                        MemberLocationStatus.background_location_permission.in_(blocking),
                    )
                )
                .order_by(MemberLocationStatus.last_status_update.desc())
            ).all()
        )

    def geofence_requirements(self, gym_id: str) -> Dict[str, Any]:
        resolved = self.fences.resolve_for_member(gym_id)
        geofence = resolved["geofenceSettings"]
        return {
            "gymId": gym_id,
            "attendanceMode": resolved["mode"],
            "geofenceEnabled": resolved["geofenceEnabled"],
            "requirements": {
                "locationEnabled": True,
                "locationPermission": PermissionState.GRANTED.value,
                "backgroundLocationEnabled": resolved["geofenceEnabled"],
                "backgroundLocationPermission": PermissionState.GRANTED.value,
                "minAccuracyMeters": geofence["minAccuracyMeters"] if geofence else None,
            },
            "geofenceConfig": (
                {
                    "type": geofence["type"],
                    "radius": geofence["radius"],
                    "autoMarkEntry": geofence["autoMarkEntry"],
                    "autoMarkExit": geofence["autoMarkExit"],
                    "operatingHours": resolved["operatingHours"],
                }
                if geofence
                else None
            ),
        }
