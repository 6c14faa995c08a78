"""
Geofence attendance state machine.

Per member, per gym, per gym-local day:

    no record -> present (entered) -> present (exited)

Each event runs a transactional step that mutates the AttendanceRecord and
returns a result, followed by post-commit hooks (session decrement,
notifications). Hook failures are logged and never undo the committed record.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from models.attendance import (
    AttendanceRecord,
    AttendanceRecordRead,
    AttendanceStatus,
    AuthenticationMethod,
)
from models.geofence_config import DEFAULT_MINIMUM_STAY_MINUTES
from models.gym import Gym
from services.errors import (
    FraudRejected,
    InvalidInput,
    MinimumStayNotMet,
    NoActiveMembership,
    NoEntryRecord,
    OutsideFence,
    OutsideOperatingHours,
)
from services.fence_config_service import FenceConfigService
from services.gym_registry import GymRegistry
from services.membership_service import MembershipLookup
from services.notification_service import NotificationService
from utils.geofence import Circle
from utils.operating_hours import describe_window, is_within_window
from utils.timezone_helpers import (
    ensure_timezone_aware,
    from_utc_to_local,
    local_date,
    month_bounds,
    utc_now,
)

logger = logging.getLogger(__name__)

ENTRY_TITLE = "✅ Attendance Marked"
EXIT_TITLE = "👋 Gym Exit Recorded"

DEFAULT_HISTORY_LIMIT = 30
MAX_HISTORY_LIMIT = 365

PostCommitHook = Tuple[str, Callable[[], Any]]


@dataclass
class EntryResult:
    record: AttendanceRecord
    already_marked: bool
    created: bool
    distance_meters: Optional[float] = None
    sessions_remaining: Optional[int] = None


@dataclass
class ExitResult:
    record: AttendanceRecord
    dwell_minutes: int
    already_recorded: bool = False


@dataclass
class _EntryFix:
    latitude: float
    longitude: float
    accuracy: Optional[float]
    distance: float
    at: datetime
    local_time: str


def _require_fields(**values: Any) -> None:
    missing = [name for name, value in values.items() if value is None or value == ""]
    if missing:
        raise InvalidInput(
            f"Missing required fields: {', '.join(missing)}", missing_fields=missing
        )


def _require_coordinates(latitude: float, longitude: float) -> None:
    if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        raise InvalidInput(
            "Invalid coordinates", latitude=latitude, longitude=longitude
        )


class GeofenceAttendanceService:
    def __init__(
        self,
        session: Session,
        notifier: Optional[NotificationService] = None,
        memberships: Optional[MembershipLookup] = None,
        gyms: Optional[GymRegistry] = None,
        fences: Optional[FenceConfigService] = None,
    ):
        self.session = session
        self.notifier = notifier or NotificationService(session)
        self.memberships = memberships or MembershipLookup(session)
        self.gyms = gyms or GymRegistry(session)
        self.fences = fences or FenceConfigService(session, gyms=self.gyms)

    # --- Entry ---

    def handle_entry(
        self,
        member_id: str,
        gym_id: str,
        latitude: Optional[float],
        longitude: Optional[float],
        accuracy: Optional[float] = None,
        is_mock_location: bool = False,
        now: Optional[datetime] = None,
    ) -> EntryResult:
        _require_fields(
            member_id=member_id, gym_id=gym_id, latitude=latitude, longitude=longitude
        )
        _require_coordinates(latitude, longitude)

        if is_mock_location:
            logger.warning(
                "[GEOFENCE] Mock location rejected for member %s at gym %s", member_id, gym_id
            )
            raise FraudRejected(
                "Mock locations are not allowed for attendance marking",
                is_mock_location=True,
            )

        gym = self.gyms.get_gym(gym_id)
        fence = self.fences.resolve_active_fence(gym)
        geometry = fence.geometry()

        distance = geometry.distance_to(latitude, longitude)
        if not geometry.contains(latitude, longitude):
            approximate = not isinstance(geometry, Circle)
            bounds = geometry.bounding_circle() if approximate else geometry
            logger.info(
                "[GEOFENCE] Member %s outside fence of gym %s (%.0fm)", member_id, gym_id, distance
            )
            raise OutsideFence(
                distance, bounds.radius_meters, shape=fence.shape.value, approximate=approximate
            )

        now = ensure_timezone_aware(now or utc_now())
        today = local_date(now, gym.timezone)

        membership = self.memberships.find_active_membership(member_id, gym_id, today)
        if membership is None:
            raise NoActiveMembership(today.isoformat())

        local_now = from_utc_to_local(now, gym.timezone)
        start, end = self.fences.operating_window(gym, fence)
        if not is_within_window(start, end, local_now):
            raise OutsideOperatingHours(local_now.strftime("%H:%M"), describe_window(start, end))

        fix = _EntryFix(
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            distance=round(distance, 2),
            at=now,
            local_time=local_now.strftime("%H:%M"),
        )
        record, created, already_marked = self._mark_entry(member_id, gym_id, today, fix)

        if already_marked:
            logger.info(
                "[GEOFENCE] Entry already marked for member %s at gym %s on %s",
                member_id,
                gym_id,
                today,
            )
            return EntryResult(
                record=record,
                already_marked=True,
                created=False,
                distance_meters=record.entry_distance_meters,
                sessions_remaining=membership.sessions_remaining,
            )

        logger.info(
            "[GEOFENCE] Entry marked for member %s at gym %s on %s (%.0fm from fence)",
            member_id,
            gym_id,
            today,
            distance,
        )
        self._run_post_commit(
            [
                ("session decrement", lambda: self.memberships.decrement_session(membership)),
                ("entry notification", lambda: self._notify_entry(record, gym)),
            ]
        )

        return EntryResult(
            record=record,
            already_marked=False,
            created=created,
            distance_meters=fix.distance,
            sessions_remaining=membership.sessions_remaining,
        )

    def _mark_entry(
        self, member_id: str, gym_id: str, today: date, fix: _EntryFix
    ) -> Tuple[AttendanceRecord, bool, bool]:
        """Returns (record, created, already_marked)."""
        record = self._find_record(member_id, gym_id, today)
        if record is not None and record.has_entry:
            return record, False, True

        created = record is None
        if created:
            record = AttendanceRecord(member_id=member_id, gym_id=gym_id, date=today)
        self._apply_entry(record, fix)
        self.session.add(record)

        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent entry created today's row first
            self.session.rollback()
            logger.info(
                "[GEOFENCE] Concurrent entry for member %s at gym %s on %s, re-reading",
                member_id,
                gym_id,
                today,
            )
            record = self._find_record(member_id, gym_id, today)
            if record is None:
                raise
            if record.has_entry:
                return record, False, True
            created = False
            self._apply_entry(record, fix)
            self.session.add(record)
            self._commit_or_rollback()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        self.session.refresh(record)
        return record, created, False

    @staticmethod
    def _apply_entry(record: AttendanceRecord, fix: _EntryFix) -> None:
        record.status = AttendanceStatus.PRESENT
        record.authentication_method = AuthenticationMethod.GEOFENCE
        record.is_geofence_attendance = True
        record.check_in_time = fix.local_time
        record.entry_at = fix.at
        record.entry_lat = fix.latitude
        record.entry_lng = fix.longitude
        record.entry_accuracy = fix.accuracy
        record.entry_is_mock_location = False
        record.entry_distance_meters = fix.distance
        record.updated_at = fix.at

    def _notify_entry(self, record: AttendanceRecord, gym: Gym) -> None:
        self.notifier.notify(
            record.member_id,
            ENTRY_TITLE,
            f"Your attendance at {gym.name or 'the gym'} has been automatically "
            f"marked at {record.check_in_time}",
            metadata={
                "attendance_id": record.id,
                "gym_id": record.gym_id,
                "event": "geofence_entry",
            },
        )

    # --- Exit ---

    def handle_exit(
        self,
        member_id: str,
        gym_id: str,
        latitude: Optional[float],
        longitude: Optional[float],
        accuracy: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> ExitResult:
        _require_fields(
            member_id=member_id, gym_id=gym_id, latitude=latitude, longitude=longitude
        )
        _require_coordinates(latitude, longitude)

        gym = self.gyms.get_gym(gym_id)
        now = ensure_timezone_aware(now or utc_now())
        today = local_date(now, gym.timezone)

        record = self._find_record(member_id, gym_id, today)
        if record is None or not record.has_entry:
            raise NoEntryRecord(
                "No entry record found for today", date=today.isoformat()
            )
        if record.has_exit:
            return ExitResult(record=record, dwell_minutes=record.dwell_minutes, already_recorded=True)

        elapsed = now - ensure_timezone_aware(record.entry_at)
        dwell_minutes = max(0, round(elapsed.total_seconds() / 60))

        fence = self.fences.find(gym_id)
        required = fence.minimum_stay_minutes if fence else DEFAULT_MINIMUM_STAY_MINUTES
        if dwell_minutes < required:
            logger.info(
                "[GEOFENCE] Exit too early for member %s at gym %s (%s of %s min)",
                member_id,
                gym_id,
                dwell_minutes,
                required,
            )
            raise MinimumStayNotMet(required, dwell_minutes)

        record.exit_at = now
        record.exit_lat = latitude
        record.exit_lng = longitude
        record.exit_accuracy = accuracy
        record.dwell_minutes = dwell_minutes
        record.check_out_time = from_utc_to_local(now, gym.timezone).strftime("%H:%M")
        record.updated_at = now
        self.session.add(record)
        self._commit_or_rollback()
        self.session.refresh(record)

        logger.info(
            "[GEOFENCE] Exit recorded for member %s at gym %s after %s min",
            member_id,
            gym_id,
            dwell_minutes,
        )
        self._run_post_commit([("exit notification", lambda: self._notify_exit(record, gym))])
        return ExitResult(record=record, dwell_minutes=dwell_minutes)

    def _notify_exit(self, record: AttendanceRecord, gym: Gym) -> None:
        self.notifier.notify(
            record.member_id,
            EXIT_TITLE,
            f"You were at {gym.name or 'the gym'} for {record.dwell_minutes} minutes. Great workout!",
            metadata={
                "attendance_id": record.id,
                "gym_id": record.gym_id,
                "duration_minutes": record.dwell_minutes,
                "event": "geofence_exit",
            },
        )

    # --- Reads ---

    def today_status(
        self, member_id: str, gym_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        gym = self.gyms.get_gym(gym_id)
        today = local_date(now or utc_now(), gym.timezone)
        record = self._find_record(member_id, gym_id, today)
        return {
            "date": today.isoformat(),
            "attendance": AttendanceRecordRead.from_record(record) if record else None,
            "isMarked": bool(record and record.has_entry),
            "hasCheckedOut": bool(record and record.has_exit),
        }

    def history(
        self,
        member_id: str,
        gym_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> List[AttendanceRecord]:
        if start_date and end_date and start_date > end_date:
            raise InvalidInput(
                "start_date must be on or before end_date",
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
            )
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise InvalidInput(f"limit must be between 1 and {MAX_HISTORY_LIMIT}", limit=limit)

        query = (
            select(AttendanceRecord)
            .where(AttendanceRecord.member_id == member_id)
            .where(AttendanceRecord.gym_id == gym_id)
        )
        if start_date:
            query = query.where(AttendanceRecord.date >= start_date)
        if end_date:
            query = query.where(AttendanceRecord.date <= end_date)
        query = query.order_by(AttendanceRecord.date.desc()).limit(limit)
        return list(self.session.exec(query).all())

    def monthly_stats(
        self,
        member_id: str,
        gym_id: str,
        month: Optional[int] = None,
        year: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        gym = self.gyms.get_gym(gym_id)
        today = local_date(now or utc_now(), gym.timezone)
        if month is None:
            month = today.month
        if year is None:
            year = today.year
        if not 1 <= month <= 12:
            raise InvalidInput("month must be between 1 and 12", month=month)
        if not 1 <= year <= 9999:
            raise InvalidInput("year must be between 1 and 9999", year=year)

        first_day, last_day = month_bounds(year, month)
        records = self.session.exec(
            select(AttendanceRecord)
            .where(AttendanceRecord.member_id == member_id)
            .where(AttendanceRecord.gym_id == gym_id)
            .where(AttendanceRecord.date >= first_day)
            .where(AttendanceRecord.date <= last_day)
        ).all()

        present = [r for r in records if r.status == AttendanceStatus.PRESENT]
        durations = [r.dwell_minutes for r in records if r.dwell_minutes]
        total_days = len(records)

        return {
            "month": month,
            "year": year,
            "totalDays": total_days,
            "presentDays": len(present),
            "geofenceDays": sum(1 for r in records if r.is_geofence_attendance),
            "attendanceRate": round(len(present) / total_days * 100, 2) if total_days else 0,
            "averageDurationMinutes": round(sum(durations) / len(durations)) if durations else 0,
        }

    # --- Helpers ---

    def _find_record(self, member_id: str, gym_id: str, day: date) -> Optional[AttendanceRecord]:
        return self.session.exec(
            select(AttendanceRecord)
            .where(AttendanceRecord.member_id == member_id)
            .where(AttendanceRecord.gym_id == gym_id)
            .where(AttendanceRecord.date == day)
        ).first()

    def _commit_or_rollback(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def _run_post_commit(self, hooks: List[PostCommitHook]) -> None:
        for name, hook in hooks:
            try:
                hook()
            except Exception:
                self.session.rollback()
                logger.exception("[GEOFENCE] Post-commit step '%s' failed", name)
