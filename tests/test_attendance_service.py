from datetime import date, datetime, timedelta, timezone

import pytest
from sqlmodel import select

from models.attendance import AttendanceRecord, AttendanceStatus, AuthenticationMethod
from models.gym import Gym
from models.membership import Membership, MembershipStatus
from services.attendance_service import ENTRY_TITLE, EXIT_TITLE, GeofenceAttendanceService
from services.errors import (
    FenceNotConfigured,
    FraudRejected,
    GymNotFound,
    InvalidInput,
    MinimumStayNotMet,
    NoActiveMembership,
    NoEntryRecord,
    OutsideFence,
    OutsideOperatingHours,
)
from services.fence_config_service import FenceConfigService
from utils.geofence import polygon_to_bounding_circle

from conftest import GYM_ID, GYM_LAT, GYM_LNG, MEMBER_ID, NOW, FakeNotifier, north_of

INSIDE = north_of(GYM_LAT, GYM_LNG, 50)
OUTSIDE = north_of(GYM_LAT, GYM_LNG, 150)


def enter(service, now=NOW, member_id=MEMBER_ID, point=INSIDE, **kwargs):
    return service.handle_entry(member_id, GYM_ID, point[0], point[1], accuracy=8.0, now=now, **kwargs)


def leave(service, now, member_id=MEMBER_ID, point=INSIDE):
    return service.handle_exit(member_id, GYM_ID, point[0], point[1], accuracy=10.0, now=now)


def records(db_session):
    return db_session.exec(select(AttendanceRecord)).all()


class TestEntry:
    def test_entry_inside_fence_marks_present(self, service, fence, membership, notifier, db_session):
        result = enter(service)

        record = result.record
        assert result.already_marked is False
        assert result.created is True
        assert record.status == AttendanceStatus.PRESENT
        assert record.authentication_method == AuthenticationMethod.GEOFENCE
        assert record.is_geofence_attendance is True
        assert record.date == date(2026, 3, 10)
        assert record.check_in_time == "10:00"
        assert record.entry_accuracy == 8.0
        assert record.entry_is_mock_location is False
        assert result.distance_meters == pytest.approx(50, abs=0.05)

        db_session.refresh(membership)
        assert membership.sessions_remaining == 9
        assert membership.sessions_used == 1
        assert result.sessions_remaining == 9

        assert [n["title"] for n in notifier.sent] == [ENTRY_TITLE]

    def test_entry_outside_fence_reports_distance(self, service, fence, membership, db_session):
        with pytest.raises(OutsideFence) as exc_info:
            enter(service, point=OUTSIDE)

        detail = exc_info.value.detail
        assert exc_info.value.status_code == 403
        assert detail["code"] == "outside_fence"
        assert detail["distance"] == 150
        assert detail["required_radius"] == 100
        assert detail["approximate"] is False
        assert records(db_session) == []

    def test_entry_outside_polygon_reports_bounding_radius(self, service, fence, membership, db_session):
        square = [
            {"lat": GYM_LAT - 0.0005, "lng": GYM_LNG - 0.0005},
            {"lat": GYM_LAT - 0.0005, "lng": GYM_LNG + 0.0005},
            {"lat": GYM_LAT + 0.0005, "lng": GYM_LNG + 0.0005},
            {"lat": GYM_LAT + 0.0005, "lng": GYM_LNG - 0.0005},
        ]
        FenceConfigService(db_session).save(GYM_ID, {"shape": "polygon", "polygon": square})

        with pytest.raises(OutsideFence) as exc_info:
            enter(service, point=OUTSIDE)

        detail = exc_info.value.detail
        _, radius = polygon_to_bounding_circle(square)
        assert detail["shape"] == "polygon"
        assert detail["approximate"] is True
        assert detail["required_radius"] == round(radius)
        assert detail["distance"] == 150
        assert records(db_session) == []

    def test_mock_location_always_rejected(self, service, fence, membership, db_session):
        FenceConfigService(db_session).save(GYM_ID, {"allow_mock_location": True})

        for _ in range(2):
            with pytest.raises(FraudRejected):
                enter(service, is_mock_location=True)
        assert records(db_session) == []

    def test_missing_fields(self, service, fence, membership):
        with pytest.raises(InvalidInput) as exc_info:
            service.handle_entry(MEMBER_ID, GYM_ID, None, GYM_LNG, now=NOW)
        assert exc_info.value.detail["missing_fields"] == ["latitude"]

    def test_unknown_gym(self, service):
        with pytest.raises(GymNotFound):
            service.handle_entry(MEMBER_ID, "MISSING", GYM_LAT, GYM_LNG, now=NOW)

    def test_gym_without_location_or_fence(self, service, db_session):
        db_session.add(Gym(id=GYM_ID, name="Unplaced Gym", timezone="UTC"))
        db_session.commit()

        with pytest.raises(FenceNotConfigured):
            enter(service)

    def test_fence_created_lazily_from_gym_location(self, service, gym, membership, db_session):
        result = enter(service)
        assert result.record.has_entry
        assert FenceConfigService(db_session).find(GYM_ID) is not None

    def test_disabled_fence(self, service, fence, membership, db_session):
        FenceConfigService(db_session).save(GYM_ID, {"enabled": False})
        with pytest.raises(FenceNotConfigured):
            enter(service)

    def test_no_membership(self, service, fence):
        with pytest.raises(NoActiveMembership):
            enter(service)

    def test_expired_membership(self, service, fence, membership, db_session):
        membership.end_date = date(2026, 3, 9)
        db_session.add(membership)
        db_session.commit()

        with pytest.raises(NoActiveMembership):
            enter(service)

    def test_frozen_membership(self, service, fence, membership, db_session):
        membership.status = MembershipStatus.FROZEN
        db_session.add(membership)
        db_session.commit()

        with pytest.raises(NoActiveMembership):
            enter(service)

    def test_outside_operating_hours(self, service, fence, membership):
        with pytest.raises(OutsideOperatingHours) as exc_info:
            enter(service, now=NOW.replace(hour=3))
        assert exc_info.value.detail["current_time"] == "03:00"
        assert exc_info.value.detail["operating_hours"] == "05:00 - 23:00"

    def test_second_entry_is_idempotent(self, service, fence, membership, notifier, db_session):
        first = enter(service)
        second = enter(service, now=NOW + timedelta(minutes=20))

        assert second.already_marked is True
        assert second.record.id == first.record.id
        assert second.record.entry_at == first.record.entry_at
        assert len(records(db_session)) == 1

        db_session.refresh(membership)
        assert membership.sessions_remaining == 9
        assert len(notifier.sent) == 1

    def test_concurrent_entry_converges_on_one_record(self, service, fence, membership, db_session, monkeypatch):
        enter(service)

        # The racing request looked before the first one committed
        real_find = service._find_record
        calls = []

        def racing_find(*args):
            calls.append(args)
            if len(calls) == 1:
                return None
            return real_find(*args)

        monkeypatch.setattr(service, "_find_record", racing_find)
        result = enter(service, now=NOW + timedelta(seconds=1))

        assert result.already_marked is True
        assert len(records(db_session)) == 1

    def test_entry_completes_pending_admin_record(self, service, fence, membership, db_session):
        db_session.add(
            AttendanceRecord(member_id=MEMBER_ID, gym_id=GYM_ID, date=date(2026, 3, 10))
        )
        db_session.commit()

        result = enter(service)
        assert result.created is False
        assert result.record.status == AttendanceStatus.PRESENT
        assert len(records(db_session)) == 1

    def test_notification_failure_keeps_record(self, db_session, fence, membership):
        service = GeofenceAttendanceService(db_session, notifier=FakeNotifier(fail=True))

        result = enter(service)
        assert result.already_marked is False
        assert len(records(db_session)) == 1

    def test_session_decrement_failure_keeps_record(self, service, fence, membership, notifier, db_session, monkeypatch):
        def broken_decrement(membership):
            raise RuntimeError("membership store unavailable")

        monkeypatch.setattr(service.memberships, "decrement_session", broken_decrement)
        result = enter(service)

        assert result.record.has_entry
        assert len(records(db_session)) == 1
        assert len(notifier.sent) == 1

    def test_plan_without_sessions_is_untouched(self, service, fence, membership, db_session):
        membership.sessions_remaining = None
        db_session.add(membership)
        db_session.commit()

        result = enter(service)
        assert result.sessions_remaining is None

    def test_day_is_gym_local(self, db_session, notifier):
        db_session.add(
            Gym(
                id=GYM_ID,
                name="Delhi Gym",
                latitude=GYM_LAT,
                longitude=GYM_LNG,
                opening_time="00:00",
                closing_time="23:59",
                timezone="Asia/Kolkata",
            )
        )
        db_session.add(
            Membership(
                member_id=MEMBER_ID,
                gym_id=GYM_ID,
                start_date=date(2026, 1, 1),
                end_date=date(2026, 12, 31),
            )
        )
        db_session.commit()

        service = GeofenceAttendanceService(db_session, notifier=notifier)
        # 20:00 UTC is 01:30 the next day in Delhi
        result = enter(service, now=datetime(2026, 3, 10, 20, 0, tzinfo=timezone.utc))

        assert result.record.date == date(2026, 3, 11)
        assert result.record.check_in_time == "01:30"


class TestExit:
    def test_exit_before_minimum_stay_is_rejected(self, service, fence, membership, db_session):
        entered = enter(service).record

        with pytest.raises(MinimumStayNotMet) as exc_info:
            leave(service, NOW + timedelta(minutes=3))

        assert exc_info.value.detail["required_minutes"] == 5
        assert exc_info.value.detail["duration_in_minutes"] == 3
        db_session.refresh(entered)
        assert entered.exit_at is None
        assert entered.check_out_time is None

    def test_premature_exit_keeps_failing_then_succeeds(self, service, fence, membership):
        enter(service)
        for minutes in (1, 2, 4):
            with pytest.raises(MinimumStayNotMet):
                leave(service, NOW + timedelta(minutes=minutes))

        result = leave(service, NOW + timedelta(minutes=6))
        assert result.dwell_minutes == 6

    def test_exit_records_dwell(self, service, fence, membership, notifier):
        enter(service)
        result = leave(service, NOW + timedelta(minutes=45))

        record = result.record
        assert result.dwell_minutes == 45
        assert result.already_recorded is False
        assert record.dwell_minutes == 45
        assert record.check_out_time == "10:45"
        assert record.exit_accuracy == 10.0
        assert [n["title"] for n in notifier.sent] == [ENTRY_TITLE, EXIT_TITLE]
        assert notifier.sent[-1]["metadata"]["duration_minutes"] == 45

    def test_dwell_rounds_to_nearest_minute(self, service, fence, membership):
        enter(service)
        result = leave(service, NOW + timedelta(minutes=4, seconds=40))
        assert result.dwell_minutes == 5

    def test_exit_without_entry(self, service, fence, membership):
        with pytest.raises(NoEntryRecord):
            leave(service, NOW)

    def test_repeated_exit_is_idempotent(self, service, fence, membership, notifier):
        enter(service)
        leave(service, NOW + timedelta(minutes=30))
        again = leave(service, NOW + timedelta(minutes=50))

        assert again.already_recorded is True
        assert again.dwell_minutes == 30
        assert len(notifier.sent) == 2


class TestReads:
    def test_today_status(self, service, fence, membership):
        status = service.today_status(MEMBER_ID, GYM_ID, now=NOW)
        assert status["isMarked"] is False
        assert status["attendance"] is None

        enter(service)
        leave(service, NOW + timedelta(minutes=30))

        status = service.today_status(MEMBER_ID, GYM_ID, now=NOW)
        assert status["isMarked"] is True
        assert status["hasCheckedOut"] is True
        assert status["attendance"].exit.dwell_minutes == 30

    def test_history_newest_first_with_limit(self, service, fence, membership):
        for day in range(3):
            enter(service, now=NOW + timedelta(days=day))

        history = service.history(MEMBER_ID, GYM_ID, limit=2)
        assert [r.date for r in history] == [date(2026, 3, 12), date(2026, 3, 11)]

        ranged = service.history(MEMBER_ID, GYM_ID, start_date=date(2026, 3, 11), end_date=date(2026, 3, 11))
        assert len(ranged) == 1

    def test_history_rejects_inverted_range(self, service, gym):
        with pytest.raises(InvalidInput):
            service.history(MEMBER_ID, GYM_ID, start_date=date(2026, 3, 12), end_date=date(2026, 3, 1))

    def test_monthly_stats(self, service, fence, membership, db_session):
        enter(service)
        leave(service, NOW + timedelta(minutes=40))
        enter(service, now=NOW + timedelta(days=1))
        leave(service, NOW + timedelta(days=1, minutes=60))
        db_session.add(
            AttendanceRecord(
                member_id=MEMBER_ID,
                gym_id=GYM_ID,
                date=date(2026, 3, 20),
                status=AttendanceStatus.ABSENT,
            )
        )
        db_session.commit()

        stats = service.monthly_stats(MEMBER_ID, GYM_ID, month=3, year=2026)
        assert stats["totalDays"] == 3
        assert stats["presentDays"] == 2
        assert stats["geofenceDays"] == 2
        assert stats["attendanceRate"] == 66.67
        assert stats["averageDurationMinutes"] == 50

    def test_monthly_stats_invalid_month(self, service, gym):
        with pytest.raises(InvalidInput):
            service.monthly_stats(MEMBER_ID, GYM_ID, month=13, year=2026)

    def test_monthly_stats_month_zero_is_not_defaulted(self, service, gym):
        with pytest.raises(InvalidInput):
            service.monthly_stats(MEMBER_ID, GYM_ID, month=0, year=2026)

    @pytest.mark.parametrize("year", [0, 10000])
    def test_monthly_stats_year_out_of_range(self, service, gym, year):
        with pytest.raises(InvalidInput) as exc_info:
            service.monthly_stats(MEMBER_ID, GYM_ID, month=3, year=year)
        assert exc_info.value.detail["year"] == year

    def test_monthly_stats_defaults_to_current_local_month(self, service, gym):
        stats = service.monthly_stats(MEMBER_ID, GYM_ID, now=NOW)
        assert (stats["month"], stats["year"]) == (3, 2026)
