from datetime import date, timedelta

import pytest

from models.member_location_status import (
    AccuracyClass,
    LocationTelemetry,
    PermissionState,
    WarningType,
)
from models.membership import Membership
from services.errors import InvalidInput, LocationStatusNotFound
from services.location_status_service import LocationStatusService, categorize_status

from conftest import GYM_ID, GYM_LAT, GYM_LNG, MEMBER_ID, NOW

HEALTHY = {
    "gym_id": GYM_ID,
    "location_enabled": True,
    "location_permission": "granted",
    "background_location_enabled": True,
    "background_location_permission": "granted",
    "location_accuracy": "high",
    "geofence_setup": {"is_setup": True, "geofence_id": "gym-GYM-1"},
}


def telemetry(**overrides):
    return LocationTelemetry(**{**HEALTHY, **overrides})


@pytest.fixture
def diagnostics(db_session):
    return LocationStatusService(db_session)


def add_member(db_session, member_id):
    db_session.add(
        Membership(
            member_id=member_id,
            gym_id=GYM_ID,
            start_date=date(2020, 1, 1),
            end_date=date(2099, 12, 31),
        )
    )
    db_session.commit()


class TestRecordTelemetry:
    def test_healthy_device_has_no_warnings(self, diagnostics, fence):
        result = diagnostics.record_telemetry(MEMBER_ID, GYM_ID, telemetry(), now=NOW)

        assert result["geofenceEnabled"] is True
        assert result["hasWarnings"] is False
        assert result["status"].warnings == []

    def test_every_failing_check_appends_a_warning(self, diagnostics, fence):
        payload = LocationTelemetry(gym_id=GYM_ID, location_accuracy="low")
        result = diagnostics.record_telemetry(MEMBER_ID, GYM_ID, payload, now=NOW)

        assert [w["type"] for w in result["newWarnings"]] == [
            "location_disabled",
            "permission_denied",
            "background_permission_denied",
            "low_accuracy",
            "geofence_failed",
        ]
        assert all(w["acknowledged"] is False for w in result["status"].warnings)

    def test_manual_mode_gym_records_without_warnings(self, diagnostics, gym):
        payload = LocationTelemetry(gym_id=GYM_ID, location_enabled=False)
        result = diagnostics.record_telemetry(MEMBER_ID, GYM_ID, payload, now=NOW)

        assert result["geofenceEnabled"] is False
        assert result["status"].warnings == []
        assert result["status"].location_enabled is False

    def test_warnings_accumulate(self, diagnostics, fence):
        diagnostics.record_telemetry(MEMBER_ID, GYM_ID, telemetry(location_enabled=False), now=NOW)
        diagnostics.record_telemetry(
            MEMBER_ID, GYM_ID, telemetry(location_enabled=False), now=NOW + timedelta(minutes=5)
        )

        status = diagnostics.find(MEMBER_ID, GYM_ID)
        assert [w["type"] for w in status.warnings] == ["location_disabled", "location_disabled"]

    def test_one_row_per_member_and_gym(self, diagnostics, fence, db_session):
        diagnostics.record_telemetry(MEMBER_ID, GYM_ID, telemetry(), now=NOW)
        diagnostics.record_telemetry(MEMBER_ID, GYM_ID, telemetry(), now=NOW + timedelta(minutes=1))

        statuses = diagnostics.members_with_issues(GYM_ID)
        assert statuses == []
        assert diagnostics.find(MEMBER_ID, GYM_ID).id is not None

    def test_partial_push_keeps_unsent_fields(self, diagnostics, fence):
        diagnostics.record_telemetry(MEMBER_ID, GYM_ID, telemetry(), now=NOW)
        diagnostics.record_telemetry(
            MEMBER_ID,
            GYM_ID,
            LocationTelemetry(gym_id=GYM_ID, location_accuracy="medium"),
            now=NOW + timedelta(minutes=1),
        )

        status = diagnostics.find(MEMBER_ID, GYM_ID)
        assert status.location_enabled is True
        assert status.location_accuracy == AccuracyClass.MEDIUM

    def test_location_fix_updates_location_timestamp(self, diagnostics, fence):
        result = diagnostics.record_telemetry(
            MEMBER_ID,
            GYM_ID,
            telemetry(current_location={"latitude": GYM_LAT, "longitude": GYM_LNG, "accuracy": 12}),
            now=NOW,
        )

        status = result["status"]
        assert status.current_latitude == GYM_LAT
        assert status.current_accuracy == 12
        assert status.last_location_update is not None


class TestAcknowledge:
    def test_acknowledge_by_index(self, diagnostics, fence):
        diagnostics.record_telemetry(MEMBER_ID, GYM_ID, telemetry(location_accuracy="low"), now=NOW)

        status = diagnostics.acknowledge_warning(MEMBER_ID, GYM_ID, 0)
        assert status.warnings[0]["acknowledged"] is True
        assert status.warnings[0]["type"] == WarningType.LOW_ACCURACY.value

    def test_index_out_of_range(self, diagnostics, fence):
        diagnostics.record_telemetry(MEMBER_ID, GYM_ID, telemetry(), now=NOW)
        with pytest.raises(InvalidInput):
            diagnostics.acknowledge_warning(MEMBER_ID, GYM_ID, 3)

    def test_missing_status(self, diagnostics, fence):
        with pytest.raises(LocationStatusNotFound):
            diagnostics.acknowledge_warning(MEMBER_ID, GYM_ID, 0)


class TestCategorize:
    def test_partition_in_priority_order(self, diagnostics, fence, db_session):
        pushes = {
            "healthy": telemetry(),
            "no-location": telemetry(location_enabled=False, location_accuracy="low"),
            "denied": telemetry(location_permission="denied", background_location_enabled=False),
            "no-background": telemetry(background_location_permission="deniedForever"),
            "low-accuracy": telemetry(location_accuracy="low"),
            "not-setup": telemetry(geofence_setup={"is_setup": False}),
        }
        for member_id, payload in pushes.items():
            add_member(db_session, member_id)
            diagnostics.record_telemetry(member_id, GYM_ID, payload, now=NOW)
        add_member(db_session, "silent")

        overview = diagnostics.categorize_gym_members(GYM_ID, now=NOW + timedelta(minutes=5))

        def members(bucket):
            return [s.member_id for s in overview[bucket]]

        assert members("fullyConfigured") == ["healthy"]
        assert members("locationDisabled") == ["no-location"]
        assert members("permissionDenied") == ["denied"]
        assert members("backgroundPermissionIssue") == ["no-background"]
        assert members("lowAccuracy") == ["low-accuracy"]
        assert members("geofenceNotSetup") == ["not-setup"]
        assert overview["noData"] == ["silent"]
        assert overview["summary"]["totalMembers"] == 7

    def test_stale_wins_over_healthy(self, diagnostics, fence):
        diagnostics.record_telemetry(MEMBER_ID, GYM_ID, telemetry(), now=NOW)

        overview = diagnostics.categorize_gym_members(GYM_ID, now=NOW + timedelta(minutes=31))
        assert [s.member_id for s in overview["stale"]] == [MEMBER_ID]
        assert overview["fullyConfigured"] == []

    def test_status_meets_requirements_only_when_fresh(self, diagnostics, fence):
        status = diagnostics.record_telemetry(MEMBER_ID, GYM_ID, telemetry(), now=NOW)["status"]

        assert categorize_status(status, NOW + timedelta(minutes=10)) == "fullyConfigured"
        assert diagnostics.get_status(MEMBER_ID, GYM_ID, now=NOW)["meetsRequirements"] is True
        assert diagnostics.get_status(MEMBER_ID, GYM_ID, now=NOW + timedelta(hours=1))["isStale"] is True


class TestIssuesAndRequirements:
    def test_members_with_issues(self, diagnostics, fence):
        diagnostics.record_telemetry("ok", GYM_ID, telemetry(), now=NOW)
        diagnostics.record_telemetry(
            "restricted", GYM_ID, telemetry(location_permission="restricted"), now=NOW
        )
        diagnostics.record_telemetry(
            "background-off", GYM_ID, telemetry(background_location_enabled=False), now=NOW
        )
        # Low accuracy alone is not a permission issue
        diagnostics.record_telemetry("fuzzy", GYM_ID, telemetry(location_accuracy="low"), now=NOW)

        issues = {s.member_id for s in diagnostics.members_with_issues(GYM_ID)}
        assert issues == {"restricted", "background-off"}

    def test_geofence_requirements(self, diagnostics, fence):
        requirements = diagnostics.geofence_requirements(GYM_ID)

        assert requirements["geofenceEnabled"] is True
        assert requirements["attendanceMode"] == "geofence"
        assert requirements["requirements"]["locationPermission"] == PermissionState.GRANTED.value
        assert requirements["requirements"]["minAccuracyMeters"] == 20
        assert requirements["geofenceConfig"]["radius"] == 100

    def test_requirements_without_geofence(self, diagnostics, gym):
        requirements = diagnostics.geofence_requirements(GYM_ID)
        assert requirements["geofenceEnabled"] is False
        assert requirements["geofenceConfig"] is None
