"""Pytest configuration and fixtures."""

import os

# Must be set before the app (and db.session) is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FCM_ENABLED"] = "false"

import math
from datetime import date, datetime, timezone
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import models  # noqa: F401  registers every table
from core.deps import get_current_user, get_current_user_basic_auth, get_notifier
from db.session import get_session
from main import app
from models.gym import Gym
from models.membership import Membership, MembershipStatus
from services.attendance_service import GeofenceAttendanceService
from services.fence_config_service import FenceConfigService
from utils.geofence import EARTH_RADIUS_M

GYM_ID = "GYM-1"
MEMBER_ID = "member-1"
GYM_LAT = 28.6139
GYM_LNG = 77.2090

# Tuesday, 10:00 UTC; test gyms run on UTC unless stated otherwise
NOW = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite://"


class FakeNotifier:
    """Records notifications instead of writing or pushing them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def notify(self, member_id, title, message, metadata=None, notification_type="attendance"):
        if self.fail:
            raise RuntimeError("notification backend unavailable")
        self.sent.append(
            {"member_id": member_id, "title": title, "message": message, "metadata": metadata or {}}
        )


def north_of(lat: float, lng: float, meters: float):
    """A point `meters` due north of (lat, lng)."""
    return lat + math.degrees(meters / EARTH_RADIUS_M), lng


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    with Session(db_engine) as session:
        yield session


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def gym(db_session: Session) -> Gym:
    """A gym with registered coordinates and default operating hours."""
    gym = Gym(
        id=GYM_ID,
        name="Test Gym",
        latitude=GYM_LAT,
        longitude=GYM_LNG,
        geofence_radius=100.0,
        active_days=["monday", "tuesday", "wednesday", "thursday", "friday"],
        timezone="UTC",
    )
    db_session.add(gym)
    db_session.commit()
    db_session.refresh(gym)
    return gym


@pytest.fixture
def membership(db_session: Session, gym: Gym) -> Membership:
    membership = Membership(
        member_id=MEMBER_ID,
        gym_id=gym.id,
        status=MembershipStatus.ACTIVE,
        start_date=date(2020, 1, 1),
        end_date=date(2099, 12, 31),
        sessions_remaining=10,
    )
    db_session.add(membership)
    db_session.commit()
    db_session.refresh(membership)
    return membership


@pytest.fixture
def fence(db_session: Session, gym: Gym):
    """Circular 100 m fence on the gym, 5 minute minimum stay."""
    return FenceConfigService(db_session).save(
        gym.id,
        {
            "shape": "circular",
            "center_lat": GYM_LAT,
            "center_lng": GYM_LNG,
            "radius_meters": 100,
            "minimum_stay_minutes": 5,
        },
    )


@pytest.fixture
def service(db_session: Session, notifier: FakeNotifier) -> GeofenceAttendanceService:
    return GeofenceAttendanceService(db_session, notifier=notifier)


@pytest.fixture
def current_user() -> dict:
    """Identity returned by the auth overrides; tests may mutate it."""
    return {
        "uid": MEMBER_ID,
        "name": "Test Member",
        "email": "member@example.com",
        "role": "owner",
        "gyms": [],
    }


@pytest.fixture(scope="function")
def client(db_session: Session, notifier: FakeNotifier, current_user: dict) -> Generator[TestClient, None, None]:
    """Create a test client with database, identity and notifier overrides."""

    def override_get_session():
        yield db_session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_current_user] = lambda: current_user
    app.dependency_overrides[get_current_user_basic_auth] = lambda: current_user

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
