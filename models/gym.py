from typing import List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from utils.timezone_helpers import get_default_timezone

# Gym registry record consumed by the attendance engine


class Gym(SQLModel, table=True):
    __tablename__ = "gyms"

    id: str = Field(primary_key=True, description="Unique gym identifier")
    name: Optional[str] = Field(default=None, description="Human-friendly gym name")
    # Registered coordinates; mirrored from circular fences on save
    latitude: Optional[float] = Field(default=None, description="Latitude of the gym")
    longitude: Optional[float] = Field(default=None, description="Longitude of the gym")
    geofence_radius: float = Field(default=100.0, description="Radius in meters")
    # "HH:MM" or "HH:MM AM/PM"
    opening_time: Optional[str] = None
    closing_time: Optional[str] = None
    active_days: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    timezone: str = Field(default_factory=get_default_timezone)

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None
