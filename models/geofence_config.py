from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import field_serializer
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from utils.geofence import Circle, FenceGeometry, PolygonRing
from utils.timezone_helpers import format_utc_datetime

RADIUS_MIN_METERS = 50
RADIUS_MAX_METERS = 500
DEFAULT_RADIUS_METERS = 100.0
DEFAULT_MIN_ACCURACY_METERS = 20.0
DEFAULT_MINIMUM_STAY_MINUTES = 5


class FenceShape(str, Enum):
    CIRCULAR = "circular"
    POLYGON = "polygon"


# Canonical geofence definition, one per gym
class GeofenceConfig(SQLModel, table=True):
    __tablename__ = "geofence_configs"

    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: str = Field(foreign_key="gyms.id", unique=True, index=True)
    shape: FenceShape = Field(default=FenceShape.CIRCULAR)

    # Circular geometry
    center_lat: Optional[float] = None
    center_lng: Optional[float] = None
    radius_meters: Optional[float] = None

    # Polygon geometry: [{"lat": .., "lng": ..}, ...]
    polygon: Optional[List[Dict[str, float]]] = Field(default=None, sa_column=Column(JSON))

    enabled: bool = Field(default=True)
    auto_mark_entry: bool = Field(default=True)
    auto_mark_exit: bool = Field(default=True)
    # Not consulted for entry: mock locations are always rejected
    allow_mock_location: bool = Field(default=False)
    min_accuracy_meters: float = Field(default=DEFAULT_MIN_ACCURACY_METERS)
    minimum_stay_minutes: int = Field(default=DEFAULT_MINIMUM_STAY_MINUTES)

    operating_hours_start: Optional[str] = None
    operating_hours_end: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    def geometry(self) -> Optional[FenceGeometry]:
        """Typed view of the stored geometry, or None if it is incomplete."""
        if self.shape == FenceShape.CIRCULAR:
            if None in (self.center_lat, self.center_lng, self.radius_meters):
                return None
            return Circle(
                center_lat=self.center_lat,
                center_lng=self.center_lng,
                radius_meters=self.radius_meters,
            )
        if self.shape == FenceShape.POLYGON:
            if not self.polygon or len(self.polygon) < 3:
                return None
            return PolygonRing(
                vertices=tuple((float(v["lat"]), float(v["lng"])) for v in self.polygon)
            )
        raise ValueError(f"Unknown fence shape: {self.shape}")

    def contains_point(self, lat: float, lng: float) -> bool:
        geometry = self.geometry()
        return geometry.contains(lat, lng) if geometry is not None else False

    @field_serializer("created_at", "updated_at")
    def serialize_timestamps(self, dt: Optional[datetime]) -> Optional[str]:
        return format_utc_datetime(dt)
