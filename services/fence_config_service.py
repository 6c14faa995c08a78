import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session, select

from models.geofence_config import (
    DEFAULT_MIN_ACCURACY_METERS,
    DEFAULT_MINIMUM_STAY_MINUTES,
    DEFAULT_RADIUS_METERS,
    RADIUS_MAX_METERS,
    RADIUS_MIN_METERS,
    FenceShape,
    GeofenceConfig,
)
from models.gym import Gym
from services.errors import FenceNotConfigured, ValidationError
from services.gym_registry import GymRegistry
from services.legacy_settings_service import LegacySettingsService
from utils.geofence import Circle, PolygonRing
from utils.operating_hours import describe_window, is_within_window, parse_time_of_day
from utils.timezone_helpers import from_utc_to_local, utc_now

logger = logging.getLogger(__name__)

# Used when a gym has never registered coordinates
DEFAULT_CENTER = (28.6139, 77.2090)

MIN_ACCURACY_RANGE = (10, 50)
MINIMUM_STAY_RANGE = (1, 120)

BOOLEAN_FIELDS = ("enabled", "auto_mark_entry", "auto_mark_exit", "allow_mock_location")


def _check_lat_lng(lat: Any, lng: Any, label: str = "Center") -> Tuple[float, float]:
    if lat is None or lng is None:
        raise ValidationError(f"{label} latitude and longitude are required")
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} coordinates must be numbers", latitude=lat, longitude=lng)
    if not -90 <= lat <= 90:
        raise ValidationError("Latitude must be between -90 and 90", latitude=lat)
    if not -180 <= lng <= 180:
        raise ValidationError("Longitude must be between -180 and 180", longitude=lng)
    return lat, lng


def _check_radius(radius: Any) -> float:
    if radius is None:
        raise ValidationError("Radius is required for a circular geofence")
    radius = float(radius)
    if not RADIUS_MIN_METERS <= radius <= RADIUS_MAX_METERS:
        raise ValidationError(
            f"Radius must be between {RADIUS_MIN_METERS} and {RADIUS_MAX_METERS} meters",
            radius=radius,
            min_radius=RADIUS_MIN_METERS,
            max_radius=RADIUS_MAX_METERS,
        )
    return radius


def _check_polygon(vertices: Any) -> List[Dict[str, float]]:
    if not vertices or len(vertices) < 3:
        raise ValidationError("Polygon geofence requires at least 3 points")
    cleaned = []
    for index, vertex in enumerate(vertices):
        if hasattr(vertex, "model_dump"):
            vertex = vertex.model_dump()
        if not isinstance(vertex, dict):
            raise ValidationError("Each polygon point must have lat and lng", index=index)
        lat, lng = _check_lat_lng(vertex.get("lat"), vertex.get("lng"), label=f"Point {index + 1}")
        cleaned.append({"lat": lat, "lng": lng})
    return cleaned


def _check_range(name: str, value: Any, bounds: Tuple[int, int]) -> Any:
    low, high = bounds
    if value is None or not low <= value <= high:
        raise ValidationError(f"{name} must be between {low} and {high}", **{name: value})
    return value


def _check_time(name: str, value: Optional[str]) -> Optional[str]:
    if value in (None, ""):
        return None
    if parse_time_of_day(value) is None:
        raise ValidationError(
            f"{name} must be a time like 06:00 or 6:00 AM", **{name: value}
        )
    return value.strip()


class FenceConfigService:
    """Canonical, per-gym geofence configuration."""

    def __init__(
        self,
        session: Session,
        gyms: Optional[GymRegistry] = None,
        legacy: Optional[LegacySettingsService] = None,
    ):
        self.session = session
        self.gyms = gyms or GymRegistry(session)
        self.legacy = legacy or LegacySettingsService(session)

    def find(self, gym_id: str) -> Optional[GeofenceConfig]:
        return self.session.exec(
            select(GeofenceConfig).where(GeofenceConfig.gym_id == gym_id)
        ).first()

    def get_or_create(self, gym_id: str) -> GeofenceConfig:
        gym = self.gyms.get_gym(gym_id)
        config = self.find(gym_id)
        if config is not None:
            return config

        if gym.has_location:
            center_lat, center_lng = gym.latitude, gym.longitude
        else:
            center_lat, center_lng = DEFAULT_CENTER
            logger.warning("[FENCE CONFIG] Gym %s has no coordinates, using default center", gym_id)

        config = GeofenceConfig(
            gym_id=gym_id,
            shape=FenceShape.CIRCULAR,
            center_lat=center_lat,
            center_lng=center_lng,
            radius_meters=gym.geofence_radius or DEFAULT_RADIUS_METERS,
            enabled=True,
        )
        self.session.add(config)
        self.session.commit()
        self.session.refresh(config)
        logger.info("[FENCE CONFIG] Created default fence for gym %s", gym_id)

        self._sync_legacy(config)
        return config

    def save(
        self, gym_id: str, patch: Dict[str, Any], now: Optional[datetime] = None
    ) -> GeofenceConfig:
        """
        Validate and persist a fence configuration.

        ``patch`` is merged over the existing config (or the defaults). The
        geometry of the shape that is not in use is cleared.
        """
        now = now or datetime.now(timezone.utc)
        gym = self.gyms.get_gym(gym_id)
        config = self.find(gym_id)

        def current(name: str, default: Any = None) -> Any:
            if name in patch:
                return patch[name]
            return getattr(config, name) if config is not None else default

        raw_shape = current("shape")
        if raw_shape is None:
            raise ValidationError("Invalid geofence type. Must be circular or polygon")
        try:
            shape = FenceShape(raw_shape)
        except ValueError:
            raise ValidationError(
                "Invalid geofence type. Must be circular or polygon", shape=raw_shape
            )

        if shape == FenceShape.CIRCULAR:
            center_lat, center_lng = _check_lat_lng(current("center_lat"), current("center_lng"))
            radius = _check_radius(current("radius_meters"))
            polygon = None
        elif shape == FenceShape.POLYGON:
            polygon = _check_polygon(current("polygon"))
            center_lat = center_lng = radius = None
        else:
            raise ValidationError(f"Unsupported geofence type: {shape}")

        min_accuracy = _check_range(
            "min_accuracy_meters",
            current("min_accuracy_meters", DEFAULT_MIN_ACCURACY_METERS),
            MIN_ACCURACY_RANGE,
        )
        minimum_stay = _check_range(
            "minimum_stay_minutes",
            current("minimum_stay_minutes", DEFAULT_MINIMUM_STAY_MINUTES),
            MINIMUM_STAY_RANGE,
        )
        hours_start = _check_time("operating_hours_start", current("operating_hours_start"))
        hours_end = _check_time("operating_hours_end", current("operating_hours_end"))

        if config is None:
            config = GeofenceConfig(gym_id=gym_id)

        config.shape = shape
        config.center_lat = center_lat
        config.center_lng = center_lng
        config.radius_meters = radius
        config.polygon = polygon
        config.min_accuracy_meters = float(min_accuracy)
        config.minimum_stay_minutes = int(minimum_stay)
        config.operating_hours_start = hours_start
        config.operating_hours_end = hours_end
        for name in BOOLEAN_FIELDS:
            value = current(name)
            if value is not None:
                setattr(config, name, bool(value))
        config.updated_at = now

        # Other subsystems read the gym's own location
        if shape == FenceShape.CIRCULAR:
            gym.latitude = center_lat
            gym.longitude = center_lng
            gym.geofence_radius = radius
            self.session.add(gym)

        self.session.add(config)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(config)
        logger.info(
            "[FENCE CONFIG] Saved %s fence for gym %s (enabled=%s)",
            shape.value,
            gym_id,
            config.enabled,
        )

        self._sync_legacy(config)
        return config

    def delete(self, gym_id: str) -> None:
        config = self.find(gym_id)
        if config is None:
            raise FenceNotConfigured("Geofence not configured for this gym", gym_id=gym_id)

        self.session.delete(config)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("[FENCE CONFIG] Deleted fence for gym %s", gym_id)

        try:
            self.legacy.disable_snapshot(gym_id)
        except Exception:
            self.session.rollback()
            logger.exception("[FENCE CONFIG] Could not disable legacy snapshot for gym %s", gym_id)

    def _sync_legacy(self, config: GeofenceConfig) -> None:
        # The canonical write has already committed; readers prefer it anyway
        try:
            self.legacy.sync_from_fence(config)
        except Exception:
            self.session.rollback()
            logger.exception("[FENCE CONFIG] Legacy settings sync failed for gym %s", config.gym_id)

    def resolve_active_fence(self, gym: Gym) -> GeofenceConfig:
        """The fence an entry event is checked against."""
        config = self.find(gym.id)
        if config is None:
            if not gym.has_location:
                raise FenceNotConfigured(
                    "Gym location not configured for geofencing", gym_id=gym.id
                )
            config = self.get_or_create(gym.id)

        if not config.enabled:
            raise FenceNotConfigured(
                "Geofence attendance is disabled for this gym", gym_id=gym.id
            )
        if config.geometry() is None:
            raise FenceNotConfigured("Geofence geometry is incomplete", gym_id=gym.id)
        return config

    @staticmethod
    def operating_window(
        gym: Gym, config: Optional[GeofenceConfig]
    ) -> Tuple[Optional[str], Optional[str]]:
        if config is not None and config.operating_hours_start and config.operating_hours_end:
            return config.operating_hours_start, config.operating_hours_end
        return gym.opening_time, gym.closing_time

    def resolve_for_member(self, gym_id: str) -> Dict[str, Any]:
        """
        Everything the member app needs to run geofencing for a gym.

        An existing canonical config is authoritative (an existing but disabled
        one reports geofencing off). The legacy snapshot is only used for gyms
        that have never saved a canonical config.
        """
        gym = self.gyms.get_gym(gym_id)
        config = self.find(gym_id)
        view = self.legacy.read_through(gym_id, config=config)
        snapshot = view.snapshot
        geofence_enabled = bool(snapshot and snapshot.enabled)

        start, end = self.operating_window(gym, config)
        geofence_settings = None
        if geofence_enabled and config is not None:
            geometry = config.geometry()
            geofence_settings = {
                "type": config.shape.value,
                "autoMarkEntry": config.auto_mark_entry,
                "autoMarkExit": config.auto_mark_exit,
                "allowMockLocation": config.allow_mock_location,
                "minAccuracyMeters": config.min_accuracy_meters,
                "minimumStayMinutes": config.minimum_stay_minutes,
            }
            if isinstance(geometry, Circle):
                geofence_settings.update(
                    latitude=geometry.center_lat,
                    longitude=geometry.center_lng,
                    radius=geometry.radius_meters,
                    polygon=None,
                )
            elif isinstance(geometry, PolygonRing):
                # Older builds read latitude/longitude/radius; give them the bounding circle
                bounds = geometry.bounding_circle()
                geofence_settings.update(
                    latitude=bounds.center_lat,
                    longitude=bounds.center_lng,
                    radius=round(bounds.radius_meters, 2),
                    polygon=[{"lat": lat, "lng": lng} for lat, lng in geometry.vertices],
                )
        elif geofence_enabled:
            geofence_settings = {
                "type": FenceShape.CIRCULAR.value,
                "latitude": snapshot.latitude,
                "longitude": snapshot.longitude,
                "radius": snapshot.radius,
                "polygon": None,
                "autoMarkEntry": snapshot.auto_mark_entry,
                "autoMarkExit": snapshot.auto_mark_exit,
                "allowMockLocation": snapshot.allow_mock_location,
                "minAccuracyMeters": snapshot.min_accuracy_meters,
                "minimumStayMinutes": DEFAULT_MINIMUM_STAY_MINUTES,
            }

        return {
            "gymId": gym_id,
            "mode": view.mode.value,
            "geofenceEnabled": geofence_enabled,
            "requiresBackgroundLocation": geofence_enabled,
            "autoMarkEnabled": view.auto_mark_enabled,
            "geofenceSettings": geofence_settings,
            "activeDays": list(gym.active_days or []),
            "operatingHours": {
                "start": start,
                "end": end,
                "display": describe_window(start, end),
            },
            "source": view.source,
        }

    def contains_point(self, gym_id: str, lat: float, lng: float) -> bool:
        config = self.find(gym_id)
        if config is None:
            raise FenceNotConfigured("Geofence not configured for this gym", gym_id=gym_id)
        return config.contains_point(lat, lng)

    def is_within_operating_hours(self, gym_id: str, now: Optional[datetime] = None) -> bool:
        gym = self.gyms.get_gym(gym_id)
        start, end = self.operating_window(gym, self.find(gym_id))
        return is_within_window(start, end, from_utc_to_local(now or utc_now(), gym.timezone))

    def verify_location(
        self, gym_id: str, lat: float, lng: float, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Dry run of the location and hours checks an entry event would face."""
        _check_lat_lng(lat, lng, label="Location")
        gym = self.gyms.get_gym(gym_id)
        config = self.find(gym_id)
        if config is None:
            raise FenceNotConfigured("Geofence not configured for this gym", gym_id=gym_id)

        if not config.enabled:
            return {
                "isWithinGeofence": False,
                "isWithinOperatingHours": False,
                "canMarkAttendance": False,
                "distance": None,
                "message": "Geofence attendance is disabled for this gym",
            }

        geometry = config.geometry()
        if geometry is None:
            raise FenceNotConfigured("Geofence geometry is incomplete", gym_id=gym_id)

        inside = geometry.contains(lat, lng)
        start, end = self.operating_window(gym, config)
        within_hours = is_within_window(start, end, from_utc_to_local(now or utc_now(), gym.timezone))

        if not inside:
            message = "Outside gym premises"
        elif not within_hours:
            message = "Outside operating hours"
        else:
            message = "Location verified"

        return {
            "isWithinGeofence": inside,
            "isWithinOperatingHours": within_hours,
            "canMarkAttendance": inside and within_hours,
            "distance": round(geometry.distance_to(lat, lng)),
            "message": message,
        }

    @staticmethod
    def validate_coordinates(lat: Any, lng: Any, radius: Any = None) -> Dict[str, Any]:
        lat, lng = _check_lat_lng(lat, lng)
        if radius is not None:
            radius = _check_radius(radius)
        return {"valid": True, "latitude": lat, "longitude": lng, "radius": radius}
