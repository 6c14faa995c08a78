# utils/geofence.py

from dataclasses import dataclass
from math import radians, sin, cos, sqrt, atan2
from typing import Sequence, Tuple, Union

EARTH_RADIUS_M = 6371000
BOUNDING_BUFFER_M = 20.0

LatLng = Tuple[float, float]


def haversine_dist(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    φ1, φ2 = radians(lat1), radians(lat2)
    Δφ = radians(lat2 - lat1)
    Δλ = radians(lng2 - lng1)

    a = sin(Δφ/2)**2 + cos(φ1) * cos(φ2) * sin(Δλ/2)**2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


def is_within_radius(
    lat: float,
    lng: float,
    center_lat: float,
    center_lng: float,
    radius_m: float
) -> bool:

    return haversine_dist(lat, lng, center_lat, center_lng) <= radius_m


def _vertex(v) -> LatLng:
    # Vertices arrive either as (lat, lng) pairs or as {"lat": .., "lng": ..} rows
    if isinstance(v, dict):
        return float(v["lat"]), float(v["lng"])
    return float(v[0]), float(v[1])


def is_point_in_polygon(lat: float, lng: float, vertices: Sequence) -> bool:
    """Ray-casting parity test; the vertex list is treated as a closed ring."""
    ring = [_vertex(v) for v in vertices]
    if len(ring) < 3:
        return False

    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > lng) != (yj > lng):
            x_cross = (xj - xi) * (lng - yi) / (yj - yi) + xi
            if lat < x_cross:
                inside = not inside
        j = i
    return inside


def polygon_centroid(vertices: Sequence) -> LatLng:
    ring = [_vertex(v) for v in vertices]
    if not ring:
        raise ValueError("Cannot compute the centroid of an empty polygon.")
    lat = sum(p[0] for p in ring) / len(ring)
    lng = sum(p[1] for p in ring) / len(ring)
    return lat, lng


def polygon_to_bounding_circle(vertices: Sequence) -> Tuple[LatLng, float]:
    """
    Approximate a polygon by a circle for clients that only understand circles.

    The center is the arithmetic mean of the vertices and the radius is the
    farthest vertex distance plus a fixed 20 m buffer. Never use the result for
    containment decisions.
    """
    center = polygon_centroid(vertices)
    farthest = max(
        haversine_dist(center[0], center[1], lat, lng)
        for lat, lng in (_vertex(v) for v in vertices)
    )
    return center, farthest + BOUNDING_BUFFER_M


@dataclass(frozen=True)
class Circle:
    center_lat: float
    center_lng: float
    radius_meters: float

    def distance_to(self, lat: float, lng: float) -> float:
        return haversine_dist(self.center_lat, self.center_lng, lat, lng)

    def contains(self, lat: float, lng: float) -> bool:
        return is_within_radius(lat, lng, self.center_lat, self.center_lng, self.radius_meters)


@dataclass(frozen=True)
class PolygonRing:
    vertices: Tuple[LatLng, ...]

    def distance_to(self, lat: float, lng: float) -> float:
        # Reported for display only; containment uses the exact ring
        c_lat, c_lng = polygon_centroid(self.vertices)
        return haversine_dist(c_lat, c_lng, lat, lng)

    def contains(self, lat: float, lng: float) -> bool:
        return is_point_in_polygon(lat, lng, self.vertices)

    def bounding_circle(self) -> Circle:
        (lat, lng), radius = polygon_to_bounding_circle(self.vertices)
        return Circle(center_lat=lat, center_lng=lng, radius_meters=radius)


FenceGeometry = Union[Circle, PolygonRing]
