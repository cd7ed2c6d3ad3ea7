"""
Great-circle and flat-earth helpers shared by the simulator and aggregator.
"""
from __future__ import annotations

import math
import random
from typing import Optional, Tuple

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE_LAT = 111_320.0

LatLng = Tuple[float, float]


def is_valid_coordinate(lat: float, lng: float) -> bool:
    """Finite WGS84 degrees: |lat| <= 90 and |lng| <= 180."""
    return (
        math.isfinite(lat)
        and math.isfinite(lng)
        and -90.0 <= lat <= 90.0
        and -180.0 <= lng <= 180.0
    )


def haversine_m(start: LatLng, end: LatLng) -> float:
    """
    Great-circle distance between two (lat, lng) points in metres.
    """
    phi1, phi2 = math.radians(start[0]), math.radians(end[0])
    half_d_phi = (phi2 - phi1) / 2
    half_d_lambda = math.radians(end[1] - start[1]) / 2
    h = math.sin(half_d_phi) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(half_d_lambda) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def bearing_deg(start: LatLng, end: LatLng) -> float:
    """Initial course from ``start`` to ``end``, clockwise from north, in [0, 360)."""
    phi1, phi2 = math.radians(start[0]), math.radians(end[0])
    d_lambda = math.radians(end[1] - start[1])
    east = math.sin(d_lambda) * math.cos(phi2)
    north = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return math.degrees(math.atan2(east, north)) % 360.0


def meters_to_degrees(lat: float, north_m: float, east_m: float) -> Tuple[float, float]:
    """Equirectangular conversion of a metre offset into (d_lat, d_lng) degrees."""
    d_lat = north_m / METERS_PER_DEGREE_LAT
    lng_scale = METERS_PER_DEGREE_LAT * math.cos(math.radians(lat))
    # Near the poles cos(lat) collapses; treat the scale as 1 m/deg there.
    d_lng = east_m / (lng_scale or 1.0)
    return d_lat, d_lng


def degrees_lat_for_meters(meters: float) -> float:
    return meters / METERS_PER_DEGREE_LAT


def jitter_point(
    lat: float, lng: float, meters: float, rng: Optional[random.Random] = None
) -> LatLng:
    """
    Displace a point uniformly within +/- ``meters`` on each axis.
    """
    if meters <= 0:
        return lat, lng
    rng = rng or random
    north = (rng.random() - 0.5) * 2 * meters
    east = (rng.random() - 0.5) * 2 * meters
    d_lat, d_lng = meters_to_degrees(lat, north, east)
    return lat + d_lat, lng + d_lng
