from __future__ import annotations
from dataclasses import dataclass
from math import asin, cos, isfinite, radians, sin, sqrt

from georange.core.errors import InvalidArgument

"""
Geospatial helpers.

We keep a tiny geometry layer here so the geohash engine can do distance calculations
without pulling in heavier GIS dependencies.
"""

EARTH_RADIUS_KM = 6371.0
# Cell-size constants (WGS-84, geofire lineage).
KM_PER_DEGREE_LATITUDE = 110.574
KM_PER_DEGREE_LONGITUDE_AT_EQUATOR = 111.320


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""

    lat: float
    lon: float

    def __post_init__(self) -> None:
        validate_coordinates(self.lat, self.lon)


def validate_coordinates(lat: float, lon: float) -> None:
    """Raise `InvalidArgument` unless (lat, lon) is a finite, in-range coordinate."""
    if isinstance(lat, bool) or not isinstance(lat, (int, float)) or not isfinite(lat):
        raise InvalidArgument(f"latitude must be a finite number, got {lat!r}")
    if isinstance(lon, bool) or not isinstance(lon, (int, float)) or not isfinite(lon):
        raise InvalidArgument(f"longitude must be a finite number, got {lon!r}")
    if not -90 <= lat <= 90:
        raise InvalidArgument(f"latitude must be within [-90, 90], got {lat}")
    if not -180 <= lon <= 180:
        raise InvalidArgument(f"longitude must be within [-180, 180], got {lon}")


def wrap_longitude(lon: float) -> float:
    """Wrap a longitude into [-180, 180]."""
    if -180 <= lon <= 180:
        return lon
    adjusted = lon + 180
    if adjusted > 0:
        return (adjusted % 360) - 180
    return 180 - (-adjusted % 360)


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Compute great-circle distance in kilometers between two points."""
    lat1 = radians(a.lat)
    lon1 = radians(a.lon)
    lat2 = radians(b.lat)
    lon2 = radians(b.lon)

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(min(1.0, sqrt(h)))
