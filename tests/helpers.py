"""Shared helpers for tests (spherical geometry + stub stores)."""

from __future__ import annotations

from math import asin, atan2, cos, degrees, radians, sin

from georange.core.geo import EARTH_RADIUS_KM, GeoPoint, wrap_longitude


def destination(origin: GeoPoint, distance_km: float, bearing_deg: float) -> GeoPoint:
    """Point reached from `origin` after `distance_km` along `bearing_deg` (great circle)."""
    lat1 = radians(origin.lat)
    lon1 = radians(origin.lon)
    brg = radians(bearing_deg)
    d = distance_km / EARTH_RADIUS_KM

    lat2 = asin(sin(lat1) * cos(d) + cos(lat1) * sin(d) * cos(brg))
    lon2 = lon1 + atan2(sin(brg) * sin(d) * cos(lat1), cos(d) - sin(lat1) * sin(lat2))
    return GeoPoint(lat=degrees(lat2), lon=wrap_longitude(degrees(lon2)))
