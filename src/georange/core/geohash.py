"""
Geohash codec.

A geohash packs interleaved longitude/latitude bisection bits (longitude first,
most significant bit first) into base-32 characters, 5 bits per character.
Strings sharing a prefix lie in the same cell, which is what makes them usable as
lexicographic range keys in a store without native geo support.

Approximate cell sizes (lat x lon at the equator):
- 1: ~5000km x 5000km
- 5: ~4.9km x 4.9km
- 7: ~153m x 153m
- 10: ~0.6m x 1.2m (default stored precision)
"""

from __future__ import annotations

from georange.core.errors import InvalidArgument
from georange.core.geo import (
    KM_PER_DEGREE_LATITUDE,
    KM_PER_DEGREE_LONGITUDE_AT_EQUATOR,
    GeoPoint,
    validate_coordinates,
)

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
BASE32_INDEX = {c: i for i, c in enumerate(BASE32)}
BITS_PER_CHAR = 5

GEOHASH_PRECISION = 10
MAX_PRECISION = 22


def _cell_size_km(precision: int) -> tuple[float, float]:
    bits = precision * BITS_PER_CHAR
    lon_bits = (bits + 1) // 2
    lat_bits = bits // 2
    lat_km = (180.0 / (1 << lat_bits)) * KM_PER_DEGREE_LATITUDE
    lon_km = (360.0 / (1 << lon_bits)) * KM_PER_DEGREE_LONGITUDE_AT_EQUATOR
    return lat_km, lon_km


# Index 0 is unused so that CELL_SIZES_KM[p] is the size at precision p.
CELL_SIZES_KM: tuple[tuple[float, float], ...] = ((0.0, 0.0),) + tuple(
    _cell_size_km(p) for p in range(1, MAX_PRECISION + 1)
)


def validate_precision(precision: int) -> int:
    if isinstance(precision, bool) or not isinstance(precision, int):
        raise InvalidArgument(f"precision must be an integer, got {precision!r}")
    if not 1 <= precision <= MAX_PRECISION:
        raise InvalidArgument(f"precision must be within [1, {MAX_PRECISION}], got {precision}")
    return precision


def validate_geohash(geohash: str) -> str:
    """Return `geohash` unchanged, or raise `InvalidArgument` if it is malformed."""
    if not isinstance(geohash, str):
        raise InvalidArgument(f"geohash must be a string, got {type(geohash).__name__}")
    if not geohash:
        raise InvalidArgument("geohash cannot be empty")
    if len(geohash) > MAX_PRECISION:
        raise InvalidArgument(f"geohash is longer than {MAX_PRECISION} characters: {geohash!r}")
    for ch in geohash:
        if ch not in BASE32_INDEX:
            raise InvalidArgument(f"geohash {geohash!r} contains an invalid character {ch!r}")
    return geohash


def encode(point: GeoPoint, precision: int = GEOHASH_PRECISION) -> str:
    """Encode `point` into a geohash of `precision` characters."""
    validate_coordinates(point.lat, point.lon)
    validate_precision(precision)

    lat_min, lat_max = -90.0, 90.0
    lon_min, lon_max = -180.0, 180.0
    out: list[str] = []
    value = 0
    bit = 0
    is_lon = True

    while len(out) < precision:
        if is_lon:
            mid = (lon_min + lon_max) / 2
            if point.lon >= mid:
                value = (value << 1) | 1
                lon_min = mid
            else:
                value = value << 1
                lon_max = mid
        else:
            mid = (lat_min + lat_max) / 2
            if point.lat >= mid:
                value = (value << 1) | 1
                lat_min = mid
            else:
                value = value << 1
                lat_max = mid

        is_lon = not is_lon
        bit += 1
        if bit == BITS_PER_CHAR:
            out.append(BASE32[value])
            value = 0
            bit = 0

    return "".join(out)


def decode_bounding_box(geohash: str) -> tuple[tuple[float, float], tuple[float, float]]:
    """Return ((lat_min, lat_max), (lon_min, lon_max)) of the cell named by `geohash`.

    This is the geometry of the cell, not the location of any document; stored
    documents keep their exact location in `l`.
    """
    validate_geohash(geohash)

    lat_min, lat_max = -90.0, 90.0
    lon_min, lon_max = -180.0, 180.0
    is_lon = True

    for ch in geohash:
        value = BASE32_INDEX[ch]
        for shift in range(BITS_PER_CHAR - 1, -1, -1):
            bit = (value >> shift) & 1
            if is_lon:
                mid = (lon_min + lon_max) / 2
                if bit:
                    lon_min = mid
                else:
                    lon_max = mid
            else:
                mid = (lat_min + lat_max) / 2
                if bit:
                    lat_min = mid
                else:
                    lat_max = mid
            is_lon = not is_lon

    return (lat_min, lat_max), (lon_min, lon_max)


def decode(geohash: str) -> GeoPoint:
    """Decode a geohash to the center of its cell."""
    (lat_min, lat_max), (lon_min, lon_max) = decode_bounding_box(geohash)
    return GeoPoint(lat=(lat_min + lat_max) / 2, lon=(lon_min + lon_max) / 2)


def cell_size(precision: int) -> tuple[float, float]:
    """Return (lat_km, lon_km_at_equator) of a cell at `precision`."""
    validate_precision(precision)
    return CELL_SIZES_KM[precision]
