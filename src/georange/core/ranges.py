"""
Region decomposition: circle -> geohash string ranges.

The store can only answer `g BETWEEN start AND end`, so a radius query is turned into
the cells of a 3x3 neighbourhood around the center, each cell becoming one
lexicographic range. The ranges are a superset of the circle; exact distance
filtering happens downstream in the joiners.

Limits:
- the query precision never exceeds the precision `g` was written at, otherwise
  shorter stored hashes would sort before every range start,
- neighbour expansion drops cells beyond the poles (no wraparound over the pole);
  longitude wraps at the antimeridian,
- when even precision-1 cells are narrower than the circle (radius beyond ~2500km,
  or a circle reaching a pole) the query degrades to one full-keyspace range.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from math import cos, isfinite, radians

from georange.core.errors import InvalidArgument
from georange.core.geo import KM_PER_DEGREE_LATITUDE, GeoPoint, wrap_longitude
from georange.core.geohash import (
    BASE32_INDEX,
    CELL_SIZES_KM,
    MAX_PRECISION,
    decode_bounding_box,
    encode,
    validate_precision,
)

logger = logging.getLogger(__name__)

# Sorts after every base-32 symbol, so `prefix + RANGE_END_SUFFIX` closes a prefix range.
RANGE_END_SUFFIX = "~"


@dataclass(frozen=True, order=True)
class GeoRange:
    """Closed lexicographic interval [start, end] over the geohash field."""

    start: str
    end: str

    def contains(self, geohash: str) -> bool:
        return self.start <= geohash <= self.end

    @classmethod
    def for_prefix(cls, prefix: str) -> "GeoRange":
        return cls(start=prefix, end=prefix + RANGE_END_SUFFIX)


# Every geohash sorts within ["", "~"].
FULL_KEYSPACE = GeoRange(start="", end=RANGE_END_SUFFIX)


def _validate_query(center: GeoPoint, radius_km: float) -> None:
    if not isinstance(center, GeoPoint):
        raise InvalidArgument(f"center must be a GeoPoint, got {type(center).__name__}")
    if isinstance(radius_km, bool) or not isinstance(radius_km, (int, float)) or not isfinite(radius_km):
        raise InvalidArgument(f"radius must be a finite number, got {radius_km!r}")
    if radius_km <= 0:
        raise InvalidArgument(f"radius must be > 0, got {radius_km}")


def choose_precision(center: GeoPoint, radius_km: float, max_precision: int = MAX_PRECISION) -> int:
    """Largest precision (up to `max_precision`) whose cells are at least 2 x radius wide.

    Cell width shrinks with latitude, so the longitude span is measured at the
    circle's most poleward latitude. Returns 0 when no precision qualifies.
    """
    _validate_query(center, radius_km)
    validate_precision(max_precision)
    diameter = 2.0 * float(radius_km)
    poleward = min(90.0, abs(center.lat) + float(radius_km) / KM_PER_DEGREE_LATITUDE)
    lon_scale = max(0.0, cos(radians(poleward)))

    precision = 0
    for candidate in range(1, max_precision + 1):
        lat_km, lon_km = CELL_SIZES_KM[candidate]
        if lat_km >= diameter and lon_km * lon_scale >= diameter:
            precision = candidate
        else:
            break
    return precision


def neighbors(geohash: str) -> list[str]:
    """Return the (up to 8) cells surrounding `geohash` at the same precision."""
    (lat_min, lat_max), (lon_min, lon_max) = decode_bounding_box(geohash)
    lat_c = (lat_min + lat_max) / 2
    lon_c = (lon_min + lon_max) / 2
    lat_span = lat_max - lat_min
    lon_span = lon_max - lon_min

    out: list[str] = []
    for dlat in (1, 0, -1):
        lat = lat_c + dlat * lat_span
        # No wraparound over the poles.
        if lat > 90 or lat < -90:
            continue
        for dlon in (-1, 0, 1):
            if dlat == 0 and dlon == 0:
                continue
            lon = wrap_longitude(lon_c + dlon * lon_span)
            cell = encode(GeoPoint(lat=lat, lon=lon), len(geohash))
            if cell != geohash and cell not in out:
                out.append(cell)
    return out


def _is_next_sibling(current: GeoRange, candidate: GeoRange) -> bool:
    """True if `candidate` is the prefix cell directly after the last cell of `current`."""
    if not current.end.endswith(RANGE_END_SUFFIX) or candidate.end != candidate.start + RANGE_END_SUFFIX:
        return False
    last = current.end[: -len(RANGE_END_SUFFIX)]
    nxt = candidate.start
    if not last or len(last) != len(nxt) or last[:-1] != nxt[:-1]:
        return False
    return BASE32_INDEX.get(nxt[-1], -1) == BASE32_INDEX.get(last[-1], -2) + 1


def merge_ranges(ranges: list[GeoRange]) -> list[GeoRange]:
    """Drop duplicates and merge overlapping or lexicographically adjacent ranges."""
    merged: list[GeoRange] = []
    for r in sorted(set(ranges)):
        if merged:
            cur = merged[-1]
            if r.start <= cur.end or _is_next_sibling(cur, r):
                merged[-1] = GeoRange(start=cur.start, end=max(cur.end, r.end))
                continue
        merged.append(r)
    return merged


def covering_ranges(center: GeoPoint, radius_km: float, max_precision: int = MAX_PRECISION) -> list[GeoRange]:
    """Return sorted, disjoint geohash ranges that cover the circle (center, radius_km).

    `max_precision` must not exceed the precision stored geohashes were written at.
    """
    precision = choose_precision(center, radius_km, max_precision)
    if precision == 0:
        logger.debug(
            "Radius %.1fkm around (%s, %s) exceeds precision-1 cells; scanning the whole keyspace",
            float(radius_km),
            center.lat,
            center.lon,
        )
        return [FULL_KEYSPACE]
    center_cell = encode(center, precision)
    cells = [center_cell, *neighbors(center_cell)]
    ranges = merge_ranges([GeoRange.for_prefix(cell) for cell in cells])
    logger.debug(
        "Decomposed radius=%.4fkm around (%s, %s) into %s ranges at precision=%s",
        float(radius_km),
        center.lat,
        center.lon,
        len(ranges),
        precision,
    )
    return ranges
