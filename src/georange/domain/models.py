"""
Domain models.

These types represent the stable "contract" between layers:
- caller inputs (`QueryCriteria`, `Filter`)
- joiner output (`ResultRecord`, `RecordChange`)

Criteria and filters are Pydantic models so bad input is rejected early; the
pydantic `ValidationError` is translated into `InvalidArgument` at the boundary
(`make_criteria`, `make_filter`).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from georange.core.errors import InvalidArgument
from georange.core.geo import GeoPoint

WhereOp = Literal[
    "==",
    "!=",
    "<",
    "<=",
    ">",
    ">=",
    "array-contains",
    "array-contains-any",
    "in",
    "not-in",
]

ChangeType = Literal["added", "modified", "removed"]

# Stored documents keep the caller payload under this key; filters address fields inside it.
PAYLOAD_FIELD = "d"


def coerce_geopoint(value: Any) -> GeoPoint:
    """Accept a GeoPoint, a (lat, lon) pair, or a mapping with lat/lon or latitude/longitude."""
    if isinstance(value, GeoPoint):
        return value
    if isinstance(value, Mapping):
        if "lat" in value and "lon" in value:
            return GeoPoint(lat=value["lat"], lon=value["lon"])
        if "latitude" in value and "longitude" in value:
            return GeoPoint(lat=value["latitude"], lon=value["longitude"])
        raise InvalidArgument(f"mapping is not a location (expected lat/lon keys): {dict(value)!r}")
    if isinstance(value, (tuple, list)) and len(value) == 2:
        return GeoPoint(lat=value[0], lon=value[1])
    raise InvalidArgument(f"not a location: {value!r}")


class QueryCriteria(BaseModel):
    """Center/radius/limit of a query; center and radius switch the query into geo mode."""

    model_config = ConfigDict(frozen=True)

    center: GeoPoint | None = None
    radius: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    limit: int | None = Field(default=None, ge=1, strict=True)

    @field_validator("center", mode="before")
    @classmethod
    def _coerce_center(cls, value: Any) -> GeoPoint | None:
        if value is None:
            return None
        return coerce_geopoint(value)

    @model_validator(mode="after")
    def _validate_pairing(self) -> "QueryCriteria":
        if (self.center is None) != (self.radius is None):
            raise ValueError("center and radius must be provided together")
        return self

    @property
    def is_geo(self) -> bool:
        return self.center is not None and self.radius is not None


class Filter(BaseModel):
    """An attribute filter applied identically to every range query."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1)
    op: WhereOp
    value: Any = None

    @property
    def store_field(self) -> str:
        """Field path inside the stored document (payload lives under `d`)."""
        return f"{PAYLOAD_FIELD}.{self.field}"


def _first_error_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    err = errors[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def make_criteria(
    center: Any = None, radius: float | None = None, limit: int | None = None
) -> QueryCriteria:
    """Build `QueryCriteria`, raising `InvalidArgument` instead of pydantic errors."""
    try:
        return QueryCriteria(center=center, radius=radius, limit=limit)
    except ValidationError as exc:
        raise InvalidArgument(f"invalid query criteria: {_first_error_message(exc)}") from exc


def make_filter(field_path: str, op: str, value: Any) -> Filter:
    try:
        return Filter(field=field_path, op=op, value=value)
    except ValidationError as exc:
        raise InvalidArgument(f"invalid filter: {_first_error_message(exc)}") from exc


@dataclass(frozen=True)
class ResultRecord:
    """One query result: decoded payload plus exact distance (km) from the query center."""

    id: str
    data: dict[str, Any] | None
    distance: float | None = None
    exists: bool = True


@dataclass(frozen=True)
class RecordChange:
    """A change between two consecutive merged snapshots of a live query."""

    type: ChangeType
    record: ResultRecord
    old_index: int = -1
    new_index: int = -1

