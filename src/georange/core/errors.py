"""
Error taxonomy.

- `InvalidArgument`: bad point/radius/limit/geohash; raised synchronously, never retried.
- `StoreFailure`: the backing store client failed (raised by store adapters).
- `PartialFanoutFailure`: one of N concurrent range reads failed; the whole query fails.
- `SubscriptionTornDown`: a live sub-range listener failed; delivered once to `on_error`.
"""

from __future__ import annotations


class GeoRangeError(Exception):
    """Base class for all errors raised by georange."""


class InvalidArgument(GeoRangeError, ValueError):
    """A caller-supplied value is invalid (point, radius, limit, geohash, payload)."""


class StoreFailure(GeoRangeError):
    """The backing store failed to execute a read, write or subscription."""


class PartialFanoutFailure(GeoRangeError):
    """One range read of a fan-out failed; already received results were discarded."""

    def __init__(self, message: str, *, range_index: int | None = None, geo_range: object | None = None):
        super().__init__(message)
        self.range_index = range_index
        self.geo_range = geo_range


class SubscriptionTornDown(GeoRangeError):
    """A live join was torn down because one of its sub-range listeners failed."""

    def __init__(self, message: str, *, range_index: int | None = None):
        super().__init__(message)
        self.range_index = range_index
