"""georange: radius queries over stores that only understand string ranges."""

from georange.core.errors import (
    GeoRangeError,
    InvalidArgument,
    PartialFanoutFailure,
    StoreFailure,
    SubscriptionTornDown,
)
from georange.core.geo import GeoPoint
from georange.domain.models import Filter, QueryCriteria, RecordChange, ResultRecord
from georange.joiner.live import Subscription
from georange.collection import GeoCollection, GeoQuery, query, subscribe

__version__ = "0.1.0"

__all__ = [
    "Filter",
    "GeoCollection",
    "GeoPoint",
    "GeoQuery",
    "GeoRangeError",
    "InvalidArgument",
    "PartialFanoutFailure",
    "QueryCriteria",
    "RecordChange",
    "ResultRecord",
    "StoreFailure",
    "Subscription",
    "SubscriptionTornDown",
    "query",
    "subscribe",
]
