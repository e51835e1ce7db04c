"""
Caller-facing query and collection API.

`GeoQuery` is immutable: `near`, `limit` and `where` return new queries. `get()` runs a
one-shot query and `on_snapshot()` starts a live one. With a center and radius the
query is decomposed into geohash ranges and joined; otherwise it is passed to the
store as a plain filtered query.

`GeoCollection` adds the write path, running every payload through the document codec
so the stored `g`/`l` fields always match the payload location.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from georange.config.settings import Settings, get_settings
from georange.core.errors import InvalidArgument
from georange.core.ranges import GeoRange, covering_ranges
from georange.documents import decode_for_read, encode_for_merge, encode_for_update, encode_for_write
from georange.domain.models import Filter, QueryCriteria, ResultRecord, make_criteria, make_filter
from georange.joiner.live import LiveJoiner, OnQueryError, OnSnapshot, Subscription
from georange.joiner.oneshot import execute
from georange.stores.base import GeoStore

logger = logging.getLogger(__name__)

CriteriaLike = QueryCriteria | Mapping[str, Any] | None
FilterLike = Filter | tuple[str, str, Any]


def _as_criteria(criteria: CriteriaLike) -> QueryCriteria:
    if criteria is None:
        return QueryCriteria()
    if isinstance(criteria, QueryCriteria):
        return criteria
    if isinstance(criteria, Mapping):
        unknown = set(criteria) - {"center", "radius", "limit"}
        if unknown:
            raise InvalidArgument(f"unknown query criteria keys: {sorted(unknown)}")
        return make_criteria(**criteria)
    raise InvalidArgument(f"criteria must be a QueryCriteria or mapping, got {type(criteria).__name__}")


def _as_filters(filters: Iterable[FilterLike]) -> tuple[Filter, ...]:
    out: list[Filter] = []
    for f in filters:
        if isinstance(f, Filter):
            out.append(f)
        elif isinstance(f, tuple) and len(f) == 3:
            out.append(make_filter(*f))
        else:
            raise InvalidArgument(f"filter must be a Filter or (field, op, value) tuple, got {f!r}")
    return tuple(out)


class GeoQuery:
    """A read (one-shot or live) over a store, optionally restricted to a circle."""

    def __init__(
        self,
        store: GeoStore,
        criteria: CriteriaLike = None,
        filters: Iterable[FilterLike] = (),
        *,
        settings: Settings | None = None,
    ):
        if not isinstance(store, GeoStore):
            raise InvalidArgument(f"store must implement GeoStore, got {type(store).__name__}")
        self._store = store
        self._criteria = _as_criteria(criteria)
        self._filters = _as_filters(filters)
        self._settings = settings or get_settings()

    @property
    def store(self) -> GeoStore:
        return self._store

    @property
    def criteria(self) -> QueryCriteria:
        return self._criteria

    @property
    def filters(self) -> tuple[Filter, ...]:
        return self._filters

    @property
    def location_key(self) -> str:
        return self._settings.query.location_key

    def _derive(self, criteria: QueryCriteria | None = None, filters: tuple[Filter, ...] | None = None) -> "GeoQuery":
        # Derived queries are read-only, even when derived from a collection.
        return GeoQuery(
            self._store,
            criteria if criteria is not None else self._criteria,
            filters if filters is not None else self._filters,
            settings=self._settings,
        )

    def near(self, center: Any = None, radius: float | None = None) -> "GeoQuery":
        """Return a new query around `center` within `radius` km (either may be kept from this query)."""
        criteria = make_criteria(
            center=center if center is not None else self._criteria.center,
            radius=radius if radius is not None else self._criteria.radius,
            limit=self._criteria.limit,
        )
        return self._derive(criteria=criteria)

    def limit(self, limit: int) -> "GeoQuery":
        """Return a new query keeping at most `limit` records.

        For geo queries the limit is applied after distance filtering, so every
        range is still read in full.
        """
        criteria = make_criteria(center=self._criteria.center, radius=self._criteria.radius, limit=limit)
        return self._derive(criteria=criteria)

    def where(self, field_path: str, op: str, value: Any) -> "GeoQuery":
        """Return a new query with an extra payload field filter."""
        return self._derive(filters=(*self._filters, make_filter(field_path, op, value)))

    def ranges(self) -> list[GeoRange]:
        """Covering geohash ranges of this query (empty for non-geo queries)."""
        if not self._criteria.is_geo:
            return []
        return covering_ranges(
            self._criteria.center,
            float(self._criteria.radius),
            max_precision=self._settings.geohash.precision,
        )

    def get(self) -> list[ResultRecord]:
        """Run the query once; raises `PartialFanoutFailure` if any range read fails."""
        return execute(
            self._store,
            self.ranges(),
            self._criteria,
            self._filters,
            max_workers=self._settings.query.fanout_max_workers,
            location_key=self.location_key,
        )

    def on_snapshot(self, on_next: OnSnapshot, on_error: OnQueryError | None = None) -> Subscription:
        """Start a live query; `on_next(records, changes)` fires for every merged change."""
        if self._criteria.is_geo:
            joiner = LiveJoiner.for_ranges(
                self._store,
                self.ranges(),
                self._criteria,
                on_next,
                on_error,
                filters=self._filters,
                location_key=self.location_key,
            )
        else:
            joiner = LiveJoiner.for_plain_query(
                self._store,
                self._criteria,
                on_next,
                on_error,
                filters=self._filters,
                location_key=self.location_key,
            )
        return joiner.start()


class GeoCollection(GeoQuery):
    """A queryable collection that also writes documents in the stored `{g, l, d}` shape."""

    @property
    def precision(self) -> int:
        return self._settings.geohash.precision

    def add(self, payload: Mapping[str, Any], location_key: str | None = None) -> str:
        """Store `payload` under a generated id and return the id."""
        document = encode_for_write(payload, location_key or self.location_key, precision=self.precision)
        doc_id = self._store.add(document)
        logger.debug("Added document %s at geohash %s", doc_id, document["g"])
        return doc_id

    def set(
        self,
        doc_id: str,
        payload: Mapping[str, Any],
        location_key: str | None = None,
        *,
        merge: bool = False,
        merge_fields: Sequence[str] | None = None,
    ) -> None:
        """Create or replace the document `doc_id`.

        With `merge` (or `merge_fields`) the payload is merged into the existing
        document instead, creating it if needed; a merged location also rewrites
        `g` and `l`.
        """
        key = location_key or self.location_key
        if merge or merge_fields is not None:
            fields = encode_for_merge(payload, key, merge_fields=merge_fields, precision=self.precision)
            self._store.update(doc_id, fields, upsert=True)
            return
        document = encode_for_write(payload, key, precision=self.precision)
        self._store.set(doc_id, document)

    def update(self, doc_id: str, data: Mapping[str, Any], location_key: str | None = None) -> None:
        """Update payload fields; a location change rewrites `g` and `l` in the same write."""
        fields = encode_for_update(data, location_key or self.location_key, precision=self.precision)
        self._store.update(doc_id, fields)

    def delete(self, doc_id: str) -> None:
        self._store.delete(doc_id)

    def get_document(self, doc_id: str, location_key: str | None = None) -> ResultRecord:
        snap = self._store.get(doc_id)
        return ResultRecord(
            id=snap.id,
            data=decode_for_read(snap.document, location_key or self.location_key),
            distance=None,
            exists=snap.exists,
        )


def query(
    store: GeoStore,
    criteria: CriteriaLike = None,
    filters: Iterable[FilterLike] = (),
    *,
    settings: Settings | None = None,
) -> list[ResultRecord]:
    """One-shot query: `query(store, {"center": ..., "radius": 1.0, "limit": 5})`."""
    return GeoQuery(store, criteria, filters, settings=settings).get()


def subscribe(
    store: GeoStore,
    criteria: CriteriaLike,
    filters: Iterable[FilterLike],
    on_snapshot: OnSnapshot,
    on_error: OnQueryError | None = None,
    *,
    settings: Settings | None = None,
) -> Subscription:
    """Live query; close the returned handle to stop every underlying subscription."""
    return GeoQuery(store, criteria, filters, settings=settings).on_snapshot(on_snapshot, on_error)
