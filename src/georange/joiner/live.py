"""
Live result joiner.

Holds one store subscription per covering range and re-emits a merged, filtered,
sorted and limited result on every upstream change, together with the diff against
the previously emitted result.

Rules:
- nothing is emitted until every range has delivered its first snapshot,
- per-range caches, the "reported" set and emission are serialized by one lock, since
  store callbacks may arrive on any thread,
- closing the outer `Subscription` closes every inner subscription exactly once,
- a failing range tears everything down and reports `SubscriptionTornDown` once; no
  data callbacks follow.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Sequence
from functools import partial

from georange.core.errors import SubscriptionTornDown
from georange.core.ranges import GeoRange
from georange.documents import GEOHASH_FIELD
from georange.domain.models import Filter, QueryCriteria, RecordChange, ResultRecord
from georange.joiner.oneshot import dedupe, join_snapshots, plain_records
from georange.stores.base import GeoStore, OnChange, OnError, StoredSnapshot, StoreSnapshot, Unsubscribe

logger = logging.getLogger(__name__)

OnSnapshot = Callable[[list[ResultRecord], list[RecordChange]], None]
OnQueryError = Callable[[Exception], None]
Source = Callable[[OnChange, OnError], Unsubscribe]


class Subscription:
    """Handle for a live query; `close()` is idempotent and releases every inner listener."""

    def __init__(self, on_close: Callable[[], None] | None = None):
        self._lock = threading.Lock()
        self._closed = False
        self._inner: list[Unsubscribe] = []
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, unsubscribe: Unsubscribe) -> bool:
        """Track an inner handle; returns False (and does not keep it) if already closed."""
        with self._lock:
            if self._closed:
                return False
            self._inner.append(unsubscribe)
            return True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            inner, self._inner = self._inner, []
        if self._on_close is not None:
            self._on_close()
        for unsubscribe in inner:
            try:
                unsubscribe()
            except Exception as exc:
                # Keep releasing the remaining listeners.
                logger.warning("Failed to release inner subscription: %s", exc)

    __call__ = close

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def diff_records(previous: Sequence[ResultRecord], current: Sequence[ResultRecord]) -> list[RecordChange]:
    """Added/modified/removed changes between two emitted results, with list indexes."""
    old_index = {r.id: i for i, r in enumerate(previous)}
    new_ids = {r.id for r in current}

    changes: list[RecordChange] = []
    for i, record in enumerate(previous):
        if record.id not in new_ids:
            changes.append(RecordChange(type="removed", record=record, old_index=i, new_index=-1))
    for j, record in enumerate(current):
        i = old_index.get(record.id)
        if i is None:
            changes.append(RecordChange(type="added", record=record, old_index=-1, new_index=j))
            continue
        old = previous[i]
        if old.data != record.data or old.distance != record.distance:
            changes.append(RecordChange(type="modified", record=record, old_index=i, new_index=j))
    return changes


class LiveJoiner:
    """Merges N concurrently active store subscriptions into one live query result."""

    def __init__(
        self,
        sources: Sequence[Source],
        criteria: QueryCriteria,
        on_snapshot: OnSnapshot,
        on_error: OnQueryError | None = None,
        *,
        location_key: str | None = None,
    ):
        self._sources = list(sources)
        self._criteria = criteria
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._location_key = location_key

        self._lock = threading.RLock()
        self._caches: dict[int, list[StoredSnapshot]] = {}
        self._reported: set[int] = set()
        self._emitted: list[ResultRecord] = []
        self._has_emitted = False
        self._done = False
        self._subscription = Subscription(on_close=self._mark_done)

    @classmethod
    def for_ranges(
        cls,
        store: GeoStore,
        ranges: Sequence[GeoRange],
        criteria: QueryCriteria,
        on_snapshot: OnSnapshot,
        on_error: OnQueryError | None = None,
        *,
        filters: Sequence[Filter] = (),
        location_key: str | None = None,
    ) -> "LiveJoiner":
        filters = tuple(filters)
        sources = [partial(_range_source, store, r, filters) for r in ranges]
        return cls(sources, criteria, on_snapshot, on_error, location_key=location_key)

    @classmethod
    def for_plain_query(
        cls,
        store: GeoStore,
        criteria: QueryCriteria,
        on_snapshot: OnSnapshot,
        on_error: OnQueryError | None = None,
        *,
        filters: Sequence[Filter] = (),
        location_key: str | None = None,
    ) -> "LiveJoiner":
        filters = tuple(filters)

        def source(on_change: OnChange, on_error_: OnError) -> Unsubscribe:
            return store.subscribe(on_change, on_error_, filters=filters, limit=criteria.limit)

        return cls([source], criteria, on_snapshot, on_error, location_key=location_key)

    def start(self) -> Subscription:
        """Subscribe every source; returns the outer handle."""
        sub = self._subscription
        if not self._sources:
            with self._lock:
                self._emit()
            return sub
        for index, source in enumerate(self._sources):
            if sub.closed:
                break
            unsubscribe = source(partial(self._handle_change, index), partial(self._handle_error, index))
            if not sub.attach(unsubscribe):
                # Closed while subscribing (e.g. another range failed during its first snapshot).
                unsubscribe()
        return sub

    def _mark_done(self) -> None:
        with self._lock:
            self._done = True

    def _merge(self) -> list[ResultRecord]:
        snapshots = itertools.chain.from_iterable(self._caches[i] for i in sorted(self._caches))
        if self._criteria.is_geo:
            return join_snapshots(snapshots, self._criteria, location_key=self._location_key)
        records = plain_records(dedupe(snapshots), location_key=self._location_key)
        if self._criteria.limit is not None:
            records = records[: self._criteria.limit]
        return records

    def _emit(self) -> None:
        records = self._merge()
        changes = diff_records(self._emitted, records)
        if self._has_emitted and not changes:
            return
        self._emitted = records
        self._has_emitted = True
        self._on_snapshot(list(records), changes)

    def _handle_change(self, index: int, snapshot: StoreSnapshot) -> None:
        with self._lock:
            if self._done:
                return
            self._caches[index] = list(snapshot.docs)
            self._reported.add(index)
            if len(self._reported) < len(self._sources):
                logger.debug(
                    "Range %s reported; waiting for %s more before the first snapshot",
                    index,
                    len(self._sources) - len(self._reported),
                )
                return
            self._emit()

    def _handle_error(self, index: int, exc: Exception) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
        logger.warning("Live range %s failed; tearing down %s subscriptions: %s", index, len(self._sources), exc)
        self._subscription.close()

        error = SubscriptionTornDown(f"range subscription {index} failed: {exc}", range_index=index)
        error.__cause__ = exc
        if self._on_error is not None:
            self._on_error(error)
        else:
            logger.error("Live query torn down with no error listener: %s", error)


def _range_source(
    store: GeoStore, geo_range: GeoRange, filters: tuple[Filter, ...], on_change: OnChange, on_error: OnError
) -> Unsubscribe:
    return store.range_subscribe(
        GEOHASH_FIELD, geo_range.start, geo_range.end, on_change, on_error, filters=filters
    )
