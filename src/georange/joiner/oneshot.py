"""
One-shot result joiner.

Runs one range read per covering range concurrently, then turns the raw documents into
the final answer:
1. dedupe by document id (adjacent ranges may return the same document),
2. exact great-circle distance from the center to the stored `l`,
3. drop everything outside the radius (cell-edge false positives),
4. sort by (distance, id),
5. apply the limit.

Limits are never pushed down to the range reads: a per-range limit could cut records
that would survive the distance filter.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait

from georange.core.errors import InvalidArgument, PartialFanoutFailure
from georange.core.geo import haversine_km
from georange.core.ranges import GeoRange
from georange.documents import GEOHASH_FIELD, decode_for_read, stored_location
from georange.domain.models import Filter, QueryCriteria, ResultRecord
from georange.stores.base import GeoStore, StoredSnapshot

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 9


def _newer(a: StoredSnapshot, b: StoredSnapshot) -> StoredSnapshot:
    if a.update_time is None:
        return b
    if b.update_time is None:
        return a
    return b if b.update_time > a.update_time else a


def dedupe(snapshots: Iterable[StoredSnapshot]) -> list[StoredSnapshot]:
    """Keep one snapshot per document id (the most recently updated one)."""
    by_id: dict[str, StoredSnapshot] = {}
    for snap in snapshots:
        current = by_id.get(snap.id)
        by_id[snap.id] = snap if current is None else _newer(current, snap)
    return list(by_id.values())


def join_snapshots(
    snapshots: Iterable[StoredSnapshot],
    criteria: QueryCriteria,
    *,
    location_key: str | None = None,
) -> list[ResultRecord]:
    """Dedupe, distance-filter, sort and limit raw range results."""
    if not criteria.is_geo:
        raise InvalidArgument("join_snapshots requires geo criteria (center and radius)")
    center = criteria.center
    radius = float(criteria.radius)

    records: list[ResultRecord] = []
    for snap in dedupe(snapshots):
        if not snap.exists:
            continue
        point = stored_location(snap.document)
        if point is None:
            logger.debug("Skipping document %s without a valid stored location", snap.id)
            continue
        distance = haversine_km(center, point)
        if distance > radius:
            continue
        records.append(
            ResultRecord(
                id=snap.id,
                data=decode_for_read(snap.document, location_key),
                distance=distance,
                exists=True,
            )
        )

    records.sort(key=lambda r: (r.distance, r.id))
    if criteria.limit is not None:
        records = records[: criteria.limit]
    return records


def plain_records(snapshots: Iterable[StoredSnapshot], *, location_key: str | None = None) -> list[ResultRecord]:
    return [
        ResultRecord(id=s.id, data=decode_for_read(s.document, location_key), distance=None, exists=s.exists)
        for s in snapshots
    ]


def execute_plain(
    store: GeoStore,
    criteria: QueryCriteria,
    filters: Sequence[Filter] = (),
    *,
    location_key: str | None = None,
) -> list[ResultRecord]:
    """Non-geo query: one store read with the caller-side limit; store errors propagate as-is."""
    snapshots = store.query(filters=tuple(filters), limit=criteria.limit)
    return plain_records(snapshots, location_key=location_key)


def fan_out(
    store: GeoStore,
    ranges: Sequence[GeoRange],
    filters: Sequence[Filter] = (),
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> list[StoredSnapshot]:
    """Read every range concurrently; fail the whole read on the first failure."""
    if not ranges:
        return []
    filters = tuple(filters)
    executor = ThreadPoolExecutor(
        max_workers=max(1, min(int(max_workers), len(ranges))),
        thread_name_prefix="georange-fanout",
    )
    try:
        futures = [
            executor.submit(store.range_read, GEOHASH_FIELD, r.start, r.end, filters=filters)
            for r in ranges
        ]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for index, future in enumerate(futures):
            if future in done and future.exception() is not None:
                for other in pending:
                    other.cancel()
                exc = future.exception()
                failed = ranges[index]
                logger.warning(
                    "Range read %s/%s [%s, %s] failed; discarding fan-out: %s",
                    index + 1,
                    len(ranges),
                    failed.start,
                    failed.end,
                    exc,
                )
                raise PartialFanoutFailure(
                    f"range read {index + 1}/{len(ranges)} [{failed.start}, {failed.end}] failed: {exc}",
                    range_index=index,
                    geo_range=failed,
                ) from exc
        return [snap for future in futures for snap in future.result()]
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def execute(
    store: GeoStore,
    ranges: Sequence[GeoRange],
    criteria: QueryCriteria,
    filters: Sequence[Filter] = (),
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
    location_key: str | None = None,
) -> list[ResultRecord]:
    """Run a one-shot query over `ranges` and return the joined records."""
    if not criteria.is_geo:
        return execute_plain(store, criteria, filters, location_key=location_key)
    snapshots = fan_out(store, ranges, filters, max_workers=max_workers)
    records = join_snapshots(snapshots, criteria, location_key=location_key)
    logger.debug(
        "Joined %s raw documents from %s ranges into %s records",
        len(snapshots),
        len(ranges),
        len(records),
    )
    return records
