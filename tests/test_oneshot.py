import threading

import pytest

from georange.core.errors import InvalidArgument, PartialFanoutFailure, StoreFailure
from georange.core.geo import GeoPoint, haversine_km
from georange.core.ranges import GeoRange, covering_ranges
from georange.documents import encode_for_write
from georange.domain.models import make_criteria, make_filter
from georange.joiner.oneshot import execute, fan_out, join_snapshots
from georange.stores.base import StoredSnapshot
from georange.stores.memory import InMemoryStore

from helpers import destination

CENTER = GeoPoint(lat=37.7749, lon=-122.4194)


def _store_with_distances(distances_km, **extra):
    store = InMemoryStore()
    for i, km in enumerate(distances_km):
        point = destination(CENTER, km, bearing_deg=37 + 71 * i)
        store.set(f"doc-{km}", encode_for_write({"coordinates": point, "km": km, **extra}))
    return store


class RecordingStore(InMemoryStore):
    """InMemoryStore that records range reads and can fail selected ranges."""

    def __init__(self, documents=None, *, fail_starts=()):
        super().__init__(documents)
        self.fail_starts = set(fail_starts)
        self.calls = []
        self._calls_lock = threading.Lock()

    def range_read(self, field_path, start, end, *, filters=(), limit=None):
        with self._calls_lock:
            self.calls.append((field_path, start, end, tuple(filters), limit))
        if start in self.fail_starts:
            raise StoreFailure(f"range {start} unavailable")
        return super().range_read(field_path, start, end, filters=filters, limit=limit)


def test_scenario_a_only_records_inside_radius_sorted_by_distance():
    store = _store_with_distances([3.0, 0.9, 1.5, 0.2])
    criteria = make_criteria(center=CENTER, radius=1)

    records = execute(store, covering_ranges(CENTER, 1.0), criteria)

    assert [r.data["km"] for r in records] == [0.2, 0.9]
    assert [r.distance for r in records] == pytest.approx([0.2, 0.9], abs=1e-6)


def test_scenario_b_limit_keeps_closest():
    store = _store_with_distances([3.0, 0.9, 1.5, 0.2])
    criteria = make_criteria(center=CENTER, radius=1, limit=1)

    records = execute(store, covering_ranges(CENTER, 1.0), criteria)

    assert [r.data["km"] for r in records] == [0.2]


def test_scenario_d_one_failed_range_fails_the_whole_query():
    ranges = [GeoRange.for_prefix(p) for p in ("9q8yv", "9q8yw", "9q8yy", "9q8yz")]
    store = RecordingStore(fail_starts={"9q8yy"})
    for i, km in enumerate([0.1, 0.2, 0.3]):
        store.set(f"d{i}", encode_for_write({"coordinates": destination(CENTER, km, 90.0)}))

    with pytest.raises(PartialFanoutFailure) as excinfo:
        execute(store, ranges, make_criteria(center=CENTER, radius=1))

    assert excinfo.value.range_index == 2
    assert excinfo.value.geo_range == GeoRange.for_prefix("9q8yy")
    assert isinstance(excinfo.value.__cause__, StoreFailure)


def test_limit_is_applied_after_distance_filtering():
    store = RecordingStore()
    for i, km in enumerate([0.05, 0.1, 0.15, 0.2, 0.25]):
        store.set(f"near-{i}", encode_for_write({"coordinates": destination(CENTER, km, 10.0 + 60 * i)}))
    for i in range(20):
        # Inside the covering cells but outside the circle.
        store.set(f"far-{i:02d}", encode_for_write({"coordinates": destination(CENTER, 1.05 + 0.02 * i, 18.0 * i)}))

    criteria = make_criteria(center=CENTER, radius=1, limit=2)
    records = execute(store, covering_ranges(CENTER, 1.0), criteria)

    assert [r.id for r in records] == ["near-0", "near-1"]
    assert all(call[4] is None for call in store.calls)


def test_overlapping_ranges_return_each_document_once():
    store = _store_with_distances([0.2, 0.4])
    ranges = covering_ranges(CENTER, 1.0)
    doubled = ranges + [GeoRange(start=ranges[0].start, end=ranges[-1].end)]

    records = execute(store, doubled, make_criteria(center=CENTER, radius=1))

    assert sorted(r.id for r in records) == ["doc-0.2", "doc-0.4"]


def test_join_snapshots_keeps_newest_duplicate():
    point = destination(CENTER, 0.3, 0.0)
    old = StoredSnapshot(id="x", document=encode_for_write({"coordinates": point, "v": 1}), update_time="001")
    new = StoredSnapshot(id="x", document=encode_for_write({"coordinates": point, "v": 2}), update_time="002")

    records = join_snapshots([new, old], make_criteria(center=CENTER, radius=1))

    assert len(records) == 1
    assert records[0].data["v"] == 2


def test_join_snapshots_breaks_distance_ties_by_id():
    point = destination(CENTER, 0.5, 45.0)
    snaps = [
        StoredSnapshot(id=doc_id, document=encode_for_write({"coordinates": point}))
        for doc_id in ("b", "c", "a")
    ]
    records = join_snapshots(snaps, make_criteria(center=CENTER, radius=1))
    assert [r.id for r in records] == ["a", "b", "c"]


def test_join_snapshots_skips_documents_without_location():
    snaps = [
        StoredSnapshot(id="gone", document=None),
        StoredSnapshot(id="broken", document={"g": "9q8yy", "d": {"x": 1}}),
    ]
    assert join_snapshots(snaps, make_criteria(center=CENTER, radius=5)) == []


def test_join_snapshots_requires_geo_criteria():
    with pytest.raises(InvalidArgument):
        join_snapshots([], make_criteria(limit=3))


def test_every_result_is_within_radius():
    store = _store_with_distances([0.1, 0.5, 0.99, 1.01, 2.5, 7.0])
    for radius in (0.3, 1.0, 3.0, 10.0):
        records = execute(store, covering_ranges(CENTER, radius), make_criteria(center=CENTER, radius=radius))
        assert all(haversine_km(CENTER, r.data["coordinates"]) <= radius for r in records)
        assert [r.distance for r in records] == sorted(r.distance for r in records)


def test_filters_are_passed_to_every_range_read():
    store = RecordingStore()
    for i, kind in enumerate(["cafe", "bar", "cafe"]):
        store.set(f"p{i}", encode_for_write({"coordinates": destination(CENTER, 0.1 * (i + 1), 0.0), "kind": kind}))
    cafe = make_filter("kind", "==", "cafe")
    ranges = covering_ranges(CENTER, 1.0)

    records = execute(store, ranges, make_criteria(center=CENTER, radius=1), [cafe])

    assert [r.id for r in records] == ["p0", "p2"]
    assert len(store.calls) == len(ranges)
    assert all(call[0] == "g" and call[3] == (cafe,) for call in store.calls)


def test_non_geo_query_reads_store_directly():
    store = _store_with_distances([0.2, 5.0, 50.0], kind="cafe")
    records = execute(store, [], make_criteria(limit=2), [make_filter("kind", "==", "cafe")])

    assert [r.id for r in records] == ["doc-0.2", "doc-5.0"]
    assert all(r.distance is None for r in records)


def test_non_geo_query_propagates_store_errors():
    class BrokenStore(InMemoryStore):
        def query(self, *, filters=(), limit=None):
            raise StoreFailure("down")

    with pytest.raises(StoreFailure):
        execute(BrokenStore(), [], make_criteria())


def test_fan_out_with_no_ranges_reads_nothing():
    store = RecordingStore()
    assert fan_out(store, []) == []
    assert store.calls == []
