import pytest

from georange import GeoCollection, GeoQuery, InvalidArgument, query, subscribe
from georange.config.settings import Settings, get_settings
from georange.core.geo import GeoPoint
from georange.stores.memory import InMemoryStore

from helpers import destination

CENTER = GeoPoint(lat=51.5074, lon=-0.1278)


@pytest.fixture()
def places():
    collection = GeoCollection(InMemoryStore())
    collection.set("tower", {"name": "tower", "kind": "sight", "coordinates": destination(CENTER, 0.3, 90)})
    collection.set("pub", {"name": "pub", "kind": "food", "coordinates": destination(CENTER, 0.7, 200)})
    collection.set("park", {"name": "park", "kind": "sight", "coordinates": destination(CENTER, 1.8, 10)})
    collection.set("far", {"name": "far", "kind": "food", "coordinates": destination(CENTER, 30.0, 300)})
    return collection


def test_near_returns_sorted_records_within_radius(places):
    records = places.near(center=CENTER, radius=1).get()
    assert [r.id for r in records] == ["tower", "pub"]
    assert records[0].distance == pytest.approx(0.3, abs=1e-6)
    assert records[0].data["name"] == "tower"


def test_builders_return_new_queries(places):
    base = places.near(center=CENTER, radius=2)
    limited = base.limit(1)
    sights = base.where("kind", "==", "sight")

    assert [r.id for r in base.get()] == ["tower", "pub", "park"]
    assert [r.id for r in limited.get()] == ["tower"]
    assert [r.id for r in sights.get()] == ["tower", "park"]
    assert base.criteria.limit is None
    assert base.filters == ()
    assert not isinstance(base, GeoCollection)


def test_near_keeps_existing_center_when_only_radius_changes(places):
    widened = places.near(center=CENTER, radius=1).near(radius=50)
    assert [r.id for r in widened.get()] == ["tower", "pub", "park", "far"]


def test_ranges_are_empty_for_plain_queries(places):
    assert places.ranges() == []
    assert places.near(center=CENTER, radius=1).ranges()


def test_plain_query_with_filter_and_limit(places):
    records = places.where("kind", "==", "food").limit(1).get()
    assert [r.id for r in records] == ["far"]
    assert records[0].distance is None


def test_module_level_query_accepts_mapping_criteria(places):
    records = query(
        places.store,
        {"center": {"lat": CENTER.lat, "lon": CENTER.lon}, "radius": 1.0, "limit": 1},
        [("kind", "==", "food")],
    )
    assert [r.id for r in records] == ["pub"]


@pytest.mark.parametrize(
    "criteria",
    [
        {"center": (0.0, 0.0)},
        {"radius": 1.0},
        {"center": (0.0, 0.0), "radius": 0},
        {"center": (0.0, 0.0), "radius": -3},
        {"center": (100.0, 0.0), "radius": 1},
        {"limit": 0},
        {"limit": 1.5},
        {"radius_km": 1.0},
    ],
)
def test_invalid_criteria_are_rejected_synchronously(criteria):
    with pytest.raises(InvalidArgument):
        GeoQuery(InMemoryStore(), criteria)


def test_invalid_filter_operator_is_rejected(places):
    with pytest.raises(InvalidArgument):
        places.where("kind", "like", "f%")


def test_store_must_implement_geo_store():
    with pytest.raises(InvalidArgument):
        GeoQuery(object())


def test_collection_writes_index_fields(places):
    stored = places.store.get("tower").document
    assert set(stored) == {"g", "l", "d"}
    assert len(stored["g"]) == places.precision


def test_add_and_get_document():
    collection = GeoCollection(InMemoryStore())
    doc_id = collection.add({"name": "new", "coordinates": (1.0, 2.0)})

    record = collection.get_document(doc_id)
    assert record.exists
    assert record.data == {"name": "new", "coordinates": (1.0, 2.0)}
    assert record.distance is None
    assert not collection.get_document("missing").exists


def test_update_moving_a_document_changes_query_results(places):
    nearby = places.near(center=CENTER, radius=1)
    places.update("park", {"coordinates": destination(CENTER, 0.1, 0)})
    assert [r.id for r in nearby.get()] == ["park", "tower", "pub"]

    places.update("park", {"name": "renamed park"})
    assert nearby.get()[0].data["name"] == "renamed park"


def test_delete_removes_document(places):
    places.delete("tower")
    assert [r.id for r in places.near(center=CENTER, radius=1).get()] == ["pub"]


def test_live_query_follows_writes(places):
    events = []
    errors = []
    sub = places.near(center=CENTER, radius=1).on_snapshot(
        lambda records, changes: events.append(([r.id for r in records], [(c.type, c.record.id) for c in changes])),
        errors.append,
    )

    places.set("cafe", {"name": "cafe", "kind": "food", "coordinates": destination(CENTER, 0.5, 0)})
    places.update("pub", {"coordinates": destination(CENTER, 5.0, 0)})
    places.update("tower", {"name": "tall tower"})
    places.set("elsewhere", {"name": "elsewhere", "coordinates": destination(CENTER, 12.0, 90)})
    sub.close()
    places.delete("tower")

    assert events == [
        (["tower", "pub"], [("added", "tower"), ("added", "pub")]),
        (["tower", "cafe", "pub"], [("added", "cafe")]),
        (["tower", "cafe"], [("removed", "pub")]),
        (["tower", "cafe"], [("modified", "tower")]),
    ]
    assert errors == []


def test_live_plain_query(places):
    events = []
    sub = subscribe(
        places.store,
        None,
        [("kind", "==", "sight")],
        lambda records, changes: events.append([r.id for r in records]),
    )
    places.set("museum", {"name": "museum", "kind": "sight", "coordinates": (51.5, 0.0)})
    sub.close()
    assert events == [["park", "tower"], ["museum", "park", "tower"]]


def _settings_with_precision(precision: int) -> Settings:
    settings = get_settings()
    return settings.model_copy(update={"geohash": settings.geohash.model_copy(update={"precision": precision})})


def test_radius_below_stored_cell_size_still_finds_the_document():
    collection = GeoCollection(InMemoryStore(), settings=_settings_with_precision(10))
    collection.set("here", {"name": "here", "coordinates": CENTER})

    query_ = collection.near(center=CENTER, radius=0.00005)

    assert all(len(r.start) <= 10 for r in query_.ranges())
    assert [r.id for r in query_.get()] == ["here"]


def test_coarse_stored_precision_is_respected_by_queries():
    collection = GeoCollection(InMemoryStore(), settings=_settings_with_precision(4))
    collection.set("near", {"coordinates": destination(CENTER, 0.4, 30)})
    collection.set("far", {"coordinates": destination(CENTER, 3.0, 30)})

    assert len(collection.store.get("near").document["g"]) == 4
    assert [r.id for r in collection.near(center=CENTER, radius=1).get()] == ["near"]


def test_merge_set_keeps_existing_fields(places):
    places.set("pub", {"hours": {"open": "11:00"}}, merge=True)

    record = places.get_document("pub")
    assert record.data["name"] == "pub"
    assert record.data["hours"] == {"open": "11:00"}
    assert [r.id for r in places.near(center=CENTER, radius=1).get()] == ["tower", "pub"]


def test_merge_set_with_location_moves_the_document(places):
    places.set("park", {"coordinates": destination(CENTER, 0.2, 180), "extra": True}, merge_fields=["coordinates"])

    record = places.get_document("park")
    assert "extra" not in record.data
    assert record.data["name"] == "park"
    assert [r.id for r in places.near(center=CENTER, radius=1).get()] == ["park", "tower", "pub"]


def test_merge_set_creates_missing_document():
    collection = GeoCollection(InMemoryStore())
    collection.set("new", {"name": "new", "coordinates": CENTER}, merge=True)

    assert [r.id for r in collection.near(center=CENTER, radius=0.5).get()] == ["new"]
