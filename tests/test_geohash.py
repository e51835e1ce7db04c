import random

import pytest

from georange.core.errors import InvalidArgument
from georange.core.geo import GeoPoint
from georange.core.geohash import (
    BASE32,
    MAX_PRECISION,
    cell_size,
    decode,
    decode_bounding_box,
    encode,
)


def test_encode_matches_well_known_hashes():
    assert encode(GeoPoint(lat=37.7749, lon=-122.4194), 6) == "9q8yyk"
    assert encode(GeoPoint(lat=57.64911, lon=10.40744), 11) == "u4pruydqqvj"


def test_encode_defaults_to_stored_precision():
    assert len(encode(GeoPoint(lat=1.0, lon=2.0))) == 10


def test_bounding_box_contains_encoded_point_at_every_precision():
    rng = random.Random(7)
    for _ in range(200):
        point = GeoPoint(lat=rng.uniform(-90, 90), lon=rng.uniform(-180, 180))
        precision = rng.randint(1, MAX_PRECISION)
        (lat_min, lat_max), (lon_min, lon_max) = decode_bounding_box(encode(point, precision))
        assert lat_min <= point.lat <= lat_max
        assert lon_min <= point.lon <= lon_max


def test_longer_hash_extends_shorter_one():
    point = GeoPoint(lat=-33.8688, lon=151.2093)
    assert encode(point, 12).startswith(encode(point, 5))


def test_decode_returns_cell_center():
    (lat_min, lat_max), (lon_min, lon_max) = decode_bounding_box("9q8yyk")
    center = decode("9q8yyk")
    assert center.lat == pytest.approx((lat_min + lat_max) / 2)
    assert center.lon == pytest.approx((lon_min + lon_max) / 2)
    assert encode(center, 6) == "9q8yyk"


def test_extreme_coordinates_encode():
    # Upper bounds fall into the last cell.
    assert encode(GeoPoint(lat=90.0, lon=180.0), 3) == "zzz"
    assert encode(GeoPoint(lat=-90.0, lon=-180.0), 3) == "000"


@pytest.mark.parametrize("precision", [0, MAX_PRECISION + 1, 2.5, True])
def test_encode_rejects_bad_precision(precision):
    with pytest.raises(InvalidArgument):
        encode(GeoPoint(lat=0.0, lon=0.0), precision)


@pytest.mark.parametrize(
    ("lat", "lon"),
    [(90.5, 0.0), (-91.0, 0.0), (0.0, 180.1), (float("nan"), 0.0), (0.0, float("inf")), (True, 0.0)],
)
def test_invalid_points_are_rejected(lat, lon):
    with pytest.raises(InvalidArgument):
        GeoPoint(lat=lat, lon=lon)


@pytest.mark.parametrize("geohash", ["", "9q8a", "9Q8", "0" * (MAX_PRECISION + 1), 42])
def test_decode_rejects_malformed_geohash(geohash):
    with pytest.raises(InvalidArgument):
        decode_bounding_box(geohash)


def test_invalid_argument_is_a_value_error():
    with pytest.raises(ValueError):
        decode_bounding_box("a")


def test_cell_sizes_shrink_with_precision():
    lat_1, lon_1 = cell_size(1)
    assert lat_1 == pytest.approx(45 * 110.574)
    assert lon_1 == pytest.approx(45 * 111.320)

    sizes = [cell_size(p) for p in range(1, MAX_PRECISION + 1)]
    for (lat_a, lon_a), (lat_b, lon_b) in zip(sizes, sizes[1:]):
        assert lat_b < lat_a
        assert lon_b < lon_a


def test_alphabet_sorts_like_bit_order():
    # Prefix ranges rely on symbol order matching value order.
    assert "".join(sorted(BASE32)) == BASE32
