"""
Document codec: caller payloads <-> stored documents.

Stored shape:
    {"g": <geohash of l>, "l": <GeoPoint>, "d": <caller payload>}

`g` is the only field the store needs to index. `l` is the exact location, kept so
distances are recomputed exactly (geohash cells are lossy). `d` is the payload,
untouched, including its own copy of the location.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from typing import Any

from georange.core.errors import InvalidArgument
from georange.core.geo import GeoPoint
from georange.core.geohash import GEOHASH_PRECISION, encode
from georange.domain.models import PAYLOAD_FIELD, coerce_geopoint

DEFAULT_LOCATION_KEY = "coordinates"
GEOHASH_FIELD = "g"
LOCATION_FIELD = "l"

_MISSING = object()


def _lookup(data: Mapping[str, Any], key_path: str) -> Any:
    """Resolve a dotted key path; a literal dotted key wins over nested traversal."""
    if key_path in data:
        return data[key_path]
    node: Any = data
    for part in key_path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _insert(data: dict[str, Any], key_path: str, value: Any) -> None:
    parts = key_path.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def find_coordinates(payload: Mapping[str, Any], location_key: str | None = None) -> GeoPoint:
    """Return the location stored at `location_key` (default `coordinates`) in `payload`."""
    key = location_key or DEFAULT_LOCATION_KEY
    if not isinstance(payload, Mapping):
        raise InvalidArgument(f"document must be a mapping, got {type(payload).__name__}")
    value = _lookup(payload, key)
    if value is _MISSING or value is None:
        raise InvalidArgument(f"document has no location at key {key!r}")
    return coerce_geopoint(value)


def encode_for_write(
    payload: Mapping[str, Any],
    location_key: str | None = None,
    *,
    precision: int = GEOHASH_PRECISION,
) -> dict[str, Any]:
    """Wrap `payload` into the stored `{g, l, d}` shape."""
    point = find_coordinates(payload, location_key)
    return {
        GEOHASH_FIELD: encode(point, precision),
        LOCATION_FIELD: point,
        PAYLOAD_FIELD: copy.deepcopy(dict(payload)),
    }


def decode_for_read(
    stored: Mapping[str, Any] | None, location_key: str | None = None
) -> dict[str, Any] | None:
    """Return the caller payload of a stored document (None if there is none).

    If the payload lost its location (e.g. a projection), the stored `l` is put back
    at `location_key`.
    """
    if stored is None:
        return None
    data = stored.get(PAYLOAD_FIELD)
    if data is None:
        return None
    if not isinstance(data, Mapping):
        raise InvalidArgument(f"stored payload must be a mapping, got {type(data).__name__}")
    out = copy.deepcopy(dict(data))

    location = stored.get(LOCATION_FIELD)
    key = location_key or DEFAULT_LOCATION_KEY
    if location is not None and _lookup(out, key) is _MISSING:
        _insert(out, key, location)
    return out


def stored_location(stored: Mapping[str, Any] | None) -> GeoPoint | None:
    """Return the exact location `l` of a stored document, if it has a valid one."""
    if not stored:
        return None
    value = stored.get(LOCATION_FIELD)
    if value is None:
        return None
    try:
        return coerce_geopoint(value)
    except InvalidArgument:
        return None


def _touches_location(data: Mapping[str, Any], key: str) -> bool:
    for field_path in data:
        if field_path == key or key.startswith(field_path + "."):
            return True
    return False


def encode_for_update(
    data: Mapping[str, Any],
    location_key: str | None = None,
    *,
    precision: int = GEOHASH_PRECISION,
) -> dict[str, Any]:
    """Flatten a partial update into stored field paths.

    Payload fields become `d.<field>`. When the update touches the location key, the
    new `g` and `l` are part of the same update, so the index never goes stale.
    """
    if not isinstance(data, Mapping):
        raise InvalidArgument(f"update must be a mapping, got {type(data).__name__}")
    if not data:
        raise InvalidArgument("update must contain at least one field")

    out: dict[str, Any] = {f"{PAYLOAD_FIELD}.{k}": copy.deepcopy(v) for k, v in data.items()}
    key = location_key or DEFAULT_LOCATION_KEY
    if _touches_location(data, key):
        point = find_coordinates(data, key)
        out[GEOHASH_FIELD] = encode(point, precision)
        out[LOCATION_FIELD] = point
    return out


def _flatten(data: Mapping[str, Any], keep: str, prefix: str = "") -> dict[str, Any]:
    # `keep` (the location key) is written whole, never leaf by leaf.
    out: dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping) and value and path != keep:
            out.update(_flatten(value, keep, path + "."))
        else:
            out[path] = copy.deepcopy(value)
    return out


def encode_for_merge(
    payload: Mapping[str, Any],
    location_key: str | None = None,
    *,
    merge_fields: Sequence[str] | None = None,
    precision: int = GEOHASH_PRECISION,
) -> dict[str, Any]:
    """Flatten a merging set into stored field paths.

    Nested mappings merge leaf by leaf. With `merge_fields`, only those payload paths
    are written. As with updates, `g` and `l` follow the location when it is written.
    """
    if not isinstance(payload, Mapping):
        raise InvalidArgument(f"document must be a mapping, got {type(payload).__name__}")

    key = location_key or DEFAULT_LOCATION_KEY
    if merge_fields is None:
        fields = _flatten(payload, key)
    else:
        fields = {}
        for field_path in merge_fields:
            value = _lookup(payload, field_path)
            if value is _MISSING:
                raise InvalidArgument(f"merge field {field_path!r} is not in the document")
            fields[field_path] = copy.deepcopy(value)
    if not fields:
        raise InvalidArgument("merge must write at least one field")

    out: dict[str, Any] = {f"{PAYLOAD_FIELD}.{k}": v for k, v in fields.items()}
    if _touches_location(fields, key) or any(path.startswith(key + ".") for path in fields):
        point = find_coordinates(payload, key)
        out[GEOHASH_FIELD] = encode(point, precision)
        out[LOCATION_FIELD] = point
    return out
