"""
Firestore store adapter over the v1 REST API (works against the emulator too).

This module is responsible only for:
- translating range reads / filters into `runQuery` structured queries,
- (de)serializing Firestore typed values, including `geoPointValue` for `l`,
- document writes (PATCH with update masks, POST for generated ids),
- live subscriptions, emulated by a polling thread per subscription since the REST
  surface has no listen channel.

Transient HTTP failures (429/5xx, transport errors) are retried with backoff; anything
left over surfaces as `StoreFailure`.
"""

from __future__ import annotations

import base64
import logging
import re
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

import httpx

from georange.config.settings import Settings
from georange.core.errors import InvalidArgument, StoreFailure
from georange.core.geo import GeoPoint
from georange.core.http import delete, get_json, patch_json, post_json
from georange.domain.models import Filter
from georange.stores.base import (
    GeoStore,
    OnChange,
    OnError,
    StoredSnapshot,
    StoreSnapshot,
    Unsubscribe,
    diff_docs,
)

logger = logging.getLogger(__name__)

_OPERATORS = {
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "array-contains": "ARRAY_CONTAINS",
    "array-contains-any": "ARRAY_CONTAINS_ANY",
    "in": "IN",
    "not-in": "NOT_IN",
}

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}

# RFC 3339 timestamp with 0-9 fractional digits, e.g. 2024-01-01T00:00:00.123Z
_TIMESTAMP = re.compile(r"^(?P<base>[^.]+?)(?:\.(?P<frac>\d{1,9}))?(?P<tz>Z|[+-]\d\d:\d\d)$")


def normalize_timestamp(value: str | None) -> str | None:
    """Pad fractional seconds to nanoseconds so update times order as plain strings."""
    if value is None:
        return None
    match = _TIMESTAMP.match(value)
    if match is None:
        return value
    frac = (match.group("frac") or "").ljust(9, "0")
    return f"{match.group('base')}.{frac}{match.group('tz')}"


def to_value(value: Any) -> dict[str, Any]:
    """Encode a Python value as a Firestore REST `Value`."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, GeoPoint):
        return {"geoPointValue": {"latitude": float(value.lat), "longitude": float(value.lon)}}
    if isinstance(value, datetime):
        return {"timestampValue": value.isoformat()}
    if isinstance(value, bytes):
        return {"bytesValue": base64.b64encode(value).decode("ascii")}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": to_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [to_value(v) for v in value]}}
    raise InvalidArgument(f"cannot store value of type {type(value).__name__}")


def to_fields(document: Mapping[str, Any]) -> dict[str, Any]:
    return {str(k): to_value(v) for k, v in document.items()}


def from_value(value: Mapping[str, Any]) -> Any:
    """Decode a Firestore REST `Value`; zero-valued members may be omitted by the API."""
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return str(value["stringValue"])
    if "geoPointValue" in value:
        gp = value["geoPointValue"] or {}
        return GeoPoint(lat=float(gp.get("latitude", 0.0)), lon=float(gp.get("longitude", 0.0)))
    if "mapValue" in value:
        return from_fields((value["mapValue"] or {}).get("fields") or {})
    if "arrayValue" in value:
        return [from_value(v) for v in (value["arrayValue"] or {}).get("values") or []]
    if "timestampValue" in value:
        return str(value["timestampValue"])
    if "referenceValue" in value:
        return str(value["referenceValue"])
    if "bytesValue" in value:
        return base64.b64decode(value["bytesValue"])
    raise StoreFailure(f"unsupported Firestore value: {dict(value)!r}")


def from_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {k: from_value(v) for k, v in fields.items()}


def _nest(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Turn {"d.name": x, "g": y} into {"d": {"name": x}, "g": y}."""
    out: dict[str, Any] = {}
    for path, value in fields.items():
        parts = path.split(".")
        node = out
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return out


def _field_filter(field_path: str, op: str, value: Any) -> dict[str, Any]:
    return {
        "fieldFilter": {
            "field": {"fieldPath": field_path},
            "op": _OPERATORS[op],
            "value": to_value(value),
        }
    }


def build_where(filters: Sequence[Filter]) -> dict[str, Any] | None:
    parts = [_field_filter(f.store_field, f.op, f.value) for f in filters]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return {"compositeFilter": {"op": "AND", "filters": parts}}


class _PollingWatch:
    """Background poller that turns repeated reads into snapshot deliveries."""

    def __init__(
        self,
        fetch: Callable[[], list[StoredSnapshot]],
        on_change: OnChange,
        on_error: OnError,
        *,
        interval_seconds: float,
        name: str,
    ):
        self._fetch = fetch
        self._on_change = on_change
        self._on_error = on_error
        self._interval_seconds = float(interval_seconds)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "_PollingWatch":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()

    def _fail(self, description: str, exc: Exception) -> None:
        # Errors end the watch; there is nobody up the thread to raise to.
        self._stop.set()
        logger.warning("Polling watch %s failed: %s", self._thread.name, exc)
        if not isinstance(exc, StoreFailure):
            failure = StoreFailure(f"{description}: {exc}")
            failure.__cause__ = exc
            exc = failure
        self._on_error(exc)

    def _run(self) -> None:
        last: dict[str, StoredSnapshot] = {}
        delivered = False
        while not self._stop.is_set():
            try:
                docs = self._fetch()
            except Exception as exc:
                if not self._stop.is_set():
                    self._fail("polling read failed", exc)
                return
            changes = diff_docs(last, docs)
            if (changes or not delivered) and not self._stop.is_set():
                last = {d.id: d for d in docs}
                delivered = True
                try:
                    self._on_change(StoreSnapshot(docs=docs, changes=changes))
                except Exception as exc:
                    self._fail("listener callback failed", exc)
                    return
            self._stop.wait(self._interval_seconds)


class FirestoreRestStore(GeoStore):
    """Firestore collection accessed through the REST API."""

    def __init__(self, settings: Settings, *, collection: str | None = None):
        self._settings = settings
        self._collection = collection or settings.firestore.collection
        self._watch_seq = 0
        self._watch_lock = threading.Lock()

    @property
    def collection(self) -> str:
        return self._collection

    def _parent(self) -> str:
        project_id = self._settings.firestore.project_id
        if not project_id:
            raise RuntimeError("Firestore project is not configured. Set FIRESTORE_PROJECT_ID.")
        return f"projects/{project_id}/databases/{self._settings.firestore.database}/documents"

    def _base(self) -> str:
        return self._settings.firestore.base_url.rstrip("/")

    def _doc_url(self, doc_id: str) -> str:
        if not doc_id or "/" in doc_id:
            raise InvalidArgument(f"invalid document id {doc_id!r}")
        return f"{self._base()}/{self._parent()}/{self._collection}/{doc_id}"

    def _headers(self) -> dict[str, str]:
        token = self._settings.firestore.access_token
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _call(self, description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run one HTTP call with retry/backoff for 429/transient errors."""
        retry = self._settings.firestore.retry
        max_attempts = int(retry.max_attempts)
        kwargs.setdefault("headers", self._headers())
        kwargs.setdefault("timeout_seconds", self._settings.app.http_timeout_seconds)

        for attempt in range(max_attempts + 1):
            try:
                return fn(*args, **kwargs)
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status not in _RETRYABLE_STATUS or attempt >= max_attempts:
                    raise StoreFailure(f"Firestore {description} failed with status={status}") from exc
                delay = min(float(retry.max_delay_seconds), float(retry.base_delay_seconds) * (2**attempt))
                logger.warning(
                    "Firestore %s failed with status=%s; retrying in %.2fs (attempt %s/%s)",
                    description,
                    status,
                    delay,
                    attempt + 1,
                    max_attempts,
                )
                time.sleep(delay)
            except httpx.TransportError as exc:
                if attempt >= max_attempts:
                    raise StoreFailure(f"Firestore {description} failed: {exc}") from exc
                delay = min(float(retry.max_delay_seconds), float(retry.base_delay_seconds) * (2**attempt))
                logger.warning(
                    "Firestore %s transport error; retrying in %.2fs (attempt %s/%s)",
                    description,
                    delay,
                    attempt + 1,
                    max_attempts,
                )
                time.sleep(delay)
        raise StoreFailure(f"Firestore {description} failed without an exception (unexpected).")

    @staticmethod
    def _parse_document(raw: Mapping[str, Any]) -> StoredSnapshot:
        name = str(raw.get("name") or "")
        return StoredSnapshot(
            id=name.rsplit("/", 1)[-1],
            document=from_fields(raw.get("fields") or {}),
            update_time=normalize_timestamp(raw.get("updateTime")),
        )

    # --- reads -----------------------------------------------------------------

    def build_structured_query(
        self,
        *,
        filters: Sequence[Filter] = (),
        limit: int | None = None,
        range_field: str | None = None,
        start: str | None = None,
        end: str | None = None,
    ) -> dict[str, Any]:
        query: dict[str, Any] = {"from": [{"collectionId": self._collection}]}
        where = build_where(filters)
        if where:
            query["where"] = where
        if range_field is not None:
            query["orderBy"] = [{"field": {"fieldPath": range_field}, "direction": "ASCENDING"}]
            query["startAt"] = {"values": [to_value(start)], "before": True}
            query["endAt"] = {"values": [to_value(end)], "before": False}
        if limit is not None:
            query["limit"] = int(limit)
        return query

    def _run_query(self, structured_query: dict[str, Any]) -> list[StoredSnapshot]:
        rows = self._call(
            "runQuery",
            post_json,
            f"{self._base()}/{self._parent()}:runQuery",
            payload={"structuredQuery": structured_query},
        )
        if not isinstance(rows, list):
            raise StoreFailure("Unexpected runQuery response shape; expected a list.")
        return [self._parse_document(row["document"]) for row in rows if row.get("document")]

    def range_read(
        self,
        field_path: str,
        start: str,
        end: str,
        *,
        filters: Sequence[Filter] = (),
        limit: int | None = None,
    ) -> list[StoredSnapshot]:
        return self._run_query(
            self.build_structured_query(
                filters=filters, limit=limit, range_field=field_path, start=start, end=end
            )
        )

    def query(self, *, filters: Sequence[Filter] = (), limit: int | None = None) -> list[StoredSnapshot]:
        return self._run_query(self.build_structured_query(filters=filters, limit=limit))

    def get(self, doc_id: str) -> StoredSnapshot:
        url = self._doc_url(doc_id)
        try:
            raw = self._call("get", get_json, url)
        except StoreFailure as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code == 404:
                return StoredSnapshot(id=doc_id, document=None)
            raise
        return self._parse_document(raw)

    # --- subscriptions -----------------------------------------------------------

    def _watch(self, fetch: Callable[[], list[StoredSnapshot]], on_change: OnChange, on_error: OnError) -> Unsubscribe:
        with self._watch_lock:
            self._watch_seq += 1
            name = f"georange-watch-{self._collection}-{self._watch_seq}"
        watch = _PollingWatch(
            fetch,
            on_change,
            on_error,
            interval_seconds=self._settings.firestore.poll_interval_seconds,
            name=name,
        ).start()
        return watch.stop

    def range_subscribe(
        self,
        field_path: str,
        start: str,
        end: str,
        on_change: OnChange,
        on_error: OnError,
        *,
        filters: Sequence[Filter] = (),
    ) -> Unsubscribe:
        filters = tuple(filters)
        return self._watch(lambda: self.range_read(field_path, start, end, filters=filters), on_change, on_error)

    def subscribe(
        self,
        on_change: OnChange,
        on_error: OnError,
        *,
        filters: Sequence[Filter] = (),
        limit: int | None = None,
    ) -> Unsubscribe:
        filters = tuple(filters)
        return self._watch(lambda: self.query(filters=filters, limit=limit), on_change, on_error)

    # --- writes ------------------------------------------------------------------

    def set(self, doc_id: str, document: Mapping[str, Any]) -> None:
        self._call("set", patch_json, self._doc_url(doc_id), payload={"fields": to_fields(document)})

    def update(self, doc_id: str, fields: Mapping[str, Any], *, upsert: bool = False) -> None:
        params: list[tuple[str, Any]] = [("updateMask.fieldPaths", path) for path in fields]
        if not upsert:
            params.append(("currentDocument.exists", "true"))
        self._call(
            "update",
            patch_json,
            self._doc_url(doc_id),
            payload={"fields": to_fields(_nest(fields))},
            params=params,
        )

    def delete(self, doc_id: str) -> None:
        self._call("delete", delete, self._doc_url(doc_id))

    def add(self, document: Mapping[str, Any]) -> str:
        raw = self._call(
            "add",
            post_json,
            f"{self._base()}/{self._parent()}/{self._collection}",
            payload={"fields": to_fields(document)},
        )
        return self._parse_document(raw or {}).id
