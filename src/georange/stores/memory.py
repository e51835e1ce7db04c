"""
In-process store adapter.

Keeps documents in a dict and evaluates range/filter queries the way an indexed
document store would (ordered by the range field, then id). Subscriptions are pushed
synchronously from the writing thread, with the first snapshot delivered from inside
`range_subscribe` / `subscribe`.

Useful for tests, local development, and as the reference semantics for other adapters.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from georange.core.errors import InvalidArgument, StoreFailure
from georange.domain.models import Filter
from georange.stores.base import (
    GeoStore,
    OnChange,
    OnError,
    StoredSnapshot,
    StoreSnapshot,
    Unsubscribe,
    diff_docs,
    get_path,
    is_missing,
    matches_filters,
)

logger = logging.getLogger(__name__)


@dataclass
class _Listener:
    select: Callable[[], list[StoredSnapshot]]
    on_change: OnChange
    on_error: OnError
    last: dict[str, StoredSnapshot] = field(default_factory=dict)
    delivered: bool = False


class InMemoryStore(GeoStore):
    """Thread-safe dict-backed store with live listeners."""

    def __init__(self, documents: Mapping[str, Mapping[str, Any]] | None = None):
        self._docs: dict[str, dict[str, Any]] = {}
        self._versions: dict[str, int] = {}
        self._version_counter = itertools.count(1)
        self._lock = threading.RLock()
        self._listeners: dict[int, _Listener] = {}
        self._listener_ids = itertools.count(1)
        for doc_id, doc in (documents or {}).items():
            self._put(doc_id, copy.deepcopy(dict(doc)))

    def __len__(self) -> int:
        return len(self._docs)

    # --- reads -----------------------------------------------------------------

    def _snapshot(self, doc_id: str) -> StoredSnapshot:
        doc = self._docs.get(doc_id)
        version = self._versions.get(doc_id)
        return StoredSnapshot(
            id=doc_id,
            document=copy.deepcopy(doc) if doc is not None else None,
            # Zero-padded so update times order lexicographically.
            update_time=f"{version:012d}" if version is not None else None,
        )

    def _select_range(
        self, field_path: str, start: str, end: str, filters: Sequence[Filter], limit: int | None
    ) -> list[StoredSnapshot]:
        with self._lock:
            hits: list[tuple[str, str]] = []
            for doc_id, doc in self._docs.items():
                value = get_path(doc, field_path)
                if is_missing(value) or not isinstance(value, str):
                    continue
                if start <= value <= end and matches_filters(doc, filters):
                    hits.append((value, doc_id))
            hits.sort()
            if limit is not None:
                hits = hits[:limit]
            return [self._snapshot(doc_id) for _, doc_id in hits]

    def _select_plain(self, filters: Sequence[Filter], limit: int | None) -> list[StoredSnapshot]:
        with self._lock:
            ids = sorted(doc_id for doc_id, doc in self._docs.items() if matches_filters(doc, filters))
            if limit is not None:
                ids = ids[:limit]
            return [self._snapshot(doc_id) for doc_id in ids]

    def range_read(
        self,
        field_path: str,
        start: str,
        end: str,
        *,
        filters: Sequence[Filter] = (),
        limit: int | None = None,
    ) -> list[StoredSnapshot]:
        return self._select_range(field_path, start, end, filters, limit)

    def query(self, *, filters: Sequence[Filter] = (), limit: int | None = None) -> list[StoredSnapshot]:
        return self._select_plain(filters, limit)

    def get(self, doc_id: str) -> StoredSnapshot:
        with self._lock:
            return self._snapshot(doc_id)

    # --- subscriptions -----------------------------------------------------------

    def _listen(self, select: Callable[[], list[StoredSnapshot]], on_change: OnChange, on_error: OnError) -> Unsubscribe:
        with self._lock:
            listener_id = next(self._listener_ids)
            listener = _Listener(select=select, on_change=on_change, on_error=on_error)
            self._listeners[listener_id] = listener
            self._notify(listener_id, listener)

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(listener_id, None)

        return unsubscribe

    def _notify(self, listener_id: int, listener: _Listener) -> None:
        docs = listener.select()
        changes = diff_docs(listener.last, docs)
        if not changes and listener.delivered:
            return
        listener.last = {d.id: d for d in docs}
        listener.delivered = True
        try:
            listener.on_change(StoreSnapshot(docs=docs, changes=changes))
        except Exception as exc:
            # A failing listener is detached and told once, like a broken listen stream.
            logger.warning("In-memory listener %s raised; detaching it: %s", listener_id, exc)
            self._listeners.pop(listener_id, None)
            listener.on_error(StoreFailure(f"listener callback failed: {exc}"))

    def _broadcast(self) -> None:
        for listener_id, listener in list(self._listeners.items()):
            if listener_id in self._listeners:
                self._notify(listener_id, listener)

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
        return self._listen(
            lambda: self._select_range(field_path, start, end, filters, None), on_change, on_error
        )

    def subscribe(
        self,
        on_change: OnChange,
        on_error: OnError,
        *,
        filters: Sequence[Filter] = (),
        limit: int | None = None,
    ) -> Unsubscribe:
        filters = tuple(filters)
        return self._listen(lambda: self._select_plain(filters, limit), on_change, on_error)

    # --- writes ------------------------------------------------------------------

    def _put(self, doc_id: str, document: dict[str, Any]) -> None:
        self._docs[doc_id] = document
        self._versions[doc_id] = next(self._version_counter)

    def set(self, doc_id: str, document: Mapping[str, Any]) -> None:
        if not doc_id:
            raise InvalidArgument("document id cannot be empty")
        with self._lock:
            self._put(doc_id, copy.deepcopy(dict(document)))
            self._broadcast()

    def update(self, doc_id: str, fields: Mapping[str, Any], *, upsert: bool = False) -> None:
        if not doc_id:
            raise InvalidArgument("document id cannot be empty")
        with self._lock:
            current = self._docs.get(doc_id)
            if current is None and not upsert:
                raise StoreFailure(f"cannot update missing document {doc_id!r}")
            updated = copy.deepcopy(current) if current is not None else {}
            for field_path, value in fields.items():
                node = updated
                parts = field_path.split(".")
                for part in parts[:-1]:
                    child = node.get(part)
                    if not isinstance(child, dict):
                        child = {}
                        node[part] = child
                    node = child
                node[parts[-1]] = copy.deepcopy(value)
            self._put(doc_id, updated)
            self._broadcast()

    def delete(self, doc_id: str) -> None:
        with self._lock:
            if self._docs.pop(doc_id, None) is not None:
                self._versions.pop(doc_id, None)
                self._broadcast()

    def add(self, document: Mapping[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        self.set(doc_id, document)
        return doc_id
