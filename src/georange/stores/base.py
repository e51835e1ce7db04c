"""
Store capability interface.

The query engine only needs a store that can:
- read `field BETWEEN start AND end` (plus equality-style filters) once,
- subscribe to the same range and push snapshots with added/modified/removed diffs,
- run a plain filtered query (non-geo criteria),
- write documents.

Each backing client gets one adapter implementing `GeoStore`; the joiners depend on
nothing else.
"""

from __future__ import annotations

import operator
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from georange.domain.models import ChangeType, Filter


@dataclass(frozen=True)
class StoredSnapshot:
    """A raw stored document as returned by the store (`document` holds `{g, l, d}`).

    Adapters keep `update_time` fixed-width so later writes compare greater as strings.
    """

    id: str
    document: dict[str, Any] | None
    update_time: str | None = None

    @property
    def exists(self) -> bool:
        return self.document is not None


@dataclass(frozen=True)
class StoreChange:
    type: ChangeType
    snapshot: StoredSnapshot


@dataclass(frozen=True)
class StoreSnapshot:
    """One delivery of a store subscription: the full current result plus its diff."""

    docs: list[StoredSnapshot] = field(default_factory=list)
    changes: list[StoreChange] = field(default_factory=list)


OnChange = Callable[[StoreSnapshot], None]
OnError = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class GeoStore(ABC):
    """Minimum capability the geo query engine needs from a document store."""

    @abstractmethod
    def range_read(
        self,
        field_path: str,
        start: str,
        end: str,
        *,
        filters: Sequence[Filter] = (),
        limit: int | None = None,
    ) -> list[StoredSnapshot]:
        """Return documents with `start <= field_path <= end`, ordered by that field."""

    @abstractmethod
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
        """Listen to a range; `on_change` gets a first snapshot, then one per change."""

    @abstractmethod
    def query(self, *, filters: Sequence[Filter] = (), limit: int | None = None) -> list[StoredSnapshot]:
        """Plain filtered read (no geo range)."""

    @abstractmethod
    def subscribe(
        self,
        on_change: OnChange,
        on_error: OnError,
        *,
        filters: Sequence[Filter] = (),
        limit: int | None = None,
    ) -> Unsubscribe:
        """Plain filtered subscription (no geo range)."""

    @abstractmethod
    def get(self, doc_id: str) -> StoredSnapshot:
        """Read one document; a missing document has `exists == False`."""

    @abstractmethod
    def set(self, doc_id: str, document: Mapping[str, Any]) -> None:
        """Create or replace a document."""

    @abstractmethod
    def update(self, doc_id: str, fields: Mapping[str, Any], *, upsert: bool = False) -> None:
        """Update dotted field paths in one write.

        The document must exist unless `upsert` is set, in which case a missing
        document is created from `fields` (a merging set).
        """

    @abstractmethod
    def delete(self, doc_id: str) -> None: ...

    @abstractmethod
    def add(self, document: Mapping[str, Any]) -> str:
        """Create a document with a generated id and return the id."""


_MISSING = object()


def get_path(document: Mapping[str, Any] | None, field_path: str) -> Any:
    """Resolve a dotted field path inside a document; returns a sentinel when absent."""
    node: Any = document
    for part in field_path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return _MISSING
        node = node[part]
    return node


def is_missing(value: Any) -> bool:
    return value is _MISSING


_COMPARISONS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def matches_filter(document: Mapping[str, Any] | None, flt: Filter) -> bool:
    """Evaluate one filter the way a document store does (missing fields never match)."""
    value = get_path(document, flt.store_field)
    if value is _MISSING:
        return False
    op = flt.op
    try:
        if op in _COMPARISONS:
            return bool(_COMPARISONS[op](value, flt.value))
        if op == "!=":
            return value != flt.value
        if op == "array-contains":
            return isinstance(value, list) and flt.value in value
        if op == "array-contains-any":
            return isinstance(value, list) and any(v in value for v in flt.value)
        if op == "in":
            return value in flt.value
        if op == "not-in":
            return value not in flt.value
    except TypeError:
        # Mixed types never compare as matching.
        return False
    return False


def matches_filters(document: Mapping[str, Any] | None, filters: Sequence[Filter]) -> bool:
    return all(matches_filter(document, f) for f in filters)


def diff_docs(
    previous: Mapping[str, StoredSnapshot], current: Sequence[StoredSnapshot]
) -> list[StoreChange]:
    """Compute added/modified/removed changes between two results keyed by document id."""
    changes: list[StoreChange] = []
    seen: set[str] = set()
    for snap in current:
        seen.add(snap.id)
        old = previous.get(snap.id)
        if old is None:
            changes.append(StoreChange(type="added", snapshot=snap))
        elif old.document != snap.document or old.update_time != snap.update_time:
            changes.append(StoreChange(type="modified", snapshot=snap))
    for doc_id, old in previous.items():
        if doc_id not in seen:
            changes.append(StoreChange(type="removed", snapshot=old))
    return changes
