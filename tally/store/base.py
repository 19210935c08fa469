"""
tally.store.base — Document Store Contract
===========================================

The engine talks to persistence only through :class:`DocumentStore`:
single-document reads and writes, a create-if-absent primitive, a
single-document compare-and-set, an atomic numeric increment, and simple
filtered queries.  There is deliberately **no** multi-document transaction.

Documents are plain JSON-compatible dicts.  Writing the
:data:`SERVER_TIMESTAMP` sentinel as a field value asks the store to stamp
the field with its own clock (ISO-8601 UTC string); that value is
authoritative over any client-side time.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "DOC_ID",
    "SERVER_TIMESTAMP",
    "DocumentStore",
    "Filter",
    "apply_query",
    "matches",
    "resolve_server_timestamps",
    "where",
    "with_doc_id",
]


class _ServerTimestamp:
    """Sentinel replaced by the store's clock on write."""

    _instance: _ServerTimestamp | None = None

    def __new__(cls) -> _ServerTimestamp:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()

# Query results carry their document key under this field.
DOC_ID = "id"


def with_doc_id(doc_id: str, doc: dict) -> dict:
    """Copy of *doc* with its key stored under :data:`DOC_ID`."""
    return {**doc, DOC_ID: doc_id}


# ---------------------------------------------------------------------------
# Query filters
# ---------------------------------------------------------------------------
_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "in": lambda value, options: value in options,
}


@dataclass(frozen=True, slots=True)
class Filter:
    """A single ``field <op> value`` predicate."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op!r}")

    def test(self, doc: dict) -> bool:
        if self.field not in doc:
            # Missing fields only match explicit None equality
            return self.op == "==" and self.value is None
        try:
            return _OPERATORS[self.op](doc[self.field], self.value)
        except TypeError:
            return False


def where(field: str, op: str, value: Any) -> Filter:
    """Shorthand constructor: ``where("status", "==", "pending")``."""
    return Filter(field, op, value)


def matches(doc: dict, filters: Iterable[Filter]) -> bool:
    return all(f.test(doc) for f in filters)


def apply_query(
    docs: Iterable[dict],
    filters: Sequence[Filter] = (),
    order_by: str | None = None,
    descending: bool = False,
    limit: int | None = None,
) -> list[dict]:
    """Filter, order, and limit an iterable of documents in memory.

    Documents missing the ``order_by`` field sort last in either direction.
    """
    rows = [doc for doc in docs if matches(doc, filters)]
    if order_by is not None:
        present = [d for d in rows if d.get(order_by) is not None]
        missing = [d for d in rows if d.get(order_by) is None]
        present.sort(key=lambda d: d[order_by], reverse=descending)
        rows = present + missing
    if limit is not None:
        rows = rows[: max(limit, 0)]
    return rows


def resolve_server_timestamps(fields: dict, now: datetime) -> dict:
    """Return a copy of *fields* with every sentinel replaced by *now*."""
    stamp = now.isoformat()
    return {
        key: (stamp if value is SERVER_TIMESTAMP else value)
        for key, value in fields.items()
    }


# ---------------------------------------------------------------------------
# The contract
# ---------------------------------------------------------------------------
@runtime_checkable
class DocumentStore(Protocol):
    """Generic key/document store used by every service.

    Each method is atomic with respect to the single document it touches.
    """

    def now(self) -> datetime:
        """Server clock (timezone-aware UTC)."""
        ...

    def get(self, collection: str, doc_id: str) -> dict | None:
        """Return a copy of the document, or None."""
        ...

    def put(self, collection: str, doc_id: str, fields: dict) -> None:
        """Create or fully overwrite a document."""
        ...

    def create(self, collection: str, doc_id: str, fields: dict) -> bool:
        """Create the document only if absent.  True if this call created it."""
        ...

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        """Merge *fields* into the document (created if absent)."""
        ...

    def update_if(
        self, collection: str, doc_id: str, expected: dict, fields: dict
    ) -> bool:
        """Merge *fields* only if every ``expected`` field currently matches.

        An expected value of ``None`` matches a missing field.  Returns False
        (and writes nothing) when the document is missing or a field differs.
        """
        ...

    def increment(
        self, collection: str, doc_id: str, field: str, delta: int | float
    ) -> int | float:
        """Atomically add *delta* to a numeric field and return the new value.

        A missing document or field starts from 0.
        """
        ...

    def delete(self, collection: str, doc_id: str) -> bool:
        """Delete the document.  True if it existed."""
        ...

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        """Return copies of matching documents.

        Each result holds its document key under :data:`DOC_ID`, which
        takes precedence over a body field of the same name.
        """
        ...
