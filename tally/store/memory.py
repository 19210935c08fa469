"""
tally.store.memory — Thread-Safe In-Memory Document Store
==========================================================

A complete :class:`~tally.store.base.DocumentStore` kept in process memory.
Used by the test-suite and by hosts that embed the engine without a
database.  Every operation holds a single lock, so the single-document
atomicity guarantees of the contract hold across threads.

Instances are always created explicitly and injected; there is no
module-level store.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from tally.store.base import (
    Filter,
    apply_query,
    resolve_server_timestamps,
    with_doc_id,
)

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """Dict-of-dicts store: ``{collection: {doc_id: document}}``.

    Parameters
    ----------
    clock : optional zero-argument callable returning an aware datetime.
        Defaults to ``datetime.now(UTC)``; tests pass a fake clock for
        deterministic timestamps.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()
        self._data: dict[str, dict[str, dict]] = {}

    # -------------------------------------------------------------------
    # Clock
    # -------------------------------------------------------------------
    def now(self) -> datetime:
        return self._clock()

    def _stamp(self, fields: dict) -> dict:
        return copy.deepcopy(resolve_server_timestamps(fields, self.now()))

    def _collection(self, collection: str) -> dict[str, dict]:
        return self._data.setdefault(collection, {})

    # -------------------------------------------------------------------
    # Single-document operations
    # -------------------------------------------------------------------
    def get(self, collection: str, doc_id: str) -> dict | None:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def put(self, collection: str, doc_id: str, fields: dict) -> None:
        with self._lock:
            self._collection(collection)[doc_id] = self._stamp(fields)

    def create(self, collection: str, doc_id: str, fields: dict) -> bool:
        with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                return False
            docs[doc_id] = self._stamp(fields)
            return True

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        with self._lock:
            docs = self._collection(collection)
            docs.setdefault(doc_id, {}).update(self._stamp(fields))

    def update_if(
        self, collection: str, doc_id: str, expected: dict, fields: dict
    ) -> bool:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                return False
            for key, value in expected.items():
                if doc.get(key) != value:
                    return False
            doc.update(self._stamp(fields))
            return True

    def increment(
        self, collection: str, doc_id: str, field: str, delta: int | float
    ) -> int | float:
        with self._lock:
            doc = self._collection(collection).setdefault(doc_id, {})
            doc[field] = (doc.get(field) or 0) + delta
            return doc[field]

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        with self._lock:
            snapshot = [
                with_doc_id(doc_id, copy.deepcopy(doc))
                for doc_id, doc in self._collection(collection).items()
            ]
        return apply_query(snapshot, filters, order_by, descending, limit)
