"""
tally.store.sql — SQLAlchemy Document Store
============================================

Implements :class:`~tally.store.base.DocumentStore` on the ``documents``
table (see :mod:`tally.database.models`).

How the contract maps onto SQL:

* ``create`` — plain INSERT; the ``(collection, doc_id)`` primary key
  enforces create-if-absent, so a concurrent duplicate surfaces as an
  ``IntegrityError`` and is reported as "not created".
* ``update_if`` / ``increment`` / ``update`` — the row is read with
  ``SELECT … FOR UPDATE`` (a row lock on PostgreSQL) and rewritten in the
  same transaction.
* ``query`` — rows are loaded per collection and filtered in Python so the
  filter semantics match the in-memory backend exactly.

SQLAlchemy operational failures (lost connection, pool timeout) are
re-raised as :class:`~tally.errors.TransientStoreError`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from tally.database.engine import get_session
from tally.database.models import Document
from tally.errors import TransientStoreError
from tally.store.base import (
    Filter,
    apply_query,
    resolve_server_timestamps,
    with_doc_id,
)

logger = logging.getLogger(__name__)


class SqlDocumentStore:
    """Document store backed by a SQLAlchemy :class:`Engine`."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    # -------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------
    @contextmanager
    def _session(self) -> Iterator[Session]:
        """``get_session`` with infrastructure failures classified."""
        try:
            with get_session(self._engine) as session:
                yield session
        except (OperationalError, PoolTimeoutError) as exc:
            logger.warning("Document store unavailable: %s", exc)
            raise TransientStoreError(str(exc)) from exc

    def _locked_row(self, session: Session, collection: str, doc_id: str) -> Document | None:
        return session.scalar(
            select(Document)
            .where(Document.collection == collection, Document.doc_id == doc_id)
            .with_for_update()
        )

    def now(self) -> datetime:
        if self._engine.dialect.name == "postgresql":
            with self._session() as session:
                return session.scalar(select(func.now()))
        return datetime.now(UTC)

    def _stamp(self, fields: dict) -> dict:
        return resolve_server_timestamps(fields, self.now())

    # -------------------------------------------------------------------
    # Single-document operations
    # -------------------------------------------------------------------
    def get(self, collection: str, doc_id: str) -> dict | None:
        with self._session() as session:
            row = session.get(Document, (collection, doc_id))
            return dict(row.data) if row is not None else None

    def put(self, collection: str, doc_id: str, fields: dict) -> None:
        data = self._stamp(fields)
        with self._session() as session:
            row = self._locked_row(session, collection, doc_id)
            if row is None:
                session.add(Document(collection=collection, doc_id=doc_id, data=data))
            else:
                row.data = data

    def create(self, collection: str, doc_id: str, fields: dict) -> bool:
        data = self._stamp(fields)
        try:
            with self._session() as session:
                if session.get(Document, (collection, doc_id)) is not None:
                    return False
                session.add(Document(collection=collection, doc_id=doc_id, data=data))
                session.flush()
        except IntegrityError:
            # Lost the race: another writer inserted the same key first.
            return False
        return True

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        data = self._stamp(fields)
        with self._session() as session:
            row = self._locked_row(session, collection, doc_id)
            if row is None:
                session.add(Document(collection=collection, doc_id=doc_id, data=data))
            else:
                row.data = {**row.data, **data}

    def update_if(
        self, collection: str, doc_id: str, expected: dict, fields: dict
    ) -> bool:
        data = self._stamp(fields)
        with self._session() as session:
            row = self._locked_row(session, collection, doc_id)
            if row is None:
                return False
            current = row.data
            if any(current.get(key) != value for key, value in expected.items()):
                return False
            row.data = {**current, **data}
            return True

    def increment(
        self, collection: str, doc_id: str, field: str, delta: int | float
    ) -> int | float:
        with self._session() as session:
            row = self._locked_row(session, collection, doc_id)
            if row is None:
                row = Document(collection=collection, doc_id=doc_id, data={})
                session.add(row)
            new_value = (row.data.get(field) or 0) + delta
            row.data = {**row.data, field: new_value}
            return new_value

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._session() as session:
            result = session.execute(
                delete(Document).where(
                    Document.collection == collection, Document.doc_id == doc_id
                )
            )
            return result.rowcount > 0

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
        with self._session() as session:
            rows = session.execute(
                select(Document.doc_id, Document.data)
                .where(Document.collection == collection)
                .order_by(Document.doc_id)
            ).all()
            docs = [with_doc_id(doc_id, data) for doc_id, data in rows]
        return apply_query(docs, filters, order_by, descending, limit)
