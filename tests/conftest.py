"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.pool import StaticPool

from tally.config import TallyConfig
from tally.database.models import Base
from tally.store.memory import InMemoryDocumentStore
from tally.store.sql import SqlDocumentStore


class TickingClock:
    """Fake clock that advances one second per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with the documents table.

    Uses StaticPool so all threads share the same in-memory database.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """In-memory store with a deterministic, strictly increasing clock."""
    return InMemoryDocumentStore(clock=TickingClock())


@pytest.fixture
def sql_store(db_engine: Engine) -> SqlDocumentStore:
    return SqlDocumentStore(db_engine)


@pytest.fixture(params=["memory", "sql"])
def any_store(request, db_engine: Engine):
    """Run a test against both backends."""
    if request.param == "memory":
        return InMemoryDocumentStore(clock=TickingClock())
    return SqlDocumentStore(db_engine)


@pytest.fixture
def cfg() -> TallyConfig:
    """Defaults with the batch delay turned off."""
    return TallyConfig(reconcile_batch_delay=0)
