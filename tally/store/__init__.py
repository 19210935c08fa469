"""
tally.store — Document store backends
======================================

``create_store(cfg)`` builds the backend named by ``cfg.store_backend``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tally.store.base import SERVER_TIMESTAMP, DocumentStore, Filter, where
from tally.store.memory import InMemoryDocumentStore

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.config import TallyConfig

logger = logging.getLogger(__name__)

__all__ = [
    "SERVER_TIMESTAMP",
    "DocumentStore",
    "Filter",
    "InMemoryDocumentStore",
    "create_store",
    "where",
]


def create_store(cfg: TallyConfig, engine: Engine | None = None) -> DocumentStore:
    """Build the configured store.

    For ``sql`` a new engine is created from ``DATABASE_URL`` unless one is
    passed in, and the schema is verified with ``init_db``.
    """
    if cfg.store_backend == "sql":
        from tally.database.engine import create_db_engine, init_db
        from tally.store.sql import SqlDocumentStore

        if engine is None:
            engine = create_db_engine()
        init_db(engine)
        logger.info("Using SQL document store")
        return SqlDocumentStore(engine)

    logger.info("Using in-memory document store")
    return InMemoryDocumentStore()
