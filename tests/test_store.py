"""
tests/test_store.py — Document Store Contract Tests
====================================================
Every test runs against both the in-memory and the SQLite-backed store.
"""

from __future__ import annotations

import threading
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from tally.errors import TransientStoreError
from tally.store import SERVER_TIMESTAMP, DocumentStore, InMemoryDocumentStore, where
from tally.store.base import Filter, apply_query
from tally.store.sql import SqlDocumentStore


class TestSingleDocument:

    def test_satisfies_protocol(self, any_store):
        assert isinstance(any_store, DocumentStore)

    def test_get_missing_returns_none(self, any_store):
        assert any_store.get("users", "nobody") is None

    def test_put_then_get(self, any_store):
        any_store.put("users", "u1", {"userId": "u1", "totalReferrals": 2})
        assert any_store.get("users", "u1") == {"userId": "u1", "totalReferrals": 2}

    def test_put_overwrites_whole_document(self, any_store):
        any_store.put("users", "u1", {"a": 1, "b": 2})
        any_store.put("users", "u1", {"a": 3})
        assert any_store.get("users", "u1") == {"a": 3}

    def test_get_returns_a_copy(self, any_store):
        any_store.put("users", "u1", {"tags": ["x"]})
        doc = any_store.get("users", "u1")
        doc["tags"].append("y")
        assert any_store.get("users", "u1") == {"tags": ["x"]}

    def test_create_if_absent(self, any_store):
        assert any_store.create("claims", "b", {"referrerId": "a"}) is True
        assert any_store.create("claims", "b", {"referrerId": "z"}) is False
        assert any_store.get("claims", "b") == {"referrerId": "a"}

    def test_update_merges_and_creates(self, any_store):
        any_store.update("users", "u1", {"a": 1})
        any_store.update("users", "u1", {"b": 2})
        assert any_store.get("users", "u1") == {"a": 1, "b": 2}

    def test_delete(self, any_store):
        any_store.put("quests", "q1", {"title": "x"})
        assert any_store.delete("quests", "q1") is True
        assert any_store.delete("quests", "q1") is False
        assert any_store.get("quests", "q1") is None

    def test_collections_are_separate(self, any_store):
        any_store.put("a", "same", {"v": 1})
        any_store.put("b", "same", {"v": 2})
        assert any_store.get("a", "same") == {"v": 1}
        assert any_store.get("b", "same") == {"v": 2}


class TestConditionalWrites:

    def test_update_if_matching(self, any_store):
        any_store.put("referrals", "e1", {"status": "pending"})
        assert any_store.update_if(
            "referrals", "e1", {"status": "pending"}, {"status": "completed"}
        ) is True
        assert any_store.get("referrals", "e1")["status"] == "completed"

    def test_update_if_mismatch_writes_nothing(self, any_store):
        any_store.put("referrals", "e1", {"status": "completed"})
        assert any_store.update_if(
            "referrals", "e1", {"status": "pending"}, {"status": "rewarded"}
        ) is False
        assert any_store.get("referrals", "e1")["status"] == "completed"

    def test_update_if_missing_document(self, any_store):
        assert any_store.update_if("referrals", "nope", {}, {"status": "x"}) is False
        assert any_store.get("referrals", "nope") is None

    def test_expected_none_matches_missing_field(self, any_store):
        any_store.put("users", "b", {"userId": "b"})
        assert any_store.update_if("users", "b", {"referredBy": None}, {"referredBy": "a"})
        assert not any_store.update_if("users", "b", {"referredBy": None}, {"referredBy": "c"})
        assert any_store.get("users", "b")["referredBy"] == "a"

    def test_increment_returns_new_value(self, any_store):
        assert any_store.increment("users", "u1", "totalReferrals", 1) == 1
        assert any_store.increment("users", "u1", "totalReferrals", 2) == 3
        assert any_store.increment("users", "u1", "totalEarned", 4.5) == 4.5
        assert any_store.get("users", "u1") == {"totalReferrals": 3, "totalEarned": 4.5}


class TestServerTimestamp:

    def test_sentinel_replaced_with_iso_string(self, any_store):
        any_store.put("users", "u1", {"createdAt": SERVER_TIMESTAMP})
        stamp = any_store.get("users", "u1")["createdAt"]
        assert isinstance(stamp, str)
        assert datetime.fromisoformat(stamp).tzinfo is not None

    def test_sentinel_in_conditional_update(self, any_store):
        any_store.put("referrals", "e1", {"status": "pending"})
        any_store.update_if(
            "referrals", "e1", {"status": "pending"}, {"completedAt": SERVER_TIMESTAMP}
        )
        assert isinstance(any_store.get("referrals", "e1")["completedAt"], str)

    def test_sentinel_is_singleton(self):
        assert type(SERVER_TIMESTAMP)() is SERVER_TIMESTAMP


class TestQuery:

    @pytest.fixture
    def populated(self, any_store):
        any_store.put("referrals", "1", {"referrerId": "a", "amount": 4, "status": "pending"})
        any_store.put("referrals", "2", {"referrerId": "a", "amount": 8, "status": "rewarded"})
        any_store.put("referrals", "3", {"referrerId": "b", "amount": 2, "status": "rewarded"})
        any_store.put("referrals", "4", {"referrerId": "a", "status": "tracked"})
        return any_store

    def test_equality_filter(self, populated):
        docs = populated.query("referrals", [where("referrerId", "==", "a")])
        assert len(docs) == 3

    def test_in_filter(self, populated):
        docs = populated.query(
            "referrals", [where("status", "in", ["rewarded", "tracked"])]
        )
        assert len(docs) == 3

    def test_combined_filters(self, populated):
        docs = populated.query("referrals", [
            where("referrerId", "==", "a"),
            where("amount", ">", 4),
        ])
        assert [d["amount"] for d in docs] == [8]

    def test_order_missing_values_last(self, populated):
        docs = populated.query("referrals", order_by="amount", descending=True)
        assert [d.get("amount") for d in docs] == [8, 4, 2, None]

    def test_limit(self, populated):
        docs = populated.query("referrals", order_by="amount", limit=2)
        assert [d["amount"] for d in docs] == [2, 4]

    def test_results_carry_document_key(self, any_store):
        any_store.put("quests", "q1", {"title": "A"})
        any_store.put("quests", "q2", {"id": "stale", "title": "B"})

        docs = any_store.query("quests", order_by="title")

        assert [d["id"] for d in docs] == ["q1", "q2"]
        assert any_store.get("quests", "q1") == {"title": "A"}

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValueError, match="Unsupported"):
            Filter("a", "~=", 1)

    def test_missing_field_only_matches_none_equality(self):
        docs = [{"a": 1}, {}]
        assert apply_query(docs, [where("a", "==", None)]) == [{}]
        assert apply_query(docs, [where("a", "!=", 1)]) == []

    def test_incomparable_values_do_not_match(self):
        assert apply_query([{"a": "x"}], [where("a", ">", 3)]) == []


class TestMemoryStoreConcurrency:

    def test_create_if_absent_has_one_winner(self):
        store = InMemoryDocumentStore()
        wins: list[bool] = []
        lock = threading.Lock()

        def worker(i: int) -> None:
            won = store.create("claims", "b", {"referrerId": f"r{i}"})
            with lock:
                wins.append(won)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert wins.count(True) == 1

    def test_concurrent_increments_are_not_lost(self):
        store = InMemoryDocumentStore()

        def worker() -> None:
            for _ in range(100):
                store.increment("users", "u", "totalReferrals", 1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.get("users", "u")["totalReferrals"] == 800


class TestSqlStoreErrors:

    def test_operational_error_is_transient(self, db_engine):
        store = SqlDocumentStore(db_engine)
        failing = MagicMock(side_effect=OperationalError("SELECT 1", {}, Exception("gone")))
        with patch("tally.store.sql.get_session", failing):
            with pytest.raises(TransientStoreError) as exc_info:
                store.get("users", "u1")
        assert exc_info.value.retryable is True
