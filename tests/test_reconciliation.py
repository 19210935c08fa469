"""
tests/test_reconciliation.py — ConsistencyReconciler Tests
===========================================================
Drift detection, point reconciliation, and the async batch job (driven
with ``asyncio.run``, no pytest-asyncio).
"""

from __future__ import annotations

import asyncio
import time
from unittest.mock import patch

import pytest

from tally.config import TallyConfig
from tally.constants import QUEST_COMPLETIONS
from tally.engine.records import RequirementType
from tally.errors import NotFoundError, TransientStoreError
from tally.services.quest_service import QuestProgressEngine
from tally.services.reconciliation_service import ConsistencyReconciler
from tally.services.referral_service import ReferralTracker, RewardPolicy
from tally.services.user_service import count_completed_quest, get_aggregate


@pytest.fixture
def quests(store, cfg):
    return QuestProgressEngine(store, cfg, default_quests=())


@pytest.fixture
def tracker(store, quests, cfg):
    return ReferralTracker(store, quests, cfg)


@pytest.fixture
def reconciler(store, cfg):
    return ConsistencyReconciler(store, cfg)


def _seed_activity(tracker: ReferralTracker) -> None:
    """alice: 3 referrals (one rewarded 4.0, one completed, one pending)."""
    tracker.track_referral("alice", "b")
    tracker.track_referral("alice", "c")
    tracker.track_referral("alice", "d", RewardPolicy.reward(4.0))
    tracker.complete_referral("b")


class TestValidate:

    def test_consistent_after_normal_flow(self, tracker, reconciler):
        _seed_activity(tracker)
        assert reconciler.validate() == []

    def test_detects_drift_with_signed_diff(self, store, tracker, reconciler):
        _seed_activity(tracker)
        store.update("users", "alice", {"totalReferrals": 5, "totalEarned": 0})

        [inc] = reconciler.validate()

        assert inc.user_id == "alice"
        assert inc.diff_referrals == 2
        assert inc.diff_earned == -4.0
        assert inc.diff_quests == 0
        assert inc.as_dict()["actual"]["totalReferrals"] == 3

    def test_counts_all_statuses_but_earns_only_credited(self, tracker, reconciler):
        _seed_activity(tracker)
        actual = reconciler.compute_actual("alice")
        assert actual.total_referrals == 3
        assert actual.total_earned == 4.0

    def test_counts_quest_completions(self, store, quests, reconciler):
        quest = quests.create_quest("Refer", RequirementType.REFER_FRIENDS, 1, 10).unwrap()
        store.put("users", "u", {"userId": "u", "totalReferrals": 0})
        quests.update_progress("u", quest.id, 1, {
            "requirement_type": "refer_friends", "referral_count": 1,
        })
        store.update("users", "u", {"questsCompleted": 0})

        [inc] = reconciler.validate()
        assert inc.diff_quests == -1

    def test_sample_size_limits_users(self, store, reconciler):
        for i in range(5):
            store.put("users", f"u{i}", {"userId": f"u{i}", "totalReferrals": 1})
        found = reconciler.validate(sample_size=2)
        assert [inc.user_id for inc in found] == ["u0", "u1"]


class TestReconcile:

    def test_overwrites_counters(self, store, tracker, reconciler):
        _seed_activity(tracker)
        store.update("users", "alice", {"totalReferrals": 99, "totalEarned": 123.0})

        aggregate = reconciler.reconcile("alice")

        assert aggregate.total_referrals == 3
        assert aggregate.total_earned == 4.0
        assert reconciler.validate() == []

    def test_heals_lost_increment(self, store, tracker, reconciler):
        # Event written, counter increment lost to a crash.
        tracker.track_referral("alice", "bob")
        store.update("users", "alice", {"totalReferrals": 0})

        assert reconciler.reconcile("alice").total_referrals == 1

    def test_creates_missing_aggregate(self, store, reconciler):
        store.put("referrals", "e1", {
            "id": "e1", "referrerId": "ghost", "referredId": "x",
            "status": "rewarded", "rewardAmount": 2.5,
        })
        aggregate = reconciler.reconcile("ghost")
        assert aggregate.total_referrals == 1
        assert aggregate.total_earned == 2.5

    def test_converges_over_every_status(self, store, tracker, reconciler):
        tracker.track_referral("alice", "p")
        tracker.track_referral("alice", "t", RewardPolicy.tracked())
        tracker.track_referral("alice", "r", RewardPolicy.reward(2.5))
        tracker.track_referral("alice", "c")
        tracker.complete_referral("c")
        tracker.track_referral("alice", "w")
        tracker.complete_referral("w")
        tracker.process_reward("w", amount=4.0)
        store.update("users", "alice", {
            "totalReferrals": 1, "totalEarned": 50.0, "questsCompleted": 3,
        })

        aggregate = reconciler.reconcile("alice")

        # Every status counts as a referral; only credited amounts count as earned.
        assert aggregate.total_referrals == 5
        assert aggregate.total_earned == 6.5
        assert aggregate.quests_completed == 0
        assert reconciler.validate() == []

    def test_in_flight_award_not_counted_twice(self, store, reconciler):
        store.put("users", "u", {"userId": "u", "questsCompleted": 0})
        store.put(QUEST_COMPLETIONS, "u|q", {"userId": "u", "questId": "q", "awarded": False})

        assert reconciler.reconcile("u").quests_completed == 1
        assert count_completed_quest(store, "u", "u|q") is False
        assert get_aggregate(store, "u").quests_completed == 1

    def test_preserves_other_fields(self, store, tracker, reconciler):
        tracker.track_referral("alice", "bob")
        code = get_aggregate(store, "alice").referral_code
        reconciler.reconcile("alice")
        assert get_aggregate(store, "alice").referral_code == code


class TestBatchReconcile:

    def test_summary_and_outcomes(self, store, tracker, reconciler):
        _seed_activity(tracker)
        store.update("users", "alice", {"totalReferrals": 0})

        result = asyncio.run(reconciler.batch_reconcile(["alice", "b", "c", "d"]))

        assert result.summary == {"total": 4, "successful": 4, "failed": 0}
        assert get_aggregate(store, "alice").total_referrals == 3

    def test_duplicates_collapsed(self, reconciler):
        result = asyncio.run(reconciler.batch_reconcile(["a", "a", "b"]))
        assert [o.user_id for o in result.outcomes] == ["a", "b"]

    def test_one_failure_does_not_abort(self, store, cfg):
        reconciler = ConsistencyReconciler(store, cfg)
        real = reconciler.reconcile

        def flaky(user_id):
            if user_id == "bad":
                raise NotFoundError("gone")
            return real(user_id)

        with patch.object(reconciler, "reconcile", side_effect=flaky):
            result = asyncio.run(reconciler.batch_reconcile(["a", "bad", "c"]))

        assert result.summary == {"total": 3, "successful": 2, "failed": 1}
        assert result.failed_user_ids == ["bad"]

    def test_transient_errors_retried(self, store):
        cfg = TallyConfig(reconcile_max_retries=2, reconcile_batch_delay=0)
        reconciler = ConsistencyReconciler(store, cfg)
        real = reconciler.reconcile
        calls = {"n": 0}

        def flaky(user_id):
            calls["n"] += 1
            if calls["n"] < 3:
                raise TransientStoreError("blip")
            return real(user_id)

        with patch.object(reconciler, "reconcile", side_effect=flaky):
            result = asyncio.run(reconciler.batch_reconcile(["a"]))

        assert result.outcomes[0].success is True
        assert result.outcomes[0].attempts == 3

    def test_retries_exhausted(self, store):
        cfg = TallyConfig(reconcile_max_retries=1, reconcile_batch_delay=0)
        reconciler = ConsistencyReconciler(store, cfg)

        with patch.object(reconciler, "reconcile", side_effect=TransientStoreError("down")):
            result = asyncio.run(reconciler.batch_reconcile(["a"]))

        outcome = result.outcomes[0]
        assert outcome.success is False
        assert outcome.attempts == 2
        assert "down" in outcome.error

    def test_per_user_timeout(self, store):
        cfg = TallyConfig(
            reconcile_item_timeout=0.05, reconcile_max_retries=0, reconcile_batch_delay=0
        )
        reconciler = ConsistencyReconciler(store, cfg)

        def slow(user_id):
            time.sleep(0.3)

        with patch.object(reconciler, "reconcile", side_effect=slow):
            result = asyncio.run(reconciler.batch_reconcile(["a"]))

        assert result.summary["failed"] == 1

    def test_batches_sleep_between_chunks(self, store):
        cfg = TallyConfig(reconcile_batch_size=2, reconcile_batch_delay=0.01)
        reconciler = ConsistencyReconciler(store, cfg)

        with patch(
            "tally.services.reconciliation_service.asyncio.sleep",
            wraps=asyncio.sleep,
        ) as sleep:
            asyncio.run(reconciler.batch_reconcile(["a", "b", "c", "d", "e"]))

        assert sleep.call_count == 2

    def test_fix_all_inconsistencies(self, store, tracker, reconciler):
        _seed_activity(tracker)
        store.update("users", "alice", {"totalEarned": 50.0})
        store.update("users", "b", {"totalReferrals": 7})

        report = asyncio.run(reconciler.fix_all_inconsistencies())

        assert sorted(inc.user_id for inc in report["inconsistencies"]) == ["alice", "b"]
        assert report["result"].summary["successful"] == 2
        assert reconciler.validate() == []
