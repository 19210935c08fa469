"""
tally.services.reconciliation_service — Aggregate Reconciliation
=================================================================

Validates denormalized ``users`` counters against the event records and
corrects drift.

Ground truth per user:

    totalReferrals   = count of ``referrals`` with that referrer (any status)
    totalEarned      = sum of credited ``rewardAmount`` over completed +
                       rewarded referrals
    questsCompleted  = count of ``quest_completions`` for that user

Corrections are field-level overwrites.  The overwrite also resets
``completedQuestIds`` to the completion ids it counted, so a quest award
still in flight is not counted twice.  A tracker incrementing the same
counter between the recompute and the overwrite loses its increment; the
next run fixes it.

``batch_reconcile`` is async and drives the synchronous reconcile on
worker threads via :func:`tally.database.engine.run_db`: bounded batches,
a pause between batches, a per-user timeout, and retries on
:class:`~tally.errors.TransientStoreError`.  One user's failure never
aborts the batch.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass, field

from tally.config import TallyConfig
from tally.constants import QUEST_COMPLETIONS, REFERRALS, USERS
from tally.database.engine import run_db
from tally.engine.records import EARNED_STATUSES, ReferralStatus, UserAggregate
from tally.errors import TallyError, TransientStoreError
from tally.services.user_service import COMPLETED_QUESTS_FIELD, get_aggregate, list_user_ids
from tally.store.base import DOC_ID, SERVER_TIMESTAMP, DocumentStore, where

logger = logging.getLogger(__name__)

_EARNED_VALUES = frozenset(status.value for status in EARNED_STATUSES)


@dataclass(frozen=True, slots=True)
class ActualCounters:
    total_referrals: int
    total_earned: float
    quests_completed: int


@dataclass(frozen=True, slots=True)
class Inconsistency:
    """Stored vs. recomputed counters for one user.  ``diff_*`` = stored - actual."""

    user_id: str
    stored: ActualCounters
    actual: ActualCounters

    @property
    def diff_referrals(self) -> int:
        return self.stored.total_referrals - self.actual.total_referrals

    @property
    def diff_earned(self) -> float:
        return self.stored.total_earned - self.actual.total_earned

    @property
    def diff_quests(self) -> int:
        return self.stored.quests_completed - self.actual.quests_completed

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "stored": {
                "totalReferrals": self.stored.total_referrals,
                "totalEarned": self.stored.total_earned,
                "questsCompleted": self.stored.quests_completed,
            },
            "actual": {
                "totalReferrals": self.actual.total_referrals,
                "totalEarned": self.actual.total_earned,
                "questsCompleted": self.actual.quests_completed,
            },
            "diff": {
                "totalReferrals": self.diff_referrals,
                "totalEarned": self.diff_earned,
                "questsCompleted": self.diff_quests,
            },
        }


@dataclass(slots=True)
class UserOutcome:
    user_id: str
    success: bool
    attempts: int = 1
    error: str | None = None
    aggregate: UserAggregate | None = None


@dataclass(slots=True)
class BatchResult:
    outcomes: list[UserOutcome] = field(default_factory=list)

    @property
    def summary(self) -> dict:
        successful = sum(1 for o in self.outcomes if o.success)
        return {
            "total": len(self.outcomes),
            "successful": successful,
            "failed": len(self.outcomes) - successful,
        }

    @property
    def failed_user_ids(self) -> list[str]:
        return [o.user_id for o in self.outcomes if not o.success]


def _same(stored: float, actual: float) -> bool:
    return math.isclose(stored, actual, rel_tol=0.0, abs_tol=1e-9)


class ConsistencyReconciler:
    """Detects and fixes drift between ``users`` counters and event records."""

    def __init__(self, store: DocumentStore, config: TallyConfig | None = None) -> None:
        self.store = store
        self.config = config or TallyConfig()

    # -------------------------------------------------------------------
    # Ground truth
    # -------------------------------------------------------------------
    def compute_actual(self, user_id: str) -> ActualCounters:
        events = self.store.query(REFERRALS, [where("referrerId", "==", user_id)])
        earned = sum(
            float(e.get("rewardAmount") or 0)
            for e in events
            if e.get("status", ReferralStatus.PENDING.value) in _EARNED_VALUES
        )
        completions = self.store.query(QUEST_COMPLETIONS, [where("userId", "==", user_id)])
        return ActualCounters(
            total_referrals=len(events),
            total_earned=earned,
            quests_completed=len(completions),
        )

    def _completion_ids(self, user_id: str) -> list[str]:
        docs = self.store.query(QUEST_COMPLETIONS, [where("userId", "==", user_id)])
        return sorted(doc[DOC_ID] for doc in docs)

    @staticmethod
    def _stored(aggregate: UserAggregate | None) -> ActualCounters:
        if aggregate is None:
            return ActualCounters(0, 0.0, 0)
        return ActualCounters(
            aggregate.total_referrals, aggregate.total_earned, aggregate.quests_completed
        )

    def check_user(self, user_id: str) -> Inconsistency | None:
        stored = self._stored(get_aggregate(self.store, user_id))
        actual = self.compute_actual(user_id)
        if (
            stored.total_referrals == actual.total_referrals
            and stored.quests_completed == actual.quests_completed
            and _same(stored.total_earned, actual.total_earned)
        ):
            return None
        return Inconsistency(user_id=user_id, stored=stored, actual=actual)

    # -------------------------------------------------------------------
    # Validate / reconcile
    # -------------------------------------------------------------------
    def validate(self, sample_size: int = 100) -> list[Inconsistency]:
        """Check up to *sample_size* users (ascending id) and report drift."""
        user_ids = list_user_ids(self.store, limit=sample_size)
        found = [inc for uid in user_ids if (inc := self.check_user(uid)) is not None]
        if found:
            logger.warning(
                "Consistency check: %d/%d users have drifted counters",
                len(found), len(user_ids),
            )
        else:
            logger.info("Consistency check: %d users consistent", len(user_ids))
        return found

    def reconcile(self, user_id: str) -> UserAggregate:
        """Recompute the user's counters and overwrite the stored values."""
        actual = self.compute_actual(user_id)
        before = get_aggregate(self.store, user_id)
        fields = {
            "userId": user_id,
            "totalReferrals": actual.total_referrals,
            "totalEarned": actual.total_earned,
            "questsCompleted": actual.quests_completed,
            COMPLETED_QUESTS_FIELD: self._completion_ids(user_id),
            "lastReconciledAt": SERVER_TIMESTAMP,
        }
        if before is None:
            fields["createdAt"] = SERVER_TIMESTAMP
        self.store.update(USERS, user_id, fields)

        stored = self._stored(before)
        if stored != actual:
            logger.info(
                "Reconciled %s: referrals %d→%d, earned %.2f→%.2f, quests %d→%d",
                user_id,
                stored.total_referrals, actual.total_referrals,
                stored.total_earned, actual.total_earned,
                stored.quests_completed, actual.quests_completed,
            )
        return get_aggregate(self.store, user_id)

    # -------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------
    async def _reconcile_one(self, user_id: str) -> UserOutcome:
        cfg = self.config
        attempts = 0
        while True:
            attempts += 1
            try:
                aggregate = await asyncio.wait_for(
                    run_db(self.reconcile, user_id), timeout=cfg.reconcile_item_timeout
                )
                return UserOutcome(user_id, True, attempts, aggregate=aggregate)
            except (TransientStoreError, TimeoutError) as exc:
                if attempts > cfg.reconcile_max_retries:
                    logger.warning(
                        "Reconcile %s failed after %d attempts: %r", user_id, attempts, exc
                    )
                    return UserOutcome(user_id, False, attempts, error=repr(exc))
                logger.debug("Reconcile %s attempt %d failed: %r", user_id, attempts, exc)
            except TallyError as exc:
                logger.warning("Reconcile %s failed: %s", user_id, exc)
                return UserOutcome(user_id, False, attempts, error=str(exc))
            except Exception as exc:
                logger.exception("Reconcile %s crashed", user_id)
                return UserOutcome(user_id, False, attempts, error=repr(exc))

    async def batch_reconcile(self, user_ids: Iterable[str]) -> BatchResult:
        """Reconcile *user_ids* in bounded concurrent batches."""
        cfg = self.config
        ids = list(dict.fromkeys(user_ids))
        size = max(cfg.reconcile_batch_size, 1)
        result = BatchResult()

        for start in range(0, len(ids), size):
            chunk = ids[start:start + size]
            result.outcomes.extend(
                await asyncio.gather(*(self._reconcile_one(uid) for uid in chunk))
            )
            if start + size < len(ids) and cfg.reconcile_batch_delay > 0:
                await asyncio.sleep(cfg.reconcile_batch_delay)

        summary = result.summary
        logger.info(
            "Batch reconcile: %d total, %d successful, %d failed",
            summary["total"], summary["successful"], summary["failed"],
        )
        return result

    async def fix_all_inconsistencies(self, sample_size: int = 100) -> dict:
        """Validate, then batch-reconcile every drifted user.

        Returns ``{"inconsistencies": [...], "result": BatchResult}``.
        """
        found = await run_db(self.validate, sample_size)
        result = await self.batch_reconcile(inc.user_id for inc in found)
        return {"inconsistencies": found, "result": result}
