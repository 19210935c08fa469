"""
tally.services.referral_service — Referral Tracking & Payouts
==============================================================

Records each (referrer, referred) relationship exactly once and keeps the
referrer's counters in step.

Exactly-once without transactions:

    1. ``referral_claims/{referredId}`` — create-if-absent.  The first
       referrer to claim a user owns them forever; anyone else gets
       :class:`~tally.errors.AlreadyReferredError`.
    2. ``referrals/{sha256(referrer|referred)}`` — create-if-absent.  Only
       the caller that creates the event applies the side effects
       (counter increments, ``referredBy``, threshold quests).

A retry after a crash between the two writes finds its own claim and
finishes the event write.  Side effects lost to a crash after step 2 are
healed by the reconciler.

Payout transitions (``pending → completed → rewarded``) are
single-document compare-and-set writes; ``totalEarned`` moves only for the
caller that wins the ``completed → rewarded`` transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tally.config import TallyConfig
from tally.constants import REFERRAL_CLAIMS, REFERRALS, USERS
from tally.engine.records import (
    EARNED_STATUSES,
    ReferralEvent,
    ReferralStatus,
    referral_event_id,
)
from tally.errors import (
    AlreadyReferredError,
    NotFoundError,
    Result,
    SelfReferralError,
    ValidationError,
)
from tally.services.quest_service import QuestProgressEngine
from tally.services.user_service import ensure_user, get_aggregate, resolve_referral_code
from tally.store.base import SERVER_TIMESTAMP, DocumentStore, where

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reward policy
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RewardPolicy:
    """How a newly tracked referral is paid.

    * ``pending()`` — recorded now, paid later via ``complete_referral`` +
      ``process_reward``.
    * ``tracked()`` — recorded for stats only, never paid.
    * ``reward(amount)`` — paid immediately (e.g. the referred user minted
      with the referrer's link and the payout went out in the same step).
    """

    status: ReferralStatus = ReferralStatus.PENDING
    amount: float | None = None
    nfts_minted: int = 0
    reference: str | None = None

    def __post_init__(self) -> None:
        if self.amount is not None and self.amount < 0:
            raise ValidationError(f"Reward amount must be >= 0, got {self.amount}")
        if self.nfts_minted < 0:
            raise ValidationError(f"nfts_minted must be >= 0, got {self.nfts_minted}")

    @classmethod
    def pending(cls, amount: float | None = None) -> RewardPolicy:
        return cls(ReferralStatus.PENDING, amount)

    @classmethod
    def tracked(cls) -> RewardPolicy:
        return cls(ReferralStatus.TRACKED, 0.0)

    @classmethod
    def reward(
        cls, amount: float, nfts_minted: int = 0, reference: str | None = None
    ) -> RewardPolicy:
        return cls(ReferralStatus.REWARDED, amount, nfts_minted, reference)

    @property
    def pays_now(self) -> bool:
        return self.status is ReferralStatus.REWARDED


@dataclass(frozen=True, slots=True)
class ReferralStats:
    total_referrals: int
    completed_referrals: int
    total_earned: float
    pending_rewards: float


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------
class ReferralTracker:
    """Records referral events and their payouts.

    Parameters
    ----------
    store : the document store.
    quests : engine used for threshold auto-completion after a new referral.
    config : supplies the default per-referral reward.
    """

    def __init__(
        self,
        store: DocumentStore,
        quests: QuestProgressEngine | None = None,
        config: TallyConfig | None = None,
    ) -> None:
        self.store = store
        self.config = config or TallyConfig()
        self.quests = quests or QuestProgressEngine(store, self.config)

    # -------------------------------------------------------------------
    # Tracking
    # -------------------------------------------------------------------
    def track_referral(
        self,
        referrer_id: str,
        referred_id: str,
        policy: RewardPolicy | None = None,
    ) -> Result[ReferralEvent]:
        """Record that *referrer_id* brought in *referred_id*.

        Idempotent: repeating the call returns the existing event and
        credits nothing.
        """
        policy = policy or RewardPolicy.pending()
        if not referrer_id or not referred_id:
            return Result.failure(ValidationError("referrer_id and referred_id are required"))
        if referrer_id == referred_id:
            return Result.failure(SelfReferralError(f"User {referrer_id} cannot refer themselves"))

        event_id = referral_event_id(referrer_id, referred_id)
        claimed = self.store.create(REFERRAL_CLAIMS, referred_id, {
            "referredId": referred_id,
            "referrerId": referrer_id,
            "eventId": event_id,
            "createdAt": SERVER_TIMESTAMP,
        })
        if not claimed:
            claim = self.store.get(REFERRAL_CLAIMS, referred_id) or {}
            if claim.get("referrerId") != referrer_id:
                logger.info(
                    "Rejected referral %s → %s: already referred by %s",
                    referrer_id, referred_id, claim.get("referrerId"),
                )
                return Result.failure(AlreadyReferredError(
                    f"User {referred_id} was already referred by another user"
                ))

        event = self._build_event(event_id, referrer_id, referred_id, policy)
        if not self.store.create(REFERRALS, event_id, event):
            existing = self.store.get(REFERRALS, event_id)
            return Result.success(ReferralEvent.from_document(existing))

        self._apply_side_effects(referrer_id, referred_id, policy)
        return Result.success(ReferralEvent.from_document(self.store.get(REFERRALS, event_id)))

    def track_referral_by_code(
        self,
        referral_code: str,
        referred_id: str,
        policy: RewardPolicy | None = None,
    ) -> Result[ReferralEvent]:
        """Resolve *referral_code* to its owner, then :meth:`track_referral`."""
        if not referral_code or not referral_code.strip():
            return Result.failure(ValidationError("referral_code is required"))
        referrer_id = resolve_referral_code(self.store, referral_code)
        if referrer_id is None:
            return Result.failure(NotFoundError(f"Unknown referral code {referral_code!r}"))
        return self.track_referral(referrer_id, referred_id, policy)

    def _build_event(
        self, event_id: str, referrer_id: str, referred_id: str, policy: RewardPolicy
    ) -> dict:
        expected = policy.amount
        if expected is None:
            expected = self.config.referral_reward_amount
        paid_now = policy.pays_now
        return {
            "id": event_id,
            "referrerId": referrer_id,
            "referredId": referred_id,
            "status": policy.status.value,
            "rewardAmount": expected if paid_now else 0.0,
            "expectedReward": expected,
            "nftsMinted": policy.nfts_minted,
            "createdAt": SERVER_TIMESTAMP,
            "completedAt": SERVER_TIMESTAMP if paid_now else None,
            "rewardedAt": SERVER_TIMESTAMP if paid_now else None,
            "rewardReference": policy.reference,
        }

    def _apply_side_effects(
        self, referrer_id: str, referred_id: str, policy: RewardPolicy
    ) -> None:
        """Counter updates owed by the caller that created the event."""
        ensure_user(self.store, referrer_id)
        ensure_user(self.store, referred_id)

        self.store.increment(USERS, referrer_id, "totalReferrals", 1)
        if policy.pays_now and policy.amount:
            self.store.increment(USERS, referrer_id, "totalEarned", policy.amount)
        if policy.nfts_minted:
            self.store.increment(USERS, referred_id, "nftsMinted", policy.nfts_minted)

        # First referrer wins; never overwrite an existing referredBy.
        self.store.update_if(USERS, referred_id, {"referredBy": None}, {"referredBy": referrer_id})

        logger.info(
            "Tracked referral %s → %s (%s)", referrer_id, referred_id, policy.status.value
        )
        try:
            completed = self.quests.check_threshold_quests(referrer_id)
        except Exception:
            # The referral itself is recorded; the reconciler and the next
            # threshold check pick up the quest.
            logger.exception("Threshold quest check failed for %s", referrer_id)
        else:
            if completed:
                logger.info("Referral by %s completed quests %s", referrer_id, completed)

    # -------------------------------------------------------------------
    # Payout lifecycle
    # -------------------------------------------------------------------
    def complete_referral(self, referred_id: str) -> bool:
        """``pending → completed`` for the referral of *referred_id*.

        Returns False when there is no pending referral.
        """
        event = self.get_referral_for(referred_id)
        if event is None or event.status is not ReferralStatus.PENDING:
            return False
        won = self.store.update_if(
            REFERRALS, event.id,
            {"status": ReferralStatus.PENDING.value},
            {"status": ReferralStatus.COMPLETED.value, "completedAt": SERVER_TIMESTAMP},
        )
        if won:
            logger.info("Referral %s → %s completed", event.referrer_id, referred_id)
            try:
                self.quests.check_threshold_quests(event.referrer_id)
            except Exception:
                logger.exception("Threshold quest check failed for %s", event.referrer_id)
        return won

    def process_reward(
        self,
        referred_id: str,
        amount: float | None = None,
        reference: str | None = None,
    ) -> bool:
        """``completed → rewarded``; credits ``totalEarned`` once.

        *amount* defaults to the event's expected reward.  Returns False when
        there is no completed referral (including one already rewarded).

        Raises
        ------
        ValidationError
            If *amount* is negative.
        """
        if amount is not None and amount < 0:
            raise ValidationError(f"Reward amount must be >= 0, got {amount}")

        event = self.get_referral_for(referred_id)
        if event is None or event.status is not ReferralStatus.COMPLETED:
            return False

        paid = event.expected_reward if amount is None else float(amount)
        won = self.store.update_if(
            REFERRALS, event.id,
            {"status": ReferralStatus.COMPLETED.value},
            {
                "status": ReferralStatus.REWARDED.value,
                "rewardAmount": paid,
                "rewardedAt": SERVER_TIMESTAMP,
                "rewardReference": reference,
            },
        )
        if not won:
            return False
        if paid:
            self.store.increment(USERS, event.referrer_id, "totalEarned", paid)
        logger.info(
            "Paid %.2f to %s for referral of %s", paid, event.referrer_id, referred_id
        )
        return True

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def get_referral(self, referrer_id: str, referred_id: str) -> ReferralEvent | None:
        doc = self.store.get(REFERRALS, referral_event_id(referrer_id, referred_id))
        return ReferralEvent.from_document(doc) if doc is not None else None

    def get_referral_for(self, referred_id: str) -> ReferralEvent | None:
        """The referral that brought in *referred_id*, if any."""
        claim = self.store.get(REFERRAL_CLAIMS, referred_id)
        if claim is None:
            return None
        doc = self.store.get(REFERRALS, claim["eventId"])
        return ReferralEvent.from_document(doc) if doc is not None else None

    def referral_history(self, user_id: str, limit: int | None = None) -> list[ReferralEvent]:
        """Events where *user_id* is the referrer, newest first."""
        docs = self.store.query(
            REFERRALS, [where("referrerId", "==", user_id)],
            order_by="createdAt", descending=True, limit=limit,
        )
        return [ReferralEvent.from_document(doc) for doc in docs]

    def referral_stats(self, user_id: str) -> ReferralStats:
        events = self.referral_history(user_id)
        earned = [e for e in events if e.status in EARNED_STATUSES]
        pending = sum(
            e.expected_reward for e in events
            if e.status in (ReferralStatus.PENDING, ReferralStatus.COMPLETED)
        )
        aggregate = get_aggregate(self.store, user_id)
        return ReferralStats(
            total_referrals=len(events),
            completed_referrals=len(earned),
            total_earned=(
                aggregate.total_earned if aggregate is not None
                else sum(e.reward_amount for e in earned)
            ),
            pending_rewards=pending,
        )
