"""
tally.engine.records — Typed Records for Stored Documents
==========================================================

Every document the engine reads or writes has a dataclass here with a
``from_document`` / ``to_document`` pair.  Documents keep the platform's
camelCase field names; Python attributes are snake_case.  Timestamps are
stored as ISO-8601 strings and parsed back to aware datetimes.

This module is pure — no store I/O.
"""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, field
from datetime import datetime

from tally.constants import XP_PER_LEVEL, current_level_xp, level_for_xp, pair_key

__all__ = [
    "LeaderboardEntry",
    "QuestCategory",
    "QuestDefinition",
    "QuestProgress",
    "QuestStatus",
    "ReferralEvent",
    "ReferralStatus",
    "RequirementType",
    "UserAggregate",
    "XPRecord",
    "parse_timestamp",
    "referral_event_id",
]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ReferralStatus(enum.StrEnum):
    """Lifecycle of a referral event."""
    PENDING = "pending"
    COMPLETED = "completed"
    REWARDED = "rewarded"
    TRACKED = "tracked"


# Statuses whose credited rewardAmount counts toward totalEarned
EARNED_STATUSES: frozenset[ReferralStatus] = frozenset(
    {ReferralStatus.COMPLETED, ReferralStatus.REWARDED}
)


class RequirementType(enum.StrEnum):
    """What a quest asks the user to do."""
    REFER_FRIENDS = "refer_friends"
    CONNECT_ACCOUNT = "connect_account"
    SHARE = "share"
    PLAY_MINIGAME = "play_minigame"
    LOGIN_STREAK = "login_streak"
    ATTEND_EVENT = "attend_event"


class QuestCategory(enum.StrEnum):
    """Presentation grouping of quests on the quest board."""
    DAILY = "daily"
    WEEKLY = "weekly"
    SPECIAL = "special"
    ONE_TIME = "one_time"


class QuestStatus(enum.StrEnum):
    """Per-user quest state machine: not_started → in_progress → completed → claimed."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLAIMED = "claimed"

    @property
    def is_done(self) -> bool:
        return self in (QuestStatus.COMPLETED, QuestStatus.CLAIMED)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def referral_event_id(referrer_id: str, referred_id: str) -> str:
    """Deterministic event id: SHA-256 of ``referrer|referred`` (first 32 hex)."""
    digest = hashlib.sha256(pair_key(referrer_id, referred_id).encode("utf-8"))
    return digest.hexdigest()[:32]


# ---------------------------------------------------------------------------
# ReferralEvent
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ReferralEvent:
    """One referrer → referred relationship and its payout lifecycle.

    ``reward_amount`` is what has actually been credited to the referrer;
    ``expected_reward`` is what the policy promises on payout.
    """

    id: str
    referrer_id: str
    referred_id: str
    status: ReferralStatus = ReferralStatus.PENDING
    reward_amount: float = 0.0
    expected_reward: float = 0.0
    nfts_minted: int = 0
    created_at: datetime | None = None
    completed_at: datetime | None = None
    rewarded_at: datetime | None = None
    reward_reference: str | None = None

    @classmethod
    def from_document(cls, doc: dict) -> ReferralEvent:
        return cls(
            id=doc["id"],
            referrer_id=doc["referrerId"],
            referred_id=doc["referredId"],
            status=ReferralStatus(doc.get("status", ReferralStatus.PENDING)),
            reward_amount=float(doc.get("rewardAmount", 0) or 0),
            expected_reward=float(doc.get("expectedReward", 0) or 0),
            nfts_minted=int(doc.get("nftsMinted", 0) or 0),
            created_at=parse_timestamp(doc.get("createdAt")),
            completed_at=parse_timestamp(doc.get("completedAt")),
            rewarded_at=parse_timestamp(doc.get("rewardedAt")),
            reward_reference=doc.get("rewardReference"),
        )

    def to_document(self) -> dict:
        return {
            "id": self.id,
            "referrerId": self.referrer_id,
            "referredId": self.referred_id,
            "status": self.status.value,
            "rewardAmount": self.reward_amount,
            "expectedReward": self.expected_reward,
            "nftsMinted": self.nfts_minted,
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at),
            "rewardedAt": _iso(self.rewarded_at),
            "rewardReference": self.reward_reference,
        }


# ---------------------------------------------------------------------------
# UserAggregate
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class UserAggregate:
    """Denormalized per-user counters plus profile data."""

    user_id: str
    referral_code: str = ""
    total_referrals: int = 0
    total_earned: float = 0.0
    nfts_minted: int = 0
    quests_completed: int = 0
    referred_by: str | None = None
    display_name: str | None = None
    created_at: datetime | None = None
    last_active: datetime | None = None

    @classmethod
    def from_document(cls, doc: dict) -> UserAggregate:
        return cls(
            user_id=doc["userId"],
            referral_code=doc.get("referralCode", ""),
            total_referrals=int(doc.get("totalReferrals", 0) or 0),
            total_earned=float(doc.get("totalEarned", 0) or 0),
            nfts_minted=int(doc.get("nftsMinted", 0) or 0),
            quests_completed=int(doc.get("questsCompleted", 0) or 0),
            referred_by=doc.get("referredBy"),
            display_name=doc.get("displayName"),
            created_at=parse_timestamp(doc.get("createdAt")),
            last_active=parse_timestamp(doc.get("lastActive")),
        )

    def to_document(self) -> dict:
        return {
            "userId": self.user_id,
            "referralCode": self.referral_code,
            "totalReferrals": self.total_referrals,
            "totalEarned": self.total_earned,
            "nftsMinted": self.nfts_minted,
            "questsCompleted": self.quests_completed,
            "referredBy": self.referred_by,
            "displayName": self.display_name,
            "createdAt": _iso(self.created_at),
            "lastActive": _iso(self.last_active),
        }

    @property
    def name(self) -> str:
        return self.display_name or f"User {self.user_id[:8]}"


# ---------------------------------------------------------------------------
# Quests
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class QuestDefinition:
    """A quest on the board.  Immutable after creation except ``is_active``."""

    id: str
    title: str
    requirement_type: RequirementType
    required_count: int
    reward_xp: int = 0
    is_active: bool = True
    description: str = ""
    category: QuestCategory = QuestCategory.ONE_TIME
    difficulty: str = "Easy"
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.required_count <= 0:
            raise ValueError(f"required_count must be > 0 (quest {self.title!r})")
        if self.reward_xp < 0:
            raise ValueError(f"reward_xp must be >= 0 (quest {self.title!r})")

    @classmethod
    def from_document(cls, doc: dict) -> QuestDefinition:
        return cls(
            id=doc["id"],
            title=doc["title"],
            requirement_type=RequirementType(doc["requirementType"]),
            required_count=int(doc["requiredCount"]),
            reward_xp=int(doc.get("rewardXP", 0) or 0),
            is_active=bool(doc.get("isActive", True)),
            description=doc.get("description", ""),
            category=QuestCategory(doc.get("category", QuestCategory.ONE_TIME)),
            difficulty=doc.get("difficulty", "Easy"),
            created_at=parse_timestamp(doc.get("createdAt")),
        )

    def to_document(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "requirementType": self.requirement_type.value,
            "requiredCount": self.required_count,
            "rewardXP": self.reward_xp,
            "isActive": self.is_active,
            "description": self.description,
            "category": self.category.value,
            "difficulty": self.difficulty,
            "createdAt": _iso(self.created_at),
        }


@dataclass(slots=True)
class QuestProgress:
    """One user's progress on one quest."""

    id: str
    user_id: str
    quest_id: str
    status: QuestStatus = QuestStatus.NOT_STARTED
    progress: int = 0
    max_progress: int = 1
    reward_xp: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    claimed_at: datetime | None = None

    @classmethod
    def not_started(cls, user_id: str, quest: QuestDefinition) -> QuestProgress:
        """View of a quest the user has never touched (not persisted)."""
        return cls(
            id=pair_key(user_id, quest.id),
            user_id=user_id,
            quest_id=quest.id,
            max_progress=quest.required_count,
            reward_xp=quest.reward_xp,
        )

    @classmethod
    def from_document(cls, doc: dict) -> QuestProgress:
        return cls(
            id=doc["id"],
            user_id=doc["userId"],
            quest_id=doc["questId"],
            status=QuestStatus(doc.get("status", QuestStatus.NOT_STARTED)),
            progress=int(doc.get("progress", 0) or 0),
            max_progress=int(doc.get("maxProgress", 1) or 1),
            reward_xp=int(doc.get("rewardXP", 0) or 0),
            started_at=parse_timestamp(doc.get("startedAt")),
            completed_at=parse_timestamp(doc.get("completedAt")),
            claimed_at=parse_timestamp(doc.get("claimedAt")),
        )

    def to_document(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "questId": self.quest_id,
            "status": self.status.value,
            "progress": self.progress,
            "maxProgress": self.max_progress,
            "rewardXP": self.reward_xp,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "claimedAt": _iso(self.claimed_at),
        }


# ---------------------------------------------------------------------------
# XPRecord — level fields are pure functions of total_xp
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class XPRecord:
    user_id: str
    total_xp: int = 0
    quests_completed: int = 0
    xp_per_level: int = field(default=XP_PER_LEVEL, repr=False)

    @property
    def level(self) -> int:
        return level_for_xp(self.total_xp, self.xp_per_level)

    @property
    def current_level_xp(self) -> int:
        return current_level_xp(self.total_xp, self.xp_per_level)

    @property
    def next_level_xp(self) -> int:
        return self.xp_per_level

    @classmethod
    def from_document(cls, doc: dict, xp_per_level: int = XP_PER_LEVEL) -> XPRecord:
        # Stored level fields are ignored on read; total_xp is authoritative.
        return cls(
            user_id=doc["userId"],
            total_xp=int(doc.get("totalXP", 0) or 0),
            quests_completed=int(doc.get("questsCompleted", 0) or 0),
            xp_per_level=xp_per_level,
        )

    def to_document(self) -> dict:
        return {
            "userId": self.user_id,
            "totalXP": self.total_xp,
            "level": self.level,
            "currentLevelXP": self.current_level_xp,
            "nextLevelXP": self.next_level_xp,
            "questsCompleted": self.quests_completed,
        }


# ---------------------------------------------------------------------------
# LeaderboardEntry — computed on read, never persisted as source of truth
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    rank: int
    user_id: str
    score: float
    total_earned: float
    total_referrals: int
    quests_completed: int
    total_xp: int
    level: int
    display_name: str
