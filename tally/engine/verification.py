"""
tally.engine.verification — Quest Verification Payloads & Predicates
=====================================================================

Each quest requirement type has its own verification payload, modelled as
a pydantic discriminated union on ``requirement_type``.  A payload carries
only what its predicate needs.  Predicates live in a handler registry
keyed by :class:`RequirementType`.

This module is pure calculation — no store I/O.  When a ``refer_friends``
payload omits ``referral_count`` the caller reads the aggregate and passes
the fresh value in :class:`VerificationContext`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from tally.engine.records import QuestDefinition, RequirementType
from tally.errors import ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "THRESHOLD_FIELDS",
    "AttendEventVerification",
    "ConnectAccountVerification",
    "LoginStreakVerification",
    "PlayMinigameVerification",
    "ReferFriendsVerification",
    "ShareVerification",
    "Verification",
    "VerificationContext",
    "auto_verification",
    "parse_verification",
    "verify",
]


# ---------------------------------------------------------------------------
# Payload variants
# ---------------------------------------------------------------------------
class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ReferFriendsVerification(_Payload):
    requirement_type: Literal["refer_friends"] = "refer_friends"
    referral_count: int | None = Field(default=None, ge=0)
    auto: bool = False  # set by threshold auto-completion


class ConnectAccountVerification(_Payload):
    requirement_type: Literal["connect_account"] = "connect_account"
    provider: str = "discord"
    connected: bool
    connected_at: datetime | None = None


class ShareVerification(_Payload):
    requirement_type: Literal["share"] = "share"
    share_url: str
    shared_at: datetime | None = None


class PlayMinigameVerification(_Payload):
    requirement_type: Literal["play_minigame"] = "play_minigame"
    game_score: int = Field(ge=0)


class LoginStreakVerification(_Payload):
    requirement_type: Literal["login_streak"] = "login_streak"
    payment_signature: str
    payment_amount: float = Field(ge=0)
    verified: bool = False


class AttendEventVerification(_Payload):
    requirement_type: Literal["attend_event"] = "attend_event"
    attendance_verified: bool
    joined_at: datetime | None = None


Verification = Annotated[
    ReferFriendsVerification
    | ConnectAccountVerification
    | ShareVerification
    | PlayMinigameVerification
    | LoginStreakVerification
    | AttendEventVerification,
    Field(discriminator="requirement_type"),
]

_ADAPTER: TypeAdapter[Any] = TypeAdapter(Verification)


def parse_verification(payload: BaseModel | dict) -> Any:
    """Coerce *payload* into one of the typed variants.

    Raises
    ------
    tally.errors.ValidationError
        If a dict payload is malformed or names an unknown requirement type.
    """
    if isinstance(payload, _Payload):
        return payload
    if not isinstance(payload, dict):
        raise ValidationError(
            f"Verification payload must be a mapping, got {type(payload).__name__}"
        )
    try:
        return _ADAPTER.validate_python(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Malformed verification payload: {exc}") from exc


# ---------------------------------------------------------------------------
# Verification context
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class VerificationContext:
    """Everything a predicate may consult besides the payload.

    Parameters
    ----------
    quest : the quest being progressed.
    total_referrals : fresh aggregate value, used when a ``refer_friends``
        payload carries no ``referral_count``.
    share_tag : tag a shared post URL must contain.
    min_login_payment : minimum check-in payment for a login-streak day.
    """

    quest: QuestDefinition
    total_referrals: int | None = None
    share_tag: str = "RewardNFT"
    min_login_payment: float = 0.01


# ---------------------------------------------------------------------------
# Predicates — pure functions (payload, ctx) → bool
# ---------------------------------------------------------------------------
def _check_refer_friends(payload: ReferFriendsVerification, ctx: VerificationContext) -> bool:
    count = payload.referral_count
    if count is None:
        count = ctx.total_referrals
    if count is None:
        return False
    return count >= ctx.quest.required_count


def _check_connect_account(
    payload: ConnectAccountVerification, ctx: VerificationContext
) -> bool:
    return payload.connected and payload.connected_at is not None


def _check_share(payload: ShareVerification, ctx: VerificationContext) -> bool:
    if payload.shared_at is None:
        return False
    return ctx.share_tag.lower() in payload.share_url.lower()


def _check_play_minigame(payload: PlayMinigameVerification, ctx: VerificationContext) -> bool:
    return payload.game_score >= ctx.quest.required_count


def _check_login_streak(payload: LoginStreakVerification, ctx: VerificationContext) -> bool:
    return (
        payload.verified
        and bool(payload.payment_signature)
        and payload.payment_amount >= ctx.min_login_payment
    )


def _check_attend_event(payload: AttendEventVerification, ctx: VerificationContext) -> bool:
    return payload.attendance_verified and payload.joined_at is not None


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------
PREDICATES: dict[RequirementType, Callable[[Any, VerificationContext], bool]] = {
    RequirementType.REFER_FRIENDS: _check_refer_friends,
    RequirementType.CONNECT_ACCOUNT: _check_connect_account,
    RequirementType.SHARE: _check_share,
    RequirementType.PLAY_MINIGAME: _check_play_minigame,
    RequirementType.LOGIN_STREAK: _check_login_streak,
    RequirementType.ATTEND_EVENT: _check_attend_event,
}

# Requirement types satisfied by an aggregate counter reaching requiredCount.
# Maps requirement type → UserAggregate attribute.
THRESHOLD_FIELDS: dict[RequirementType, str] = {
    RequirementType.REFER_FRIENDS: "total_referrals",
}


def verify(payload: Any, ctx: VerificationContext) -> bool:
    """Run the predicate for the quest's requirement type.

    Raises
    ------
    tally.errors.ValidationError
        If the payload's ``requirement_type`` is not the quest's.
    """
    if payload.requirement_type != ctx.quest.requirement_type:
        raise ValidationError(
            f"Verification for {payload.requirement_type!r} "
            f"does not apply to quest {ctx.quest.title!r} "
            f"({ctx.quest.requirement_type.value})"
        )
    passed = PREDICATES[ctx.quest.requirement_type](payload, ctx)
    if not passed:
        logger.debug(
            "Verification failed for quest %s (%s)",
            ctx.quest.id, ctx.quest.requirement_type.value,
        )
    return passed


def auto_verification(requirement_type: RequirementType, value: int) -> Any:
    """Build the auto-completion payload for a threshold quest."""
    if requirement_type is RequirementType.REFER_FRIENDS:
        return ReferFriendsVerification(referral_count=value, auto=True)
    raise ValueError(f"{requirement_type.value} is not a threshold requirement")
