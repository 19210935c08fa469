"""
tests/test_verification.py — Quest Verification Unit Tests
===========================================================
Pure tests for payload parsing and the per-requirement predicates.
No store needed.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from tally.engine.records import QuestDefinition, RequirementType
from tally.engine.verification import (
    PREDICATES,
    ConnectAccountVerification,
    LoginStreakVerification,
    PlayMinigameVerification,
    ReferFriendsVerification,
    ShareVerification,
    VerificationContext,
    auto_verification,
    parse_verification,
    verify,
)
from tally.errors import ValidationError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _quest(requirement_type: RequirementType, required_count: int = 1) -> QuestDefinition:
    return QuestDefinition(
        id=f"q-{requirement_type.value}",
        title=f"Quest {requirement_type.value}",
        requirement_type=requirement_type,
        required_count=required_count,
        reward_xp=50,
    )


def _ctx(requirement_type: RequirementType, required_count: int = 1, **kw) -> VerificationContext:
    return VerificationContext(quest=_quest(requirement_type, required_count), **kw)


class TestParsing:

    def test_dict_parsed_into_variant(self):
        payload = parse_verification({"requirement_type": "play_minigame", "game_score": 1200})
        assert isinstance(payload, PlayMinigameVerification)
        assert payload.game_score == 1200

    def test_model_passed_through(self):
        payload = ShareVerification(share_url="https://x.com/p/1", shared_at=NOW)
        assert parse_verification(payload) is payload

    def test_timestamps_parsed_from_strings(self):
        payload = parse_verification({
            "requirement_type": "connect_account",
            "connected": True,
            "connected_at": "2026-03-01T12:00:00+00:00",
        })
        assert payload.connected_at == NOW

    def test_unknown_requirement_type(self):
        with pytest.raises(ValidationError, match="Malformed"):
            parse_verification({"requirement_type": "dance", "moves": 3})

    def test_missing_required_field(self):
        with pytest.raises(ValidationError):
            parse_verification({"requirement_type": "share"})

    def test_extra_fields_rejected(self):
        with pytest.raises(ValidationError):
            parse_verification({
                "requirement_type": "play_minigame", "game_score": 1, "cheat": True,
            })

    def test_negative_score_rejected(self):
        with pytest.raises(ValidationError):
            parse_verification({"requirement_type": "play_minigame", "game_score": -5})

    def test_non_mapping_rejected(self):
        with pytest.raises(ValidationError, match="mapping"):
            parse_verification(["share"])


class TestPredicates:

    def test_every_requirement_type_has_a_predicate(self):
        assert set(PREDICATES) == set(RequirementType)

    def test_refer_friends_uses_payload_count(self):
        ctx = _ctx(RequirementType.REFER_FRIENDS, 3)
        assert verify(ReferFriendsVerification(referral_count=3), ctx) is True
        assert verify(ReferFriendsVerification(referral_count=2), ctx) is False

    def test_refer_friends_falls_back_to_aggregate(self):
        payload = ReferFriendsVerification()
        assert verify(payload, _ctx(RequirementType.REFER_FRIENDS, 3, total_referrals=4))
        assert not verify(payload, _ctx(RequirementType.REFER_FRIENDS, 3, total_referrals=1))
        assert not verify(payload, _ctx(RequirementType.REFER_FRIENDS, 3))

    def test_connect_account_needs_timestamp(self):
        ctx = _ctx(RequirementType.CONNECT_ACCOUNT)
        assert verify(ConnectAccountVerification(connected=True, connected_at=NOW), ctx)
        assert not verify(ConnectAccountVerification(connected=True), ctx)
        assert not verify(ConnectAccountVerification(connected=False, connected_at=NOW), ctx)

    def test_share_needs_tag_in_url(self):
        ctx = _ctx(RequirementType.SHARE, share_tag="RewardNFT")
        assert verify(
            ShareVerification(share_url="https://x.com/intent?text=%23rewardnft", shared_at=NOW),
            ctx,
        )
        assert not verify(ShareVerification(share_url="https://x.com/other", shared_at=NOW), ctx)
        assert not verify(ShareVerification(share_url="https://x.com/RewardNFT"), ctx)

    def test_minigame_score_threshold(self):
        ctx = _ctx(RequirementType.PLAY_MINIGAME, 1000)
        assert verify(PlayMinigameVerification(game_score=1000), ctx)
        assert not verify(PlayMinigameVerification(game_score=999), ctx)

    def test_login_streak_payment(self):
        ctx = _ctx(RequirementType.LOGIN_STREAK, 5, min_login_payment=0.01)
        assert verify(
            LoginStreakVerification(payment_signature="sig", payment_amount=0.01, verified=True),
            ctx,
        )
        assert not verify(
            LoginStreakVerification(payment_signature="sig", payment_amount=0.001, verified=True),
            ctx,
        )
        assert not verify(
            LoginStreakVerification(payment_signature="sig", payment_amount=1.0),
            ctx,
        )

    def test_attend_event(self):
        ctx = _ctx(RequirementType.ATTEND_EVENT)
        assert verify(
            parse_verification({
                "requirement_type": "attend_event",
                "attendance_verified": True,
                "joined_at": NOW.isoformat(),
            }),
            ctx,
        )
        assert not verify(
            parse_verification({"requirement_type": "attend_event", "attendance_verified": True}),
            ctx,
        )

    def test_mismatched_requirement_type(self):
        ctx = _ctx(RequirementType.SHARE)
        with pytest.raises(ValidationError, match="does not apply"):
            verify(PlayMinigameVerification(game_score=10), ctx)


class TestAutoVerification:

    def test_refer_friends_payload(self):
        payload = auto_verification(RequirementType.REFER_FRIENDS, 3)
        assert payload.auto is True
        assert payload.referral_count == 3

    def test_non_threshold_type_rejected(self):
        with pytest.raises(ValueError):
            auto_verification(RequirementType.SHARE, 1)
