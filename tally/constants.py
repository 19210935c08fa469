"""
tally.constants — Shared Constants & Helpers
=============================================

Single source of truth for collection names and the leveling formula.
Import from here instead of duplicating in services and tests.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------
USERS = "users"
REFERRALS = "referrals"
REFERRAL_CLAIMS = "referral_claims"    # referredId → referrer (referred-once index)
REFERRAL_CODES = "referral_codes"      # code → owner (uniqueness index)
QUESTS = "quests"
USER_QUESTS = "user_quests"
QUEST_COMPLETIONS = "quest_completions"
USER_XP = "user_xp"

# ---------------------------------------------------------------------------
# Leveling formula — THE single canonical implementation
# ---------------------------------------------------------------------------
XP_PER_LEVEL = 500


def level_for_xp(total_xp: int, xp_per_level: int = XP_PER_LEVEL) -> int:
    """Level reached with *total_xp*: ``floor(total_xp / xp_per_level) + 1``."""
    return max(total_xp, 0) // xp_per_level + 1


def current_level_xp(total_xp: int, xp_per_level: int = XP_PER_LEVEL) -> int:
    """XP earned inside the current level: ``total_xp mod xp_per_level``."""
    return max(total_xp, 0) % xp_per_level


# ---------------------------------------------------------------------------
# Leaderboard weighting for the "overall" dimension
# ---------------------------------------------------------------------------
OVERALL_REFERRAL_WEIGHT = 10
OVERALL_EARNINGS_WEIGHT = 1
OVERALL_QUEST_WEIGHT = 2


def pair_key(left: str, right: str) -> str:
    """Composite document id for a (left, right) pair, e.g. ``user|quest``."""
    return f"{left}|{right}"
