"""
tally.engine.ranking — Leaderboard Ordering
============================================

Pure ranking over joined aggregate + XP rows.  No store I/O.

Ordering for every dimension is a total order:

    primary metric desc → complementary metric desc → user_id asc

Ranks are 1-based and contiguous; equal metrics still get distinct ranks
(the platform does not share ranks).
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from tally.constants import (
    OVERALL_EARNINGS_WEIGHT,
    OVERALL_QUEST_WEIGHT,
    OVERALL_REFERRAL_WEIGHT,
    XP_PER_LEVEL,
    level_for_xp,
)
from tally.engine.records import LeaderboardEntry

__all__ = [
    "Dimension",
    "RankRow",
    "primary_score",
    "rank_rows",
    "sort_key",
]


class Dimension(enum.StrEnum):
    REFERRALS = "referrals"
    EARNINGS = "earnings"
    QUESTS = "quests"
    XP = "xp"
    OVERALL = "overall"


@dataclass(frozen=True, slots=True)
class RankRow:
    """One user's rankable numbers (aggregate joined with XP record)."""

    user_id: str
    total_referrals: int = 0
    total_earned: float = 0.0
    quests_completed: int = 0
    total_xp: int = 0
    display_name: str = ""


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
def _overall(row: RankRow) -> float:
    return (
        row.total_referrals * OVERALL_REFERRAL_WEIGHT
        + row.total_earned * OVERALL_EARNINGS_WEIGHT
        + row.quests_completed * OVERALL_QUEST_WEIGHT
    )


PRIMARY: dict[Dimension, Callable[[RankRow], float]] = {
    Dimension.REFERRALS: lambda r: r.total_referrals,
    Dimension.EARNINGS: lambda r: r.total_earned,
    Dimension.QUESTS: lambda r: r.quests_completed,
    Dimension.XP: lambda r: r.total_xp,
    Dimension.OVERALL: _overall,
}

# Complementary tie-break metric (referral board ties on XP and vice versa)
SECONDARY: dict[Dimension, Callable[[RankRow], float]] = {
    Dimension.REFERRALS: lambda r: r.total_xp,
    Dimension.EARNINGS: lambda r: r.total_referrals,
    Dimension.QUESTS: lambda r: r.total_xp,
    Dimension.XP: lambda r: r.total_referrals,
    Dimension.OVERALL: lambda r: r.total_xp,
}


def primary_score(row: RankRow, dimension: Dimension) -> float:
    return PRIMARY[dimension](row)


def sort_key(row: RankRow, dimension: Dimension) -> tuple[float, float, str]:
    """Ascending sort key implementing desc/desc/asc ordering."""
    return (-PRIMARY[dimension](row), -SECONDARY[dimension](row), row.user_id)


def rank_rows(
    rows: Iterable[RankRow],
    dimension: Dimension,
    limit: int | None = None,
    xp_per_level: int = XP_PER_LEVEL,
) -> list[LeaderboardEntry]:
    """Sort *rows* for *dimension* and return the top *limit* entries."""
    ordered = sorted(rows, key=lambda r: sort_key(r, dimension))
    if limit is not None:
        ordered = ordered[: max(limit, 0)]
    return [
        LeaderboardEntry(
            rank=position,
            user_id=row.user_id,
            score=primary_score(row, dimension),
            total_earned=row.total_earned,
            total_referrals=row.total_referrals,
            quests_completed=row.quests_completed,
            total_xp=row.total_xp,
            level=level_for_xp(row.total_xp, xp_per_level),
            display_name=row.display_name,
        )
        for position, row in enumerate(ordered, start=1)
    ]
