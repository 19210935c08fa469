"""
tally.services.leaderboard_service — Leaderboards
==================================================

Boards are computed on read from ``users`` joined with ``user_xp``; they
are never stored.  Every user with an aggregate appears, including users
with all-zero counters.  Ordering lives in :mod:`tally.engine.ranking`.

An optional :class:`~tally.engine.cache.LeaderboardCache` keeps the ranked
row snapshot for ``leaderboard_cache_ttl`` seconds (off by default).  Boards,
single-user ranks and stats are all derived from that one snapshot, so they
never disagree with each other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tally.config import TallyConfig
from tally.constants import USER_XP, USERS
from tally.engine.cache import LeaderboardCache
from tally.engine.ranking import Dimension, RankRow, rank_rows, sort_key
from tally.engine.records import LeaderboardEntry, UserAggregate
from tally.errors import ValidationError
from tally.store.base import DocumentStore

logger = logging.getLogger(__name__)

_SNAPSHOT_KEY = "rows"


@dataclass(frozen=True, slots=True)
class LeaderboardStats:
    total_users: int
    total_referrals: int
    total_rewards: float
    top_referrer: LeaderboardEntry | None


def _dimension(value: Dimension | str) -> Dimension:
    try:
        return Dimension(value)
    except ValueError:
        raise ValidationError(
            f"Unknown leaderboard dimension {value!r}; "
            f"expected one of {[d.value for d in Dimension]}"
        ) from None


class LeaderboardRanker:
    """Ranked views over user aggregates.

    Parameters
    ----------
    store : the document store.
    config : supplies the default board size and cache TTL.
    cache : explicit cache; when omitted one is built from
        ``config.leaderboard_cache_ttl`` (0 disables caching).
    """

    def __init__(
        self,
        store: DocumentStore,
        config: TallyConfig | None = None,
        cache: LeaderboardCache | None = None,
    ) -> None:
        self.store = store
        self.config = config or TallyConfig()
        self.cache = cache or LeaderboardCache(ttl=self.config.leaderboard_cache_ttl)

    def _load_rows(self) -> tuple[RankRow, ...]:
        xp_by_user = {
            doc.get("userId"): int(doc.get("totalXP", 0) or 0)
            for doc in self.store.query(USER_XP)
        }
        rows: list[RankRow] = []
        for doc in self.store.query(USERS):
            if not doc.get("userId"):
                continue
            aggregate = UserAggregate.from_document(doc)
            rows.append(RankRow(
                user_id=aggregate.user_id,
                total_referrals=aggregate.total_referrals,
                total_earned=aggregate.total_earned,
                quests_completed=aggregate.quests_completed,
                total_xp=xp_by_user.get(aggregate.user_id, 0),
                display_name=aggregate.name,
            ))
        return tuple(rows)

    def _rows(self) -> tuple[RankRow, ...]:
        return self.cache.get_or_compute(_SNAPSHOT_KEY, self._load_rows)

    def rank(
        self, dimension: Dimension | str, limit: int | None = None
    ) -> list[LeaderboardEntry]:
        """Top *limit* users for *dimension* (default board size from config)."""
        dim = _dimension(dimension)
        if limit is None:
            limit = self.config.leaderboard_default_limit
        return rank_rows(self._rows(), dim, limit, self.config.xp_per_level)

    def user_rank(self, user_id: str, dimension: Dimension | str) -> int:
        """1-based position of *user_id* on the full board, or 0 if unknown.

        Matches the entry's ``rank`` in :meth:`rank` for the same data.
        """
        dim = _dimension(dimension)
        rows = self._rows()
        target = next((row for row in rows if row.user_id == user_id), None)
        if target is None:
            return 0
        key = sort_key(target, dim)
        return 1 + sum(1 for row in rows if sort_key(row, dim) < key)

    def user_standing(self, user_id: str) -> dict[str, int]:
        """Rank on every dimension (all 0 for an unknown user)."""
        return {dim.value: self.user_rank(user_id, dim) for dim in Dimension}

    def stats(self) -> LeaderboardStats:
        rows = self._rows()
        top = rank_rows(rows, Dimension.REFERRALS, 1, self.config.xp_per_level)
        return LeaderboardStats(
            total_users=len(rows),
            total_referrals=sum(row.total_referrals for row in rows),
            total_rewards=sum(row.total_earned for row in rows),
            top_referrer=top[0] if top else None,
        )

    def invalidate(self) -> None:
        self.cache.invalidate()
