"""
tally.database.seed — Default Quest Catalogue
==============================================

Baseline quests every deployment offers.  They are inserted by
``QuestProgressEngine.ensure_quest_catalog_integrity`` under an id derived
from the title, so concurrent seeders converge on one document per quest.

Idempotent — a default whose title already exists is never re-inserted
and existing definitions are never overwritten.
"""

from __future__ import annotations

import re

from tally.engine.records import QuestCategory, QuestDefinition, RequirementType

# ---------------------------------------------------------------------------
# Default quest catalogue
# ---------------------------------------------------------------------------
# title → (requirement_type, required_count, reward_xp, category, difficulty, description)
DEFAULT_QUESTS: dict[str, tuple[RequirementType, int, int, QuestCategory, str, str]] = {
    "Connect Discord": (
        RequirementType.CONNECT_ACCOUNT, 1, 50, QuestCategory.ONE_TIME, "Easy",
        "Link your Discord account to join the community",
    ),
    "Login Streak": (
        RequirementType.LOGIN_STREAK, 5, 100, QuestCategory.DAILY, "Easy",
        "Check in with a small payment five days running",
    ),
    "Share on Twitter": (
        RequirementType.SHARE, 1, 75, QuestCategory.ONE_TIME, "Easy",
        "Share your referral link in a post",
    ),
    "Refer 3 Friends": (
        RequirementType.REFER_FRIENDS, 3, 250, QuestCategory.SPECIAL, "Medium",
        "Invite three friends who mint with your link",
    ),
    "Play Mini-Game": (
        RequirementType.PLAY_MINIGAME, 1000, 150, QuestCategory.WEEKLY, "Hard",
        "Score 1000 points in the mini-game",
    ),
    "Join Community Call": (
        RequirementType.ATTEND_EVENT, 1, 200, QuestCategory.SPECIAL, "Medium",
        "Attend a live community call",
    ),
}


def quest_id_for_title(title: str) -> str:
    """Deterministic quest id: the title lower-cased with runs of
    non-alphanumerics collapsed to ``-`` (``"Refer 3 Friends"`` → ``refer-3-friends``).
    """
    slug = re.sub(r"[^a-z0-9]+", "-", title.strip().lower()).strip("-")
    if not slug:
        raise ValueError(f"Cannot derive a quest id from title {title!r}")
    return slug


def default_quest_definitions() -> list[QuestDefinition]:
    return [
        QuestDefinition(
            id=quest_id_for_title(title),
            title=title,
            requirement_type=req_type,
            required_count=required,
            reward_xp=xp,
            category=category,
            difficulty=difficulty,
            description=description,
        )
        for title, (req_type, required, xp, category, difficulty, description)
        in DEFAULT_QUESTS.items()
    ]
