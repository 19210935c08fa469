"""
tally.services.xp_service — XP Records
=======================================

``user_xp/{userId}`` holds total XP plus the derived level fields.  The
level fields are always written in the same compare-and-set as
``totalXP``, so a reader never sees a level that disagrees with the total.

Quest awards pass an ``award_id``; the ids already applied are kept in
``awardedQuestIds`` inside the same compare-and-set, so re-applying an
award is a no-op.
"""

from __future__ import annotations

import logging

from tally.constants import USER_XP, XP_PER_LEVEL
from tally.engine.records import XPRecord
from tally.errors import TransientStoreError, ValidationError
from tally.store.base import DocumentStore

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 20
AWARDED_FIELD = "awardedQuestIds"


def get_xp_record(
    store: DocumentStore, user_id: str, xp_per_level: int = XP_PER_LEVEL
) -> XPRecord:
    """Return the user's XP record (an all-zero record if none exists)."""
    doc = store.get(USER_XP, user_id)
    if doc is None:
        return XPRecord(user_id=user_id, xp_per_level=xp_per_level)
    doc.setdefault("userId", user_id)
    return XPRecord.from_document(doc, xp_per_level)


def add_xp(
    store: DocumentStore,
    user_id: str,
    amount: int,
    quests_completed_delta: int = 0,
    xp_per_level: int = XP_PER_LEVEL,
    award_id: str | None = None,
) -> XPRecord:
    """Add *amount* XP with a compare-and-set loop on ``totalXP``.

    Level, current-level XP and the quest counter are written together
    with the new total.  When *award_id* was already applied the record is
    returned unchanged.

    Raises
    ------
    ValidationError
        If *amount* is negative.
    TransientStoreError
        If the compare-and-set keeps losing to concurrent writers.
    """
    if amount < 0:
        raise ValidationError(f"XP amount must be >= 0, got {amount}")

    for _ in range(MAX_CAS_ATTEMPTS):
        doc = store.get(USER_XP, user_id)
        if doc is None:
            record = XPRecord(
                user_id=user_id,
                total_xp=amount,
                quests_completed=quests_completed_delta,
                xp_per_level=xp_per_level,
            )
            fields = record.to_document()
            if award_id is not None:
                fields[AWARDED_FIELD] = [award_id]
            if store.create(USER_XP, user_id, fields):
                return record
            continue

        doc.setdefault("userId", user_id)
        current = XPRecord.from_document(doc, xp_per_level)
        awarded = list(doc.get(AWARDED_FIELD) or [])
        if award_id is not None and award_id in awarded:
            logger.debug("XP award %s already applied to %s", award_id, user_id)
            return current

        record = XPRecord(
            user_id=user_id,
            total_xp=current.total_xp + amount,
            quests_completed=current.quests_completed + quests_completed_delta,
            xp_per_level=xp_per_level,
        )
        fields = record.to_document()
        if award_id is not None:
            fields[AWARDED_FIELD] = awarded + [award_id]
        if store.update_if(
            USER_XP,
            user_id,
            {
                "totalXP": doc.get("totalXP"),
                "questsCompleted": doc.get("questsCompleted"),
                AWARDED_FIELD: doc.get(AWARDED_FIELD),
            },
            fields,
        ):
            if record.level > current.level:
                logger.info("User %s reached level %d", user_id, record.level)
            return record

    raise TransientStoreError(f"XP update for {user_id} kept conflicting")
