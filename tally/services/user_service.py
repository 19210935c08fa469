"""
tally.services.user_service — User Aggregates & Referral Codes
===============================================================

Shared helpers for the ``users`` collection.  Every other service reads
aggregates through :func:`get_aggregate`; counters themselves are only
moved by atomic increments (tracker), the once-per-completion
compare-and-set of :func:`count_completed_quest` (quest engine), or
overwrites (reconciler).

Referral codes are unique platform-wide.  Uniqueness is enforced by a
create-if-absent write on ``referral_codes/{code}``; a collision simply
draws a new code.
"""

from __future__ import annotations

import logging
import secrets
import string

from tally.constants import REFERRAL_CODES, USERS
from tally.engine.records import UserAggregate
from tally.errors import NotFoundError, TransientStoreError, ValidationError
from tally.store.base import SERVER_TIMESTAMP, DocumentStore

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8
_MAX_CODE_ATTEMPTS = 10
_MAX_CAS_ATTEMPTS = 20

# Completion ids already counted in ``questsCompleted``.
COMPLETED_QUESTS_FIELD = "completedQuestIds"


def generate_referral_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def get_aggregate(store: DocumentStore, user_id: str) -> UserAggregate | None:
    doc = store.get(USERS, user_id)
    if doc is None:
        return None
    doc.setdefault("userId", user_id)
    return UserAggregate.from_document(doc)


def _claim_code(store: DocumentStore, user_id: str) -> str:
    for _ in range(_MAX_CODE_ATTEMPTS):
        code = generate_referral_code()
        if store.create(
            REFERRAL_CODES, code, {"userId": user_id, "createdAt": SERVER_TIMESTAMP}
        ):
            return code
        logger.debug("Referral code collision on %s, retrying", code)
    raise RuntimeError(f"Could not allocate a unique referral code for {user_id}")


def ensure_user(
    store: DocumentStore, user_id: str, display_name: str | None = None
) -> UserAggregate:
    """Return the user's aggregate, creating it (with a referral code) if absent.

    A document first materialised by a counter increment gets a code
    assigned here.  Safe to call concurrently: one caller's code wins and
    codes claimed by losing callers are released.
    """
    if not user_id:
        raise ValidationError("user_id must be non-empty")

    existing = get_aggregate(store, user_id)
    if existing is None or not existing.referral_code:
        code = _claim_code(store, user_id)
        created = existing is None and store.create(USERS, user_id, {
            "userId": user_id,
            "referralCode": code,
            "totalReferrals": 0,
            "totalEarned": 0,
            "nftsMinted": 0,
            "questsCompleted": 0,
            "referredBy": None,
            "displayName": display_name,
            "createdAt": SERVER_TIMESTAMP,
            "lastActive": SERVER_TIMESTAMP,
        })
        if created:
            logger.info("Created user %s with referral code %s", user_id, code)
        elif not store.update_if(
            USERS, user_id, {"referralCode": None}, {"userId": user_id, "referralCode": code}
        ):
            # Another caller assigned a code first.
            store.delete(REFERRAL_CODES, code)

        existing = get_aggregate(store, user_id)
        if existing is None:
            raise NotFoundError(f"User {user_id} vanished during creation")

    if display_name and existing.display_name != display_name:
        store.update(USERS, user_id, {"displayName": display_name})
        existing.display_name = display_name
    return existing


def resolve_referral_code(store: DocumentStore, code: str) -> str | None:
    """Return the owner of *code*, or None."""
    doc = store.get(REFERRAL_CODES, code.strip().upper())
    return doc.get("userId") if doc else None


def count_completed_quest(store: DocumentStore, user_id: str, completion_id: str) -> bool:
    """Add one to the user's ``questsCompleted`` for *completion_id*, once.

    Counted ids live in ``completedQuestIds`` and are written in the same
    compare-and-set as the counter.  Returns False if already counted.
    """
    for _ in range(_MAX_CAS_ATTEMPTS):
        doc = store.get(USERS, user_id)
        if doc is None:
            raise NotFoundError(f"User {user_id} not found")
        counted = list(doc.get(COMPLETED_QUESTS_FIELD) or [])
        if completion_id in counted:
            return False
        if store.update_if(
            USERS, user_id,
            {
                "questsCompleted": doc.get("questsCompleted"),
                COMPLETED_QUESTS_FIELD: doc.get(COMPLETED_QUESTS_FIELD),
            },
            {
                "questsCompleted": int(doc.get("questsCompleted") or 0) + 1,
                COMPLETED_QUESTS_FIELD: counted + [completion_id],
            },
        ):
            return True
    raise TransientStoreError(f"Quest counter update for {user_id} kept conflicting")


def touch_last_active(store: DocumentStore, user_id: str) -> None:
    store.update(USERS, user_id, {"lastActive": SERVER_TIMESTAMP})


def list_user_ids(store: DocumentStore, limit: int | None = None) -> list[str]:
    """User ids in ascending order."""
    docs = store.query(USERS, order_by="userId", limit=limit)
    return [doc["userId"] for doc in docs if doc.get("userId")]
