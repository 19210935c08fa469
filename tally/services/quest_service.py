"""
tally.services.quest_service — Quest Catalogue & Progress Engine
=================================================================

Per-user quest state machine::

    not_started → in_progress → completed → claimed

``not_started`` is never stored; it is the view of a quest without a
``user_quests`` document.  ``claimed`` is terminal.

Completion is gated by a create-if-absent ``quest_completions/{user|quest}``
record.  Only the caller that creates it awards XP and bumps the user's
``questsCompleted`` counter, then flags the record ``awarded``; progress is
written as completed + claimed only after that, so nobody observes a
completed quest without its XP.  A winner that dies before flagging the
award loses it to the first caller after :data:`AWARD_LEASE`.  The XP and
counter writes record the completion id alongside the value they change,
so a takeover never applies either of them twice.

Catalogue integrity (duplicate titles, missing defaults) relies on
create-if-absent with title-derived ids, so concurrent runs converge.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from datetime import timedelta
from typing import Any

from tally.config import TallyConfig
from tally.constants import QUEST_COMPLETIONS, QUESTS, USER_QUESTS, pair_key
from tally.database.seed import default_quest_definitions, quest_id_for_title
from tally.engine.records import (
    QuestCategory,
    QuestDefinition,
    QuestProgress,
    QuestStatus,
    RequirementType,
    parse_timestamp,
)
from tally.engine.verification import (
    THRESHOLD_FIELDS,
    VerificationContext,
    auto_verification,
    parse_verification,
    verify,
)
from tally.errors import (
    ConflictError,
    NotFoundError,
    Result,
    TransientStoreError,
    ValidationError,
    VerificationFailedError,
)
from tally.services.user_service import count_completed_quest, ensure_user, get_aggregate
from tally.services.xp_service import add_xp
from tally.store.base import DOC_ID, SERVER_TIMESTAMP, DocumentStore, where, with_doc_id

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 20

# A completion winner that has not applied its award within this window is
# presumed dead; the next caller re-applies it.
AWARD_LEASE = timedelta(seconds=60)

# Requirement types whose predicate checks the whole threshold at once;
# a passing verification satisfies the quest outright.
WHOLE_REQUIREMENT_TYPES: frozenset[RequirementType] = frozenset(
    {RequirementType.REFER_FRIENDS, RequirementType.PLAY_MINIGAME}
)


def _title_key(title: str) -> str:
    return " ".join(title.split()).casefold()


def _created_order(doc: dict) -> tuple[bool, str, str]:
    created = doc.get("createdAt")
    return (created is None, created or "", doc[DOC_ID])


class QuestProgressEngine:
    """Quest catalogue plus per-user progress.

    Parameters
    ----------
    store : the document store.
    config : platform configuration (XP curve, verification thresholds).
    default_quests : catalogue the integrity step guarantees; defaults to
        :func:`tally.database.seed.default_quest_definitions`.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: TallyConfig | None = None,
        default_quests: Sequence[QuestDefinition] | None = None,
    ) -> None:
        self.store = store
        self.config = config or TallyConfig()
        self.default_quests = (
            list(default_quests) if default_quests is not None
            else default_quest_definitions()
        )

    # -------------------------------------------------------------------
    # Catalogue
    # -------------------------------------------------------------------
    def get_quest(self, quest_id: str) -> QuestDefinition | None:
        doc = self.store.get(QUESTS, quest_id)
        if doc is None:
            return None
        return QuestDefinition.from_document(with_doc_id(quest_id, doc))

    def _active_docs(self) -> list[dict]:
        docs = self.store.query(QUESTS, [where("isActive", "==", True)])
        return sorted(docs, key=_created_order)

    def active_quests(self) -> list[QuestDefinition]:
        """Active definitions, oldest first, after the integrity step."""
        self.ensure_quest_catalog_integrity()
        return [QuestDefinition.from_document(doc) for doc in self._active_docs()]

    def ensure_quest_catalog_integrity(self) -> dict:
        """Remove duplicate active titles, then insert missing defaults.

        Among active quests sharing a title the earliest (``createdAt``,
        then id) is kept.  Defaults are matched by title against every
        definition, active or not, so a deactivated default stays retired.

        Returns ``{"removed": [ids], "inserted": [ids], "checked": N}``.
        """
        docs = self.store.query(QUESTS)
        groups: dict[str, list[dict]] = defaultdict(list)
        for doc in docs:
            if doc.get("isActive", True):
                groups[_title_key(doc.get("title", ""))].append(doc)

        removed: list[str] = []
        for title, group in groups.items():
            if len(group) < 2:
                continue
            keeper, *duplicates = sorted(group, key=_created_order)
            for dup in duplicates:
                if self.store.delete(QUESTS, dup[DOC_ID]):
                    removed.append(dup[DOC_ID])
            logger.warning(
                "Quest catalogue: kept %s for %r, removed %d duplicate(s)",
                keeper[DOC_ID], title, len(duplicates),
            )

        known_titles = {_title_key(doc.get("title", "")) for doc in docs}
        inserted: list[str] = []
        for quest in self.default_quests:
            if _title_key(quest.title) in known_titles:
                continue
            fields = quest.to_document()
            fields["createdAt"] = SERVER_TIMESTAMP
            if self.store.create(QUESTS, quest.id, fields):
                inserted.append(quest.id)

        if inserted:
            logger.info("Quest catalogue: inserted defaults %s", inserted)
        return {"removed": removed, "inserted": inserted, "checked": len(docs)}

    def create_quest(
        self,
        title: str,
        requirement_type: RequirementType | str,
        required_count: int,
        reward_xp: int = 0,
        description: str = "",
        category: QuestCategory | str = QuestCategory.ONE_TIME,
        difficulty: str = "Easy",
        quest_id: str | None = None,
    ) -> Result[QuestDefinition]:
        """Add a quest to the board.

        Fails with :class:`ConflictError` if an active quest already has the
        title or the id is taken.
        """
        if not title or not title.strip():
            return Result.failure(ValidationError("Quest title must be non-empty"))
        try:
            quest = QuestDefinition(
                id=quest_id or quest_id_for_title(title),
                title=title.strip(),
                requirement_type=RequirementType(requirement_type),
                required_count=required_count,
                reward_xp=reward_xp,
                description=description,
                category=QuestCategory(category),
                difficulty=difficulty,
            )
        except ValueError as exc:
            return Result.failure(ValidationError(str(exc)))

        key = _title_key(quest.title)
        if any(_title_key(doc.get("title", "")) == key for doc in self._active_docs()):
            return Result.failure(
                ConflictError(f"An active quest titled {quest.title!r} already exists")
            )

        fields = quest.to_document()
        fields["createdAt"] = SERVER_TIMESTAMP
        if not self.store.create(QUESTS, quest.id, fields):
            return Result.failure(ConflictError(f"Quest id {quest.id!r} already exists"))

        logger.info("Created quest %s (%s)", quest.id, quest.title)
        return Result.success(self.get_quest(quest.id))

    def set_quest_active(self, quest_id: str, is_active: bool) -> Result[QuestDefinition]:
        """Toggle ``isActive``, the only mutable field of a definition."""
        quest = self.get_quest(quest_id)
        if quest is None:
            return Result.failure(NotFoundError(f"Quest {quest_id} not found"))
        if is_active and not quest.is_active:
            key = _title_key(quest.title)
            for doc in self._active_docs():
                if _title_key(doc.get("title", "")) == key:
                    return Result.failure(ConflictError(
                        f"Quest {doc[DOC_ID]} is already active with title {quest.title!r}"
                    ))
        self.store.update(QUESTS, quest_id, {"isActive": bool(is_active)})
        quest.is_active = bool(is_active)
        return Result.success(quest)

    # -------------------------------------------------------------------
    # Progress reads
    # -------------------------------------------------------------------
    def _load_progress(self, user_id: str, quest_id: str) -> QuestProgress | None:
        doc = self.store.get(USER_QUESTS, pair_key(user_id, quest_id))
        return QuestProgress.from_document(doc) if doc is not None else None

    def get_progress(self, user_id: str, quest_id: str) -> QuestProgress | None:
        """Stored progress, a ``not_started`` view, or None for an unknown quest."""
        progress = self._load_progress(user_id, quest_id)
        if progress is not None:
            return progress
        quest = self.get_quest(quest_id)
        return QuestProgress.not_started(user_id, quest) if quest else None

    def user_progress(self, user_id: str) -> list[QuestProgress]:
        """Progress on every active quest, in board order."""
        stored = {
            doc["questId"]: QuestProgress.from_document(doc)
            for doc in self.store.query(USER_QUESTS, [where("userId", "==", user_id)])
        }
        return [
            stored.get(quest.id) or QuestProgress.not_started(user_id, quest)
            for quest in self.active_quests()
        ]

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    def start_quest(self, user_id: str, quest_id: str) -> Result[QuestProgress]:
        """``not_started → in_progress``; returns existing progress unchanged."""
        existing = self._load_progress(user_id, quest_id)
        if existing is not None:
            return Result.success(existing)

        quest = self.get_quest(quest_id)
        if quest is None:
            return Result.failure(NotFoundError(f"Quest {quest_id} not found"))
        if not quest.is_active:
            return Result.failure(ValidationError(f"Quest {quest_id} is not active"))

        progress_id = pair_key(user_id, quest_id)
        self.store.create(USER_QUESTS, progress_id, {
            "id": progress_id,
            "userId": user_id,
            "questId": quest_id,
            "status": QuestStatus.IN_PROGRESS.value,
            "progress": 0,
            "maxProgress": quest.required_count,
            "rewardXP": quest.reward_xp,
            "startedAt": SERVER_TIMESTAMP,
            "completedAt": None,
            "claimedAt": None,
        })
        return Result.success(self._load_progress(user_id, quest_id))

    def update_progress(
        self,
        user_id: str,
        quest_id: str,
        increment: int = 1,
        verification: Any = None,
    ) -> Result[QuestProgress]:
        """Verify *verification* and advance progress by *increment*.

        Missing progress is started first.  Progress is capped at
        ``maxProgress``; reaching it completes and claims the quest.  A
        quest already completed is returned unchanged.
        """
        result, _ = self._update_progress(user_id, quest_id, increment, verification)
        return result

    def _update_progress(
        self, user_id: str, quest_id: str, increment: int, verification: Any
    ) -> tuple[Result[QuestProgress], bool]:
        if increment < 0:
            return Result.failure(
                ValidationError(f"Progress increment must be >= 0, got {increment}")
            ), False
        if verification is None:
            return Result.failure(ValidationError("A verification payload is required")), False

        quest = self.get_quest(quest_id)
        if quest is None:
            return Result.failure(NotFoundError(f"Quest {quest_id} not found")), False

        try:
            payload = parse_verification(verification)
        except ValidationError as exc:
            return Result.failure(exc), False

        started = self.start_quest(user_id, quest_id)
        if not started.ok:
            return started, False
        if started.value.status.is_done:
            progress, _ = self._complete(quest, started.value)
            return Result.success(progress), False

        total_referrals = None
        if quest.requirement_type in THRESHOLD_FIELDS:
            aggregate = get_aggregate(self.store, user_id)
            total_referrals = aggregate.total_referrals if aggregate else 0
        ctx = VerificationContext(
            quest=quest,
            total_referrals=total_referrals,
            share_tag=self.config.share_tag,
            min_login_payment=self.config.min_login_payment,
        )
        try:
            passed = verify(payload, ctx)
        except ValidationError as exc:
            return Result.failure(exc), False
        if not passed:
            return Result.failure(VerificationFailedError(
                f"Verification failed for quest {quest.title!r}"
            )), False

        if quest.requirement_type in WHOLE_REQUIREMENT_TYPES:
            increment = quest.required_count

        progress_id = pair_key(user_id, quest_id)
        for _ in range(MAX_CAS_ATTEMPTS):
            current = self._load_progress(user_id, quest_id)
            if current.status.is_done:
                progress, _ = self._complete(quest, current)
                return Result.success(progress), False

            new_value = min(current.progress + increment, current.max_progress)
            if new_value != current.progress and not self.store.update_if(
                USER_QUESTS, progress_id,
                {"progress": current.progress, "status": current.status.value},
                {"progress": new_value},
            ):
                continue

            current.progress = new_value
            if new_value >= current.max_progress:
                progress, won = self._complete(quest, current)
                return Result.success(progress), won
            return Result.success(current), False

        raise TransientStoreError(f"Progress update for {progress_id} kept conflicting")

    def _complete(
        self, quest: QuestDefinition, progress: QuestProgress
    ) -> tuple[QuestProgress, bool]:
        """Award the quest exactly once, then mark progress completed + claimed.

        Callers that lose the completion race leave progress untouched until
        the winner has flagged the award as applied.

        Returns the final progress and whether this call awarded it.
        """
        record_id = pair_key(progress.user_id, quest.id)
        won = self.store.create(QUEST_COMPLETIONS, record_id, {
            "id": record_id,
            "userId": progress.user_id,
            "questId": quest.id,
            "rewardXP": quest.reward_xp,
            "awarded": False,
            "completedAt": SERVER_TIMESTAMP,
            "leaseAt": SERVER_TIMESTAMP,
        })
        if not won:
            won = self._take_over_stale_award(record_id)
        if won:
            # Both steps are keyed by record_id, so a takeover after a
            # partial award applies only what is missing.
            ensure_user(self.store, progress.user_id)
            add_xp(
                self.store, progress.user_id, quest.reward_xp,
                quests_completed_delta=1, xp_per_level=self.config.xp_per_level,
                award_id=record_id,
            )
            count_completed_quest(self.store, progress.user_id, record_id)
            self.store.update(QUEST_COMPLETIONS, record_id, {"awarded": True})
            logger.info(
                "User %s completed quest %s (+%d XP)",
                progress.user_id, quest.id, quest.reward_xp,
            )

        completion = self.store.get(QUEST_COMPLETIONS, record_id) or {}
        if progress.status is not QuestStatus.CLAIMED and completion.get("awarded", True):
            completed_at = completion.get("completedAt") or SERVER_TIMESTAMP
            self.store.update(USER_QUESTS, record_id, {
                "status": QuestStatus.CLAIMED.value,
                "progress": progress.max_progress,
                "completedAt": completed_at,
                "claimedAt": completed_at,
            })
        return self._load_progress(progress.user_id, quest.id), won

    def _take_over_stale_award(self, record_id: str) -> bool:
        """Claim an award whose winner never flagged it within the lease."""
        record = self.store.get(QUEST_COMPLETIONS, record_id)
        if record is None or record.get("awarded", True):
            return False
        lease_at = parse_timestamp(record.get("leaseAt"))
        if lease_at is not None and self.store.now() - lease_at < AWARD_LEASE:
            return False
        taken = self.store.update_if(
            QUEST_COMPLETIONS, record_id,
            {"awarded": False, "leaseAt": record.get("leaseAt")},
            {"leaseAt": SERVER_TIMESTAMP},
        )
        if taken:
            logger.warning("Taking over stale quest award %s", record_id)
        return taken

    # -------------------------------------------------------------------
    # Threshold auto-completion
    # -------------------------------------------------------------------
    def check_threshold_quests(self, user_id: str) -> list[str]:
        """Complete every active threshold quest the user's counters satisfy.

        Idempotent.  Returns the ids of quests completed by this call.
        """
        aggregate = get_aggregate(self.store, user_id)
        if aggregate is None:
            return []

        completed: list[str] = []
        for quest in self.active_quests():
            field = THRESHOLD_FIELDS.get(quest.requirement_type)
            if field is None:
                continue
            value = getattr(aggregate, field)
            if value < quest.required_count:
                continue
            existing = self._load_progress(user_id, quest.id)
            if existing is not None and existing.status.is_done:
                continue

            result, won = self._update_progress(
                user_id, quest.id, quest.required_count,
                auto_verification(quest.requirement_type, value),
            )
            if not result.ok:
                logger.warning(
                    "Threshold quest %s for %s not completed: %s",
                    quest.id, user_id, result.error,
                )
            elif won:
                completed.append(quest.id)
        return completed
