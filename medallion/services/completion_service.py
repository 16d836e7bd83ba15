"""
medallion.services.completion_service — Completion Coordinator
===============================================================

Writes evaluation results into ``user_achievements`` and pays rewards.

Both writes are single ``INSERT … ON CONFLICT (user_id, achievement_id)
DO UPDATE … WHERE …`` statements; there is no read-then-write window:

* **completion** — the update only applies while ``is_completed`` is
  false.  ``RETURNING`` yields a row only for the caller that actually
  flipped it, and only that caller dispatches rewards.  Duplicate or
  concurrent evaluations converge to one completion and one payout.
* **partial progress** — the update only applies while incomplete and
  when the new percentage is not lower than the stored one.

Rewards are dispatched after commit, one channel at a time.  A failing
channel is logged and skipped; it never rolls back the completion.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, and_, select
from sqlalchemy.dialects import postgresql, sqlite

from medallion.database.engine import get_session
from medallion.database.models import UserAchievement
from medallion.engine.cache import AchievementRule
from medallion.engine.progress import Progress
from medallion.services.rewards import REWARD_SOURCE, LoggingRewardGateway, RewardGateway

logger = logging.getLogger(__name__)

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

_CONFLICT_KEYS = ["user_id", "achievement_id"]


class CompletionOutcome(enum.StrEnum):
    COMPLETED = "completed"                  # this call completed it
    ALREADY_COMPLETED = "already_completed"  # completed earlier; nothing written
    PROGRESSED = "progressed"                # partial progress stored
    UNCHANGED = "unchanged"                  # stored progress was higher or row complete
    NO_PROGRESS = "no_progress"              # nothing to record yet


class CompletionCoordinator:
    """Idempotent progress / completion writer with isolated reward dispatch.

    Usage::

        coordinator = CompletionCoordinator(engine, LoggingRewardGateway())
        outcome = coordinator.apply("user-1", rule, progress, event_id=17)
    """

    def __init__(self, engine: Engine, gateway: RewardGateway | None = None) -> None:
        self._engine = engine
        self._gateway = gateway or LoggingRewardGateway()
        try:
            self._insert = _INSERTS[engine.dialect.name]
        except KeyError:
            raise RuntimeError(
                f"Unsupported database dialect for upserts: {engine.dialect.name}"
            ) from None

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def completed_ids(self, user_id: str, achievement_ids: Iterable[int]) -> set[int]:
        """Subset of *achievement_ids* the user has already completed."""
        ids = list(achievement_ids)
        if not ids:
            return set()
        with get_session(self._engine) as session:
            return set(session.scalars(
                select(UserAchievement.achievement_id).where(
                    UserAchievement.user_id == user_id,
                    UserAchievement.achievement_id.in_(ids),
                    UserAchievement.is_completed.is_(True),
                )
            ).all())

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------
    def apply(
        self,
        user_id: str,
        rule: AchievementRule,
        progress: Progress,
        *,
        event_id: int | None = None,
    ) -> CompletionOutcome:
        """Persist *progress* and, on first completion, pay the rewards."""
        if progress.is_completed:
            now = datetime.now(UTC)
            data = {
                "completed_at": now.isoformat(),
                "final_progress": progress.snapshot(),
                "event_id": event_id,
            }
            if not self.complete(user_id, rule, progress.snapshot(), data, completed_at=now):
                return CompletionOutcome.ALREADY_COMPLETED
            return CompletionOutcome.COMPLETED

        if progress.current <= 0:
            return CompletionOutcome.NO_PROGRESS
        if self.record_progress(user_id, rule.id, progress):
            return CompletionOutcome.PROGRESSED
        return CompletionOutcome.UNCHANGED

    def record_progress(self, user_id: str, achievement_id: int, progress: Progress) -> bool:
        """Upsert partial progress.  Returns whether a row was written."""
        now = datetime.now(UTC)
        stmt = self._insert(UserAchievement).values(
            user_id=user_id,
            achievement_id=achievement_id,
            current_progress=progress.snapshot(),
            progress_percentage=progress.percentage,
            is_completed=False,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=_CONFLICT_KEYS,
            set_={
                "current_progress": stmt.excluded.current_progress,
                "progress_percentage": stmt.excluded.progress_percentage,
                "updated_at": stmt.excluded.updated_at,
            },
            where=and_(
                UserAchievement.is_completed.is_(False),
                UserAchievement.progress_percentage <= stmt.excluded.progress_percentage,
            ),
        ).returning(UserAchievement.user_id)

        with get_session(self._engine) as session:
            written = session.execute(stmt).first() is not None
        if written:
            logger.debug(
                "Progress %s → achievement %d: %.1f%%",
                user_id, achievement_id, progress.percentage,
            )
        return written

    def complete(
        self,
        user_id: str,
        rule: AchievementRule,
        current_progress: dict[str, Any],
        completion_data: dict[str, Any],
        *,
        completed_at: datetime | None = None,
        grant_rewards: bool = True,
    ) -> bool:
        """Mark (user, achievement) completed if it is not already.

        Returns ``True`` only for the call that performed the completion;
        rewards are dispatched for that call alone.
        """
        now = completed_at or datetime.now(UTC)
        stmt = self._insert(UserAchievement).values(
            user_id=user_id,
            achievement_id=rule.id,
            current_progress=current_progress,
            progress_percentage=100.0,
            is_completed=True,
            completed_at=now,
            completion_data=completion_data,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=_CONFLICT_KEYS,
            set_={
                "current_progress": stmt.excluded.current_progress,
                "progress_percentage": 100.0,
                "is_completed": True,
                "completed_at": stmt.excluded.completed_at,
                "completion_data": stmt.excluded.completion_data,
                "updated_at": stmt.excluded.updated_at,
            },
            where=UserAchievement.is_completed.is_(False),
        ).returning(UserAchievement.user_id)

        with get_session(self._engine) as session:
            won = session.execute(stmt).first() is not None

        if not won:
            logger.debug("Achievement %s already completed by %s", rule.key, user_id)
            return False

        logger.info("Achievement completed: %s (id=%d) by %s", rule.key, rule.id, user_id)
        if grant_rewards:
            self.dispatch_rewards(user_id, rule)
        return True

    # -------------------------------------------------------------------
    # Rewards
    # -------------------------------------------------------------------
    def dispatch_rewards(self, user_id: str, rule: AchievementRule) -> dict[str, bool]:
        """Credit each non-zero reward channel independently.

        Returns ``{channel: delivered}`` for the channels attempted.
        """
        reason = f"Achievement unlocked: {rule.name}"
        calls = (
            ("xp", rule.reward_xp,
             lambda: self._gateway.credit_xp(user_id, rule.reward_xp, reason)),
            ("token", rule.reward_tokens,
             lambda: self._gateway.credit_token(
                 user_id, rule.reward_tokens,
                 source=REWARD_SOURCE, reason=reason, achievement_id=rule.id,
             )),
            ("reputation", rule.reward_reputation,
             lambda: self._gateway.credit_reputation(user_id, rule.reward_reputation, reason)),
        )

        delivered: dict[str, bool] = {}
        for channel, amount, call in calls:
            if amount <= 0:
                continue
            try:
                call()
                delivered[channel] = True
            except Exception:
                delivered[channel] = False
                logger.exception(
                    "Reward dispatch failed: channel=%s user=%s achievement=%s amount=%d",
                    channel, user_id, rule.key, amount,
                    extra={"task": "reward_dispatch"},
                )
        return delivered
