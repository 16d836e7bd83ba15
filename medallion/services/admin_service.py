"""
medallion.services.admin_service — Achievement Catalog Admin
=============================================================

Every catalog mutation follows the same pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Validate and apply the change
  4. Write admin_log with before/after JSONB
  5. Commit
  6. Invalidate in-process achievement caches

Validation and lookup failures propagate to the caller as
:class:`~medallion.exceptions.CatalogValidationError` /
:class:`~medallion.exceptions.AchievementNotFoundError`.
"""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medallion.constants import TIER_ORDER, generate_key
from medallion.database.models import (
    Achievement,
    AchievementCategory,
    AchievementEvent,
    AchievementTier,
    AdminActionType,
    AdminLog,
    UserAchievement,
)
from medallion.engine.cache import AchievementRule, invalidate_all_caches
from medallion.engine.triggers import dump_trigger, parse_trigger
from medallion.exceptions import AchievementNotFoundError, CatalogValidationError

logger = logging.getLogger(__name__)

TABLE = "achievements"

# Never changed after creation.
FROZEN_KEYS: tuple[str, ...] = ("id", "key", "created_at", "updated_at")

# Fields a bulk update may touch.  Trigger changes need per-row validation.
BULK_FIELDS: frozenset[str] = frozenset({
    "category", "tier", "is_active", "is_secret", "is_retroactive",
    "reward_xp", "reward_tokens", "reward_reputation",
})

REWARD_FIELDS: tuple[str, ...] = ("reward_xp", "reward_tokens", "reward_reputation")
FLAG_FIELDS: tuple[str, ...] = ("is_active", "is_secret", "is_retroactive")

MAX_PAGE_SIZE = 200


# ---------------------------------------------------------------------------
# Generic audit helpers
# ---------------------------------------------------------------------------

def _row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def _log_admin_action(
    session: Session,
    *,
    actor_id: str,
    action_type: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    target_table: str = TABLE,
    ip_address: str | None = None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=str(actor_id),
        action_type=action_type,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        ip_address=ip_address,
        reason=reason,
    ))


def _validate_fields(fields: dict[str, Any]) -> None:
    category = fields.get("category")
    if "category" in fields and (
        not isinstance(category, str) or category not in {c.value for c in AchievementCategory}
    ):
        raise CatalogValidationError(f"Unknown category {fields['category']!r}")
    tier = fields.get("tier")
    if "tier" in fields and (not isinstance(tier, str) or tier not in TIER_ORDER):
        raise CatalogValidationError(f"Unknown tier {fields['tier']!r}")
    for name in REWARD_FIELDS:
        if name not in fields:
            continue
        value = fields[name]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise CatalogValidationError(f"{name} must be a non-negative integer")
    for name in FLAG_FIELDS:
        if name in fields and not isinstance(fields[name], bool):
            raise CatalogValidationError(f"{name} must be true or false")


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    return page, limit


def _pagination(page: int, limit: int, total: int) -> dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
    }


def _population(session: Session) -> int:
    """Users considered for completion rates: everyone seen in the event log."""
    return session.scalar(
        select(func.count(func.distinct(AchievementEvent.user_id)))
    ) or 0


def _rate(count: int, population: int) -> float:
    return round(count / population * 100, 2) if population else 0.0


def achievement_to_dict(a: Achievement) -> dict[str, Any]:
    return {
        "id": a.id,
        "key": a.key,
        "name": a.name,
        "description": a.description,
        "category": a.category,
        "tier": a.tier,
        "trigger_type": a.trigger_type,
        "trigger_config": a.trigger_config,
        "reward_xp": a.reward_xp,
        "reward_tokens": a.reward_tokens,
        "reward_reputation": a.reward_reputation,
        "reward_badge": a.reward_badge,
        "reward_title": a.reward_title,
        "icon_emoji": a.icon_emoji,
        "unlock_message": a.unlock_message,
        "is_active": a.is_active,
        "is_secret": a.is_secret,
        "is_retroactive": a.is_retroactive,
        "created_at": a.created_at.isoformat() if a.created_at else None,
        "updated_at": a.updated_at.isoformat() if a.updated_at else None,
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def list_achievements(
    engine: Engine,
    *,
    category: str | None = None,
    tier: str | None = None,
    trigger_type: str | None = None,
    is_active: bool | None = None,
    is_secret: bool | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict[str, Any]:
    """Filtered, paginated catalog listing with completion counts and rates."""
    page, limit = _page_bounds(page, limit)
    filters = []
    if category:
        filters.append(Achievement.category == category)
    if tier:
        filters.append(Achievement.tier == tier)
    if trigger_type:
        filters.append(Achievement.trigger_type == trigger_type)
    if is_active is not None:
        filters.append(Achievement.is_active.is_(is_active))
    if is_secret is not None:
        filters.append(Achievement.is_secret.is_(is_secret))
    if search:
        pattern = f"%{search}%"
        filters.append(or_(
            Achievement.name.ilike(pattern),
            Achievement.description.ilike(pattern),
        ))

    with Session(engine) as session:
        total = session.scalar(
            select(func.count()).select_from(Achievement).where(*filters)
        ) or 0
        rows = session.scalars(
            select(Achievement)
            .where(*filters)
            .order_by(Achievement.created_at.desc(), Achievement.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()

        ids = [a.id for a in rows]
        completions: dict[int, int] = {}
        if ids:
            completions = dict(session.execute(
                select(UserAchievement.achievement_id, func.count())
                .where(
                    UserAchievement.achievement_id.in_(ids),
                    UserAchievement.is_completed.is_(True),
                )
                .group_by(UserAchievement.achievement_id)
            ).all())
        population = _population(session)

        items = []
        for a in rows:
            count = completions.get(a.id, 0)
            items.append({
                **achievement_to_dict(a),
                "completion_count": count,
                "completion_rate": _rate(count, population),
            })

    return {"achievements": items, "pagination": _pagination(page, limit, total)}


def get_achievement(engine: Engine, achievement_id: int) -> dict[str, Any]:
    """One achievement with completion count, completion rate and average progress.

    Raises
    ------
    AchievementNotFoundError
    """
    with Session(engine) as session:
        a = session.get(Achievement, achievement_id)
        if a is None:
            raise AchievementNotFoundError(achievement_id)
        completion_count = session.scalar(
            select(func.count()).select_from(UserAchievement).where(
                UserAchievement.achievement_id == achievement_id,
                UserAchievement.is_completed.is_(True),
            )
        ) or 0
        in_progress = session.scalar(
            select(func.count()).select_from(UserAchievement).where(
                UserAchievement.achievement_id == achievement_id,
                UserAchievement.is_completed.is_(False),
            )
        ) or 0
        avg_progress = session.scalar(
            select(func.avg(UserAchievement.progress_percentage)).where(
                UserAchievement.achievement_id == achievement_id,
            )
        )
        population = _population(session)
        return {
            **achievement_to_dict(a),
            "completion_count": completion_count,
            "in_progress_count": in_progress,
            "completion_rate": _rate(completion_count, population),
            "average_progress": round(float(avg_progress or 0.0), 2),
        }


def load_rule(engine: Engine, achievement_id: int) -> AchievementRule:
    """Parsed rule for one achievement, active or not.

    Raises
    ------
    AchievementNotFoundError
    """
    with Session(engine) as session:
        a = session.get(Achievement, achievement_id)
        if a is None:
            raise AchievementNotFoundError(achievement_id)
        return AchievementRule.from_row(a)


def list_completions(
    engine: Engine, achievement_id: int, *, page: int = 1, limit: int = 50,
) -> dict[str, Any]:
    """Users who completed one achievement, newest first."""
    page, limit = _page_bounds(page, limit)
    with Session(engine) as session:
        if session.get(Achievement, achievement_id) is None:
            raise AchievementNotFoundError(achievement_id)
        where = (
            UserAchievement.achievement_id == achievement_id,
            UserAchievement.is_completed.is_(True),
        )
        total = session.scalar(
            select(func.count()).select_from(UserAchievement).where(*where)
        ) or 0
        rows = session.scalars(
            select(UserAchievement)
            .where(*where)
            .order_by(UserAchievement.completed_at.desc(), UserAchievement.user_id)
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return {
            "completions": [
                {
                    "user_id": r.user_id,
                    "completed_at": r.completed_at.isoformat() if r.completed_at else None,
                    "completion_data": r.completion_data,
                }
                for r in rows
            ],
            "pagination": _pagination(page, limit, total),
        }


def list_user_achievements(
    engine: Engine, user_id: str, *, include_secret: bool = False,
) -> list[dict[str, Any]]:
    """Progress rows for one user joined to their definitions.

    Secret achievements are hidden until completed unless *include_secret*.
    """
    with Session(engine) as session:
        rows = session.execute(
            select(UserAchievement, Achievement)
            .join(Achievement, Achievement.id == UserAchievement.achievement_id)
            .where(UserAchievement.user_id == user_id)
            .order_by(UserAchievement.is_completed.desc(), Achievement.id)
        ).all()
        return [
            {
                "achievement_id": a.id,
                "key": a.key,
                "name": a.name,
                "tier": a.tier,
                "icon_emoji": a.icon_emoji,
                "progress_percentage": ua.progress_percentage,
                "current_progress": ua.current_progress,
                "is_completed": ua.is_completed,
                "completed_at": ua.completed_at.isoformat() if ua.completed_at else None,
            }
            for ua, a in rows
            if include_secret or ua.is_completed or not a.is_secret
        ]


def get_catalog_stats(engine: Engine) -> dict[str, Any]:
    """Catalog totals plus category / tier / trigger-type breakdowns."""
    with Session(engine) as session:
        def breakdown(column) -> dict[str, int]:
            return dict(session.execute(
                select(column, func.count()).group_by(column)
            ).all())

        total = session.scalar(select(func.count()).select_from(Achievement)) or 0
        active = session.scalar(
            select(func.count()).select_from(Achievement).where(Achievement.is_active.is_(True))
        ) or 0
        secret = session.scalar(
            select(func.count()).select_from(Achievement).where(Achievement.is_secret.is_(True))
        ) or 0
        completions = session.scalar(
            select(func.count()).select_from(UserAchievement)
            .where(UserAchievement.is_completed.is_(True))
        ) or 0
        earners = session.scalar(
            select(func.count(func.distinct(UserAchievement.user_id)))
            .where(UserAchievement.is_completed.is_(True))
        ) or 0
        by_tier = breakdown(Achievement.tier)
        return {
            "total_achievements": total,
            "active_achievements": active,
            "secret_achievements": secret,
            "total_completions": completions,
            "users_with_achievements": earners,
            "by_category": breakdown(Achievement.category),
            "by_tier": dict(sorted(by_tier.items(), key=lambda kv: TIER_ORDER.get(kv[0], 99))),
            "by_trigger_type": breakdown(Achievement.trigger_type),
        }


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def create_achievement(
    engine: Engine,
    *,
    name: str,
    trigger_type: str,
    trigger_config: dict | None = None,
    key: str | None = None,
    description: str | None = None,
    category: str = AchievementCategory.PARTICIPATION,
    tier: str = AchievementTier.COMMON,
    reward_xp: int = 0,
    reward_tokens: int = 0,
    reward_reputation: int = 0,
    reward_badge: str | None = None,
    reward_title: str | None = None,
    icon_emoji: str | None = None,
    unlock_message: str | None = None,
    is_active: bool = True,
    is_secret: bool = False,
    is_retroactive: bool = False,
    actor_id: str,
    ip_address: str | None = None,
) -> Achievement:
    """Validate and create an achievement definition.

    The key defaults to a slug of *name*.

    Raises
    ------
    TriggerConfigError
        If *trigger_config* does not fit *trigger_type*.
    CatalogValidationError
        For an unknown category / tier, negative reward or duplicate key.
    """
    trigger = parse_trigger(trigger_type, trigger_config)
    fields = {
        "category": category, "tier": tier, "reward_xp": reward_xp,
        "reward_tokens": reward_tokens, "reward_reputation": reward_reputation,
    }
    _validate_fields(fields)
    key = key or generate_key(name)
    if not key:
        raise CatalogValidationError(f"Cannot derive a key from name {name!r}")

    row = Achievement(
        key=key,
        name=name,
        description=description,
        trigger_type=trigger.kind.value,
        trigger_config=dump_trigger(trigger),
        reward_badge=reward_badge,
        reward_title=reward_title,
        icon_emoji=icon_emoji,
        unlock_message=unlock_message,
        is_active=is_active,
        is_secret=is_secret,
        is_retroactive=is_retroactive,
        **fields,
    )
    with Session(engine, expire_on_commit=False) as session:
        if session.scalar(select(Achievement.id).where(Achievement.key == key)) is not None:
            raise CatalogValidationError(f"Achievement key {key!r} already exists")
        session.add(row)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise CatalogValidationError(f"Achievement key {key!r} already exists") from exc
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CREATE,
            target_id=str(row.id),
            before=None,
            after=_row_to_dict(row),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(row)
        session.expunge(row)

    invalidate_all_caches()
    logger.info("Achievement created: %s (id=%d, %s)", row.key, row.id, row.trigger_type)
    return row


def update_achievement(
    engine: Engine,
    achievement_id: int,
    *,
    actor_id: str,
    ip_address: str | None = None,
    **changes: Any,
) -> Achievement:
    """Apply *changes* to one achievement.  ``key`` is immutable.

    A change to ``trigger_type`` or ``trigger_config`` is re-validated
    against the combined result before anything is written.

    Raises
    ------
    AchievementNotFoundError
    TriggerConfigError
    CatalogValidationError
    """
    if "key" in changes:
        raise CatalogValidationError("Achievement key cannot be changed")
    _validate_fields(changes)

    with Session(engine, expire_on_commit=False) as session:
        obj = session.get(Achievement, achievement_id)
        if obj is None:
            raise AchievementNotFoundError(achievement_id)
        before = _row_to_dict(obj)

        if "trigger_type" in changes or "trigger_config" in changes:
            trigger = parse_trigger(
                changes.pop("trigger_type", obj.trigger_type),
                changes.pop("trigger_config", obj.trigger_config),
            )
            obj.trigger_type = trigger.kind.value
            obj.trigger_config = dump_trigger(trigger)

        for field_name, value in changes.items():
            if hasattr(obj, field_name) and field_name not in FROZEN_KEYS:
                setattr(obj, field_name, value)
        obj.updated_at = datetime.now(UTC)
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_id=str(obj.id),
            before=before,
            after=_row_to_dict(obj),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(obj)
        session.expunge(obj)

    invalidate_all_caches()
    return obj


def bulk_update_achievements(
    engine: Engine,
    achievement_ids: list[int],
    changes: dict[str, Any],
    *,
    actor_id: str,
    ip_address: str | None = None,
) -> int:
    """Apply the same *changes* to several achievements in one transaction.

    Only :data:`BULK_FIELDS` may be changed in bulk.  Returns the number
    of achievements updated; unknown ids are ignored.
    """
    if not changes:
        raise CatalogValidationError("No fields to update")
    illegal = set(changes) - BULK_FIELDS
    if illegal:
        raise CatalogValidationError(
            f"Fields not allowed in bulk update: {sorted(illegal)}"
        )
    _validate_fields(changes)

    updated = 0
    with Session(engine) as session:
        rows = session.scalars(
            select(Achievement).where(Achievement.id.in_(achievement_ids))
        ).all()
        now = datetime.now(UTC)
        for obj in rows:
            before = _row_to_dict(obj)
            for field_name, value in changes.items():
                setattr(obj, field_name, value)
            obj.updated_at = now
            session.flush()
            _log_admin_action(
                session,
                actor_id=actor_id,
                action_type=AdminActionType.BULK_UPDATE,
                target_id=str(obj.id),
                before=before,
                after=_row_to_dict(obj),
                ip_address=ip_address,
            )
            updated += 1
        session.commit()

    invalidate_all_caches()
    logger.info("Bulk-updated %d achievement(s): %s", updated, sorted(changes))
    return updated


def deactivate_achievement(
    engine: Engine,
    achievement_id: int,
    *,
    actor_id: str,
    ip_address: str | None = None,
) -> Achievement:
    """Soft-delete: set ``is_active=false``.  Progress rows are kept."""
    with Session(engine, expire_on_commit=False) as session:
        obj = session.get(Achievement, achievement_id)
        if obj is None:
            raise AchievementNotFoundError(achievement_id)
        before = _row_to_dict(obj)
        obj.is_active = False
        obj.updated_at = datetime.now(UTC)
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.DEACTIVATE,
            target_id=str(obj.id),
            before=before,
            after=_row_to_dict(obj),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(obj)
        session.expunge(obj)

    invalidate_all_caches()
    return obj


def award_achievement(
    engine: Engine,
    achievement_id: int,
    user_ids: list[str],
    *,
    reason: str,
    actor_id: str,
    coordinator,
    grant_rewards: bool = False,
    ip_address: str | None = None,
) -> dict[str, list[str]]:
    """Manually complete an achievement for each of *user_ids*.

    Uses the same idempotent completion write as organic completions;
    users who already hold the achievement are left untouched.  The
    completion_data records who awarded it and why.

    Returns ``{"awarded": [...], "already_completed": [...]}``.
    """
    rule = load_rule(engine, achievement_id)
    awarded: list[str] = []
    skipped: list[str] = []
    for user_id in dict.fromkeys(str(u) for u in user_ids if u):
        now = datetime.now(UTC)
        provenance = {
            "manually_awarded": True,
            "awarded_by": str(actor_id),
            "reason": reason,
            "awarded_at": now.isoformat(),
        }
        snapshot = {"current": 1, "target": 1, "percentage": 100.0, "manual": True}
        won = coordinator.complete(
            user_id, rule, snapshot, provenance,
            completed_at=now, grant_rewards=grant_rewards,
        )
        (awarded if won else skipped).append(user_id)

    with Session(engine) as session:
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.MANUAL_AWARD,
            target_table="user_achievements",
            target_id=str(achievement_id),
            before=None,
            after={"awarded": awarded, "already_completed": skipped,
                   "grant_rewards": grant_rewards},
            ip_address=ip_address,
            reason=reason,
        )
        session.commit()

    logger.info(
        "Manual award of %s by %s: %d awarded, %d already held",
        rule.key, actor_id, len(awarded), len(skipped),
    )
    return {"awarded": awarded, "already_completed": skipped}
