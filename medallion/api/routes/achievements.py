"""
medallion.api.routes.achievements — Catalog CRUD, awards & event inspection
============================================================================
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from medallion.api.deps import (
    get_coordinator,
    get_current_admin,
    get_emitter,
    get_engine,
    get_event_store,
    get_processor,
)
from medallion.database.models import TriggerType
from medallion.engine.evaluators import EVALUATORS
from medallion.services import admin_service
from medallion.services.achievement_processor import AchievementProcessor
from medallion.services.completion_service import CompletionCoordinator
from medallion.services.event_store import EventEmitter, EventStore

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class AchievementCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    key: str | None = Field(default=None, max_length=100)
    description: str | None = None
    category: str = "participation"
    tier: str = "common"
    trigger_type: str = TriggerType.MANUAL
    trigger_config: dict | None = None
    reward_xp: int = 0
    reward_tokens: int = 0
    reward_reputation: int = 0
    reward_badge: str | None = None
    reward_title: str | None = None
    icon_emoji: str | None = None
    unlock_message: str | None = None
    is_active: bool = True
    is_secret: bool = False
    is_retroactive: bool = False


class AchievementUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    category: str | None = None
    tier: str | None = None
    trigger_type: str | None = None
    trigger_config: dict | None = None
    reward_xp: int | None = None
    reward_tokens: int | None = None
    reward_reputation: int | None = None
    reward_badge: str | None = None
    reward_title: str | None = None
    icon_emoji: str | None = None
    unlock_message: str | None = None
    is_active: bool | None = None
    is_secret: bool | None = None
    is_retroactive: bool | None = None


class BulkUpdate(BaseModel):
    achievement_ids: list[int] = Field(min_length=1)
    changes: dict[str, Any]


class ManualAward(BaseModel):
    user_ids: list[str] = Field(min_length=1)
    reason: str = Field(min_length=1)
    grant_rewards: bool = False


class EventIn(BaseModel):
    event_type: str
    user_id: str
    event_data: dict = Field(default_factory=dict)


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _run_retroactive(processor: AchievementProcessor, achievement_id: int, engine) -> dict:
    rule = admin_service.load_rule(engine, achievement_id)
    if rule.trigger_type == TriggerType.MANUAL:
        return {}
    return processor.evaluate_retroactively(rule)


# ---------------------------------------------------------------------------
# Catalog reads
# ---------------------------------------------------------------------------
@router.get("/achievements")
def list_achievements(
    category: str | None = None,
    tier: str | None = None,
    trigger_type: str | None = None,
    is_active: bool | None = None,
    is_secret: bool | None = None,
    search: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=admin_service.MAX_PAGE_SIZE),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return admin_service.list_achievements(
        engine,
        category=category, tier=tier, trigger_type=trigger_type,
        is_active=is_active, is_secret=is_secret, search=search,
        page=page, limit=limit,
    )


@router.get("/achievements/stats")
def catalog_stats(
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return admin_service.get_catalog_stats(engine)


@router.get("/achievements/evaluators")
def list_evaluators(admin: dict = Depends(get_current_admin)):
    """Registered custom evaluators with their config schema."""
    return {
        "evaluators": [
            {
                "id": ev.id,
                "description": ev.description,
                "listens_to": sorted(ev.listens_to),
                "config_schema": ev.Params.model_json_schema(),
            }
            for ev in EVALUATORS.values()
        ]
    }


@router.get("/achievements/{achievement_id}")
def get_achievement(
    achievement_id: int,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return admin_service.get_achievement(engine, achievement_id)


@router.get("/achievements/{achievement_id}/completions")
def list_completions(
    achievement_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=admin_service.MAX_PAGE_SIZE),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return admin_service.list_completions(engine, achievement_id, page=page, limit=limit)


# ---------------------------------------------------------------------------
# Catalog mutations
# ---------------------------------------------------------------------------
@router.post("/achievements", status_code=201)
def create_achievement(
    body: AchievementCreate,
    request: Request,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    processor: AchievementProcessor = Depends(get_processor),
):
    row = admin_service.create_achievement(
        engine,
        **body.model_dump(),
        actor_id=str(admin["sub"]),
        ip_address=_client_ip(request),
    )
    result: dict[str, Any] = {"id": row.id, "key": row.key, "name": row.name}
    if row.is_retroactive and row.is_active:
        result["retroactive"] = _run_retroactive(processor, row.id, engine)
    return result


@router.patch("/achievements/{achievement_id}")
def update_achievement(
    achievement_id: int,
    body: AchievementUpdate,
    request: Request,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    kwargs = body.model_dump(exclude_none=True)
    if not kwargs:
        raise HTTPException(400, "No fields to update")
    row = admin_service.update_achievement(
        engine, achievement_id,
        actor_id=str(admin["sub"]), ip_address=_client_ip(request), **kwargs,
    )
    return admin_service.achievement_to_dict(row)


@router.post("/achievements/bulk-update")
def bulk_update(
    body: BulkUpdate,
    request: Request,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    updated = admin_service.bulk_update_achievements(
        engine, body.achievement_ids, body.changes,
        actor_id=str(admin["sub"]), ip_address=_client_ip(request),
    )
    return {"updated": updated}


@router.delete("/achievements/{achievement_id}")
def deactivate_achievement(
    achievement_id: int,
    request: Request,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    row = admin_service.deactivate_achievement(
        engine, achievement_id, actor_id=str(admin["sub"]), ip_address=_client_ip(request),
    )
    return {"id": row.id, "is_active": row.is_active}


@router.post("/achievements/{achievement_id}/award")
def award_achievement(
    achievement_id: int,
    body: ManualAward,
    request: Request,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    coordinator: CompletionCoordinator = Depends(get_coordinator),
):
    return admin_service.award_achievement(
        engine, achievement_id, body.user_ids,
        reason=body.reason,
        actor_id=str(admin["sub"]),
        coordinator=coordinator,
        grant_rewards=body.grant_rewards,
        ip_address=_client_ip(request),
    )


@router.post("/achievements/{achievement_id}/evaluate-retroactive")
def evaluate_retroactive(
    achievement_id: int,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    processor: AchievementProcessor = Depends(get_processor),
):
    summary = _run_retroactive(processor, achievement_id, engine)
    return {"achievement_id": achievement_id, "outcomes": summary}


# ---------------------------------------------------------------------------
# Events & users
# ---------------------------------------------------------------------------
@router.post("/events", status_code=202)
def emit_test_event(
    body: EventIn,
    admin: dict = Depends(get_current_admin),
    emitter: EventEmitter = Depends(get_emitter),
):
    """Append a pending event, e.g. to try out a new achievement."""
    result = emitter.emit(body.event_type, body.user_id, body.event_data)
    if not result.persisted:
        raise HTTPException(400, result.error or "Event rejected")
    logger.info("Admin %s emitted test event %s for %s",
                admin["sub"], body.event_type, body.user_id)
    return {"event_ids": list(result.event_ids)}


@router.get("/events/status")
def event_status(
    admin: dict = Depends(get_current_admin),
    store: EventStore = Depends(get_event_store),
):
    return {"by_status": store.count_by_status()}


@router.get("/events/failures")
def event_failures(
    limit: int = Query(50, ge=1, le=500),
    admin: dict = Depends(get_current_admin),
    store: EventStore = Depends(get_event_store),
):
    return {"failures": store.recent_failures(limit)}


@router.get("/users/{user_id}/achievements")
def user_achievements(
    user_id: str,
    include_secret: bool = True,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return {
        "user_id": user_id,
        "achievements": admin_service.list_user_achievements(
            engine, user_id, include_secret=include_secret,
        ),
    }
