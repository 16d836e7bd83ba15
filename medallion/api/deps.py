"""
medallion.api.deps — FastAPI dependency injection
==================================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from medallion.config import MedallionConfig, load_config
from medallion.database.engine import create_db_engine
from medallion.engine.cache import AchievementCache
from medallion.services.achievement_processor import AchievementProcessor
from medallion.services.completion_service import CompletionCoordinator
from medallion.services.event_store import EventEmitter, EventStore
from medallion.services.rewards import RewardGateway, build_reward_gateway

_WEAK_SECRETS = frozenset({
    "medallion-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> MedallionConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_reward_gateway() -> RewardGateway:
    """One gateway (and HTTP connection pool) per process."""
    return build_reward_gateway(get_config())


def close_reward_gateway() -> None:
    """Close the shared gateway, if one was built, and forget it."""
    if get_reward_gateway.cache_info().currsize:
        get_reward_gateway().close()
        get_reward_gateway.cache_clear()


def get_coordinator(
    engine: Annotated[Engine, Depends(get_engine)],
    gateway: Annotated[RewardGateway, Depends(get_reward_gateway)],
) -> CompletionCoordinator:
    return CompletionCoordinator(engine, gateway)


def get_emitter(engine: Annotated[Engine, Depends(get_engine)]) -> EventEmitter:
    return EventEmitter(engine)


def get_event_store(engine: Annotated[Engine, Depends(get_engine)]) -> EventStore:
    return EventStore(engine)


def get_processor(
    engine: Annotated[Engine, Depends(get_engine)],
    coordinator: Annotated[CompletionCoordinator, Depends(get_coordinator)],
) -> AchievementProcessor:
    # Retroactive runs evaluate one explicit rule; the cache is never consulted.
    return AchievementProcessor(
        EventStore(engine), AchievementCache(engine, ttl_seconds=0), coordinator,
    )


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return admin user payload. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload
