"""
medallion.engine.cache — Active Achievement Cache
==================================================

Keeps the active achievement set in memory as parsed, immutable
:class:`AchievementRule` objects so the resolver never hits the database
per event.

Refresh policy:
* reload after ``ttl_seconds`` (covers edits made by another process,
  e.g. the admin API while the worker runs);
* reload on the next read after :meth:`AchievementCache.invalidate`,
  which the admin service calls for every cache in this process after
  each catalog mutation (see :func:`invalidate_all_caches`).
"""

from __future__ import annotations

import logging
import threading
import time
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from medallion.database.models import Achievement
from medallion.engine.triggers import TriggerConfig, parse_trigger
from medallion.exceptions import TriggerConfigError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

_CACHES: weakref.WeakSet[AchievementCache] = weakref.WeakSet()


# ---------------------------------------------------------------------------
# AchievementRule — detached, parsed achievement definition
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AchievementRule:
    id: int
    key: str
    name: str
    trigger: TriggerConfig
    reward_xp: int = 0
    reward_tokens: int = 0
    reward_reputation: int = 0
    is_retroactive: bool = False

    @property
    def trigger_type(self) -> str:
        return self.trigger.kind

    @classmethod
    def from_row(cls, row: Any) -> AchievementRule:
        """Build a rule from an ``Achievement`` row.

        Raises
        ------
        TriggerConfigError
            If the stored trigger_config no longer validates.
        """
        return cls(
            id=row.id,
            key=row.key,
            name=row.name,
            trigger=parse_trigger(row.trigger_type, row.trigger_config),
            reward_xp=row.reward_xp or 0,
            reward_tokens=row.reward_tokens or 0,
            reward_reputation=row.reward_reputation or 0,
            is_retroactive=bool(row.is_retroactive),
        )


# ---------------------------------------------------------------------------
# AchievementCache
# ---------------------------------------------------------------------------
class AchievementCache:
    """Thread-safe TTL cache of the active achievement set.

    Usage::

        cache = AchievementCache(engine, ttl_seconds=60)
        rules = cache.get_active_rules()     # loads on first use
        cache.invalidate()                   # next read reloads
    """

    def __init__(
        self,
        engine: Engine,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._rules: tuple[AchievementRule, ...] = ()
        self._loaded_at: float | None = None
        _CACHES.add(self)

    def load(self) -> tuple[AchievementRule, ...]:
        """Reload active achievements from the database."""
        with Session(self._engine) as session:
            rows = session.scalars(
                select(Achievement)
                .where(Achievement.is_active.is_(True))
                .order_by(Achievement.id)
            ).all()
            rules: list[AchievementRule] = []
            for row in rows:
                try:
                    rules.append(AchievementRule.from_row(row))
                except TriggerConfigError as exc:
                    logger.warning(
                        "Skipping achievement %s (id=%d): invalid trigger_config: %s",
                        row.key, row.id, exc,
                    )
        with self._lock:
            self._rules = tuple(rules)
            self._loaded_at = self._clock()
        logger.info("AchievementCache loaded: %d active achievements", len(rules))
        return self._rules

    def get_active_rules(self) -> tuple[AchievementRule, ...]:
        with self._lock:
            fresh = (
                self._loaded_at is not None
                and self._clock() - self._loaded_at < self._ttl
            )
            if fresh:
                return self._rules
        return self.load()

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None


def invalidate_all_caches() -> None:
    """Mark every live :class:`AchievementCache` in this process stale."""
    for cache in list(_CACHES):
        cache.invalidate()
