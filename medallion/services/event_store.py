"""
medallion.services.event_store — Event Log Write & Claim Service
=================================================================

Two faces of the ``achievement_events`` table:

1. :class:`EventEmitter` — what the rest of the forum calls.  Appends
   pending rows and **never raises**: a failed append is logged and
   reported through :class:`EmitResult`, so instrumenting a forum action
   can never break that action.
2. :class:`EventStore` — what the scheduler calls.  Pulls pending rows,
   claims them atomically and records their terminal status.  Every
   status write is a conditional ``UPDATE`` guarded on the expected prior
   status, so transitions only ever move forward and two workers can
   never both own the same row.

All public methods are synchronous; call them from async code through
``await run_db(store.fetch_pending, 100)``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Engine, func, select, update
from sqlalchemy.orm import Session

from medallion.database.engine import get_session
from medallion.database.models import AchievementEvent, EventType, ProcessingStatus
from medallion.engine.history import EventHistory, EventRecord

logger = logging.getLogger(__name__)

# Longest error text stored on a failed event.
MAX_ERROR_LENGTH = 2000

_VALID_EVENT_TYPES: frozenset[str] = frozenset(t.value for t in EventType)


@dataclass(frozen=True, slots=True)
class EmitResult:
    """Outcome of an emit call.

    ``ok`` is always ``True``: callers never need to branch on emission.
    ``persisted`` and ``error`` are there for logs, tests and metrics.
    """

    persisted: bool
    event_ids: tuple[int, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------
class EventEmitter:
    """Fire-and-forget producer API for achievement events.

    Usage::

        emitter = EventEmitter(engine)
        emitter.emit_post_created(user_id, post_id=42, thread_id=7, content="gm")
        emitter.emit("wallet_loss", user_id, {"loss_amount": 400})
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    # -------------------------------------------------------------------
    # Generic API
    # -------------------------------------------------------------------
    def emit(
        self,
        event_type: str,
        user_id: str,
        payload: dict[str, Any] | None = None,
        *,
        triggered_at: datetime | None = None,
    ) -> EmitResult:
        """Append one pending event."""
        return self.emit_batch([(event_type, user_id, payload)], triggered_at=triggered_at)

    def emit_batch(
        self,
        events: Iterable[tuple[str, str, dict[str, Any] | None]],
        *,
        triggered_at: datetime | None = None,
    ) -> EmitResult:
        """Append several pending events in a single transaction.

        Invalid entries (unknown type, blank user) are dropped with a
        warning; the rest are still written.
        """
        now = triggered_at or datetime.now(UTC)
        rows: list[AchievementEvent] = []
        rejected: list[str] = []
        for event_type, user_id, payload in events:
            if event_type not in _VALID_EVENT_TYPES:
                rejected.append(f"unknown event type {event_type!r}")
                continue
            if not user_id:
                rejected.append(f"{event_type} without user_id")
                continue
            rows.append(AchievementEvent(
                user_id=str(user_id),
                event_type=event_type,
                event_data=dict(payload or {}),
                triggered_at=now,
                processing_status=ProcessingStatus.PENDING,
            ))

        for reason in rejected:
            logger.warning("Achievement event rejected: %s", reason)
        if not rows:
            return EmitResult(persisted=False, error="; ".join(rejected) or "no events")

        try:
            with get_session(self._engine) as session:
                session.add_all(rows)
                session.flush()
                ids = tuple(row.id for row in rows)
        except Exception as exc:
            logger.exception("Failed to persist %d achievement event(s)", len(rows))
            return EmitResult(persisted=False, error=str(exc))

        logger.debug("Emitted %d achievement event(s): %s", len(ids), ids)
        return EmitResult(
            persisted=True,
            event_ids=ids,
            error="; ".join(rejected) or None,
        )

    # -------------------------------------------------------------------
    # Typed helpers, one per event type
    # -------------------------------------------------------------------
    def emit_post_created(
        self, user_id: str, *, post_id: Any, thread_id: Any,
        content: str | None = None, is_reply: bool = False,
    ) -> EmitResult:
        return self.emit(EventType.POST_CREATED, user_id, {
            "post_id": post_id,
            "thread_id": thread_id,
            "content": content or "",
            "content_length": len(content or ""),
            "is_reply": is_reply,
        })

    def emit_thread_created(
        self, user_id: str, *, thread_id: Any, title: str | None = None,
        forum_id: Any = None,
    ) -> EmitResult:
        return self.emit(EventType.THREAD_CREATED, user_id, {
            "thread_id": thread_id, "title": title or "", "forum_id": forum_id,
        })

    def emit_user_login(self, user_id: str, *, ip_address: str | None = None) -> EmitResult:
        return self.emit(EventType.USER_LOGIN, user_id, {"ip_address": ip_address})

    def emit_tip(
        self, sender_id: str, recipient_id: str, *, amount: float,
        currency: str = "DGT", post_id: Any = None,
    ) -> EmitResult:
        """Record both sides of a tip in one append."""
        return self.emit_batch([
            (EventType.TIP_SENT, sender_id, {
                "recipient_id": recipient_id, "amount": amount,
                "currency": currency, "post_id": post_id,
            }),
            (EventType.TIP_RECEIVED, recipient_id, {
                "sender_id": sender_id, "amount": amount,
                "currency": currency, "post_id": post_id,
            }),
        ])

    def emit_shoutbox_message(
        self, user_id: str, *, message_id: Any, content: str | None = None,
    ) -> EmitResult:
        return self.emit(EventType.SHOUTBOX_MESSAGE, user_id, {
            "message_id": message_id, "content": content or "",
        })

    def emit_like(self, liker_id: str, author_id: str, *, post_id: Any) -> EmitResult:
        """Record a like for the liker and the post author."""
        return self.emit_batch([
            (EventType.LIKE_GIVEN, liker_id, {"post_id": post_id, "author_id": author_id}),
            (EventType.LIKE_RECEIVED, author_id, {"post_id": post_id, "liker_id": liker_id}),
        ])

    def emit_user_mentioned(
        self, user_id: str, *, post_id: Any, mentioned_by: str,
    ) -> EmitResult:
        return self.emit(EventType.USER_MENTIONED, user_id, {
            "post_id": post_id, "mentioned_by": mentioned_by,
        })

    def emit_daily_streak(self, user_id: str, *, streak_days: int) -> EmitResult:
        return self.emit(EventType.DAILY_STREAK, user_id, {"streak_days": streak_days})

    def emit_wallet_loss(
        self, user_id: str, *, loss_amount: float, asset: str | None = None,
        transaction_id: Any = None,
    ) -> EmitResult:
        return self.emit(EventType.WALLET_LOSS, user_id, {
            "loss_amount": loss_amount, "asset": asset, "transaction_id": transaction_id,
        })

    def emit_thread_necromancy(
        self, user_id: str, *, thread_id: Any, thread_age_days: float,
    ) -> EmitResult:
        return self.emit(EventType.THREAD_NECROMANCY, user_id, {
            "thread_id": thread_id, "thread_age_days": thread_age_days,
        })

    def emit_crash_sentiment(
        self, user_id: str, *, confidence: float, post_id: Any = None,
        keywords: list[str] | None = None,
    ) -> EmitResult:
        return self.emit(EventType.CRASH_SENTIMENT, user_id, {
            "confidence": confidence, "post_id": post_id, "keywords": keywords or [],
        })

    def emit_diamond_hands(
        self, user_id: str, *, hold_duration_days: float, max_drawdown: float,
        final_return: float | None = None, resisted_sell_signals: int = 0,
        asset: str | None = None,
    ) -> EmitResult:
        return self.emit(EventType.DIAMOND_HANDS, user_id, {
            "hold_duration_days": hold_duration_days,
            "max_drawdown": max_drawdown,
            "final_return": final_return,
            "resisted_sell_signals": resisted_sell_signals,
            "asset": asset,
        })

    def emit_paper_hands(
        self, user_id: str, *, asset: str | None = None, loss_percent: float | None = None,
    ) -> EmitResult:
        return self.emit(EventType.PAPER_HANDS, user_id, {
            "asset": asset, "loss_percent": loss_percent,
        })

    def emit_market_prediction(
        self, user_id: str, *, prediction: str, accuracy: float,
        asset: str | None = None,
    ) -> EmitResult:
        return self.emit(EventType.MARKET_PREDICTION, user_id, {
            "prediction": prediction, "accuracy": accuracy, "asset": asset,
        })

    def emit_thread_locked(
        self, user_id: str, *, thread_id: Any, locked_by: str | None = None,
    ) -> EmitResult:
        return self.emit(EventType.THREAD_LOCKED, user_id, {
            "thread_id": thread_id, "locked_by": locked_by,
        })

    def emit_custom(self, user_id: str, name: str, **data: Any) -> EmitResult:
        return self.emit(EventType.CUSTOM_EVENT, user_id, {"name": name, **data})


# ---------------------------------------------------------------------------
# Store — scheduler-side operations
# ---------------------------------------------------------------------------
class EventStore:
    """Status transitions and history reads over ``achievement_events``."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def fetch_pending(self, limit: int = 100) -> list[EventRecord]:
        """Oldest pending events first, at most *limit*."""
        with Session(self._engine) as session:
            rows = session.scalars(
                select(AchievementEvent)
                .where(AchievementEvent.processing_status == ProcessingStatus.PENDING)
                .order_by(AchievementEvent.triggered_at, AchievementEvent.id)
                .limit(limit)
            ).all()
            return [EventRecord.from_row(row) for row in rows]

    def claim(self, event_id: int) -> bool:
        """Move one event ``pending → processing``.

        Returns ``True`` only for the caller whose update changed the row.
        """
        with get_session(self._engine) as session:
            result = session.execute(
                update(AchievementEvent)
                .where(
                    AchievementEvent.id == event_id,
                    AchievementEvent.processing_status == ProcessingStatus.PENDING,
                )
                .values(
                    processing_status=ProcessingStatus.PROCESSING,
                    claimed_at=datetime.now(UTC),
                )
            )
            return result.rowcount == 1

    def mark_completed(self, event_id: int) -> bool:
        with get_session(self._engine) as session:
            result = session.execute(
                update(AchievementEvent)
                .where(
                    AchievementEvent.id == event_id,
                    AchievementEvent.processing_status == ProcessingStatus.PROCESSING,
                )
                .values(
                    processing_status=ProcessingStatus.COMPLETED,
                    processed_at=datetime.now(UTC),
                )
            )
            return result.rowcount == 1

    def mark_failed(self, event_id: int, error: str) -> bool:
        """Mark an event failed with *error* (truncated).  Never re-queued."""
        with get_session(self._engine) as session:
            result = session.execute(
                update(AchievementEvent)
                .where(
                    AchievementEvent.id == event_id,
                    AchievementEvent.processing_status.in_(
                        (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING)
                    ),
                )
                .values(
                    processing_status=ProcessingStatus.FAILED,
                    processed_at=datetime.now(UTC),
                    error_message=error[:MAX_ERROR_LENGTH],
                )
            )
            return result.rowcount == 1

    def fail_stale_claims(self, older_than: timedelta) -> int:
        """Fail events left in ``processing`` by a worker that died mid-batch.

        They are failed rather than reset to pending so status never moves
        backwards.
        """
        cutoff = datetime.now(UTC) - older_than
        with get_session(self._engine) as session:
            result = session.execute(
                update(AchievementEvent)
                .where(
                    AchievementEvent.processing_status == ProcessingStatus.PROCESSING,
                    AchievementEvent.claimed_at < cutoff,
                )
                .values(
                    processing_status=ProcessingStatus.FAILED,
                    processed_at=datetime.now(UTC),
                    error_message="claim expired: worker stopped before finishing",
                )
            )
            count = result.rowcount or 0
        if count:
            logger.warning("Failed %d stale achievement event claim(s)", count)
        return count

    def load_history(
        self,
        user_id: str,
        as_of: datetime | None = None,
        current_id: int | None = None,
    ) -> EventHistory:
        """Every non-failed event of *user_id* up to *as_of* (default: now)."""
        as_of = as_of or datetime.now(UTC)
        with Session(self._engine) as session:
            rows = session.scalars(
                select(AchievementEvent)
                .where(
                    AchievementEvent.user_id == user_id,
                    AchievementEvent.processing_status != ProcessingStatus.FAILED,
                    AchievementEvent.triggered_at <= as_of,
                )
                .order_by(AchievementEvent.triggered_at, AchievementEvent.id)
            ).all()
            records = [EventRecord.from_row(row) for row in rows]
        return EventHistory(records, as_of=as_of, current_id=current_id)

    def distinct_users(self) -> list[str]:
        """Every user id present in the log."""
        with Session(self._engine) as session:
            return list(session.scalars(
                select(AchievementEvent.user_id).distinct().order_by(AchievementEvent.user_id)
            ).all())

    def count_by_status(self) -> dict[str, int]:
        with Session(self._engine) as session:
            rows = session.execute(
                select(AchievementEvent.processing_status, func.count())
                .group_by(AchievementEvent.processing_status)
            ).all()
        counts = {status.value: 0 for status in ProcessingStatus}
        counts.update({status: n for status, n in rows})
        return counts

    def recent_failures(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent failed events with their error text."""
        with Session(self._engine) as session:
            rows = session.scalars(
                select(AchievementEvent)
                .where(AchievementEvent.processing_status == ProcessingStatus.FAILED)
                .order_by(AchievementEvent.processed_at.desc(), AchievementEvent.id.desc())
                .limit(limit)
            ).all()
            return [
                {
                    "id": row.id,
                    "user_id": row.user_id,
                    "event_type": row.event_type,
                    "triggered_at": row.triggered_at.isoformat() if row.triggered_at else None,
                    "processed_at": row.processed_at.isoformat() if row.processed_at else None,
                    "error_message": row.error_message,
                }
                for row in rows
            ]
