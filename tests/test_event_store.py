"""
tests/test_event_store.py — Event Emitter & Store
==================================================

Uses an in-memory SQLite database via the shared conftest fixtures.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from medallion.database.models import AchievementEvent, EventType, ProcessingStatus
from medallion.services.event_store import MAX_ERROR_LENGTH, EventEmitter, EventStore


@pytest.fixture
def emitter(db_engine):
    return EventEmitter(db_engine)


@pytest.fixture
def store(db_engine):
    return EventStore(db_engine)


def _statuses(engine) -> dict[int, str]:
    with Session(engine) as session:
        return dict(session.execute(
            select(AchievementEvent.id, AchievementEvent.processing_status)
        ).all())


class TestEmitter:
    def test_emit_persists_pending_row(self, emitter, db_engine):
        result = emitter.emit("post_created", "u1", {"content": "gm"})
        assert result.ok and result.persisted
        assert len(result.event_ids) == 1
        with Session(db_engine) as session:
            row = session.get(AchievementEvent, result.event_ids[0])
            assert row.processing_status == ProcessingStatus.PENDING
            assert row.event_data == {"content": "gm"}
            assert row.user_id == "u1"

    def test_unknown_event_type_is_not_raised(self, emitter, db_engine):
        result = emitter.emit("post_deleted", "u1", {})
        assert result.ok
        assert not result.persisted
        assert "unknown event type" in result.error
        assert _statuses(db_engine) == {}

    def test_missing_user_is_rejected(self, emitter):
        result = emitter.emit("post_created", "", {})
        assert result.ok and not result.persisted

    def test_database_failure_is_swallowed(self, emitter):
        with patch("medallion.services.event_store.get_session", side_effect=RuntimeError("db down")):
            result = emitter.emit("user_login", "u1")
        assert result.ok
        assert not result.persisted
        assert "db down" in result.error

    def test_tip_writes_both_sides(self, emitter, db_engine):
        result = emitter.emit_tip("alice", "bob", amount=25)
        assert len(result.event_ids) == 2
        with Session(db_engine) as session:
            rows = session.scalars(select(AchievementEvent).order_by(AchievementEvent.id)).all()
            assert [(r.user_id, r.event_type) for r in rows] == [
                ("alice", EventType.TIP_SENT), ("bob", EventType.TIP_RECEIVED),
            ]
            assert rows[1].event_data["sender_id"] == "alice"

    def test_batch_keeps_valid_entries(self, emitter):
        result = emitter.emit_batch([
            ("post_created", "u1", {}),
            ("nonsense", "u1", {}),
            ("like_given", "u2", None),
        ])
        assert result.persisted
        assert len(result.event_ids) == 2
        assert "nonsense" in result.error

    def test_typed_helper_payload(self, emitter, db_engine):
        result = emitter.emit_post_created("u1", post_id=5, thread_id=2, content="hello")
        with Session(db_engine) as session:
            data = session.get(AchievementEvent, result.event_ids[0]).event_data
        assert data["content"] == "hello"
        assert data["content_length"] == 5


class TestClaiming:
    def test_fetch_pending_oldest_first(self, emitter, store):
        base = datetime(2026, 1, 1, tzinfo=UTC)
        emitter.emit("post_created", "u1", triggered_at=base + timedelta(minutes=2))
        emitter.emit("post_created", "u1", triggered_at=base)
        batch = store.fetch_pending(10)
        assert [e.triggered_at for e in batch] == sorted(e.triggered_at for e in batch)
        assert len(store.fetch_pending(1)) == 1

    def test_claim_is_exclusive(self, emitter, store):
        event_id = emitter.emit("post_created", "u1").event_ids[0]
        assert store.claim(event_id) is True
        assert store.claim(event_id) is False
        assert store.fetch_pending() == []

    def test_status_moves_forward_only(self, emitter, store, db_engine):
        event_id = emitter.emit("post_created", "u1").event_ids[0]
        assert store.mark_completed(event_id) is False  # never claimed
        store.claim(event_id)
        assert store.mark_completed(event_id) is True
        assert store.mark_failed(event_id, "late") is False
        assert _statuses(db_engine)[event_id] == ProcessingStatus.COMPLETED

    def test_mark_failed_truncates_error(self, emitter, store, db_engine):
        event_id = emitter.emit("post_created", "u1").event_ids[0]
        store.claim(event_id)
        assert store.mark_failed(event_id, "x" * (MAX_ERROR_LENGTH + 500))
        failures = store.recent_failures()
        assert failures[0]["id"] == event_id
        assert len(failures[0]["error_message"]) == MAX_ERROR_LENGTH

    def test_stale_claims_fail(self, emitter, store, db_engine):
        event_id = emitter.emit("post_created", "u1").event_ids[0]
        store.claim(event_id)
        with Session(db_engine) as session:
            session.execute(
                update(AchievementEvent)
                .where(AchievementEvent.id == event_id)
                .values(claimed_at=datetime.now(UTC) - timedelta(hours=2))
            )
            session.commit()
        assert store.fail_stale_claims(timedelta(minutes=15)) == 1
        assert _statuses(db_engine)[event_id] == ProcessingStatus.FAILED

    def test_count_by_status(self, emitter, store):
        ids = emitter.emit_batch([("post_created", "u1", {})] * 3).event_ids
        store.claim(ids[0])
        store.mark_completed(ids[0])
        store.claim(ids[1])
        store.mark_failed(ids[1], "boom")
        assert store.count_by_status() == {
            "pending": 1, "processing": 0, "completed": 1, "failed": 1,
        }


class TestHistory:
    def test_history_excludes_failed_and_future(self, emitter, store):
        base = datetime(2026, 1, 1, 12, tzinfo=UTC)
        ok = emitter.emit("post_created", "u1", triggered_at=base).event_ids[0]
        bad = emitter.emit("post_created", "u1", triggered_at=base).event_ids[0]
        emitter.emit("post_created", "u1", triggered_at=base + timedelta(days=1))
        emitter.emit("post_created", "u2", triggered_at=base)
        store.claim(bad)
        store.mark_failed(bad, "boom")

        history = store.load_history("u1", as_of=base + timedelta(hours=1))
        assert [e.id for e in history] == [ok]

    def test_distinct_users(self, emitter, store):
        emitter.emit_like("alice", "bob", post_id=1)
        emitter.emit("user_login", "alice")
        assert store.distinct_users() == ["alice", "bob"]
