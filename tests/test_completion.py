"""
tests/test_completion.py — Completion Coordinator & Event Processor
====================================================================

Covers idempotent completion, monotonic progress, isolated reward
dispatch and the per-event evaluation pipeline.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import add_achievement
from sqlalchemy.orm import Session

from medallion.database.models import UserAchievement
from medallion.engine.cache import AchievementCache, AchievementRule
from medallion.engine.progress import Progress
from medallion.engine.triggers import parse_trigger
from medallion.services.achievement_processor import AchievementProcessor
from medallion.services.completion_service import CompletionCoordinator, CompletionOutcome
from medallion.services.event_store import EventEmitter, EventStore


def _rule(achievement_id: int, **rewards) -> AchievementRule:
    return AchievementRule(
        id=achievement_id,
        key="conversation_starter",
        name="Conversation Starter",
        trigger=parse_trigger("count", {"action": "posts_created", "target": 5}),
        **rewards,
    )


def _row(engine, user_id: str, achievement_id: int) -> UserAchievement | None:
    with Session(engine) as session:
        return session.get(UserAchievement, (user_id, achievement_id))


@pytest.fixture
def achievement_id(db_engine) -> int:
    return add_achievement(
        db_engine, "conversation_starter", "count",
        {"action": "posts_created", "target": 5},
        reward_xp=50, reward_tokens=10,
    )


@pytest.fixture
def coordinator(db_engine, gateway) -> CompletionCoordinator:
    return CompletionCoordinator(db_engine, gateway)


# ===========================================================================
# Coordinator
# ===========================================================================
class TestProgressWrites:
    def test_partial_progress_is_stored(self, db_engine, coordinator, achievement_id):
        outcome = coordinator.apply("u1", _rule(achievement_id), Progress(4, 5, False))
        assert outcome is CompletionOutcome.PROGRESSED
        row = _row(db_engine, "u1", achievement_id)
        assert row.progress_percentage == pytest.approx(80.0)
        assert row.is_completed is False
        assert row.current_progress["current"] == 4

    def test_percentage_never_decreases(self, db_engine, coordinator, achievement_id):
        rule = _rule(achievement_id)
        coordinator.apply("u1", rule, Progress(4, 5, False))
        outcome = coordinator.apply("u1", rule, Progress(2, 5, False))
        assert outcome is CompletionOutcome.UNCHANGED
        assert _row(db_engine, "u1", achievement_id).progress_percentage == pytest.approx(80.0)

    def test_zero_progress_writes_nothing(self, db_engine, coordinator, achievement_id):
        outcome = coordinator.apply("u1", _rule(achievement_id), Progress(0, 5, False))
        assert outcome is CompletionOutcome.NO_PROGRESS
        assert _row(db_engine, "u1", achievement_id) is None

    def test_completed_row_ignores_later_progress(self, db_engine, coordinator, achievement_id):
        rule = _rule(achievement_id)
        coordinator.apply("u1", rule, Progress(5, 5, True))
        assert coordinator.apply("u1", rule, Progress(1, 5, False)) is CompletionOutcome.UNCHANGED
        row = _row(db_engine, "u1", achievement_id)
        assert row.is_completed is True
        assert row.progress_percentage == 100.0


class TestCompletion:
    def test_completion_sets_fields(self, db_engine, coordinator, achievement_id):
        outcome = coordinator.apply("u1", _rule(achievement_id), Progress(5, 5, True), event_id=42)
        assert outcome is CompletionOutcome.COMPLETED
        row = _row(db_engine, "u1", achievement_id)
        assert row.is_completed is True
        assert row.completed_at is not None
        assert row.completion_data["event_id"] == 42
        assert row.completion_data["final_progress"]["percentage"] == 100.0

    def test_partial_composite_completion_keeps_its_ratio(
        self, db_engine, coordinator, achievement_id,
    ):
        coordinator.apply("u1", _rule(achievement_id), Progress(1, 2, True))
        row = _row(db_engine, "u1", achievement_id)
        assert row.progress_percentage == 100.0
        assert row.completion_data["final_progress"]["percentage"] == 50.0

    def test_rewards_paid_exactly_once(self, coordinator, gateway, achievement_id):
        rule = _rule(achievement_id, reward_xp=50, reward_tokens=10)
        first = coordinator.apply("u1", rule, Progress(5, 5, True))
        second = coordinator.apply("u1", rule, Progress(5, 5, True))
        assert first is CompletionOutcome.COMPLETED
        assert second is CompletionOutcome.ALREADY_COMPLETED
        gateway.credit_xp.assert_called_once()
        gateway.credit_token.assert_called_once()
        _, kwargs = gateway.credit_token.call_args
        assert kwargs["source"] == "achievement_unlock"
        assert kwargs["achievement_id"] == achievement_id

    def test_zero_reward_channels_skipped(self, coordinator, gateway, achievement_id):
        coordinator.apply("u1", _rule(achievement_id, reward_xp=10), Progress(5, 5, True))
        gateway.credit_xp.assert_called_once()
        gateway.credit_token.assert_not_called()
        gateway.credit_reputation.assert_not_called()

    def test_failing_channel_does_not_block_others(
        self, db_engine, coordinator, gateway, achievement_id,
    ):
        gateway.credit_xp.side_effect = RuntimeError("xp service down")
        rule = _rule(achievement_id, reward_xp=50, reward_tokens=10, reward_reputation=5)
        outcome = coordinator.apply("u1", rule, Progress(5, 5, True))
        assert outcome is CompletionOutcome.COMPLETED
        gateway.credit_token.assert_called_once()
        gateway.credit_reputation.assert_called_once()
        assert _row(db_engine, "u1", achievement_id).is_completed is True

    def test_dispatch_reports_per_channel(self, coordinator, gateway, achievement_id):
        gateway.credit_token.side_effect = RuntimeError("wallet down")
        result = coordinator.dispatch_rewards(
            "u1", _rule(achievement_id, reward_xp=1, reward_tokens=1),
        )
        assert result == {"xp": True, "token": False}

    def test_complete_without_rewards(self, coordinator, gateway, achievement_id):
        won = coordinator.complete(
            "u1", _rule(achievement_id, reward_xp=50), {}, {"manually_awarded": True},
            grant_rewards=False,
        )
        assert won is True
        gateway.credit_xp.assert_not_called()

    def test_completed_ids(self, coordinator, achievement_id):
        coordinator.apply("u1", _rule(achievement_id), Progress(5, 5, True))
        assert coordinator.completed_ids("u1", [achievement_id, 999]) == {achievement_id}
        assert coordinator.completed_ids("u2", [achievement_id]) == set()
        assert coordinator.completed_ids("u1", []) == set()

    def test_unsupported_dialect(self):
        engine = MagicMock()
        engine.dialect.name = "mysql"
        with pytest.raises(RuntimeError, match="mysql"):
            CompletionCoordinator(engine)


# ===========================================================================
# Processor
# ===========================================================================
@pytest.fixture
def pipeline(db_engine, coordinator):
    store = EventStore(db_engine)
    processor = AchievementProcessor(store, AchievementCache(db_engine), coordinator)
    return EventEmitter(db_engine), store, processor


def _drain(store: EventStore, processor: AchievementProcessor):
    """Process every pending event the way the scheduler does."""
    results = []
    for event in store.fetch_pending(100):
        assert store.claim(event.id)
        results.append(processor.process_event(event))
        store.mark_completed(event.id)
    return results


class TestProcessor:
    def test_conversation_starter_flow(self, db_engine, pipeline, gateway, achievement_id):
        emitter, store, processor = pipeline
        for i in range(4):
            emitter.emit_post_created("u1", post_id=i, thread_id=1, content="reply")
        _drain(store, processor)

        row = _row(db_engine, "u1", achievement_id)
        assert row.progress_percentage == pytest.approx(80.0)
        assert row.is_completed is False

        fifth = emitter.emit_post_created("u1", post_id=5, thread_id=1).event_ids[0]
        [result] = _drain(store, processor)
        assert result.event_id == fifth
        assert result.completed == ["conversation_starter"]
        gateway.credit_xp.assert_called_once()

        # Processing the fifth event again pays nothing.
        [event] = [e for e in store.load_history("u1") if e.id == fifth]
        again = processor.process_event(event)
        assert again.outcomes["conversation_starter"] is CompletionOutcome.ALREADY_COMPLETED
        gateway.credit_xp.assert_called_once()

    def test_moon_post_completes_immediately(self, db_engine, pipeline):
        emitter, store, processor = pipeline
        moon_id = add_achievement(db_engine, "moon_boy", "event", {
            "event_type": "post_created",
            "conditions": [{"field": "content", "operation": "contains", "value": "moon"}],
        })
        emitter.emit_post_created("u1", post_id=1, thread_id=1, content="wen moon")
        [result] = _drain(store, processor)
        assert "moon_boy" in result.completed
        assert _row(db_engine, "u1", moon_id).is_completed is True

    def test_unrelated_event_matches_nothing(self, pipeline, achievement_id):
        emitter, store, processor = pipeline
        emitter.emit_user_login("u1")
        [result] = _drain(store, processor)
        assert result.matched == 0
        assert result.outcomes == {}

    def test_inactive_achievement_not_evaluated(self, db_engine, pipeline):
        emitter, store, processor = pipeline
        add_achievement(db_engine, "first_post", "count",
                        {"action": "posts_created", "target": 1}, is_active=False)
        emitter.emit_post_created("u1", post_id=1, thread_id=1)
        [result] = _drain(store, processor)
        assert "first_post" not in result.outcomes

    def test_custom_wallet_loss(self, db_engine, pipeline):
        emitter, store, processor = pipeline
        add_achievement(db_engine, "bag_holder", "custom", {
            "evaluator": "check_wallet_loss",
            "config": {"minimum_loss": 1000, "timeframe_hours": 24},
        })
        for _ in range(3):
            emitter.emit_wallet_loss("u1", loss_amount=400)
        results = _drain(store, processor)
        assert [r.completed for r in results] == [[], [], ["bag_holder"]]

    def test_retroactive_evaluation(self, db_engine, pipeline, coordinator):
        emitter, store, processor = pipeline
        for user in ("a", "b"):
            emitter.emit_post_created(user, post_id=1, thread_id=1)
        emitter.emit_post_created("a", post_id=2, thread_id=1)
        _drain(store, processor)

        new_id = add_achievement(db_engine, "two_posts", "count",
                                 {"action": "posts_created", "target": 2})
        rule = AchievementRule(
            id=new_id, key="two_posts", name="Two Posts",
            trigger=parse_trigger("count", {"action": "posts_created", "target": 2}),
        )
        summary = processor.evaluate_retroactively(rule)
        assert summary == {"completed": 1, "progressed": 1}
        assert _row(db_engine, "a", new_id).is_completed is True
        assert _row(db_engine, "b", new_id).progress_percentage == pytest.approx(50.0)
