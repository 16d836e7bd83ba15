"""
tests/test_evaluators.py — Custom Evaluator Predicates
=======================================================

Each registered heuristic is a pure function of (history, config).
Histories are built in memory relative to a fixed reference time.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import NOW, make_event, make_history

from medallion.database.models import EventType
from medallion.engine.evaluators import EVALUATORS, get_evaluator
from medallion.exceptions import TriggerConfigError, UnknownEvaluatorError


def check(evaluator_id: str, *events, config: dict | None = None, as_of=NOW) -> bool:
    return get_evaluator(evaluator_id).check(make_history(*events, as_of=as_of), config)


class TestRegistry:
    def test_eighteen_evaluators_registered(self):
        assert len(EVALUATORS) == 18

    def test_ids_match_registry_keys(self):
        for key, evaluator in EVALUATORS.items():
            assert evaluator.id == key

    def test_unknown_evaluator(self):
        with pytest.raises(UnknownEvaluatorError):
            get_evaluator("check_nothing")

    def test_unknown_config_key_rejected(self):
        with pytest.raises(TriggerConfigError):
            get_evaluator("check_paper_hands").parse_params({"min_cnt": 3})

    def test_defaults_apply_when_config_empty(self):
        params = get_evaluator("check_wallet_loss").parse_params(None)
        assert params.minimum_loss == 1000
        assert params.timeframe_hours == 24


class TestWalletLoss:
    def test_three_losses_inside_window_sum_past_minimum(self):
        events = [
            make_event(EventType.WALLET_LOSS, {"loss_amount": 400}, hours_ago=h)
            for h in (20, 10, 0)
        ]
        assert check("check_wallet_loss", *events,
                     config={"minimum_loss": 1000, "timeframe_hours": 24})

    def test_same_losses_spread_over_thirty_hours(self):
        events = [
            make_event(EventType.WALLET_LOSS, {"loss_amount": 400}, hours_ago=h)
            for h in (30, 15, 0)
        ]
        assert not check("check_wallet_loss", *events,
                         config={"minimum_loss": 1000, "timeframe_hours": 24})

    def test_missing_amount_counts_as_zero(self):
        events = [make_event(EventType.WALLET_LOSS, {}) for _ in range(5)]
        assert not check("check_wallet_loss", *events)

    def test_events_after_as_of_are_invisible(self):
        events = [
            make_event(EventType.WALLET_LOSS, {"loss_amount": 600}, hours_ago=1),
            make_event(EventType.WALLET_LOSS, {"loss_amount": 600}, at=NOW + timedelta(hours=1)),
        ]
        assert not check("check_wallet_loss", *events)


class TestHolding:
    def test_diamond_hands(self):
        ok = make_event(EventType.DIAMOND_HANDS, {"hold_duration_days": 45, "max_drawdown": 60})
        short = make_event(EventType.DIAMOND_HANDS, {"hold_duration_days": 10, "max_drawdown": 80})
        assert check("check_diamond_hands", ok)
        assert not check("check_diamond_hands", short)

    def test_hodl_mentality(self):
        year = make_event(EventType.DIAMOND_HANDS,
                          {"hold_duration_days": 400, "resisted_sell_signals": 3})
        assert check("check_hodl_mentality", year, config={"min_resisted_sell_signals": 2})
        assert not check("check_hodl_mentality", year, config={"min_resisted_sell_signals": 5})

    def test_loss_recovery_requires_later_return(self):
        loss = make_event(EventType.WALLET_LOSS, {"loss_amount": 5000}, hours_ago=48)
        recovered = make_event(EventType.DIAMOND_HANDS, {"final_return": 8000}, hours_ago=1)
        earlier = make_event(EventType.DIAMOND_HANDS, {"final_return": 8000}, hours_ago=72)
        assert check("check_loss_recovery", loss, recovered)
        assert not check("check_loss_recovery", loss, earlier)


class TestFrequency:
    def test_paper_hands_in_window(self):
        sells = [make_event(EventType.PAPER_HANDS, hours_ago=h) for h in (100, 50, 1)]
        assert check("check_paper_hands", *sells)

    def test_paper_hands_outside_window(self):
        sells = [make_event(EventType.PAPER_HANDS, hours_ago=h) for h in (200, 50, 1)]
        assert not check("check_paper_hands", *sells)

    def test_shoutbox_spam(self):
        msgs = [make_event(EventType.SHOUTBOX_MESSAGE, hours_ago=m / 60) for m in range(5)]
        assert check("check_shoutbox_spam", *msgs, config={"min_messages": 5})
        assert not check("check_shoutbox_spam", *msgs, config={"min_messages": 6})

    def test_fomo_master_counts_every_type_by_default(self):
        events = [
            make_event(EventType.POST_CREATED),
            make_event(EventType.TIP_SENT),
            make_event(EventType.LIKE_GIVEN),
        ]
        assert check("check_fomo_master", *events, config={"min_events": 3})
        assert not check("check_fomo_master", *events,
                         config={"min_events": 3, "event_types": ["post_created"]})

    def test_tip_whale(self):
        tip = make_event(EventType.TIP_SENT, {"amount": 15_000})
        assert check("check_tip_whale", tip)
        assert not check("check_tip_whale", make_event(EventType.TIP_SENT, {"amount": 50}))


class TestQualifiedCounts:
    def test_crash_sentiment_requires_confidence(self):
        sure = [make_event(EventType.CRASH_SENTIMENT, {"confidence": 0.9}) for _ in range(5)]
        unsure = [make_event(EventType.CRASH_SENTIMENT, {"confidence": 0.2}) for _ in range(5)]
        assert check("check_crash_sentiment", *sure)
        assert not check("check_crash_sentiment", *unsure)

    def test_thread_necromancy(self):
        old = [make_event(EventType.THREAD_NECROMANCY, {"thread_age_days": 120}) for _ in range(3)]
        young = [make_event(EventType.THREAD_NECROMANCY, {"thread_age_days": 10}) for _ in range(3)]
        assert check("check_thread_necromancy", *old)
        assert not check("check_thread_necromancy", *young)

    def test_contrarian(self):
        events = [make_event(EventType.CRASH_SENTIMENT) for _ in range(3)]
        assert check("check_contrarian", *events, config={"min_count": 3})

    def test_market_prophet(self):
        good = [make_event(EventType.MARKET_PREDICTION, {"accuracy": 0.9}) for _ in range(9)]
        bad = [make_event(EventType.MARKET_PREDICTION, {"accuracy": 0.1})]
        assert check("check_market_prophet", *good, *bad,
                     config={"min_predictions": 10, "min_accuracy_rate": 0.8})
        assert not check("check_market_prophet", *good,
                         config={"min_predictions": 10})


class TestSequences:
    def test_degen_combo_unordered(self):
        events = [
            make_event(EventType.CRASH_SENTIMENT, hours_ago=3),
            make_event(EventType.WALLET_LOSS, hours_ago=2),
            make_event(EventType.PAPER_HANDS, hours_ago=1),
        ]
        assert check("check_degen_combo", *events)

    def test_degen_combo_ordered_rejects_wrong_order(self):
        events = [
            make_event(EventType.CRASH_SENTIMENT, hours_ago=3),
            make_event(EventType.WALLET_LOSS, hours_ago=2),
            make_event(EventType.PAPER_HANDS, hours_ago=1),
        ]
        assert not check("check_degen_combo", *events, config={"ordered": True})

    def test_degen_combo_ordered_accepts_listed_order(self):
        events = [
            make_event(EventType.WALLET_LOSS, hours_ago=3),
            make_event(EventType.PAPER_HANDS, hours_ago=2),
            make_event(EventType.CRASH_SENTIMENT, hours_ago=1),
        ]
        assert check("check_degen_combo", *events, config={"ordered": True})

    def test_degen_combo_missing_type(self):
        events = [make_event(EventType.WALLET_LOSS), make_event(EventType.PAPER_HANDS)]
        assert not check("check_degen_combo", *events)


class TestKeywordsAndTime:
    def test_panic_poster_with_crash_keyword(self):
        posts = [
            make_event(EventType.POST_CREATED, {"content": "we are so rekt"}, hours_ago=1),
            make_event(EventType.POST_CREATED, {"content": "gm"}, hours_ago=0.5),
        ]
        assert check("check_panic_poster", *posts, config={"min_posts": 2})

    def test_panic_poster_without_crash_signal(self):
        posts = [make_event(EventType.POST_CREATED, {"content": "gm"}) for _ in range(3)]
        assert not check("check_panic_poster", *posts, config={"min_posts": 3})

    def test_panic_poster_with_sentiment_event(self):
        posts = [make_event(EventType.POST_CREATED, {"content": "gm"}) for _ in range(3)]
        signal = make_event(EventType.CRASH_SENTIMENT, {"confidence": 0.5})
        assert check("check_panic_poster", *posts, signal, config={"min_posts": 3})

    def test_weekend_warrior(self):
        saturday = datetime(2026, 3, 7, 15, 0, tzinfo=UTC)
        posts = [make_event(EventType.POST_CREATED, at=saturday) for _ in range(2)]
        weekday = [make_event(EventType.POST_CREATED, at=NOW) for _ in range(2)]
        assert check("check_weekend_warrior", *posts, config={"min_posts": 2},
                     as_of=saturday)
        assert not check("check_weekend_warrior", *weekday, config={"min_posts": 2})

    def test_night_owl_wraps_midnight(self):
        late = datetime(2026, 3, 3, 23, 30, tzinfo=UTC)
        early = datetime(2026, 3, 4, 4, 0, tzinfo=UTC)
        noon = datetime(2026, 3, 4, 11, 0, tzinfo=UTC)
        posts = [make_event(EventType.POST_CREATED, at=t) for t in (late, early, noon)]
        assert check("check_night_owl", *posts, config={"min_posts": 2})
        assert not check("check_night_owl", *posts, config={"min_posts": 3})

    def test_meme_lord_custom_keywords(self):
        posts = [make_event(EventType.POST_CREATED, {"content": "Such WAGMI energy"})]
        assert check("check_meme_lord", *posts, config={"min_posts": 1, "keywords": ["wagmi"]})

    def test_moon_mission(self):
        posts = [make_event(EventType.POST_CREATED, {"content": "to the moon"}) for _ in range(2)]
        assert check("check_moon_mission", *posts, config={"min_posts": 2})
        assert not check("check_moon_mission", *posts, config={"min_posts": 3})
