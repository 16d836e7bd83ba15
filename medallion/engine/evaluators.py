"""
medallion.engine.evaluators — Custom Evaluator Registry
========================================================

Registry of the heuristic predicates behind ``custom`` triggers.  Each
evaluator is a small class with:

* a stable ``id`` (what ``trigger_config["evaluator"]`` names),
* a pydantic ``Params`` model holding its tunables and their defaults,
  validated when the achievement is created, not when it is evaluated,
* the event types it ``listens_to`` (empty means every type),
* a pure ``evaluate(history, params) -> bool``.

This module is pure calculation — no database I/O.  Windows are anchored
at ``history.as_of`` so a predicate gives the same answer when replayed.
"""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from medallion.constants import CRASH_KEYWORDS, MEME_KEYWORDS, MOON_KEYWORDS, contains_keyword
from medallion.database.models import EventType
from medallion.engine.history import EventHistory
from medallion.exceptions import TriggerConfigError, UnknownEvaluatorError


class EvaluatorParams(BaseModel):
    """Base for evaluator tunables.  Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class CustomEvaluator:
    id: ClassVar[str]
    description: ClassVar[str] = ""
    listens_to: ClassVar[frozenset[str]] = frozenset()
    Params: ClassVar[type[EvaluatorParams]] = EvaluatorParams

    def parse_params(self, config: dict[str, Any] | None) -> EvaluatorParams:
        """Validate *config* against :attr:`Params`.

        Raises
        ------
        TriggerConfigError
            If a key is unknown or a value has the wrong type / range.
        """
        try:
            return self.Params.model_validate(config or {})
        except ValidationError as exc:
            first = exc.errors()[0]
            where = ".".join(str(p) for p in first["loc"]) or "config"
            raise TriggerConfigError(
                f"Invalid config for evaluator {self.id!r}: {where}: {first['msg']}"
            ) from exc

    def check(self, history: EventHistory, config: dict[str, Any] | None) -> bool:
        return self.evaluate(history, self.parse_params(config))

    def evaluate(self, history: EventHistory, params: Any) -> bool:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id!r}>"


# ---------------------------------------------------------------------------
# Magnitude over a window
# ---------------------------------------------------------------------------
class WalletLossParams(EvaluatorParams):
    minimum_loss: float = Field(1000, ge=0)
    timeframe_hours: float = Field(24, gt=0)


class WalletLossEvaluator(CustomEvaluator):
    """Cumulative ``loss_amount`` within the window reaches ``minimum_loss``."""

    id = "check_wallet_loss"
    description = "Lose big within a short window"
    listens_to = frozenset({EventType.WALLET_LOSS})
    Params = WalletLossParams

    def evaluate(self, history: EventHistory, params: WalletLossParams) -> bool:
        losses = history.within_hours(params.timeframe_hours, EventType.WALLET_LOSS)
        total = sum(e.number("loss_amount") for e in losses)
        return total >= params.minimum_loss


class TipWhaleParams(EvaluatorParams):
    min_tip_amount: float = Field(10_000, gt=0)
    timeframe_hours: float = Field(24, gt=0)


class TipWhaleEvaluator(CustomEvaluator):
    """A single tip of at least ``min_tip_amount`` within the window."""

    id = "check_tip_whale"
    description = "Send one enormous tip"
    listens_to = frozenset({EventType.TIP_SENT})
    Params = TipWhaleParams

    def evaluate(self, history: EventHistory, params: TipWhaleParams) -> bool:
        tips = history.within_hours(params.timeframe_hours, EventType.TIP_SENT)
        return any(e.number("amount") >= params.min_tip_amount for e in tips)


# ---------------------------------------------------------------------------
# Duration and drawdown
# ---------------------------------------------------------------------------
class DiamondHandsParams(EvaluatorParams):
    min_hold_days: float = Field(30, ge=0)
    min_drawdown_percent: float = Field(50, ge=0)


class DiamondHandsEvaluator(CustomEvaluator):
    """Held a position for ``min_hold_days`` through a ``min_drawdown_percent`` drop."""

    id = "check_diamond_hands"
    description = "Hold through a deep drawdown"
    listens_to = frozenset({EventType.DIAMOND_HANDS})
    Params = DiamondHandsParams

    def evaluate(self, history: EventHistory, params: DiamondHandsParams) -> bool:
        return any(
            e.number("hold_duration_days") >= params.min_hold_days
            and e.number("max_drawdown") >= params.min_drawdown_percent
            for e in history.of_type(EventType.DIAMOND_HANDS)
        )


class HodlMentalityParams(EvaluatorParams):
    min_hold_days: float = Field(365, ge=0)
    min_resisted_sell_signals: int = Field(0, ge=0)


class HodlMentalityEvaluator(CustomEvaluator):
    id = "check_hodl_mentality"
    description = "Hold a position for a full year"
    listens_to = frozenset({EventType.DIAMOND_HANDS})
    Params = HodlMentalityParams

    def evaluate(self, history: EventHistory, params: HodlMentalityParams) -> bool:
        return any(
            e.number("hold_duration_days") >= params.min_hold_days
            and e.number("resisted_sell_signals") >= params.min_resisted_sell_signals
            for e in history.of_type(EventType.DIAMOND_HANDS)
        )


# ---------------------------------------------------------------------------
# Frequency within a window
# ---------------------------------------------------------------------------
class PaperHandsParams(EvaluatorParams):
    min_count: int = Field(3, ge=1)
    timeframe_hours: float = Field(168, gt=0)


class PaperHandsEvaluator(CustomEvaluator):
    id = "check_paper_hands"
    description = "Panic-sell repeatedly within a week"
    listens_to = frozenset({EventType.PAPER_HANDS})
    Params = PaperHandsParams

    def evaluate(self, history: EventHistory, params: PaperHandsParams) -> bool:
        sells = history.within_hours(params.timeframe_hours, EventType.PAPER_HANDS)
        return len(sells) >= params.min_count


class ShoutboxSpamParams(EvaluatorParams):
    min_messages: int = Field(50, ge=1)
    timeframe_hours: float = Field(1, gt=0)


class ShoutboxSpamEvaluator(CustomEvaluator):
    id = "check_shoutbox_spam"
    description = "Flood the shoutbox"
    listens_to = frozenset({EventType.SHOUTBOX_MESSAGE})
    Params = ShoutboxSpamParams

    def evaluate(self, history: EventHistory, params: ShoutboxSpamParams) -> bool:
        messages = history.within_hours(params.timeframe_hours, EventType.SHOUTBOX_MESSAGE)
        return len(messages) >= params.min_messages


class FomoMasterParams(EvaluatorParams):
    min_events: int = Field(10, ge=1)
    timeframe_hours: float = Field(168, gt=0)
    event_types: list[EventType] | None = None


class FomoMasterEvaluator(CustomEvaluator):
    """Any ``min_events`` activity (optionally of given types) within the window."""

    id = "check_fomo_master"
    description = "Jump on everything at once"
    Params = FomoMasterParams

    def evaluate(self, history: EventHistory, params: FomoMasterParams) -> bool:
        types = params.event_types or ()
        return len(history.within_hours(params.timeframe_hours, *types)) >= params.min_events


# ---------------------------------------------------------------------------
# Threshold counts over qualifying payloads
# ---------------------------------------------------------------------------
class CrashSentimentParams(EvaluatorParams):
    min_count: int = Field(5, ge=1)
    min_confidence: float = Field(0.7, ge=0, le=1)


class CrashSentimentEvaluator(CustomEvaluator):
    id = "check_crash_sentiment"
    description = "Call the crash with conviction"
    listens_to = frozenset({EventType.CRASH_SENTIMENT})
    Params = CrashSentimentParams

    def evaluate(self, history: EventHistory, params: CrashSentimentParams) -> bool:
        confident = [
            e for e in history.of_type(EventType.CRASH_SENTIMENT)
            if e.number("confidence") >= params.min_confidence
        ]
        return len(confident) >= params.min_count


class ThreadNecromancyParams(EvaluatorParams):
    min_count: int = Field(3, ge=1)
    min_thread_age_days: float = Field(90, ge=0)


class ThreadNecromancyEvaluator(CustomEvaluator):
    id = "check_thread_necromancy"
    description = "Revive long-dead threads"
    listens_to = frozenset({EventType.THREAD_NECROMANCY})
    Params = ThreadNecromancyParams

    def evaluate(self, history: EventHistory, params: ThreadNecromancyParams) -> bool:
        revived = [
            e for e in history.of_type(EventType.THREAD_NECROMANCY)
            if e.number("thread_age_days") >= params.min_thread_age_days
        ]
        return len(revived) >= params.min_count


class ContrarianParams(EvaluatorParams):
    min_count: int = Field(25, ge=1)


class ContrarianEvaluator(CustomEvaluator):
    id = "check_contrarian"
    description = "Stay bearish while everyone else is bullish"
    listens_to = frozenset({EventType.CRASH_SENTIMENT})
    Params = ContrarianParams

    def evaluate(self, history: EventHistory, params: ContrarianParams) -> bool:
        return len(history.of_type(EventType.CRASH_SENTIMENT)) >= params.min_count


# ---------------------------------------------------------------------------
# Accuracy over a population of samples
# ---------------------------------------------------------------------------
class MarketProphetParams(EvaluatorParams):
    min_predictions: int = Field(10, ge=1)
    accuracy_threshold: float = Field(0.8, ge=0, le=1)
    min_accuracy_rate: float = Field(0.8, ge=0, le=1)


class MarketProphetEvaluator(CustomEvaluator):
    """Enough predictions, and a large enough share of them accurate."""

    id = "check_market_prophet"
    description = "Predict the market, repeatedly and correctly"
    listens_to = frozenset({EventType.MARKET_PREDICTION})
    Params = MarketProphetParams

    def evaluate(self, history: EventHistory, params: MarketProphetParams) -> bool:
        predictions = history.of_type(EventType.MARKET_PREDICTION)
        if len(predictions) < params.min_predictions:
            return False
        accurate = sum(
            1 for e in predictions if e.number("accuracy") >= params.accuracy_threshold
        )
        return accurate / len(predictions) >= params.min_accuracy_rate


# ---------------------------------------------------------------------------
# Sequences
# ---------------------------------------------------------------------------
_DEGEN_COMBO = [EventType.WALLET_LOSS, EventType.PAPER_HANDS, EventType.CRASH_SENTIMENT]


class DegenComboParams(EvaluatorParams):
    required_events: list[EventType] = Field(
        default_factory=lambda: list(_DEGEN_COMBO), min_length=1
    )
    timeframe_hours: float = Field(24, gt=0)
    ordered: bool = False


class DegenComboEvaluator(CustomEvaluator):
    """Every required event type seen within the window.

    With ``ordered`` set, they must also occur in the listed order.
    """

    id = "check_degen_combo"
    description = "Lose, panic-sell and doom-post in one day"
    listens_to = frozenset(_DEGEN_COMBO)
    Params = DegenComboParams

    def evaluate(self, history: EventHistory, params: DegenComboParams) -> bool:
        recent = history.within_hours(params.timeframe_hours)
        if not params.ordered:
            seen = {e.event_type for e in recent}
            return all(t in seen for t in params.required_events)

        step = 0
        for event in recent:
            if event.event_type == params.required_events[step]:
                step += 1
                if step == len(params.required_events):
                    return True
        return False


class LossRecoveryParams(EvaluatorParams):
    min_loss: float = Field(5000, gt=0)
    recovery_multiplier: float = Field(1.5, gt=0)


class LossRecoveryEvaluator(CustomEvaluator):
    """A big loss followed later by a hold that returned ``multiplier`` × the loss."""

    id = "check_loss_recovery"
    description = "Come back from a brutal loss"
    listens_to = frozenset({EventType.WALLET_LOSS, EventType.DIAMOND_HANDS})
    Params = LossRecoveryParams

    def evaluate(self, history: EventHistory, params: LossRecoveryParams) -> bool:
        losses = [
            e for e in history.of_type(EventType.WALLET_LOSS)
            if e.number("loss_amount") >= params.min_loss
        ]
        recoveries = history.of_type(EventType.DIAMOND_HANDS)
        for loss in losses:
            needed = loss.number("loss_amount") * params.recovery_multiplier
            if any(
                r.triggered_at > loss.triggered_at and r.number("final_return") >= needed
                for r in recoveries
            ):
                return True
        return False


# ---------------------------------------------------------------------------
# Frequency plus keyword
# ---------------------------------------------------------------------------
class PanicPosterParams(EvaluatorParams):
    min_posts: int = Field(10, ge=1)
    timeframe_hours: float = Field(4, gt=0)
    crash_keywords: list[str] = Field(default_factory=lambda: list(CRASH_KEYWORDS))


class PanicPosterEvaluator(CustomEvaluator):
    """A burst of posts during a crash.

    The crash signal is either a ``crash_sentiment`` event or a post that
    mentions a crash keyword, inside the same window as the burst.
    """

    id = "check_panic_poster"
    description = "Post frantically while the market burns"
    listens_to = frozenset({EventType.POST_CREATED, EventType.CRASH_SENTIMENT})
    Params = PanicPosterParams

    def evaluate(self, history: EventHistory, params: PanicPosterParams) -> bool:
        posts = history.within_hours(params.timeframe_hours, EventType.POST_CREATED)
        if len(posts) < params.min_posts:
            return False
        if history.within_hours(params.timeframe_hours, EventType.CRASH_SENTIMENT):
            return True
        keywords = tuple(k.lower() for k in params.crash_keywords)
        return any(contains_keyword(p.text(), keywords) for p in posts)


# ---------------------------------------------------------------------------
# Temporal buckets
# ---------------------------------------------------------------------------
class WeekendWarriorParams(EvaluatorParams):
    min_posts: int = Field(20, ge=1)


class WeekendWarriorEvaluator(CustomEvaluator):
    id = "check_weekend_warrior"
    description = "Post on Saturdays and Sundays (UTC)"
    listens_to = frozenset({EventType.POST_CREATED})
    Params = WeekendWarriorParams

    def evaluate(self, history: EventHistory, params: WeekendWarriorParams) -> bool:
        weekend = [
            e for e in history.of_type(EventType.POST_CREATED)
            if e.triggered_at.weekday() >= 5
        ]
        return len(weekend) >= params.min_posts


class NightOwlParams(EvaluatorParams):
    min_posts: int = Field(50, ge=1)
    start_hour: int = Field(22, ge=0, le=23)
    end_hour: int = Field(6, ge=0, le=23)


class NightOwlEvaluator(CustomEvaluator):
    """Posts whose UTC hour falls in ``[start_hour, end_hour]``, wrapping midnight."""

    id = "check_night_owl"
    description = "Post in the small hours"
    listens_to = frozenset({EventType.POST_CREATED})
    Params = NightOwlParams

    @staticmethod
    def _in_range(hour: int, start: int, end: int) -> bool:
        if start <= end:
            return start <= hour <= end
        return hour >= start or hour <= end

    def evaluate(self, history: EventHistory, params: NightOwlParams) -> bool:
        late = [
            e for e in history.of_type(EventType.POST_CREATED)
            if self._in_range(e.triggered_at.hour, params.start_hour, params.end_hour)
        ]
        return len(late) >= params.min_posts


# ---------------------------------------------------------------------------
# Payload keywords
# ---------------------------------------------------------------------------
class MemeLordParams(EvaluatorParams):
    min_posts: int = Field(100, ge=1)
    keywords: list[str] = Field(default_factory=lambda: list(MEME_KEYWORDS), min_length=1)


class MemeLordEvaluator(CustomEvaluator):
    id = "check_meme_lord"
    description = "Speak fluent meme"
    listens_to = frozenset({EventType.POST_CREATED})
    Params = MemeLordParams

    def evaluate(self, history: EventHistory, params: MemeLordParams) -> bool:
        keywords = tuple(k.lower() for k in params.keywords)
        memes = [
            e for e in history.of_type(EventType.POST_CREATED)
            if contains_keyword(e.text(), keywords)
        ]
        return len(memes) >= params.min_posts


class MoonMissionParams(EvaluatorParams):
    min_posts: int = Field(50, ge=1)
    keywords: list[str] = Field(default_factory=lambda: list(MOON_KEYWORDS), min_length=1)


class MoonMissionEvaluator(CustomEvaluator):
    id = "check_moon_mission"
    description = "Relentless optimism about the moon"
    listens_to = frozenset({EventType.POST_CREATED})
    Params = MoonMissionParams

    def evaluate(self, history: EventHistory, params: MoonMissionParams) -> bool:
        keywords = tuple(k.lower() for k in params.keywords)
        moon_posts = [
            e for e in history.of_type(EventType.POST_CREATED)
            if contains_keyword(e.text(), keywords)
        ]
        return len(moon_posts) >= params.min_posts


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
EVALUATORS: dict[str, CustomEvaluator] = {
    evaluator.id: evaluator
    for evaluator in (
        WalletLossEvaluator(),
        DiamondHandsEvaluator(),
        PaperHandsEvaluator(),
        CrashSentimentEvaluator(),
        ThreadNecromancyEvaluator(),
        ShoutboxSpamEvaluator(),
        TipWhaleEvaluator(),
        MarketProphetEvaluator(),
        DegenComboEvaluator(),
        PanicPosterEvaluator(),
        HodlMentalityEvaluator(),
        FomoMasterEvaluator(),
        LossRecoveryEvaluator(),
        WeekendWarriorEvaluator(),
        NightOwlEvaluator(),
        MemeLordEvaluator(),
        ContrarianEvaluator(),
        MoonMissionEvaluator(),
    )
}


def get_evaluator(evaluator_id: str) -> CustomEvaluator:
    """Look up a registered evaluator.

    Raises
    ------
    UnknownEvaluatorError
        If *evaluator_id* is not registered.
    """
    try:
        return EVALUATORS[evaluator_id]
    except KeyError:
        raise UnknownEvaluatorError(evaluator_id) from None
