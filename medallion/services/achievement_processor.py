"""
medallion.services.achievement_processor — Per-Event Pipeline
==============================================================

Runs one claimed event through resolver → progress evaluator →
completion coordinator.  Exceptions propagate: the scheduler owns the
decision to mark the event failed.

Also hosts retroactive evaluation, used when an admin publishes an
achievement that should be granted to everyone who already qualifies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from medallion.database.models import TriggerType
from medallion.engine.cache import AchievementCache, AchievementRule
from medallion.engine.history import EventHistory, EventRecord
from medallion.engine.progress import Progress, evaluate
from medallion.engine.resolver import resolve
from medallion.services.completion_service import CompletionCoordinator, CompletionOutcome
from medallion.services.event_store import EventStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessResult:
    """What happened to one event, keyed by achievement key."""

    event_id: int | None
    matched: int = 0
    outcomes: dict[str, CompletionOutcome] = field(default_factory=dict)

    @property
    def completed(self) -> list[str]:
        return [k for k, o in self.outcomes.items() if o is CompletionOutcome.COMPLETED]


class AchievementProcessor:
    """Evaluate events against the active catalog.

    Parameters
    ----------
    store : Event log access (history reads).
    cache : Active achievement set.
    coordinator : Progress / completion writer.
    """

    def __init__(
        self,
        store: EventStore,
        cache: AchievementCache,
        coordinator: CompletionCoordinator,
    ) -> None:
        self._store = store
        self._cache = cache
        self._coordinator = coordinator

    def process_event(self, event: EventRecord) -> ProcessResult:
        """Evaluate every achievement *event* could advance for its user."""
        result = ProcessResult(event_id=event.id)
        rules = resolve(self._cache.get_active_rules(), event.event_type)
        result.matched = len(rules)
        if not rules:
            return result

        done = self._coordinator.completed_ids(event.user_id, (r.id for r in rules))
        pending = [r for r in rules if r.id not in done]
        for rule in rules:
            if rule.id in done:
                result.outcomes[rule.key] = CompletionOutcome.ALREADY_COMPLETED
        if not pending:
            return result

        history = self._store.load_history(
            event.user_id, as_of=event.triggered_at, current_id=event.id,
        )
        for rule in pending:
            progress = evaluate(rule.trigger, history, event)
            if progress is None:
                continue
            result.outcomes[rule.key] = self._coordinator.apply(
                event.user_id, rule, progress, event_id=event.id,
            )

        if result.completed:
            logger.info(
                "Event %s (%s) completed %s for %s",
                event.id, event.event_type, result.completed, event.user_id,
            )
        return result

    # -------------------------------------------------------------------
    # Retroactive evaluation
    # -------------------------------------------------------------------
    def evaluate_user(self, user_id: str, rule: AchievementRule) -> Progress | None:
        """Evaluate *rule* against the user's whole settled history.

        ``event`` triggers have no single triggering event here; any past
        event that satisfies the conditions counts.
        """
        history = self._store.load_history(user_id, as_of=datetime.now(UTC))
        if rule.trigger.kind == TriggerType.EVENT:
            best: Progress | None = None
            for past in history.settled(rule.trigger.event_type):
                best = evaluate(rule.trigger, history, past)
                if best is not None and best.is_completed:
                    return best
            return best
        latest = history.events[-1] if len(history) else None
        return evaluate(rule.trigger, _settled_only(history), latest)

    def evaluate_retroactively(self, rule: AchievementRule) -> dict[str, int]:
        """Apply *rule* to every user in the log.

        Returns counts per :class:`CompletionOutcome` value.
        """
        summary: dict[str, int] = {}
        for user_id in self._store.distinct_users():
            progress = self.evaluate_user(user_id, rule)
            if progress is None:
                continue
            outcome = self._coordinator.apply(user_id, rule, progress)
            summary[outcome.value] = summary.get(outcome.value, 0) + 1
        logger.info("Retroactive evaluation of %s: %s", rule.key, summary)
        return summary


def _settled_only(history: EventHistory) -> EventHistory:
    """History restricted to settled events, for replays outside the scheduler."""
    return EventHistory(history.settled(), as_of=history.as_of)
