"""
medallion.engine.resolver — Trigger Resolver
=============================================

Given an event type, pick the active achievements whose trigger could be
advanced by it.  Pure filter over the in-memory active set; manual
achievements never match.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from medallion.constants import EVENT_TO_ACTION
from medallion.database.models import TriggerType
from medallion.engine.evaluators import get_evaluator
from medallion.engine.triggers import (
    CompositeTrigger,
    CountTrigger,
    CustomTrigger,
    EventTrigger,
    ThresholdTrigger,
    TriggerConfig,
)

if TYPE_CHECKING:
    from medallion.engine.cache import AchievementRule


def _match_count(trigger: CountTrigger, event_type: str) -> bool:
    return EVENT_TO_ACTION.get(event_type) == trigger.action


def _match_threshold(trigger: ThresholdTrigger, event_type: str) -> bool:
    return trigger.event_type == event_type


def _match_event(trigger: EventTrigger, event_type: str) -> bool:
    return trigger.event_type == event_type


def _match_composite(trigger: CompositeTrigger, event_type: str) -> bool:
    action = EVENT_TO_ACTION.get(event_type)
    return any(req.action == action for req in trigger.requirements)


def _match_custom(trigger: CustomTrigger, event_type: str) -> bool:
    """Explicit ``event_types`` win; otherwise the evaluator's own set.

    An evaluator that declares no event types listens to all of them.
    """
    if trigger.event_types:
        return event_type in trigger.event_types
    listens_to = get_evaluator(trigger.evaluator).listens_to
    return not listens_to or event_type in listens_to


MATCHERS: dict[str, Callable[[Any, str], bool]] = {
    TriggerType.COUNT: _match_count,
    TriggerType.THRESHOLD: _match_threshold,
    TriggerType.EVENT: _match_event,
    TriggerType.COMPOSITE: _match_composite,
    TriggerType.CUSTOM: _match_custom,
}


def trigger_matches(trigger: TriggerConfig, event_type: str) -> bool:
    matcher = MATCHERS.get(trigger.kind)
    return matcher is not None and matcher(trigger, event_type)


def resolve(rules: Iterable[AchievementRule], event_type: str) -> list[AchievementRule]:
    """Return the rules an event of *event_type* could advance, in catalog order."""
    return [rule for rule in rules if trigger_matches(rule.trigger, event_type)]
