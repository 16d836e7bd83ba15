"""
medallion.engine.progress — Progress Evaluation Pipeline
=========================================================

Handler-registry implementation of the five progress algorithms.  Each
trigger kind maps to a pure handler ``(trigger, history, event) ->
Progress``:

* **count**     — settled events of the action's type vs. target.
* **threshold** — a derived metric (total or maximum over a payload field).
* **event**     — field conditions on the triggering payload; single-shot.
* **composite** — count-style requirements combined with AND / OR.
* **custom**    — a registered heuristic predicate; binary.

This module is pure calculation — no database I/O.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from medallion.constants import MAX_METRICS, THRESHOLD_METRICS
from medallion.database.models import TriggerType
from medallion.engine.evaluators import get_evaluator
from medallion.engine.history import EventHistory, EventRecord, as_utc, lookup_path
from medallion.engine.triggers import (
    CompositeTrigger,
    CountTrigger,
    CustomTrigger,
    EventCondition,
    EventTrigger,
    ThresholdTrigger,
    TriggerConfig,
)


# ---------------------------------------------------------------------------
# Progress — result of one evaluation
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Progress:
    """Standing of one user against one achievement after one event.

    Parameters
    ----------
    current : Amount achieved so far (events, metric value, met requirements).
    target : Amount required.  Binary checks use ``current`` 0/1 of target 1.
    is_completed : Whether the completion rule holds.
    details : Evaluator-specific working state persisted as ``current_progress``.
    """

    current: float
    target: float
    is_completed: bool
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def percentage(self) -> float:
        if self.target <= 0:
            return 0.0
        return min(self.current / self.target, 1.0) * 100.0

    def snapshot(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "target": self.target,
            "percentage": round(self.percentage, 2),
            **self.details,
        }


def _binary(passed: bool, **details: Any) -> Progress:
    return Progress(current=1 if passed else 0, target=1, is_completed=passed, details=details)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
def metric_value(metric: str, history: EventHistory) -> float:
    """Compute a threshold metric over the user's settled events."""
    event_type, field_name = THRESHOLD_METRICS[metric]
    events = history.settled(event_type)
    if field_name is None:
        return float(len(events))
    values = [e.number(field_name) for e in events]
    if metric in MAX_METRICS:
        return max(values, default=0.0)
    return float(sum(values))


# ---------------------------------------------------------------------------
# Field conditions (event triggers)
# ---------------------------------------------------------------------------
def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=UTC)
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value))
        except ValueError:
            return None
    return None


def condition_holds(condition: EventCondition, event: EventRecord) -> bool:
    """Evaluate one field condition against the triggering event's payload.

    ``within_seconds`` compares a timestamp field with the event's own
    ``triggered_at`` so the check replays identically later.
    """
    actual = lookup_path(event.data, condition.field)
    if actual is None:
        return False

    op = condition.operation
    if op == "equals":
        return actual == condition.value
    if op == "contains":
        if isinstance(actual, list | tuple):
            return condition.value in actual
        return str(condition.value) in str(actual)
    if op in ("greater_than", "less_than"):
        number = _to_float(actual)
        if number is None:
            return False
        return number > condition.value if op == "greater_than" else number < condition.value
    if op == "within_seconds":
        moment = _to_datetime(actual)
        if moment is None:
            return False
        return abs((event.triggered_at - moment).total_seconds()) <= condition.value
    return False


# ---------------------------------------------------------------------------
# Handlers — pure functions (trigger, history, event) → Progress
# ---------------------------------------------------------------------------
def _evaluate_count(
    trigger: CountTrigger, history: EventHistory, event: EventRecord | None,
) -> Progress:
    current = len(history.settled(trigger.event_type))
    return Progress(
        current=current,
        target=trigger.target,
        is_completed=current >= trigger.target,
        details={"action": trigger.action},
    )


def _evaluate_threshold(
    trigger: ThresholdTrigger, history: EventHistory, event: EventRecord | None,
) -> Progress:
    current = metric_value(trigger.metric, history)
    return Progress(
        current=current,
        target=trigger.target,
        is_completed=current >= trigger.target,
        details={"metric": trigger.metric},
    )


def _evaluate_event(
    trigger: EventTrigger, history: EventHistory, event: EventRecord | None,
) -> Progress:
    if event is None or event.event_type != trigger.event_type:
        return _binary(False, event_type=trigger.event_type.value)
    passed = all(condition_holds(c, event) for c in trigger.conditions)
    return _binary(passed, event_type=trigger.event_type.value, event_id=event.id)


def _evaluate_composite(
    trigger: CompositeTrigger, history: EventHistory, event: EventRecord | None,
) -> Progress:
    parts: list[dict[str, Any]] = []
    met = 0
    for req in trigger.requirements:
        current = len(history.settled(req.event_type))
        done = current >= req.target
        met += done
        parts.append({
            "action": req.action,
            "current": current,
            "target": req.target,
            "completed": done,
        })
    total = len(trigger.requirements)
    is_completed = met == total if trigger.operator == "AND" else met >= 1
    return Progress(
        current=met,
        target=total,
        is_completed=is_completed,
        details={"operator": trigger.operator, "requirements": parts},
    )


def _evaluate_custom(
    trigger: CustomTrigger, history: EventHistory, event: EventRecord | None,
) -> Progress:
    passed = get_evaluator(trigger.evaluator).check(history, trigger.config)
    return _binary(passed, evaluator=trigger.evaluator)


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------
PROGRESS_HANDLERS: dict[str, Callable[[Any, EventHistory, EventRecord | None], Progress]] = {
    TriggerType.COUNT: _evaluate_count,
    TriggerType.THRESHOLD: _evaluate_threshold,
    TriggerType.EVENT: _evaluate_event,
    TriggerType.COMPOSITE: _evaluate_composite,
    TriggerType.CUSTOM: _evaluate_custom,
    # TriggerType.MANUAL intentionally omitted: only ever awarded by an admin
}


def evaluate(
    trigger: TriggerConfig,
    history: EventHistory,
    event: EventRecord | None = None,
) -> Progress | None:
    """Evaluate *trigger* for one user.

    Parameters
    ----------
    trigger : Parsed trigger config of the achievement.
    history : The user's event history up to the triggering event.
    event : The triggering event (required for ``event`` triggers).

    Returns
    -------
    The computed :class:`Progress`, or ``None`` for trigger kinds that are
    never evaluated automatically.
    """
    handler = PROGRESS_HANDLERS.get(trigger.kind)
    if handler is None:
        return None
    return handler(trigger, history, event)
