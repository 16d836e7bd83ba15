"""
medallion.engine.triggers — Typed Trigger Configurations
=========================================================

Every :class:`~medallion.database.models.TriggerType` owns one pydantic
model describing the shape of ``achievements.trigger_config``.  Configs
are parsed when an achievement is created or updated, and again when the
active set is loaded into the cache, so evaluation code only ever sees
well-formed, typed configs.

Config shapes::

    count      {"action": "posts_created", "target": 5}
    threshold  {"metric": "total_posts", "target": 100}
    event      {"event_type": "post_created",
                "conditions": [{"field": "content", "operation": "contains",
                                "value": "moon"}]}
    composite  {"operator": "AND",
                "requirements": [{"action": "posts_created", "target": 10},
                                 {"action": "likes_received", "target": 5}]}
    custom     {"evaluator": "check_wallet_loss",
                "event_types": ["wallet_loss"],          # optional
                "config": {"minimum_loss": 1000}}
    manual     {}
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from medallion.constants import ACTION_ALIASES, ACTION_TO_EVENT, THRESHOLD_METRICS
from medallion.database.models import EventType, TriggerType
from medallion.engine.evaluators import get_evaluator
from medallion.exceptions import TriggerConfigError

ConditionOperation = Literal["equals", "greater_than", "less_than", "contains", "within_seconds"]


class _TriggerModel(BaseModel):
    model_config = ConfigDict(frozen=True)


def _check_action(action: str) -> str:
    action = action.strip().lower()
    action = ACTION_ALIASES.get(action, action)
    if action not in ACTION_TO_EVENT:
        raise ValueError(f"unknown action {action!r}")
    return action


# ---------------------------------------------------------------------------
# Config models — one per trigger type
# ---------------------------------------------------------------------------
class CountTrigger(_TriggerModel):
    kind: Literal[TriggerType.COUNT] = TriggerType.COUNT
    action: str
    target: int = Field(gt=0)

    @field_validator("action")
    @classmethod
    def _known_action(cls, action: str) -> str:
        return _check_action(action)

    @property
    def event_type(self) -> EventType:
        return ACTION_TO_EVENT[self.action]


class ThresholdTrigger(_TriggerModel):
    kind: Literal[TriggerType.THRESHOLD] = TriggerType.THRESHOLD
    metric: str
    target: float = Field(gt=0)

    @field_validator("metric")
    @classmethod
    def _known_metric(cls, metric: str) -> str:
        if metric not in THRESHOLD_METRICS:
            raise ValueError(
                f"unknown metric {metric!r}; expected one of {sorted(THRESHOLD_METRICS)}"
            )
        return metric

    @property
    def event_type(self) -> EventType:
        return THRESHOLD_METRICS[self.metric][0]


class EventCondition(_TriggerModel):
    field: str = Field(min_length=1)
    operation: ConditionOperation
    value: Any = None

    @model_validator(mode="after")
    def _numeric_operands(self) -> EventCondition:
        if self.operation in ("greater_than", "less_than", "within_seconds"):
            if isinstance(self.value, bool) or not isinstance(self.value, int | float):
                raise ValueError(f"{self.operation} requires a numeric value")
        return self


class EventTrigger(_TriggerModel):
    kind: Literal[TriggerType.EVENT] = TriggerType.EVENT
    event_type: EventType
    conditions: list[EventCondition] = Field(default_factory=list)


class CompositeRequirement(_TriggerModel):
    action: str
    target: int = Field(gt=0)

    @field_validator("action")
    @classmethod
    def _known_action(cls, action: str) -> str:
        return _check_action(action)

    @property
    def event_type(self) -> EventType:
        return ACTION_TO_EVENT[self.action]


class CompositeTrigger(_TriggerModel):
    kind: Literal[TriggerType.COMPOSITE] = TriggerType.COMPOSITE
    requirements: list[CompositeRequirement] = Field(min_length=1)
    operator: Literal["AND", "OR"] = "AND"

    @field_validator("operator", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class CustomTrigger(_TriggerModel):
    kind: Literal[TriggerType.CUSTOM] = TriggerType.CUSTOM
    evaluator: str
    event_types: list[EventType] | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _registered_evaluator(self) -> CustomTrigger:
        get_evaluator(self.evaluator).parse_params(self.config)
        return self


class ManualTrigger(_TriggerModel):
    kind: Literal[TriggerType.MANUAL] = TriggerType.MANUAL


TriggerConfig = (
    CountTrigger | ThresholdTrigger | EventTrigger | CompositeTrigger | CustomTrigger | ManualTrigger
)

TRIGGER_MODELS: dict[str, type[_TriggerModel]] = {
    TriggerType.COUNT: CountTrigger,
    TriggerType.THRESHOLD: ThresholdTrigger,
    TriggerType.EVENT: EventTrigger,
    TriggerType.COMPOSITE: CompositeTrigger,
    TriggerType.CUSTOM: CustomTrigger,
    TriggerType.MANUAL: ManualTrigger,
}

_HINTS: dict[str, str] = {
    TriggerType.COUNT: "Count trigger requires action and numeric target",
    TriggerType.THRESHOLD: "Threshold trigger requires metric and numeric target",
    TriggerType.EVENT: "Event trigger requires event_type and a list of conditions",
    TriggerType.COMPOSITE: "Composite trigger requires a non-empty requirements list",
    TriggerType.CUSTOM: "Custom trigger requires a registered evaluator",
    TriggerType.MANUAL: "Manual trigger takes no configuration",
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse_trigger(trigger_type: str, config: dict[str, Any] | None) -> TriggerConfig:
    """Validate *config* against *trigger_type* and return the typed model.

    Raises
    ------
    TriggerConfigError
        If the trigger type is unknown or the config does not fit it.
    """
    model = TRIGGER_MODELS.get(trigger_type)
    if model is None:
        raise TriggerConfigError(
            f"Unknown trigger_type {trigger_type!r}; "
            f"expected one of {sorted(t.value for t in TriggerType)}"
        )
    payload = {k: v for k, v in (config or {}).items() if k != "kind"}
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        original = (first.get("ctx") or {}).get("error")
        if isinstance(original, TriggerConfigError):
            raise original from exc
        where = ".".join(str(p) for p in first["loc"]) or "trigger_config"
        raise TriggerConfigError(f"{_HINTS[trigger_type]} ({where}: {first['msg']})") from exc


def dump_trigger(trigger: TriggerConfig) -> dict[str, Any]:
    """Serialize a parsed trigger back to the JSON stored in trigger_config."""
    return trigger.model_dump(mode="json", exclude={"kind"}, exclude_none=True)
