"""
medallion.exceptions — Errors surfaced to admin callers
========================================================

Emission and background processing never raise into producer code; these
exceptions exist for the synchronous admin surface, where validation and
lookup failures must reach the caller.
"""

from __future__ import annotations


class MedallionError(Exception):
    """Base class for all errors raised by Medallion."""


class CatalogValidationError(MedallionError, ValueError):
    """An achievement definition was rejected before it reached the database."""


class TriggerConfigError(CatalogValidationError):
    """A trigger_config does not match the shape its trigger_type requires."""


class UnknownEvaluatorError(TriggerConfigError):
    """A custom trigger names an evaluator id that is not registered."""

    def __init__(self, evaluator_id: str) -> None:
        super().__init__(f"Unknown custom evaluator: {evaluator_id!r}")
        self.evaluator_id = evaluator_id


class AchievementNotFoundError(MedallionError, LookupError):
    """No achievement definition exists with the requested id."""

    def __init__(self, achievement_id: int) -> None:
        super().__init__(f"Achievement {achievement_id} not found")
        self.achievement_id = achievement_id
