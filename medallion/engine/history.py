"""
medallion.engine.history — Immutable Event-History Snapshots
=============================================================

Evaluators never touch the database.  The processor loads one user's
event log once per triggering event and hands an :class:`EventHistory`
to every evaluation, so each predicate is a pure function of
``(history, config)`` and can be replayed in tests with hand-built
records.

All time windows are anchored at ``history.as_of`` (the triggering
event's timestamp), not at wall-clock "now".
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from medallion.database.models import ProcessingStatus


def as_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes even for ``timezone=True`` columns;
    naive values are taken to be UTC already.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def lookup_path(data: dict[str, Any] | None, path: str) -> Any:
    """Resolve a dotted *path* (``"market.asset"``) inside a payload dict.

    Returns ``None`` when any segment is missing or not a mapping.
    """
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def as_number(value: Any, default: float = 0.0) -> float:
    """Coerce a payload value to float, falling back to *default*."""
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# EventRecord — one row of the log, detached from the ORM
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EventRecord:
    """Detached copy of an ``achievement_events`` row.

    Parameters
    ----------
    id : Row id (``None`` for records built in memory).
    event_type : One of :class:`~medallion.database.models.EventType`.
    data : The event payload.
    triggered_at : When the event happened (aware, UTC).
    status : Processing status at load time.
    user_id : Owner of the event.
    """

    id: int | None
    event_type: str
    data: dict[str, Any] = field(default_factory=dict)
    triggered_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: str = ProcessingStatus.COMPLETED
    user_id: str = ""

    def get(self, path: str, default: Any = None) -> Any:
        value = lookup_path(self.data, path)
        return default if value is None else value

    def number(self, path: str, default: float = 0.0) -> float:
        return as_number(lookup_path(self.data, path), default)

    def text(self, path: str = "content") -> str:
        value = lookup_path(self.data, path)
        return value if isinstance(value, str) else ""

    @classmethod
    def from_row(cls, row: Any) -> EventRecord:
        """Build a record from an ``AchievementEvent`` ORM instance."""
        return cls(
            id=row.id,
            event_type=row.event_type,
            data=dict(row.event_data or {}),
            triggered_at=as_utc(row.triggered_at),
            status=row.processing_status,
            user_id=row.user_id,
        )


# ---------------------------------------------------------------------------
# EventHistory — ordered, windowable view over one user's log
# ---------------------------------------------------------------------------
class EventHistory:
    """Chronological view of one user's events up to ``as_of``.

    *current_id* identifies the event being processed right now.  It is
    treated as settled even though its status is still ``processing``.
    """

    __slots__ = ("_events", "as_of", "current_id")

    def __init__(
        self,
        events: Iterable[EventRecord],
        as_of: datetime,
        current_id: int | None = None,
    ) -> None:
        self.as_of = as_utc(as_of)
        self.current_id = current_id
        self._events: tuple[EventRecord, ...] = tuple(sorted(
            (e for e in events if e.triggered_at <= self.as_of),
            key=lambda e: (e.triggered_at, e.id or 0),
        ))

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(self._events)

    @property
    def events(self) -> Sequence[EventRecord]:
        return self._events

    def of_type(self, *event_types: str) -> list[EventRecord]:
        """All events of the given types (all events if none given)."""
        if not event_types:
            return list(self._events)
        wanted = set(event_types)
        return [e for e in self._events if e.event_type in wanted]

    def within(self, window: timedelta, *event_types: str) -> list[EventRecord]:
        """Events of the given types in the half-open window ``(as_of - window, as_of]``."""
        start = self.as_of - window
        return [e for e in self.of_type(*event_types) if e.triggered_at > start]

    def within_hours(self, hours: float, *event_types: str) -> list[EventRecord]:
        return self.within(timedelta(hours=hours), *event_types)

    def settled(self, *event_types: str) -> list[EventRecord]:
        """Events already processed successfully, plus the current one.

        Count and threshold triggers only credit settled events, so an
        event that later fails is never counted.
        """
        return [
            e for e in self.of_type(*event_types)
            if e.status == ProcessingStatus.COMPLETED
            or (self.current_id is not None and e.id == self.current_id)
        ]
