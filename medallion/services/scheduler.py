"""
medallion.services.scheduler — Background Achievement Scheduler
================================================================

Drains the event log on a fixed interval:

    Idle ──tick──▶ Draining ──batch done──▶ Idle

* One drain runs immediately on :meth:`AchievementScheduler.start`, then
  one every ``interval_seconds``.
* Drains are single-flight: a tick that arrives while a drain is running
  is skipped, not queued.
* Each event is claimed (``pending → processing``) before it is
  processed; an event another worker already claimed is skipped.
* An exception while processing one event marks only that event failed.
* A failure to fetch the batch aborts the tick; events stay pending and
  are retried next tick.
* :meth:`AchievementScheduler.stop` is cooperative: the running batch
  finishes before the loop exits.

All database work runs through :func:`~medallion.database.engine.run_db`
so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from medallion.database.engine import run_db
from medallion.engine.history import EventRecord
from medallion.services.achievement_processor import AchievementProcessor
from medallion.services.event_store import EventStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DrainReport:
    """Counters for one drain tick."""

    fetched: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    finished_at: str | None = None


class AchievementScheduler:
    """Single-flight polling loop over pending achievement events.

    Usage::

        scheduler = AchievementScheduler(store, processor, interval_seconds=30)
        await scheduler.start()
        ...
        await scheduler.stop()      # lets the current batch finish

    Tests call :meth:`drain` directly for deterministic single ticks.
    """

    def __init__(
        self,
        store: EventStore,
        processor: AchievementProcessor,
        *,
        interval_seconds: float = 30.0,
        batch_size: int = 100,
        stale_claim_after: timedelta | None = None,
    ) -> None:
        self._store = store
        self._processor = processor
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._stale_claim_after = stale_claim_after
        self._draining = False
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._last_report: DrainReport | None = None

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def start(self) -> None:
        """Start the loop in a background task (no-op if already running)."""
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        if self._stale_claim_after is not None:
            try:
                await run_db(self._store.fail_stale_claims, self._stale_claim_after)
            except Exception:
                logger.exception("Stale claim sweep failed", extra={"task": "achievement_drain"})
        self._task = asyncio.create_task(self._run(), name="achievement-scheduler")
        logger.info(
            "Achievement scheduler started (every %.0fs, batch of %d)",
            self.interval_seconds, self.batch_size,
        )

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the running batch to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Achievement scheduler stopped")

    async def _run(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            await self.drain()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                pass

    # -------------------------------------------------------------------
    # One tick
    # -------------------------------------------------------------------
    async def drain(self) -> DrainReport | None:
        """Process one batch.  Returns ``None`` if a drain was already running."""
        if self._draining:
            logger.debug("Drain already in progress — skipping tick")
            return None
        self._draining = True
        try:
            report = await self._drain_batch()
            report.finished_at = datetime.now(UTC).isoformat()
            self._last_report = report
            return report
        finally:
            self._draining = False

    async def _drain_batch(self) -> DrainReport:
        report = DrainReport()
        try:
            batch = await run_db(self._store.fetch_pending, self.batch_size)
        except Exception:
            logger.exception(
                "Fetching pending achievement events failed; retrying next tick",
                extra={"task": "achievement_drain"},
            )
            report.aborted = True
            return report

        report.fetched = len(batch)
        for event in batch:
            await self._process_one(event, report)

        if batch:
            logger.info(
                "Achievement drain: %d fetched, %d completed, %d failed, %d skipped",
                report.fetched, report.completed, report.failed, report.skipped,
            )
        return report

    async def _process_one(self, event: EventRecord, report: DrainReport) -> None:
        try:
            claimed = await run_db(self._store.claim, event.id)
        except Exception:
            logger.exception(
                "Claiming event %s failed; leaving it pending", event.id,
                extra={"task": "achievement_drain"},
            )
            report.skipped += 1
            return
        if not claimed:
            report.skipped += 1
            return

        try:
            await run_db(self._processor.process_event, event)
        except Exception as exc:
            logger.exception(
                "Achievement processing failed for event %s (%s, user %s)",
                event.id, event.event_type, event.user_id,
                extra={"task": "achievement_drain"},
            )
            report.failed += 1
            await self._mark_failed(event.id, f"{type(exc).__name__}: {exc}")
            return

        try:
            await run_db(self._store.mark_completed, event.id)
            report.completed += 1
        except Exception:
            # The row stays in processing until the stale-claim sweep fails it.
            logger.exception(
                "Marking event %s completed failed", event.id,
                extra={"task": "achievement_drain"},
            )
            report.failed += 1

    async def _mark_failed(self, event_id: int, error: str) -> None:
        try:
            await run_db(self._store.mark_failed, event_id, error)
        except Exception:
            logger.exception(
                "Marking event %s failed did not succeed", event_id,
                extra={"task": "achievement_drain"},
            )

    # -------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------
    def status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "is_processing": self._draining,
            "interval_seconds": self.interval_seconds,
            "batch_size": self.batch_size,
            "last_drain": asdict(self._last_report) if self._last_report else None,
        }
