"""
medallion.worker.__main__ — Entry point for ``python -m medallion.worker``
===========================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Seed the default achievement catalog (idempotent).
5. Build the reward gateway, achievement cache, event store and
   completion coordinator.
6. Run the background scheduler until SIGINT / SIGTERM, then let the
   current batch finish.

Run with::

    uv run python -m medallion.worker
"""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import timedelta

from dotenv import load_dotenv

from medallion.config import MedallionConfig, load_config
from medallion.database.engine import create_db_engine, init_db
from medallion.engine.cache import AchievementCache
from medallion.services.achievement_processor import AchievementProcessor
from medallion.services.completion_service import CompletionCoordinator
from medallion.services.event_store import EventStore
from medallion.services.rewards import build_reward_gateway
from medallion.services.scheduler import AchievementScheduler
from medallion.services.seed import seed_achievements

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("medallion")


def build_scheduler(cfg: MedallionConfig, engine) -> AchievementScheduler:
    """Assemble the processing pipeline for *engine*."""
    store = EventStore(engine)
    cache = AchievementCache(engine, ttl_seconds=cfg.cache_ttl_seconds)
    coordinator = CompletionCoordinator(engine, build_reward_gateway(cfg))
    processor = AchievementProcessor(store, cache, coordinator)
    return AchievementScheduler(
        store,
        processor,
        interval_seconds=cfg.scheduler_interval_seconds,
        batch_size=cfg.scheduler_batch_size,
        stale_claim_after=timedelta(minutes=cfg.stale_claim_minutes),
    )


async def run(scheduler: AchievementScheduler) -> None:
    """Run *scheduler* until a stop signal arrives."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still
            # raises KeyboardInterrupt in main().
            pass

    await scheduler.start()
    await stop.wait()
    logger.info("Stop requested — finishing current batch…")
    await scheduler.stop()


def main() -> None:
    """Bootstrap and run the achievement worker."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config()
    logging.getLogger().setLevel(cfg.log_level)
    logger.info("Config loaded — Community: %s", cfg.community_name)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Default catalog.
    seed_achievements(engine)

    # 5-6. Pipeline + scheduler (blocks until SIGINT / SIGTERM).
    scheduler = build_scheduler(cfg, engine)
    logger.info("Starting achievement worker…")
    try:
        asyncio.run(run(scheduler))
    except KeyboardInterrupt:
        logger.info("Shutting down…")
    logger.info("Achievement worker stopped")


if __name__ == "__main__":
    main()
