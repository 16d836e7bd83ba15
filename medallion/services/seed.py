"""
medallion.services.seed — Default Catalog Seed
===============================================

Seeds the default achievement catalog from ``seeds/achievements.yaml``.

YAML is used only for initial seeding.  Afterwards the catalog is managed
through the admin API; keys that already exist are never overwritten, so
admin edits survive restarts.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from sqlalchemy import select
from sqlalchemy.orm import Session

from medallion.database.models import Achievement
from medallion.engine.triggers import dump_trigger, parse_trigger
from medallion.exceptions import TriggerConfigError

logger = logging.getLogger(__name__)

# Resolve the seeds directory relative to the project root
_SEEDS_DIR = Path(__file__).resolve().parent.parent.parent / "seeds"

_OPTIONAL_FIELDS = (
    "description", "category", "tier", "reward_xp", "reward_tokens",
    "reward_reputation", "reward_badge", "reward_title", "icon_emoji",
    "unlock_message", "is_active", "is_secret", "is_retroactive",
)


def _load_yaml(filename: str, seeds_dir: Path | None = None) -> Any:
    """Load a YAML file from the seeds directory."""
    path = (seeds_dir or _SEEDS_DIR) / filename
    if not path.exists():
        logger.warning("Seed file not found: %s", path)
        return {}
    with open(path, encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def seed_achievements(engine, seeds_dir: Path | None = None) -> int:
    """Insert catalog entries whose key is not in the database yet.

    Entries with an invalid trigger are logged and skipped.  Returns the
    number of achievements inserted.
    """
    data = _load_yaml("achievements.yaml", seeds_dir)
    entries = data.get("achievements") or []
    if not entries:
        return 0

    count = 0
    with Session(engine) as session:
        existing = set(session.scalars(select(Achievement.key)).all())
        for entry in entries:
            if entry["key"] in existing:
                continue
            try:
                trigger = parse_trigger(entry["trigger_type"], entry.get("trigger_config"))
            except TriggerConfigError as exc:
                logger.warning("Skipping seed achievement %s: %s", entry["key"], exc)
                continue
            session.add(Achievement(
                key=entry["key"],
                name=entry["name"],
                trigger_type=trigger.kind.value,
                trigger_config=dump_trigger(trigger),
                **{f: entry[f] for f in _OPTIONAL_FIELDS if f in entry},
            ))
            existing.add(entry["key"])
            count += 1
        session.commit()

    if count:
        logger.info("Seeded %d achievement(s).", count)
    else:
        logger.info("Achievement catalog already seeded — skipping.")
    return count
