"""
medallion.config — YAML Configuration Loader
=============================================

Reads ``config.yaml`` for **non-secret** tuning: scheduler cadence, cache
TTL, log level and where reward credits are sent.  Secrets
(``DATABASE_URL``, ``JWT_SECRET``) stay in the environment / ``.env``.

Usage::

    from medallion.config import load_config

    cfg = load_config()                  # reads ./config.yaml by default
    print(cfg.scheduler_interval_seconds)  # 30.0
    print(cfg.reward_gateway)              # "logging"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

REWARD_GATEWAYS: frozenset[str] = frozenset({"logging", "http"})


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class MedallionConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every field has a default so a minimal file (or an empty one) still
    yields a runnable worker.
    """

    community_name: str = "Medallion"
    log_level: str = "INFO"

    # Background scheduler
    scheduler_interval_seconds: float = 30.0
    scheduler_batch_size: int = 100
    stale_claim_minutes: int = 15

    # Active achievement cache
    cache_ttl_seconds: float = 60.0

    # Reward delivery
    reward_gateway: str = "logging"  # "logging" | "http"
    xp_service_url: str | None = None
    wallet_service_url: str | None = None
    reputation_service_url: str | None = None
    http_timeout_seconds: float = 5.0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> MedallionConfig:
    """Read *path* and return a :class:`MedallionConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If ``rewards.gateway`` names an unknown gateway, or ``http`` is
        selected without all three service URLs.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return config_from_dict(raw)


def config_from_dict(raw: dict) -> MedallionConfig:
    """Build a :class:`MedallionConfig` from an already-parsed YAML mapping."""
    defaults = MedallionConfig()
    scheduler = raw.get("scheduler") or {}
    rewards = raw.get("rewards") or {}

    gateway = str(rewards.get("gateway", defaults.reward_gateway)).lower()
    if gateway not in REWARD_GATEWAYS:
        raise ValueError(
            f"rewards.gateway must be one of {sorted(REWARD_GATEWAYS)}, got {gateway!r}"
        )

    cfg = MedallionConfig(
        community_name=raw.get("community_name", defaults.community_name),
        log_level=str(raw.get("log_level", defaults.log_level)).upper(),
        scheduler_interval_seconds=float(
            scheduler.get("interval_seconds", defaults.scheduler_interval_seconds)
        ),
        scheduler_batch_size=int(scheduler.get("batch_size", defaults.scheduler_batch_size)),
        stale_claim_minutes=int(
            scheduler.get("stale_claim_minutes", defaults.stale_claim_minutes)
        ),
        cache_ttl_seconds=float(raw.get("cache_ttl_seconds", defaults.cache_ttl_seconds)),
        reward_gateway=gateway,
        xp_service_url=rewards.get("xp_url") or None,
        wallet_service_url=rewards.get("wallet_url") or None,
        reputation_service_url=rewards.get("reputation_url") or None,
        http_timeout_seconds=float(
            rewards.get("timeout_seconds", defaults.http_timeout_seconds)
        ),
    )

    if cfg.reward_gateway == "http":
        missing = [
            name for name, url in (
                ("rewards.xp_url", cfg.xp_service_url),
                ("rewards.wallet_url", cfg.wallet_service_url),
                ("rewards.reputation_url", cfg.reputation_service_url),
            ) if not url
        ]
        if missing:
            raise ValueError(
                "HTTP reward gateway selected but missing: " + ", ".join(missing)
            )
    return cfg
