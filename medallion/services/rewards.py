"""
medallion.services.rewards — Reward Gateways
=============================================

The completion coordinator credits rewards through a
:class:`RewardGateway`.  XP, wallet tokens and reputation belong to other
services; Medallion only issues the credit calls.

Gateways:
* :class:`LoggingRewardGateway` — records the calls in the log.  Default
  for development and for forums that read rewards back from
  ``user_achievements``.
* :class:`HttpRewardGateway` — POSTs JSON to the XP, wallet and
  reputation services (``rewards.gateway: http`` in ``config.yaml``).

Gateways raise on failure; the coordinator isolates each channel.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Protocol

import httpx

from medallion.config import MedallionConfig

logger = logging.getLogger(__name__)

REWARD_SOURCE = "achievement_unlock"


class RewardGateway(Protocol):
    def credit_xp(self, user_id: str, amount: int, reason: str) -> None: ...

    def credit_token(
        self, user_id: str, amount: int, *, source: str, reason: str, achievement_id: int,
    ) -> None: ...

    def credit_reputation(self, user_id: str, amount: int, reason: str) -> None: ...

    def close(self) -> None: ...

# ---------------------------------------------------------------------------
# Logging gateway
# ---------------------------------------------------------------------------
class LoggingRewardGateway:
    """Gateway that only logs credit calls."""

    def credit_xp(self, user_id: str, amount: int, reason: str) -> None:
        logger.info("XP +%d → %s (%s)", amount, user_id, reason)

    def credit_token(
        self, user_id: str, amount: int, *, source: str, reason: str, achievement_id: int,
    ) -> None:
        logger.info(
            "Tokens +%d → %s (%s, source=%s, achievement=%d)",
            amount, user_id, reason, source, achievement_id,
        )

    def credit_reputation(self, user_id: str, amount: int, reason: str) -> None:
        logger.info("Reputation +%d → %s (%s)", amount, user_id, reason)

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# HTTP gateway
# ---------------------------------------------------------------------------
class HttpRewardGateway:
    """Gateway that POSTs each credit to the owning service.

    Parameters
    ----------
    xp_url, wallet_url, reputation_url : Endpoint per reward channel.
    timeout : Per-request timeout in seconds.
    token : Optional bearer token (``REWARD_SERVICE_TOKEN``).
    client : Pre-built :class:`httpx.Client` (tests pass a mock transport).
    """

    def __init__(
        self,
        xp_url: str,
        wallet_url: str,
        reputation_url: str,
        *,
        timeout: float = 5.0,
        token: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._urls = {"xp": xp_url, "token": wallet_url, "reputation": reputation_url}
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.Client(timeout=timeout, headers=headers)

    def _post(self, channel: str, payload: dict[str, Any]) -> None:
        resp = self._client.post(self._urls[channel], json=payload)
        resp.raise_for_status()

    def credit_xp(self, user_id: str, amount: int, reason: str) -> None:
        self._post("xp", {"user_id": user_id, "amount": amount, "reason": reason})

    def credit_token(
        self, user_id: str, amount: int, *, source: str, reason: str, achievement_id: int,
    ) -> None:
        self._post("token", {
            "user_id": user_id,
            "amount": amount,
            "metadata": {"source": source, "reason": reason, "achievement_id": achievement_id},
        })

    def credit_reputation(self, user_id: str, amount: int, reason: str) -> None:
        self._post("reputation", {"user_id": user_id, "amount": amount, "reason": reason})

    def close(self) -> None:
        self._client.close()


def build_reward_gateway(cfg: MedallionConfig) -> RewardGateway:
    """Select the gateway named by ``cfg.reward_gateway``."""
    if cfg.reward_gateway == "http":
        logger.info("Rewards → HTTP (%s, %s, %s)",
                    cfg.xp_service_url, cfg.wallet_service_url, cfg.reputation_service_url)
        return HttpRewardGateway(
            cfg.xp_service_url or "",
            cfg.wallet_service_url or "",
            cfg.reputation_service_url or "",
            timeout=cfg.http_timeout_seconds,
            token=os.getenv("REWARD_SERVICE_TOKEN") or None,
        )
    logger.info("Rewards → log only")
    return LoggingRewardGateway()
