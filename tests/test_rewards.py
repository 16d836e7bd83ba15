"""
tests/test_rewards.py — Reward Gateways
========================================

The HTTP gateway is exercised against an in-process mock transport.
"""

from __future__ import annotations

import json
from unittest.mock import patch

import httpx
import pytest

from medallion.config import MedallionConfig, config_from_dict
from medallion.services.rewards import (
    REWARD_SOURCE,
    HttpRewardGateway,
    LoggingRewardGateway,
    build_reward_gateway,
)

URLS = ("http://xp/credit", "http://wallet/credit", "http://rep/credit")


def _gateway(handler) -> HttpRewardGateway:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpRewardGateway(*URLS, client=client)


class TestHttpGateway:
    def test_each_channel_posts_to_its_service(self):
        seen: list[tuple[str, dict]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((str(request.url), json.loads(request.content)))
            return httpx.Response(200, json={"ok": True})

        gw = _gateway(handler)
        gw.credit_xp("u1", 50, "Achievement: Conversation Starter")
        gw.credit_token("u1", 10, source=REWARD_SOURCE,
                        reason="Achievement: Conversation Starter", achievement_id=7)
        gw.credit_reputation("u1", 5, "Achievement: Conversation Starter")

        assert [url for url, _ in seen] == list(URLS)
        assert seen[0][1] == {"user_id": "u1", "amount": 50,
                              "reason": "Achievement: Conversation Starter"}
        assert seen[1][1]["metadata"] == {
            "source": "achievement_unlock",
            "reason": "Achievement: Conversation Starter",
            "achievement_id": 7,
        }

    def test_error_status_raises(self):
        gw = _gateway(lambda request: httpx.Response(503))
        with pytest.raises(httpx.HTTPStatusError):
            gw.credit_xp("u1", 50, "x")


class TestBuildGateway:
    def test_default_is_logging(self):
        assert isinstance(build_reward_gateway(MedallionConfig()), LoggingRewardGateway)

    def test_http(self):
        cfg = config_from_dict({"rewards": {
            "gateway": "http",
            "xp_url": URLS[0], "wallet_url": URLS[1], "reputation_url": URLS[2],
        }})
        gw = build_reward_gateway(cfg)
        assert isinstance(gw, HttpRewardGateway)
        gw.close()

    def test_logging_gateway_never_raises(self, caplog):
        gw = LoggingRewardGateway()
        with caplog.at_level("INFO", logger="medallion.services.rewards"):
            gw.credit_token("u1", 10, source=REWARD_SOURCE, reason="r", achievement_id=1)
        assert "Tokens +10" in caplog.text


@pytest.fixture
def http_config():
    return config_from_dict({"rewards": {
        "gateway": "http",
        "xp_url": URLS[0], "wallet_url": URLS[1], "reputation_url": URLS[2],
    }})


class TestSharedGateway:
    def test_requests_share_one_gateway_until_shutdown(self, db_engine, http_config):
        from medallion.api import deps

        deps.close_reward_gateway()
        with patch.object(deps, "get_config", return_value=http_config):
            first = deps.get_coordinator(db_engine, deps.get_reward_gateway())
            second = deps.get_coordinator(db_engine, deps.get_reward_gateway())

        gateway = deps.get_reward_gateway()
        assert isinstance(gateway, HttpRewardGateway)
        assert first._gateway is second._gateway is gateway
        assert not gateway._client.is_closed

        deps.close_reward_gateway()
        assert gateway._client.is_closed
        assert deps.get_reward_gateway.cache_info().currsize == 0

    def test_close_without_gateway_is_noop(self):
        from medallion.api import deps

        deps.close_reward_gateway()
        deps.close_reward_gateway()
        assert deps.get_reward_gateway.cache_info().currsize == 0
