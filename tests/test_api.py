"""End-to-end tests for the aiohttp routes."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from conftest import make_config_dict

from vibe_lottery.blackjack import card
from vibe_lottery.config import LotteryConfig
from vibe_lottery.main import LotteryApp

ALICE = {"X-Authenticated-User": "alice"}


@pytest_asyncio.fixture
async def lottery_app(tmp_db_path: str) -> LotteryApp:
    config = LotteryConfig(**make_config_dict(database={"path": tmp_db_path}))
    app = LotteryApp(config=config)
    await app.setup()
    return app


@pytest_asyncio.fixture
async def client(lottery_app: LotteryApp) -> AsyncGenerator[TestClient, None]:
    async with TestClient(TestServer(lottery_app.web_app)) as test_client:
        yield test_client


def _history(count: int) -> str:
    visited = int((datetime.now(timezone.utc) - timedelta(days=1)).timestamp() * 1000)
    return json.dumps([{"url": f"https://site{i}.example", "visitTime": visited} for i in range(count)])


def _padded_history(count: int, pad: int) -> str:
    visited = int((datetime.now(timezone.utc) - timedelta(days=1)).timestamp() * 1000)
    return json.dumps([
        {"url": f"https://site{i}.example/" + "p" * pad, "visitTime": visited} for i in range(count)
    ])


class TestAuth:
    async def test_missing_identity(self, client: TestClient):
        resp = await client.post("/api/verify-ad")
        assert resp.status == 401
        assert (await resp.json())["error"] == "unauthorized"

    async def test_blank_identity(self, client: TestClient):
        resp = await client.get("/api/me", headers={"X-Authenticated-User": "  "})
        assert resp.status == 401

    async def test_me_provisions_user(self, client: TestClient):
        resp = await client.get("/api/me", headers=ALICE)
        assert resp.status == 200
        body = await resp.json()
        assert body["chips"] == 100
        assert body["booster_active"] is False
        assert body["organic_tickets"] == 0


class TestVerifyAd:
    async def test_ticket_and_pool(self, client: TestClient):
        resp = await client.post("/api/verify-ad", headers=ALICE)
        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["ticket_earned"] is True
        assert body["new_ticket_count"] == 1
        assert body["new_pool_total"] == 1_250_001

    async def test_shadowban_indistinguishable(self, client: TestClient):
        await client.post("/api/verify-ad", headers=ALICE)
        resp = await client.post("/api/verify-ad", headers=ALICE)
        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["ticket_earned"] is False
        assert body["new_ticket_count"] is None
        assert body["daily_views"] > 0
        assert body["views_until_next_ticket"] >= 1

    async def test_prize_pool(self, client: TestClient):
        await client.post("/api/verify-ad", headers=ALICE)
        resp = await client.get("/api/prize-pool")
        assert (await resp.json())["total"] == 1_250_001


class TestBooster:
    async def test_evidence_then_conflict(self, client: TestClient):
        resp = await client.post(
            "/api/booster/evidence", headers=ALICE, data=_history(500),
            params={"filename": "history.json"},
        )
        assert resp.status == 200
        assert (await resp.json())["method"] == "evidence"

        resp = await client.post("/api/booster/purchase", headers=ALICE)
        assert resp.status == 409
        assert (await resp.json())["error"] == "booster_active"

    async def test_insufficient_evidence(self, client: TestClient):
        resp = await client.post("/api/booster/evidence", headers=ALICE, data=_history(10))
        assert resp.status == 400
        assert (await resp.json())["error"] == "insufficient_evidence"

    async def test_large_export_accepted(self, client: TestClient):
        body = _padded_history(600, 4000)
        assert len(body) > 2 * 1024 * 1024
        resp = await client.post(
            "/api/booster/evidence", headers=ALICE, data=body, params={"filename": "history.json"},
        )
        assert resp.status == 200
        assert (await resp.json())["unique_entries"] == 600

    async def test_over_limit_is_evidence_too_large(self, client: TestClient, lottery_app: LotteryApp):
        lottery_app.config.booster.max_evidence_bytes = 100
        resp = await client.post("/api/booster/evidence", headers=ALICE, data=_history(10))
        assert resp.status == 400
        assert (await resp.json())["error"] == "evidence_too_large"

    async def test_non_utf8_body(self, client: TestClient):
        resp = await client.post(
            "/api/booster/evidence", headers=ALICE, data=b"url,date\n\xff\xfe,2026\n",
        )
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_evidence"

    async def test_utf8_bom_accepted(self, client: TestClient):
        body = "\ufeff" + _history(500)
        resp = await client.post("/api/booster/evidence", headers=ALICE, data=body.encode("utf-8"))
        assert resp.status == 200

    async def test_purchase(self, client: TestClient):
        resp = await client.post("/api/booster/purchase", headers=ALICE)
        assert resp.status == 200
        resp = await client.get("/api/me", headers=ALICE)
        assert (await resp.json())["booster_active"] is True


class TestCasinoRoutes:
    async def test_roulette_insufficient(self, client: TestClient):
        resp = await client.post(
            "/api/casino/roulette", headers=ALICE,
            json={"bets": [{"color": "red", "bet": 100}, {"color": "gold", "bet": 50}]},
        )
        assert resp.status == 400
        body = await resp.json()
        assert body["error"] == "insufficient_chips"
        assert body["have"] == 100

    async def test_roulette_settles(self, client: TestClient):
        with patch("random.random", return_value=0.5):
            resp = await client.post(
                "/api/casino/roulette", headers=ALICE, json={"bets": [{"color": "red", "bet": 10}]},
            )
        body = await resp.json()
        assert resp.status == 200
        assert body["result_color"] == "red"
        assert body["new_chips"] == 120

    async def test_roulette_bad_json(self, client: TestClient):
        resp = await client.post("/api/casino/roulette", headers=ALICE, data="{not json")
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_bets"

    async def test_hilo_bad_json(self, client: TestClient):
        resp = await client.post("/api/casino/hilo", headers=ALICE, data="[1, 2")
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_bet"

    async def test_hilo_invalid_guess(self, client: TestClient):
        resp = await client.post("/api/casino/hilo", headers=ALICE, json={"bet": 10, "guess": "maybe"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_guess"

    async def test_scratch(self, client: TestClient):
        with patch("random.random", return_value=0.1):
            resp = await client.post("/api/casino/scratch", headers=ALICE)
        body = await resp.json()
        assert resp.status == 200
        assert body["outcome"] == "no_prize"
        assert body["new_chips"] == 90

    async def test_unexpected_failure_is_internal(self, client: TestClient, lottery_app: LotteryApp):
        lottery_app.casino.scratch = AsyncMock(side_effect=RuntimeError("boom"))
        resp = await client.post("/api/casino/scratch", headers=ALICE)
        assert resp.status == 500
        assert (await resp.json())["error"] == "internal"


class TestBlackjackRoutes:
    async def test_full_hand(self, client: TestClient, lottery_app: LotteryApp):
        deck = [card(r) for r in ("10", "10", "9", "6", "K")] + [card("2")] * 10
        lottery_app.blackjack._shuffle_deck = lambda: list(deck)

        resp = await client.post("/api/casino/blackjack/deal", headers=ALICE, json={"bet": 50})
        body = await resp.json()
        assert resp.status == 200
        assert body["status"] == "in_progress"
        assert len(body["dealer_hand"]) == 1

        resp = await client.post("/api/casino/blackjack/deal", headers=ALICE, json={"bet": 50})
        assert resp.status == 409

        resp = await client.get("/api/casino/blackjack/state", headers=ALICE)
        state = await resp.json()
        assert state["active"] is True
        assert state["player_value"] == 19

        resp = await client.post("/api/casino/blackjack/stand", headers=ALICE)
        body = await resp.json()
        assert body["result"] == "win"
        assert body["new_chips"] == 150

        resp = await client.post("/api/casino/blackjack/hit", headers=ALICE)
        assert resp.status == 404
        assert (await resp.json())["error"] == "no_active_session"

    async def test_deal_bad_json(self, client: TestClient):
        resp = await client.post("/api/casino/blackjack/deal", headers=ALICE, data="bet=10")
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_bet"

    async def test_forfeit(self, client: TestClient, lottery_app: LotteryApp):
        lottery_app.blackjack._shuffle_deck = lambda: [card(r) for r in ("7", "9", "8", "7")] + [card("2")] * 10
        await client.post("/api/casino/blackjack/deal", headers=ALICE, json={"bet": 20})
        resp = await client.post("/api/casino/blackjack/forfeit", headers=ALICE)
        assert resp.status == 200
        assert (await resp.json())["net"] == -20
        resp = await client.get("/api/casino/blackjack/state", headers=ALICE)
        assert (await resp.json())["active"] is False


class TestConversionRoutes:
    async def test_cap_reached_without_organic(self, client: TestClient):
        resp = await client.post("/api/convert-chips", headers=ALICE, json={"amount": 10})
        assert resp.status == 400
        assert (await resp.json())["error"] == "cap_reached"

    async def test_cap_status(self, client: TestClient):
        await client.post("/api/verify-ad", headers=ALICE)
        resp = await client.get("/api/conversion-cap", headers=ALICE)
        body = await resp.json()
        assert body["global_organic"] == 1
        assert body["cap_limit"] == 0

    async def test_non_object_body(self, client: TestClient):
        resp = await client.post("/api/convert-chips", headers=ALICE, json=[10])
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_amount"

    async def test_amount_too_high(self, client: TestClient):
        resp = await client.post("/api/convert-chips", headers=ALICE, json={"amount": 5000})
        assert resp.status == 400
        assert (await resp.json())["error"] == "amount_too_high"


class TestAdminRoutes:
    async def test_disabled_without_key(self, client: TestClient):
        resp = await client.post(
            "/api/admin/sync-revenue", headers={"Authorization": "Bearer "}, json={"gross_revenue": 100},
        )
        assert resp.status == 401

    async def test_wrong_key(self, client: TestClient, lottery_app: LotteryApp):
        lottery_app.config.admin.api_key = "admin-key"
        resp = await client.post(
            "/api/admin/sync-revenue", headers={"Authorization": "Bearer nope"}, json={"gross_revenue": 100},
        )
        assert resp.status == 401
        assert (await resp.json())["error"] == "unauthorized"

    async def test_sync_revenue(self, client: TestClient, lottery_app: LotteryApp):
        lottery_app.config.admin.api_key = "admin-key"
        resp = await client.post(
            "/api/admin/sync-revenue",
            headers={"Authorization": "bearer  admin-key "},
            json={"gross_revenue": 10000, "week_id": "2026-W10"},
        )
        assert resp.status == 200
        body = await resp.json()
        assert body["user_share"] == 8000
        assert body["pool"]["total"] == 1_250_000 + 8000

        resp = await client.get("/api/prize-pool", params={"week_id": "2026-W10"})
        assert (await resp.json())["ad_revenue_added"] == 8000

    async def test_bad_amount(self, client: TestClient, lottery_app: LotteryApp):
        lottery_app.config.admin.api_key = "admin-key"
        resp = await client.post(
            "/api/admin/sync-revenue", headers={"Authorization": "Bearer admin-key"}, data="oops",
        )
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_amount"


class TestOfferwallRoutes:
    async def test_bad_secret(self, client: TestClient, lottery_app: LotteryApp):
        lottery_app.config.offerwall.secret = "hook"
        resp = await client.get(
            "/api/webhooks/offerwall",
            params={"secret": "x", "sub_id1": "alice", "id": "t1", "currency": "3"},
        )
        assert resp.status == 401

    async def test_get_postback_acknowledged(self, client: TestClient, lottery_app: LotteryApp):
        lottery_app.config.offerwall.secret = "hook"
        await client.get("/api/me", headers=ALICE)
        params = {"secret": "hook", "sub_id1": "alice", "id": "t1", "currency": "3"}

        resp = await client.get("/api/webhooks/offerwall", params=params)
        assert resp.status == 200
        assert await resp.text() == "1"
        resp = await client.get("/api/webhooks/offerwall", params=params)
        assert await resp.text() == "1"

        resp = await client.get("/api/me", headers=ALICE)
        assert (await resp.json())["organic_tickets"] == 3

    async def test_post_body_postback(self, client: TestClient, lottery_app: LotteryApp):
        lottery_app.config.offerwall.secret = "hook"
        await client.get("/api/me", headers=ALICE)
        resp = await client.post(
            "/api/webhooks/offerwall", params={"secret": "hook"},
            json={"user_id": "alice", "transaction_id": "t9", "rewardAmount": 4, "reward_type": "chips"},
        )
        assert await resp.text() == "1"
        resp = await client.get("/api/me", headers=ALICE)
        assert (await resp.json())["chips"] == 104

    async def test_unknown_user_still_acknowledged(self, client: TestClient, lottery_app: LotteryApp):
        lottery_app.config.offerwall.secret = "hook"
        resp = await client.post(
            "/api/webhooks/offerwall",
            params={"secret": "hook", "sub_id1": "ghost", "id": "t2", "currency": "3"},
        )
        assert resp.status == 200
        assert await resp.text() == "1"


class TestOpsRoutes:
    async def test_health(self, client: TestClient):
        resp = await client.get("/health")
        body = await resp.json()
        assert body["status"] == "ok"
        assert body["database"].endswith("test_lottery.db")

    async def test_metrics(self, client: TestClient):
        await client.post("/api/verify-ad", headers=ALICE)
        resp = await client.get("/metrics")
        text = await resp.text()
        assert "lottery_ad_views_verified_total 1" in text
        assert "lottery_tickets_awarded_total 1" in text
        assert "lottery_organic_tickets{week=" in text
