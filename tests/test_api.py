"""
Tests for the REST API layer.

Covers:
  - Read endpoints (globals, stakes, status, daily, bonus, balance)
  - Write endpoints end to end against a real engine
  - Error mapping (400 / 409 / 402) and input validation
  - API key authentication, rate limiting, CORS
  - Commit hook
"""

from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from conftest import T
from stakeledger_core.api import MAX_DAILY_RANGE, APIServer, _TokenBucket
from stakeledger_core.config import APIConfig


def _build_api_config(**overrides):
    defaults = {
        "enabled": True,
        "host": "127.0.0.1",
        "port": 8080,
        "api_key": "",
        "rate_limit_rpm": 0,
        "cors_origins": [],
        "max_body_bytes": 65_536,
    }
    defaults.update(overrides)
    return APIConfig(**defaults)


async def _make_test_client(engine, token, api_config=None, on_commit=None):
    api = APIServer(engine, token, port=0, api_config=api_config, on_commit=on_commit)
    return TestClient(TestServer(api.build_app()))


async def _start(client, owner="alice", amount="100", days=30):
    resp = await client.post(
        "/tx/stake_start", json={"owner": owner, "amount": amount, "days": days},
    )
    assert resp.status == 200
    return await resp.json()


# ═══════════════════════════════════════════════════════════════════
#  Token Bucket
# ═══════════════════════════════════════════════════════════════════

class TestTokenBucket:
    def test_unlimited(self):
        bucket = _TokenBucket(0)
        assert all(bucket.allow("ip") for _ in range(500))

    def test_limit(self):
        bucket = _TokenBucket(3)
        assert [bucket.allow("ip") for _ in range(4)] == [True, True, True, False]
        assert bucket.allow("other")

    def test_refill(self):
        bucket = _TokenBucket(60)
        for _ in range(60):
            bucket.allow("x")
        assert not bucket.allow("x")
        bucket._buckets["x"][1] -= 2.0
        assert bucket.allow("x")


# ═══════════════════════════════════════════════════════════════════
#  Read endpoints
# ═══════════════════════════════════════════════════════════════════

class TestReads:
    @pytest.mark.asyncio
    async def test_health(self, engine, token):
        async with await _make_test_client(engine, token) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["ok"] and data["current_day"] == 0

    @pytest.mark.asyncio
    async def test_health_before_launch(self, engine, token, clock):
        clock.now = engine.launch_timestamp - 10
        async with await _make_test_client(engine, token) as client:
            resp = await client.get("/health")
            assert resp.status == 503
            assert (await resp.json())["launched"] is False

    @pytest.mark.asyncio
    async def test_globals(self, engine, token):
        async with await _make_test_client(engine, token) as client:
            data = await (await client.get("/globals")).json()
            assert data["share_rate"] == 100_000
            assert data["share_rate_decimal"] == "1"
            assert data["latest_stake_id"] == 0

    @pytest.mark.asyncio
    async def test_day(self, engine, token, clock):
        clock.set_day(12)
        async with await _make_test_client(engine, token) as client:
            assert (await (await client.get("/day")).json()) == {"current_day": 12}

    @pytest.mark.asyncio
    async def test_stakes_listing(self, engine, token):
        engine.stake_start("alice", 100 * T, 30)
        engine.stake_start("alice", 200 * T, 60)
        async with await _make_test_client(engine, token) as client:
            data = await (await client.get("/stakes/alice")).json()
            assert data["count"] == 2
            assert [s["index"] for s in data["stakes"]] == [0, 1]
            assert data["stakes"][1]["staked_amount"] == 200 * T
            assert data["stakes"][0]["state"] == "Pending"

            one = await (await client.get("/stakes/alice/1")).json()
            assert one["stake_id"] == 2

            missing = await client.get("/stakes/alice/5")
            assert missing.status == 400
            assert (await missing.json())["code"] == "INVALID_STAKE_INDEX"

    @pytest.mark.asyncio
    async def test_status(self, engine, token, clock):
        stake = engine.stake_start("alice", 100 * T, 30)
        async with await _make_test_client(engine, token) as client:
            locked = await client.get(f"/stakes/alice/0/status?stake_id={stake.stake_id}")
            assert locked.status == 409
            assert (await locked.json())["code"] == "HARD_LOCK_ACTIVE"

            clock.set_day(31)
            resp = await client.get(f"/stakes/alice/0/status?stake_id={stake.stake_id}")
            data = await resp.json()
            assert data["stake_return"] == 100 * T
            assert data["served_days"] == 30

            bad = await client.get("/stakes/alice/0/status")
            assert bad.status == 400

    @pytest.mark.asyncio
    async def test_daily(self, engine, token):
        engine.fund_rewards("funder", 10 * T, 5)
        async with await _make_test_client(engine, token) as client:
            data = await (await client.get("/daily?from=0&to=3")).json()
            assert [d["day_payout_total"] for d in data["days"]] == [0, 10 * T, 10 * T]

            too_big = await client.get(f"/daily?from=0&to={MAX_DAILY_RANGE + 1}")
            assert too_big.status == 409

            backwards = await client.get("/daily?from=5&to=2")
            assert backwards.status == 400

    @pytest.mark.asyncio
    async def test_bonus(self, engine, token):
        async with await _make_test_client(engine, token) as client:
            data = await (await client.get("/bonus?amount=100000&days=1")).json()
            assert data["bonus"] == 2_500 * T

            bad = await client.get("/bonus?amount=1.5e3&days=x")
            assert bad.status == 400

    @pytest.mark.asyncio
    async def test_balance(self, engine, token):
        async with await _make_test_client(engine, token) as client:
            data = await (await client.get("/balance/alice")).json()
            assert data == {"address": "alice", "balance": 10_000 * T}


# ═══════════════════════════════════════════════════════════════════
#  Write endpoints
# ═══════════════════════════════════════════════════════════════════

class TestWrites:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, engine, token, clock):
        commits = []
        async with await _make_test_client(
            engine, token, on_commit=lambda: commits.append(1),
        ) as client:
            resp = await client.post(
                "/tx/fund_rewards",
                json={"funder": "funder", "amount_per_day": "10", "days_count": 30},
            )
            assert (await resp.json())["first_day"] == 1

            started = await _start(client)
            assert started["index"] == 0
            stake_id = started["stake"]["stake_id"]

            clock.set_day(31)
            resp = await client.post(
                "/tx/stake_end",
                json={"owner": "alice", "stake_index": 0, "stake_id": stake_id},
            )
            assert resp.status == 200
            data = await resp.json()
            assert data["capped_penalty"] == 0
            assert data["payout"] > 140 * T
        assert len(commits) == 3
        assert engine.stake_count("alice") == 0

    @pytest.mark.asyncio
    async def test_good_accounting(self, engine, token, clock):
        async with await _make_test_client(engine, token) as client:
            stake_id = (await _start(client))["stake"]["stake_id"]
            clock.set_day(31)
            body = {"caller": "carol", "owner": "alice", "stake_index": 0, "stake_id": stake_id}
            assert (await client.post("/tx/good_accounting", json=body)).status == 200
            again = await client.post("/tx/good_accounting", json=body)
            assert again.status == 409
            assert (await again.json())["code"] == "ALREADY_UNLOCKED"

    @pytest.mark.asyncio
    async def test_daily_data_update(self, engine, token, clock):
        clock.set_day(9)
        async with await _make_test_client(engine, token) as client:
            resp = await client.post("/tx/daily_data_update", json={"before_day": 4})
            assert (await resp.json())["days_closed"] == 4
            resp = await client.post("/tx/daily_data_update")
            assert (await resp.json())["daily_data_count"] == 9
            future = await client.post("/tx/daily_data_update", json={"before_day": 10})
            assert future.status == 409

    @pytest.mark.asyncio
    async def test_validation_errors(self, engine, token):
        async with await _make_test_client(engine, token) as client:
            short = await client.post(
                "/tx/stake_start", json={"owner": "alice", "amount": "100", "days": 10},
            )
            assert short.status == 400
            assert (await short.json())["code"] == "DURATION_TOO_SHORT"

            floaty = await client.post(
                "/tx/stake_start", json={"owner": "alice", "amount": 1.5, "days": 30},
            )
            assert floaty.status == 400

            no_owner = await client.post("/tx/stake_start", json={"amount": "1", "days": 30})
            assert no_owner.status == 400

            not_json = await client.post("/tx/stake_start", data=b"nope")
            assert not_json.status == 400

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_402(self, engine, token):
        async with await _make_test_client(engine, token) as client:
            resp = await client.post(
                "/tx/stake_start", json={"owner": "dave", "amount": "100", "days": 30},
            )
            assert resp.status == 402
            assert (await resp.json())["code"] == "INSUFFICIENT_BALANCE"

    @pytest.mark.asyncio
    async def test_failed_write_skips_commit(self, engine, token):
        commits = []
        async with await _make_test_client(
            engine, token, on_commit=lambda: commits.append(1),
        ) as client:
            await client.post(
                "/tx/stake_start", json={"owner": "dave", "amount": "100", "days": 30},
            )
        assert commits == []


# ═══════════════════════════════════════════════════════════════════
#  Security middleware
# ═══════════════════════════════════════════════════════════════════

class TestSecurity:
    @pytest.mark.asyncio
    async def test_api_key_required_on_post(self, engine, token):
        cfg = _build_api_config(api_key="s3cret")
        async with await _make_test_client(engine, token, cfg) as client:
            assert (await client.get("/globals")).status == 200
            body = {"owner": "alice", "amount": "100", "days": 30}
            assert (await client.post("/tx/stake_start", json=body)).status == 401
            wrong = await client.post(
                "/tx/stake_start", json=body, headers={"X-API-Key": "nope"},
            )
            assert wrong.status == 401
            ok = await client.post(
                "/tx/stake_start", json=body, headers={"X-API-Key": "s3cret"},
            )
            assert ok.status == 200

    @pytest.mark.asyncio
    async def test_rate_limit(self, engine, token):
        cfg = _build_api_config(rate_limit_rpm=2)
        async with await _make_test_client(engine, token, cfg) as client:
            assert (await client.get("/day")).status == 200
            assert (await client.get("/day")).status == 200
            limited = await client.get("/day")
            assert limited.status == 429
            assert limited.headers["Retry-After"] == "5"

    @pytest.mark.asyncio
    async def test_cors(self, engine, token):
        cfg = _build_api_config(cors_origins=["http://ui.example", "*"])
        async with await _make_test_client(engine, token, cfg) as client:
            allowed = await client.get("/day", headers={"Origin": "http://ui.example"})
            assert allowed.headers["Access-Control-Allow-Origin"] == "http://ui.example"
            other = await client.get("/day", headers={"Origin": "http://evil.example"})
            assert "Access-Control-Allow-Origin" not in other.headers
            preflight = await client.options("/day", headers={"Origin": "http://ui.example"})
            assert preflight.status == 204

    @pytest.mark.asyncio
    async def test_body_cap(self, engine, token):
        cfg = _build_api_config(max_body_bytes=64)
        async with await _make_test_client(engine, token, cfg) as client:
            resp = await client.post(
                "/tx/stake_start",
                json={"owner": "a" * 200, "amount": "100", "days": 30},
            )
            assert resp.status == 413
