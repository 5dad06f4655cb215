"""
REST / HTTP API server for StakeLedger.

Built on ``aiohttp``.  Amounts in request bodies are whole-token decimals
(``"100"``, ``"0.25"``; JSON floats are refused); amounts in responses are
integer base units.

Endpoints
---------
GET  /health                              Liveness + catch-up backlog
GET  /globals                             Ledger-wide totals
GET  /day                                 Current day index
GET  /stakes/{owner}                      All stakes of an owner
GET  /stakes/{owner}/{index}              One stake
GET  /stakes/{owner}/{index}/status       Preview of stake_end (?stake_id=)
GET  /daily?from=&to=                     Daily records of [from, to)
GET  /bonus?amount=&days=                 Start bonus of a hypothetical stake
GET  /balance/{address}                   Token balance
POST /tx/stake_start                      {owner, amount, days}
POST /tx/stake_end                        {owner, stake_index, stake_id}
POST /tx/good_accounting                  {caller, owner, stake_index, stake_id}
POST /tx/fund_rewards                     {funder, amount_per_day, days_count, shift_in_days}
POST /tx/daily_data_update                {before_day}  (default: today)

Errors
------
Ledger errors come back as ``{"error": message, "code": CODE}``:
validation 400, policy 409, custodian 402, invariant failure 500.

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only,
  compared with ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (origins configurable via ``cors_origins``).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(engine, token, host="127.0.0.1", port=8080)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Callable, Optional

from aiohttp import web

from stakeledger_core.errors import (
    CustodianError,
    InvariantViolation,
    PolicyViolation,
    RangeTooLarge,
    StakingError,
    ValidationError,
)
from stakeledger_core.precision import rate_to_decimal, to_units

if TYPE_CHECKING:
    from stakeledger_core.config import APIConfig

logger = logging.getLogger("stakeledger_api")

# Longest /daily window served in one response.
MAX_DAILY_RANGE: int = 1000


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, rejecting floats, bools and non-integers."""
    if isinstance(value, (bool, float)):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _token_amount(value: Any, name: str = "amount") -> int:
    """Parse a whole-token decimal into base units."""
    if value is None or isinstance(value, bool):
        raise web.HTTPBadRequest(text=f"{name} is required")
    try:
        return to_units(value)
    except TypeError:
        raise web.HTTPBadRequest(text=f"{name} must be a decimal string, not a float")
    except ValueError:
        raise web.HTTPBadRequest(text=f"{name} must be a token amount")


def _required_str(body: dict, name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value:
        raise web.HTTPBadRequest(text=f"{name} is required")
    return value


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except web.HTTPException:
        raise
    except Exception as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)


def _status_for(exc: StakingError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, PolicyViolation):
        return 409
    if isinstance(exc, CustodianError):
        return 402
    return 500


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token bucket; ``rpm <= 0`` disables limiting."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm
        # ip -> [tokens, last_refill]
        self._buckets: dict[str, list[float]] = defaultdict(
            lambda: [float(rpm), time.monotonic()]
        )

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * self._rpm / 60.0)
        bucket[1] = now
        if bucket[0] < 1.0:
            return False
        bucket[0] -= 1.0
        return True


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_error_middleware():
    """Turn ledger exceptions into JSON error responses."""

    @web.middleware
    async def error_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except StakingError as exc:
            status = _status_for(exc)
            if isinstance(exc, InvariantViolation):
                logger.error(f"{request.method} {request.path}: {exc}")
            else:
                logger.info(f"{request.method} {request.path} rejected: {exc.code}")
            return web.json_response(
                {"error": str(exc), "code": exc.code}, status=status,
            )

    return error_middleware


def _make_rate_limit_middleware(bucket: _TokenBucket):
    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        if not bucket.allow(request.remote or "unknown"):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """Require ``X-API-Key`` on state-changing requests."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """Add CORS headers for listed origins; ``*`` is ignored."""
    allowed = set(origins)
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)
        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


class APIServer:
    """aiohttp front-end of a StakingEngine and its custodian.

    ``on_commit`` is called after every successful write (the runner
    uses it to persist a snapshot).
    """

    def __init__(
        self,
        engine: Any,
        custodian: Any,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
        on_commit: Optional[Callable[[], None]] = None,
    ):
        self.engine = engine
        self.custodian = custodian
        self.host = host
        self.port = port
        self._api_config = api_config
        self._on_commit = on_commit
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536

        cfg = self._api_config
        if cfg is not None:
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))
        middlewares.append(_make_error_middleware())

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/globals", self._globals)
        app.router.add_get("/day", self._day)
        app.router.add_get("/stakes/{owner}", self._stakes)
        app.router.add_get("/stakes/{owner}/{index}", self._stake)
        app.router.add_get("/stakes/{owner}/{index}/status", self._stake_status)
        app.router.add_get("/daily", self._daily)
        app.router.add_get("/bonus", self._bonus)
        app.router.add_get("/balance/{address}", self._balance)
        app.router.add_post("/tx/stake_start", self._submit_stake_start)
        app.router.add_post("/tx/stake_end", self._submit_stake_end)
        app.router.add_post("/tx/good_accounting", self._submit_good_accounting)
        app.router.add_post("/tx/fund_rewards", self._submit_fund_rewards)
        app.router.add_post("/tx/daily_data_update", self._submit_daily_data_update)

    def _committed(self) -> None:
        if self._on_commit is not None:
            self._on_commit()

    # ── read handlers ────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        g = self.engine.globals()
        try:
            day = self.engine.current_day()
        except StakingError:
            return web.json_response({
                "ok": False,
                "launched": False,
                "launch_timestamp": self.engine.launch_timestamp,
            }, status=503)
        backlog = max(day - g.daily_data_count, 0)
        healthy = backlog <= self.engine.daily.max_catch_up_days
        return web.json_response({
            "ok": healthy,
            "launched": True,
            "current_day": day,
            "daily_data_count": g.daily_data_count,
            "backlog": backlog,
            "checks": {"catch_up": "ok" if healthy else "degraded"},
        }, status=200 if healthy else 503)

    async def _globals(self, _request: web.Request) -> web.Response:
        data = self.engine.globals().to_dict()
        data["share_rate_decimal"] = str(rate_to_decimal(data["share_rate"]))
        return web.json_response(data, dumps=_json_dumps)

    async def _day(self, _request: web.Request) -> web.Response:
        return web.json_response({"current_day": self.engine.current_day()})

    async def _stakes(self, request: web.Request) -> web.Response:
        owner = request.match_info["owner"]
        day = self.engine.current_day()
        count = self.engine.stake_count(owner)
        stakes = []
        for index in range(count):
            entry = self.engine.stake_lists(owner, index).to_dict(day)
            entry["index"] = index
            stakes.append(entry)
        return web.json_response(
            {"owner": owner, "count": count, "stakes": stakes}, dumps=_json_dumps,
        )

    async def _stake(self, request: web.Request) -> web.Response:
        owner = request.match_info["owner"]
        index = _safe_int(request.match_info["index"], "index")
        stake = self.engine.stake_lists(owner, index)
        entry = stake.to_dict(self.engine.current_day())
        entry["index"] = index
        return web.json_response(entry, dumps=_json_dumps)

    async def _stake_status(self, request: web.Request) -> web.Response:
        owner = request.match_info["owner"]
        index = _safe_int(request.match_info["index"], "index")
        stake_id = _safe_int(request.query.get("stake_id"), "stake_id")
        performance = self.engine.get_stake_status(owner, index, stake_id)
        return web.json_response(performance.to_dict(), dumps=_json_dumps)

    async def _daily(self, request: web.Request) -> web.Response:
        from_day = _safe_int(request.query.get("from", 0), "from")
        if "to" in request.query:
            to_day = _safe_int(request.query["to"], "to")
        else:
            to_day = self.engine.globals().daily_data_count
        if to_day - from_day > MAX_DAILY_RANGE:
            raise RangeTooLarge(f"At most {MAX_DAILY_RANGE} days per request")
        days = self.engine.daily_data_range(from_day, to_day)
        return web.json_response(
            {"from": from_day, "to": to_day, "days": [d.to_dict() for d in days]},
            dumps=_json_dumps,
        )

    async def _bonus(self, request: web.Request) -> web.Response:
        amount = _token_amount(request.query.get("amount"), "amount")
        days = _safe_int(request.query.get("days"), "days")
        bonus = self.engine.stake_start_bonus_shares(amount, days)
        return web.json_response(
            {"amount": amount, "days": days, "bonus": bonus}, dumps=_json_dumps,
        )

    async def _balance(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return web.json_response(
            {"address": address, "balance": self.custodian.balance_of(address)},
            dumps=_json_dumps,
        )

    # ── write handlers ───────────────────────────────────────────

    async def _submit_stake_start(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        owner = _required_str(body, "owner")
        amount = _token_amount(body.get("amount"), "amount")
        days = _safe_int(body.get("days"), "days")

        stake = self.engine.stake_start(owner, amount, days)
        self._committed()
        index = self.engine.stake_count(owner) - 1
        return web.json_response(
            {"status": "applied", "index": index, "stake": stake.to_dict()},
            dumps=_json_dumps,
        )

    async def _submit_stake_end(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        owner = _required_str(body, "owner")
        index = _safe_int(body.get("stake_index"), "stake_index")
        stake_id = _safe_int(body.get("stake_id"), "stake_id")

        performance = self.engine.stake_end(owner, index, stake_id)
        self._committed()
        return web.json_response(
            {"status": "applied", **performance.to_dict()}, dumps=_json_dumps,
        )

    async def _submit_good_accounting(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        caller = _required_str(body, "caller")
        owner = _required_str(body, "owner")
        index = _safe_int(body.get("stake_index"), "stake_index")
        stake_id = _safe_int(body.get("stake_id"), "stake_id")

        performance = self.engine.stake_good_accounting(caller, owner, index, stake_id)
        self._committed()
        return web.json_response(
            {"status": "applied", **performance.to_dict()}, dumps=_json_dumps,
        )

    async def _submit_fund_rewards(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        funder = _required_str(body, "funder")
        amount_per_day = _token_amount(body.get("amount_per_day"), "amount_per_day")
        days_count = _safe_int(body.get("days_count"), "days_count")
        shift = _safe_int(body.get("shift_in_days", 0), "shift_in_days")

        first_day = self.engine.fund_rewards(funder, amount_per_day, days_count, shift)
        self._committed()
        return web.json_response({
            "status": "applied",
            "first_day": first_day,
            "last_day": first_day + days_count - 1,
            "total": amount_per_day * days_count,
        }, dumps=_json_dumps)

    async def _submit_daily_data_update(self, request: web.Request) -> web.Response:
        body = await _json_body(request) if request.can_read_body else {}
        if "before_day" in body:
            before_day = _safe_int(body["before_day"], "before_day")
        else:
            before_day = self.engine.current_day()

        closed = self.engine.daily_data_update(before_day)
        self._committed()
        return web.json_response({
            "status": "applied",
            "days_closed": closed,
            "daily_data_count": self.engine.globals().daily_data_count,
        })
