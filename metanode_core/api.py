"""
REST / HTTP API for the stake ledger.

Built on ``aiohttp``.  The calling account is taken from the
``X-Account`` header, which is only trusted from a client holding the
matching key: user routes need ``X-API-Key`` and ``/admin/*`` routes need
``X-Admin-Key``.  Administrative routes additionally require the account
to hold ``ADMIN_ROLE``.  A route group whose key is not configured is not
registered at all, so an unconfigured server is read-only.

Endpoints
---------
GET  /health                         Invariant-checked health check
GET  /status                         Ledger summary
GET  /pools                          All pools
GET  /pools/{pid}                    One pool
GET  /pools/{pid}/users/{address}    A staker's record, pending and queued amounts
GET  /pending/{pid}/{address}        Pending reward (optional ?height=)
GET  /multiplier?from=&to=           Emission over a height interval
GET  /events?since=&limit=           Event records after a sequence number
POST /deposit                        {"pid", "amount"}
POST /deposit_native                 {"amount"}
POST /unstake                        {"pid", "amount"}
POST /withdraw                       {"pid"}
POST /claim                          {"pid"}
POST /admin/pools                    {"asset", "weight", "min_deposit", "unstake_lock_heights", "settle_all"}
POST /admin/pools/{pid}/policy       {"min_deposit", "unstake_lock_heights"}
POST /admin/pools/{pid}/weight       {"weight", "settle_all"}
POST /admin/campaign                 {"start_height", "end_height", "reward_per_height", "reward_token"}
POST /admin/pause/{flag}             flag = all | withdraw | claim
POST /admin/unpause/{flag}
POST /admin/advance                  {"heights"} (manual height source only)
POST /admin/log_level                {"level"}

Security
--------
- Key authentication on POST endpoints via ``X-API-Key`` and
  ``X-Admin-Key`` (timing-safe comparison).
- Per-IP token-bucket rate limiter.
- CORS middleware with explicit origins only.
- Request body size cap.
"""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Callable

from aiohttp import web

from metanode_core.access import ADMIN_ROLE
from metanode_core.errors import (
    ArithmeticOverflow,
    AuthorizationError,
    PausedError,
    TransferFailureError,
    ValidationError,
)
from metanode_core.heights import ManualHeightSource
from metanode_core.invariants import InvariantChecker
from metanode_core.logging_config import set_ledger_log_level

if TYPE_CHECKING:
    from metanode_core.config import APIConfig
    from metanode_core.staking import StakeLedger

logger = logging.getLogger("metanode_api")


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to a non-negative int; accepts decimal strings."""
    if isinstance(value, bool) or isinstance(value, float):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    if n < 0:
        raise web.HTTPBadRequest(text=f"{name} must be non-negative")
    return n


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


def _caller(request: web.Request) -> str:
    account = request.headers.get("X-Account", "").strip()
    if not account:
        raise web.HTTPBadRequest(text="X-Account header required")
    return account


def _invoke(fn: Callable, *args: Any, **kwargs: Any) -> Any:
    """Call a ledger operation, mapping ledger errors to HTTP errors."""
    try:
        return fn(*args, **kwargs)
    except AuthorizationError as exc:
        raise web.HTTPForbidden(text=str(exc))
    except PausedError as exc:
        raise web.HTTPConflict(text=str(exc))
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=str(exc))
    except (ArithmeticOverflow, TransferFailureError) as exc:
        raise web.HTTPUnprocessableEntity(text=str(exc))


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(
            lambda: [float(rpm), time.monotonic()]
        )

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str, admin_api_key: str):
    """
    Require a key on POST/PUT/DELETE (header only, never query).

    ``/admin/*`` is checked against *admin_api_key* via ``X-Admin-Key``;
    everything else against *api_key* via ``X-API-Key``.  An empty
    expected key rejects every request of that group.
    """

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            if request.path.startswith("/admin/"):
                header, expected = "X-Admin-Key", admin_api_key
            else:
                header, expected = "X-API-Key", api_key
            key = request.headers.get(header, "")
            if not expected or not hmac.compare_digest(key.encode(), expected.encode()):
                raise web.HTTPUnauthorized(text=f"Invalid or missing {header}")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """CORS headers for explicitly listed origins; ``*`` is ignored."""

    allowed = set(origins) if origins else set()
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
            resp.headers["Access-Control-Allow-Headers"] = (
                "Content-Type, X-API-Key, X-Admin-Key, X-Account"
            )
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


def build_middlewares(cfg: APIConfig | None) -> list:
    middlewares: list = []
    if cfg is None:
        return middlewares
    if cfg.rate_limit_rpm > 0:
        middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
    if cfg.cors_origins:
        middlewares.append(_make_cors_middleware(cfg.cors_origins))
    if cfg.api_key or cfg.admin_api_key:
        middlewares.append(_make_api_key_middleware(cfg.api_key, cfg.admin_api_key))
    return middlewares


_PAUSE_FLAGS = {
    "all": ("pause", "unpause"),
    "withdraw": ("pause_withdraw", "unpause_withdraw"),
    "claim": ("pause_claim", "unpause_claim"),
}


class APIServer:
    """aiohttp front-end for a ``StakeLedger``."""

    def __init__(
        self,
        ledger: StakeLedger,
        host: str = "127.0.0.1",
        port: int = 8090,
        *,
        api_config: APIConfig | None = None,
    ):
        self.ledger = ledger
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def make_app(self) -> web.Application:
        max_body = self._api_config.max_body_bytes if self._api_config else 65_536
        app = web.Application(
            middlewares=build_middlewares(self._api_config),
            client_max_size=max_body,
        )
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.make_app())
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
        app.router.add_get("/status", self._status)
        app.router.add_get("/pools", self._pools)
        app.router.add_get("/pools/{pid}", self._pool)
        app.router.add_get("/pools/{pid}/users/{address}", self._user)
        app.router.add_get("/pending/{pid}/{address}", self._pending)
        app.router.add_get("/multiplier", self._multiplier)
        app.router.add_get("/events", self._events)

        cfg = self._api_config
        if cfg is not None and cfg.api_key:
            app.router.add_post("/deposit", self._deposit)
            app.router.add_post("/deposit_native", self._deposit_native)
            app.router.add_post("/unstake", self._unstake)
            app.router.add_post("/withdraw", self._withdraw)
            app.router.add_post("/claim", self._claim)
        else:
            logger.warning("No api_key configured; user routes are disabled")

        if cfg is not None and cfg.admin_api_key:
            self._register_admin_routes(app)
        else:
            logger.warning("No admin_api_key configured; admin routes are disabled")

    def _register_admin_routes(self, app: web.Application) -> None:
        app.router.add_post("/admin/pools", self._admin_add_pool)
        app.router.add_post("/admin/pools/{pid}/policy", self._admin_pool_policy)
        app.router.add_post("/admin/pools/{pid}/weight", self._admin_pool_weight)
        app.router.add_post("/admin/campaign", self._admin_campaign)
        app.router.add_post("/admin/pause/{flag}", self._admin_pause)
        app.router.add_post("/admin/unpause/{flag}", self._admin_unpause)
        app.router.add_post("/admin/advance", self._admin_advance)
        app.router.add_post("/admin/log_level", self._admin_log_level)

    # ── read-only handlers ───────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        ok, msg = InvariantChecker().verify(self.ledger)
        body = {
            "status": "ok" if ok else "degraded",
            "height": self.ledger.heights.current_height(),
            "pools": self.ledger.pool_count(),
        }
        if not ok:
            body["error"] = msg
            logger.error(f"Health check failed: {msg}")
        return web.json_response(body, status=200 if ok else 503, dumps=_json_dumps)

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(self.ledger.summary(), dumps=_json_dumps)

    async def _pools(self, _request: web.Request) -> web.Response:
        pools = [self.ledger.pool_info(pid) for pid in range(self.ledger.pool_count())]
        return web.json_response({"pools": pools}, dumps=_json_dumps)

    def _pid(self, request: web.Request) -> int:
        pid = _safe_int(request.match_info["pid"], "pid")
        if pid >= self.ledger.pool_count():
            raise web.HTTPNotFound(text=f"Pool {pid} not found")
        return pid

    async def _pool(self, request: web.Request) -> web.Response:
        return web.json_response(self.ledger.pool_info(self._pid(request)),
                                 dumps=_json_dumps)

    async def _user(self, request: web.Request) -> web.Response:
        pid = self._pid(request)
        info = _invoke(self.ledger.user_info, pid, request.match_info["address"])
        return web.json_response(info, dumps=_json_dumps)

    async def _pending(self, request: web.Request) -> web.Response:
        pid = self._pid(request)
        address = request.match_info["address"]
        height = request.query.get("height")
        at = _safe_int(height, "height") if height is not None else None
        pending = _invoke(self.ledger.pending_reward, pid, address, at)
        return web.json_response(
            {"pid": pid, "address": address, "pending_reward": pending},
            dumps=_json_dumps,
        )

    async def _multiplier(self, request: web.Request) -> web.Response:
        start = _safe_int(request.query.get("from"), "from")
        end = _safe_int(request.query.get("to"), "to")
        value = _invoke(self.ledger.multiplier, start, end)
        return web.json_response({"from": start, "to": end, "multiplier": value},
                                 dumps=_json_dumps)

    async def _events(self, request: web.Request) -> web.Response:
        since = _safe_int(request.query.get("since", 0), "since")
        limit = min(_safe_int(request.query.get("limit", 200), "limit"), 1000)
        records = self.ledger.events.since(since, limit)
        return web.json_response(
            {"events": [e.to_dict() for e in records],
             "last_seq": self.ledger.events.last_seq},
            dumps=_json_dumps,
        )

    # ── user handlers ────────────────────────────────────────────

    async def _deposit(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        pid = _safe_int(body.get("pid"), "pid")
        amount = _safe_int(body.get("amount"), "amount")
        user = _invoke(self.ledger.deposit, caller, pid, amount)
        return web.json_response(
            {"status": "deposited", "pid": pid, "amount": amount,
             "stake_amount": user.stake_amount},
            dumps=_json_dumps,
        )

    async def _deposit_native(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        amount = _safe_int(body.get("amount"), "amount")
        user = _invoke(self.ledger.deposit_native, caller, amount)
        return web.json_response(
            {"status": "deposited", "pid": 0, "amount": amount,
             "stake_amount": user.stake_amount},
            dumps=_json_dumps,
        )

    async def _unstake(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        pid = _safe_int(body.get("pid"), "pid")
        amount = _safe_int(body.get("amount"), "amount")
        req = _invoke(self.ledger.unstake, caller, pid, amount)
        return web.json_response(
            {"status": "requested", "pid": pid, "amount": amount,
             "unlock_height": req.unlock_height if req else None},
            dumps=_json_dumps,
        )

    async def _withdraw(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        pid = _safe_int(body.get("pid"), "pid")
        amount = _invoke(self.ledger.withdraw, caller, pid)
        return web.json_response({"status": "withdrawn", "pid": pid, "amount": amount},
                                 dumps=_json_dumps)

    async def _claim(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        pid = _safe_int(body.get("pid"), "pid")
        paid = _invoke(self.ledger.claim, caller, pid)
        return web.json_response({"status": "claimed", "pid": pid, "paid": paid},
                                 dumps=_json_dumps)

    # ── admin handlers ───────────────────────────────────────────

    async def _admin_add_pool(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        pool = _invoke(
            self.ledger.add_pool,
            caller,
            str(body.get("asset", "")),
            _safe_int(body.get("weight"), "weight"),
            _safe_int(body.get("min_deposit", 0), "min_deposit"),
            _safe_int(body.get("unstake_lock_heights"), "unstake_lock_heights"),
            bool(body.get("settle_all", False)),
        )
        return web.json_response(pool.to_dict(), dumps=_json_dumps)

    async def _admin_pool_policy(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        pid = self._pid(request)
        body = await _json_body(request)
        pool = _invoke(
            self.ledger.update_pool_policy,
            caller,
            pid,
            _safe_int(body.get("min_deposit"), "min_deposit"),
            _safe_int(body.get("unstake_lock_heights"), "unstake_lock_heights"),
        )
        return web.json_response(pool.to_dict(), dumps=_json_dumps)

    async def _admin_pool_weight(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        pid = self._pid(request)
        body = await _json_body(request)
        pool = _invoke(
            self.ledger.set_pool_weight,
            caller,
            pid,
            _safe_int(body.get("weight"), "weight"),
            bool(body.get("settle_all", False)),
        )
        return web.json_response(
            {**pool.to_dict(),
             "total_pool_weight": self.ledger.registry.total_pool_weight},
            dumps=_json_dumps,
        )

    async def _admin_campaign(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        updates: dict[str, Any] = {}
        for name in ("start_height", "end_height", "reward_per_height"):
            if name in body:
                updates[name] = _safe_int(body[name], name)
        if "reward_token" in body:
            updates["reward_token"] = str(body["reward_token"])
        result = _invoke(self.ledger.update_campaign, caller, **updates)
        return web.json_response(result, dumps=_json_dumps)

    def _flag_op(self, request: web.Request, index: int) -> Callable[[str], None]:
        flag = request.match_info["flag"]
        if flag not in _PAUSE_FLAGS:
            raise web.HTTPNotFound(text=f"Unknown flag {flag}; use one of {sorted(_PAUSE_FLAGS)}")
        return getattr(self.ledger, _PAUSE_FLAGS[flag][index])

    async def _admin_pause(self, request: web.Request) -> web.Response:
        _invoke(self._flag_op(request, 0), _caller(request))
        return web.json_response({"status": "paused", "flag": request.match_info["flag"]})

    async def _admin_unpause(self, request: web.Request) -> web.Response:
        _invoke(self._flag_op(request, 1), _caller(request))
        return web.json_response({"status": "unpaused", "flag": request.match_info["flag"]})

    async def _admin_advance(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        _invoke(self.ledger.access.require, caller, ADMIN_ROLE)
        heights = self.ledger.heights
        if not isinstance(heights, ManualHeightSource):
            raise web.HTTPConflict(text="Height source is not manual")
        body = await _json_body(request)
        height = heights.advance(_safe_int(body.get("heights", 1), "heights"))
        return web.json_response({"height": height})

    async def _admin_log_level(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        _invoke(self.ledger.access.require, caller, ADMIN_ROLE)
        body = await _json_body(request)
        try:
            level = set_ledger_log_level(str(body.get("level", "INFO")))
        except ValueError as exc:
            raise web.HTTPBadRequest(text=str(exc))
        return web.json_response({"status": "ok", "level": level})


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)
