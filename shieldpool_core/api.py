"""
REST / HTTP API server for a ShieldPool node.

Built on ``aiohttp``.  Ledger calls are dispatched to a thread pool so
proof verification of concurrent submissions can overlap; the ledger's own
lock serialises the commit sections.

Endpoints
---------
GET  /health                    Solvency + capacity health check
GET  /status                    Pool summary
GET  /root                      Latest root and the known-root window
GET  /root/{root}/known         Is ``root`` inside the history window
GET  /nullifier/{nullifier}     Spent flag
GET  /commitment/{commitment}   Leaf index (and indexer metadata)
GET  /balance/{token}           Token policy, shielded balance and flows
GET  /tokens                    Every known token
GET  /path/{leaf_index}         Merkle authentication path (indexer)
GET  /events                    Event log page (?since=&limit=&kind=)
POST /tx/shield                 Deposit into the pool
POST /tx/transfer               Private transfer
POST /tx/unshield               Withdraw to a public address
POST /tx/swap                   Private swap
POST /tx/batch_transfer         Batched transfer
POST /tx/batch_unshield         Batched withdrawal
POST /tx/multi_transfer         Multi-input transfer
POST /simulate                  Dry-run a transfer / unshield / swap

Errors
------
Ledger rejections come back as
``{"error", "code", "retryable", "suggestion"}`` with status

  - 400  permanent rejection
  - 409  replay (spent nullifier, duplicate commitment)
  - 403  ``Unauthorized``
  - 503  retryable (liquidity, failed payout)
  - 500  ``InvariantViolation``

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only.
  Timing-safe comparison via ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (origins configurable via ``cors_origins``).
- Request body size cap (``max_body_bytes``, default 1 MiB).

Usage:
    api = APIServer(pool, indexer, host="127.0.0.1", port=8080)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from aiohttp import web

from shieldpool_core.errors import (
    REPLAY_CODES,
    InvariantViolation,
    MemoTooLarge,
    ShieldedPoolError,
    Unauthorized,
    suggestion_for,
)
from shieldpool_core.field import from_hex, to_bytes32
from shieldpool_core.invariants import PoolInvariantChecker
from shieldpool_core.ledger import (
    BatchItem,
    BatchTransferRequest,
    BatchUnshieldItem,
    BatchUnshieldRequest,
    MultiInputTransferRequest,
    SwapRequest,
    TransferRequest,
    UnshieldRequest,
)
from shieldpool_core.simulate import TransactionSimulator

if TYPE_CHECKING:
    from shieldpool_core.config import APIConfig
    from shieldpool_core.indexer import PoolIndexer
    from shieldpool_core.ledger import ShieldedPool

logger = logging.getLogger("shieldpool_api")

MAX_EVENTS_PAGE = 500


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _bad_request(msg: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": msg, "code": "BadRequest", "retryable": False}),
        content_type="application/json",
    )


def _parse_field(value: Any, name: str) -> int:
    """Accept an int or a 0x-prefixed / decimal string."""
    if isinstance(value, bool):
        raise _bad_request(f"{name} must be an integer or hex string")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            if value.startswith(("0x", "0X")):
                return from_hex(value)
            return int(value, 10)
        except ValueError:
            pass
    raise _bad_request(f"{name} must be an integer or hex string")


def _field(body: dict, name: str, default: int | None = None) -> int:
    if name not in body or body[name] is None:
        if default is None:
            raise _bad_request(f"{name} is required")
        return default
    return _parse_field(body[name], name)


def _str(body: dict, name: str, default: str | None = None) -> str:
    value = body.get(name, default)
    if not isinstance(value, str) or not value:
        if default is not None:
            return default
        raise _bad_request(f"{name} is required")
    return value


def _proof(value: Any) -> list[int]:
    if not isinstance(value, list):
        raise _bad_request("proof must be a list of field elements")
    return [_parse_field(v, "proof element") for v in value]


def _memo(body: dict, name: str, limit: int) -> bytes:
    value = body.get(name) or ""
    if not isinstance(value, str):
        raise _bad_request(f"{name} must be a hex string")
    text = value[2:] if value.startswith("0x") else value
    if len(text) > 2 * limit:
        raise MemoTooLarge(f"{name} exceeds {limit} bytes")
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise _bad_request(f"{name} must be a hex string") from None


def _items(body: dict) -> list[dict]:
    items = body.get("items")
    if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
        raise _bad_request("items must be a list of objects")
    return items


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)


# ═══════════════════════════════════════════════════════════════════
#  Error mapping
# ═══════════════════════════════════════════════════════════════════

def status_for(exc: ShieldedPoolError) -> int:
    if isinstance(exc, InvariantViolation):
        return 500
    if isinstance(exc, Unauthorized):
        return 403
    if exc.code in REPLAY_CODES:
        return 409
    if exc.retryable:
        return 503
    return 400


def error_response(exc: ShieldedPoolError) -> web.Response:
    return web.json_response({
        "error": exc.message,
        "code": exc.code,
        "retryable": exc.retryable,
        "suggestion": suggestion_for(exc.code),
    }, status=status_for(exc))


@web.middleware
async def pool_error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except ShieldedPoolError as exc:
        return error_response(exc)


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

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
    """aiohttp middleware that enforces per-IP rate limits."""

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


def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires an API key on POST/PUT/DELETE.

    The key is read from the ``X-API-Key`` header only, never from query
    parameters, and compared with ``hmac.compare_digest``.
    """

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key.encode(), api_key.encode()):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """aiohttp middleware that adds CORS headers for listed origins.

    The ``*`` wildcard is ignored; operators must list concrete origins.
    """

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
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


class APIServer:
    """Thin aiohttp wrapper around a ``ShieldedPool``."""

    def __init__(
        self,
        pool: ShieldedPool,
        indexer: PoolIndexer | None = None,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
        workers: int = 4,
    ):
        self.pool = pool
        self.indexer = indexer
        self.simulator = TransactionSimulator(pool)
        self.host = host
        self.port = port
        self._api_config = api_config
        self._executor = ThreadPoolExecutor(max_workers=workers,
                                            thread_name_prefix="shieldpool-api")
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 1_048_576

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))
        middlewares.append(pool_error_middleware)

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
        self._executor.shutdown(wait=False)

    async def _call(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    @property
    def _memo_limit(self) -> int:
        return self.pool.params.max_memo_bytes

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/status", self._status)
        app.router.add_get("/root", self._root)
        app.router.add_get("/root/{root}/known", self._root_known)
        app.router.add_get("/nullifier/{nullifier}", self._nullifier)
        app.router.add_get("/commitment/{commitment}", self._commitment)
        app.router.add_get("/balance/{token}", self._balance)
        app.router.add_get("/tokens", self._tokens)
        app.router.add_get("/path/{leaf_index}", self._path)
        app.router.add_get("/events", self._events)
        app.router.add_post("/tx/shield", self._submit_shield)
        app.router.add_post("/tx/transfer", self._submit_transfer)
        app.router.add_post("/tx/unshield", self._submit_unshield)
        app.router.add_post("/tx/swap", self._submit_swap)
        app.router.add_post("/tx/batch_transfer", self._submit_batch_transfer)
        app.router.add_post("/tx/batch_unshield", self._submit_batch_unshield)
        app.router.add_post("/tx/multi_transfer", self._submit_multi_transfer)
        app.router.add_post("/simulate", self._simulate)

    # ── query handlers ───────────────────────────────────────────
    #
    # Reads that touch pool state take the pool lock, which a commit holds
    # through payouts and indexer hashing, so they run on the executor.

    def _health_report(self) -> tuple[bool, str, dict, dict]:
        with self.pool._lock:
            solvent, msg, report = PoolInvariantChecker.check_solvency(self.pool)
            tree = {
                "full": self.pool.tree.is_full,
                "leaf_count": self.pool.tree.size,
                "capacity": self.pool.tree.capacity,
            }
        return solvent, msg, report, tree

    async def _health(self, _request: web.Request) -> web.Response:
        """Solvency audit plus tree capacity."""
        solvent, msg, report, tree = await self._call(self._health_report)
        tree_ok = not tree["full"]
        healthy = solvent and tree_ok
        if not solvent:
            logger.warning(f"Solvency check failed: {msg}")
        return web.json_response({
            "ok": healthy,
            "leaf_count": tree["leaf_count"],
            "capacity": tree["capacity"],
            "solvency": report,
            "checks": {
                "solvency": "ok" if solvent else "degraded",
                "tree": "ok" if tree_ok else "full",
            },
        }, status=200 if healthy else 503)

    def _status_report(self) -> dict:
        status = self.pool.status()
        if self.indexer is not None:
            status["indexer_cursor"] = self.indexer.cursor
        return status

    async def _status(self, _request: web.Request) -> web.Response:
        status = await self._call(self._status_report)
        return web.json_response(status, dumps=_json_dumps)

    def _root_report(self) -> dict:
        with self.pool._lock:
            return {
                "root": to_bytes32(self.pool.tree.latest_root()),
                "known_roots": [to_bytes32(r) for r in self.pool.tree.known_roots()],
            }

    async def _root(self, _request: web.Request) -> web.Response:
        return web.json_response(await self._call(self._root_report))

    async def _root_known(self, request: web.Request) -> web.Response:
        root = _parse_field(request.match_info["root"], "root")
        known = await self._call(self.pool.is_known_root, root)
        return web.json_response({"root": to_bytes32(root), "known": known})

    async def _nullifier(self, request: web.Request) -> web.Response:
        nullifier = _parse_field(request.match_info["nullifier"], "nullifier")
        spent = await self._call(self.pool.is_spent, nullifier)
        return web.json_response({"nullifier": to_bytes32(nullifier), "spent": spent})

    def _commitment_report(self, commitment: int) -> dict[str, Any]:
        leaf_index = self.pool.commitment_leaf_index(commitment)
        result: dict[str, Any] = {
            "commitment": to_bytes32(commitment),
            "exists": leaf_index is not None,
            "leaf_index": leaf_index,
        }
        if self.indexer is not None and leaf_index is not None:
            self.indexer.sync()
            note = self.indexer.note(commitment)
            if note is not None:
                result["note"] = note.to_dict()
        return result

    async def _commitment(self, request: web.Request) -> web.Response:
        commitment = _parse_field(request.match_info["commitment"], "commitment")
        return web.json_response(await self._call(self._commitment_report, commitment))

    async def _balance(self, request: web.Request) -> web.Response:
        try:
            info = await self._call(self.pool.token_info, request.match_info["token"])
        except ValueError as exc:
            raise _bad_request(str(exc)) from None
        return web.json_response(info, dumps=_json_dumps)

    def _tokens_report(self) -> list[dict]:
        with self.pool._lock:
            return [self.pool.token_info(rec.token) for rec in self.pool.tokens.records()]

    async def _tokens(self, _request: web.Request) -> web.Response:
        tokens = await self._call(self._tokens_report)
        return web.json_response({"tokens": tokens, "count": len(tokens)}, dumps=_json_dumps)

    def _path_for(self, leaf_index: int):
        self.indexer.sync()
        return self.indexer.path(leaf_index)

    async def _path(self, request: web.Request) -> web.Response:
        if self.indexer is None:
            return web.json_response({"error": "indexer not enabled"}, status=404)
        try:
            leaf_index = int(request.match_info["leaf_index"])
        except ValueError:
            raise _bad_request("leaf_index must be an integer") from None
        try:
            path = await self._call(self._path_for, leaf_index)
        except IndexError as exc:
            return web.json_response({"error": str(exc)}, status=404)
        return web.json_response(path.to_dict())

    async def _events(self, request: web.Request) -> web.Response:
        try:
            since = int(request.query.get("since", "0"))
            limit = min(int(request.query.get("limit", "100")), MAX_EVENTS_PAGE)
        except ValueError:
            raise _bad_request("since and limit must be integers") from None
        kind = request.query.get("kind") or None
        records = await self._call(self.pool.events.since, since, limit, kind)
        return web.json_response({
            "events": [r.to_dict() for r in records],
            "last_seq": self.pool.events.last_seq,
        }, dumps=_json_dumps)

    # ── submission handlers ──────────────────────────────────────

    async def _body(self, request: web.Request) -> dict:
        try:
            body = await request.json()
        except ValueError as exc:
            raise _bad_request("Invalid JSON body") from exc
        if not isinstance(body, dict):
            raise _bad_request("JSON body must be an object")
        return body

    def _transfer_request(self, body: dict) -> TransferRequest:
        return TransferRequest(
            proof=_proof(body.get("proof")),
            root=_field(body, "root"),
            nullifier=_field(body, "nullifier"),
            output1=_field(body, "output1"),
            output2=_field(body, "output2", 0),
            relayer=_str(body, "relayer", "0x" + "00" * 20),
            fee=_field(body, "fee", 0),
            memo1=_memo(body, "memo1", self._memo_limit),
            memo2=_memo(body, "memo2", self._memo_limit),
        )

    def _unshield_request(self, body: dict) -> UnshieldRequest:
        return UnshieldRequest(
            proof=_proof(body.get("proof")),
            root=_field(body, "root"),
            nullifier=_field(body, "nullifier"),
            recipient=_str(body, "recipient"),
            token=_str(body, "token"),
            amount=_field(body, "amount"),
            change_commitment=_field(body, "change_commitment", 0),
            relayer=_str(body, "relayer", "0x" + "00" * 20),
            fee=_field(body, "fee", 0),
        )

    def _swap_request(self, body: dict) -> SwapRequest:
        return SwapRequest(
            proof=_proof(body.get("proof")),
            root=_field(body, "root"),
            nullifier=_field(body, "nullifier"),
            output1=_field(body, "output1"),
            output2=_field(body, "output2", 0),
            token_in=_str(body, "token_in"),
            token_out=_str(body, "token_out"),
            swap_amount=_field(body, "swap_amount"),
            output_amount=_field(body, "output_amount"),
            min_amount_out=_field(body, "min_amount_out", 0),
            memo=_memo(body, "memo", self._memo_limit),
        )

    async def _submit_shield(self, request: web.Request) -> web.Response:
        """
        POST /tx/shield
        Body: {"sender", "token", "amount", "commitment", "proof"?}
        """
        body = await self._body(request)
        proof = _proof(body["proof"]) if body.get("proof") is not None else None
        receipt = await self._call(
            self.pool.shield, _str(body, "sender"), _str(body, "token"),
            _field(body, "amount"), _field(body, "commitment"), proof,
        )
        return web.json_response({"status": "accepted", "receipt": receipt.to_dict()})

    async def _submit_transfer(self, request: web.Request) -> web.Response:
        req = self._transfer_request(await self._body(request))
        receipt = await self._call(self.pool.transfer, req)
        return web.json_response({"status": "accepted", "receipt": receipt.to_dict()})

    async def _submit_unshield(self, request: web.Request) -> web.Response:
        req = self._unshield_request(await self._body(request))
        receipt = await self._call(self.pool.unshield, req)
        return web.json_response({"status": "accepted", "receipt": receipt.to_dict()})

    async def _submit_swap(self, request: web.Request) -> web.Response:
        req = self._swap_request(await self._body(request))
        receipt = await self._call(self.pool.swap, req)
        return web.json_response({"status": "accepted", "receipt": receipt.to_dict()})

    async def _submit_batch_transfer(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        req = BatchTransferRequest(
            items=[BatchItem(_proof(i.get("proof")), _field(i, "root"), _field(i, "nullifier"))
                   for i in _items(body)],
            output1=_field(body, "output1"),
            output2=_field(body, "output2", 0),
            relayer=_str(body, "relayer", "0x" + "00" * 20),
            fee=_field(body, "fee", 0),
            memo1=_memo(body, "memo1", self._memo_limit),
            memo2=_memo(body, "memo2", self._memo_limit),
        )
        receipt = await self._call(self.pool.batch_transfer, req)
        return web.json_response({"status": "accepted", "receipt": receipt.to_dict()})

    async def _submit_batch_unshield(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        req = BatchUnshieldRequest(
            items=[BatchUnshieldItem(_proof(i.get("proof")), _field(i, "root"),
                                     _field(i, "nullifier"), _field(i, "amount"))
                   for i in _items(body)],
            recipient=_str(body, "recipient"),
            token=_str(body, "token"),
            relayer=_str(body, "relayer", "0x" + "00" * 20),
            fee=_field(body, "fee", 0),
        )
        receipt = await self._call(self.pool.batch_unshield, req)
        return web.json_response({"status": "accepted", "receipt": receipt.to_dict()})

    async def _submit_multi_transfer(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        roots = body.get("roots")
        nullifiers = body.get("nullifiers")
        if not isinstance(roots, list) or not isinstance(nullifiers, list):
            raise _bad_request("roots and nullifiers must be lists")
        req = MultiInputTransferRequest(
            proof=_proof(body.get("proof")),
            roots=[_parse_field(r, "root") for r in roots],
            nullifiers=[_parse_field(n, "nullifier") for n in nullifiers],
            output1=_field(body, "output1"),
            output2=_field(body, "output2", 0),
            relayer=_str(body, "relayer", "0x" + "00" * 20),
            fee=_field(body, "fee", 0),
            memo1=_memo(body, "memo1", self._memo_limit),
            memo2=_memo(body, "memo2", self._memo_limit),
        )
        receipt = await self._call(self.pool.multi_input_transfer, req)
        return web.json_response({"status": "accepted", "receipt": receipt.to_dict()})

    async def _simulate(self, request: web.Request) -> web.Response:
        """
        POST /simulate
        Body: {"kind": "transfer" | "unshield" | "swap", ...request fields}
        """
        body = await self._body(request)
        builders = {
            "transfer": self._transfer_request,
            "unshield": self._unshield_request,
            "swap": self._swap_request,
        }
        kind = body.get("kind")
        if kind not in builders:
            raise _bad_request("kind must be transfer, unshield or swap")
        if not isinstance(body.get("proof"), list):
            body = dict(body, proof=[0] * 8)
        result = await self._call(self.simulator.simulate, kind, builders[kind](body))
        return web.json_response(result.to_dict())


__all__ = [
    "APIServer",
    "error_response",
    "pool_error_middleware",
    "status_for",
]
