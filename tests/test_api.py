"""
Tests for the REST API layer.

Covers:
  - Query endpoints (health, status, root, nullifier, commitment, balance,
    tokens, path, events)
  - Submission endpoints and receipt shape
  - Ledger error mapping to HTTP status (400 / 403 / 409 / 500 / 503)
  - API key, rate limit, CORS and body-size middleware
  - Simulation endpoint
  - Queries served off the event loop while a commit holds the pool
"""

from __future__ import annotations

import asyncio
import threading

import pytest
from aiohttp.test_utils import TestClient, TestServer

from shieldpool_core.api import APIServer, _TokenBucket, status_for
from shieldpool_core.config import APIConfig
from shieldpool_core.errors import (
    DuplicateCommitment,
    InsufficientPoolBalance,
    InvalidProof,
    InvariantViolation,
    NullifierAlreadySpent,
    TransferFailed,
    Unauthorized,
)
from shieldpool_core.field import to_bytes32
from shieldpool_core.indexer import PoolIndexer

# ─── Helpers ────────────────────────────────────────────────────────


def _client(h, api_config=None, with_indexer=True):
    indexer = None
    if with_indexer:
        indexer = PoolIndexer(h.pool.events, h.pool.tree.depth, h.pool.tree.hasher)
    api = APIServer(h.pool, indexer, host="127.0.0.1", port=0, api_config=api_config)
    return TestClient(TestServer(api.build_app()))


def _hex(value: int) -> str:
    return to_bytes32(value)


def _transfer_body(h, **overrides):
    req = h.transfer_request()
    body = {
        "proof": req.proof,
        "root": _hex(req.root),
        "nullifier": _hex(req.nullifier),
        "output1": _hex(req.output1),
        "output2": _hex(req.output2),
    }
    body.update(overrides)
    return body


def _unshield_body(h, amount=100, **overrides):
    body = {
        "proof": h.PROOF,
        "root": _hex(h.root()),
        "nullifier": _hex(h.fresh()),
        "recipient": h.BOB,
        "token": h.USDC,
        "amount": amount,
    }
    body.update(overrides)
    return body


# ═══════════════════════════════════════════════════════════════════
#  Error mapping
# ═══════════════════════════════════════════════════════════════════

class TestStatusMapping:
    @pytest.mark.parametrize("exc,status", [
        (InvalidProof("x"), 400),
        (NullifierAlreadySpent("x"), 409),
        (DuplicateCommitment("x"), 409),
        (Unauthorized("x"), 403),
        (InsufficientPoolBalance("x"), 503),
        (TransferFailed("x"), 503),
        (InvariantViolation("x"), 500),
    ])
    def test_status_for(self, exc, status):
        assert status_for(exc) == status


# ═══════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════

class TestQueries:
    @pytest.mark.asyncio
    async def test_health(self, funded):
        async with _client(funded) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["ok"] is True
            assert data["checks"]["solvency"] == "ok"
            assert data["leaf_count"] == 3

    @pytest.mark.asyncio
    async def test_health_degraded_when_insolvent(self, funded):
        funded.bank.payout(funded.USDC, funded.POOL, [(funded.BOB, 10)])
        async with _client(funded) as client:
            resp = await client.get("/health")
            assert resp.status == 503
            assert (await resp.json())["checks"]["solvency"] == "degraded"

    @pytest.mark.asyncio
    async def test_status(self, funded):
        async with _client(funded) as client:
            data = await (await client.get("/status")).json()
            assert data["leaf_count"] == 3
            assert data["owner"] == funded.OWNER
            assert "indexer_cursor" in data

    @pytest.mark.asyncio
    async def test_root(self, funded):
        async with _client(funded) as client:
            data = await (await client.get("/root")).json()
            assert data["root"] == _hex(funded.root())
            assert data["known_roots"][0] == data["root"]
            known = await (await client.get(f"/root/{data['root']}/known")).json()
            assert known["known"] is True
            unknown = await (await client.get("/root/0x1234/known")).json()
            assert unknown["known"] is False

    @pytest.mark.asyncio
    async def test_nullifier(self, funded):
        req = funded.transfer_request()
        funded.pool.transfer(req)
        async with _client(funded) as client:
            data = await (await client.get(f"/nullifier/{_hex(req.nullifier)}")).json()
            assert data["spent"] is True
            data = await (await client.get(f"/nullifier/{req.nullifier + 1}")).json()
            assert data["spent"] is False

    @pytest.mark.asyncio
    async def test_bad_field(self, funded):
        async with _client(funded) as client:
            resp = await client.get("/nullifier/xyz")
            assert resp.status == 400
            assert (await resp.json())["code"] == "BadRequest"

    @pytest.mark.asyncio
    async def test_commitment_with_note(self, funded):
        commitment = funded.shield()
        async with _client(funded) as client:
            data = await (await client.get(f"/commitment/{_hex(commitment)}")).json()
            assert data["exists"] is True
            assert data["leaf_index"] == 3
            assert data["note"]["source"] == "shield"
            data = await (await client.get("/commitment/0x99")).json()
            assert data["exists"] is False
            assert "note" not in data

    @pytest.mark.asyncio
    async def test_balance(self, funded):
        async with _client(funded) as client:
            data = await (await client.get(f"/balance/{funded.USDC}")).json()
            assert data["balance"] == 10_000
            assert data["supported"] is True
            assert data["flows"]["shielded"] == 10_000
            resp = await client.get("/balance/not-an-address")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_tokens(self, funded):
        async with _client(funded) as client:
            data = await (await client.get("/tokens")).json()
            assert data["count"] == 3

    @pytest.mark.asyncio
    async def test_path(self, funded):
        async with _client(funded) as client:
            data = await (await client.get("/path/1")).json()
            assert data["leaf_index"] == 1
            assert data["root"] == hex(funded.root())
            assert len(data["path_elements"]) == funded.pool.tree.depth
            assert (await client.get("/path/99")).status == 404
            assert (await client.get("/path/abc")).status == 400

    @pytest.mark.asyncio
    async def test_path_without_indexer(self, funded):
        async with _client(funded, with_indexer=False) as client:
            assert (await client.get("/path/0")).status == 404

    @pytest.mark.asyncio
    async def test_events(self, funded):
        async with _client(funded) as client:
            data = await (await client.get("/events?since=3&limit=2")).json()
            assert [e["seq"] for e in data["events"]] == [4, 5]
            assert data["last_seq"] == funded.pool.events.last_seq
            data = await (await client.get("/events?kind=Shield")).json()
            assert len(data["events"]) == 3
            assert "amount" not in data["events"][0]["data"]
            assert (await client.get("/events?since=x")).status == 400


class TestQueriesOffLoop:
    @pytest.mark.asyncio
    async def test_loop_stays_free_while_pool_is_locked(self, funded):
        held, release = threading.Event(), threading.Event()

        def long_commit():
            with funded.pool._lock:
                held.set()
                release.wait(5)

        holder = threading.Thread(target=long_commit)
        holder.start()
        held.wait(5)
        try:
            async with _client(funded) as client:
                waiting = [asyncio.ensure_future(client.get(path))
                           for path in ("/root", "/health", "/tokens")]
                resp = await asyncio.wait_for(client.get("/events?limit=1"), timeout=2)
                assert resp.status == 200
                assert not any(task.done() for task in waiting)
                release.set()
                for task in waiting:
                    assert (await task).status == 200
        finally:
            release.set()
            holder.join()


# ═══════════════════════════════════════════════════════════════════
#  Submissions
# ═══════════════════════════════════════════════════════════════════

class TestSubmissions:
    @pytest.mark.asyncio
    async def test_shield(self, h):
        async with _client(h) as client:
            resp = await client.post("/tx/shield", json={
                "sender": h.ALICE, "token": h.USDC, "amount": 77, "commitment": "0x2a",
            })
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "accepted"
            assert data["receipt"]["leaf_indices"] == [0]
        assert h.pool.balance_of(h.USDC) == 77

    @pytest.mark.asyncio
    async def test_transfer_and_replay(self, funded):
        body = _transfer_body(funded)
        async with _client(funded) as client:
            resp = await client.post("/tx/transfer", json=body)
            assert resp.status == 200
            again = dict(body, output1=_hex(funded.fresh()), output2=_hex(funded.fresh()))
            resp = await client.post("/tx/transfer", json=again)
            assert resp.status == 409
            data = await resp.json()
            assert data["code"] == "NullifierAlreadySpent"
            assert data["retryable"] is False
            assert data["suggestion"]

    @pytest.mark.asyncio
    async def test_unshield(self, funded):
        async with _client(funded) as client:
            resp = await client.post("/tx/unshield", json=_unshield_body(funded, amount=250))
            assert resp.status == 200
            receipt = (await resp.json())["receipt"]
            assert receipt["details"]["amount"] == 250
        assert funded.bank.balance_of(funded.USDC, funded.BOB) == 250

    @pytest.mark.asyncio
    async def test_unshield_liquidity_is_retryable(self, funded):
        async with _client(funded) as client:
            resp = await client.post("/tx/unshield", json=_unshield_body(funded, amount=10**9))
            assert resp.status == 503
            assert (await resp.json())["retryable"] is True

    @pytest.mark.asyncio
    async def test_swap(self, funded):
        funded.bank.fund(funded.POOL, funded.WETH, 1_000)
        async with _client(funded) as client:
            resp = await client.post("/tx/swap", json={
                "proof": funded.PROOF, "root": _hex(funded.root()),
                "nullifier": _hex(funded.fresh()), "output1": _hex(funded.fresh()),
                "token_in": funded.USDC, "token_out": funded.WETH,
                "swap_amount": 100, "output_amount": 106,
            })
            assert resp.status == 400
            assert (await resp.json())["code"] == "InvalidSwapRate"

    @pytest.mark.asyncio
    async def test_batch_transfer(self, funded):
        items = [{"proof": funded.PROOF, "root": _hex(funded.root()),
                  "nullifier": _hex(funded.fresh())} for _ in range(3)]
        async with _client(funded) as client:
            resp = await client.post("/tx/batch_transfer", json={
                "items": items, "output1": _hex(funded.fresh()),
                "relayer": funded.RELAYER, "fee": 10,
            })
            assert resp.status == 400
            assert (await resp.json())["code"] == "InvalidAmount"
            resp = await client.post("/tx/batch_transfer", json={
                "items": items, "output1": _hex(funded.fresh()),
                "relayer": funded.RELAYER, "fee": 9,
            })
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_batch_unshield(self, funded):
        items = [{"proof": funded.PROOF, "root": _hex(funded.root()),
                  "nullifier": _hex(funded.fresh()), "amount": 10} for _ in range(2)]
        async with _client(funded) as client:
            resp = await client.post("/tx/batch_unshield", json={
                "items": items, "recipient": funded.BOB, "token": funded.USDC,
            })
            assert resp.status == 200
        assert funded.bank.balance_of(funded.USDC, funded.BOB) == 20

    @pytest.mark.asyncio
    async def test_multi_transfer(self, funded):
        async with _client(funded) as client:
            resp = await client.post("/tx/multi_transfer", json={
                "proof": funded.PROOF,
                "roots": [_hex(funded.root())] * 2,
                "nullifiers": [_hex(funded.fresh()), _hex(funded.fresh())],
                "output1": _hex(funded.fresh()),
            })
            assert resp.status == 200
            resp = await client.post("/tx/multi_transfer", json={"proof": funded.PROOF})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_memo_too_large(self, funded):
        async with _client(funded) as client:
            resp = await client.post("/tx/transfer",
                                     json=_transfer_body(funded, memo1="ab" * 1025))
            assert resp.status == 400
            assert (await resp.json())["code"] == "MemoTooLarge"

    @pytest.mark.asyncio
    async def test_missing_field(self, funded):
        body = _transfer_body(funded)
        del body["root"]
        async with _client(funded) as client:
            resp = await client.post("/tx/transfer", json=body)
            assert resp.status == 400
            assert "root" in (await resp.json())["error"]

    @pytest.mark.asyncio
    async def test_invalid_json(self, funded):
        async with _client(funded) as client:
            resp = await client.post("/tx/transfer", data=b"{not json",
                                     headers={"Content-Type": "application/json"})
            assert resp.status == 400
            resp = await client.post("/tx/transfer", json=[1, 2])
            assert resp.status == 400


# ═══════════════════════════════════════════════════════════════════
#  Simulation
# ═══════════════════════════════════════════════════════════════════

class TestSimulateEndpoint:
    @pytest.mark.asyncio
    async def test_without_proof(self, funded):
        body = _transfer_body(funded, kind="transfer")
        del body["proof"]
        async with _client(funded) as client:
            data = await (await client.post("/simulate", json=body)).json()
            assert data["would_pass"] is True
        assert funded.verifier.calls == []

    @pytest.mark.asyncio
    async def test_failure_reported(self, funded):
        body = _unshield_body(funded, amount=10**9, kind="unshield")
        async with _client(funded) as client:
            data = await (await client.post("/simulate", json=body)).json()
            assert data["would_pass"] is False
            assert data["code"] == "InsufficientPoolBalance"

    @pytest.mark.asyncio
    async def test_unknown_kind(self, funded):
        async with _client(funded) as client:
            resp = await client.post("/simulate", json={"kind": "mint"})
            assert resp.status == 400


# ═══════════════════════════════════════════════════════════════════
#  Middleware
# ═══════════════════════════════════════════════════════════════════

class TestMiddleware:
    @pytest.mark.asyncio
    async def test_api_key(self, funded):
        cfg = APIConfig(api_key="secret123", rate_limit_rpm=0)
        async with _client(funded, cfg) as client:
            assert (await client.get("/health")).status == 200
            resp = await client.post("/tx/transfer", json=_transfer_body(funded))
            assert resp.status == 401
            resp = await client.post("/tx/transfer", json=_transfer_body(funded),
                                     headers={"X-API-Key": "wrong"})
            assert resp.status == 401
            resp = await client.post("/tx/transfer", json=_transfer_body(funded),
                                     headers={"X-API-Key": "secret123"})
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_rate_limit(self, funded):
        cfg = APIConfig(rate_limit_rpm=3)
        async with _client(funded, cfg) as client:
            statuses = [(await client.get("/root")).status for _ in range(4)]
            assert statuses == [200, 200, 200, 429]

    @pytest.mark.asyncio
    async def test_cors(self, funded):
        cfg = APIConfig(rate_limit_rpm=0, cors_origins=["http://wallet.local", "*"])
        async with _client(funded, cfg) as client:
            resp = await client.get("/root", headers={"Origin": "http://wallet.local"})
            assert resp.headers["Access-Control-Allow-Origin"] == "http://wallet.local"
            resp = await client.get("/root", headers={"Origin": "http://evil.example"})
            assert "Access-Control-Allow-Origin" not in resp.headers
            resp = await client.options("/tx/transfer",
                                        headers={"Origin": "http://wallet.local"})
            assert resp.status == 204

    @pytest.mark.asyncio
    async def test_body_size_cap(self, funded):
        cfg = APIConfig(rate_limit_rpm=0, max_body_bytes=256)
        async with _client(funded, cfg) as client:
            resp = await client.post("/tx/transfer",
                                     json=_transfer_body(funded, memo1="ab" * 400))
            assert resp.status == 413


class TestTokenBucket:
    def test_allows_up_to_limit(self):
        bucket = _TokenBucket(2)
        assert bucket.allow("1.1.1.1")
        assert bucket.allow("1.1.1.1")
        assert not bucket.allow("1.1.1.1")
        assert bucket.allow("2.2.2.2")

    def test_refill(self):
        bucket = _TokenBucket(60)
        for _ in range(60):
            bucket.allow("x")
        assert not bucket.allow("x")
        bucket._buckets["x"][1] -= 2.0
        assert bucket.allow("x")

    def test_unlimited(self):
        bucket = _TokenBucket(0)
        assert all(bucket.allow("x") for _ in range(500))
