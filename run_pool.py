#!/usr/bin/env python3
"""
ShieldPool Node Runner — starts a pool node with:
  - the shielded ledger and its event indexer
  - SQLite persistence with periodic snapshots
  - the REST API

Usage:
    python run_pool.py --config shieldpool.toml
    python run_pool.py --owner 0x<40 hex> --api-port 8080 \\
                       --fund 0x<holder> 0x<token> 1000000

Environment variables (alternative to flags):
    SHIELDPOOL_OWNER, SHIELDPOOL_API_PORT, SHIELDPOOL_DB_PATH, ...
    (see shieldpool_core.config.load_config)
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from shieldpool_core.admin import PoolParameters  # noqa: E402
from shieldpool_core.config import ShieldPoolConfig, load_config  # noqa: E402
from shieldpool_core.custody import CustodyBackend, InMemoryBank  # noqa: E402
from shieldpool_core.field import make_hasher  # noqa: E402
from shieldpool_core.indexer import PoolIndexer  # noqa: E402
from shieldpool_core.ledger import ShieldedPool  # noqa: E402
from shieldpool_core.logging_config import setup_logging  # noqa: E402
from shieldpool_core.quotes import StaticRateQuoter  # noqa: E402
from shieldpool_core.storage import PoolStore  # noqa: E402
from shieldpool_core.verifier import (  # noqa: E402
    AttestationVerifier,
    ProofVerifier,
    StubVerifier,
    VerifierSet,
)

logger = logging.getLogger("node")


# ===================================================================
#  Pool assembly
# ===================================================================

def build_verifiers(cfg: ShieldPoolConfig) -> VerifierSet:
    mode = cfg.verifier.mode.lower()
    verifier: ProofVerifier
    if mode == "stub":
        verifier = StubVerifier()
    elif mode == "attestation":
        if not cfg.verifier.prover_pubkey:
            raise ValueError("[verifier] prover_pubkey is required in attestation mode")
        verifier = AttestationVerifier.from_public_hex(cfg.verifier.prover_pubkey)
    else:
        raise ValueError(f"unknown verifier mode {cfg.verifier.mode!r}")
    return VerifierSet.uniform(verifier, cfg.pool.max_multi_inputs,
                               include_shield=cfg.verifier.require_shield_proof)


def build_quoter(cfg: ShieldPoolConfig) -> StaticRateQuoter:
    quoter = StaticRateQuoter(max_age=cfg.swap.quote_max_age)
    for entry in cfg.swap.rates:
        quoter.set_rate(entry["token_in"], entry["token_out"],
                        int(entry["rate"]), int(entry.get("scale", 0)))
    return quoter


def build_pool(cfg: ShieldPoolConfig, custody: CustodyBackend | None = None) -> ShieldedPool:
    """Assemble a pool from configuration; custody defaults to an ``InMemoryBank``."""
    if not cfg.admin.owner:
        raise ValueError("pool owner is required ([admin] owner or SHIELDPOOL_OWNER)")
    params = PoolParameters(
        min_shield_amount=cfg.pool.min_shield_amount,
        max_memo_bytes=cfg.pool.max_memo_bytes,
        max_batch_size=cfg.pool.max_batch_size,
        max_multi_inputs=cfg.pool.max_multi_inputs,
        slippage_bps=cfg.swap.slippage_bps,
        platform_fee=cfg.swap.platform_fee,
        treasury=cfg.swap.treasury or "0x" + "00" * 20,
        relayer_router=cfg.admin.relayer_router or None,
        relayers=set(cfg.admin.relayers),
    )
    pool = ShieldedPool(
        pool_address=cfg.pool.pool_address,
        owner=cfg.admin.owner,
        custody=custody if custody is not None else InMemoryBank(),
        verifiers=build_verifiers(cfg),
        quoter=build_quoter(cfg),
        params=params,
        tree_depth=cfg.pool.tree_depth,
        root_history_size=cfg.pool.root_history_size,
        hasher=make_hasher(cfg.pool.hasher),
    )
    return pool


# ===================================================================
#  ShieldPool Node
# ===================================================================

class ShieldPoolNode:
    """Combines the pool, indexer, persistence and API into a runnable node."""

    def __init__(self, config: ShieldPoolConfig, custody: CustodyBackend | None = None):
        self.config = config
        self.pool = build_pool(config, custody)
        # The default bank lives only in this process, so it is persisted
        # alongside the pool; an external custody keeps its own books.
        self._owned_custody = self.pool.custody if custody is None else None
        self.indexer = PoolIndexer(self.pool.events, config.pool.tree_depth,
                                   self.pool.tree.hasher)
        self.store: PoolStore | None = None
        self._api = None
        self._bg_tasks: list[asyncio.Task] = []

    # ---- lifecycle ----

    async def start(self) -> None:
        """Restore state, apply the token whitelist, start the API and snapshots."""
        cfg = self.config

        # ── Persistence: restore from SQLite ─────────────────────
        restored = False
        if cfg.storage.enabled:
            self.store = PoolStore(cfg.storage.path)
            if self.store.has_state():
                logger.info("Restoring pool state from database...")
                restored = self.store.restore_pool(self.pool, custody=self._owned_custody)
                logger.info(
                    f"Restored: {self.pool.tree.size} leaves, "
                    f"{len(self.pool.nullifiers)} nullifiers, "
                    f"event #{self.pool.events.last_seq}"
                )

        # ── Initial token whitelist (fresh pools only) ───────────
        if not restored:
            for token in cfg.admin.supported_tokens:
                self.pool.add_supported_token(self.pool.ownership.owner, token)

        self.indexer.attach()

        if self.store is not None:
            self._bg_tasks.append(asyncio.create_task(self._snapshot_loop()))

        # ── API server ───────────────────────────────────────────
        if cfg.api.enabled:
            from shieldpool_core.api import APIServer
            self._api = APIServer(
                self.pool,
                self.indexer,
                host=cfg.api.host,
                port=cfg.api.port,
                api_config=cfg.api,
            )
            await self._api.start()

        logger.info(
            f"Pool {self.pool.pool_address} started | owner={self.pool.ownership.owner} "
            f"| depth={self.pool.tree.depth}"
        )

    async def stop(self) -> None:
        for task in self._bg_tasks:
            task.cancel()
        for task in self._bg_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._bg_tasks.clear()
        if self._api is not None:
            await self._api.stop()
        self.indexer.detach()
        # Persist state before shutting down
        if self.store is not None:
            logger.info("Saving pool state to database...")
            self.snapshot()
            self.store.close()
            self.store = None

    def snapshot(self) -> None:
        if self.store is not None:
            self.store.snapshot_pool(self.pool, custody=self._owned_custody)

    async def _snapshot_loop(self) -> None:
        interval = self.config.storage.snapshot_interval
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(interval)
            try:
                await loop.run_in_executor(None, self.snapshot)
            except Exception as e:
                logger.error(f"Periodic snapshot failed: {e}")

    def fund_local(self, holder: str, token: str, amount: int) -> None:
        """Dev faucet: credit an external balance in the in-memory bank."""
        custody = self.pool.custody
        if not isinstance(custody, InMemoryBank):
            raise RuntimeError("funding is only available with the in-memory bank")
        balance = custody.fund(holder, token, amount)
        logger.info(f"Funded {holder} with {amount} of {token} (now {balance})")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args():
    p = argparse.ArgumentParser(description="ShieldPool Node")
    p.add_argument("--config", default=None, help="Path to shieldpool.toml config file")
    p.add_argument("--owner", default=None, help="Pool owner address")
    p.add_argument("--api-host", default=None, help="API listen host")
    p.add_argument("--api-port", type=int, default=None, help="API listen port (enables the API)")
    p.add_argument("--db", default=None, help="SQLite path (enables persistence)")
    p.add_argument("--fund", nargs=3, action="append", default=[],
                   metavar=("HOLDER", "TOKEN", "AMOUNT"),
                   help="Fund HOLDER with AMOUNT of TOKEN in the in-memory bank")
    return p.parse_args()


async def main():
    args = parse_args()

    # Load config (TOML + env overrides)
    cfg = load_config(args.config)

    # CLI flags override config
    if args.owner:
        cfg.admin.owner = args.owner
    if args.api_host:
        cfg.api.host = args.api_host
    if args.api_port is not None:
        cfg.api.port = args.api_port
        cfg.api.enabled = True
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    node = ShieldPoolNode(cfg)
    await node.start()

    # ── Verifier safety warning ──────────────────────────────────
    if cfg.verifier.mode.lower() == "stub":
        logger.warning(
            "⚠  Running with the STUB verifier — every well-formed proof is accepted. "
            "Set [verifier] mode = \"attestation\" and prover_pubkey "
            "in shieldpool.toml for anything but development."
        )

    for holder, token, amount in args.fund:
        node.fund_local(holder, token, int(amount))

    try:
        while True:
            await asyncio.sleep(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        await node.stop()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
