"""
Tests for SQLite persistence layer (storage.py).

Covers:
  - Schema creation and version tracking
  - snapshot_pool / restore_pool roundtrip
  - Incremental event persistence
  - Restore guards: fresh pool only, matching tree shape
  - Optional tree re-verification
  - In-memory bank balances saved with the pool
  - Context manager lifecycle
"""

from __future__ import annotations

import pytest

from shieldpool_core.custody import InMemoryBank
from shieldpool_core.errors import NullifierAlreadySpent
from shieldpool_core.field import Sha256FieldHasher
from shieldpool_core.invariants import PoolInvariantChecker
from shieldpool_core.ledger import ShieldedPool
from shieldpool_core.storage import PoolStore
from shieldpool_core.verifier import StubVerifier, VerifierSet

from conftest import PoolHarness as H


@pytest.fixture
def store(tmp_path):
    """Fresh PoolStore in a temp directory."""
    s = PoolStore(str(tmp_path / "test.db"))
    yield s
    s.close()


def _blank_pool(bank, depth=8, history=30):
    return ShieldedPool(H.POOL, H.OWNER, bank, VerifierSet.uniform(StubVerifier()),
                        tree_depth=depth, root_history_size=history,
                        hasher=Sha256FieldHasher())


@pytest.fixture
def busy(funded):
    """Pool with some history: transfers, an unshield, admin changes."""
    h = funded
    h.pool.transfer(h.transfer_request())
    h.pool.unshield(h.unshield_request(amount=250, change_commitment=h.fresh()))
    h.pool.remove_supported_token(h.OWNER, h.WETH)
    h.pool.set_blacklisted(h.OWNER, h.USDC, True)
    h.pool.set_slippage_tolerance(h.OWNER, 42)
    h.pool.set_relayer_registered(h.OWNER, h.RELAYER, True)
    h.pool.transfer_ownership(h.OWNER, "0x" + "0b" * 20)
    return h


# ═══════════════════════════════════════════════════════════════════
#  Schema
# ═══════════════════════════════════════════════════════════════════

class TestSchema:
    def test_tables_created(self, store):
        rows = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        names = {r["name"] for r in rows}
        assert {"tree_state", "root_history", "commitments", "nullifiers", "tokens",
                "balances", "events", "pool_meta", "custody", "schema_version"} <= names

    def test_schema_version(self, store):
        assert store.schema_version() == PoolStore.CURRENT_SCHEMA_VERSION

    def test_newer_schema_rejected(self, tmp_path):
        path = str(tmp_path / "future.db")
        with PoolStore(path) as s:
            s._conn.execute("UPDATE schema_version SET version = 99 WHERE id = 1")
            s._conn.commit()
        with pytest.raises(RuntimeError):
            PoolStore(path)

    def test_wal_mode(self, store):
        mode = store._conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"

    def test_creates_parent_dir(self, tmp_path):
        with PoolStore(str(tmp_path / "a" / "b" / "pool.db")):
            pass
        assert (tmp_path / "a" / "b" / "pool.db").exists()


# ═══════════════════════════════════════════════════════════════════
#  Roundtrip
# ═══════════════════════════════════════════════════════════════════

class TestRoundtrip:
    def test_empty_db_restores_nothing(self, store):
        assert store.restore_pool(_blank_pool(InMemoryBank())) is False

    def test_full_state(self, store, busy):
        h = busy
        store.snapshot_pool(h.pool)
        fresh = _blank_pool(h.bank)
        assert store.restore_pool(fresh, verify_tree=True)

        assert fresh.latest_root() == h.pool.latest_root()
        assert fresh.tree.known_roots() == h.pool.tree.known_roots()
        assert fresh.tree.size == h.pool.tree.size
        assert sorted(fresh.nullifiers) == sorted(h.pool.nullifiers)
        assert fresh.commitments.items() == h.pool.commitments.items()
        for token in (h.USDC, h.WETH, h.NATIVE):
            assert fresh.token_info(token) == h.pool.token_info(token)
        assert fresh.ownership.to_dict() == h.pool.ownership.to_dict()
        assert fresh.params.to_dict() == h.pool.params.to_dict()
        assert fresh.events.last_seq == h.pool.events.last_seq

    def test_restored_pool_keeps_working(self, store, busy):
        h = busy
        spent = sorted(h.pool.nullifiers)[0]
        store.snapshot_pool(h.pool)
        fresh = _blank_pool(h.bank)
        store.restore_pool(fresh)
        size = fresh.tree.size
        h.pool = fresh
        with pytest.raises(NullifierAlreadySpent):
            fresh.transfer(h.transfer_request(nullifier=spent))
        receipt = fresh.transfer(h.transfer_request())
        assert receipt.leaf_indices == [size, size + 1]
        assert fresh.events.since(0)[-1].kind == "Transfer"

    def test_ever_supported_without_record(self, store, h):
        h.pool.tokens.mark_ever_supported("0x" + "44" * 20)
        store.snapshot_pool(h.pool)
        fresh = _blank_pool(h.bank)
        store.restore_pool(fresh)
        assert fresh.tokens.was_ever_supported("0x" + "44" * 20)
        assert not fresh.tokens.is_supported("0x" + "44" * 20)

    def test_large_values_survive(self, store, h):
        big = 2**200
        h.bank.fund(h.ALICE, h.USDC, big)
        h.pool.shield(h.ALICE, h.USDC, big, h.fresh())
        store.snapshot_pool(h.pool)
        fresh = _blank_pool(h.bank)
        store.restore_pool(fresh)
        assert fresh.balance_of(h.USDC) == big


class TestIncrementalSnapshots:
    def test_events_not_duplicated(self, store, funded):
        h = funded
        store.snapshot_pool(h.pool)
        first = store.last_event_seq()
        h.pool.transfer(h.transfer_request())
        store.snapshot_pool(h.pool)
        store.snapshot_pool(h.pool)
        assert store.last_event_seq() == h.pool.events.last_seq
        assert len(store.load_events()) == h.pool.events.last_seq
        assert [r.seq for r in store.load_events(first)] == list(
            range(first + 1, h.pool.events.last_seq + 1))

    def test_later_snapshot_overwrites_tree(self, store, funded):
        h = funded
        store.snapshot_pool(h.pool)
        h.shield()
        store.snapshot_pool(h.pool)
        assert store.load_tree_state()["next_leaf_index"] == h.pool.tree.size


class TestRestoreGuards:
    def test_requires_fresh_pool(self, store, funded):
        store.snapshot_pool(funded.pool)
        with pytest.raises(RuntimeError):
            store.restore_pool(funded.pool)

    def test_tree_shape_mismatch(self, store, funded):
        store.snapshot_pool(funded.pool)
        with pytest.raises(ValueError):
            store.restore_pool(_blank_pool(funded.bank, depth=10))
        with pytest.raises(ValueError):
            store.restore_pool(_blank_pool(funded.bank, history=5))

    def test_tampered_commitments_detected(self, store, funded):
        store.snapshot_pool(funded.pool)
        store._conn.execute(
            "UPDATE commitments SET commitment = ? WHERE leaf_index = 0",
            ("0x" + "11" * 32,),
        )
        store._conn.commit()
        with pytest.raises(RuntimeError):
            store.restore_pool(_blank_pool(funded.bank), verify_tree=True)


class TestLifecycle:
    def test_context_manager_closes(self, tmp_path):
        with PoolStore(str(tmp_path / "ctx.db")) as s:
            assert not s.has_state()
        with pytest.raises(Exception):
            s._conn.execute("SELECT 1")


class TestCustodyPersistence:
    def test_bank_roundtrip(self, store, funded):
        h = funded
        store.snapshot_pool(h.pool, custody=h.bank)
        bank = InMemoryBank()
        fresh = _blank_pool(bank)
        store.restore_pool(fresh, custody=bank)
        assert bank.holdings() == h.bank.holdings()
        ok, msg, _ = PoolInvariantChecker.check_solvency(fresh)
        assert ok, msg

    def test_bank_untouched_without_custody_snapshot(self, store, funded):
        store.snapshot_pool(funded.pool)
        bank = InMemoryBank()
        bank.fund(H.ALICE, H.USDC, 5)
        store.restore_pool(_blank_pool(bank), custody=bank)
        assert bank.holdings() == [(H.ALICE, H.USDC, 5)]

    def test_later_snapshot_replaces_holdings(self, store, funded):
        h = funded
        store.snapshot_pool(h.pool, custody=h.bank)
        h.pool.unshield(h.unshield_request(amount=250))
        store.snapshot_pool(h.pool, custody=h.bank)
        assert sorted(store.load_custody()) == sorted(h.bank.holdings())
