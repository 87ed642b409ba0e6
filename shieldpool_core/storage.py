"""
SQLite-based persistence layer for shielded pool state.

Stores the accumulator frontier and root ring, both registries, token
policy, per-token balances and flows, ownership / parameters and the event
log, so that a node can recover its pool after restart.  When the node owns
its custody (the in-memory bank) the external balances are stored too;
otherwise restored shielded balances would have nothing behind them.

Field elements and balances are stored as text: both routinely exceed
SQLite's 64-bit INTEGER range.

Usage:
    with PoolStore("data/shieldpool.db") as store:
        store.snapshot_pool(pool)
    ...
    store.restore_pool(fresh_pool)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from shieldpool_core.events import EventRecord, event_from_dict
from shieldpool_core.field import from_hex, to_bytes32
from shieldpool_core.merkle import ShadowMerkleTree, TreeSnapshot

logger = logging.getLogger("shieldpool_storage")


class PoolStore:
    """Thin SQLite wrapper for persisting pool state."""

    CURRENT_SCHEMA_VERSION = 2

    def __init__(self, db_path: str = "data/shieldpool.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        # synchronous=NORMAL is safe with WAL and avoids fsync per commit
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS tree_state (
                id                 INTEGER PRIMARY KEY CHECK (id = 1),
                depth              INTEGER NOT NULL,
                root_history_size  INTEGER NOT NULL,
                next_leaf_index    INTEGER NOT NULL,
                current_root_index INTEGER NOT NULL,
                filled_subtrees    TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS root_history (
                slot INTEGER PRIMARY KEY,
                root TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS commitments (
                commitment TEXT PRIMARY KEY,
                leaf_index INTEGER NOT NULL UNIQUE
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS nullifiers (
                nullifier TEXT PRIMARY KEY
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS tokens (
                token          TEXT PRIMARY KEY,
                supported      INTEGER NOT NULL DEFAULT 0,
                ever_supported INTEGER NOT NULL DEFAULT 0,
                blacklisted    INTEGER NOT NULL DEFAULT 0,
                added_at       REAL NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                token   TEXT PRIMARY KEY,
                balance TEXT NOT NULL,
                flows   TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS events (
                seq  INTEGER PRIMARY KEY,
                kind TEXT NOT NULL,
                data TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS pool_meta (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS custody (
                holder  TEXT NOT NULL,
                token   TEXT NOT NULL,
                balance TEXT NOT NULL,
                PRIMARY KEY (holder, token)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        """Check / set schema version; run migrations when needed."""
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        else:
            db_ver = row["version"]
            if db_ver < self.CURRENT_SCHEMA_VERSION:
                self._migrate(db_ver, self.CURRENT_SCHEMA_VERSION)
            elif db_ver > self.CURRENT_SCHEMA_VERSION:
                raise RuntimeError(
                    f"Database schema v{db_ver} is newer than this software "
                    f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade ShieldPool."
                )

    def _migrate(self, from_ver: int, to_ver: int) -> None:
        """Run sequential migrations.  Add cases as schema evolves."""
        logger.info(f"Migrating database schema v{from_ver} → v{to_ver}")
        # v2 added the custody table, created above by _create_tables
        self._conn.execute(
            "UPDATE schema_version SET version = ? WHERE id = 1", (to_ver,)
        )
        self._conn.commit()

    def schema_version(self) -> int:
        row = self._conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
        return row["version"]

    # ── readers ──────────────────────────────────────────────────

    def has_state(self) -> bool:
        row = self._conn.execute("SELECT 1 FROM tree_state WHERE id = 1").fetchone()
        return row is not None

    def load_tree_state(self) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT * FROM tree_state WHERE id = 1").fetchone()
        if row is None:
            return None
        state = dict(row)
        state["filled_subtrees"] = [from_hex(h) for h in json.loads(state["filled_subtrees"])]
        roots = [0] * state["root_history_size"]
        for r in self._conn.execute("SELECT slot, root FROM root_history"):
            if r["slot"] < len(roots):
                roots[r["slot"]] = from_hex(r["root"])
        state["roots"] = roots
        return state

    def load_commitments(self) -> list[tuple[int, int]]:
        rows = self._conn.execute(
            "SELECT commitment, leaf_index FROM commitments ORDER BY leaf_index"
        ).fetchall()
        return [(from_hex(r["commitment"]), r["leaf_index"]) for r in rows]

    def load_nullifiers(self) -> set[int]:
        rows = self._conn.execute("SELECT nullifier FROM nullifiers").fetchall()
        return {from_hex(r["nullifier"]) for r in rows}

    def load_tokens(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM tokens ORDER BY token").fetchall()
        return [dict(r) for r in rows]

    def load_balances(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM balances ORDER BY token").fetchall()
        return [
            {"token": r["token"], "balance": int(r["balance"]),
             "flows": {k: int(v) for k, v in json.loads(r["flows"]).items()}}
            for r in rows
        ]

    def load_events(self, after_seq: int = 0) -> list[EventRecord]:
        rows = self._conn.execute(
            "SELECT seq, kind, data FROM events WHERE seq > ? ORDER BY seq", (after_seq,)
        ).fetchall()
        return [EventRecord(r["seq"], event_from_dict(r["kind"], json.loads(r["data"])))
                for r in rows]

    def load_custody(self) -> list[tuple[str, str, int]]:
        rows = self._conn.execute(
            "SELECT holder, token, balance FROM custody ORDER BY holder, token"
        ).fetchall()
        return [(r["holder"], r["token"], int(r["balance"])) for r in rows]

    def load_meta(self) -> dict[str, Any]:
        rows = self._conn.execute("SELECT key, value FROM pool_meta").fetchall()
        return {r["key"]: json.loads(r["value"]) for r in rows}

    # ── bulk helpers ─────────────────────────────────────────────

    def snapshot_pool(self, pool: Any, custody: Any = None) -> None:
        """Persist the full current state of a pool atomically.

        Pass ``custody`` (an ``InMemoryBank``) when the node owns it; its
        balances are read under the same lock and written in the same
        transaction as the pool.

        The pool lock is held while reading so the snapshot reflects a
        single point in the total order of operations; all writes share one
        transaction so a crash mid-write leaves the previous snapshot intact.
        """
        with pool._lock:
            tree = pool.tree.snapshot()
            commitments = pool.commitments.items()
            nullifiers = list(pool.nullifiers)
            tokens = [(rec, pool.tokens.was_ever_supported(rec.token))
                      for rec in pool.tokens.records()]
            ever_only = pool.tokens.ever_supported - {rec.token for rec, _ in tokens}
            balances = [(t, pool.balances.balance_of(t), pool.balances.flows_of(t))
                        for t in pool.balances.tokens()]
            last_saved = self.last_event_seq()
            new_events = pool.events.since(last_saved)
            holdings = custody.holdings() if custody is not None else None
            meta = {
                "ownership": pool.ownership.to_dict(),
                "params": pool.params.to_dict(),
                "pool_address": pool.pool_address,
            }
            if holdings is not None:
                meta["custody_persisted"] = True

        c = self._conn
        try:
            c.execute("BEGIN IMMEDIATE")
            c.execute(
                """INSERT OR REPLACE INTO tree_state
                   (id, depth, root_history_size, next_leaf_index,
                    current_root_index, filled_subtrees)
                   VALUES (1, ?, ?, ?, ?, ?)""",
                (pool.tree.depth, pool.tree.root_history_size, tree.next_leaf_index,
                 tree.current_root_index,
                 json.dumps([to_bytes32(h) for h in tree.filled_subtrees])),
            )
            c.executemany(
                "INSERT OR REPLACE INTO root_history (slot, root) VALUES (?, ?)",
                [(slot, to_bytes32(root)) for slot, root in enumerate(tree.roots)],
            )
            c.executemany(
                "INSERT OR IGNORE INTO commitments (commitment, leaf_index) VALUES (?, ?)",
                [(to_bytes32(cm), idx) for cm, idx in commitments],
            )
            c.executemany(
                "INSERT OR IGNORE INTO nullifiers (nullifier) VALUES (?)",
                [(to_bytes32(n),) for n in nullifiers],
            )
            c.executemany(
                """INSERT OR REPLACE INTO tokens
                   (token, supported, ever_supported, blacklisted, added_at)
                   VALUES (?, ?, ?, ?, ?)""",
                [(rec.token, int(rec.supported), int(ever), int(rec.blacklisted), rec.added_at)
                 for rec, ever in tokens]
                + [(t, 0, 1, 0, 0.0) for t in sorted(ever_only)],
            )
            c.executemany(
                "INSERT OR REPLACE INTO balances (token, balance, flows) VALUES (?, ?, ?)",
                [(t, str(bal), json.dumps({k: str(v) for k, v in flows.items()}))
                 for t, bal, flows in balances],
            )
            c.executemany(
                "INSERT OR IGNORE INTO events (seq, kind, data) VALUES (?, ?, ?)",
                [(r.seq, r.kind, json.dumps(r.event.to_dict(), default=str))
                 for r in new_events],
            )
            c.executemany(
                "INSERT OR REPLACE INTO pool_meta (key, value) VALUES (?, ?)",
                [(k, json.dumps(v)) for k, v in meta.items()],
            )
            if holdings is not None:
                c.execute("DELETE FROM custody")
                c.executemany(
                    "INSERT INTO custody (holder, token, balance) VALUES (?, ?, ?)",
                    [(h, t, str(amt)) for h, t, amt in holdings],
                )
            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise
        logger.debug(
            f"Snapshot saved: {tree.next_leaf_index} leaves, {len(new_events)} new events"
        )

    def last_event_seq(self) -> int:
        row = self._conn.execute("SELECT MAX(seq) AS seq FROM events").fetchone()
        return row["seq"] if row and row["seq"] is not None else 0

    def restore_pool(self, pool: Any, verify_tree: bool = False, custody: Any = None) -> bool:
        """
        Load persisted state into a freshly constructed pool.

        Returns False when the database holds no pool yet.  With
        ``verify_tree`` the stored commitments are re-hashed into a full tree
        and its root compared against the stored latest root.  ``custody``
        is loaded with the stored bank balances when a snapshot included
        them.
        """
        state = self.load_tree_state()
        if state is None:
            return False
        if pool.tree.size or len(pool.nullifiers) or len(pool.events):
            raise RuntimeError("restore_pool requires a freshly constructed pool")
        if (state["depth"], state["root_history_size"]) != (
                pool.tree.depth, pool.tree.root_history_size):
            raise ValueError(
                f"stored tree is depth {state['depth']} / history "
                f"{state['root_history_size']}, pool is depth {pool.tree.depth} / "
                f"history {pool.tree.root_history_size}"
            )

        commitments = self.load_commitments()
        if len(commitments) != state["next_leaf_index"]:
            raise RuntimeError(
                f"stored {len(commitments)} commitments for "
                f"{state['next_leaf_index']} leaves"
            )

        with pool._lock:
            pool.tree.restore(TreeSnapshot(
                next_leaf_index=state["next_leaf_index"],
                filled_subtrees=tuple(state["filled_subtrees"]),
                roots=tuple(state["roots"]),
                current_root_index=state["current_root_index"],
            ))
            if verify_tree:
                shadow = ShadowMerkleTree(pool.tree.depth, pool.tree.hasher)
                for commitment, _ in commitments:
                    shadow.insert(commitment)
                if shadow.root() != pool.tree.latest_root():
                    raise RuntimeError("stored commitments do not hash to the stored root")

            for commitment, leaf_index in commitments:
                pool.commitments.mark_seen(commitment)
                pool.commitments.bind(commitment, leaf_index)
            for nullifier in self.load_nullifiers():
                pool.nullifiers.mark_spent(nullifier)
            for row in self.load_tokens():
                pool.tokens.load(row["token"], bool(row["supported"]),
                                 bool(row["ever_supported"]), bool(row["blacklisted"]),
                                 row["added_at"])
            for row in self.load_balances():
                pool.balances.load(row["token"], row["balance"], row["flows"])
            for record in self.load_events():
                pool.events.load(record)

            meta = self.load_meta()
            if "ownership" in meta:
                pool.ownership.owner = meta["ownership"]["owner"]
                pool.ownership.pending_owner = meta["ownership"]["pending_owner"]
            if "params" in meta:
                params = meta["params"]
                for key, value in params.items():
                    if key == "relayers":
                        value = set(value)
                    if hasattr(pool.params, key):
                        setattr(pool.params, key, value)
            if custody is not None and meta.get("custody_persisted"):
                custody.load(self.load_custody())

        logger.info(
            f"Pool restored: {state['next_leaf_index']} leaves, "
            f"{len(pool.nullifiers)} nullifiers, event #{pool.events.last_seq}"
        )
        return True

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
