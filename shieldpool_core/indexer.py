"""
Pool indexer.

Rebuilds the public view of the pool from its event log: a full-leaf
shadow tree (so note owners can fetch Merkle paths for their commitments),
the spent-nullifier set, per-note metadata and the encrypted memos that
accompany transfer outputs.

The indexer can follow the log in two ways:

  - pull:  ``sync()`` reads everything after its cursor via ``since(seq)``
  - push:  ``attach()`` subscribes to the log and applies records as they
           are published

Every ``LeafInserted`` record is checked against the shadow tree: the leaf
index must be the next free slot and the recomputed root must equal the
root the pool reported.  A mismatch raises ``IndexerOutOfSync``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from shieldpool_core import events as ev
from shieldpool_core.events import EventLog, EventRecord
from shieldpool_core.field import Hasher
from shieldpool_core.merkle import DEFAULT_TREE_DEPTH, MerklePath, ShadowMerkleTree

logger = logging.getLogger("shieldpool_indexer")


class IndexerOutOfSync(RuntimeError):
    """The event stream disagrees with the locally rebuilt tree."""


@dataclass
class NoteRecord:
    commitment: int
    leaf_index: int
    source: str = ""
    token: str | None = None
    memo: bytes = b""
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return {
            "commitment": hex(self.commitment),
            "leaf_index": self.leaf_index,
            "source": self.source,
            "token": self.token,
            "memo": self.memo.hex(),
            "timestamp": self.timestamp,
        }


class PoolIndexer:
    """Event-sourced mirror of a pool's public state."""

    def __init__(self, log: EventLog, depth: int = DEFAULT_TREE_DEPTH,
                 hasher: Hasher | None = None):
        self.log = log
        self.tree = ShadowMerkleTree(depth, hasher)
        self.nullifiers: set[int] = set()
        self.notes: dict[int, NoteRecord] = {}
        self.cursor = 0
        self._lock = threading.Lock()
        self._attached = False

    # ── following the log ────────────────────────────────────────

    def sync(self, limit: int | None = None) -> int:
        """Apply every record after the cursor; returns how many were applied."""
        with self._lock:
            records = self.log.since(self.cursor, limit=limit)
            for record in records:
                self._apply(record)
        if records:
            logger.debug(f"Indexer synced to #{self.cursor} ({len(records)} records)")
        return len(records)

    def attach(self) -> None:
        if not self._attached:
            self.sync()
            self.log.subscribe(self._on_record)
            self._attached = True

    def detach(self) -> None:
        if self._attached:
            self.log.unsubscribe(self._on_record)
            self._attached = False

    def _on_record(self, record: EventRecord) -> None:
        with self._lock:
            if record.seq > self.cursor:
                self._apply(record)

    # ── event application ────────────────────────────────────────

    def _apply(self, record: EventRecord) -> None:
        event = record.event
        if isinstance(event, ev.LeafInserted):
            self._apply_leaf(event)
        elif isinstance(event, ev.Shield):
            self._annotate(event.commitment, "shield", event.timestamp, token=event.token)
        elif isinstance(event, (ev.Transfer, ev.BatchTransfer, ev.MultiTransfer)):
            spent = [event.nullifier] if isinstance(event, ev.Transfer) else event.nullifiers
            self.nullifiers.update(spent)
            source = event.kind.lower()
            self._annotate(event.output1, source, event.timestamp, memo=event.memo1)
            if event.output2:
                self._annotate(event.output2, source, event.timestamp, memo=event.memo2)
        elif isinstance(event, ev.Swap):
            self.nullifiers.add(event.nullifier)
            self._annotate(event.output1, "swap", event.timestamp,
                           token=event.token_out, memo=event.memo)
            if event.output2:
                self._annotate(event.output2, "swap_change", event.timestamp,
                               token=event.token_in)
        elif isinstance(event, ev.Unshield):
            self.nullifiers.add(event.nullifier)
            if event.change_commitment:
                self._annotate(event.change_commitment, "unshield_change",
                               event.timestamp, token=event.token)
        elif isinstance(event, ev.BatchUnshield):
            self.nullifiers.update(event.nullifiers)
        self.cursor = record.seq

    def _apply_leaf(self, event: ev.LeafInserted) -> None:
        if event.leaf_index != self.tree.size:
            raise IndexerOutOfSync(
                f"expected leaf {self.tree.size}, event carries {event.leaf_index}"
            )
        self.tree.insert(event.commitment)
        if self.tree.root() != event.root:
            logger.error(f"Root mismatch after leaf {event.leaf_index}")
            raise IndexerOutOfSync(f"root mismatch after leaf {event.leaf_index}")
        self.notes[event.commitment] = NoteRecord(
            event.commitment, event.leaf_index, timestamp=event.timestamp,
        )

    def _annotate(self, commitment: int, source: str, timestamp: float,
                  token: str | None = None, memo: bytes = b"") -> None:
        note = self.notes.get(commitment)
        if note is None:
            return
        note.source = source
        note.timestamp = timestamp
        if token is not None:
            note.token = token
        if memo:
            note.memo = memo

    # ── queries ──────────────────────────────────────────────────

    def root(self) -> int:
        return self.tree.root()

    def path(self, leaf_index: int) -> MerklePath:
        with self._lock:
            return self.tree.path(leaf_index)

    def path_for_commitment(self, commitment: int) -> MerklePath | None:
        with self._lock:
            note = self.notes.get(commitment)
            if note is None:
                return None
            return self.tree.path(note.leaf_index)

    def note(self, commitment: int) -> NoteRecord | None:
        return self.notes.get(commitment)

    def is_spent(self, nullifier: int) -> bool:
        return nullifier in self.nullifiers

    def memos_since(self, leaf_index: int = 0) -> list[NoteRecord]:
        """Notes at or after ``leaf_index`` that carry a memo, for wallet scanning."""
        return sorted(
            (n for n in self.notes.values() if n.leaf_index >= leaf_index and n.memo),
            key=lambda n: n.leaf_index,
        )
