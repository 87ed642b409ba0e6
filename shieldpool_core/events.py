"""
Pool event log.

Every committed operation emits one or more events: a ``LeafInserted`` per
new commitment plus one operation-level record.  The log is append-only
and sequence-numbered so indexers can pull with ``since(seq)`` or register
a push subscriber.

Privacy note: ``Shield``, ``Transfer``, ``BatchTransfer`` and
``MultiTransfer`` carry no amounts.  Only operations whose amounts are
already public on the value-transfer side (unshield, swap) include them.

Events are buffered by the ledger during an operation and published only
after the operation committed, so a rolled-back operation never leaks an
event.
"""

from __future__ import annotations

import bisect
import logging
import threading
import time
from dataclasses import dataclass, field, fields
from typing import Callable, ClassVar

from shieldpool_core.field import from_hex, to_bytes32

logger = logging.getLogger("shieldpool_events")

# Field-element valued attributes, rendered as 32-byte hex.
_HEX_FIELDS = frozenset({
    "commitment", "root", "nullifier", "nullifiers", "roots",
    "output1", "output2", "change_commitment",
})
_BYTES_FIELDS = frozenset({"memo", "memo1", "memo2"})


def _encode(name: str, value):
    if name in _HEX_FIELDS:
        if isinstance(value, (list, tuple)):
            return [to_bytes32(v) for v in value]
        return to_bytes32(value)
    if name in _BYTES_FIELDS:
        return value.hex()
    return value


def _decode(name: str, value):
    if name in _HEX_FIELDS:
        if isinstance(value, list):
            return [from_hex(v) for v in value]
        return from_hex(value)
    if name in _BYTES_FIELDS:
        return bytes.fromhex(value)
    return value


class PoolEvent:
    """Mixin giving every event dataclass a kind and dict codec."""

    kind: ClassVar[str] = "Event"

    def to_dict(self) -> dict:
        return {f.name: _encode(f.name, getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict):
        names = {f.name for f in fields(cls)}
        return cls(**{k: _decode(k, v) for k, v in data.items() if k in names})


@dataclass
class LeafInserted(PoolEvent):
    kind: ClassVar[str] = "LeafInserted"
    commitment: int
    leaf_index: int
    root: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class Shield(PoolEvent):
    kind: ClassVar[str] = "Shield"
    commitment: int
    leaf_index: int
    token: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class Transfer(PoolEvent):
    kind: ClassVar[str] = "Transfer"
    nullifier: int
    output1: int
    output2: int
    leaf_index1: int
    leaf_index2: int | None
    memo1: bytes = b""
    memo2: bytes = b""
    timestamp: float = field(default_factory=time.time)


@dataclass
class Unshield(PoolEvent):
    kind: ClassVar[str] = "Unshield"
    nullifier: int
    recipient: str
    token: str
    amount: int
    change_commitment: int = 0
    change_leaf_index: int | None = None
    relayer: str = ""
    fee: int = 0
    timestamp: float = field(default_factory=time.time)


@dataclass
class Swap(PoolEvent):
    kind: ClassVar[str] = "Swap"
    nullifier: int
    token_in: str
    token_out: str
    swap_amount: int
    output_amount: int
    output1: int
    output2: int
    leaf_index1: int
    leaf_index2: int | None
    platform_fee: int = 0
    memo: bytes = b""
    timestamp: float = field(default_factory=time.time)


@dataclass
class BatchTransfer(PoolEvent):
    kind: ClassVar[str] = "BatchTransfer"
    nullifiers: list[int]
    output1: int
    output2: int
    leaf_index1: int
    leaf_index2: int | None
    memo1: bytes = b""
    memo2: bytes = b""
    timestamp: float = field(default_factory=time.time)


@dataclass
class BatchUnshield(PoolEvent):
    kind: ClassVar[str] = "BatchUnshield"
    nullifiers: list[int]
    recipient: str
    token: str
    total_amount: int
    relayer: str = ""
    total_fee: int = 0
    timestamp: float = field(default_factory=time.time)


@dataclass
class MultiTransfer(PoolEvent):
    kind: ClassVar[str] = "MultiTransfer"
    nullifiers: list[int]
    output1: int
    output2: int
    leaf_index1: int
    leaf_index2: int | None
    memo1: bytes = b""
    memo2: bytes = b""
    timestamp: float = field(default_factory=time.time)


@dataclass
class TokenSupportChanged(PoolEvent):
    kind: ClassVar[str] = "TokenSupportChanged"
    token: str
    supported: bool
    timestamp: float = field(default_factory=time.time)


@dataclass
class TokenBlacklistChanged(PoolEvent):
    kind: ClassVar[str] = "TokenBlacklistChanged"
    token: str
    blacklisted: bool
    timestamp: float = field(default_factory=time.time)


@dataclass
class ParameterChanged(PoolEvent):
    kind: ClassVar[str] = "ParameterChanged"
    name: str
    old_value: object
    new_value: object
    timestamp: float = field(default_factory=time.time)


@dataclass
class OwnershipTransferStarted(PoolEvent):
    kind: ClassVar[str] = "OwnershipTransferStarted"
    previous_owner: str
    pending_owner: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class OwnershipTransferred(PoolEvent):
    kind: ClassVar[str] = "OwnershipTransferred"
    previous_owner: str
    new_owner: str
    timestamp: float = field(default_factory=time.time)


EVENT_TYPES: dict[str, type] = {
    cls.kind: cls for cls in (
        LeafInserted, Shield, Transfer, Unshield, Swap, BatchTransfer,
        BatchUnshield, MultiTransfer, TokenSupportChanged,
        TokenBlacklistChanged, ParameterChanged, OwnershipTransferStarted,
        OwnershipTransferred,
    )
}


def event_from_dict(kind: str, data: dict) -> PoolEvent:
    try:
        cls = EVENT_TYPES[kind]
    except KeyError:
        raise ValueError(f"unknown event kind {kind!r}") from None
    return cls.from_dict(data)


@dataclass
class EventRecord:
    """A published event with its position in the log."""
    seq: int
    event: PoolEvent

    @property
    def kind(self) -> str:
        return self.event.kind

    def to_dict(self) -> dict:
        return {"seq": self.seq, "kind": self.kind, "data": self.event.to_dict()}


class EventLog:
    """Append-only, sequence-numbered event sink."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: list[EventRecord] = []
        self._seqs: list[int] = []
        self._next_seq = 1
        self._subscribers: list[Callable[[EventRecord], None]] = []

    @property
    def last_seq(self) -> int:
        return self._next_seq - 1

    def __len__(self) -> int:
        return len(self._records)

    def subscribe(self, callback: Callable[[EventRecord], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[EventRecord], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event: PoolEvent) -> EventRecord:
        return self.publish_all([event])[0]

    def publish_all(self, events: list[PoolEvent]) -> list[EventRecord]:
        with self._lock:
            published = []
            for event in events:
                record = EventRecord(seq=self._next_seq, event=event)
                self._next_seq += 1
                self._records.append(record)
                self._seqs.append(record.seq)
                published.append(record)
        for record in published:
            for callback in list(self._subscribers):
                try:
                    callback(record)
                except Exception:
                    logger.exception("Event subscriber failed on %s #%d",
                                     record.kind, record.seq)
        return published

    def since(self, seq: int = 0, limit: int | None = None,
              kind: str | None = None) -> list[EventRecord]:
        """Records with sequence number strictly greater than ``seq``."""
        with self._lock:
            start = bisect.bisect_right(self._seqs, seq)
            out = self._records[start:]
        if kind is not None:
            out = [r for r in out if r.kind == kind]
        if limit is not None:
            out = out[:limit]
        return out

    def load(self, record: EventRecord) -> None:
        """Append a persisted record during restore."""
        with self._lock:
            if self._seqs and record.seq <= self._seqs[-1]:
                raise ValueError("event records must be loaded in sequence order")
            self._records.append(record)
            self._seqs.append(record.seq)
            self._next_seq = record.seq + 1
