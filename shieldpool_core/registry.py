"""
Nullifier and commitment registries.

Both are monotonic sets from the outside: a nullifier is spent at most once,
a commitment is inserted at most once.  The only way an entry disappears is
the ledger unwinding an operation that never committed (``_forget``), so a
rejected transaction leaves no trace.

Thread-safety is not provided here; the ledger serialises all access under
its own lock.
"""

from __future__ import annotations

from shieldpool_core.errors import DuplicateCommitment, InvalidCommitment, NullifierAlreadySpent


class NullifierRegistry:
    """Set of spent nullifiers."""

    def __init__(self):
        self._spent: set[int] = set()

    def is_spent(self, nullifier: int) -> bool:
        return nullifier in self._spent

    def mark_spent(self, nullifier: int) -> None:
        if not nullifier:
            raise InvalidCommitment("nullifier must be non-zero")
        if nullifier in self._spent:
            raise NullifierAlreadySpent(f"nullifier {nullifier:#x} already spent")
        self._spent.add(nullifier)

    def _forget(self, nullifier: int) -> None:
        self._spent.discard(nullifier)

    def __contains__(self, nullifier: int) -> bool:
        return nullifier in self._spent

    def __len__(self) -> int:
        return len(self._spent)

    def __iter__(self):
        return iter(sorted(self._spent))


class CommitmentRegistry:
    """Set of every commitment ever inserted, with its leaf index."""

    def __init__(self):
        self._leaf_index: dict[int, int] = {}
        self._pending: set[int] = set()

    def is_seen(self, commitment: int) -> bool:
        return commitment in self._leaf_index or commitment in self._pending

    def mark_seen(self, commitment: int) -> None:
        """Reserve ``commitment``; the leaf index is bound by ``bind``."""
        if not commitment:
            raise InvalidCommitment("commitment must be non-zero")
        if self.is_seen(commitment):
            raise DuplicateCommitment(f"commitment {commitment:#x} already exists")
        self._pending.add(commitment)

    def bind(self, commitment: int, leaf_index: int) -> None:
        self._pending.discard(commitment)
        self._leaf_index[commitment] = leaf_index

    def leaf_index_of(self, commitment: int) -> int | None:
        return self._leaf_index.get(commitment)

    def _forget(self, commitment: int) -> None:
        self._pending.discard(commitment)
        self._leaf_index.pop(commitment, None)

    def items(self):
        return sorted(self._leaf_index.items(), key=lambda kv: kv[1])

    def __contains__(self, commitment: int) -> bool:
        return self.is_seen(commitment)

    def __len__(self) -> int:
        return len(self._leaf_index) + len(self._pending)
