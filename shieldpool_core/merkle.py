"""
Incremental Merkle accumulator with a bounded root history.

The pool never stores the full tree.  Insertion walks leaf → root keeping a
single "filled subtree" hash per level and pairing with precomputed zero
hashes for the empty right-hand side, so every insert costs ``depth`` hash
calls.  The last ``root_history_size`` roots live in a fixed ring buffer;
a proof built against any of them is still accepted, older roots are not.

``ShadowMerkleTree`` is the indexer-side counterpart: it keeps every leaf so
it can hand note owners an authentication path for their commitment.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from shieldpool_core.errors import InvalidCommitment, MerkleTreeFull
from shieldpool_core.field import Hasher, field_from_keccak, is_field_element, make_hasher

DEFAULT_TREE_DEPTH = 20
DEFAULT_ROOT_HISTORY_SIZE = 30
MAX_TREE_DEPTH = 32

# Value of an empty leaf.
ZERO_LEAF = field_from_keccak("shieldpool")


def zero_hashes(depth: int, hasher: Hasher) -> list[int]:
    """zeros[0] is the empty leaf, zeros[i+1] = H(zeros[i], zeros[i])."""
    zeros = [ZERO_LEAF]
    for _ in range(depth):
        zeros.append(hasher.hash2(zeros[-1], zeros[-1]))
    return zeros


@dataclass(frozen=True)
class TreeSnapshot:
    """Everything needed to put an accumulator back to an earlier state."""
    next_leaf_index: int
    filled_subtrees: tuple[int, ...]
    roots: tuple[int, ...]
    current_root_index: int


class MerkleAccumulator:
    """Fixed-depth append-only tree over a two-to-one field hasher."""

    def __init__(
        self,
        depth: int = DEFAULT_TREE_DEPTH,
        root_history_size: int = DEFAULT_ROOT_HISTORY_SIZE,
        hasher: Hasher | None = None,
        on_insert: Callable[[int, int, int], None] | None = None,
    ):
        if not 1 <= depth <= MAX_TREE_DEPTH:
            raise ValueError(f"tree depth must be 1-{MAX_TREE_DEPTH}")
        if root_history_size < 1:
            raise ValueError("root history size must be positive")
        self.depth = depth
        self.root_history_size = root_history_size
        self.hasher = hasher or make_hasher("mimc")
        self.on_insert = on_insert

        self.zeros = zero_hashes(depth, self.hasher)
        self.filled_subtrees: list[int] = list(self.zeros[:depth])
        self.roots: list[int] = [0] * root_history_size
        self.roots[0] = self.zeros[depth]
        self.current_root_index = 0
        self.next_leaf_index = 0

    # ── properties ───────────────────────────────────────────────

    @property
    def capacity(self) -> int:
        return 1 << self.depth

    @property
    def size(self) -> int:
        return self.next_leaf_index

    @property
    def is_full(self) -> bool:
        return self.next_leaf_index >= self.capacity

    def empty_root(self) -> int:
        return self.zeros[self.depth]

    # ── mutation ─────────────────────────────────────────────────

    def insert(self, leaf: int) -> int:
        """Append ``leaf`` and return its index."""
        if not is_field_element(leaf):
            raise InvalidCommitment("leaf is not a field element")
        index = self.next_leaf_index
        if index >= self.capacity:
            raise MerkleTreeFull(f"tree of depth {self.depth} holds {self.capacity} leaves")

        current = leaf
        current_index = index
        for level in range(self.depth):
            if current_index % 2 == 0:
                self.filled_subtrees[level] = current
                left, right = current, self.zeros[level]
            else:
                left, right = self.filled_subtrees[level], current
            current = self.hasher.hash2(left, right)
            current_index //= 2

        self.current_root_index = (self.current_root_index + 1) % self.root_history_size
        self.roots[self.current_root_index] = current
        self.next_leaf_index = index + 1

        if self.on_insert is not None:
            self.on_insert(leaf, index, current)
        return index

    def insert_pair(self, first: int, second: int) -> tuple[int, int]:
        if self.next_leaf_index + 2 > self.capacity:
            raise MerkleTreeFull("no room for two leaves")
        return self.insert(first), self.insert(second)

    # ── queries ──────────────────────────────────────────────────

    def latest_root(self) -> int:
        return self.roots[self.current_root_index]

    def is_known_root(self, root: int) -> bool:
        """True iff ``root`` is one of the last ``root_history_size`` roots."""
        if not root:
            return False
        i = self.current_root_index
        for _ in range(self.root_history_size):
            if self.roots[i] == root:
                return True
            i = (i - 1) % self.root_history_size
        return False

    def known_roots(self) -> list[int]:
        """Roots still in the window, newest first."""
        out: list[int] = []
        i = self.current_root_index
        for _ in range(self.root_history_size):
            if self.roots[i]:
                out.append(self.roots[i])
            i = (i - 1) % self.root_history_size
        return out

    # ── snapshot / rollback ──────────────────────────────────────

    def snapshot(self) -> TreeSnapshot:
        return TreeSnapshot(
            next_leaf_index=self.next_leaf_index,
            filled_subtrees=tuple(self.filled_subtrees),
            roots=tuple(self.roots),
            current_root_index=self.current_root_index,
        )

    def restore(self, snap: TreeSnapshot) -> None:
        if len(snap.filled_subtrees) != self.depth or len(snap.roots) != self.root_history_size:
            raise ValueError("snapshot shape does not match this tree")
        self.next_leaf_index = snap.next_leaf_index
        self.filled_subtrees = list(snap.filled_subtrees)
        self.roots = list(snap.roots)
        self.current_root_index = snap.current_root_index


# ── Indexer-side full tree ──────────────────────────────────────

@dataclass
class MerklePath:
    """Authentication path for one leaf (siblings bottom-up)."""
    leaf: int
    leaf_index: int
    path_elements: list[int]
    path_indices: list[int]   # 0 = node is the left child, 1 = right
    root: int

    def verify(self, hasher: Hasher) -> bool:
        current = self.leaf
        for sibling, is_right in zip(self.path_elements, self.path_indices):
            if is_right:
                current = hasher.hash2(sibling, current)
            else:
                current = hasher.hash2(current, sibling)
        return current == self.root

    def to_dict(self) -> dict:
        return {
            "leaf": hex(self.leaf),
            "leaf_index": self.leaf_index,
            "path_elements": [hex(e) for e in self.path_elements],
            "path_indices": list(self.path_indices),
            "root": hex(self.root),
        }


class ShadowMerkleTree:
    """
    Full-leaf mirror of a ``MerkleAccumulator``.

    Levels are cached as dense lists, so appends update one node per level
    and paths are read without recomputation.
    """

    def __init__(self, depth: int = DEFAULT_TREE_DEPTH, hasher: Hasher | None = None):
        self.depth = depth
        self.hasher = hasher or make_hasher("mimc")
        self.zeros = zero_hashes(depth, self.hasher)
        self._levels: list[list[int]] = [[] for _ in range(depth + 1)]
        self._index_of: dict[int, int] = {}

    @property
    def size(self) -> int:
        return len(self._levels[0])

    @property
    def leaves(self) -> list[int]:
        return list(self._levels[0])

    def root(self) -> int:
        if not self._levels[0]:
            return self.zeros[self.depth]
        return self._levels[self.depth][0]

    def _node(self, level: int, index: int) -> int:
        row = self._levels[level]
        return row[index] if index < len(row) else self.zeros[level]

    def insert(self, leaf: int) -> int:
        index = len(self._levels[0])
        if index >= (1 << self.depth):
            raise MerkleTreeFull("shadow tree is full")
        self._levels[0].append(leaf)
        self._index_of.setdefault(leaf, index)
        node_index = index
        for level in range(self.depth):
            parent = node_index // 2
            left = self._node(level, parent * 2)
            right = self._node(level, parent * 2 + 1)
            value = self.hasher.hash2(left, right)
            row = self._levels[level + 1]
            if parent < len(row):
                row[parent] = value
            else:
                row.append(value)
            node_index = parent
        return index

    def index_of(self, leaf: int) -> int | None:
        return self._index_of.get(leaf)

    def path(self, leaf_index: int) -> MerklePath:
        if not 0 <= leaf_index < self.size:
            raise IndexError(f"leaf index {leaf_index} out of bounds (have {self.size} leaves)")
        elements: list[int] = []
        indices: list[int] = []
        node_index = leaf_index
        for level in range(self.depth):
            is_right = node_index % 2
            sibling = node_index - 1 if is_right else node_index + 1
            elements.append(self._node(level, sibling))
            indices.append(is_right)
            node_index //= 2
        return MerklePath(
            leaf=self._levels[0][leaf_index],
            leaf_index=leaf_index,
            path_elements=elements,
            path_indices=indices,
            root=self.root(),
        )
