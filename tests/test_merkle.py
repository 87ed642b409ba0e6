"""
Tests for the incremental Merkle accumulator and the shadow tree.

Covers:
  - Empty tree, zero hashes, sequential leaf indices
  - Capacity limit (MerkleTreeFull)
  - Root history window of H insertions
  - Shadow tree root equals the accumulator root; path verification
  - Snapshot / restore
  - Insert callback
"""

import pytest

from shieldpool_core.errors import InvalidCommitment, MerkleTreeFull
from shieldpool_core.field import FIELD_SIZE, MiMCHasher, Sha256FieldHasher
from shieldpool_core.merkle import (
    ZERO_LEAF,
    MerkleAccumulator,
    ShadowMerkleTree,
    zero_hashes,
)

FAST = Sha256FieldHasher()


def _tree(depth=4, history=30, hasher=FAST, **kw):
    return MerkleAccumulator(depth, history, hasher, **kw)


class TestConstruction:
    def test_zero_hashes_chain(self):
        zeros = zero_hashes(3, FAST)
        assert zeros[0] == ZERO_LEAF
        for i in range(3):
            assert zeros[i + 1] == FAST.hash2(zeros[i], zeros[i])

    def test_empty_root_is_known(self):
        t = _tree()
        assert t.latest_root() == t.empty_root()
        assert t.is_known_root(t.empty_root())

    def test_zero_root_never_known(self):
        assert not _tree().is_known_root(0)

    @pytest.mark.parametrize("depth", [0, 33])
    def test_depth_bounds(self, depth):
        with pytest.raises(ValueError):
            MerkleAccumulator(depth, 30, FAST)

    def test_history_must_be_positive(self):
        with pytest.raises(ValueError):
            MerkleAccumulator(4, 0, FAST)

    def test_capacity(self):
        assert _tree(depth=5).capacity == 32


class TestInsert:
    def test_sequential_indices(self):
        t = _tree()
        assert [t.insert(v) for v in (11, 12, 13)] == [0, 1, 2]
        assert t.size == 3

    def test_root_changes_on_insert(self):
        t = _tree()
        before = t.latest_root()
        t.insert(42)
        assert t.latest_root() != before

    def test_full_tree_rejects(self):
        t = _tree(depth=2)
        for v in range(1, 5):
            t.insert(v)
        assert t.is_full
        with pytest.raises(MerkleTreeFull):
            t.insert(99)

    def test_insert_pair_needs_two_slots(self):
        t = _tree(depth=2)
        t.insert(1)
        t.insert(2)
        t.insert(3)
        with pytest.raises(MerkleTreeFull):
            t.insert_pair(4, 5)
        assert t.size == 3

    def test_invalid_leaf(self):
        t = _tree()
        with pytest.raises(InvalidCommitment):
            t.insert(FIELD_SIZE)
        with pytest.raises(InvalidCommitment):
            t.insert(-1)

    def test_on_insert_callback(self):
        seen = []
        t = _tree(on_insert=lambda leaf, idx, root: seen.append((leaf, idx, root)))
        t.insert(7)
        assert seen == [(7, 0, t.latest_root())]


class TestRootHistory:
    def test_root_valid_for_h_minus_one_more_insertions(self):
        h = 5
        t = _tree(depth=6, history=h)
        t.insert(1)
        r = t.latest_root()
        for v in range(2, 2 + h - 1):
            t.insert(v)
            assert t.is_known_root(r)
        t.insert(1000)
        assert not t.is_known_root(r)

    def test_known_roots_newest_first(self):
        t = _tree(history=3)
        t.insert(1)
        r1 = t.latest_root()
        t.insert(2)
        r2 = t.latest_root()
        assert t.known_roots()[:2] == [r2, r1]
        assert len(t.known_roots()) == 3

    def test_old_roots_evicted_from_known_list(self):
        t = _tree(history=2)
        empty = t.empty_root()
        t.insert(1)
        t.insert(2)
        assert empty not in t.known_roots()


class TestShadowTree:
    def test_roots_agree_fast(self):
        acc = _tree(depth=5)
        shadow = ShadowMerkleTree(5, FAST)
        assert shadow.root() == acc.latest_root()
        for v in range(1, 12):
            acc.insert(v * 31)
            shadow.insert(v * 31)
            assert shadow.root() == acc.latest_root()

    def test_roots_agree_mimc(self):
        mimc = MiMCHasher()
        acc = MerkleAccumulator(4, 10, mimc)
        shadow = ShadowMerkleTree(4, mimc)
        for v in (5, 6, 7):
            acc.insert(v)
            shadow.insert(v)
        assert shadow.root() == acc.latest_root()

    def test_paths_verify(self):
        shadow = ShadowMerkleTree(4, FAST)
        for v in range(1, 8):
            shadow.insert(v)
        for i in range(7):
            path = shadow.path(i)
            assert path.leaf == i + 1
            assert len(path.path_elements) == 4
            assert path.verify(FAST)

    def test_tampered_path_fails(self):
        shadow = ShadowMerkleTree(3, FAST)
        shadow.insert(10)
        shadow.insert(20)
        path = shadow.path(1)
        path.path_elements[0] += 1
        assert not path.verify(FAST)

    def test_path_out_of_bounds(self):
        shadow = ShadowMerkleTree(3, FAST)
        with pytest.raises(IndexError):
            shadow.path(0)

    def test_index_of(self):
        shadow = ShadowMerkleTree(3, FAST)
        shadow.insert(10)
        assert shadow.index_of(10) == 0
        assert shadow.index_of(11) is None

    def test_full_shadow(self):
        shadow = ShadowMerkleTree(1, FAST)
        shadow.insert(1)
        shadow.insert(2)
        with pytest.raises(MerkleTreeFull):
            shadow.insert(3)

    def test_path_dict(self):
        shadow = ShadowMerkleTree(2, FAST)
        shadow.insert(1)
        d = shadow.path(0).to_dict()
        assert d["leaf_index"] == 0
        assert d["path_indices"] == [0, 0]


class TestSnapshot:
    def test_restore_rewinds(self):
        t = _tree()
        t.insert(1)
        snap = t.snapshot()
        root = t.latest_root()
        t.insert(2)
        t.insert(3)
        t.restore(snap)
        assert t.size == 1
        assert t.latest_root() == root
        assert t.insert(2) == 1

    def test_restore_shape_mismatch(self):
        snap = _tree(depth=4).snapshot()
        with pytest.raises(ValueError):
            _tree(depth=5).restore(snap)
