"""
Incremental Merkle tree tests
"""
import pytest

from conftest import cheap_hash
from shielded_pool.crypto_core.merkle import (
    MAX_TREE_DEPTH,
    ROOT_HISTORY_SIZE,
    IncrementalTree,
    LeafNotFoundError,
    MerkleProof,
    verify_proof,
)


def _tree(n: int, hasher=cheap_hash) -> IncrementalTree:
    tree = IncrementalTree(hasher=hasher)
    for i in range(1, n + 1):
        tree.insert(i * 10)
    return tree


class TestShape:
    """Root, size and depth rules."""

    def test_empty_tree(self):
        """Empty root is zero at depth zero."""
        tree = IncrementalTree(hasher=cheap_hash)
        assert tree.root == 0
        assert tree.size == 0
        assert tree.depth == 0

    def test_single_leaf_is_root(self):
        """One leaf: no hashing at all."""
        tree = IncrementalTree(hasher=cheap_hash)
        index, root = tree.insert(42)
        assert index == 0
        assert root == 42 == tree.root
        assert tree.depth == 0

    def test_depth_is_ceil_log2(self):
        """Depth grows only when size passes a power of two."""
        expected = {1: 0, 2: 1, 3: 2, 4: 2, 5: 3, 8: 3, 9: 4, 16: 4, 17: 5}
        for n, depth in expected.items():
            assert _tree(n).depth == depth, n

    def test_lonely_node_carried_up(self):
        """Three leaves: root = H(H(a, b), c), c is not hashed with zero."""
        tree = IncrementalTree(hasher=cheap_hash)
        for leaf in (10, 20, 30):
            tree.insert(leaf)
        assert tree.root == cheap_hash(cheap_hash(10, 20), 30)

    def test_five_leaves(self):
        """Carry-up happens at every level where the node is alone."""
        tree = _tree(5)
        left = cheap_hash(cheap_hash(10, 20), cheap_hash(30, 40))
        assert tree.root == cheap_hash(left, 50)

    def test_with_poseidon(self):
        """Default hasher produces a nonzero root that differs per order."""
        a = IncrementalTree()
        b = IncrementalTree()
        for leaf in (1, 2, 3):
            a.insert(leaf)
        for leaf in (3, 2, 1):
            b.insert(leaf)
        assert a.root != 0
        assert a.root != b.root


class TestBulk:
    """insert_many and from_leaves agree with one-by-one insertion."""

    @pytest.mark.parametrize("n", [1, 2, 3, 7, 8, 9, 33, 100])
    def test_insert_many_matches_incremental(self, n):
        """Same root for every size."""
        bulk = IncrementalTree(hasher=cheap_hash)
        bulk.insert_many([i * 10 for i in range(1, n + 1)])
        one = _tree(n)
        assert bulk.root == one.root
        assert bulk.depth == one.depth
        assert bulk.leaves == one.leaves

    def test_insert_many_on_top_of_existing(self):
        """Batch appended to a non-empty tree."""
        tree = _tree(5)
        tree.insert_many([60, 70, 80, 90])
        assert tree.root == _tree(9).root

    def test_insert_many_records_only_final_root(self):
        """One history entry per batch."""
        tree = IncrementalTree(hasher=cheap_hash)
        tree.insert_many([1, 2, 3, 4])
        assert len(tree.history) == 1
        assert tree.history.latest() == tree.root

    def test_from_leaves_fills_history(self):
        """Trailing leaves are inserted one by one."""
        leaves = [i * 10 for i in range(1, 101)]
        tree = IncrementalTree.from_leaves(leaves, hasher=cheap_hash)
        assert tree.root == _tree(100).root
        assert len(tree.history) == ROOT_HISTORY_SIZE
        assert tree.is_recent_root(_tree(99).root)
        assert tree.is_recent_root(_tree(40).root)
        assert not tree.is_recent_root(_tree(20).root)

    def test_empty_batch_is_noop(self):
        """Nothing inserted, nothing recorded."""
        tree = _tree(3)
        before = len(tree.history)
        assert tree.insert_many([]) == tree.root
        assert len(tree.history) == before


class TestHistory:
    """Root history ring."""

    def test_keeps_last_64(self):
        """Oldest roots fall off."""
        tree = IncrementalTree(hasher=cheap_hash)
        roots = [tree.insert(i)[1] for i in range(1, 81)]
        assert len(tree.history) == ROOT_HISTORY_SIZE
        assert tree.is_recent_root(roots[-1])
        assert tree.is_recent_root(roots[-64])
        assert not tree.is_recent_root(roots[-65])

    def test_copy_is_independent(self):
        """Mutating a copy leaves the original untouched."""
        tree = _tree(4)
        clone = tree.copy()
        clone.insert(999)
        assert tree.size == 4
        assert clone.size == 5
        assert not tree.has(999)
        assert tree.root != clone.root


class TestProofs:
    """Lean membership proofs."""

    @pytest.mark.parametrize("n", [1, 2, 3, 5, 8, 13])
    def test_every_leaf_verifies(self, n):
        """All proofs of a tree verify against its root."""
        tree = _tree(n)
        for i in range(n):
            proof = tree.generate_proof(i)
            assert proof.root == tree.root
            assert proof.depth == tree.depth
            assert tree.verify(proof)

    def test_absent_siblings_are_skipped(self):
        """Leaf 4 of 5 has no siblings until the top level."""
        tree = _tree(5)
        proof = tree.generate_proof(4)
        assert len(proof.siblings) == 1
        assert proof.index == 1
        assert proof.siblings[0] == cheap_hash(cheap_hash(10, 20), cheap_hash(30, 40))

    def test_index_bits(self):
        """Bit i set when the path node is the right child."""
        tree = _tree(4)
        assert tree.generate_proof(0).index == 0b00
        assert tree.generate_proof(1).index == 0b01
        assert tree.generate_proof(2).index == 0b10
        assert tree.generate_proof(3).index == 0b11

    def test_tampered_proof_fails(self):
        """Changing the leaf breaks verification."""
        tree = _tree(6)
        proof = tree.generate_proof(2)
        bad = MerkleProof(root=proof.root, leaf=proof.leaf + 1, index=proof.index,
                          siblings=proof.siblings, depth=proof.depth)
        assert not verify_proof(bad, cheap_hash)

    def test_padding(self):
        """Siblings right-padded with zeros to 32."""
        proof = _tree(5).generate_proof(0)
        padded = proof.padded_siblings()
        assert len(padded) == MAX_TREE_DEPTH
        assert padded[:len(proof.siblings)] == proof.siblings
        assert set(padded[len(proof.siblings):]) == {0}

    def test_proof_for_leaf_and_missing(self):
        """Lookup by value; unknown leaf raises."""
        tree = _tree(3)
        assert tree.proof_for_leaf(20).leaf == 20
        with pytest.raises(LeafNotFoundError):
            tree.proof_for_leaf(12345)
        with pytest.raises(LeafNotFoundError):
            tree.generate_proof(3)

    def test_poseidon_proof(self):
        """Proof check with the real hash."""
        tree = IncrementalTree()
        for leaf in (11, 22, 33):
            tree.insert(leaf)
        assert verify_proof(tree.generate_proof(2))
