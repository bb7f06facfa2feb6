# shielded_pool/crypto_core/merkle.py
"""
Append-only incremental Merkle tree (lean variant).

Used for both the state tree (every commitment) and the association-set tree
(approved labels). Rules that keep it compatible with the on-chain tree:

- a node with no right sibling is carried up unchanged instead of hashed
- depth is ceil(log2(size)) and grows on demand, up to MAX_TREE_DEPTH
- an empty tree has root 0
- proofs skip levels where there was no sibling; the proof index packs one
  direction bit per included sibling (bit i set = node was the right child)
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from shielded_pool.crypto_core.field import poseidon_hash, to_field

MAX_TREE_DEPTH = 32
ROOT_HISTORY_SIZE = 64

Hash2 = Callable[[int, int], int]


class TreeError(Exception):
    """Base class for tree failures."""


class TreeFullError(TreeError):
    pass


class LeafNotFoundError(TreeError, KeyError):
    pass


def _default_hash(left: int, right: int) -> int:
    return poseidon_hash(left, right)


@dataclass
class MerkleProof:
    root: int
    leaf: int
    index: int
    siblings: List[int] = field(default_factory=list)
    depth: int = 0

    def padded_siblings(self, max_depth: int = MAX_TREE_DEPTH) -> List[int]:
        """Siblings right-padded with zeros to the circuit's fixed length."""
        if len(self.siblings) > max_depth:
            raise TreeError(f"proof has {len(self.siblings)} siblings, max {max_depth}")
        return list(self.siblings) + [0] * (max_depth - len(self.siblings))

    def to_dict(self) -> Dict[str, object]:
        return {
            "root": str(self.root),
            "leaf": str(self.leaf),
            "index": self.index,
            "siblings": [str(s) for s in self.siblings],
            "depth": self.depth,
        }


class RootHistory:
    """Ring of the most recent roots, mirroring the contracts' root buffer."""

    def __init__(self, size: int = ROOT_HISTORY_SIZE):
        self._roots: Deque[int] = deque(maxlen=size)

    def push(self, root: int) -> None:
        self._roots.append(root)

    def __contains__(self, root: object) -> bool:
        return root in self._roots

    def __len__(self) -> int:
        return len(self._roots)

    def latest(self) -> Optional[int]:
        return self._roots[-1] if self._roots else None

    def as_list(self) -> List[int]:
        return list(self._roots)


class IncrementalTree:
    """
    Lean incremental Merkle tree.

    ``_nodes[0]`` holds the leaves, ``_nodes[depth]`` holds the root. Only the
    nodes that exist are stored, so memory is about 2n field elements.
    """

    def __init__(
        self,
        hasher: Optional[Hash2] = None,
        history_size: int = ROOT_HISTORY_SIZE,
    ):
        self._hash: Hash2 = hasher or _default_hash
        self._nodes: List[List[int]] = [[]]
        self._positions: Dict[int, int] = {}
        self._history = RootHistory(history_size)
        self._history_size = history_size

    # ---------- Properties ----------

    @property
    def size(self) -> int:
        return len(self._nodes[0])

    @property
    def depth(self) -> int:
        return len(self._nodes) - 1

    @property
    def root(self) -> int:
        if self.size == 0:
            return 0
        return self._nodes[self.depth][0]

    @property
    def leaves(self) -> List[int]:
        return list(self._nodes[0])

    @property
    def history(self) -> RootHistory:
        return self._history

    def __len__(self) -> int:
        return self.size

    # ---------- Mutation ----------

    def insert(self, leaf: int) -> Tuple[int, int]:
        """
        Append one leaf.

        Returns:
            (leaf_index, new_root)

        Raises:
            TreeFullError: when the tree already holds 2**MAX_TREE_DEPTH leaves
        """
        leaf = to_field(leaf, "leaf")
        if self.size >= 1 << MAX_TREE_DEPTH:
            raise TreeFullError(f"tree is full ({1 << MAX_TREE_DEPTH} leaves)")

        if self.depth < (self.size).bit_length():
            # size + 1 no longer fits in 2**depth leaves
            self._nodes.append([])

        index = self.size
        leaf_index = index
        node = leaf
        for level in range(self.depth):
            row = self._nodes[level]
            if index < len(row):
                row[index] = node
            else:
                row.append(node)
            if index & 1:
                node = self._hash(row[index - 1], node)
            index >>= 1

        self._nodes[self.depth] = [node]
        self._positions.setdefault(leaf, leaf_index)
        self._history.push(node)
        return leaf_index, node

    def insert_many(self, leaves: Iterable[int]) -> int:
        """
        Append a batch with one pass per level; the resulting root equals
        inserting the leaves one at a time. Only the final root is recorded
        in the root history.

        Returns:
            new root
        """
        new_leaves = [to_field(x, "leaf") for x in leaves]
        if not new_leaves:
            return self.root
        if self.size + len(new_leaves) > 1 << MAX_TREE_DEPTH:
            raise TreeFullError(f"batch would exceed {1 << MAX_TREE_DEPTH} leaves")

        first_new = self.size
        start = first_new >> 1
        self._nodes[0].extend(new_leaves)
        for offset, leaf in enumerate(new_leaves):
            self._positions.setdefault(leaf, first_new + offset)

        target_depth = (self.size - 1).bit_length()
        while self.depth < target_depth:
            self._nodes.append([])

        for level in range(self.depth):
            row = self._nodes[level]
            parents = self._nodes[level + 1]
            count = (len(row) + 1) // 2
            for index in range(start, count):
                left = row[2 * index]
                if 2 * index + 1 < len(row):
                    parent = self._hash(left, row[2 * index + 1])
                else:
                    parent = left
                if index < len(parents):
                    parents[index] = parent
                else:
                    parents.append(parent)
            start >>= 1

        root = self.root
        self._history.push(root)
        return root

    @classmethod
    def from_leaves(
        cls,
        leaves: Sequence[int],
        hasher: Optional[Hash2] = None,
        history_size: int = ROOT_HISTORY_SIZE,
    ) -> "IncrementalTree":
        """
        Rebuild a tree from its full leaf list.

        The bulk of the leaves go through insert_many; the trailing
        ``history_size`` leaves are inserted one by one so the root history
        matches a tree that saw every insertion.
        """
        tree = cls(hasher=hasher, history_size=history_size)
        leaves = list(leaves)
        split = max(0, len(leaves) - history_size)
        if split:
            tree.insert_many(leaves[:split])
        for leaf in leaves[split:]:
            tree.insert(leaf)
        return tree

    def copy(self) -> "IncrementalTree":
        clone = IncrementalTree(hasher=self._hash, history_size=self._history_size)
        clone._nodes = [list(row) for row in self._nodes]
        clone._positions = dict(self._positions)
        for r in self._history.as_list():
            clone._history.push(r)
        return clone

    # ---------- Queries ----------

    def index_of(self, leaf: int) -> int:
        try:
            return self._positions[int(leaf)]
        except KeyError:
            raise LeafNotFoundError(f"leaf {leaf} not in tree") from None

    def has(self, leaf: int) -> bool:
        return int(leaf) in self._positions

    def is_recent_root(self, root: int) -> bool:
        return int(root) in self._history

    def siblings(self, index: int) -> List[Tuple[int, bool]]:
        """
        Sibling path for a leaf, bottom-up.

        Returns:
            list of (sibling, is_right_node) where is_right_node tells whether
            the path node at that level is the right child. Levels with no
            sibling are omitted.
        """
        if not 0 <= index < self.size:
            raise LeafNotFoundError(f"index {index} out of range (size {self.size})")

        path: List[Tuple[int, bool]] = []
        for level in range(self.depth):
            is_right = bool(index & 1)
            sibling_index = index - 1 if is_right else index + 1
            row = self._nodes[level]
            if sibling_index < len(row):
                path.append((row[sibling_index], is_right))
            index >>= 1
        return path

    def generate_proof(self, index: int) -> MerkleProof:
        path = self.siblings(index)
        packed = 0
        for bit, (_, is_right) in enumerate(path):
            if is_right:
                packed |= 1 << bit
        return MerkleProof(
            root=self.root,
            leaf=self._nodes[0][index],
            index=packed,
            siblings=[s for s, _ in path],
            depth=self.depth,
        )

    def proof_for_leaf(self, leaf: int) -> MerkleProof:
        return self.generate_proof(self.index_of(leaf))

    def verify(self, proof: MerkleProof) -> bool:
        return verify_proof(proof, self._hash)


def verify_proof(proof: MerkleProof, hasher: Optional[Hash2] = None) -> bool:
    """Recompute the root from a (lean, unpadded) proof."""
    h = hasher or _default_hash
    node = proof.leaf
    for bit, sibling in enumerate(proof.siblings):
        if (proof.index >> bit) & 1:
            node = h(sibling, node)
        else:
            node = h(node, sibling)
    return node == proof.root
