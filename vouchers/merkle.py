"""Sorted-pair Merkle commitments for voucher allow-lists.

An issuance commits to its eligible codes through a single 32-byte root. A
claimant proves membership of one code by presenting the ordered sibling
hashes on the path from its leaf to the root, without revealing other codes.

Hashing:
- SHA-256
- leaf = SHA256(code_bytes)           (text codes are UTF-8 encoded)
- node = SHA256(min(a, b) || max(a, b))

Because every node hashes its children as a sorted pair, a proof carries no
left/right position bits: the verifier only needs the sibling sequence.

Tree construction (``build_tree``) is a reference for issuers and tests. Odd
nodes at any level are promoted unchanged to the next level, so a single-leaf
tree has ``root == leaf`` and an empty proof.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence, Tuple, Union

from vouchers.core import Digestish, coerce_digest, is_zero_digest, sha256


def code_leaf(code: Union[str, bytes]) -> bytes:
    """Derive the Merkle leaf for a raw voucher code."""
    if isinstance(code, str):
        code = code.encode("utf-8")
    if not isinstance(code, (bytes, bytearray)):
        raise TypeError(f"code must be str or bytes, got {type(code).__name__}")
    return sha256(bytes(code))


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Hash two 32-byte nodes as a sorted pair."""
    if a <= b:
        return sha256(a + b)
    return sha256(b + a)


def verify(root: Any, leaf: Any, proof: Any) -> bool:
    """Decide membership of ``leaf`` under ``root``.

    Never raises: malformed roots, leaves or proof elements verify as False.
    A zero root never verifies, including against a zero leaf.
    """
    root_b = coerce_digest(root)
    leaf_b = coerce_digest(leaf)
    if root_b is None or leaf_b is None or is_zero_digest(root_b):
        return False
    if proof is None or isinstance(proof, (str, bytes, bytearray)):
        return False
    try:
        elements = list(proof)
    except TypeError:
        return False

    current = leaf_b
    for element in elements:
        sibling = coerce_digest(element)
        if sibling is None:
            return False
        current = hash_pair(current, sibling)

    return hmac.compare_digest(current, root_b)


def verify_code(root: Any, code: Union[str, bytes], proof: Any) -> bool:
    """Convenience wrapper: verify the leaf derived from a raw code."""
    try:
        leaf = code_leaf(code)
    except TypeError:
        return False
    return verify(root, leaf, proof)


@dataclass(frozen=True)
class MerkleTree:
    """Levels of a sorted-pair tree, leaves first."""
    levels: Tuple[Tuple[bytes, ...], ...]

    @property
    def root(self) -> bytes:
        return self.levels[-1][0]

    @property
    def leaves(self) -> Tuple[bytes, ...]:
        return self.levels[0]

    def __len__(self) -> int:
        return len(self.levels[0])

    def proof(self, index: int) -> List[bytes]:
        """Sibling path for the leaf at ``index``."""
        if index < 0 or index >= len(self):
            raise ValueError("leaf index out of range")
        path: List[bytes] = []
        idx = index
        for level in self.levels[:-1]:
            sibling = idx ^ 1
            # Odd node promoted without a sibling at this level.
            if sibling < len(level):
                path.append(level[sibling])
            idx //= 2
        return path

    def proof_for_code(self, code: Union[str, bytes]) -> List[bytes]:
        leaf = code_leaf(code)
        try:
            index = self.leaves.index(leaf)
        except ValueError:
            raise ValueError("code is not a leaf of this tree") from None
        return self.proof(index)


def _normalize_leaves(leaves: Iterable[Digestish]) -> List[bytes]:
    out: List[bytes] = []
    for i, leaf in enumerate(leaves):
        b = coerce_digest(leaf)
        if b is None:
            raise ValueError(f"leaf {i} must be a 32-byte digest")
        out.append(b)
    return out


def build_tree(leaves: Iterable[Digestish]) -> MerkleTree:
    """Build a sorted-pair tree over leaf digests (in the given order)."""
    current = _normalize_leaves(leaves)
    if not current:
        raise ValueError("cannot build a tree with no leaves")

    levels: List[Tuple[bytes, ...]] = [tuple(current)]
    while len(current) > 1:
        nxt: List[bytes] = []
        for i in range(0, len(current) - 1, 2):
            nxt.append(hash_pair(current[i], current[i + 1]))
        if len(current) % 2 == 1:
            nxt.append(current[-1])
        current = nxt
        levels.append(tuple(current))
    return MerkleTree(levels=tuple(levels))


def build_code_tree(codes: Iterable[Union[str, bytes]]) -> MerkleTree:
    """Build the allow-list tree for a batch of raw codes."""
    return build_tree(code_leaf(c) for c in codes)


def merkle_root(leaves: Sequence[Digestish]) -> bytes:
    return build_tree(leaves).root


def build_proof(leaves: Sequence[Digestish], index: int) -> List[bytes]:
    return build_tree(leaves).proof(index)
