import hashlib

import pytest

from vouchers.merkle import (
    build_code_tree,
    build_proof,
    build_tree,
    code_leaf,
    hash_pair,
    merkle_root,
    verify,
    verify_code,
)


def _h(i: int) -> bytes:
    return hashlib.sha256(f"leaf-{i}".encode("utf-8")).digest()


def test_code_leaf_is_sha256_of_utf8_code():
    assert code_leaf("alpha") == hashlib.sha256(b"alpha").digest()
    assert code_leaf(b"alpha") == code_leaf("alpha")


def test_code_leaf_rejects_non_text():
    with pytest.raises(TypeError):
        code_leaf(42)


def test_hash_pair_is_order_independent():
    a, b = _h(1), _h(2)
    assert hash_pair(a, b) == hash_pair(b, a)
    assert hash_pair(a, b) == hashlib.sha256(min(a, b) + max(a, b)).digest()


@pytest.mark.parametrize("size", [1, 2, 3, 5, 8, 13])
def test_every_leaf_proves_membership(size):
    leaves = [_h(i) for i in range(size)]
    root = merkle_root(leaves)
    for index, leaf in enumerate(leaves):
        assert verify(root, leaf, build_proof(leaves, index))


def test_single_leaf_tree_root_is_leaf_and_empty_proof_verifies():
    leaf = _h(0)
    tree = build_tree([leaf])
    assert tree.root == leaf
    assert tree.proof(0) == []
    assert verify(leaf, leaf, [])


def test_empty_proof_fails_when_leaf_differs_from_root():
    assert not verify(_h(0), _h(1), [])


def test_non_member_does_not_verify():
    leaves = [_h(i) for i in range(6)]
    root = merkle_root(leaves)
    proof = build_proof(leaves, 2)
    assert not verify(root, _h(99), proof)


def test_tampered_sibling_fails():
    leaves = [_h(i) for i in range(7)]
    root = merkle_root(leaves)
    proof = build_proof(leaves, 4)
    proof[0] = bytes(32)
    assert not verify(root, leaves[4], proof)


def test_odd_node_is_promoted_unchanged():
    leaves = [_h(i) for i in range(3)]
    tree = build_tree(leaves)
    assert tree.levels[1][1] == leaves[2]
    assert tree.proof(2) == [hash_pair(leaves[0], leaves[1])]


def test_zero_root_never_verifies_even_for_zero_leaf():
    zero = bytes(32)
    assert not verify(zero, zero, [])
    assert not verify("00" * 32, "00" * 32, [])
    assert not verify(zero, _h(1), [_h(2)])


@pytest.mark.parametrize(
    "root, leaf, proof",
    [
        (b"short", bytes(32), []),
        ("zz" * 32, bytes(32), []),
        (None, bytes(32), []),
        (bytes(31) + b"\x01", b"\x01" * 33, []),
        (bytes(31) + b"\x01", bytes(32), [b"bad"]),
        (bytes(31) + b"\x01", bytes(32), "not-a-list"),
        (bytes(31) + b"\x01", bytes(32), None),
        (bytes(31) + b"\x01", bytes(32), 7),
    ],
)
def test_malformed_input_is_false_not_an_exception(root, leaf, proof):
    assert verify(root, leaf, proof) is False


def test_hex_roots_and_proofs_are_accepted():
    leaves = [_h(i) for i in range(4)]
    tree = build_tree(leaves)
    proof_hex = ["0x" + p.hex() for p in tree.proof(1)]
    assert verify(tree.root.hex(), leaves[1].hex(), proof_hex)


def test_code_tree_proof_for_code():
    codes = ["alpha", "bravo", "charlie", "delta", "echo"]
    tree = build_code_tree(codes)
    for code in codes:
        assert verify_code(tree.root, code, tree.proof_for_code(code))
    assert not verify_code(tree.root, "foxtrot", tree.proof_for_code("alpha"))
    with pytest.raises(ValueError):
        tree.proof_for_code("foxtrot")


def test_verify_code_with_non_text_code_is_false():
    tree = build_code_tree(["alpha", "bravo"])
    assert verify_code(tree.root, 3.14, []) is False


def test_build_tree_rejects_empty_and_malformed_leaves():
    with pytest.raises(ValueError):
        build_tree([])
    with pytest.raises(ValueError):
        build_tree([b"too-short"])


def test_proof_index_out_of_range():
    tree = build_tree([_h(0), _h(1)])
    with pytest.raises(ValueError):
        tree.proof(2)
