"""
Merkle proof decoding and verification.

The audit log stores events as leaves of an append-only Merkle tree.
Leaf nodes are the event hashes themselves, interior nodes are
SHA-256(left || right). All hashes travel hex encoded.

Membership proofs are comma separated ``side:hash`` items, where
side ``l`` means the sibling sits on the left of the running node::

    r:<hex>,l:<hex>,l:<hex>

Consistency proofs are a list of ``x:<hex>,<membership proof>``
strings. The ``x`` nodes are the subtree roots that make up the old
tree, ordered right-most first; each one must fold into the old root
and be a member of the new root.
"""

import logging
from binascii import Error as BinasciiError
from dataclasses import dataclass
from typing import List, Sequence

from audit_backend.crypto import compute_sha256

logger = logging.getLogger(__name__)


class ProofDecodeError(ValueError):
    """Raised when a proof string cannot be parsed."""
    pass


@dataclass(frozen=True)
class MembershipProofItem:
    side: str
    node_hash: bytes


@dataclass(frozen=True)
class ConsistencyProofItem:
    node_hash: bytes
    proof: List[MembershipProofItem]


def decode_hash(hex_hash: str) -> bytes:
    try:
        return bytes.fromhex(hex_hash)
    except (BinasciiError, ValueError) as e:
        raise ProofDecodeError(f"Invalid hash {hex_hash!r}: {e}")


def hash_pair(left: bytes, right: bytes) -> bytes:
    """Interior node hash."""
    return compute_sha256(left + right)


def decode_membership_proof(data: str) -> List[MembershipProofItem]:
    """Parse ``l:<hex>,r:<hex>,...``. An empty string is an empty proof."""
    proof: List[MembershipProofItem] = []
    if not data:
        return proof
    for item in data.split(','):
        side, sep, node = item.partition(':')
        if not sep or side not in ('l', 'r'):
            raise ProofDecodeError(f"Invalid membership proof item: {item!r}")
        proof.append(MembershipProofItem(
            side='left' if side == 'l' else 'right',
            node_hash=decode_hash(node),
        ))
    return proof


def decode_consistency_proof(data: Sequence[str]) -> List[ConsistencyProofItem]:
    """Parse a list of ``x:<hex>,<membership proof>`` strings."""
    proof: List[ConsistencyProofItem] = []
    for item in data:
        head, _, rest = item.partition(',')
        prefix, sep, node = head.partition(':')
        if not sep or prefix != 'x':
            raise ProofDecodeError(f"Invalid consistency proof item: {item!r}")
        proof.append(ConsistencyProofItem(
            node_hash=decode_hash(node),
            proof=decode_membership_proof(rest),
        ))
    return proof


def verify_membership_proof(
    node_hash: bytes,
    root_hash: bytes,
    proof: Sequence[MembershipProofItem]
) -> bool:
    """
    Fold the proof path into node_hash and compare against root_hash.

    Args:
        node_hash: Hash of the leaf (or subtree) being proven
        root_hash: Expected tree root
        proof: Sibling path from the node up to the root

    Returns:
        True if the path leads to root_hash
    """
    for item in proof:
        if item.side == 'left':
            node_hash = hash_pair(item.node_hash, node_hash)
        else:
            node_hash = hash_pair(node_hash, item.node_hash)
    return node_hash == root_hash


def verify_consistency_proof(
    new_root: bytes,
    prev_root: bytes,
    proof: Sequence[ConsistencyProofItem]
) -> bool:
    """
    Check that the tree rooted at new_root is an append-only extension
    of the tree rooted at prev_root.
    """
    if not proof:
        return False

    root_hash = proof[0].node_hash
    for item in proof[1:]:
        root_hash = hash_pair(item.node_hash, root_hash)

    if root_hash != prev_root:
        logger.debug("Consistency proof does not rebuild the previous root")
        return False

    for item in proof:
        if not verify_membership_proof(item.node_hash, new_root, item.proof):
            logger.debug(f"Subtree {item.node_hash.hex()} is not a member of the new root")
            return False

    return True
