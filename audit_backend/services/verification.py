"""
Verification of audit service responses.

Every check returns Optional[bool]:
- None when there is nothing to verify (inputs absent)
- True/False as the verdict otherwise

None of them raise for missing or malformed proof material; callers
decide what a failed verdict means.
"""

import logging
from typing import Mapping, Optional

from audit_backend.crypto import (
    canonicalize_envelope,
    canonicalize_event,
    hash_data,
    parse_public_key_envelope,
    verify_base64_signature,
)
from audit_backend.merkle import (
    ProofDecodeError,
    decode_consistency_proof,
    decode_hash,
    decode_membership_proof,
    verify_consistency_proof,
    verify_membership_proof,
)
from audit_backend.models import AuditRecord, EventEnvelope, LogResult, Root

logger = logging.getLogger(__name__)


def verify_log_hash(envelope: Optional[EventEnvelope], hash: Optional[str]) -> Optional[bool]:
    """Recompute the envelope hash and compare it with the one returned."""
    if envelope is None or hash is None:
        return None
    computed = hash_data(canonicalize_envelope(envelope.model_dump(exclude_none=True)))
    return computed == hash


def verify_signature(envelope: Optional[EventEnvelope]) -> Optional[bool]:
    """
    Verify the event signature embedded in the envelope.

    An envelope with neither signature nor public key was never signed
    and yields None. One without the other is a failure.
    """
    if envelope is None or (not envelope.signature and not envelope.public_key):
        return None
    if not envelope.signature or not envelope.public_key:
        logger.warning("Envelope carries a signature or a public key, but not both")
        return False

    try:
        key, algorithm = parse_public_key_envelope(envelope.public_key)
    except ValueError as e:
        logger.warning(f"Malformed public key envelope: {e}")
        return False

    return verify_base64_signature(
        canonicalize_event(envelope.event),
        envelope.signature,
        key,
        algorithm,
    )


def verify_log_membership_proof(
    log: LogResult,
    new_unpublished_root_hash: Optional[str]
) -> Optional[bool]:
    """Check that a freshly logged event is a member of the new unpublished root."""
    if not log.hash or log.membership_proof is None or not new_unpublished_root_hash:
        return None
    try:
        return verify_membership_proof(
            node_hash=decode_hash(log.hash),
            root_hash=decode_hash(new_unpublished_root_hash),
            proof=decode_membership_proof(log.membership_proof),
        )
    except ProofDecodeError as e:
        logger.warning(f"Undecodable membership proof: {e}")
        return False


def verify_log_consistency_proof(
    log: LogResult,
    new_unpublished_root: Optional[str],
    prev_unpublished_root: Optional[str]
) -> Optional[bool]:
    """Check that the new unpublished root extends the previous one."""
    if not log.consistency_proof or not new_unpublished_root or not prev_unpublished_root:
        return None
    try:
        return verify_consistency_proof(
            new_root=decode_hash(new_unpublished_root),
            prev_root=decode_hash(prev_unpublished_root),
            proof=decode_consistency_proof(log.consistency_proof),
        )
    except ProofDecodeError as e:
        logger.warning(f"Undecodable consistency proof: {e}")
        return False


def verify_record_membership_proof(record: AuditRecord, root: Optional[Root]) -> Optional[bool]:
    """Check that a search record is a member of the given root."""
    if root is None or not record.hash or record.membership_proof is None:
        return None
    try:
        return verify_membership_proof(
            node_hash=decode_hash(record.hash),
            root_hash=decode_hash(root.root_hash),
            proof=decode_membership_proof(record.membership_proof),
        )
    except ProofDecodeError as e:
        logger.warning(f"Undecodable membership proof: {e}")
        return False


def verify_record_consistency_proof(
    record: AuditRecord,
    published_roots: Mapping[int, Root]
) -> Optional[bool]:
    """
    Check that appending the record kept the tree consistent.

    Uses the roots at sizes leaf_index and leaf_index + 1: the later root
    carries the consistency proof against the earlier one. Records that
    are not published, the first leaf, and sizes missing from
    published_roots are not verifiable.
    """
    if not record.published or not record.leaf_index:
        return None

    curr_root = published_roots.get(record.leaf_index + 1)
    prev_root = published_roots.get(record.leaf_index)
    if curr_root is None or prev_root is None or not curr_root.consistency_proof:
        return None

    try:
        return verify_consistency_proof(
            new_root=decode_hash(curr_root.root_hash),
            prev_root=decode_hash(prev_root.root_hash),
            proof=decode_consistency_proof(curr_root.consistency_proof),
        )
    except ProofDecodeError as e:
        logger.warning(f"Undecodable consistency proof for size {curr_root.size}: {e}")
        return False
