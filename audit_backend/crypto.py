"""
Cryptographic operations: canonicalization, hashing, signing and
signature verification for audit events.
"""

import base64
import hashlib
import json
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple, Union

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, ed25519, rsa
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes
from nacl.signing import VerifyKey
from nacl.exceptions import BadSignatureError

logger = logging.getLogger(__name__)


class CryptoError(Exception):
    """Base exception for cryptographic operations."""
    pass


class KeyParseError(CryptoError):
    """Raised when key parsing fails."""
    pass


class EventHashMismatch(CryptoError):
    """
    Raised when the hash computed locally for an envelope differs from
    the hash the audit service returned for it.

    This is an integrity violation, never a recoverable condition.
    """

    def __init__(self, hash: str, envelope: str):
        super().__init__(f"Error: Fail event hash verification. Hash: {hash}")
        self.hash = hash
        self.envelope = envelope


# ============================================================================
# Hashing
# ============================================================================

def compute_sha256(data: bytes) -> bytes:
    """Compute SHA-256 hash of data."""
    return hashlib.sha256(data).digest()


def hash_data(data: str) -> str:
    """SHA-256 of a UTF-8 string, hex encoded."""
    return hashlib.sha256(data.encode('utf-8')).hexdigest()


# ============================================================================
# Canonicalization
# ============================================================================

def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonicalize_json(value: Any) -> str:
    """
    Convert a value to canonical JSON.
    - Sorted keys
    - No whitespace
    - Consistent JSON encoding
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
        allow_nan=False,
        default=_json_default,
    )


def event_order_and_stringify_subfields(event: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Order an event's keys and replace structured subfields by their
    canonical JSON string.

    Values that are None are dropped, datetimes become ISO-8601 strings
    and dicts/lists are serialized with canonicalize_json. Running it on
    its own output returns the same dict.
    """
    ordered: Dict[str, Any] = {}
    for key in sorted(event):
        value = event[key]
        if value is None:
            continue
        if isinstance(value, (dict, list, tuple)):
            value = canonicalize_json(value)
        elif isinstance(value, (datetime, date)):
            value = value.isoformat()
        ordered[key] = value
    return ordered


def canonicalize_event(event: Mapping[str, Any]) -> str:
    """Canonical form of an event, the exact string that gets signed."""
    return canonicalize_json(event_order_and_stringify_subfields(event))


def canonicalize_envelope(envelope: Mapping[str, Any]) -> str:
    """Canonical form of an envelope, the exact string the service hashes."""
    data = {key: value for key, value in envelope.items() if value is not None}
    if isinstance(data.get('event'), Mapping):
        data['event'] = event_order_and_stringify_subfields(data['event'])
    return canonicalize_json(data)


# ============================================================================
# Signing
# ============================================================================

class Signer(Protocol):
    """Capability used to sign events before they are submitted."""

    def sign(self, data: Union[str, bytes]) -> str:
        ...

    def get_public_key(self) -> str:
        ...

    def get_algorithm(self) -> str:
        ...


class Ed25519Signer:
    """
    Signs canonical events with an Ed25519 private key.

    Signatures are returned base64 encoded and the public key as PEM,
    which is what the audit service stores in the envelope.
    """

    algorithm = "ED25519"

    def __init__(self, private_key_pem: str):
        private_key = serialization.load_pem_private_key(
            private_key_pem.encode('utf-8'),
            password=None,
        )
        if not isinstance(private_key, ed25519.Ed25519PrivateKey):
            raise KeyParseError("Expected Ed25519 private key")
        self._private_key = private_key

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Ed25519Signer":
        """Load the signer from a PEM file on disk."""
        return cls(Path(path).read_text(encoding='utf-8'))

    def sign(self, data: Union[str, bytes]) -> str:
        if isinstance(data, str):
            data = data.encode('utf-8')
        return base64.b64encode(self._private_key.sign(data)).decode('ascii')

    def get_public_key(self) -> str:
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode('utf-8')

    def get_algorithm(self) -> str:
        return self.algorithm


def generate_ed25519_keypair() -> Tuple[str, str]:
    """
    Generate a new Ed25519 key pair.

    Returns:
        Tuple of (private_key_pem, public_key_pem)
    """
    private_key = ed25519.Ed25519PrivateKey.generate()

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode('utf-8')

    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode('utf-8')

    return private_pem, public_pem


# ============================================================================
# Signature verification
# ============================================================================

def parse_public_key_envelope(public_key: str) -> Tuple[str, str]:
    """
    Split the envelope's public_key field into (key, algorithm).

    The field is either a JSON object {"key": ..., "algorithm": ...}
    or a bare key, which is assumed to be Ed25519.

    Raises:
        ValueError: If the JSON form is malformed or carries no key
    """
    stripped = public_key.strip()
    if stripped.startswith('{'):
        info = json.loads(stripped)
        if not isinstance(info, dict):
            raise ValueError("Public key envelope is not an object")
        key = info.get('key')
        if not isinstance(key, str) or not key:
            raise ValueError("Public key envelope has no key")
        return key, str(info.get('algorithm', 'ED25519'))
    return stripped, 'ED25519'


def parse_public_key(public_key_pem: str, algorithm: str) -> PublicKeyTypes:
    """
    Parse a PEM-encoded public key.

    Raises:
        KeyParseError: If key parsing fails or the key type does not
            match the algorithm
    """
    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode('utf-8'))
    except ValueError as e:
        raise KeyParseError(f"Failed to parse public key: {e}")

    if algorithm == 'ed25519' and not isinstance(public_key, ed25519.Ed25519PublicKey):
        raise KeyParseError(f"Expected Ed25519 key, got {type(public_key).__name__}")
    if algorithm == 'rsa-pss' and not isinstance(public_key, rsa.RSAPublicKey):
        raise KeyParseError(f"Expected RSA key, got {type(public_key).__name__}")
    return public_key


def _raw_ed25519_key(public_key: str) -> bytes:
    if '-----BEGIN' in public_key:
        parsed = parse_public_key(public_key, 'ed25519')
        return parsed.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
    # Legacy envelopes carry the raw 32-byte key, base64 encoded
    return base64.b64decode(public_key)


def verify_ed25519_signature(
    message: bytes,
    signature: bytes,
    public_key: str
) -> bool:
    """
    Verify an Ed25519 signature using PyNaCl (libsodium wrapper).

    Args:
        message: Original message bytes
        signature: Signature bytes to verify
        public_key: PEM-encoded or base64 raw Ed25519 public key

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        verify_key = VerifyKey(_raw_ed25519_key(public_key))
        verify_key.verify(message, signature)
        return True
    except BadSignatureError:
        return False
    except (CryptoError, ValueError) as e:
        logger.debug(f"Ed25519 verification error: {e}")
        return False


def verify_rsa_pss_signature(
    message: bytes,
    signature: bytes,
    public_key_pem: str
) -> bool:
    """Verify an RSA-PSS (SHA-256) signature using the cryptography library."""
    try:
        public_key = parse_public_key(public_key_pem, 'rsa-pss')
        public_key.verify(
            signature,
            message,
            padding.PSS(
                mgf=padding.MGF1(hashes.SHA256()),
                salt_length=padding.PSS.MAX_LENGTH
            ),
            hashes.SHA256()
        )
        return True
    except Exception as e:
        logger.debug(f"RSA-PSS verification error: {e}")
        return False


def verify_signature(
    message: bytes,
    signature: bytes,
    public_key: str,
    algorithm: str
) -> bool:
    """
    Verify a signature using the specified algorithm.

    Args:
        message: Original message bytes
        signature: Signature bytes
        public_key: Public key, PEM encoded
        algorithm: 'ed25519' or 'rsa-pss' (case-insensitive)

    Returns:
        True if valid, False otherwise
    """
    algorithm = algorithm.lower().replace('_', '-')
    if algorithm == 'ed25519':
        return verify_ed25519_signature(message, signature, public_key)
    if algorithm in ('rsa-pss', 'rsa-pss-sha256'):
        return verify_rsa_pss_signature(message, signature, public_key)
    logger.warning(f"Unknown algorithm: {algorithm}")
    return False


def verify_base64_signature(
    message: str,
    signature_b64: str,
    public_key: str,
    algorithm: str
) -> bool:
    """Verify a base64 signature over a UTF-8 message."""
    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except ValueError:
        logger.debug("Signature is not valid base64")
        return False
    return verify_signature(message.encode('utf-8'), signature, public_key, algorithm)


def sign_rsa_pss(message: bytes, private_key_pem: str) -> bytes:
    """Sign a message using RSA-PSS with SHA-256."""
    private_key = serialization.load_pem_private_key(
        private_key_pem.encode('utf-8'),
        password=None,
    )

    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise CryptoError("Expected RSA private key")

    return private_key.sign(
        message,
        padding.PSS(
            mgf=padding.MGF1(hashes.SHA256()),
            salt_length=padding.PSS.MAX_LENGTH
        ),
        hashes.SHA256()
    )
