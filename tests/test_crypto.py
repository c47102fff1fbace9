"""
Tests for canonicalization, hashing and signatures.
"""

import base64
import json
from datetime import datetime, timezone

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from audit_backend.crypto import (
    Ed25519Signer,
    KeyParseError,
    canonicalize_envelope,
    canonicalize_event,
    canonicalize_json,
    event_order_and_stringify_subfields,
    hash_data,
    parse_public_key_envelope,
    sign_rsa_pss,
    verify_base64_signature,
    verify_signature,
)


class TestCanonicalization:
    """Tests for deterministic event serialization."""

    def test_key_order_does_not_matter(self):
        """Reordered keys, at any depth, give identical canonical output."""
        first = {
            "action": "update",
            "new": {"name": "bob", "roles": ["a", "b"], "meta": {"x": 1, "y": 2}},
            "actor": "alice",
        }
        second = {
            "actor": "alice",
            "new": {"meta": {"y": 2, "x": 1}, "roles": ["a", "b"], "name": "bob"},
            "action": "update",
        }

        assert canonicalize_event(first) == canonicalize_event(second)

    def test_stringify_is_idempotent(self):
        event = {"message": {"b": 1, "a": [1, 2]}, "status": "ok", "old": None}
        once = event_order_and_stringify_subfields(event)
        twice = event_order_and_stringify_subfields(once)

        assert once == twice
        assert canonicalize_event(once) == canonicalize_event(event)

    def test_subfields_become_canonical_strings(self):
        ordered = event_order_and_stringify_subfields({
            "target": "user-1",
            "message": {"z": "last", "a": "first"},
            "old": None,
        })

        assert list(ordered) == ["message", "target"]
        assert ordered["message"] == '{"a":"first","z":"last"}'

    def test_datetimes_are_iso_strings(self):
        when = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        ordered = event_order_and_stringify_subfields({"timestamp": when})

        assert ordered["timestamp"] == "2024-05-01T12:30:00+00:00"

    def test_canonical_json_is_compact_and_unicode(self):
        assert canonicalize_json({"b": "ü", "a": 1}) == '{"a":1,"b":"ü"}'

    def test_canonical_json_rejects_nan(self):
        with pytest.raises(ValueError):
            canonicalize_json({"value": float("nan")})

    def test_envelope_canonicalizes_nested_event(self):
        envelope = {
            "received_at": "2024-01-01T00:00:00Z",
            "event": {"new": {"b": 2, "a": 1}, "action": "x"},
            "signature": None,
        }

        canonical = canonicalize_envelope(envelope)

        assert canonical == (
            '{"event":{"action":"x","new":"{\\"a\\":1,\\"b\\":2}"},'
            '"received_at":"2024-01-01T00:00:00Z"}'
        )

    def test_hash_changes_with_content(self):
        envelope = {"event": {"message": "hello"}}
        tampered = {"event": {"message": "hellp"}}

        assert hash_data(canonicalize_envelope(envelope)) != hash_data(canonicalize_envelope(tampered))
        assert len(hash_data("x")) == 64


class TestSigner:
    """Tests for the Ed25519 signer."""

    def test_sign_and_verify(self, signer, ed25519_keypair):
        _, public_key = ed25519_keypair
        message = canonicalize_event({"action": "login", "actor": "alice"})

        signature = signer.sign(message)

        assert len(base64.b64decode(signature)) == 64
        assert verify_base64_signature(message, signature, public_key, signer.get_algorithm())

    def test_public_key_is_pem(self, signer, ed25519_keypair):
        _, public_key = ed25519_keypair

        assert signer.get_public_key() == public_key
        assert signer.get_algorithm() == "ED25519"

    def test_tampered_message_fails(self, signer):
        signature = signer.sign('{"actor":"alice"}')

        assert not verify_base64_signature(
            '{"actor":"mallory"}', signature, signer.get_public_key(), "ED25519"
        )

    def test_from_file(self, tmp_path, ed25519_keypair):
        private_key, public_key = ed25519_keypair
        key_file = tmp_path / "signer.pem"
        key_file.write_text(private_key)

        assert Ed25519Signer.from_file(key_file).get_public_key() == public_key

    def test_rejects_rsa_private_key(self):
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()

        with pytest.raises(KeyParseError):
            Ed25519Signer(pem)


class TestSignatureVerification:
    """Tests for algorithm dispatch and key formats."""

    def test_raw_base64_ed25519_key(self, signer):
        raw = base64.b64encode(
            signer._private_key.public_key().public_bytes(
                serialization.Encoding.Raw, serialization.PublicFormat.Raw
            )
        ).decode()
        message = "payload"

        assert verify_base64_signature(message, signer.sign(message), raw, "ed25519")

    def test_rsa_pss(self):
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        private_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        public_pem = key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()

        signature = sign_rsa_pss(b"payload", private_pem)

        assert verify_signature(b"payload", signature, public_pem, "RSA-PSS")
        assert not verify_signature(b"other", signature, public_pem, "rsa-pss")

    def test_unknown_algorithm(self, signer):
        assert not verify_signature(b"x", b"sig", signer.get_public_key(), "dsa")

    def test_invalid_base64_signature(self, signer):
        assert not verify_base64_signature("x", "not base64!!", signer.get_public_key(), "ED25519")

    def test_garbage_key(self):
        assert not verify_signature(b"x", b"\x00" * 64, "not a key", "ed25519")

    def test_public_key_envelope(self, signer):
        info = json.dumps({"key": signer.get_public_key(), "algorithm": "ED25519", "kid": "k1"})

        key, algorithm = parse_public_key_envelope(info)

        assert key == signer.get_public_key()
        assert algorithm == "ED25519"

    @pytest.mark.parametrize("info", ['{"key": null}', '{"key": 5}', '{"kid": "k1"}'])
    def test_public_key_envelope_requires_key(self, info):
        with pytest.raises(ValueError):
            parse_public_key_envelope(info)

    def test_bare_public_key(self, signer):
        key, algorithm = parse_public_key_envelope(signer.get_public_key())

        assert key == signer.get_public_key().strip()
        assert algorithm == "ED25519"
