"""
Cryptographic Signing Service

Uses Ed25519 for signing extrinsics.
An account IS its public key: whoever holds the private key can
create, revoke and receive claims as that account.
"""

import base64
from typing import Any, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .hasher import Hasher


class Signer:
    """
    Ed25519 signing for account authentication.

    Keys and signatures travel as base64 strings.
    """

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        verify_key = signing_key.verify_key

        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        public_b64 = base64.b64encode(bytes(verify_key)).decode("utf-8")

        return private_b64, public_b64

    @staticmethod
    def public_key_for(private_key_b64: str) -> str:
        """Derive the base64 public key (the AccountId) from a private key."""
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        return base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")

    @staticmethod
    def canonical_public_key(public_key_b64: str) -> str:
        """
        Re-encode a base64 public key in its one canonical spelling.

        Raises ValueError if it is not valid base64 for a 32-byte key.
        """
        raw = base64.b64decode(public_key_b64, validate=True)
        if len(raw) != 32:
            raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
        return base64.b64encode(raw).decode("utf-8")

    @staticmethod
    def sign(message: str, private_key_b64: str) -> str:
        """
        Sign a message with Ed25519.

        Returns:
            Base64-encoded detached signature
        """
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        signed = signing_key.sign(message.encode("utf-8"))
        return base64.b64encode(signed.signature).decode("utf-8")

    @staticmethod
    def verify(
        message: str,
        signature_b64: str,
        public_key_b64: str
    ) -> bool:
        """
        Verify an Ed25519 signature.

        Malformed keys or signatures count as a failed verification.
        """
        try:
            verify_key = VerifyKey(base64.b64decode(public_key_b64))
            signature_bytes = base64.b64decode(signature_b64)
            verify_key.verify(message.encode("utf-8"), signature_bytes)
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False

    @staticmethod
    def sign_payload(payload: dict[str, Any], private_key_b64: str) -> str:
        """Sign the canonical form of a payload."""
        return Signer.sign(Hasher.canonicalize(payload), private_key_b64)

    @staticmethod
    def verify_payload(
        payload: dict[str, Any],
        signature_b64: str,
        public_key_b64: str
    ) -> bool:
        """Verify a signature over the canonical form of a payload."""
        return Signer.verify(Hasher.canonicalize(payload), signature_b64, public_key_b64)
