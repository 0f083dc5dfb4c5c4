"""
Signed Call Schema

An extrinsic is a call name plus a proof, signed by the caller's
Ed25519 key. The signature covers the canonical form of
signing_payload(), so the signer, the nonce, the call and the proof
are all bound together.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .claim import ProofId


class CallName(str, Enum):
    """The callable ledger operations."""
    CREATE_CLAIM = "create_claim"
    REVOKE_CLAIM = "revoke_claim"
    TRANSFER_CLAIM = "transfer_claim"


class SignedCall(BaseModel):
    """
    A signed extrinsic.

    The signer's public key is the account identity. Nothing else
    about the caller is trusted.
    """
    call: CallName
    proof_hex: str = Field(
        ...,
        description="The proof as lowercase hex (may be empty)"
    )
    signer: str = Field(
        ...,
        min_length=1,
        description="Ed25519 public key (base64). This is the AccountId."
    )
    nonce: int = Field(
        ...,
        ge=0,
        description="Signer's account nonce"
    )
    signature: str = Field(
        ...,
        description="Ed25519 signature (base64) of the canonical signing payload"
    )

    @field_validator("proof_hex")
    @classmethod
    def _validate_proof_hex(cls, value: str) -> str:
        try:
            bytes.fromhex(value)
        except ValueError:
            raise ValueError("proof_hex must be an even-length hex string")
        return value.lower()

    @property
    def proof(self) -> ProofId:
        return bytes.fromhex(self.proof_hex)

    def signing_payload(self) -> dict[str, Any]:
        """The fields covered by the signature."""
        return signing_payload(self.call, self.proof, self.signer, self.nonce)


def signing_payload(
    call: CallName,
    proof: ProofId,
    signer: str,
    nonce: int,
) -> dict[str, Any]:
    return {
        "call": CallName(call).value,
        "proof": proof.hex(),
        "signer": signer,
        "nonce": nonce,
    }
