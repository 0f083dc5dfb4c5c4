"""
Canonical Claim Schema

A claim binds a proof to the account that registered it and the block
at which it was registered. Nothing more.

A proof is an opaque byte string. The ledger never looks inside it.
"""

from dataclasses import dataclass
from enum import Enum


# Opaque identifiers. The ledger only stores them and compares accounts
# for equality.
ProofId = bytes
AccountId = str
BlockNumber = int


class ClaimState(str, Enum):
    """
    Each proof is in exactly one of two states.
    """
    UNCLAIMED = "unclaimed"     # Absent from the mapping
    CLAIMED = "claimed"         # Present, with an owner and a height


@dataclass(frozen=True)
class ClaimRecord:
    """
    Immutable record of a claim.

    Only transfer_claim replaces it, and it does so wholesale:
    new owner, new height.
    """
    owner: AccountId
    registered_at: BlockNumber
