# Canonical Schemas for the Proof-of-Existence Ledger
# These define the contract every stored claim and emitted event obeys.

from .claim import (
    AccountId,
    BlockNumber,
    ClaimRecord,
    ClaimState,
    ProofId,
)
from .events import (
    ClaimCreated,
    ClaimEvent,
    ClaimRevoked,
    ClaimTransferred,
    EventType,
    RecordedEvent,
)
from .calls import CallName, SignedCall, signing_payload

__all__ = [
    # Claim
    "AccountId",
    "BlockNumber",
    "ClaimRecord",
    "ClaimState",
    "ProofId",
    # Events
    "ClaimCreated",
    "ClaimEvent",
    "ClaimRevoked",
    "ClaimTransferred",
    "EventType",
    "RecordedEvent",
    # Calls
    "CallName",
    "SignedCall",
    "signing_payload",
]
