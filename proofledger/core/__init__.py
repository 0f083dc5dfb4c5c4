# Core ledger services
from .hasher import Hasher, CanonicalSerializationError
from .signer import Signer
from .clock import BlockClock, ManualBlockClock
from .events import (
    ChainError,
    CollectingEventSink,
    EventLog,
    EventSink,
)
from .ledger import (
    ClaimLedger,
    LedgerError,
    ClaimError,
    ProofAlreadyClaimed,
    NoSuchProof,
    NotProofOwner,
    OwnedClaimAlready,
)
from .runtime import (
    Authenticator,
    BadOrigin,
    Ed25519Authenticator,
    ExtrinsicOutcome,
    InvalidTransaction,
    Runtime,
    sign_call,
)

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "Signer",
    "BlockClock",
    "ManualBlockClock",
    "ChainError",
    "CollectingEventSink",
    "EventLog",
    "EventSink",
    "ClaimLedger",
    "LedgerError",
    "ClaimError",
    "ProofAlreadyClaimed",
    "NoSuchProof",
    "NotProofOwner",
    "OwnedClaimAlready",
    "Authenticator",
    "BadOrigin",
    "Ed25519Authenticator",
    "ExtrinsicOutcome",
    "InvalidTransaction",
    "Runtime",
    "sign_call",
]
