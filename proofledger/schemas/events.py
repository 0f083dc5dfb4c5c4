"""
Canonical Event Schema

Every successful state transition emits exactly one event.
Failed transitions emit nothing.

Two layers:
- Claim events (ClaimCreated, ClaimRevoked, ClaimTransferred) are what the
  ledger deposits into its event sink.
- RecordedEvent is the hashed, chained form kept by the EventLog so that
  external observers can verify what happened in which block.
"""

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from .claim import AccountId, ProofId


class EventType(str, Enum):
    """
    All possible event types.
    You can add more later, never remove.
    """
    CLAIM_CREATED = "ClaimCreated"
    CLAIM_REVOKED = "ClaimRevoked"
    CLAIM_TRANSFERRED = "ClaimTransferred"


# ============================================================
# Claim Events
# ============================================================

class ClaimEvent(BaseModel):
    """
    Base for the three claim events: (who, proof).

    For ClaimTransferred, `who` is the receiver of the claim.
    """
    model_config = ConfigDict(frozen=True)

    event_type: ClassVar[EventType]

    who: AccountId
    proof: ProofId

    @field_serializer("proof")
    def _serialize_proof(self, proof: ProofId) -> str:
        return proof.hex()

    def to_payload(self) -> dict[str, Any]:
        """Payload in canonical-serializable form (proof as lowercase hex)."""
        return {
            "event_type": self.event_type.value,
            "who": self.who,
            "proof": self.proof.hex(),
        }


class ClaimCreated(ClaimEvent):
    """A proof has been claimed."""
    event_type: ClassVar[EventType] = EventType.CLAIM_CREATED


class ClaimRevoked(ClaimEvent):
    """A claim has been revoked by its owner."""
    event_type: ClassVar[EventType] = EventType.CLAIM_REVOKED


class ClaimTransferred(ClaimEvent):
    """A claim has been transferred to `who`."""
    event_type: ClassVar[EventType] = EventType.CLAIM_TRANSFERRED


EVENT_CLASSES: dict[EventType, type[ClaimEvent]] = {
    EventType.CLAIM_CREATED: ClaimCreated,
    EventType.CLAIM_REVOKED: ClaimRevoked,
    EventType.CLAIM_TRANSFERRED: ClaimTransferred,
}


# ============================================================
# The Recorded Event Object
# ============================================================

class RecordedEvent(BaseModel):
    """
    A claim event as kept by the EventLog.

    Chain Integrity Rules:
    - sequence_number is monotonically increasing (0, 1, 2, ...)
    - previous_event_hash is None for sequence 0 only
    - event_hash must be verifiable from payload + previous_event_hash
    """
    sequence_number: int = Field(
        ...,
        ge=0,
        description="Position in the whole log (0 for genesis)"
    )

    block_number: int = Field(
        ...,
        ge=0,
        description="Block in which the event was deposited"
    )
    index: int = Field(
        ...,
        ge=0,
        description="Position of the event within its block"
    )

    event_type: EventType
    payload: dict[str, Any]

    previous_event_hash: Optional[str] = Field(
        default=None,
        description="SHA-256 hash of the previous event. None only for sequence 0."
    )
    event_hash: str = Field(
        ...,
        description="SHA-256 hash of canonical payload chained to previous hash"
    )

    recorded_at: datetime

    @property
    def is_genesis(self) -> bool:
        return self.sequence_number == 0

    def to_claim_event(self) -> ClaimEvent:
        """Rebuild the typed claim event from the payload."""
        cls = EVENT_CLASSES[self.event_type]
        return cls(who=self.payload["who"], proof=bytes.fromhex(self.payload["proof"]))

    def validate_chain_rules(self) -> None:
        """
        Validate chain linkage rules.

        Raises ValueError if rules are violated.
        """
        if self.sequence_number == 0:
            if self.previous_event_hash is not None:
                raise ValueError(
                    f"Genesis event (sequence 0) must have previous_event_hash=None, "
                    f"got: {self.previous_event_hash}"
                )
        else:
            if self.previous_event_hash is None:
                raise ValueError(
                    f"Non-genesis event (sequence {self.sequence_number}) must have "
                    f"previous_event_hash set, got None"
                )
            if len(self.previous_event_hash) != 64:
                raise ValueError(
                    f"previous_event_hash must be 64 hex characters, "
                    f"got {len(self.previous_event_hash)}"
                )
