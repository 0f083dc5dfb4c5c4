"""
Claim Ledger - The Heart of the System

A proof-of-existence ledger: proof -> (owner, registered_at).

The ledger:
- Accepts an already-authenticated caller and a proof
- Checks preconditions before touching anything
- Applies the transition inside one store transaction
- Deposits exactly one event per successful operation

Rules (enforced in code):
- A proof can only be claimed while unclaimed
- Only the owner can revoke a claim
- A claim cannot be transferred to its current owner
- Failed operations change nothing and emit nothing

ARCHITECTURE NOTE:
The ledger owns no state of its own. The mapping lives in a ProofStore,
the block number comes from a BlockClock, and events go to an EventSink.
All three are injected, so every ledger instance is isolated.
"""

from typing import Optional, TYPE_CHECKING

from ..observability import get_logger
from ..schemas import (
    AccountId,
    CallName,
    ClaimCreated,
    ClaimEvent,
    ClaimRecord,
    ClaimRevoked,
    ClaimState,
    ClaimTransferred,
    ProofId,
)
from .clock import BlockClock
from .events import EventSink

if TYPE_CHECKING:
    from ..db.store import ProofStore, StorageTransaction


logger = get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class ClaimError(LedgerError):
    """
    A rejected claim operation.

    `code` is stable and safe to show to callers.
    """
    code = "ClaimError"

    def __init__(self, proof: ProofId, message: str):
        super().__init__(message)
        self.proof = proof


class ProofAlreadyClaimed(ClaimError):
    """The proof has already been claimed."""
    code = "ProofAlreadyClaimed"


class NoSuchProof(ClaimError):
    """The proof has not been claimed, so it cannot be revoked or transferred."""
    code = "NoSuchProof"


class NotProofOwner(ClaimError):
    """The proof is claimed by another account, so the caller cannot revoke it."""
    code = "NotProofOwner"


class OwnedClaimAlready(ClaimError):
    """The caller already owns the claim it is trying to receive."""
    code = "OwnedClaimAlready"


def _short(proof: ProofId) -> str:
    text = proof.hex()
    return text if len(text) <= 16 else f"{text[:16]}..."


class ClaimLedger:
    """
    The claim-ownership state machine.

    Each proof is independently Unclaimed or Claimed(owner, height):

        Unclaimed      --create_claim(c)-->             Claimed(c, h)
        Claimed(o, .)  --revoke_claim(o)-->             Unclaimed
        Claimed(o, .)  --transfer_claim(c), c != o -->  Claimed(c, h)

    ATOMICITY:
    Every check runs inside the same store transaction as the write.
    The event is deposited only after the write commits.
    """

    def __init__(
        self,
        store: "ProofStore",
        clock: BlockClock,
        events: EventSink,
    ):
        self._store = store
        self._clock = clock
        self._events = events

    @property
    def store(self) -> "ProofStore":
        return self._store

    # ================================================================
    # QUERIES
    # ================================================================

    def get_claim(self, proof: ProofId) -> Optional[ClaimRecord]:
        """The stored record, or None if the proof is unclaimed."""
        return self._store.get(proof)

    def has_claim(self, proof: ProofId) -> bool:
        return self._store.contains_key(proof)

    def claim_state(self, proof: ProofId) -> ClaimState:
        return ClaimState.CLAIMED if self.has_claim(proof) else ClaimState.UNCLAIMED

    def claim_count(self) -> int:
        return self._store.count()

    # ================================================================
    # STATE TRANSITIONS
    # ================================================================

    def create_claim(self, caller: AccountId, proof: ProofId) -> ClaimCreated:
        """
        Claim an unclaimed proof for `caller` at the current block.

        Raises:
            ProofAlreadyClaimed: The proof is already claimed (by anyone).
        """
        with self._store.transaction() as tx:
            event = self.stage_create_claim(tx, caller, proof)
            tx.commit()
        return self.deposit(event)

    def revoke_claim(self, caller: AccountId, proof: ProofId) -> ClaimRevoked:
        """
        Remove the caller's own claim.

        Raises (first failing check wins):
            NoSuchProof: The proof is not claimed.
            NotProofOwner: The proof is claimed by someone else.
        """
        with self._store.transaction() as tx:
            event = self.stage_revoke_claim(tx, caller, proof)
            tx.commit()
        return self.deposit(event)

    def transfer_claim(self, caller: AccountId, proof: ProofId) -> ClaimTransferred:
        """
        Move an existing claim to `caller`, who is the RECEIVER.

        The current owner does not sign or consent: any account can take
        over any claim it does not already own. The registration height
        is reset to the current block.

        Raises (first failing check wins):
            NoSuchProof: The proof is not claimed.
            OwnedClaimAlready: The caller already owns the claim.
        """
        with self._store.transaction() as tx:
            event = self.stage_transfer_claim(tx, caller, proof)
            tx.commit()
        return self.deposit(event)

    # ================================================================
    # STAGING
    # ================================================================
    # The stage_* methods check and write inside a transaction owned by
    # the caller. They never commit and never emit. A ClaimError leaves
    # the transaction untouched, so the caller may still commit other
    # writes (the Runtime commits the nonce bump). Pass the returned
    # event to deposit() once the transaction has committed.

    def stage(
        self,
        tx: "StorageTransaction",
        call: CallName,
        caller: AccountId,
        proof: ProofId,
    ) -> ClaimEvent:
        stage_call = {
            CallName.CREATE_CLAIM: self.stage_create_claim,
            CallName.REVOKE_CLAIM: self.stage_revoke_claim,
            CallName.TRANSFER_CLAIM: self.stage_transfer_claim,
        }[CallName(call)]
        return stage_call(tx, caller, proof)

    def stage_create_claim(
        self, tx: "StorageTransaction", caller: AccountId, proof: ProofId
    ) -> ClaimCreated:
        if tx.contains_key(proof):
            raise self._reject(
                ProofAlreadyClaimed(proof, f"Proof {_short(proof)} has already been claimed"),
                caller,
            )

        tx.insert(proof, ClaimRecord(owner=caller, registered_at=self._clock.block_number()))
        return ClaimCreated(who=caller, proof=proof)

    def stage_revoke_claim(
        self, tx: "StorageTransaction", caller: AccountId, proof: ProofId
    ) -> ClaimRevoked:
        record = tx.get(proof)
        if record is None:
            raise self._reject(
                NoSuchProof(proof, f"Proof {_short(proof)} has not been claimed"),
                caller,
            )
        if record.owner != caller:
            raise self._reject(
                NotProofOwner(proof, f"Proof {_short(proof)} is owned by another account"),
                caller,
            )

        tx.remove(proof)
        return ClaimRevoked(who=caller, proof=proof)

    def stage_transfer_claim(
        self, tx: "StorageTransaction", caller: AccountId, proof: ProofId
    ) -> ClaimTransferred:
        record = tx.get(proof)
        if record is None:
            raise self._reject(
                NoSuchProof(proof, f"Proof {_short(proof)} has not been claimed"),
                caller,
            )
        if record.owner == caller:
            raise self._reject(
                OwnedClaimAlready(proof, f"Proof {_short(proof)} is already owned by the caller"),
                caller,
            )

        tx.remove(proof)
        tx.insert(proof, ClaimRecord(owner=caller, registered_at=self._clock.block_number()))
        logger.debug(
            "Claim changing hands",
            proof=proof.hex(),
            previous_owner=record.owner,
            new_owner=caller,
        )
        return ClaimTransferred(who=caller, proof=proof)

    # ================================================================
    # EVENTS
    # ================================================================

    def deposit(self, event: ClaimEvent) -> ClaimEvent:
        """Emit the event of a committed transition."""
        self._events.deposit_event(event)
        logger.info(
            event.event_type.value,
            event_type=event.event_type.value,
            who=event.who,
            proof=event.proof.hex(),
        )
        return event

    @staticmethod
    def _reject(error: ClaimError, caller: AccountId) -> ClaimError:
        logger.info(
            f"Rejected: {error.code}",
            error=error.code,
            caller=caller,
            proof=error.proof.hex(),
        )
        return error
