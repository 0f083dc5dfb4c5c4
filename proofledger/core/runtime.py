"""
Runtime - the host around the ClaimLedger.

The ledger trusts its caller identity and its block number. The runtime
is what makes that trust reasonable:

- Authentication: every extrinsic is signed with Ed25519. Unsigned or
  badly signed calls never reach the ledger.
- Ordering: each account has a nonce. A call must carry exactly the next
  nonce; replays and gaps are refused before dispatch.
- Serialization: extrinsics are applied one at a time, to completion.
- Blocks: the runtime owns the block clock and seals blocks.

An extrinsic that passes authentication and the nonce check is INCLUDED:
its nonce is consumed even if the ledger then rejects the call. Only
BadOrigin and InvalidTransaction keep a call out of the block.
"""

import time
from abc import ABC, abstractmethod
from threading import RLock
from typing import Any, Callable, Optional, TYPE_CHECKING

from pydantic import BaseModel

from ..config import RuntimeConfig
from ..observability import account_id_var, get_logger, get_metrics
from ..schemas import (
    AccountId,
    CallName,
    ClaimEvent,
    ProofId,
    SignedCall,
    signing_payload,
)
from .clock import ManualBlockClock
from .events import EventLog
from .ledger import ClaimError, ClaimLedger, LedgerError
from .signer import Signer

if TYPE_CHECKING:
    from ..db.store import ProofStore


logger = get_logger(__name__)


class BadOrigin(LedgerError):
    """The call is unsigned or its signature does not verify."""
    code = "BadOrigin"


class InvalidTransaction(LedgerError):
    """
    The call is well-signed but cannot be included.

    reason is one of: "stale" (nonce already used), "future" (nonce
    skips ahead), "call" (unknown call).
    """
    code = "InvalidTransaction"

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


# ============================================================
# AUTHENTICATION
# ============================================================

class Authenticator(ABC):
    """Turns a signed call into a verified AccountId, or refuses it."""

    @abstractmethod
    def ensure_signed(self, call: SignedCall) -> AccountId:
        pass


class Ed25519Authenticator(Authenticator):
    """
    The account is the signer's public key, in canonical base64.

    The signature must cover the canonical signing payload of the call.
    """

    def ensure_signed(self, call: SignedCall) -> AccountId:
        if not call.signature:
            raise BadOrigin("Call is not signed")

        try:
            account = Signer.canonical_public_key(call.signer)
        except ValueError as e:
            raise BadOrigin(f"Signer is not a valid Ed25519 public key: {e}") from e

        if not Signer.verify_payload(call.signing_payload(), call.signature, call.signer):
            raise BadOrigin("Signature does not match the call and signer")

        return account


def sign_call(
    call: CallName,
    proof: ProofId,
    private_key_b64: str,
    nonce: int,
) -> SignedCall:
    """Build and sign an extrinsic with the given private key."""
    signer = Signer.public_key_for(private_key_b64)
    payload = signing_payload(call, proof, signer, nonce)
    return SignedCall(
        call=call,
        proof_hex=proof.hex(),
        signer=signer,
        nonce=nonce,
        signature=Signer.sign_payload(payload, private_key_b64),
    )


# ============================================================
# OUTCOME
# ============================================================

class ExtrinsicOutcome(BaseModel):
    """What happened to an included extrinsic."""
    block_number: int
    extrinsic_index: int
    call: CallName
    signer: AccountId
    proof_hex: str
    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    events: list[dict[str, Any]] = []


# ============================================================
# RUNTIME
# ============================================================

class Runtime:
    """
    Wires store, clock, event log and authenticator around a ClaimLedger.

    CONCURRENCY:
    apply_extrinsic, dispatch and finalize_block hold one lock, so the
    ledger sees a strictly sequential stream of operations.
    """

    def __init__(
        self,
        store: Optional["ProofStore"] = None,
        clock: Optional[ManualBlockClock] = None,
        event_log: Optional[EventLog] = None,
        authenticator: Optional[Authenticator] = None,
        config: Optional[RuntimeConfig] = None,
    ):
        # Import here to avoid circular imports
        if store is None:
            from ..db.store import InMemoryProofStore
            store = InMemoryProofStore()

        self._config = config or RuntimeConfig()
        self._store = store

        if clock is None:
            # Resume above anything already stored
            clock = ManualBlockClock(max(self._config.genesis_block, store.highest_block()))
        self._clock = clock

        self._event_log = event_log or EventLog(self._clock)
        self._authenticator = authenticator or Ed25519Authenticator()
        self._ledger = ClaimLedger(store=store, clock=self._clock, events=self._event_log)

        self._extrinsic_index = 0
        self._lock = RLock()

        self._calls: dict[CallName, Callable[[AccountId, ProofId], ClaimEvent]] = {
            CallName.CREATE_CLAIM: self._ledger.create_claim,
            CallName.REVOKE_CLAIM: self._ledger.revoke_claim,
            CallName.TRANSFER_CLAIM: self._ledger.transfer_claim,
        }

    @property
    def ledger(self) -> ClaimLedger:
        return self._ledger

    @property
    def store(self) -> "ProofStore":
        return self._store

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    @property
    def block_number(self) -> int:
        return self._clock.block_number()

    def account_nonce(self, account: AccountId) -> int:
        """The nonce the account's next extrinsic must carry."""
        return self._store.account_nonce(account)

    # ================================================================
    # BLOCKS
    # ================================================================

    def finalize_block(self) -> int:
        """Seal the current block and open the next one. Returns the new number."""
        with self._lock:
            sealed = self._clock.block_number()
            extrinsics = self._extrinsic_index
            new_block = self._clock.advance()
            self._extrinsic_index = 0

        get_metrics().record_block()
        logger.info(
            "Block finalized",
            block_number=sealed,
            extrinsic_count=extrinsics,
        )
        return new_block

    # ================================================================
    # DISPATCH
    # ================================================================

    def apply_extrinsic(self, call: SignedCall) -> ExtrinsicOutcome:
        """
        Authenticate, check the nonce, dispatch, and record the outcome.

        The nonce check, the dispatch and the nonce bump share one store
        transaction. If the store fails (busy, timed out) nothing is
        committed and the same signed call can be retried.

        Raises:
            BadOrigin: The call is unsigned or the signature is invalid.
            InvalidTransaction: Stale or future nonce, or unknown call.
            ProofStoreError: The store could not apply the call.

        ClaimErrors do NOT propagate: they are reported in the outcome.
        """
        with self._lock:
            start = time.perf_counter()

            try:
                who = self._authenticator.ensure_signed(call)
                call_name = self._resolve_call(call.call)
            except (BadOrigin, InvalidTransaction) as e:
                raise self._refuse(call, e)

            account_id_var.set(who)
            event: Optional[ClaimEvent] = None
            error: Optional[ClaimError] = None

            with self._store.transaction() as tx:
                try:
                    self._check_nonce(call.nonce, tx.account_nonce(who))
                except InvalidTransaction as e:
                    raise self._refuse(call, e)

                try:
                    event = self._ledger.stage(tx, call_name, who, call.proof)
                except ClaimError as e:
                    error = e

                # Included from here on: the nonce is spent whatever the ledger says
                tx.set_account_nonce(who, call.nonce + 1)
                tx.commit()

            block_number = self._clock.block_number()
            extrinsic_index = self._extrinsic_index
            self._extrinsic_index += 1

            outcome = ExtrinsicOutcome(
                block_number=block_number,
                extrinsic_index=extrinsic_index,
                call=call_name,
                signer=who,
                proof_hex=call.proof_hex,
                success=error is None,
            )

            if event is not None:
                self._ledger.deposit(event)
                outcome.events = [event.to_payload()]
                get_metrics().record_transition(event.event_type.value)
            else:
                outcome.error = error.code
                outcome.message = str(error)

            get_metrics().record_dispatch(
                (time.perf_counter() - start) * 1000, outcome.success
            )

            if self._config.auto_finalize:
                self.finalize_block()

            return outcome

    def dispatch(self, caller: AccountId, call: CallName, proof: ProofId) -> ClaimEvent:
        """
        Dispatch directly as `caller`, with no signature and no nonce.

        For trusted tooling only. ClaimErrors propagate.
        """
        with self._lock:
            event = self._calls[self._resolve_call(call)](caller, proof)
        get_metrics().record_transition(event.event_type.value)
        return event

    def _refuse(self, call: SignedCall, error: LedgerError) -> LedgerError:
        get_metrics().record_rejection()
        logger.warning(
            f"Extrinsic refused: {error.code}",
            error=error.code,
            reason=getattr(error, "reason", None),
            call=call.call.value,
            signer=call.signer,
            detail=str(error),
        )
        return error

    def _resolve_call(self, call: CallName) -> CallName:
        try:
            return CallName(call)
        except ValueError:
            raise InvalidTransaction("call", f"Unknown call: {call}") from None

    @staticmethod
    def _check_nonce(nonce: int, expected: int) -> None:
        if nonce < expected:
            raise InvalidTransaction(
                "stale",
                f"Nonce {nonce} already used; next nonce for this account is {expected}",
            )
        if nonce > expected:
            raise InvalidTransaction(
                "future",
                f"Nonce {nonce} is ahead; next nonce for this account is {expected}",
            )
