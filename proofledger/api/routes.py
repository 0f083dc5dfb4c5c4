"""
API Routes for the Proof-of-Existence Ledger

Command endpoints (signed extrinsics, no PATCH, no PUT, no DELETE):
- POST /claims/create              - Claim an unclaimed proof
- POST /claims/revoke              - Revoke your own claim
- POST /claims/transfer            - Take over someone else's claim

Query endpoints:
- GET /claims                      - List claims (optionally by owner)
- GET /claims/{proof_hex}          - Get a claim
- GET /accounts/nonce?account=...  - Next nonce for an account
- GET /blocks/current              - Current block number
- POST /blocks/finalize            - Seal the current block
- GET /events                      - Recorded events (optionally one block)
- GET /events/verify               - Verify the event hash chain
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator

from ..core import (
    BadOrigin,
    ExtrinsicOutcome,
    InvalidTransaction,
    Runtime,
    Signer,
)
from ..db.store import LockTimeoutError
from ..observability import get_logger
from ..schemas import CallName, ClaimState, RecordedEvent, SignedCall


router = APIRouter()
logger = get_logger(__name__)


# ============================================================
# Dependency Injection
# ============================================================

def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


# Ledger error code -> HTTP status
CLAIM_ERROR_STATUS = {
    "NoSuchProof": status.HTTP_404_NOT_FOUND,
    "NotProofOwner": status.HTTP_403_FORBIDDEN,
    "ProofAlreadyClaimed": status.HTTP_409_CONFLICT,
    "OwnedClaimAlready": status.HTTP_409_CONFLICT,
}


def _error(status_code: int, code: str, message: str, **extra: Any) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": code, "message": message, **extra},
    )


def _parse_proof(proof_hex: str) -> bytes:
    try:
        return bytes.fromhex(proof_hex)
    except ValueError:
        raise _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "InvalidProof",
            "proof_hex must be an even-length hex string",
        ) from None


# ============================================================
# Request/Response Models
# ============================================================

class ClaimCallRequest(BaseModel):
    """A signed claim call. The call name comes from the path."""
    proof_hex: str
    signer: str = Field(..., min_length=1)
    nonce: int = Field(..., ge=0)
    signature: str

    @field_validator("proof_hex")
    @classmethod
    def _validate_proof_hex(cls, value: str) -> str:
        bytes.fromhex(value)
        return value.lower()


class ClaimResponse(BaseModel):
    """A claim as stored."""
    proof_hex: str
    state: ClaimState
    owner: str
    registered_at: int


class NonceResponse(BaseModel):
    account: str
    nonce: int


class BlockResponse(BaseModel):
    block_number: int


class ChainVerifyResponse(BaseModel):
    valid: bool
    event_count: int
    last_event_hash: Optional[str] = None


# ============================================================
# Command Endpoints
# ============================================================

def _submit(runtime: Runtime, call: CallName, request: ClaimCallRequest) -> ExtrinsicOutcome:
    max_bytes = runtime.config.max_proof_bytes
    if max_bytes and len(request.proof_hex) // 2 > max_bytes:
        raise _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            "ProofTooLarge",
            f"Proof exceeds {max_bytes} bytes",
        )

    signed = SignedCall(call=call, **request.model_dump())

    try:
        outcome = runtime.apply_extrinsic(signed)
    except BadOrigin as e:
        raise _error(status.HTTP_401_UNAUTHORIZED, e.code, str(e))
    except InvalidTransaction as e:
        raise _error(status.HTTP_400_BAD_REQUEST, e.code, str(e), reason=e.reason)
    except LockTimeoutError as e:
        raise _error(status.HTTP_503_SERVICE_UNAVAILABLE, "LedgerBusy", str(e))

    if not outcome.success:
        raise _error(
            CLAIM_ERROR_STATUS.get(outcome.error, status.HTTP_400_BAD_REQUEST),
            outcome.error,
            outcome.message or outcome.error,
            outcome=outcome.model_dump(mode="json"),
        )

    return outcome


@router.post(
    "/claims/create",
    response_model=ExtrinsicOutcome,
    status_code=status.HTTP_201_CREATED,
    tags=["Claim Commands"],
    summary="Claim an unclaimed proof",
)
async def create_claim(
    request: ClaimCallRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """
    Register the signer as owner of the proof at the current block.

    Fails with 409 if the proof is already claimed.
    """
    return _submit(runtime, CallName.CREATE_CLAIM, request)


@router.post(
    "/claims/revoke",
    response_model=ExtrinsicOutcome,
    status_code=status.HTTP_201_CREATED,
    tags=["Claim Commands"],
    summary="Revoke your own claim",
)
async def revoke_claim(
    request: ClaimCallRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """
    Remove the signer's claim on the proof.

    Fails with 404 if the proof is unclaimed, 403 if someone else owns it.
    """
    return _submit(runtime, CallName.REVOKE_CLAIM, request)


@router.post(
    "/claims/transfer",
    response_model=ExtrinsicOutcome,
    status_code=status.HTTP_201_CREATED,
    tags=["Claim Commands"],
    summary="Receive an existing claim",
)
async def transfer_claim(
    request: ClaimCallRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """
    Move an existing claim to the SIGNER.

    The signer is the receiver; the current owner is not asked.
    Fails with 404 if the proof is unclaimed, 409 if the signer already owns it.
    """
    return _submit(runtime, CallName.TRANSFER_CLAIM, request)


# ============================================================
# Query Endpoints
# ============================================================

@router.get(
    "/claims",
    response_model=list[ClaimResponse],
    tags=["Claims"],
    summary="List claims",
)
async def list_claims(
    owner: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    runtime: Runtime = Depends(get_runtime),
):
    """List claims in storage-key order, optionally filtered by owner."""
    return [
        ClaimResponse(
            proof_hex=proof.hex(),
            state=ClaimState.CLAIMED,
            owner=record.owner,
            registered_at=record.registered_at,
        )
        for proof, record in runtime.store.list_claims(owner=owner, limit=limit, offset=offset)
    ]


@router.get(
    "/claims/{proof_hex}",
    response_model=ClaimResponse,
    tags=["Claims"],
    summary="Get a claim",
)
async def get_claim(
    proof_hex: str,
    runtime: Runtime = Depends(get_runtime),
):
    """Get the owner and registration block of a proof."""
    proof = _parse_proof(proof_hex)
    record = runtime.ledger.get_claim(proof)
    if record is None:
        raise _error(
            status.HTTP_404_NOT_FOUND,
            "NoSuchProof",
            f"Proof {proof.hex()} has not been claimed",
        )
    return ClaimResponse(
        proof_hex=proof.hex(),
        state=ClaimState.CLAIMED,
        owner=record.owner,
        registered_at=record.registered_at,
    )


@router.get(
    "/accounts/nonce",
    response_model=NonceResponse,
    tags=["Accounts"],
    summary="Next nonce for an account",
)
async def get_account_nonce(
    account: str,
    runtime: Runtime = Depends(get_runtime),
):
    """The nonce the account's next signed call must carry."""
    try:
        canonical = Signer.canonical_public_key(account)
    except ValueError as e:
        raise _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "InvalidAccount", str(e))
    return NonceResponse(account=canonical, nonce=runtime.account_nonce(canonical))


@router.get(
    "/blocks/current",
    response_model=BlockResponse,
    tags=["Blocks"],
)
async def current_block(runtime: Runtime = Depends(get_runtime)):
    return BlockResponse(block_number=runtime.block_number)


@router.post(
    "/blocks/finalize",
    response_model=BlockResponse,
    tags=["Blocks"],
    summary="Seal the current block",
)
async def finalize_block(runtime: Runtime = Depends(get_runtime)):
    """Seal the current block. Returns the number of the newly opened block."""
    return BlockResponse(block_number=runtime.finalize_block())


@router.get(
    "/events",
    response_model=list[RecordedEvent],
    tags=["Events"],
    summary="Recorded claim events",
)
async def list_events(
    block: Optional[int] = Query(None, ge=0),
    runtime: Runtime = Depends(get_runtime),
):
    if block is not None:
        return runtime.event_log.events_for_block(block)
    return runtime.event_log.all_events()


@router.get(
    "/events/verify",
    response_model=ChainVerifyResponse,
    tags=["Events"],
    summary="Verify the event hash chain",
)
async def verify_events(runtime: Runtime = Depends(get_runtime)):
    event_log = runtime.event_log
    return ChainVerifyResponse(
        valid=event_log.verify_chain_integrity(),
        event_count=event_log.event_count,
        last_event_hash=event_log.last_event_hash,
    )
