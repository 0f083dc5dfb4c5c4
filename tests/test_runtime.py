"""
Tests for the Runtime: signed extrinsics, nonces and blocks.
"""

from contextlib import contextmanager

import pytest

from proofledger.config import RuntimeConfig
from proofledger.core import (
    BadOrigin,
    InvalidTransaction,
    ManualBlockClock,
    NotProofOwner,
    Runtime,
    Signer,
    sign_call,
)
from proofledger.db import InMemoryProofStore, LockTimeoutError
from proofledger.observability import account_id_var, check_health, get_metrics
from proofledger.schemas import CallName, ClaimRecord, SignedCall


PROOF = bytes.fromhex("deadbeef")


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def alice():
    return Signer.generate_keypair()


@pytest.fixture
def bob():
    return Signer.generate_keypair()


def submit(runtime, call, keys, proof=PROOF, nonce=None):
    private_key, public_key = keys
    if nonce is None:
        nonce = runtime.account_nonce(public_key)
    return runtime.apply_extrinsic(sign_call(call, proof, private_key, nonce))


class TestSignedCalls:
    """Authentication happens before anything reaches the ledger."""

    @pytest.fixture
    def runtime(self):
        return Runtime()

    def test_signed_call_is_applied(self, runtime, alice):
        outcome = submit(runtime, CallName.CREATE_CLAIM, alice)

        assert outcome.success
        assert outcome.signer == alice[1]
        assert outcome.proof_hex == "deadbeef"
        assert outcome.events == [
            {"event_type": "ClaimCreated", "who": alice[1], "proof": "deadbeef"}
        ]
        assert runtime.ledger.get_claim(PROOF).owner == alice[1]

    def test_unsigned_call_is_bad_origin(self, runtime, alice):
        call = sign_call(CallName.CREATE_CLAIM, PROOF, alice[0], 0)
        unsigned = call.model_copy(update={"signature": ""})

        with pytest.raises(BadOrigin):
            runtime.apply_extrinsic(unsigned)

        assert runtime.account_nonce(alice[1]) == 0
        assert not runtime.ledger.has_claim(PROOF)

    def test_signature_from_another_key_is_bad_origin(self, runtime, alice, bob):
        call = sign_call(CallName.CREATE_CLAIM, PROOF, alice[0], 0)
        forged = call.model_copy(update={"signer": bob[1]})

        with pytest.raises(BadOrigin):
            runtime.apply_extrinsic(forged)

        assert not runtime.ledger.has_claim(PROOF)

    def test_signature_covers_the_proof(self, runtime, alice):
        call = sign_call(CallName.CREATE_CLAIM, PROOF, alice[0], 0)
        swapped = call.model_copy(update={"proof_hex": "cafebabe"})

        with pytest.raises(BadOrigin):
            runtime.apply_extrinsic(swapped)

    def test_signature_covers_the_call(self, runtime, alice, bob):
        submit(runtime, CallName.CREATE_CLAIM, alice)

        call = sign_call(CallName.REVOKE_CLAIM, PROOF, bob[0], 0)
        swapped = call.model_copy(update={"call": CallName.TRANSFER_CLAIM})

        with pytest.raises(BadOrigin):
            runtime.apply_extrinsic(swapped)

        assert runtime.ledger.get_claim(PROOF).owner == alice[1]

    def test_invalid_signer_key_is_bad_origin(self, runtime):
        call = SignedCall(
            call=CallName.CREATE_CLAIM,
            proof_hex="deadbeef",
            signer="AAAA",
            nonce=0,
            signature="AAAA",
        )
        with pytest.raises(BadOrigin, match="not a valid Ed25519"):
            runtime.apply_extrinsic(call)

    def test_rejection_is_counted(self, runtime, alice):
        call = sign_call(CallName.CREATE_CLAIM, PROOF, alice[0], 0)
        with pytest.raises(BadOrigin):
            runtime.apply_extrinsic(call.model_copy(update={"signature": ""}))

        summary = get_metrics().get_summary()
        assert summary["extrinsics_rejected"] == 1
        assert summary["extrinsics_applied"] == 0


class TestSignerContext:
    """Log lines carry the account only once its signature has checked out."""

    @pytest.fixture(autouse=True)
    def clear_account(self):
        token = account_id_var.set("")
        yield
        account_id_var.reset(token)

    def test_forged_signer_not_bound(self, alice, bob):
        call = sign_call(CallName.CREATE_CLAIM, PROOF, alice[0], 0)

        with pytest.raises(BadOrigin):
            Runtime().apply_extrinsic(call.model_copy(update={"signer": bob[1]}))

        assert account_id_var.get() == ""

    def test_verified_signer_bound(self, alice):
        submit(Runtime(), CallName.CREATE_CLAIM, alice)
        assert account_id_var.get() == alice[1]


class TestNonces:
    """Each account's extrinsics are ordered by its nonce."""

    @pytest.fixture
    def runtime(self):
        return Runtime()

    def test_nonce_increments(self, runtime, alice):
        assert runtime.account_nonce(alice[1]) == 0
        submit(runtime, CallName.CREATE_CLAIM, alice)
        assert runtime.account_nonce(alice[1]) == 1

    def test_replay_is_stale(self, runtime, alice):
        call = sign_call(CallName.CREATE_CLAIM, PROOF, alice[0], 0)
        runtime.apply_extrinsic(call)

        with pytest.raises(InvalidTransaction) as exc_info:
            runtime.apply_extrinsic(call)

        assert exc_info.value.reason == "stale"
        assert runtime.account_nonce(alice[1]) == 1

    def test_future_nonce_refused(self, runtime, alice):
        with pytest.raises(InvalidTransaction) as exc_info:
            submit(runtime, CallName.CREATE_CLAIM, alice, nonce=5)

        assert exc_info.value.reason == "future"
        assert runtime.account_nonce(alice[1]) == 0
        assert not runtime.ledger.has_claim(PROOF)

    def test_failed_dispatch_consumes_nonce(self, runtime, alice):
        """A call the ledger rejects is still included."""
        outcome = submit(runtime, CallName.REVOKE_CLAIM, alice)

        assert not outcome.success
        assert outcome.error == "NoSuchProof"
        assert outcome.events == []
        assert runtime.account_nonce(alice[1]) == 1

    def test_nonces_are_per_account(self, runtime, alice, bob):
        submit(runtime, CallName.CREATE_CLAIM, alice)
        submit(runtime, CallName.TRANSFER_CLAIM, bob)

        assert runtime.account_nonce(alice[1]) == 1
        assert runtime.account_nonce(bob[1]) == 1


class BusyOnceStore(InMemoryProofStore):
    """Refuses its first transaction as if the ledger lock were held elsewhere."""

    def __init__(self):
        super().__init__()
        self.refusals = 0

    @contextmanager
    def transaction(self):
        if self.refusals == 0:
            self.refusals += 1
            raise LockTimeoutError("Ledger busy - could not acquire lock. Try again.")
        with super().transaction() as tx:
            yield tx


class TestBusyStore:
    """A store failure leaves the extrinsic unapplied and retryable."""

    @pytest.fixture
    def runtime(self):
        return Runtime(store=BusyOnceStore(), config=RuntimeConfig(auto_finalize=False))

    def test_lock_timeout_keeps_nonce(self, runtime, alice):
        call = sign_call(CallName.CREATE_CLAIM, PROOF, alice[0], 0)

        with pytest.raises(LockTimeoutError):
            runtime.apply_extrinsic(call)

        assert runtime.account_nonce(alice[1]) == 0
        assert runtime.block_number == 0
        assert not runtime.ledger.has_claim(PROOF)
        assert runtime.event_log.event_count == 0

    def test_same_call_succeeds_on_retry(self, runtime, alice):
        call = sign_call(CallName.CREATE_CLAIM, PROOF, alice[0], 0)
        with pytest.raises(LockTimeoutError):
            runtime.apply_extrinsic(call)

        outcome = runtime.apply_extrinsic(call)

        assert outcome.success
        assert (outcome.block_number, outcome.extrinsic_index) == (0, 0)
        assert runtime.account_nonce(alice[1]) == 1


class TestPersistedNonces:
    """Nonces live in the store, so a new Runtime over it still refuses replays."""

    def test_nonce_survives_restart(self, alice):
        store = InMemoryProofStore()
        submit(Runtime(store=store), CallName.CREATE_CLAIM, alice)

        restarted = Runtime(store=store)

        assert restarted.account_nonce(alice[1]) == 1
        assert store.account_nonce(alice[1]) == 1

    def test_replay_after_restart_is_stale(self, alice, bob):
        store = InMemoryProofStore()
        first = Runtime(store=store)
        submit(first, CallName.CREATE_CLAIM, alice)
        bob_takes = sign_call(CallName.TRANSFER_CLAIM, PROOF, bob[0], 0)
        assert first.apply_extrinsic(bob_takes).success
        submit(first, CallName.TRANSFER_CLAIM, alice)

        second = Runtime(store=store)
        with pytest.raises(InvalidTransaction) as exc_info:
            second.apply_extrinsic(bob_takes)

        assert exc_info.value.reason == "stale"
        assert second.ledger.get_claim(PROOF).owner == alice[1]
        assert second.account_nonce(bob[1]) == 1

    def test_refused_call_writes_no_nonce(self, alice):
        store = InMemoryProofStore()
        runtime = Runtime(store=store)

        with pytest.raises(InvalidTransaction):
            submit(runtime, CallName.CREATE_CLAIM, alice, nonce=3)

        assert store.account_nonce(alice[1]) == 0


class TestClaimErrorsInOutcome:
    """ClaimErrors are reported, not raised, by apply_extrinsic."""

    @pytest.fixture
    def runtime(self):
        return Runtime()

    def test_already_claimed(self, runtime, alice, bob):
        submit(runtime, CallName.CREATE_CLAIM, alice)
        outcome = submit(runtime, CallName.CREATE_CLAIM, bob)

        assert not outcome.success
        assert outcome.error == "ProofAlreadyClaimed"
        assert runtime.ledger.get_claim(PROOF).owner == alice[1]

    def test_not_owner(self, runtime, alice, bob):
        submit(runtime, CallName.CREATE_CLAIM, alice)
        outcome = submit(runtime, CallName.REVOKE_CLAIM, bob)
        assert outcome.error == "NotProofOwner"

    def test_owned_already(self, runtime, alice):
        submit(runtime, CallName.CREATE_CLAIM, alice)
        outcome = submit(runtime, CallName.TRANSFER_CLAIM, alice)
        assert outcome.error == "OwnedClaimAlready"

    def test_receiver_takes_claim_without_owner_signature(self, runtime, alice, bob):
        """Only bob signs the transfer; alice is never asked."""
        submit(runtime, CallName.CREATE_CLAIM, alice)
        outcome = submit(runtime, CallName.TRANSFER_CLAIM, bob)

        assert outcome.success
        assert runtime.ledger.get_claim(PROOF).owner == bob[1]
        assert runtime.account_nonce(alice[1]) == 1

    def test_metrics_track_outcomes(self, runtime, alice, bob):
        submit(runtime, CallName.CREATE_CLAIM, alice)
        submit(runtime, CallName.CREATE_CLAIM, bob)
        submit(runtime, CallName.TRANSFER_CLAIM, bob)

        summary = get_metrics().get_summary()
        assert summary["extrinsics_applied"] == 3
        assert summary["extrinsics_failed"] == 1
        assert summary["claims_created"] == 1
        assert summary["claims_transferred"] == 1


class TestBlocks:
    """Block numbering and registration heights."""

    def test_auto_finalize_advances_per_extrinsic(self, alice, bob):
        runtime = Runtime(config=RuntimeConfig(genesis_block=10))

        first = submit(runtime, CallName.CREATE_CLAIM, alice)
        assert first.block_number == 10
        assert runtime.block_number == 11

        submit(runtime, CallName.TRANSFER_CLAIM, bob)
        assert runtime.ledger.get_claim(PROOF) == ClaimRecord(owner=bob[1], registered_at=11)
        assert runtime.block_number == 12

    def test_manual_finalize(self, alice, bob):
        runtime = Runtime(config=RuntimeConfig(auto_finalize=False))

        first = submit(runtime, CallName.CREATE_CLAIM, alice)
        second = submit(runtime, CallName.CREATE_CLAIM, bob, proof=b"\x01")

        assert (first.block_number, first.extrinsic_index) == (0, 0)
        assert (second.block_number, second.extrinsic_index) == (0, 1)
        assert runtime.block_number == 0

        assert runtime.finalize_block() == 1
        third = submit(runtime, CallName.TRANSFER_CLAIM, bob)
        assert (third.block_number, third.extrinsic_index) == (1, 0)
        assert get_metrics().get_summary()["blocks_finalized"] == 1

    def test_clock_resumes_above_stored_claims(self):
        store = InMemoryProofStore()
        with store.transaction() as tx:
            tx.insert(PROOF, ClaimRecord(owner="someone", registered_at=42))
            tx.commit()

        runtime = Runtime(store=store, config=RuntimeConfig(genesis_block=5))
        assert runtime.block_number == 42

    def test_explicit_clock(self):
        runtime = Runtime(clock=ManualBlockClock(3))
        assert runtime.block_number == 3

    def test_events_recorded_per_block(self, alice, bob):
        runtime = Runtime()
        submit(runtime, CallName.CREATE_CLAIM, alice)
        submit(runtime, CallName.TRANSFER_CLAIM, bob)

        assert [e.block_number for e in runtime.event_log.all_events()] == [0, 1]
        assert runtime.event_log.verify_chain_integrity()


class TestDirectDispatch:
    """Trusted tooling path: no signature, no nonce, errors propagate."""

    def test_dispatch(self):
        runtime = Runtime()
        event = runtime.dispatch("root", CallName.CREATE_CLAIM, PROOF)

        assert event.who == "root"
        assert runtime.ledger.get_claim(PROOF).owner == "root"
        assert runtime.account_nonce("root") == 0

    def test_dispatch_propagates_claim_errors(self):
        runtime = Runtime()
        runtime.dispatch("root", CallName.CREATE_CLAIM, PROOF)

        with pytest.raises(NotProofOwner):
            runtime.dispatch("intruder", CallName.REVOKE_CLAIM, PROOF)


class TestRuntimeConfig:

    def test_defaults(self):
        config = RuntimeConfig()
        assert config.genesis_block == 0
        assert config.auto_finalize is True
        assert config.max_proof_bytes == 0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PROOFLEDGER_GENESIS_BLOCK", "100")
        monkeypatch.setenv("PROOFLEDGER_AUTO_FINALIZE", "false")
        monkeypatch.setenv("PROOFLEDGER_MAX_PROOF_BYTES", "64")

        config = RuntimeConfig.from_env()

        assert config.genesis_block == 100
        assert config.auto_finalize is False
        assert config.max_proof_bytes == 64

    def test_negative_genesis_rejected(self):
        with pytest.raises(ValueError, match="GENESIS_BLOCK"):
            RuntimeConfig(genesis_block=-1)


class TestHealth:

    def test_healthy_runtime(self, alice):
        runtime = Runtime()
        submit(runtime, CallName.CREATE_CLAIM, alice)

        status = check_health(runtime=runtime)

        assert status.healthy
        assert status.checks["proof_store"]["claim_count"] == 1
        assert status.checks["event_chain"]["valid"]
