"""
Demonstration: Complete Claim Lifecycle

Two accounts, one document fingerprint:
Alice claims it, Bob takes it over, Alice's revoke is refused,
Bob revokes it, and the event chain is verified at the end.

Run with: python -m examples.demo_lifecycle
"""

from proofledger.config import RuntimeConfig
from proofledger.core import Hasher, Runtime, Signer, sign_call
from proofledger.schemas import CallName


def _submit(runtime, call, proof, private_key, account):
    outcome = runtime.apply_extrinsic(
        sign_call(call, proof, private_key, runtime.account_nonce(account))
    )
    if outcome.success:
        print(f"[OK] {call.value} included in block {outcome.block_number}")
        for event in outcome.events:
            print(f"   Event: {event['event_type']} who={event['who'][:16]}...")
    else:
        print(f"[REJECTED] {call.value}: {outcome.error}")
        print(f"   {outcome.message}")
    return outcome


def _show(runtime, proof):
    record = runtime.ledger.get_claim(proof)
    if record is None:
        print("   State: Unclaimed")
    else:
        print(f"   State: Claimed by {record.owner[:16]}... at block {record.registered_at}")
    print()


def main():
    print("=" * 60)
    print("proofledger - Claim Lifecycle Demonstration")
    print("=" * 60)
    print()

    runtime = Runtime(config=RuntimeConfig(genesis_block=1))

    alice_private, alice = Signer.generate_keypair()
    bob_private, bob = Signer.generate_keypair()

    print(f"Alice: {alice[:32]}...")
    print(f"Bob:   {bob[:32]}...")
    print()

    document = b"Lease agreement, unit 4B, signed 2024-03-01"
    proof = Hasher.fingerprint(document)
    print(f"Proof (SHA-256 of document): {proof.hex()}")
    print()

    # ================================================================
    # STEP 1: ALICE CLAIMS
    # ================================================================
    print("=" * 60)
    print("STEP 1: ALICE CLAIMS THE PROOF")
    print("=" * 60)
    _submit(runtime, CallName.CREATE_CLAIM, proof, alice_private, alice)
    _show(runtime, proof)

    # ================================================================
    # STEP 2: BOB TRIES TO CLAIM THE SAME PROOF
    # ================================================================
    print("=" * 60)
    print("STEP 2: BOB TRIES TO CLAIM IT TOO")
    print("=" * 60)
    _submit(runtime, CallName.CREATE_CLAIM, proof, bob_private, bob)
    _show(runtime, proof)

    # ================================================================
    # STEP 3: BOB TAKES THE CLAIM OVER
    # ================================================================
    print("=" * 60)
    print("STEP 3: BOB RECEIVES THE CLAIM (ALICE DOES NOT SIGN)")
    print("=" * 60)
    _submit(runtime, CallName.TRANSFER_CLAIM, proof, bob_private, bob)
    _show(runtime, proof)

    # ================================================================
    # STEP 4: ALICE CAN NO LONGER REVOKE
    # ================================================================
    print("=" * 60)
    print("STEP 4: ALICE TRIES TO REVOKE")
    print("=" * 60)
    _submit(runtime, CallName.REVOKE_CLAIM, proof, alice_private, alice)
    _show(runtime, proof)

    # ================================================================
    # STEP 5: BOB REVOKES
    # ================================================================
    print("=" * 60)
    print("STEP 5: BOB REVOKES")
    print("=" * 60)
    _submit(runtime, CallName.REVOKE_CLAIM, proof, bob_private, bob)
    _show(runtime, proof)

    # ================================================================
    # VERIFY
    # ================================================================
    print("=" * 60)
    print("EVENT CHAIN")
    print("=" * 60)
    event_log = runtime.event_log
    for event in event_log.all_events():
        print(
            f"  #{event.sequence_number} block {event.block_number}.{event.index} "
            f"{event.event_type.value} {event.event_hash[:16]}..."
        )
    print()
    print(f"Chain valid: {event_log.verify_chain_integrity()}")
    print(f"Alice nonce: {runtime.account_nonce(alice)}")
    print(f"Bob nonce:   {runtime.account_nonce(bob)}")
    print(f"Current block: {runtime.block_number}")


if __name__ == "__main__":
    main()
