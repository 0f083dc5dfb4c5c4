#!/usr/bin/env python3
"""
proofledger Management CLI

Commands for operating the claim ledger:
- generate-keys: Generate an Ed25519 account keypair
- sign-call: Build and sign an extrinsic (prints SignedCall JSON)
- hash-proof: SHA-256 fingerprint of a file, usable as a proof
- show-claim: Show who owns a proof
- init-db: Apply schema.sql to the configured database
- health-check: Run comprehensive health checks

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage generate-keys
    python -m tools.manage hash-proof --file contract.pdf
    python -m tools.manage sign-call --call create_claim --proof <hex> \\
        --private-key <base64> --nonce 0
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _parse_proof(proof_hex):
    try:
        return bytes.fromhex(proof_hex)
    except ValueError:
        print(f"Error: --proof must be an even-length hex string, got {proof_hex!r}")
        return None


def cmd_generate_keys(args):
    """Generate an Ed25519 keypair. The public key is the AccountId."""
    from proofledger.core import Signer

    private_key, public_key = Signer.generate_keypair()

    print("[OK] Keypair generated")
    print("\n  Account (public key):")
    print(f"  {public_key}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")


def cmd_sign_call(args):
    """Sign a call and print the SignedCall as JSON."""
    from proofledger.core import sign_call
    from proofledger.schemas import CallName

    proof = _parse_proof(args.proof)
    if proof is None:
        return 1

    signed = sign_call(CallName(args.call), proof, args.private_key, args.nonce)
    print(json.dumps(signed.model_dump(mode="json"), indent=2))


def cmd_hash_proof(args):
    """Print the hex SHA-256 fingerprint of a file."""
    from proofledger.core import Hasher

    path = Path(args.file)
    if not path.is_file():
        print(f"Error: {path} is not a file")
        return 1

    print(Hasher.fingerprint(path.read_bytes()).hex())


def cmd_show_claim(args):
    """Show the stored claim for a proof."""
    from proofledger.db import create_proof_store

    proof = _parse_proof(args.proof)
    if proof is None:
        return 1

    store = create_proof_store()
    record = store.get(proof)

    if record is None:
        print(f"Proof {proof.hex()}: Unclaimed")
        return 1

    print(f"Proof {proof.hex()}: Claimed")
    print(f"  Owner: {record.owner}")
    print(f"  Registered at block: {record.registered_at}")


def cmd_init_db(args):
    """Apply schema.sql to the configured PostgreSQL database."""
    import psycopg2

    from proofledger.db import PostgresProofStore, get_database_config, get_database_url

    if get_database_url() is None:
        print("Error: no database configured (set DATABASE_URL or DATABASE_HOST)")
        return 1

    config = get_database_config()
    store = PostgresProofStore(lambda: psycopg2.connect(config.to_dsn()))

    print(f"Applying schema to {config.to_url(include_password=False)} ...")
    store.ensure_schema()
    print("[OK] Schema applied")


def cmd_health_check(args):
    """Run comprehensive health checks."""
    import psycopg2

    from proofledger.db import DatabaseConfig, StoreDriver, get_database_config, get_store_driver

    driver = get_store_driver()

    print("=== proofledger Health Check ===\n")

    # Check database
    print("Database:")
    if driver != StoreDriver.MEMORY:
        config: DatabaseConfig = get_database_config()
        print(f"  Type: PostgreSQL ({driver.value})")
        print(f"  Host: {config.host}:{config.port}")
        try:
            conn = psycopg2.connect(config.to_dsn())
        except psycopg2.Error as e:
            print(f"  Status: [FAIL] Failed - {e}")
            return 1

        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT COUNT(*) FROM proofs")
                claim_count = cursor.fetchone()[0]
                cursor.execute("SELECT COUNT(*) FROM ledger_lock")
                lock_rows = cursor.fetchone()[0]
        except psycopg2.Error as e:
            print(f"  Status: [FAIL] Schema missing - {e}")
            print("  Run: python -m tools.manage init-db")
            return 1
        finally:
            conn.close()

        print("  Status: [OK] Connected")
        print(f"  Claims: {claim_count}")
        if lock_rows != 1:
            print("  Ledger lock: [FAIL] ledger_lock row missing")
            return 1
        print("  Ledger lock: [OK]")
    else:
        print("  Type: In-Memory")
        print("  Status: [OK]")
        print("  [WARN] Claims will not survive a restart")

    # Check runtime configuration
    print("\nRuntime:")
    from proofledger.config import RuntimeConfig

    try:
        runtime_config = RuntimeConfig.from_env()
    except ValueError as e:
        print(f"  Configuration: [FAIL] {e}")
        return 1

    print(f"  Genesis block: {runtime_config.genesis_block}")
    print(f"  Auto-finalize: {runtime_config.auto_finalize}")
    print(f"  Max proof bytes: {runtime_config.max_proof_bytes or 'unlimited'}")

    print("\n=== Health Check Complete ===")
    return 0


def main():
    from proofledger.schemas import CallName

    parser = argparse.ArgumentParser(
        description="proofledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # generate-keys
    subparsers.add_parser(
        "generate-keys",
        help="Generate an Ed25519 account keypair"
    )

    # sign-call
    p_sign = subparsers.add_parser(
        "sign-call",
        help="Build and sign an extrinsic"
    )
    p_sign.add_argument(
        "--call",
        required=True,
        choices=[c.value for c in CallName],
        help="Call to sign"
    )
    p_sign.add_argument("--proof", required=True, help="Proof as hex")
    p_sign.add_argument("--private-key", required=True, help="Signer private key (base64)")
    p_sign.add_argument("--nonce", required=True, type=int, help="Signer's next nonce")

    # hash-proof
    p_hash = subparsers.add_parser(
        "hash-proof",
        help="SHA-256 fingerprint of a file"
    )
    p_hash.add_argument("--file", required=True, help="File to fingerprint")

    # show-claim
    p_show = subparsers.add_parser(
        "show-claim",
        help="Show who owns a proof"
    )
    p_show.add_argument("--proof", required=True, help="Proof as hex")

    # init-db
    subparsers.add_parser(
        "init-db",
        help="Apply schema.sql to the configured database"
    )

    # health-check
    subparsers.add_parser(
        "health-check",
        help="Run comprehensive health checks"
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "generate-keys": cmd_generate_keys,
        "sign-call": cmd_sign_call,
        "hash-proof": cmd_hash_proof,
        "show-claim": cmd_show_claim,
        "init-db": cmd_init_db,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
