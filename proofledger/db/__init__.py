"""
Database Layer for the Proof-of-Existence Ledger

Provides:
- PostgreSQL schema
- ProofStore abstraction (InMemory for dev, Postgres for prod)
- Connection configuration and store selection
"""

from .store import (
    ProofStore,
    StorageTransaction,
    InMemoryProofStore,
    PostgresProofStore,
    ProofStoreError,
    StorageTransactionError,
    LockTimeoutError,
)
from .config import (
    DatabaseConfig,
    StoreDriver,
    get_database_config,
    get_database_url,
    get_store_driver,
)
from .factory import create_proof_store

__all__ = [
    "ProofStore",
    "StorageTransaction",
    "InMemoryProofStore",
    "PostgresProofStore",
    "ProofStoreError",
    "StorageTransactionError",
    "LockTimeoutError",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_config",
    "get_database_url",
    "get_store_driver",
    "create_proof_store",
]
