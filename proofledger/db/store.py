"""
Proof Store Abstraction

This module defines the ProofStore interface and two implementations:
- InMemoryProofStore: For development and testing
- PostgresProofStore: For production with durability and cross-instance locking

The ProofStore is responsible for:
- Holding the proofs mapping (storage_key -> ClaimRecord)
- Holding account nonces, so replay protection survives restarts and is
  shared by every instance over the same database
- Serializing write transactions
- Atomic commit or rollback of a transaction's writes

The ClaimLedger retains responsibility for:
- Precondition checks
- The claim state machine
- Event emission

TRANSACTION CONTRACT:
All writes MUST go through transaction():

    with store.transaction() as tx:
        if tx.contains_key(proof):
            raise ...
        tx.insert(proof, record)
        tx.commit()

Leaving the block without commit() rolls back. An exception inside the
block rolls back and propagates.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from itertools import islice
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Generator, Iterator, Optional

import psycopg2

from ..core.hasher import Hasher
from ..schemas import ClaimRecord, ProofId


SCHEMA_PATH = Path(__file__).parent / "schema.sql"


# ============================================================
# EXCEPTIONS
# ============================================================

class ProofStoreError(Exception):
    """Base exception for proof store errors."""
    pass


class StorageTransactionError(ProofStoreError):
    """Raised when a transaction is used after it has finished."""
    pass


class LockTimeoutError(ProofStoreError):
    """Raised when the ledger lock cannot be acquired in time (ledger busy)."""
    pass


# ============================================================
# TRANSACTION
# ============================================================

class StorageTransaction(ABC):
    """
    A serialized unit of work over the proofs mapping.

    Reads see the transaction's own pending writes.
    insert() overwrites an existing record.
    """

    def __init__(self):
        self._committed = False
        self._rolled_back = False

    @property
    def is_open(self) -> bool:
        return not self._committed and not self._rolled_back

    def _require_open(self) -> None:
        if self._committed:
            raise StorageTransactionError("Transaction already committed")
        if self._rolled_back:
            raise StorageTransactionError("Transaction already rolled back")

    @abstractmethod
    def get(self, proof: ProofId) -> Optional[ClaimRecord]:
        pass

    def contains_key(self, proof: ProofId) -> bool:
        return self.get(proof) is not None

    @abstractmethod
    def insert(self, proof: ProofId, record: ClaimRecord) -> None:
        pass

    @abstractmethod
    def remove(self, proof: ProofId) -> None:
        pass

    @abstractmethod
    def account_nonce(self, account: str) -> int:
        """The account's next nonce as seen by this transaction (0 if unseen)."""
        pass

    @abstractmethod
    def set_account_nonce(self, account: str, nonce: int) -> None:
        pass

    def commit(self) -> None:
        self._require_open()
        self._do_commit()
        self._committed = True

    def rollback(self) -> None:
        if self.is_open:
            self._do_rollback()
            self._rolled_back = True

    @abstractmethod
    def _do_commit(self) -> None:
        pass

    @abstractmethod
    def _do_rollback(self) -> None:
        pass


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class ProofStore(ABC):
    """
    Abstract base class for the proofs mapping.

    Implementations must ensure:
    1. Only one write transaction is open at a time
    2. A transaction's writes become visible all at once, on commit
    3. A rolled-back transaction leaves no trace
    """

    @contextmanager
    @abstractmethod
    def transaction(self) -> Generator[StorageTransaction, None, None]:
        """
        Begin a serialized write transaction.

        Yields:
            StorageTransaction bound to this store
        """
        pass

    @abstractmethod
    def get(self, proof: ProofId) -> Optional[ClaimRecord]:
        """Read a record outside any transaction."""
        pass

    def contains_key(self, proof: ProofId) -> bool:
        return self.get(proof) is not None

    @abstractmethod
    def count(self) -> int:
        """Number of stored claims."""
        pass

    @abstractmethod
    def iter_claims(self) -> Iterator[tuple[ProofId, ClaimRecord]]:
        """Iterate (proof, record) pairs in storage-key order."""
        pass

    @abstractmethod
    def list_claims(
        self,
        owner: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[tuple[ProofId, ClaimRecord]]:
        """One page of (proof, record) pairs in storage-key order, optionally for one owner."""
        pass

    @abstractmethod
    def highest_block(self) -> int:
        """Largest registered_at among stored claims, 0 if empty."""
        pass

    @abstractmethod
    def account_nonce(self, account: str) -> int:
        """Committed next nonce for an account, 0 if it has never been seen."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class _InMemoryTransaction(StorageTransaction):
    """Stages writes in an overlay; commit applies them to the store dicts."""

    def __init__(self, store: "InMemoryProofStore"):
        super().__init__()
        self._store = store
        # storage_key -> record, or None for a pending removal
        self._pending: dict[bytes, Optional[ClaimRecord]] = {}
        self._pending_nonces: dict[str, int] = {}

    def get(self, proof: ProofId) -> Optional[ClaimRecord]:
        self._require_open()
        key = Hasher.storage_key(proof)
        if key in self._pending:
            return self._pending[key]
        return self._store._proofs.get(key)

    def insert(self, proof: ProofId, record: ClaimRecord) -> None:
        self._require_open()
        self._pending[Hasher.storage_key(proof)] = record

    def remove(self, proof: ProofId) -> None:
        self._require_open()
        self._pending[Hasher.storage_key(proof)] = None

    def account_nonce(self, account: str) -> int:
        self._require_open()
        if account in self._pending_nonces:
            return self._pending_nonces[account]
        return self._store._nonces.get(account, 0)

    def set_account_nonce(self, account: str, nonce: int) -> None:
        self._require_open()
        self._pending_nonces[account] = nonce

    def _do_commit(self) -> None:
        proofs = self._store._proofs
        for key, record in self._pending.items():
            if record is None:
                proofs.pop(key, None)
            else:
                proofs[key] = record
        self._store._nonces.update(self._pending_nonces)
        self._pending.clear()
        self._pending_nonces.clear()

    def _do_rollback(self) -> None:
        self._pending.clear()
        self._pending_nonces.clear()


class InMemoryProofStore(ProofStore):
    """
    In-memory implementation of ProofStore.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments without persistence requirements
    """

    def __init__(self):
        self._proofs: dict[bytes, ClaimRecord] = {}
        self._nonces: dict[str, int] = {}
        self._lock = Lock()

    @contextmanager
    def transaction(self) -> Generator[StorageTransaction, None, None]:
        """Begin a transaction under the store lock."""
        with self._lock:
            tx = _InMemoryTransaction(self)
            try:
                yield tx
            finally:
                tx.rollback()

    def get(self, proof: ProofId) -> Optional[ClaimRecord]:
        return self._proofs.get(Hasher.storage_key(proof))

    def count(self) -> int:
        return len(self._proofs)

    def iter_claims(self) -> Iterator[tuple[ProofId, ClaimRecord]]:
        for key in sorted(self._proofs):
            yield Hasher.proof_from_storage_key(key), self._proofs[key]

    def list_claims(
        self,
        owner: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[tuple[ProofId, ClaimRecord]]:
        matching = (
            (proof, record)
            for proof, record in self.iter_claims()
            if owner is None or record.owner == owner
        )
        return list(islice(matching, offset, offset + limit))

    def highest_block(self) -> int:
        return max((r.registered_at for r in self._proofs.values()), default=0)

    def account_nonce(self, account: str) -> int:
        return self._nonces.get(account, 0)

    def clear(self) -> None:
        """Drop all claims and nonces (for testing only)."""
        with self._lock:
            self._proofs.clear()
            self._nonces.clear()



# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

class _PostgresTransaction(StorageTransaction):
    """Transaction bound to one psycopg2 connection holding the ledger lock."""

    def __init__(self, conn: Any, cursor: Any):
        super().__init__()
        self._conn = conn
        self._cursor = cursor

    def get(self, proof: ProofId) -> Optional[ClaimRecord]:
        self._require_open()
        self._cursor.execute(
            "SELECT owner, registered_at FROM proofs WHERE storage_key = %s",
            (psycopg2.Binary(Hasher.storage_key(proof)),),
        )
        row = self._cursor.fetchone()
        if row is None:
            return None
        return ClaimRecord(owner=row[0], registered_at=row[1])

    def insert(self, proof: ProofId, record: ClaimRecord) -> None:
        self._require_open()
        self._cursor.execute(
            """
            INSERT INTO proofs (storage_key, owner, registered_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (storage_key)
            DO UPDATE SET owner = EXCLUDED.owner, registered_at = EXCLUDED.registered_at
            """,
            (psycopg2.Binary(Hasher.storage_key(proof)), record.owner, record.registered_at),
        )

    def remove(self, proof: ProofId) -> None:
        self._require_open()
        self._cursor.execute(
            "DELETE FROM proofs WHERE storage_key = %s",
            (psycopg2.Binary(Hasher.storage_key(proof)),),
        )

    def account_nonce(self, account: str) -> int:
        self._require_open()
        self._cursor.execute(
            "SELECT nonce FROM account_nonces WHERE account = %s",
            (account,),
        )
        row = self._cursor.fetchone()
        return 0 if row is None else row[0]

    def set_account_nonce(self, account: str, nonce: int) -> None:
        self._require_open()
        self._cursor.execute(
            """
            INSERT INTO account_nonces (account, nonce)
            VALUES (%s, %s)
            ON CONFLICT (account)
            DO UPDATE SET nonce = EXCLUDED.nonce
            """,
            (account, nonce),
        )

    def _do_commit(self) -> None:
        self._conn.commit()

    def _do_rollback(self) -> None:
        self._conn.rollback()


class PostgresProofStore(ProofStore):
    """
    PostgreSQL implementation of ProofStore.

    Provides:
    - Durability (claims and account nonces survive restarts)
    - Multi-instance support: every write transaction locks the single
      ledger_lock row FOR UPDATE, so operations are applied one at a time
    - Lock/statement timeouts to prevent hanging

    Requirements:
    - Tables created from schema.sql (see ensure_schema)
    - psycopg2 connection factory
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for the ledger lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def ensure_schema(self) -> None:
        """Create tables if they do not exist."""
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_PATH.read_text())
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[StorageTransaction, None, None]:
        """Begin a transaction holding the ledger lock row."""
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        tx = None

        try:
            cursor.execute(f"SET LOCAL lock_timeout = '{int(self._lock_timeout_ms)}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{int(self._statement_timeout_ms)}ms'")

            try:
                cursor.execute("SELECT id FROM ledger_lock WHERE id = TRUE FOR UPDATE")
            except psycopg2.Error as e:
                kind = self._timeout_kind(e)
                if kind == "lock":
                    raise LockTimeoutError(
                        "Ledger busy - could not acquire lock. Try again."
                    ) from e
                if kind is not None:
                    raise ProofStoreError(
                        "Query timed out - statement took too long."
                    ) from e
                raise

            if cursor.fetchone() is None:
                raise ProofStoreError(
                    "ledger_lock row missing. Run ensure_schema() / `manage.py init-db`."
                )

            tx = _PostgresTransaction(conn, cursor)
            yield tx

        finally:
            if tx is not None:
                tx.rollback()
            else:
                conn.rollback()
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL error as "lock", "statement", "timeout" or None.

        57014 (query_canceled) covers both lock_timeout and statement_timeout;
        the message tells them apart.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"

        return None

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                return cursor.fetchall()
        finally:
            conn.close()

    def get(self, proof: ProofId) -> Optional[ClaimRecord]:
        rows = self._query(
            "SELECT owner, registered_at FROM proofs WHERE storage_key = %s",
            (psycopg2.Binary(Hasher.storage_key(proof)),),
        )
        if not rows:
            return None
        return ClaimRecord(owner=rows[0][0], registered_at=rows[0][1])

    def count(self) -> int:
        return self._query("SELECT COUNT(*) FROM proofs")[0][0]

    def iter_claims(self) -> Iterator[tuple[ProofId, ClaimRecord]]:
        rows = self._query(
            "SELECT storage_key, owner, registered_at FROM proofs ORDER BY storage_key"
        )
        for key, owner, registered_at in rows:
            yield (
                Hasher.proof_from_storage_key(bytes(key)),
                ClaimRecord(owner=owner, registered_at=registered_at),
            )

    def highest_block(self) -> int:
        return self._query("SELECT COALESCE(MAX(registered_at), 0) FROM proofs")[0][0]

    def list_claims(
        self,
        owner: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[tuple[ProofId, ClaimRecord]]:
        if owner is None:
            rows = self._query(
                "SELECT storage_key, owner, registered_at FROM proofs "
                "ORDER BY storage_key LIMIT %s OFFSET %s",
                (limit, offset),
            )
        else:
            rows = self._query(
                "SELECT storage_key, owner, registered_at FROM proofs "
                "WHERE owner = %s ORDER BY storage_key LIMIT %s OFFSET %s",
                (owner, limit, offset),
            )
        return [
            (
                Hasher.proof_from_storage_key(bytes(key)),
                ClaimRecord(owner=row_owner, registered_at=registered_at),
            )
            for key, row_owner, registered_at in rows
        ]

    def account_nonce(self, account: str) -> int:
        rows = self._query(
            "SELECT nonce FROM account_nonces WHERE account = %s",
            (account,),
        )
        return rows[0][0] if rows else 0
