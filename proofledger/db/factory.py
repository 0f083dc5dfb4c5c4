"""
Store selection.

Mode is determined by environment variables:
- PROOFLEDGER_STORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: In-memory (default for development)

Outside production, a database that cannot be reached falls back to the
in-memory store with a loud warning. In production it is fatal.
"""

import psycopg2

from ..observability import get_logger, is_production
from .config import DatabaseConfig, StoreDriver, get_database_config, get_store_driver
from .store import InMemoryProofStore, PostgresProofStore, ProofStore


logger = get_logger(__name__)


def create_proof_store() -> ProofStore:
    """
    Create the ProofStore selected by configuration.

    Returns:
        InMemoryProofStore for development/testing
        PostgresProofStore when a database is configured
    """
    driver = get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory proof store (no persistence)", driver=driver.value)
        return InMemoryProofStore()

    return _create_postgres_store(get_database_config())


def _create_postgres_store(config: DatabaseConfig) -> ProofStore:
    """Create PostgresProofStore, checking the connection and schema first."""

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    store = PostgresProofStore(connection_factory, lock_timeout_ms=config.lock_timeout_ms)

    try:
        store.ensure_schema()
    except psycopg2.Error as e:
        if is_production():
            logger.error(
                "Could not connect to PostgreSQL",
                database_url=config.to_url(include_password=False),
                error=str(e),
            )
            raise
        logger.warning(
            "Could not connect to PostgreSQL, falling back to in-memory store",
            database_url=config.to_url(include_password=False),
            error=str(e),
        )
        return InMemoryProofStore()

    logger.info(
        "PostgreSQL proof store ready",
        database_url=config.to_url(include_password=False),
    )
    return store
