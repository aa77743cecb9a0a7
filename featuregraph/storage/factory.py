"""
Storage factory: build the evidence, feature and job stores for a database URL.
"""

from sqlalchemy import Engine, create_engine
from sqlalchemy.pool import StaticPool

from featuregraph.logging import setup_logging
from featuregraph.storage.interfaces import (
    EvidenceStorageInterface,
    FeatureStorageInterface,
    JobStorageInterface,
)
from featuregraph.storage.memory import (
    InMemoryEvidenceStorage,
    InMemoryFeatureStorage,
    InMemoryJobStorage,
)
from featuregraph.storage.sql import SQLEvidenceStorage, SQLFeatureStorage, SQLJobStorage

logger = setup_logging()

MEMORY_URL = "memory://"


class Stores:
    """The three stores the pipeline services share."""

    def __init__(
        self,
        evidence: EvidenceStorageInterface,
        features: FeatureStorageInterface,
        jobs: JobStorageInterface,
        engine: Engine | None = None,
    ):
        self.evidence = evidence
        self.features = features
        self.jobs = jobs
        self.engine = engine

    def close(self) -> None:
        """Dispose of the engine's connection pool, if there is one."""
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None


def create_db_engine(db_url: str) -> Engine:
    """Create a SQLAlchemy engine for SQLite or PostgreSQL.

    SQLite connections are used from worker threads, so thread checks are
    disabled and writers wait on the database lock instead of failing at once.
    An in-memory SQLite URL gets a single shared connection.
    """
    if db_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(db_url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("postgresql"):
        return create_engine(db_url, pool_pre_ping=True)
    raise ValueError(f"Unsupported database URL scheme: {db_url}")


def create_stores(db_url: str) -> Stores:
    """Return Stores for `db_url`; `memory://` selects the in-memory backend."""
    if db_url == MEMORY_URL:
        logger.info("Using in-memory storage")
        return Stores(InMemoryEvidenceStorage(), InMemoryFeatureStorage(), InMemoryJobStorage())

    engine = create_db_engine(db_url)
    logger.info(f"Using SQL storage at {engine.url.render_as_string(hide_password=True)}")
    return Stores(
        evidence=SQLEvidenceStorage(engine),
        features=SQLFeatureStorage(engine, create_tables=False),
        jobs=SQLJobStorage(engine, create_tables=False),
        engine=engine,
    )
